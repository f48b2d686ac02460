"""
okrlens backend - HTTP surface for aggregated OKR reports.

This package provides a FastAPI backend that runs the okrlens aggregation
pipeline against the Quantive Results API and serves the resulting reports
as JSON.
"""
