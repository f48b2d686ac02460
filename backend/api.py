"""
FastAPI backend for okrlens.

Serves aggregated OKR reports built from the Quantive Results API, plus the
session list and a connectivity check. Supports CORS for local development.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Ensure we import from the local okrlens package, not an installed copy
okrlens_root = Path(__file__).parent.parent
if str(okrlens_root) not in sys.path:
    sys.path.insert(0, str(okrlens_root))

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from okrlens.core.aggregator import AggregationPipeline
from okrlens.core.config import Settings, configure_logging, load_settings
from okrlens.core.errors import (
    AuthError,
    ConfigurationError,
    OkrLensError,
    UnresolvedIdentifierError,
)
from okrlens.core.history import ProgressHistoryService, sparkline

logger = logging.getLogger(__name__)

settings = load_settings()
configure_logging(settings.log_level)

# Initialize FastAPI app
app = FastAPI(
    title="okrlens API",
    description="Aggregated OKR reports over the Quantive Results API",
    version="1.0.0",
)

# Configure CORS - allow all localhost origins in development
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"http://(localhost|127\.0\.0\.1):\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_pipeline: Optional[AggregationPipeline] = None

# Simple in-memory cache for reports (60s TTL)
report_cache: Dict[str, Tuple[Dict[str, Any], datetime]] = {}
CACHE_TTL_SECONDS = 60
MAX_CACHE_ENTRIES = 100


def get_pipeline() -> AggregationPipeline:
    """
    Lazily build the shared pipeline from validated settings.

    Raises
    ------
    HTTPException
        500 when credentials are missing or invalid
    """
    global _pipeline
    if _pipeline is None:
        try:
            settings.validate(require_sessions=False)
        except ConfigurationError as e:
            logger.error(f"Invalid configuration: {e}")
            raise HTTPException(status_code=500, detail=f"Configuration error: {e.message}")
        _pipeline = AggregationPipeline(settings)
    return _pipeline


def _http_error(e: Exception, action: str) -> HTTPException:
    if isinstance(e, UnresolvedIdentifierError):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, AuthError):
        return HTTPException(status_code=502, detail=f"Upstream rejected credentials: {e.message}")
    logger.error(f"Error {action}: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=f"Error {action}: {str(e)}")


def _evict_old_entries() -> None:
    if len(report_cache) <= MAX_CACHE_ENTRIES:
        return
    # Remove oldest 50% of entries
    sorted_keys = sorted(report_cache.keys(), key=lambda k: report_cache[k][1])
    for key in sorted_keys[: len(sorted_keys) // 2]:
        del report_cache[key]


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Close the upstream HTTP client."""
    if _pipeline is not None:
        await _pipeline.aclose()
        logger.info("Closed Quantive client")


@app.get("/")  # type: ignore[misc]
async def root() -> Dict[str, Any]:
    """
    Root endpoint with API information.

    Returns
    -------
    dict
        API information and status
    """
    return {
        "name": "okrlens API",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "/api/report": "Get aggregated OKR report for one or more sessions",
            "/api/sessions": "Get list of all sessions",
            "/api/connection": "Test connectivity to the Quantive API",
            "/api/metrics/{metric_id}/history": "Get progress history for one key result",
            "/health": "Health check",
        },
    }


@app.get("/health")  # type: ignore[misc]
async def health() -> Dict[str, str]:
    return {"status": "healthy"}


@app.get("/api/sessions")  # type: ignore[misc]
async def get_sessions(pipeline: AggregationPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """
    List sessions visible to the configured account.

    Returns
    -------
    dict
        Sessions with id, name, status and dates
    """
    try:
        sessions = await pipeline.list_sessions()
    except OkrLensError as e:
        raise _http_error(e, "loading sessions")

    return {
        "sessions": [
            {
                "id": s.id,
                "name": s.name,
                "status": s.status,
                "start_date": s.start_date.isoformat() if s.start_date else None,
                "end_date": s.end_date.isoformat() if s.end_date else None,
            }
            for s in sessions
            if s.id
        ]
    }


@app.get("/api/connection")  # type: ignore[misc]
async def get_connection(pipeline: AggregationPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """Check that the API is reachable with the configured credentials."""
    try:
        return await pipeline.client.test_connection()
    except OkrLensError as e:
        raise _http_error(e, "testing connection")


@app.get("/api/metrics/{metric_id}/history")  # type: ignore[misc]
async def get_metric_history(
    metric_id: str,
    window_days: Optional[int] = Query(None, ge=1, description="History window in days"),
    pipeline: AggregationPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    """
    Progress history and sparkline for a single key result.

    Returns
    -------
    dict
        metric_id, samples (date/progress_value) and the rendered sparkline
    """
    window = pipeline.settings.history_window_days if window_days is None else window_days
    try:
        samples = await ProgressHistoryService(pipeline.client).history(metric_id, window)
    except OkrLensError as e:
        raise _http_error(e, "loading history")

    return {
        "metric_id": metric_id,
        "window_days": window,
        "samples": [
            {"date": s.date.isoformat(), "progress_value": s.progress_value} for s in samples
        ],
        "sparkline": sparkline(samples, pipeline.settings.sparkline_width),
    }


@app.get("/api/report")  # type: ignore[misc]
async def get_report(
    session: Optional[List[str]] = Query(
        None, description="Session name or ID; repeat for several sessions"
    ),
    lookback_days: Optional[int] = Query(
        None, ge=1, description="Recent-activity window in days"
    ),
    use_cache: bool = Query(True, description="Use cached report if available"),
    pipeline: AggregationPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    """
    Get the aggregated OKR report.

    Parameters
    ----------
    session : Optional[List[str]]
        Sessions to aggregate (defaults to the configured sessions)
    lookback_days : Optional[int]
        Recent-activity window (defaults to the configured value)
    use_cache : bool
        Whether to use a cached report if available (default True)

    Returns
    -------
    dict
        Complete report with:
        - report_id, generated_at
        - sessions: resolved sessions
        - objectives: forest in depth-first order with nested key results
        - key_results: every key result, attached or not
        - summary: overall progress, status counts, hierarchy stats
        - fetch_path: "batched" or "sequential"
    """
    identifiers = session or pipeline.settings.sessions
    if not identifiers:
        raise HTTPException(status_code=400, detail="No session requested or configured")
    lookback = pipeline.settings.lookback_days if lookback_days is None else lookback_days

    cache_key = f"{','.join(identifiers)}_{lookback}"

    if use_cache and cache_key in report_cache:
        cached_report, cache_time = report_cache[cache_key]
        age = (datetime.now(timezone.utc) - cache_time).total_seconds()
        if age < CACHE_TTL_SECONDS:
            logger.info(f"Returning cached report (age: {age:.1f}s): {cache_key}")
            return cached_report

    logger.info(f"Creating new report: {cache_key}")
    try:
        report = await pipeline.run(identifiers, lookback_days=lookback)
    except Exception as e:
        raise _http_error(e, "creating report")

    report_dict = report.to_dict()
    report_cache[cache_key] = (report_dict, datetime.now(timezone.utc))
    _evict_old_entries()
    return report_dict


def reset_state(pipeline: Optional[AggregationPipeline] = None, new_settings: Optional[Settings] = None) -> None:
    """Drop the cached pipeline and reports (used when settings change)."""
    global _pipeline, settings
    _pipeline = pipeline
    if new_settings is not None:
        settings = new_settings
    report_cache.clear()


if __name__ == "__main__":
    import uvicorn

    port = settings.backend_port
    logger.info(f"Starting okrlens API on http://0.0.0.0:{port}")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")  # nosec B104
