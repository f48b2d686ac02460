"""
Aggregate analytics over the fetched OKR set.

Everything here is recomputed from scratch on every run.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from okrlens.core.store import AggregateSummary, HierarchyStats, KeyResult, Objective

logger = logging.getLogger(__name__)

DEFAULT_STATUS = "not_started"
OTHER_STATUS = "other"

STATUS_ALIASES = {
    "not_started": ["NOT STARTED", "NOT_STARTED", "NOTSTARTED", "TODO", "TO DO", "OPEN", "DRAFT", "PENDING", "NEW"],
    "in_progress": ["IN PROGRESS", "IN_PROGRESS", "INPROGRESS", "ON TRACK", "ON_TRACK", "ONTRACK", "ACTIVE", "STARTED"],
    "at_risk": ["AT RISK", "AT_RISK", "ATRISK", "OFF TRACK", "OFF_TRACK", "OFFTRACK", "BEHIND", "BLOCKED"],
    "completed": ["COMPLETED", "COMPLETE", "DONE", "ACHIEVED", "CLOSED", "FINISHED"],
    "cancelled": ["CANCELLED", "CANCELED", "ABANDONED", "ARCHIVED", "DROPPED"],
}

STATUS_MAP = {alias: label for label, aliases in STATUS_ALIASES.items() for alias in aliases}


def normalize_status(status: Optional[str]) -> str:
    """Map a remote status label to a normalized bucket; unknown labels go to "other"."""
    if status is None or not str(status).strip():
        return DEFAULT_STATUS
    key = " ".join(str(status).replace("-", " ").split()).upper()
    return STATUS_MAP.get(key) or STATUS_MAP.get(key.replace(" ", "_")) or OTHER_STATUS


def overall_progress(key_results: Sequence[KeyResult]) -> float:
    """Mean key-result progress clamped to 0-100; 0.0 for an empty set."""
    if not key_results:
        return 0.0
    values = [min(max(float(kr.progress or 0.0), 0.0), 100.0) for kr in key_results]
    return sum(values) / len(values)


class AnalyticsEngine:
    """Compute the AggregateSummary for a report."""

    def recent_key_results(
        self,
        key_results: Sequence[KeyResult],
        lookback_days: int,
        now: Optional[datetime] = None,
    ) -> List[KeyResult]:
        """
        Key results modified strictly after ``now - lookback_days``.

        A missing timestamp never counts as recent. Newest first.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=lookback_days)
        recent = [kr for kr in key_results if kr.last_modified is not None and kr.last_modified > cutoff]
        recent.sort(key=lambda kr: kr.last_modified, reverse=True)
        return recent

    def status_counts(self, key_results: Sequence[KeyResult]) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        for kr in key_results:
            counts[normalize_status(kr.status)] += 1
        return dict(counts)

    def hierarchy_stats(self, objectives: Sequence[Objective]) -> HierarchyStats:
        """Per-level counts, roots, leaves and orphans in one pass over the built forest."""
        stats = HierarchyStats()
        level_counts: Dict[int, int] = defaultdict(int)
        for obj in objectives:
            level_counts[obj.level] += 1
            if obj.level == 0:
                stats.root_count += 1
            if not obj.children:
                stats.leaf_count += 1
            if obj.is_orphan:
                stats.orphan_count += 1
            stats.max_depth = max(stats.max_depth, obj.level)
        stats.level_counts = dict(sorted(level_counts.items()))
        return stats

    def summarize(
        self,
        objectives: Sequence[Objective],
        key_results: Sequence[KeyResult],
        lookback_days: int,
        now: Optional[datetime] = None,
    ) -> AggregateSummary:
        """
        Build the summary.

        Parameters
        ----------
        objectives : Sequence[Objective]
            Objectives after HierarchyBuilder has run
        key_results : Sequence[KeyResult]
            Every fetched key result, attached to an objective or not
        lookback_days : int
            Recent-activity window
        now : Optional[datetime]
            Reference time (defaults to current UTC time)

        Returns
        -------
        AggregateSummary
            Fully recomputed summary
        """
        objective_ids = {o.id for o in objectives}
        unassociated = sum(1 for kr in key_results if kr.goal_id not in objective_ids)

        summary = AggregateSummary(
            overall_progress=overall_progress(key_results),
            total_objectives=len(objectives),
            total_key_results=len(key_results),
            status_counts=self.status_counts(key_results),
            recent_updates_count=len(self.recent_key_results(key_results, lookback_days, now)),
            hierarchy_stats=self.hierarchy_stats(objectives) if objectives else None,
            unassociated_key_results=unassociated,
        )
        logger.info(
            f"Summary: {summary.total_objectives} objectives, {summary.total_key_results} key results, "
            f"{summary.overall_progress:.1f}% overall, {summary.recent_updates_count} recent updates"
        )
        return summary
