"""
Unified OKR Aggregator for okrlens.

This module turns the flat goal/metric/task/user data exposed by the Quantive
API into a single denormalized OkrReport.

The aggregator:
1. Resolves the requested sessions
2. Lists goals and metrics for every session
3. Fetches goal details, progress histories and (only where declared) tasks
4. Resolves owner names in bulk
5. Rebuilds the objective forest and renders sparklines
6. Calculates all analytics once
7. Returns an OkrReport

Fetching runs through a FetchStrategy. The batched strategy is tried first;
if it raises before a report exists, the whole pipeline runs once more with
the sequential strategy. Per-item failures are skipped inside either strategy
and never trigger the fallback.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from okrlens.core.analytics import AnalyticsEngine
from okrlens.core.batch import BatchedFetch, BatchOrchestrator, FetchStrategy, SequentialFetch
from okrlens.core.client import RemoteClient, SleepFn
from okrlens.core.config import Settings
from okrlens.core.errors import (
    AuthError,
    ConfigurationError,
    OkrLensError,
    PipelineError,
)
from okrlens.core.hierarchy import HierarchyBuilder
from okrlens.core.history import sparkline
from okrlens.core.payloads import first_present
from okrlens.core.sessions import SessionResolver
from okrlens.core.store import (
    KeyResult,
    Objective,
    OkrReport,
    ProgressSample,
    Session,
    Task,
    parse_timestamp,
)
from okrlens.core.users import UserCache, UserDirectory

logger = logging.getLogger(__name__)

# Errors no amount of re-fetching can fix
FATAL_ERRORS = (AuthError, ConfigurationError)

OWNER_KEYS = ["ownerId", "owner_id", "assigneeId", "assignee_id"]
MODIFIED_KEYS = ["dateModified", "lastModified", "modifiedAt", "updatedAt", "lastCheckInDate"]
TASK_COUNT_KEYS = ["tasksCount", "taskCount", "tasks_count"]


def goals_path(session_id: str) -> str:
    return f"/goals?sessionId={session_id}"


def metrics_path(session_id: str) -> str:
    return f"/metrics?sessionId={session_id}"


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _owner_id(raw: Dict[str, Any]) -> Optional[str]:
    owner = first_present(raw, OWNER_KEYS)
    if owner is None:
        nested = raw.get("owner") or raw.get("assignee")
        if isinstance(nested, dict):
            owner = nested.get("id")
    return str(owner) if owner else None


def _progress_percent(raw: Dict[str, Any]) -> float:
    """
    Progress on a 0-100 scale.

    ``progress`` is already a percentage; ``attainment`` is Quantive's 0-1
    fraction.
    """
    value = _to_float(raw.get("progress"))
    if value is None:
        attainment = _to_float(raw.get("attainment"))
        value = attainment * 100 if attainment is not None else 0.0
    return min(max(value, 0.0), 100.0)


def _status(raw: Dict[str, Any]) -> str:
    status = first_present(raw, ["status", "state", "closedStatus"], "")
    if isinstance(status, dict):
        status = status.get("status") or status.get("name") or ""
    return str(status)


def _goal_id(raw: Dict[str, Any]) -> Optional[str]:
    goal_id = first_present(raw, ["goalId", "goal_id", "objectiveId"])
    if goal_id is None and isinstance(raw.get("goal"), dict):
        goal_id = raw["goal"].get("id")
    return str(goal_id) if goal_id else None


def _task_count(raw: Dict[str, Any]) -> int:
    count = first_present(raw, TASK_COUNT_KEYS)
    if count is None and isinstance(raw.get("tasks"), list):
        return len(raw["tasks"])
    try:
        return max(int(count), 0) if count is not None else 0
    except (TypeError, ValueError):
        return 0


def build_objective(raw: Dict[str, Any], session_id: str) -> Objective:
    return Objective(
        id=str(raw.get("id")),
        name=str(first_present(raw, ["name", "title"], "")),
        description=str(raw.get("description") or ""),
        owner_id=_owner_id(raw),
        status=_status(raw),
        progress=_progress_percent(raw),
        session_id=str(raw.get("sessionId") or session_id),
        last_modified=parse_timestamp(first_present(raw, MODIFIED_KEYS)),
        raw=dict(raw),
    )


def build_key_result(raw: Dict[str, Any], session_id: str) -> KeyResult:
    unit = raw.get("unit")
    if unit is None and isinstance(raw.get("format"), dict):
        unit = raw["format"].get("suffix") or raw["format"].get("prefix")
    return KeyResult(
        id=str(raw.get("id")),
        name=str(first_present(raw, ["name", "title"], "")),
        description=str(raw.get("description") or ""),
        owner_id=_owner_id(raw),
        status=_status(raw),
        progress=_progress_percent(raw),
        current_value=_to_float(first_present(raw, ["actual", "currentValue", "current_value"])),
        target_value=_to_float(first_present(raw, ["target", "targetValue", "target_value"])),
        unit=str(unit or ""),
        goal_id=_goal_id(raw),
        session_id=str(raw.get("sessionId") or session_id),
        task_count=_task_count(raw),
        last_modified=parse_timestamp(first_present(raw, MODIFIED_KEYS)),
    )


def build_task(raw: Dict[str, Any]) -> Task:
    return Task(
        id=str(raw.get("id") or ""),
        name=str(first_present(raw, ["name", "title"], "")),
        owner_id=_owner_id(raw),
        status=_status(raw),
        description=str(raw.get("description") or ""),
    )


def merge_objective_detail(objective: Objective, detail: Dict[str, Any]) -> None:
    """Overlay fields from the goal detail payload onto a listed objective."""
    merged = {**objective.raw, **{k: v for k, v in detail.items() if v is not None}}
    refreshed = build_objective(merged, objective.session_id)
    objective.name = refreshed.name or objective.name
    objective.description = refreshed.description or objective.description
    objective.owner_id = refreshed.owner_id or objective.owner_id
    objective.status = refreshed.status or objective.status
    objective.progress = refreshed.progress
    objective.last_modified = refreshed.last_modified or objective.last_modified
    objective.raw = merged


def combine_histories(histories: Sequence[List[ProgressSample]]) -> List[ProgressSample]:
    """Per-date mean across several key-result series."""
    by_date: Dict[datetime, List[float]] = defaultdict(list)
    for samples in histories:
        for sample in samples:
            by_date[sample.date].append(sample.progress_value)
    return [
        ProgressSample(date=d, progress_value=sum(values) / len(values))
        for d, values in sorted(by_date.items())
    ]


class AggregationPipeline:
    """
    Top-level coordinator producing OkrReports.

    Parameters
    ----------
    settings : Settings
        Validated configuration
    client : Optional[RemoteClient]
        API client; built from settings when omitted
    sleep : SleepFn
        Async sleep used for inter-chunk delays and 429 waits
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[RemoteClient] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.settings = settings
        self._sleep = sleep
        self.client = client or RemoteClient(
            api_token=settings.api_token,
            account_id=settings.account_id,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            sleep=sleep,
        )
        self.hierarchy_builder = HierarchyBuilder(settings.parent_fields)
        self.analytics = AnalyticsEngine()
        self.report_counter = 0

        logger.info(f"Initialized AggregationPipeline against {self.client.base_url}")

    def batched_strategy(self) -> FetchStrategy:
        orchestrator = BatchOrchestrator(
            self.client,
            chunk_size=self.settings.chunk_size,
            chunk_delay=self.settings.chunk_delay,
            sleep=self._sleep,
        )
        return BatchedFetch(self.client, orchestrator)

    def sequential_strategy(self) -> FetchStrategy:
        return SequentialFetch(self.client)

    async def run(
        self,
        session_identifiers: Optional[Sequence[str]] = None,
        lookback_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> OkrReport:
        """
        Build a report, falling back to sequential fetching once on failure.

        This is the main entry point.

        Parameters
        ----------
        session_identifiers : Optional[Sequence[str]]
            Session names or UUIDs (defaults to ``settings.sessions``)
        lookback_days : Optional[int]
            Recent-activity window (defaults to ``settings.lookback_days``)
        now : Optional[datetime]
            Reference time for recency and history windows

        Returns
        -------
        OkrReport
            Complete report with all analytics pre-calculated

        Raises
        ------
        AuthError, ConfigurationError
            Immediately, without fallback
        OkrLensError
            When the sequential fallback fails as well
        """
        identifiers = list(session_identifiers or self.settings.sessions)
        if not identifiers:
            raise ConfigurationError("No sessions requested")
        lookback = self.settings.lookback_days if lookback_days is None else lookback_days

        try:
            return await self._run_path(self.batched_strategy(), identifiers, lookback, now)
        except FATAL_ERRORS:
            raise
        except Exception as e:
            logger.warning(
                f"Batched pipeline failed ({type(e).__name__}: {e}); "
                f"retrying with sequential fetching",
                exc_info=True,
            )

        try:
            return await self._run_path(self.sequential_strategy(), identifiers, lookback, now)
        except OkrLensError:
            logger.error("Sequential fallback failed", exc_info=True)
            raise
        except Exception as e:
            logger.error("Sequential fallback failed", exc_info=True)
            raise PipelineError(f"Sequential fallback failed: {e}") from e

    async def _run_path(
        self,
        strategy: FetchStrategy,
        identifiers: List[str],
        lookback_days: int,
        now: Optional[datetime],
    ) -> OkrReport:
        report_start = datetime.now(timezone.utc)
        now = now or report_start
        self.report_counter += 1
        settings = self.settings

        logger.info(
            f"Creating report #{self.report_counter} ({strategy.name}): "
            f"sessions={identifiers}, lookback={lookback_days}d"
        )

        # Step 1: Resolve sessions (all or nothing)
        sessions = await SessionResolver(self.client).resolve(identifiers)

        # Step 2: List goals and metrics for every session
        objectives, key_results = await self._load_session_records(strategy, sessions)

        # Step 3: Goal details
        details = await strategy.fetch_objective_details([o.id for o in objectives])
        for obj in objectives:
            if obj.id in details:
                merge_objective_detail(obj, details[obj.id])

        # Step 4: Progress histories
        if not settings.skip_history:
            histories = await strategy.fetch_progress_histories(
                [kr.id for kr in key_results], settings.history_window_days, now
            )
            for kr in key_results:
                kr.progress_history = histories.get(kr.id, [])
        else:
            logger.info("Skipping progress histories")

        # Step 5: Tasks, only where a key result declares some
        task_lists = await strategy.fetch_task_lists({kr.id: kr.task_count for kr in key_results})
        for kr in key_results:
            kr.tasks = [build_task(t) for t in task_lists.get(kr.id, [])]

        # Step 6: Owner names (fresh cache per path)
        directory = UserDirectory(self.client, UserCache(), bulk_fetch=settings.bulk_user_fetch)
        owner_ids = [o.owner_id for o in objectives] + [kr.owner_id for kr in key_results]
        owner_ids += [t.owner_id for kr in key_results for t in kr.tasks]
        await directory.resolve(owner_ids)
        for obj in objectives:
            obj.owner_name = directory.name_for(obj.owner_id)
        for kr in key_results:
            kr.owner_name = directory.name_for(kr.owner_id)
            for task in kr.tasks:
                task.owner_name = directory.name_for(task.owner_id)

        # Step 7: Hierarchy
        ordered = self.hierarchy_builder.build(objectives)

        # Step 8: Attach key results by goal ID
        by_id = {o.id: o for o in ordered}
        unassociated: List[str] = []
        for kr in key_results:
            owner = by_id.get(kr.goal_id) if kr.goal_id else None
            if owner is None:
                unassociated.append(kr.id)
                continue
            owner.key_results.append(kr)
        if unassociated:
            logger.warning(
                f"{len(unassociated)} key result(s) match no fetched objective: "
                f"{', '.join(unassociated)}"
            )

        # Step 9: Sparklines
        for obj in ordered:
            obj.progress_history = combine_histories([kr.progress_history for kr in obj.key_results])
        if not settings.skip_sparklines and not settings.skip_history:
            width = settings.sparkline_width
            for kr in key_results:
                kr.sparkline = sparkline(kr.progress_history, width)
            for obj in ordered:
                obj.sparkline = sparkline(obj.progress_history, width)

        # Step 10: Analytics
        summary = self.analytics.summarize(ordered, key_results, lookback_days, now)
        recent = self.analytics.recent_key_results(key_results, lookback_days, now)

        report_end = datetime.now(timezone.utc)
        elapsed_ms = (report_end - report_start).total_seconds() * 1000

        report = OkrReport(
            report_id=str(uuid.uuid4()),
            generated_at=report_start,
            sessions=sessions,
            objectives=ordered,
            key_results=key_results,
            summary=summary,
            recent_key_results=[kr.id for kr in recent],
            orphan_ids=list(self.hierarchy_builder.orphans),
            fetch_path=strategy.name,
            lookback_days=lookback_days,
            elapsed_ms=round(elapsed_ms, 1),
        )

        logger.info(
            f"Report #{self.report_counter} created in {elapsed_ms:.1f}ms: "
            f"{len(ordered)} objectives, {len(key_results)} key results, "
            f"{self.client.request_count} requests so far"
        )
        return report

    async def _load_session_records(
        self, strategy: FetchStrategy, sessions: Sequence[Session]
    ) -> Tuple[List[Objective], List[KeyResult]]:
        """List goals and metrics per session, deduplicated by ID in session order."""
        paths = [goals_path(s.id) for s in sessions] + [metrics_path(s.id) for s in sessions]
        collections = await strategy.fetch_collections(paths)
        goal_lists = collections[: len(sessions)]
        metric_lists = collections[len(sessions) :]

        objectives: List[Objective] = []
        key_results: List[KeyResult] = []
        seen_goals = set()
        seen_metrics = set()

        for session, goals, metrics in zip(sessions, goal_lists, metric_lists):
            for raw in goals:
                if not isinstance(raw, dict) or not raw.get("id"):
                    continue
                goal_id = str(raw["id"])
                if goal_id in seen_goals:
                    continue
                seen_goals.add(goal_id)
                objectives.append(build_objective(raw, session.id))

            for raw in metrics:
                if not isinstance(raw, dict) or not raw.get("id"):
                    continue
                metric_id = str(raw["id"])
                if metric_id in seen_metrics:
                    continue
                seen_metrics.add(metric_id)
                key_results.append(build_key_result(raw, session.id))

            logger.info(f"Session {session.name!r}: {len(goals)} goals, {len(metrics)} metrics")

        return objectives, key_results

    async def list_sessions(self) -> List[Session]:
        return list(await SessionResolver(self.client).available_sessions())

    async def aclose(self) -> None:
        await self.client.aclose()
