"""
Denormalized OKR Data Models for okrlens.

This module defines the snapshot-based data structures handed to rendering
collaborators. Owner names are embedded, children are pre-linked, and all
analytics are pre-calculated so renderers never call back into the API.

Key principles:
- ALL timestamps must be timezone-aware (UTC)
- ALL relationships are denormalized (owner names, key results, tasks)
- ALL metrics are pre-calculated (no runtime aggregation)
- Reports are rebuilt from scratch on every run (no incremental updates)
"""

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an API timestamp into a timezone-aware datetime.

    Accepts ISO-8601 strings (with or without ``Z``), epoch milliseconds, and
    datetime objects. Naive values are treated as UTC.

    Returns
    -------
    Optional[datetime]
        Parsed timestamp, or None when missing or unparseable
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Quantive emits epoch milliseconds in some payloads
        seconds = value / 1000.0 if value > 10_000_000_000 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class Session:
    """
    A time-boxed OKR planning period. Immutable once fetched.

    Parameters
    ----------
    id : str
        Session UUID
    name : str
        Human-readable session name (e.g. "Q4 2024")
    start_date : Optional[datetime]
        Session start (timezone-aware UTC)
    end_date : Optional[datetime]
        Session end (timezone-aware UTC)
    status : str
        Remote status label (e.g. "open", "archived")
    """

    id: str
    name: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: str = ""


@dataclass
class ProgressSample:
    """One point of a metric's progress series."""

    date: datetime
    progress_value: float

    def __post_init__(self) -> None:
        """Validate timezone-aware timestamp."""
        if self.date.tzinfo is None:
            raise ValueError("ProgressSample date must be timezone-aware")


@dataclass
class UserRecord:
    """Resolved owner/assignee."""

    id: str
    display_name: str


@dataclass
class Task:
    """
    A to-do item owned by exactly one key result.

    Parameters
    ----------
    id : str
        Task identifier
    name : str
        Task title
    owner_id : Optional[str]
        Assignee ID
    owner_name : str
        Assignee display name (embedded, no lookup needed)
    status : str
        Remote status label
    description : str
        Task description
    """

    id: str
    name: str
    owner_id: Optional[str] = None
    owner_name: str = "Unassigned"
    status: str = ""
    description: str = ""


@dataclass
class KeyResult:
    """
    Denormalized key result (a Quantive "metric").

    A key result belongs to the objective whose ``id`` equals ``goal_id``.
    When no fetched objective matches, the key result is still counted in the
    summary but appears under no objective.

    Parameters
    ----------
    id : str
        Metric identifier
    name : str
        Metric title
    goal_id : Optional[str]
        ID of the owning objective (value match, not a reference)
    progress : float
        0-100 completion percentage
    current_value : Optional[float]
        Latest actual value
    target_value : Optional[float]
        Target value
    unit : str
        Unit label ("%", "$", "users", ...)
    task_count : int
        Declared number of tasks; tasks are fetched only when > 0
    tasks : List[Task]
        Fetched tasks
    progress_history : List[ProgressSample]
        Progress samples within the history window, ascending
    sparkline : str
        Pre-rendered trend glyphs
    last_modified : Optional[datetime]
        Last update time (timezone-aware UTC)
    """

    id: str
    name: str
    description: str = ""
    owner_id: Optional[str] = None
    owner_name: str = "Unassigned"
    status: str = ""
    progress: float = 0.0
    current_value: Optional[float] = None
    target_value: Optional[float] = None
    unit: str = ""
    goal_id: Optional[str] = None
    session_id: str = ""
    task_count: int = 0
    tasks: List[Task] = field(default_factory=list)
    progress_history: List[ProgressSample] = field(default_factory=list)
    sparkline: str = ""
    last_modified: Optional[datetime] = None

    def __post_init__(self) -> None:
        """Validate timezone-aware timestamp."""
        if self.last_modified and self.last_modified.tzinfo is None:
            raise ValueError(f"KeyResult {self.id}: last_modified must be timezone-aware")


@dataclass
class Objective:
    """
    Denormalized objective (a Quantive "goal").

    ``level``, ``children`` and ``hierarchical_index`` are assigned once by
    HierarchyBuilder and never touched afterwards.

    Parameters
    ----------
    id : str
        Goal identifier
    name : str
        Goal title
    parent_id : Optional[str]
        Declared parent goal ID (may point outside the fetched set)
    session_id : str
        Session the goal was fetched from
    progress : float
        0-100 completion percentage
    children : List[str]
        IDs of direct child objectives
    level : int
        Depth in the forest (0 = root)
    hierarchical_index : str
        Dotted ordinal path, e.g. "2.1.3"
    is_orphan : bool
        True when ``parent_id`` names an objective outside the fetched set
    key_results : List[KeyResult]
        Key results whose ``goal_id`` equals this objective's ``id``
    raw : Dict[str, Any]
        Merged list/detail payload, used for parent-field detection
    """

    id: str
    name: str
    description: str = ""
    owner_id: Optional[str] = None
    owner_name: str = "Unassigned"
    status: str = ""
    progress: float = 0.0
    parent_id: Optional[str] = None
    session_id: str = ""

    # Computed by HierarchyBuilder
    children: List[str] = field(default_factory=list)
    level: int = 0
    hierarchical_index: str = ""
    is_orphan: bool = False

    key_results: List[KeyResult] = field(default_factory=list)
    progress_history: List[ProgressSample] = field(default_factory=list)
    sparkline: str = ""
    last_modified: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        """Validate timezone-aware timestamp."""
        if self.last_modified and self.last_modified.tzinfo is None:
            raise ValueError(f"Objective {self.id}: last_modified must be timezone-aware")


@dataclass
class HierarchyStats:
    """Shape of the objective forest."""

    level_counts: Dict[int, int] = field(default_factory=dict)
    root_count: int = 0
    leaf_count: int = 0
    orphan_count: int = 0
    max_depth: int = 0


@dataclass
class AggregateSummary:
    """
    Pre-calculated analytics for one report.

    Notes
    -----
    - ``overall_progress`` is the mean key-result progress, 0-100, never NaN
    - ``total_key_results`` includes key results attached to no objective
    - ``status_counts`` keys are normalized labels (see analytics module)
    """

    overall_progress: float
    total_objectives: int
    total_key_results: int
    status_counts: Dict[str, int] = field(default_factory=dict)
    recent_updates_count: int = 0
    hierarchy_stats: Optional[HierarchyStats] = None
    unassociated_key_results: int = 0


def _serialize(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _serialize(v) for k, v in value.items()}
    if hasattr(value, "__dataclass_fields__"):
        return {
            k: _serialize(v)
            for k, v in vars(value).items()
            if k != "raw"
        }
    return value


@dataclass
class OkrReport:
    """
    Immutable snapshot of the aggregated OKR model for rendering.

    Parameters
    ----------
    report_id : str
        Unique report identifier
    generated_at : datetime
        When the report was created (must be timezone-aware UTC)
    sessions : List[Session]
        Resolved sessions, in requested order
    objectives : List[Objective]
        Objective forest in depth-first (hierarchical index) order
    key_results : List[KeyResult]
        Every fetched key result, attached or not
    summary : AggregateSummary
        Pre-calculated analytics
    recent_key_results : List[str]
        IDs of key results updated within the lookback window
    orphan_ids : List[str]
        Objectives whose parent lies outside the fetched set
    fetch_path : str
        Which pipeline path produced this report
    lookback_days : int
        Recent-activity window used for the summary
    elapsed_ms : float
        Wall-clock time spent building the report
    """

    report_id: str
    generated_at: datetime
    sessions: List[Session] = field(default_factory=list)
    objectives: List[Objective] = field(default_factory=list)
    key_results: List[KeyResult] = field(default_factory=list)
    summary: Optional[AggregateSummary] = None
    recent_key_results: List[str] = field(default_factory=list)
    orphan_ids: List[str] = field(default_factory=list)
    fetch_path: Literal["batched", "sequential"] = "batched"
    lookback_days: int = 7
    elapsed_ms: float = 0.0
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        """Validate timezone-aware timestamps."""
        if self.generated_at.tzinfo is None:
            raise ValueError("Report generated_at must be timezone-aware")

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert report to JSON-serializable dictionary.

        Key results are nested under their objectives and also listed flat
        under ``key_results`` so unassociated ones stay visible.

        Returns
        -------
        dict
            JSON-serializable representation
        """
        return {
            "report_id": self.report_id,
            "generated_at": self.generated_at.isoformat(),
            "sessions": _serialize(self.sessions),
            "objectives": _serialize(self.objectives),
            "key_results": _serialize(self.key_results),
            "summary": _serialize(self.summary) if self.summary else None,
            "recent_key_results": list(self.recent_key_results),
            "orphan_ids": list(self.orphan_ids),
            "fetch_path": self.fetch_path,
            "lookback_days": self.lookback_days,
            "elapsed_ms": self.elapsed_ms,
            "timezone": self.timezone,
        }

    def to_json(self) -> str:
        """
        Convert report to JSON string.

        Returns
        -------
        str
            JSON string representation
        """
        return json.dumps(self.to_dict(), indent=2)
