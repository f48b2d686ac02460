"""
Configuration loading for okrlens.

Settings come from an optional ``config.json`` next to the project root, with
environment variables taking precedence. Credentials are never stored here;
they are read from the environment or the JSON file supplied by the operator.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from okrlens.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://app.us.quantive.com/results/api/v1"
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config.json"
DEFAULT_PARENT_FIELDS = ["parentId", "parentGoalId", "parent_id", "parent", "alignedTo"]

# (settings attribute, env var, json key)
_ENV_KEYS = [
    ("api_token", "QUANTIVE_API_TOKEN", "api_token"),
    ("account_id", "QUANTIVE_ACCOUNT_ID", "account_id"),
    ("base_url", "QUANTIVE_BASE_URL", "base_url"),
    ("lookback_days", "LOOKBACK_DAYS", "lookback_days"),
    ("log_level", "LOG_LEVEL", "log_level"),
    ("skip_history", "SKIP_HISTORY", "skip_history"),
    ("skip_sparklines", "SKIP_SPARKLINES", "skip_sparklines"),
    ("bulk_user_fetch", "BULK_USER_FETCH", "bulk_user_fetch"),
    ("chunk_size", "CHUNK_SIZE", "chunk_size"),
    ("chunk_delay_ms", "CHUNK_DELAY_MS", "chunk_delay_ms"),
    ("history_window_days", "HISTORY_WINDOW_DAYS", "history_window_days"),
    ("sparkline_width", "SPARKLINE_WIDTH", "sparkline_width"),
    ("request_timeout", "REQUEST_TIMEOUT", "request_timeout"),
    ("backend_port", "BACKEND_PORT", "backend_port"),
]


@dataclass
class Settings:
    """
    Runtime configuration.

    Parameters
    ----------
    api_token : str
        Quantive bearer token
    account_id : str
        Value of the ``gtmhub-accountId`` header
    sessions : List[str]
        Session names or UUIDs to aggregate, in report order
    lookback_days : int
        Window for "recently updated" key results
    skip_history : bool
        Skip progress-history fetches (and therefore sparklines)
    skip_sparklines : bool
        Fetch history but do not render sparklines
    bulk_user_fetch : bool
        Resolve owners with one bulk call before per-user fallback
    parent_fields : List[str]
        Candidate parent-reference fields, highest priority first
    """

    api_token: str = ""
    account_id: str = ""
    base_url: str = DEFAULT_BASE_URL
    sessions: List[str] = field(default_factory=list)
    lookback_days: int = 7
    log_level: str = "INFO"
    skip_history: bool = False
    skip_sparklines: bool = False
    bulk_user_fetch: bool = True
    chunk_size: int = 25
    chunk_delay_ms: int = 100
    history_window_days: int = 30
    sparkline_width: int = 10
    request_timeout: float = 30.0
    parent_fields: List[str] = field(default_factory=lambda: list(DEFAULT_PARENT_FIELDS))
    backend_port: int = 4301

    @property
    def chunk_delay(self) -> float:
        return self.chunk_delay_ms / 1000.0

    def validate(self, require_sessions: bool = True) -> None:
        """
        Validate credentials and numeric settings.

        Raises
        ------
        ConfigurationError
            On the first invalid setting
        """
        validate_api_token(self.api_token)
        validate_account_id(self.account_id)
        if require_sessions and not self.sessions:
            raise ConfigurationError("At least one session name or ID must be configured")
        if self.lookback_days <= 0:
            raise ConfigurationError(f"Lookback days must be positive, got {self.lookback_days}")
        if self.chunk_size <= 0:
            raise ConfigurationError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.sparkline_width <= 0:
            raise ConfigurationError(
                f"Sparkline width must be positive, got {self.sparkline_width}"
            )


def _is_placeholder(value: str) -> bool:
    lowered = value.strip().lower()
    return lowered.startswith("your-") and lowered.endswith("-here")


def validate_api_token(token: Optional[str]) -> None:
    if not token or not isinstance(token, str) or not token.strip():
        raise ConfigurationError("API token must be a non-empty string")
    if _is_placeholder(token):
        raise ConfigurationError("Please replace the placeholder API token with your real token")
    if len(token.strip()) < 10:
        raise ConfigurationError("API token appears to be invalid (too short)")


def validate_account_id(account_id: Optional[str]) -> None:
    if not account_id or not isinstance(account_id, str) or not account_id.strip():
        raise ConfigurationError("Account ID must be a non-empty string")
    if _is_placeholder(account_id):
        raise ConfigurationError("Please replace the placeholder account ID with your real one")


def _split_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part).strip() for part in value if str(part).strip()]


def _coerce(current: Any, raw: Any, name: str) -> Any:
    """Coerce a raw env/json value to the type of the field default."""
    try:
        if isinstance(current, bool):
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in ("1", "true", "yes", "on")
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from e
    return str(raw)


def load_settings(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Load settings from config.json and the environment.

    Parameters
    ----------
    path : Optional[Path]
        JSON config file. Defaults to ``config.json`` at the project root;
        a missing file is not an error.
    env : Optional[Mapping[str, str]]
        Environment mapping (defaults to ``os.environ``)

    Returns
    -------
    Settings
        Unvalidated settings; call ``validate()`` before use
    """
    env = os.environ if env is None else env
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH

    file_values: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "r") as f:
                file_values = json.load(f)
            logger.info(f"Loaded configuration from {config_path}")
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Could not load {config_path}: {e}") from e
    else:
        logger.debug(f"No config file at {config_path}, using environment only")

    settings = Settings()

    for attr, env_key, json_key in _ENV_KEYS:
        raw = env.get(env_key)
        if raw is None or raw == "":
            raw = file_values.get(json_key)
        if raw is None or raw == "":
            continue
        setattr(settings, attr, _coerce(getattr(settings, attr), raw, env_key))

    sessions = _split_list(env.get("QUANTIVE_SESSIONS")) or _split_list(env.get("SESSION_ID"))
    if not sessions:
        sessions = _split_list(file_values.get("sessions")) or _split_list(
            file_values.get("session_id")
        )
    settings.sessions = sessions

    parent_fields = _split_list(env.get("PARENT_FIELDS")) or _split_list(
        file_values.get("parent_fields")
    )
    if parent_fields:
        settings.parent_fields = parent_fields

    return settings


def configure_logging(level: str = "INFO") -> None:
    """Apply LOG_LEVEL to the root logger."""
    numeric = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric, int):
        logger.warning(f"Unknown log level {level!r}, falling back to INFO")
        numeric = logging.INFO
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
