"""
Collection shape matchers for Quantive responses.

The API returns collections either as a bare JSON array or wrapped in an
object under one of several keys, depending on the endpoint and API version.
Each matcher recognises one shape; ``unwrap_collection`` tries them in a fixed
priority order and the first structural match wins.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from okrlens.core.errors import MalformedResponseError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShapeMatcher:
    """A named extractor returning the collection, or None when the shape does not match."""

    name: str
    extract: Callable[[Any], Optional[List[Any]]]

    def match(self, payload: Any) -> Optional[List[Any]]:
        return self.extract(payload)


def _bare_list(payload: Any) -> Optional[List[Any]]:
    return payload if isinstance(payload, list) else None


def _wrapped(key: str) -> Callable[[Any], Optional[List[Any]]]:
    def extract(payload: Any) -> Optional[List[Any]]:
        if isinstance(payload, dict) and isinstance(payload.get(key), list):
            return payload[key]
        return None

    return extract


COLLECTION_KEYS = [
    "items",
    "data",
    "results",
    "goals",
    "metrics",
    "sessions",
    "users",
    "tasks",
    "values",
    "history",
]

DEFAULT_MATCHERS: List[ShapeMatcher] = [ShapeMatcher("bare_list", _bare_list)] + [
    ShapeMatcher(f"wrapped_{key}", _wrapped(key)) for key in COLLECTION_KEYS
]


def unwrap_collection(
    payload: Any,
    matchers: Sequence[ShapeMatcher] = DEFAULT_MATCHERS,
) -> List[Any]:
    """
    Extract a list from a collection payload.

    Parameters
    ----------
    payload : Any
        Parsed JSON body
    matchers : Sequence[ShapeMatcher]
        Matchers in priority order

    Returns
    -------
    List[Any]
        The collection, or an empty list when no matcher recognises the shape
    """
    for matcher in matchers:
        result = matcher.match(payload)
        if result is not None:
            return result
    if payload is not None:
        logger.debug(f"No collection shape matched payload of type {type(payload).__name__}")
    return []


def is_collection(payload: Any, matchers: Sequence[ShapeMatcher] = DEFAULT_MATCHERS) -> bool:
    """True when some matcher recognises the payload as a collection."""
    return any(matcher.match(payload) is not None for matcher in matchers)


def unwrap_record(payload: Any) -> Optional[Dict[str, Any]]:
    """Detail endpoints sometimes wrap the record under ``data``."""
    if not isinstance(payload, dict):
        return None
    inner = payload.get("data")
    if isinstance(inner, dict) and "id" in inner and "id" not in payload:
        return inner
    return payload


def first_present(record: Dict[str, Any], keys: Sequence[str], default: Any = None) -> Any:
    """Value of the first key that is present and not None."""
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return default


def strict_collection(path: str, payload: Any) -> List[Any]:
    """Unwrap a collection, raising when the payload is some other shape."""
    if payload is None:
        return []
    if not is_collection(payload):
        raise MalformedResponseError(
            f"Expected a collection from {path}, got {type(payload).__name__}", path=path
        )
    return unwrap_collection(payload)
