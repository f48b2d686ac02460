"""
Error taxonomy for okrlens.

Every error carries a machine-readable code and a retryability flag so the
pipeline can decide between skipping an item, retrying a request, falling
back to the sequential path, or failing the run.

Item-level errors (one goal, one user, one history series) are caught close
to where they happen and replaced with safe defaults. Pipeline-level errors
abort the batched path and trigger the sequential fallback.
"""

from typing import Any, Dict, List, Optional


class OkrLensError(Exception):
    """Base exception for all okrlens errors."""

    code: str = "OKR_UNKNOWN"
    is_retryable: bool = False

    def __init__(self, message: str = "", context: Optional[Dict[str, Any]] = None):
        self.message = message or self.code
        self.context: Dict[str, Any] = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "is_retryable": self.is_retryable,
            "context": self.context,
        }


class ConfigurationError(OkrLensError):
    """Missing, placeholder, or malformed configuration. Always fatal."""

    code = "OKR_CONFIG_INVALID"


class ApiError(OkrLensError):
    """Non-success response from the remote API."""

    code = "OKR_API_ERROR"

    def __init__(
        self,
        message: str = "",
        status: Optional[int] = None,
        path: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.status = status
        self.path = path
        ctx = dict(context or {})
        if status is not None:
            ctx.setdefault("status", status)
        if path is not None:
            ctx.setdefault("path", path)
        super().__init__(message, ctx)


class AuthError(ApiError):
    """401/403. The token or account scope is wrong; retrying cannot help."""

    code = "OKR_API_AUTH"


class NotFoundError(ApiError):
    """404. Often benign, e.g. a metric without recorded history."""

    code = "OKR_API_NOT_FOUND"


class RateLimitError(ApiError):
    """429. The client has already waited ``retry_after`` seconds."""

    code = "OKR_API_RATE_LIMIT"
    is_retryable = True

    def __init__(
        self,
        message: str = "",
        status: Optional[int] = 429,
        path: Optional[str] = None,
        retry_after: float = 0.0,
    ):
        self.retry_after = retry_after
        super().__init__(message, status=status, path=path, context={"retry_after": retry_after})


class MalformedResponseError(ApiError):
    """A 200 whose body is an HTML error page or not parseable JSON."""

    code = "OKR_API_MALFORMED"


class TransportError(OkrLensError):
    """Connection-level failure (DNS, reset, timeout)."""

    code = "OKR_TRANSPORT"
    is_retryable = True


class UnresolvedIdentifierError(OkrLensError):
    """
    One or more session identifiers matched no session.

    Carries every unresolved identifier and every available session name so a
    single message is enough to fix the configuration.
    """

    code = "OKR_SESSION_UNRESOLVED"

    def __init__(self, unresolved: List[str], available: List[str]):
        self.unresolved = list(unresolved)
        self.available = list(available)
        quoted = ", ".join(f'"{identifier}"' for identifier in self.unresolved)
        if self.available:
            names = ", ".join(f'"{name}"' for name in self.available)
            available_text = f"Available session names: {names}"
        else:
            available_text = "No sessions with names found"
        message = f"Could not resolve session(s) {quoted}. {available_text}"
        super().__init__(
            message,
            {"unresolved": self.unresolved, "available": self.available},
        )


class PipelineError(OkrLensError):
    """The sequential fallback failed after the batched path had already failed."""

    code = "OKR_PIPELINE_FAILED"
