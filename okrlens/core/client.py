"""
Authenticated HTTP client for the Quantive Results API.

Wraps ``httpx.AsyncClient`` with the Quantive auth headers, single and
batched GETs, and response classification. The only retry-related behaviour
here is the 429 wait: the client sleeps for the server-specified window before
handing the response back, so the caller's one retry starts clean.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx

from okrlens.core.config import DEFAULT_BASE_URL
from okrlens.core.errors import (
    ApiError,
    AuthError,
    MalformedResponseError,
    NotFoundError,
    RateLimitError,
    TransportError,
)
from okrlens.core.payloads import strict_collection

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

DEFAULT_RETRY_AFTER_SECONDS = 1.0
MAX_RETRY_AFTER_SECONDS = 60.0
_HTML_PREFIXES = ("<!doctype", "<html", "<head", "<body")


@dataclass
class ApiResponse:
    """Raw response captured from one GET."""

    path: str
    status: int
    text: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def looks_like_html(self) -> bool:
        return self.text.lstrip()[:16].lower().startswith(_HTML_PREFIXES)

    def json(self) -> Any:
        return json.loads(self.text)


BatchResult = Union[ApiResponse, BaseException]


def retry_after_seconds(headers: Dict[str, str]) -> float:
    """Parse ``Retry-After`` (seconds), defaulting to 1s and capping at 60s."""
    raw = None
    for key, value in headers.items():
        if key.lower() == "retry-after":
            raw = value
            break
    if raw is None:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS
    return max(0.0, min(seconds, MAX_RETRY_AFTER_SECONDS))


def classify(response: ApiResponse) -> Any:
    """
    Validate a response and return its parsed body.

    Parameters
    ----------
    response : ApiResponse
        Response to classify

    Returns
    -------
    Any
        Parsed JSON, or None for an empty 2xx body

    Raises
    ------
    AuthError
        401/403
    NotFoundError
        404
    RateLimitError
        429
    ApiError
        Any other non-2xx status
    MalformedResponseError
        2xx whose body is an HTML page or not JSON
    """
    status = response.status
    path = response.path

    if status in (401, 403):
        raise AuthError(
            f"Authentication failed ({status}) for {path}; check API token and account ID",
            status=status,
            path=path,
        )
    if status == 404:
        raise NotFoundError(f"Not found: {path}", status=status, path=path)
    if status == 429:
        raise RateLimitError(
            f"Rate limited on {path}",
            path=path,
            retry_after=retry_after_seconds(response.headers),
        )
    if not response.ok:
        snippet = response.text[:200]
        raise ApiError(f"HTTP {status} for {path}: {snippet}", status=status, path=path)

    if response.looks_like_html:
        raise MalformedResponseError(
            f"Received HTML instead of JSON from {path}", status=status, path=path
        )
    if not response.text.strip():
        return None
    try:
        return response.json()
    except ValueError as e:
        raise MalformedResponseError(
            f"Unparseable JSON from {path}: {e}", status=status, path=path
        ) from e


class RemoteClient:
    """
    Quantive REST client.

    Parameters
    ----------
    api_token : str
        Bearer token
    account_id : str
        Account scope sent as ``gtmhub-accountId``
    base_url : str
        API root
    timeout : float
        Per-request timeout in seconds
    transport : Optional[httpx.AsyncBaseTransport]
        Custom transport (``httpx.MockTransport`` in tests)
    sleep : SleepFn
        Async sleep used for 429 waits
    """

    def __init__(
        self,
        api_token: str,
        account_id: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.api_token = api_token
        self.account_id = account_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._sleep = sleep
        self.request_count = 0
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "gtmhub-accountId": self.account_id,
        }

    async def __aenter__(self) -> "RemoteClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def get(self, path: str) -> ApiResponse:
        """
        Issue one GET and capture the response without classifying it.

        A 429 sleeps for the ``Retry-After`` window before returning.

        Raises
        ------
        TransportError
            Connection failure or timeout
        """
        self.request_count += 1
        started = time.monotonic()
        try:
            resp = await self._http.get(path)
        except httpx.HTTPError as e:
            raise TransportError(f"GET {path} failed: {e}", {"path": path}) from e

        response = ApiResponse(
            path=path,
            status=resp.status_code,
            text=resp.text,
            headers=dict(resp.headers),
        )
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.debug(f"GET {path} -> {response.status} ({elapsed_ms:.0f}ms)")

        if response.status == 429:
            wait = retry_after_seconds(response.headers)
            logger.warning(f"Rate limited on {path}, waiting {wait:.1f}s")
            await self._sleep(wait)
        return response

    async def batch_get(self, paths: Sequence[str]) -> List[BatchResult]:
        """
        Issue all GETs concurrently.

        Returns
        -------
        List[Union[ApiResponse, BaseException]]
            One entry per path, in submission order; failed requests appear
            as their exception
        """
        if not paths:
            return []
        return list(
            await asyncio.gather(*(self.get(path) for path in paths), return_exceptions=True)
        )

    async def get_json(self, path: str, retry_on_rate_limit: bool = True) -> Any:
        """GET, classify and parse; a 429 is retried once after the wait."""
        response = await self.get(path)
        try:
            return classify(response)
        except RateLimitError:
            if not retry_on_rate_limit:
                raise
            logger.info(f"Retrying {path} after rate limit")
            return classify(await self.get(path))

    async def get_collection(self, path: str) -> List[Any]:
        return strict_collection(path, await self.get_json(path))

    async def list_sessions(self) -> List[Dict[str, Any]]:
        return await self.get_collection("/sessions")

    async def list_goals(self, session_id: str) -> List[Dict[str, Any]]:
        return await self.get_collection(f"/goals?sessionId={session_id}")

    async def list_metrics(self, session_id: str) -> List[Dict[str, Any]]:
        return await self.get_collection(f"/metrics?sessionId={session_id}")

    async def test_connection(self) -> Dict[str, Any]:
        """Fetch the session list and report reachability."""
        started = time.monotonic()
        sessions = await self.list_sessions()
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(f"Connection OK: {len(sessions)} sessions in {elapsed_ms:.0f}ms")
        return {"ok": True, "session_count": len(sessions), "elapsed_ms": round(elapsed_ms, 1)}


def goal_detail_path(goal_id: str) -> str:
    return f"/goals/{goal_id}"


def history_path(metric_id: str, since: str) -> str:
    return f"/metrics/{metric_id}/history?from={since}"


def tasks_path(metric_id: str) -> str:
    return f"/tasks?metricId={metric_id}"


def users_bulk_path(user_ids: Sequence[str]) -> str:
    return f"/users?ids={','.join(user_ids)}"


def user_path(user_id: str) -> str:
    return f"/users/{user_id}"
