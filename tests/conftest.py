"""Shared fixtures: a fake Quantive server behind httpx.MockTransport."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union
from urllib.parse import unquote

import httpx
import pytest

from okrlens.core.client import RemoteClient
from okrlens.core.config import Settings

BASE_URL = "https://quantive.test/results/api/v1"
BASE_PATH = "/results/api/v1"
API_TOKEN = "test-token-0123456789"
ACCOUNT_ID = "acct-42"

HTML_PAGE = "<!DOCTYPE html><html><body>Sign in</body></html>"


class FakeQuantive:
    """
    In-memory stand-in for the Quantive API.

    Routes map a path (with or without query string) to one or more canned
    responses. With several responses the first ones are served once each in
    order and the last one repeats. Unknown paths answer 404.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, List[Union[Dict[str, Any], Exception]]] = {}
        self.requests: List[str] = []
        self.request_headers: List[httpx.Headers] = []

    def add(
        self,
        path: str,
        body: Any = None,
        status: int = 200,
        headers: Optional[Dict[str, str]] = None,
        text: Optional[str] = None,
    ) -> "FakeQuantive":
        self.routes.setdefault(path, []).append(
            {"body": body, "status": status, "headers": headers or {}, "text": text}
        )
        return self

    def fail(self, path: str, error: Optional[Exception] = None) -> "FakeQuantive":
        self.routes.setdefault(path, []).append(error or httpx.ConnectError("connection refused"))
        return self

    def count(self, path: str) -> int:
        return sum(1 for p in self.requests if p == path)

    def requested(self, prefix: str) -> List[str]:
        return [p for p in self.requests if p.startswith(prefix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        key = unquote(request.url.raw_path.decode())
        if key.startswith(BASE_PATH):
            key = key[len(BASE_PATH) :]
        self.requests.append(key)
        self.request_headers.append(request.headers)

        queue = self.routes.get(key) or self.routes.get(key.split("?", 1)[0])
        if not queue:
            return httpx.Response(404, json={"error": "not found"})
        canned = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(canned, Exception):
            raise canned
        if canned["text"] is not None:
            return httpx.Response(canned["status"], text=canned["text"], headers=canned["headers"])
        if canned["body"] is None:
            return httpx.Response(canned["status"], headers=canned["headers"])
        return httpx.Response(canned["status"], json=canned["body"], headers=canned["headers"])


class SleepRecorder:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


@pytest.fixture
def fake_api():
    return FakeQuantive()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def client(fake_api, sleeper):
    return RemoteClient(
        api_token=API_TOKEN,
        account_id=ACCOUNT_ID,
        base_url=BASE_URL,
        transport=httpx.MockTransport(fake_api.handler),
        sleep=sleeper,
    )


@pytest.fixture
def settings():
    return Settings(
        api_token=API_TOKEN,
        account_id=ACCOUNT_ID,
        base_url=BASE_URL,
        sessions=["Q4 2024", "Q1 2025"],
    )


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def sessions_payload():
    return {
        "items": [
            {"id": "s1", "name": "Q4 2024", "status": "open", "startDate": "2024-10-01T00:00:00Z"},
            {"id": "s2", "name": "Q1 2025", "status": "open", "startDate": "2025-01-01T00:00:00Z"},
            {"id": "s3", "name": "Archive", "status": "archived"},
        ]
    }


@pytest.fixture
def scenario(fake_api, sessions_payload, now):
    """
    Two sessions, three objectives, five key results.

    - g3 points at a parent outside the fetched set (orphan root)
    - m5 points at a goal that was never fetched (unassociated)
    - only m1 declares tasks
    """
    fake_api.add("/sessions", sessions_payload)
    fake_api.add(
        "/goals?sessionId=s1",
        {
            "items": [
                {"id": "g1", "name": "Grow revenue", "ownerId": "u1", "progress": 50},
                {"id": "g2", "name": "Win EMEA", "ownerId": "u1", "parentId": "g1", "attainment": 0.25},
            ]
        },
    )
    fake_api.add(
        "/goals?sessionId=s2",
        [{"id": "g3", "name": "Hire team", "ownerId": "u2", "parentId": "g-outside"}],
    )
    fake_api.add(
        "/metrics?sessionId=s1",
        {
            "items": [
                {
                    "id": "m1",
                    "name": "ARR",
                    "goalId": "g1",
                    "ownerId": "u1",
                    "progress": 80,
                    "status": "On Track",
                    "tasksCount": 2,
                    "dateModified": iso(now - timedelta(days=2)),
                },
                {
                    "id": "m2",
                    "name": "Deals closed",
                    "goalId": "g2",
                    "progress": 20,
                    "status": "At Risk",
                    "tasksCount": 0,
                    "dateModified": iso(now - timedelta(days=8)),
                },
                {"id": "m3", "name": "NPS", "goalId": "g1", "progress": 60, "status": "done"},
            ]
        },
    )
    fake_api.add(
        "/metrics?sessionId=s2",
        {
            "metrics": [
                {"id": "m4", "name": "Offers", "goalId": "g3", "ownerId": "u2", "progress": 40},
                {"id": "m5", "name": "Stray", "goalId": "g-missing", "progress": 100},
            ]
        },
    )
    fake_api.add(
        "/goals/g1",
        {"data": {"id": "g1", "name": "Grow revenue", "description": "Reach 10M ARR", "ownerId": "u1"}},
    )
    fake_api.add(
        "/metrics/m1/history",
        {
            "items": [
                {"date": iso(now - timedelta(days=20)), "progress": 10},
                {"date": iso(now - timedelta(days=10)), "progress": 40},
                {"date": iso(now - timedelta(days=1)), "progress": 80},
            ]
        },
    )
    fake_api.add("/tasks?metricId=m1", [{"id": "t1", "name": "Draft pricing", "assigneeId": "u2"}])
    fake_api.add(
        "/users",
        {
            "items": [
                {"id": "u1", "displayName": "Ada Lovelace"},
                {"id": "u2", "firstName": "Grace", "lastName": "Hopper"},
            ]
        },
    )
    return fake_api
