"""
Chunked parallel fetching and the fetch strategies built on it.

BatchOrchestrator splits a request list into fixed-size chunks, sends each
chunk as one concurrent batch, and waits a short fixed delay between chunks.
Failures are isolated at the smallest unit: a transport failure for a whole
chunk turns only that chunk's slots into None, and a bad response for one item
is logged and skipped without affecting its neighbours.

FetchStrategy carries the three ID-keyed adapters the pipeline needs
(objective details, progress histories, task lists). BatchedFetch runs them
through the orchestrator; SequentialFetch issues one request at a time with
the same reducers, so both paths produce identical maps from identical data.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from okrlens.core.client import (
    ApiResponse,
    RemoteClient,
    SleepFn,
    classify,
    goal_detail_path,
    history_path,
    tasks_path,
)
from okrlens.core.errors import ApiError, NotFoundError, RateLimitError
from okrlens.core.history import normalize_history
from okrlens.core.payloads import strict_collection, unwrap_collection, unwrap_record
from okrlens.core.store import ProgressSample

logger = logging.getLogger(__name__)

Reducer = Callable[[str, Any], Optional[Any]]

DEFAULT_CHUNK_SIZE = 25
DEFAULT_CHUNK_DELAY = 0.1


def chunked(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    if size <= 0:
        raise ValueError(f"Chunk size must be positive, got {size}")
    return [items[i : i + size] for i in range(0, len(items), size)]


def reduce_response(
    item_id: str,
    response: Optional[ApiResponse],
    reducer: Reducer,
    label: str,
    on_not_found: Optional[Callable[[], Any]] = None,
) -> Optional[Any]:
    """
    Validate one response and reduce it to a value.

    Returns None (skip) for missing, non-200, HTML or unparseable responses,
    and for reducer failures. A 404 yields ``on_not_found()`` when given.
    """
    if response is None:
        logger.warning(f"{label}: no response for {item_id}, skipping")
        return None
    try:
        payload = classify(response)
    except NotFoundError:
        if on_not_found is not None:
            return on_not_found()
        logger.warning(f"{label}: {item_id} not found, skipping")
        return None
    except ApiError as e:
        logger.warning(f"{label}: invalid response for {item_id}: {e.message}")
        return None

    try:
        return reducer(item_id, payload)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"{label}: could not reduce response for {item_id}: {e}")
        return None


class BatchOrchestrator:
    """
    Execute request lists as sequential chunks of concurrent requests.

    Parameters
    ----------
    client : RemoteClient
        Client providing ``batch_get``
    chunk_size : int
        Requests per chunk (default 25)
    chunk_delay : float
        Seconds to wait between chunks; courtesy towards the API rate limit
    sleep : SleepFn
        Async sleep used for the inter-chunk delay
    """

    def __init__(
        self,
        client: RemoteClient,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_delay: float = DEFAULT_CHUNK_DELAY,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.client = client
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self._sleep = sleep

    async def execute_batch(
        self, paths: Sequence[str], chunk_size: Optional[int] = None
    ) -> List[Optional[ApiResponse]]:
        """
        Fetch every path, chunk by chunk.

        Parameters
        ----------
        paths : Sequence[str]
            Request paths
        chunk_size : Optional[int]
            Override for this call

        Returns
        -------
        List[Optional[ApiResponse]]
            Same length and order as ``paths``; None where the request or its
            whole chunk failed
        """
        size = chunk_size or self.chunk_size
        results: List[Optional[ApiResponse]] = []
        chunks = chunked(list(paths), size)

        for index, chunk in enumerate(chunks):
            if index > 0 and self.chunk_delay > 0:
                await self._sleep(self.chunk_delay)
            try:
                responses = await self.client.batch_get(chunk)
            except Exception as e:
                logger.warning(
                    f"Chunk {index + 1}/{len(chunks)} failed ({len(chunk)} requests): {e}"
                )
                results.extend([None] * len(chunk))
                continue

            if len(responses) != len(chunk):
                logger.warning(
                    f"Chunk {index + 1}/{len(chunks)} returned {len(responses)} responses "
                    f"for {len(chunk)} requests; discarding chunk"
                )
                results.extend([None] * len(chunk))
                continue

            for path, response in zip(chunk, responses):
                if isinstance(response, BaseException):
                    logger.debug(f"Request {path} failed: {response}")
                    results.append(None)
                else:
                    results.append(response)

        logger.debug(f"Executed {len(paths)} requests in {len(chunks)} chunks")
        return results

    async def fetch_map(
        self,
        ids: Sequence[str],
        path_for: Callable[[str], str],
        reducer: Reducer,
        label: str,
        on_not_found: Optional[Callable[[], Any]] = None,
    ) -> Dict[str, Any]:
        """
        Fetch one resource per ID and reduce the responses to an ID-keyed map.

        Items answered with 429 get one more attempt in a follow-up batch.
        """
        unique_ids = list(dict.fromkeys(i for i in ids if i))
        if not unique_ids:
            return {}

        responses = await self.execute_batch([path_for(i) for i in unique_ids])

        rate_limited = [
            i for i, r in zip(unique_ids, responses) if r is not None and r.status == 429
        ]
        if rate_limited:
            logger.info(f"{label}: retrying {len(rate_limited)} rate-limited requests")
            retried = await self.execute_batch([path_for(i) for i in rate_limited])
            by_id = dict(zip(unique_ids, responses))
            by_id.update(zip(rate_limited, retried))
            responses = [by_id[i] for i in unique_ids]

        values: Dict[str, Any] = {}
        for item_id, response in zip(unique_ids, responses):
            value = reduce_response(item_id, response, reducer, label, on_not_found)
            if value is not None:
                values[item_id] = value

        skipped = len(unique_ids) - len(values)
        logger.info(f"{label}: {len(values)}/{len(unique_ids)} fetched, {skipped} skipped")
        return values


def reduce_goal_detail(goal_id: str, payload: Any) -> Optional[Dict[str, Any]]:
    record = unwrap_record(payload)
    if not record:
        return None
    return record


def reduce_task_list(metric_id: str, payload: Any) -> List[Dict[str, Any]]:
    return [t for t in unwrap_collection(payload) if isinstance(t, dict)]


def history_since(window_days: int, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=window_days)


class FetchStrategy(ABC):
    """
    How the pipeline fetches per-item resources.

    Subclasses implement ``fetch_map`` and ``fetch_collections``; the adapters below are shared so the
    batched and sequential paths cannot drift apart.
    """

    name = "base"

    def __init__(self, client: RemoteClient):
        self.client = client

    @abstractmethod
    async def fetch_map(
        self,
        ids: Sequence[str],
        path_for: Callable[[str], str],
        reducer: Reducer,
        label: str,
        on_not_found: Optional[Callable[[], Any]] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_collections(self, paths: Sequence[str]) -> List[List[Any]]:
        """
        Fetch list endpoints the run cannot do without (goals, metrics).

        Unlike ``fetch_map`` this is strict: any failure raises, which aborts
        the current pipeline path.
        """
        raise NotImplementedError

    async def fetch_objective_details(self, goal_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        return await self.fetch_map(
            goal_ids, goal_detail_path, reduce_goal_detail, "objective details"
        )

    async def fetch_progress_histories(
        self, metric_ids: Sequence[str], window_days: int, now: Optional[datetime] = None
    ) -> Dict[str, List[ProgressSample]]:
        since = history_since(window_days, now)
        since_param = since.date().isoformat()

        def reducer(metric_id: str, payload: Any) -> List[ProgressSample]:
            return normalize_history(payload, since)

        return await self.fetch_map(
            metric_ids,
            lambda metric_id: history_path(metric_id, since_param),
            reducer,
            "progress histories",
            on_not_found=list,
        )

    async def fetch_task_lists(self, task_counts: Dict[str, int]) -> Dict[str, List[Dict[str, Any]]]:
        """Fetch tasks only for key results that declare at least one task."""
        metric_ids = [metric_id for metric_id, count in task_counts.items() if count > 0]
        if len(metric_ids) < len(task_counts):
            logger.debug(
                f"Skipping task fetch for {len(task_counts) - len(metric_ids)} key results with no tasks"
            )
        return await self.fetch_map(
            metric_ids, tasks_path, reduce_task_list, "task lists", on_not_found=list
        )


class BatchedFetch(FetchStrategy):
    """Chunked concurrent fetching through BatchOrchestrator."""

    name = "batched"

    def __init__(self, client: RemoteClient, orchestrator: Optional[BatchOrchestrator] = None):
        super().__init__(client)
        self.orchestrator = orchestrator or BatchOrchestrator(client)

    async def fetch_map(
        self,
        ids: Sequence[str],
        path_for: Callable[[str], str],
        reducer: Reducer,
        label: str,
        on_not_found: Optional[Callable[[], Any]] = None,
    ) -> Dict[str, Any]:
        return await self.orchestrator.fetch_map(ids, path_for, reducer, label, on_not_found)

    async def fetch_collections(self, paths: Sequence[str]) -> List[List[Any]]:
        responses = await self.client.batch_get(paths)
        collections: List[List[Any]] = []
        for path, response in zip(paths, responses):
            if isinstance(response, BaseException):
                raise response
            try:
                payload = classify(response)
            except RateLimitError:
                payload = await self.client.get_json(path, retry_on_rate_limit=False)
            collections.append(strict_collection(path, payload))
        return collections


class SequentialFetch(FetchStrategy):
    """One request at a time, same reducers and ordering as BatchedFetch."""

    name = "sequential"

    async def fetch_map(
        self,
        ids: Sequence[str],
        path_for: Callable[[str], str],
        reducer: Reducer,
        label: str,
        on_not_found: Optional[Callable[[], Any]] = None,
    ) -> Dict[str, Any]:
        unique_ids = list(dict.fromkeys(i for i in ids if i))
        values: Dict[str, Any] = {}

        for item_id in unique_ids:
            path = path_for(item_id)
            try:
                response: Optional[ApiResponse] = await self.client.get(path)
                if response is not None and response.status == 429:
                    response = await self.client.get(path)
            except Exception as e:
                logger.warning(f"{label}: request for {item_id} failed: {e}")
                response = None
            value = reduce_response(item_id, response, reducer, label, on_not_found)
            if value is not None:
                values[item_id] = value

        logger.info(f"{label} (sequential): {len(values)}/{len(unique_ids)} fetched")
        return values

    async def fetch_collections(self, paths: Sequence[str]) -> List[List[Any]]:
        collections: List[List[Any]] = []
        for path in paths:
            collections.append(strict_collection(path, await self.client.get_json(path)))
        return collections
