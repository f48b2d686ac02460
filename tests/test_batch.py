"""
Tests for chunked batch execution and the fetch strategies.
"""

import asyncio

import pytest

from okrlens.core.batch import (
    BatchedFetch,
    BatchOrchestrator,
    FetchStrategy,
    SequentialFetch,
    chunked,
    reduce_goal_detail,
)
from okrlens.core.client import ApiResponse
from okrlens.core.errors import MalformedResponseError, TransportError

from conftest import HTML_PAGE, SleepRecorder


class ScriptedClient:
    """
    Minimal client whose batch_get answers from a script.

    Each chunk's responses complete in reverse order to check that results
    are placed by submission index, not completion order.
    """

    def __init__(self, fail_chunks=(), short_chunks=()):
        self.fail_chunks = set(fail_chunks)
        self.short_chunks = set(short_chunks)
        self.calls = []

    async def _respond(self, path, delay):
        for _ in range(delay):
            await asyncio.sleep(0)
        return ApiResponse(path=path, status=200, text='{"id": "%s"}' % path.rsplit("/", 1)[-1])

    async def batch_get(self, paths):
        index = len(self.calls)
        self.calls.append(list(paths))
        if index in self.fail_chunks:
            raise TransportError("chunk dropped")
        coros = [self._respond(p, len(paths) - i) for i, p in enumerate(paths)]
        results = list(await asyncio.gather(*coros))
        if index in self.short_chunks:
            return results[:-1]
        return results


class TestChunked:
    def test_splits_evenly_with_remainder(self):
        assert chunked(list(range(5)), 2) == [[0, 1], [2, 3], [4]]

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            chunked([1], 0)


class TestExecuteBatch:
    @pytest.mark.asyncio
    async def test_order_preserved_across_chunks(self):
        client = ScriptedClient()
        sleeper = SleepRecorder()
        orchestrator = BatchOrchestrator(client, chunk_size=2, chunk_delay=0.1, sleep=sleeper)
        paths = [f"/goals/g{i}" for i in range(5)]

        results = await orchestrator.execute_batch(paths)

        assert [r.path for r in results] == paths
        assert [len(c) for c in client.calls] == [2, 2, 1]
        # delay between chunks only, none before the first
        assert sleeper.calls == [0.1, 0.1]

    @pytest.mark.asyncio
    async def test_chunk_failure_only_blanks_that_chunk(self):
        client = ScriptedClient(fail_chunks={1})
        orchestrator = BatchOrchestrator(client, chunk_size=2, sleep=SleepRecorder())
        paths = [f"/goals/g{i}" for i in range(5)]

        results = await orchestrator.execute_batch(paths)

        assert len(results) == 5
        assert results[2] is None and results[3] is None
        assert results[0].path == "/goals/g0"
        assert results[4].path == "/goals/g4"

    @pytest.mark.asyncio
    async def test_short_chunk_is_discarded(self):
        client = ScriptedClient(short_chunks={0})
        orchestrator = BatchOrchestrator(client, chunk_size=3, sleep=SleepRecorder())

        results = await orchestrator.execute_batch(["/a", "/b", "/c", "/d"])

        assert results[:3] == [None, None, None]
        assert results[3].path == "/d"

    @pytest.mark.asyncio
    async def test_per_request_exception_becomes_none(self, client, fake_api):
        fake_api.add("/goals/a", {"id": "a"})
        fake_api.fail("/goals/b")
        orchestrator = BatchOrchestrator(client, sleep=SleepRecorder())

        results = await orchestrator.execute_batch(["/goals/a", "/goals/b"])

        assert results[0].status == 200
        assert results[1] is None

    @pytest.mark.asyncio
    async def test_empty_request_list(self):
        orchestrator = BatchOrchestrator(ScriptedClient(), sleep=SleepRecorder())
        assert await orchestrator.execute_batch([]) == []


class TestFetchMap:
    @pytest.mark.asyncio
    async def test_corrupted_response_does_not_block_others(self, client, fake_api, sleeper):
        for goal_id in ("g1", "g3", "g4"):
            fake_api.add(f"/goals/{goal_id}", {"id": goal_id})
        fake_api.add("/goals/g2", text=HTML_PAGE)
        orchestrator = BatchOrchestrator(client, chunk_size=2, sleep=sleeper)

        details = await orchestrator.fetch_map(
            ["g1", "g2", "g3", "g4"], lambda i: f"/goals/{i}", reduce_goal_detail, "details"
        )

        assert sorted(details) == ["g1", "g3", "g4"]

    @pytest.mark.asyncio
    async def test_duplicate_ids_fetched_once(self, client, fake_api, sleeper):
        fake_api.add("/goals/g1", {"id": "g1"})
        orchestrator = BatchOrchestrator(client, sleep=sleeper)

        await orchestrator.fetch_map(["g1", "g1", ""], lambda i: f"/goals/{i}", reduce_goal_detail, "details")

        assert fake_api.count("/goals/g1") == 1

    @pytest.mark.asyncio
    async def test_rate_limited_items_retried(self, client, fake_api, sleeper):
        fake_api.add("/goals/g1", status=429, headers={"Retry-After": "1"})
        fake_api.add("/goals/g1", {"id": "g1", "name": "later"})
        fake_api.add("/goals/g2", {"id": "g2"})
        orchestrator = BatchOrchestrator(client, sleep=sleeper)

        details = await orchestrator.fetch_map(
            ["g1", "g2"], lambda i: f"/goals/{i}", reduce_goal_detail, "details"
        )

        assert details["g1"]["name"] == "later"
        assert fake_api.count("/goals/g1") == 2
        assert fake_api.count("/goals/g2") == 1

    @pytest.mark.asyncio
    async def test_not_found_default(self, client, fake_api, sleeper):
        orchestrator = BatchOrchestrator(client, sleep=sleeper)

        histories = await orchestrator.fetch_map(
            ["m1"], lambda i: f"/metrics/{i}/history", lambda i, p: p, "histories", on_not_found=list
        )

        assert histories == {"m1": []}


class TestStrategies:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_cls", [BatchedFetch, SequentialFetch])
    async def test_task_lists_skip_zero_counts(self, client, fake_api, strategy_cls):
        fake_api.add("/tasks?metricId=m1", [{"id": "t1"}, "junk"])

        tasks = await strategy_cls(client).fetch_task_lists({"m1": 2, "m2": 0, "m3": 0})

        assert tasks == {"m1": [{"id": "t1"}]}
        assert fake_api.requested("/tasks") == ["/tasks?metricId=m1"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_cls", [BatchedFetch, SequentialFetch])
    async def test_progress_histories(self, client, fake_api, strategy_cls, now):
        fake_api.add("/metrics/m1/history", {"values": [{"date": now.isoformat(), "value": 42}]})

        histories = await strategy_cls(client).fetch_progress_histories(["m1", "m2"], 30)

        assert [s.progress_value for s in histories["m1"]] == [42.0]
        assert histories["m2"] == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_cls", [BatchedFetch, SequentialFetch])
    async def test_collections_are_strict(self, client, fake_api, strategy_cls):
        fake_api.add("/goals?sessionId=s1", [{"id": "g1"}])
        fake_api.add("/goals?sessionId=s2", text=HTML_PAGE)

        with pytest.raises(MalformedResponseError):
            await strategy_cls(client).fetch_collections(["/goals?sessionId=s1", "/goals?sessionId=s2"])

    @pytest.mark.asyncio
    async def test_batched_collections_retry_rate_limit(self, client, fake_api):
        fake_api.add("/metrics?sessionId=s1", status=429)
        fake_api.add("/metrics?sessionId=s1", {"items": [{"id": "m1"}]})

        collections = await BatchedFetch(client).fetch_collections(["/metrics?sessionId=s1"])

        assert collections == [[{"id": "m1"}]]

    @pytest.mark.asyncio
    async def test_sequential_skips_transport_failures(self, client, fake_api):
        fake_api.fail("/goals/g1")
        fake_api.add("/goals/g2", {"id": "g2"})

        details = await SequentialFetch(client).fetch_objective_details(["g1", "g2"])

        assert list(details) == ["g2"]

    def test_base_strategy_is_abstract(self, client):
        with pytest.raises(TypeError):
            FetchStrategy(client)
