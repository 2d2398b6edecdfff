import asyncio

import pytest

from conftest import FakeClient, RecordingSleep, make_items, make_metadata
from keywording.aggregator import ResultAggregator
from keywording.batching import split_into_chunks
from keywording.errors import AnalysisServiceError, TransientError
from keywording.models import AnalyzedItem
from keywording.scheduler import BoundedScheduler, ChunkScheduler


def _run(client, items, cfg, cancel_event=None):
    aggregator = ResultAggregator(len(items))
    scheduler = ChunkScheduler(client, aggregator, cfg, sleep=RecordingSleep())
    skipped = asyncio.run(scheduler.run(split_into_chunks(items, cfg.chunk_size), cancel_event))
    return aggregator, scheduler, skipped


def test_bounded_scheduler_never_exceeds_limit():
    state = {'current': 0, 'peak': 0}

    async def worker(job):
        state['current'] += 1
        state['peak'] = max(state['peak'], state['current'])
        await asyncio.sleep(0.001 * (job % 3))
        state['current'] -= 1
        return job

    scheduler = BoundedScheduler(4)
    leftover = asyncio.run(scheduler.run(range(25), worker))

    assert leftover == []
    assert state['peak'] <= 4
    assert scheduler.max_in_flight_observed == state['peak']
    assert scheduler.get_stats()['total_started'] == 25


def test_bounded_scheduler_reraises_worker_error():
    async def worker(job):
        if job == 2:
            raise RuntimeError("boom")
        await asyncio.sleep(0.01)

    with pytest.raises(RuntimeError):
        asyncio.run(BoundedScheduler(2).run(range(6), worker))


def test_chunk_concurrency_bound(pipeline_config):
    items = make_items(200)
    client = FakeClient()

    aggregator, scheduler, _ = _run(client, items, pipeline_config)

    assert len(client.calls) == 10
    assert 1 < client.max_in_flight <= 5
    assert scheduler.chunk_scheduler.max_in_flight_observed <= 5
    assert aggregator.snapshot().success_count == 200


def test_fallback_concurrency_bound(pipeline_config):
    items = make_items(40)

    def behavior(chunk):
        if len(chunk) > 1:
            raise TransientError("service unavailable", status=503)
        item = chunk.items[0]
        return [AnalyzedItem(offset=0, metadata=make_metadata(item.display_name))]

    client = FakeClient(behavior)
    aggregator, scheduler, _ = _run(client, items, pipeline_config)

    stats = aggregator.snapshot()
    assert stats.success_count == 40
    assert stats.failure_count == 0
    # two chunks x 3 attempts, then one call per image
    assert len(client.calls) == 6 + 40
    assert all(s.max_in_flight_observed <= 3 for s in scheduler.fallback_schedulers)
    assert client.max_singles_in_flight <= 6
    assert [m.display_name for m in aggregator.results()] == [i.display_name for i in items]


def test_partial_coverage_does_not_trigger_fallback(pipeline_config):
    items = make_items(20)

    def behavior(chunk):
        return [AnalyzedItem(offset=j, metadata=make_metadata(item.display_name))
                for j, item in enumerate(chunk.items) if j % 4 != 0]

    client = FakeClient(behavior)
    aggregator, scheduler, _ = _run(client, items, pipeline_config)

    stats = aggregator.snapshot()
    assert len(client.calls) == 1
    assert scheduler.fallback_schedulers == []
    assert stats.success_count == 15
    assert stats.failure_count == 5
    assert aggregator.slots()[0] is None
    assert aggregator.slots()[1].display_name == 'img1.jpg'


def test_out_of_order_completion_keeps_submission_order(pipeline_config):
    items = make_items(100)
    client = FakeClient()

    async def slow_first(chunk):
        # earlier chunks finish last
        await asyncio.sleep(0.002 * (6 - chunk.chunk_number))
        return [AnalyzedItem(offset=j, metadata=make_metadata(item.display_name))
                for j, item in enumerate(chunk.items)]
    client.analyze_chunk = slow_first

    aggregator, _, _ = _run(client, items, pipeline_config)

    assert [m.display_name for m in aggregator.results()] == [f"img{i}.jpg" for i in range(100)]


def test_non_retryable_chunk_error_goes_to_fallback(pipeline_config):
    items = make_items(5)

    def behavior(chunk):
        if chunk.items[0].index == 3 or len(chunk) > 1:
            raise AnalysisServiceError("bad request", status=400)
        return [AnalyzedItem(offset=0, metadata=make_metadata(chunk.items[0].display_name))]

    client = FakeClient(behavior)
    aggregator, _, _ = _run(client, items, pipeline_config)

    stats = aggregator.snapshot()
    assert len(client.calls) == 1 + 5
    assert stats.success_count == 4
    assert stats.failure_count == 1
    kinds = [s.kind for s in stats.per_batch]
    assert kinds.count('chunk') == 1
    assert kinds.count('fallback') == 5


def test_cancelled_before_start_records_every_item(pipeline_config):
    items = make_items(45)
    client = FakeClient()

    async def run():
        event = asyncio.Event()
        event.set()
        aggregator = ResultAggregator(len(items))
        scheduler = ChunkScheduler(client, aggregator, pipeline_config, sleep=RecordingSleep())
        skipped = await scheduler.run(split_into_chunks(items, 20), event)
        return aggregator, skipped

    aggregator, skipped = asyncio.run(run())

    assert skipped == 45
    assert client.calls == []
    assert aggregator.snapshot().failure_count == 45
    assert aggregator.is_complete
