"""
Bounded-concurrency scheduling of chunk analyses.

Keeps at most ``max_concurrent_chunks`` chunk requests in flight and starts
the next pending chunk as soon as one settles. A chunk whose retries are
exhausted is reprocessed one image at a time under a smaller cap.
"""
import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from .aggregator import ResultAggregator
from .config import PipelineConfig, config as default_config
from .models import (OUTCOME_CANCELLED, OUTCOME_FAILED, OUTCOME_MISSING,
                     OUTCOME_SUCCESS, BatchStat, Chunk)
from .resilience import RetryPolicy, RetryStats, retry_with_backoff

logger = logging.getLogger(__name__)


class BoundedScheduler:
    """Runs async jobs with at most ``limit`` in flight, refilling as they settle"""

    def __init__(self, limit: int, name: str = "scheduler"):
        self.limit = max(1, int(limit))
        self.name = name
        self._in_flight = 0
        self._max_in_flight_observed = 0
        self._total_started = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def max_in_flight_observed(self) -> int:
        return self._max_in_flight_observed

    async def _run_one(self, worker: Callable[[Any], Awaitable[Any]], job: Any):
        self._in_flight += 1
        self._total_started += 1
        self._max_in_flight_observed = max(
            self._max_in_flight_observed, self._in_flight)
        try:
            return await worker(job)
        finally:
            self._in_flight -= 1

    async def run(self, jobs: Iterable[Any], worker: Callable[[Any], Awaitable[Any]],
                  should_launch: Optional[Callable[[], bool]] = None) -> List[Any]:
        """
        Drive every job through ``worker``.

        Returns the jobs never launched because ``should_launch`` returned
        False; in-flight work is always drained first.
        """
        pending = deque(jobs)
        running = set()

        while pending or running:
            while pending and len(running) < self.limit:
                if should_launch is not None and not should_launch():
                    break
                job = pending.popleft()
                running.add(asyncio.create_task(self._run_one(worker, job)))

            if not running:
                break

            done, running = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.exception() is not None:
                    for other in running:
                        other.cancel()
                    await asyncio.gather(*running, return_exceptions=True)
                    raise task.exception()

        if pending:
            logger.info(
                f"{self.name}: stopped launching with {len(pending)} jobs pending")
        return list(pending)

    def get_stats(self) -> dict:
        return {
            'name': self.name,
            'limit': self.limit,
            'in_flight': self._in_flight,
            'max_in_flight_observed': self._max_in_flight_observed,
            'total_started': self._total_started,
        }


class ChunkScheduler:
    """Drives chunks through the analysis client and feeds the aggregator"""

    def __init__(self, client, aggregator: ResultAggregator,
                 cfg: Optional[PipelineConfig] = None,
                 policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 retry_stats: Optional[RetryStats] = None):
        self.client = client
        self.aggregator = aggregator
        self.config = cfg or default_config
        self.policy = policy or RetryPolicy.from_config(self.config)
        self.sleep = sleep
        self.retry_stats = retry_stats or RetryStats()
        self.chunk_scheduler = BoundedScheduler(
            self.config.max_concurrent_chunks, name="chunks")
        self.fallback_schedulers: List[BoundedScheduler] = []
        self._cancel_event: Optional[asyncio.Event] = None

    def _should_launch(self) -> bool:
        return self._cancel_event is None or not self._cancel_event.is_set()

    async def run(self, chunks: List[Chunk], cancel_event: Optional[asyncio.Event] = None) -> int:
        """Process all chunks; returns the number of images never attempted"""
        self._cancel_event = cancel_event
        logger.info(
            f"Scheduling {len(chunks)} chunks (max_concurrent={self.chunk_scheduler.limit})")

        skipped = await self.chunk_scheduler.run(
            chunks, self._process_chunk, should_launch=self._should_launch)

        skipped_items = 0
        for chunk in skipped:
            for item in chunk.items:
                if self.aggregator.record(item.index, None, OUTCOME_CANCELLED):
                    skipped_items += 1
        return skipped_items

    async def _analyze_with_retry(self, chunk: Chunk, label: str):
        return await retry_with_backoff(
            lambda: self.client.analyze_chunk(chunk),
            policy=self.policy,
            sleep=self.sleep,
            label=label,
            stats=self.retry_stats,
        )

    async def _process_chunk(self, chunk: Chunk):
        start = time.perf_counter()
        label = f"chunk {chunk.chunk_number}"
        logger.info(
            f"Processing chunk {chunk.chunk_number} with {len(chunk)} images")

        try:
            analyzed = await self._analyze_with_retry(chunk, label)
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000
            logger.error(
                f"Chunk {chunk.chunk_number} failed after retries: {e!r}. "
                f"Falling back to individual processing")
            self.aggregator.add_batch_stat(BatchStat(
                chunk_number=chunk.chunk_number,
                item_count=len(chunk),
                success_count=0,
                failure_count=len(chunk),
                elapsed_ms=elapsed,
                kind="chunk",
                error=str(e),
            ))
            await self._run_fallback(chunk)
            self.aggregator.progress("processing")
            return

        successes = 0
        returned = set()
        for entry in analyzed:
            returned.add(entry.offset)
            if self.aggregator.record(chunk.global_index(entry.offset), entry.metadata, OUTCOME_SUCCESS):
                successes += 1

        # Partial coverage: missing images are failures, no fallback
        failures = 0
        for offset, item in enumerate(chunk.items):
            if offset not in returned and self.aggregator.record(item.index, None, OUTCOME_MISSING):
                failures += 1

        if failures:
            logger.warning(
                f"Chunk {chunk.chunk_number}: {failures} of {len(chunk)} images missing from response")

        elapsed = (time.perf_counter() - start) * 1000
        self.aggregator.add_batch_stat(BatchStat(
            chunk_number=chunk.chunk_number,
            item_count=len(chunk),
            success_count=successes,
            failure_count=failures,
            elapsed_ms=elapsed,
            kind="chunk",
        ))
        logger.info(
            f"Chunk {chunk.chunk_number} processed: {successes} succeeded, {failures} failed ({elapsed:.0f}ms)")
        self.aggregator.progress("processing")

    async def _run_fallback(self, chunk: Chunk):
        """Reprocess each image of a failed chunk as its own one-image chunk"""
        singles = [
            Chunk(chunk_number=chunk.chunk_number,
                  base_index=item.index, items=(item,))
            for item in chunk.items
        ]
        scheduler = BoundedScheduler(
            self.config.individual_fallback_concurrency,
            name=f"fallback-{chunk.chunk_number}")
        self.fallback_schedulers.append(scheduler)

        skipped = await scheduler.run(singles, self._process_single,
                                      should_launch=self._should_launch)
        for single in skipped:
            self.aggregator.record(single.base_index, None, OUTCOME_CANCELLED)

    async def _process_single(self, single: Chunk):
        start = time.perf_counter()
        item = single.items[0]
        successes = failures = 0
        error = None

        try:
            analyzed = await self._analyze_with_retry(
                single, f"{item.display_name} (chunk {single.chunk_number} fallback)")
            if self.aggregator.record(item.index, analyzed[0].metadata, OUTCOME_SUCCESS):
                successes = 1
        except Exception as e:
            error = str(e)
            logger.error(
                f"Individual processing failed for {item.display_name}: {e!r}")
            if self.aggregator.record(item.index, None, OUTCOME_FAILED):
                failures = 1

        self.aggregator.add_batch_stat(BatchStat(
            chunk_number=single.chunk_number,
            item_count=1,
            success_count=successes,
            failure_count=failures,
            elapsed_ms=(time.perf_counter() - start) * 1000,
            kind="fallback",
            error=error,
        ))
        self.aggregator.progress("processing")

    def get_stats(self) -> dict:
        return {
            'chunks': self.chunk_scheduler.get_stats(),
            'fallback': [s.get_stats() for s in self.fallback_schedulers],
            'retries': self.retry_stats.get_stats(),
        }
