"""
Pipeline entry point: availability and credit checks, chunked analysis,
result assembly and session bookkeeping.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from .aggregator import ProgressCallback, ResultAggregator
from .analysis_client import AnalysisClient
from .batching import split_into_chunks
from .collaborators import CreditLedger, SessionRecorder
from .config import PipelineConfig, config as default_config
from .models import InputItem, PipelineResult
from .scheduler import ChunkScheduler

logger = logging.getLogger(__name__)


class MetadataPipeline:
    """
    Turns an ordered list of pre-processed images into metadata.

    An injected ``client`` is left open after each run; its owner closes it.
    """

    def __init__(self, cfg: Optional[PipelineConfig] = None,
                 client: Optional[AnalysisClient] = None,
                 credit_ledger: Optional[CreditLedger] = None,
                 session_recorder: Optional[SessionRecorder] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = cfg or default_config
        self.client = client
        self.credit_ledger = credit_ledger
        self.session_recorder = session_recorder
        self.sleep = sleep
        self.last_scheduler: Optional[ChunkScheduler] = None
        self._cancel_event: Optional[asyncio.Event] = None
        self._cancel_requested = False

    def cancel(self):
        """Stop launching new chunks; in-flight work drains"""
        self._cancel_requested = True
        if self._cancel_event is not None:
            self._cancel_event.set()
        logger.info("Cancellation requested")

    async def process_images(self, items: Iterable[InputItem],
                             progress_callback: Optional[ProgressCallback] = None) -> PipelineResult:
        """
        Analyze ``items`` and return metadata in submission order.

        Per-image failures never raise; they are counted in the returned
        stats. ``success`` is False only when the run could not start
        (service unavailable, not enough credits) or nothing succeeded.
        A cancellation applies to one run only.
        """
        try:
            return await self._run(items, progress_callback)
        finally:
            self._cancel_requested = False
            self._cancel_event = None

    async def _run(self, items: Iterable[InputItem],
                   progress_callback: Optional[ProgressCallback]) -> PipelineResult:
        items = list(items)
        for position, item in enumerate(items):
            if item.index != position:
                raise ValueError(
                    f"Item indices must be dense and ordered; position {position} has index {item.index}")

        total = len(items)
        aggregator = ResultAggregator(total, progress_callback)

        if total == 0:
            logger.info("No images to analyze")
            aggregator.progress("completed")
            return PipelineResult(success=True, metadata=[], stats=aggregator.snapshot())

        owns_client = self.client is None
        client = self.client or AnalysisClient(self.config)

        try:
            if owns_client:
                client.start()

            if not await client.check_availability():
                logger.error(
                    "API key is invalid or not available. Please check your configuration.")
                aggregator.progress("error")
                return PipelineResult(success=False, metadata=[], stats=aggregator.snapshot())

            if self.credit_ledger is not None and not await self.credit_ledger.has_credits(total):
                logger.warning(
                    f"Insufficient credits: {total} required to process these images")
                aggregator.progress("error")
                return PipelineResult(success=False, metadata=[], stats=aggregator.snapshot())

            session_id = await self._create_session()

            chunks = split_into_chunks(items, self.config.chunk_size)
            aggregator.total_batches = len(chunks)
            logger.info(
                f"Analyzing {total} images in {len(chunks)} chunks "
                f"(chunk_size={self.config.chunk_size}, max_concurrent={self.config.max_concurrent_chunks})")

            scheduler = ChunkScheduler(
                client, aggregator, self.config, sleep=self.sleep)
            self.last_scheduler = scheduler
            self._cancel_event = asyncio.Event()
            if self._cancel_requested:
                self._cancel_event.set()

            await scheduler.run(chunks, cancel_event=self._cancel_event)

        except ValueError:
            raise
        except Exception as e:
            logger.exception(f"Analysis error: {e}")
            aggregator.progress("error")
            return PipelineResult(success=False, metadata=[], stats=aggregator.snapshot())
        finally:
            if owns_client:
                await client.close()

        aggregator.fail_unrecorded()
        stats = aggregator.snapshot()
        metadata = aggregator.results()
        success = stats.success_count > 0

        if self._cancel_requested:
            status = "cancelled"
        else:
            status = "completed" if success else "error"

        await self._finish_session(session_id, items, aggregator, success)

        aggregator.progress(status)
        logger.info(
            f"Analysis {status}: {stats.success_count}/{total} images succeeded, "
            f"{stats.failure_count} failed in {stats.elapsed_ms:.0f}ms")

        return PipelineResult(success=success, metadata=metadata, stats=stats)

    async def _create_session(self) -> Optional[str]:
        if self.session_recorder is None:
            return None
        name = f"Batch {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        try:
            return await self.session_recorder.create_session(name)
        except Exception as e:
            logger.error(f"Error creating processing session: {e}")
            return None

    async def _finish_session(self, session_id: Optional[str], items: List[InputItem],
                              aggregator: ResultAggregator, success: bool):
        stats = aggregator.snapshot()
        credits_used = 0

        if self.credit_ledger is not None and success and stats.success_count > 0:
            try:
                if await self.credit_ledger.deduct(stats.success_count):
                    credits_used = stats.success_count
            except Exception as e:
                logger.error(f"Error deducting credits: {e}")

        if self.session_recorder is None or session_id is None:
            return

        try:
            for index, metadata in enumerate(aggregator.slots()):
                display_name = items[index].display_name
                status = 'completed' if metadata else 'failed'
                await self.session_recorder.record_image(session_id, display_name, status, metadata)
            await self.session_recorder.update_session_stats(
                session_id, stats.success_count, stats.failure_count, credits_used)
        except Exception as e:
            logger.error(f"Error updating session stats for {session_id}: {e}")


async def process_images(items: Iterable[InputItem],
                         progress_callback: Optional[ProgressCallback] = None,
                         **kwargs) -> PipelineResult:
    """Run a one-off pipeline; keyword arguments go to MetadataPipeline"""
    pipeline = MetadataPipeline(**kwargs)
    return await pipeline.process_images(items, progress_callback)
