"""
Index-keyed result aggregation and progress reporting
"""
import copy
import logging
import threading
import time
from typing import Callable, List, Optional

from .models import (OUTCOME_FAILED, OUTCOME_SUCCESS, BatchStat, GlobalStats,
                     Metadata, ProgressInfo)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressInfo], None]


class ResultAggregator:
    """
    Records each item's outcome exactly once, keyed by submission index.

    Owns the result slots and GlobalStats. Writes for different indices are
    disjoint; the counters are updated under a non-reentrant lock.
    """

    def __init__(self, total_items: int,
                 progress_callback: Optional[ProgressCallback] = None,
                 total_batches: int = 0):
        self.total_items = total_items
        self.total_batches = total_batches
        self.progress_callback = progress_callback

        self._slots: List[Optional[Metadata]] = [None] * total_items
        self._recorded = [False] * total_items
        self._stats = GlobalStats(total_items=total_items)
        self._lock = threading.Lock()
        self._start = time.perf_counter()
        self._settled_batches = 0

    def record(self, index: int, metadata: Optional[Metadata], outcome: str = OUTCOME_SUCCESS) -> bool:
        """Record the outcome for ``index``. Returns False if already recorded."""
        if not 0 <= index < self.total_items:
            raise IndexError(
                f"Index {index} outside [0, {self.total_items})")

        with self._lock:
            if self._recorded[index]:
                logger.warning(
                    f"Ignoring duplicate result for index {index} ({outcome})")
                return False
            self._recorded[index] = True
            if metadata is not None and outcome == OUTCOME_SUCCESS:
                self._slots[index] = metadata
                self._stats.success_count += 1
            else:
                self._stats.failure_count += 1
            return True

    def is_recorded(self, index: int) -> bool:
        return self._recorded[index]

    def add_batch_stat(self, stat: BatchStat):
        with self._lock:
            self._stats.per_batch.append(stat)
            if stat.kind == "chunk":
                self._settled_batches += 1

    def fail_unrecorded(self, outcome: str = OUTCOME_FAILED) -> int:
        """Mark every index without an outcome as failed"""
        count = 0
        for index in range(self.total_items):
            if not self._recorded[index] and self.record(index, None, outcome):
                count += 1
        if count:
            logger.warning(f"Marked {count} unprocessed images as {outcome}")
        return count

    @property
    def is_complete(self) -> bool:
        return self._stats.processed_count == self.total_items

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000

    def snapshot(self) -> GlobalStats:
        """Read-only copy of the current statistics"""
        with self._lock:
            self._stats.elapsed_ms = self.elapsed_ms
            return copy.deepcopy(self._stats)

    def progress(self, status: str = "processing") -> ProgressInfo:
        """Build a ProgressInfo snapshot and hand it to the callback"""
        stats = self.snapshot()
        info = ProgressInfo(
            total_images=stats.total_items,
            processed_images=stats.processed_count,
            successful_images=stats.success_count,
            failed_images=stats.failure_count,
            processing_time_ms=round(stats.elapsed_ms, 1),
            status=status,
            current_batch=self._settled_batches,
            total_batches=self.total_batches,
        )
        if self.progress_callback:
            try:
                self.progress_callback(info)
            except Exception as e:
                logger.error(f"Progress callback failed: {e}")
        return info

    def slots(self) -> List[Optional[Metadata]]:
        """Copy of the index-addressed result slots (None where absent)"""
        return list(self._slots)

    def results(self) -> List[Metadata]:
        """Present metadata in submission order"""
        return [m for m in self._slots if m is not None]
