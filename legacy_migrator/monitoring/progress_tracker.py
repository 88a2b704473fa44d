"""
Progress tracking and statistics for entity runs.

The tracker accumulates the run counters (source total, already migrated,
newly migrated, skipped, errors) and derives success rate, throughput and ETA.
All mutations and snapshots hold one lock, so progress can be read from
another thread while the run is in flight. Process memory and CPU are
sampled with psutil on a daemon thread.
"""

import logging
import threading

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import psutil

from ..interfaces import ProgressTrackerInterface
from ..models import BatchLoadResult, Skip


# Failed legacy ids kept in the summary; the count is always exact
MAX_RECORDED_FAILURES = 1000


@dataclass
class MigrationStats:
    """Counters for one entity run."""
    entity_type: str
    batch_size: int = 0
    source_total: int = 0
    already_migrated: int = 0
    pending: int = 0
    newly_migrated: int = 0
    updated: int = 0
    conflicts: int = 0
    skipped: int = 0
    errors: int = 0
    batches_completed: int = 0
    skip_reasons: Counter = field(default_factory=Counter)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    peak_memory_mb: float = 0.0
    avg_cpu_percent: float = 0.0

    @property
    def processed(self) -> int:
        """Rows of the differential set that have reached an outcome."""
        return self.newly_migrated + self.conflicts + self.skipped + self.errors


class ProgressTracker(ProgressTrackerInterface):
    """
    Thread-safe stats aggregator for one entity run.

    Args:
        entity_type: Entity being migrated
        batch_size: Batch size used by the run (reported only)
        sample_resources: Start the psutil sampling thread in start()
        sample_interval: Seconds between resource samples
    """

    def __init__(self, entity_type: str, batch_size: int = 0, sample_resources: bool = True,
                 sample_interval: float = 0.5):
        self.logger = logging.getLogger(__name__)
        self._stats = MigrationStats(entity_type=entity_type, batch_size=batch_size)
        self._lock = threading.Lock()
        self._sample_resources = sample_resources
        self._sample_interval = sample_interval
        self._stop_flag = threading.Event()
        self._monitor_thread = None
        self._cpu_samples: List[float] = []

    @property
    def stats(self) -> MigrationStats:
        return self._stats

    def start(self, source_total: int, already_migrated: int, pending: int) -> None:
        """Record the differential set sizes and start timing."""
        with self._lock:
            self._stats.source_total = source_total
            self._stats.already_migrated = already_migrated
            self._stats.pending = pending
            self._stats.start_time = datetime.now()

        if self._sample_resources and self._monitor_thread is None:
            self._stop_flag.clear()
            self._monitor_thread = threading.Thread(target=self._monitor_resources, daemon=True)
            self._monitor_thread.start()

    def record_skip(self, skip: Skip) -> None:
        with self._lock:
            self._stats.skipped += 1
            self._stats.skip_reasons[skip.reason] += 1

    def record_error(self, legacy_id: Optional[int], error_category: str, message: str) -> None:
        with self._lock:
            self._record_failure(legacy_id, error_category, message)

    def record_batch(self, result: BatchLoadResult) -> None:
        """Accumulate the outcome of one loaded batch."""
        with self._lock:
            self._stats.newly_migrated += result.inserted_count
            self._stats.updated += result.updated_count
            self._stats.conflicts += len(result.conflicts)
            for failure in result.failures:
                self._record_failure(failure.legacy_id, failure.error_category, failure.message)
            self._stats.batches_completed += 1

    def _record_failure(self, legacy_id: Optional[int], error_category: str, message: str) -> None:
        self._stats.errors += 1
        if len(self._stats.failures) < MAX_RECORDED_FAILURES:
            self._stats.failures.append({
                'legacy_id': legacy_id,
                'error_category': error_category,
                'message': message[:500]
            })

    def snapshot(self) -> Dict[str, Any]:
        """
        Return a consistent copy of counters and derived metrics.

        success_rate_percent is newly migrated (plus corrected) rows over processed
        rows; a run that processed nothing reports 100. coverage_percent is capped
        at 100 since correction runs revisit already-migrated rows.
        """
        with self._lock:
            stats = self._stats
            now = stats.end_time or datetime.now()
            elapsed = (now - stats.start_time).total_seconds() if stats.start_time else 0.0
            processed = stats.processed
            remaining = max(stats.pending - processed, 0)
            records_per_second = processed / elapsed if elapsed > 0 else 0.0
            coverage_base = min(stats.already_migrated + stats.newly_migrated + stats.conflicts,
                                stats.source_total)
            succeeded = stats.newly_migrated + stats.updated

            return {
                'entity_type': stats.entity_type,
                'batch_size': stats.batch_size,
                'source_total': stats.source_total,
                'already_migrated': stats.already_migrated,
                'pending': stats.pending,
                'newly_migrated': stats.newly_migrated,
                'updated': stats.updated,
                'conflicts': stats.conflicts,
                'skipped': stats.skipped,
                'errors': stats.errors,
                'processed': processed,
                'batches_completed': stats.batches_completed,
                'skip_reasons': dict(stats.skip_reasons),
                'failures': list(stats.failures),
                'success_rate_percent': (succeeded / processed * 100) if processed else 100.0,
                'coverage_percent': (coverage_base / stats.source_total * 100) if stats.source_total else 100.0,
                'percent_complete': (processed / stats.pending * 100) if stats.pending else 100.0,
                'elapsed_seconds': elapsed,
                'records_per_second': records_per_second,
                'records_per_minute': records_per_second * 60,
                'eta_seconds': (remaining / records_per_second) if records_per_second > 0 else None,
                'start_time': stats.start_time.isoformat() if stats.start_time else None,
                'end_time': stats.end_time.isoformat() if stats.end_time else None,
                'resource_usage': {
                    'current_memory_mb': self._get_current_memory_mb(),
                    'peak_memory_mb': stats.peak_memory_mb,
                    'avg_cpu_percent': self._get_avg_cpu_percent()
                }
            }

    def log_progress(self) -> None:
        snap = self.snapshot()
        eta = f"{snap['eta_seconds']:.0f}s" if snap['eta_seconds'] is not None else "n/a"
        self.logger.info(
            f"{snap['entity_type']}: {snap['processed']}/{snap['pending']} ({snap['percent_complete']:.1f}%) "
            f"migrated={snap['newly_migrated']} skipped={snap['skipped']} errors={snap['errors']} "
            f"rate={snap['records_per_minute']:.0f}/min eta={eta}"
        )

    def finish(self) -> Dict[str, Any]:
        """Stop timing and resource sampling; return the final snapshot."""
        self._stop_flag.set()
        if self._monitor_thread and self._monitor_thread.is_alive():
            self._monitor_thread.join(timeout=1.0)
        self._monitor_thread = None

        with self._lock:
            if self._stats.start_time is None:
                self._stats.start_time = datetime.now()
            self._stats.end_time = datetime.now()
            self._stats.avg_cpu_percent = self._get_avg_cpu_percent()
        return self.snapshot()

    def log_summary(self) -> None:
        """Log the final summary: totals, successes, skips with reasons, and errors."""
        snap = self.snapshot()
        self.logger.info(
            f"{snap['entity_type']} summary: source={snap['source_total']} "
            f"already_migrated={snap['already_migrated']} newly_migrated={snap['newly_migrated']} "
            f"updated={snap['updated']} conflicts={snap['conflicts']} skipped={snap['skipped']} "
            f"errors={snap['errors']} success_rate={snap['success_rate_percent']:.1f}% "
            f"in {snap['elapsed_seconds']:.1f}s"
        )
        for reason, count in sorted(snap['skip_reasons'].items()):
            self.logger.info(f"  skipped {count} ({reason})")
        for failure in snap['failures'][:20]:
            self.logger.error(f"  failed legacy id {failure['legacy_id']} "
                              f"({failure['error_category']}): {failure['message']}")
        if snap['errors'] > 20:
            self.logger.error(f"  ... {snap['errors'] - 20} more failures in the run report")

    def _monitor_resources(self) -> None:
        """Monitor system resources in background thread."""
        while not self._stop_flag.is_set():
            try:
                memory_mb = self._get_current_memory_mb()
                cpu_percent = psutil.cpu_percent(interval=None)
                with self._lock:
                    if memory_mb > self._stats.peak_memory_mb:
                        self._stats.peak_memory_mb = memory_mb
                    self._cpu_samples.append(cpu_percent)
            except (psutil.Error, OSError) as e:
                self.logger.warning(f"Error monitoring resources: {e}")
                break
            self._stop_flag.wait(self._sample_interval)

    def _get_current_memory_mb(self) -> float:
        """Get current memory usage in MB."""
        try:
            return psutil.Process().memory_info().rss / 1024 / 1024
        except (psutil.Error, OSError):
            return 0.0

    def _get_avg_cpu_percent(self) -> float:
        if not self._cpu_samples:
            return 0.0
        return sum(self._cpu_samples) / len(self._cpu_samples)
