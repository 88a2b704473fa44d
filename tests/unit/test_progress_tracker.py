"""
Tests for ProgressTracker counters and derived metrics.
"""

import threading
import unittest

from legacy_migrator.models import BatchLoadResult, RecordFailure, Skip
from legacy_migrator.monitoring.progress_tracker import MAX_RECORDED_FAILURES, ProgressTracker


class TestProgressTracker(unittest.TestCase):

    def setUp(self):
        self.tracker = ProgressTracker('patients', batch_size=100, sample_resources=False)

    def test_counts_after_a_batch_with_one_failure(self):
        """99 inserted and 1 failed gives a 99% success rate."""
        self.tracker.start(source_total=100, already_migrated=0, pending=100)
        self.tracker.record_batch(BatchLoadResult(
            attempted=100, inserted_count=99,
            failures=[RecordFailure(50, 'check_constraint_violation', 'bad status')]
        ))

        stats = self.tracker.finish()

        self.assertEqual(stats['newly_migrated'], 99)
        self.assertEqual(stats['errors'], 1)
        self.assertEqual(stats['processed'], 100)
        self.assertAlmostEqual(stats['success_rate_percent'], 99.0)
        self.assertEqual(stats['failures'][0]['legacy_id'], 50)
        self.assertEqual(stats['batches_completed'], 1)
        self.assertEqual(stats['percent_complete'], 100.0)

    def test_already_migrated_and_conflicts(self):
        self.tracker.start(source_total=3, already_migrated=1, pending=2)
        self.tracker.record_batch(BatchLoadResult(attempted=2, inserted_count=1, conflicts=[12]))

        stats = self.tracker.finish()

        self.assertEqual(stats['already_migrated'], 1)
        self.assertEqual(stats['newly_migrated'], 1)
        self.assertEqual(stats['conflicts'], 1)
        self.assertAlmostEqual(stats['coverage_percent'], 100.0)

    def test_correction_run_counts_updates_as_successes(self):
        """A corrected row is counted as already migrated and as a conflict; coverage stays at 100."""
        self.tracker.start(source_total=3, already_migrated=1, pending=3)
        self.tracker.record_batch(BatchLoadResult(attempted=3, inserted_count=2, conflicts=[1], updated_count=1))

        stats = self.tracker.finish()

        self.assertEqual(stats['updated'], 1)
        self.assertAlmostEqual(stats['success_rate_percent'], 100.0)
        self.assertAlmostEqual(stats['coverage_percent'], 100.0)

    def test_skips_are_counted_by_reason(self):
        self.tracker.start(source_total=3, already_migrated=0, pending=3)
        self.tracker.record_skip(Skip(1, 'lookup_miss:doctor_id'))
        self.tracker.record_skip(Skip(2, 'lookup_miss:doctor_id'))
        self.tracker.record_skip(Skip(3, 'missing_doctor_id'))

        stats = self.tracker.snapshot()

        self.assertEqual(stats['skipped'], 3)
        self.assertEqual(stats['skip_reasons'], {'lookup_miss:doctor_id': 2, 'missing_doctor_id': 1})
        self.assertEqual(stats['success_rate_percent'], 0.0)

    def test_nothing_processed_reports_full_success(self):
        self.tracker.start(source_total=10, already_migrated=10, pending=0)
        stats = self.tracker.finish()

        self.assertEqual(stats['success_rate_percent'], 100.0)
        self.assertEqual(stats['percent_complete'], 100.0)
        self.assertIsNone(stats['eta_seconds'])

    def test_finish_without_start(self):
        stats = self.tracker.finish()
        self.assertIsNotNone(stats['start_time'])
        self.assertIsNotNone(stats['end_time'])

    def test_failure_list_is_bounded_but_count_is_exact(self):
        self.tracker.start(source_total=0, already_migrated=0, pending=0)
        for legacy_id in range(MAX_RECORDED_FAILURES + 5):
            self.tracker.record_error(legacy_id, 'transform_error', 'bad row')

        stats = self.tracker.snapshot()
        self.assertEqual(stats['errors'], MAX_RECORDED_FAILURES + 5)
        self.assertEqual(len(stats['failures']), MAX_RECORDED_FAILURES)

    def test_concurrent_updates(self):
        self.tracker.start(source_total=4000, already_migrated=0, pending=4000)

        def worker():
            for _ in range(100):
                self.tracker.record_batch(BatchLoadResult(attempted=10, inserted_count=10))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stats = self.tracker.snapshot()
        self.assertEqual(stats['newly_migrated'], 4000)
        self.assertEqual(stats['batches_completed'], 400)

    def test_resource_sampling_thread_stops(self):
        tracker = ProgressTracker('patients', sample_resources=True, sample_interval=0.01)
        tracker.start(source_total=0, already_migrated=0, pending=0)
        stats = tracker.finish()

        self.assertIsNone(tracker._monitor_thread)
        self.assertIn('peak_memory_mb', stats['resource_usage'])


if __name__ == '__main__':
    unittest.main()
