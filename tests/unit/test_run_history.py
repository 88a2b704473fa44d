"""
Tests for JSON run reports and the migration_run_log bookkeeping table.
"""

import json
import unittest
from datetime import datetime
from pathlib import Path
from tempfile import TemporaryDirectory

from legacy_migrator.models import MigrationRun, RunMode, RunState
from legacy_migrator.monitoring.run_history import RunHistoryRecorder, build_run_report, save_run_report
from tests.helpers import build_clinic_store


def _finished_run(**overrides) -> MigrationRun:
    run = MigrationRun(entity_type='patients', batch_size=100, started_at=datetime(2024, 1, 15, 9, 30))
    for state in (RunState.BUILDING_LOOKUPS, RunState.RESOLVING_DIFFERENTIAL, RunState.MIGRATING_BATCH,
                  RunState.DONE):
        run.transition_to(state)
    run.completed_at = datetime(2024, 1, 15, 9, 31)
    run.stats = {'source_total': 100, 'already_migrated': 0, 'newly_migrated': 99, 'skipped': 0,
                 'errors': 1, 'failures': [{'legacy_id': 50, 'error_category': 'check_constraint_violation',
                                            'message': 'bad status'}]}
    for name, value in overrides.items():
        setattr(run, name, value)
    return run


class TestRunReport(unittest.TestCase):

    def test_report_contents(self):
        report = build_run_report(_finished_run(), 'S1')

        self.assertEqual(report['entity_type'], 'patients')
        self.assertEqual(report['mode'], 'migrate')
        self.assertEqual(report['status'], 'done')
        self.assertEqual(report['state_history'],
                         ['init', 'building_lookups', 'resolving_differential', 'migrating_batch', 'done'])
        self.assertIsNone(report['validation'])

    def test_saved_report_is_json(self):
        with TemporaryDirectory() as temp_dir:
            path = save_run_report(_finished_run(), Path(temp_dir) / 'reports', 'S1')

            self.assertEqual(path.name, 'run_patients_S1.json')
            data = json.loads(path.read_text(encoding='utf-8'))
            self.assertEqual(data['started_at'], '2024-01-15T09:30:00')
            self.assertEqual(data['stats']['newly_migrated'], 99)


class TestRunHistoryRecorder(unittest.TestCase):

    def setUp(self):
        self.store = build_clinic_store()
        self.connections = self.store.connection_manager()
        self.recorder = RunHistoryRecorder(self.connections, 'dbo')

    def tearDown(self):
        self.connections.close()

    def test_records_one_row(self):
        self.assertEqual(self.recorder.record(_finished_run()), 1)

        rows = self.store.target.tables['migration_run_log'].rows
        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row['entity_type'], 'patients')
        self.assertEqual(row['run_type'], 'migrate')
        self.assertEqual(row['status'], 'done')
        self.assertEqual(row['newly_migrated'], 99)
        self.assertEqual(row['errors'], 1)
        # Per-record failures are summarized when the run itself has no error summary
        self.assertIn('check_constraint_violation', row['error_summary'])

    def test_dry_run_rollback(self):
        run = MigrationRun(entity_type='doctors', mode=RunMode.ROLLBACK, dry_run=True)
        run.transition_to(RunState.DONE)
        run.deleted_count = 3

        self.recorder.record(run)

        row = self.store.target.tables['migration_run_log'].rows[0]
        self.assertEqual(row['run_type'], 'rollback (dry run)')
        self.assertEqual(row['deleted_count'], 3)
        self.assertIsNone(row['error_summary'])

    def test_failed_run_keeps_its_error_summary(self):
        run = _finished_run(state=RunState.FAILED, error_summary='SchemaMismatchError: missing column status')

        self.recorder.record(run)

        row = self.store.target.tables['migration_run_log'].rows[0]
        self.assertEqual(row['status'], 'failed')
        self.assertEqual(row['error_summary'], 'SchemaMismatchError: missing column status')

    def test_missing_table_does_not_fail_the_run(self):
        del self.store.target.tables['migration_run_log']

        with self.assertLogs('legacy_migrator.monitoring.run_history', level='WARNING'):
            self.assertIsNone(self.recorder.record(_finished_run()))


if __name__ == '__main__':
    unittest.main()
