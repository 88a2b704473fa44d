"""
Tests for the core data models and the run state machine.
"""

import unittest

from legacy_migrator.exceptions import InvalidStateTransitionError
from legacy_migrator.models import (
    DifferentialSet,
    EntityDescriptor,
    FieldMapping,
    ForeignKeyMapping,
    MigrationContract,
    MigrationRun,
    RunMode,
    RunState,
)


class TestFieldMapping(unittest.TestCase):

    def test_mapping_type_string_is_split(self):
        mapping = FieldMapping('email', 'email', 'trim, lower')
        self.assertEqual(mapping.mapping_type, ['trim', 'lower'])

    def test_mapping_type_defaults_to_empty_chain(self):
        self.assertEqual(FieldMapping('a', 'b').mapping_type, [])

    def test_empty_columns_rejected(self):
        with self.assertRaises(ValueError):
            FieldMapping('', 'b')
        with self.assertRaises(ValueError):
            FieldMapping('a', '')


class TestEntityDescriptor(unittest.TestCase):

    def setUp(self):
        self.descriptor = EntityDescriptor(
            name='orders',
            source_table='dispatch_instruction',
            target_table='orders',
            legacy_id_column='legacy_instruction_id',
            field_mappings=[FieldMapping('order_number', 'order_number', 'trim'),
                            FieldMapping('notes', 'notes')],
            foreign_keys=[ForeignKeyMapping('patient_id', 'patient_id', 'patients'),
                          ForeignKeyMapping('doctor_id', 'doctor_id', 'doctors', required=False),
                          ForeignKeyMapping('referring_doctor_id', 'referring_doctor_id', 'doctors',
                                            required=False)],
            constants={'source_system': 'dispatch'},
        )

    def test_mutable_defaults(self):
        descriptor = EntityDescriptor('x', 's', 't', 'legacy_x_id')
        self.assertEqual(descriptor.field_mappings, [])
        self.assertEqual(descriptor.dependencies, [])
        self.assertEqual(descriptor.constants, {})

    def test_referenced_entities_are_distinct(self):
        self.assertEqual(self.descriptor.referenced_entities, ['patients', 'doctors'])

    def test_target_columns(self):
        self.assertEqual(self.descriptor.target_columns, [
            'legacy_instruction_id', 'order_number', 'notes', 'patient_id', 'doctor_id',
            'referring_doctor_id', 'source_system', 'metadata'
        ])

    def test_target_columns_without_provenance(self):
        self.descriptor.provenance_column = None
        self.assertNotIn('metadata', self.descriptor.target_columns)

    def test_consumed_source_columns(self):
        self.assertEqual(self.descriptor.consumed_source_columns,
                         {'id', 'order_number', 'notes', 'patient_id', 'doctor_id', 'referring_doctor_id'})

    def test_required_fields(self):
        with self.assertRaises(ValueError):
            EntityDescriptor('x', 's', 't', '')


class TestMigrationContract(unittest.TestCase):

    def test_get_entity_unknown(self):
        contract = MigrationContract()
        with self.assertRaises(KeyError):
            contract.get_entity('patients')


class TestDifferentialSet(unittest.TestCase):

    def test_empty(self):
        differential = DifferentialSet(source_total=3, already_migrated=3)
        self.assertTrue(differential.is_empty)
        self.assertEqual(len(differential), 0)


class TestRunStateMachine(unittest.TestCase):
    """Runs move INIT -> BUILDING_LOOKUPS -> RESOLVING_DIFFERENTIAL -> MIGRATING_BATCH* -> VALIDATING -> DONE."""

    def test_full_migrate_path(self):
        run = MigrationRun('patients')
        for state in (RunState.BUILDING_LOOKUPS, RunState.RESOLVING_DIFFERENTIAL, RunState.MIGRATING_BATCH,
                      RunState.MIGRATING_BATCH, RunState.VALIDATING, RunState.DONE):
            run.transition_to(state)

        self.assertTrue(run.succeeded)
        self.assertEqual(run.state_history[0], RunState.INIT)
        self.assertEqual(run.state_history.count(RunState.MIGRATING_BATCH), 2)

    def test_nothing_to_migrate_path(self):
        run = MigrationRun('patients')
        run.transition_to(RunState.BUILDING_LOOKUPS)
        run.transition_to(RunState.RESOLVING_DIFFERENTIAL)
        run.transition_to(RunState.DONE)
        self.assertTrue(run.is_finished)

    def test_validate_and_rollback_paths(self):
        validate = MigrationRun('patients', mode=RunMode.VALIDATE)
        validate.transition_to(RunState.VALIDATING)
        validate.transition_to(RunState.DONE)

        rollback = MigrationRun('patients', mode=RunMode.ROLLBACK)
        rollback.transition_to(RunState.DONE)
        self.assertTrue(rollback.succeeded)

    def test_skipping_states_is_rejected(self):
        run = MigrationRun('patients')
        with self.assertRaises(InvalidStateTransitionError):
            run.transition_to(RunState.MIGRATING_BATCH)

    def test_failed_reachable_from_any_running_state(self):
        for path in ([], [RunState.BUILDING_LOOKUPS],
                     [RunState.BUILDING_LOOKUPS, RunState.RESOLVING_DIFFERENTIAL, RunState.MIGRATING_BATCH]):
            run = MigrationRun('patients')
            for state in path:
                run.transition_to(state)
            run.transition_to(RunState.FAILED)
            self.assertFalse(run.succeeded)
            self.assertTrue(run.is_finished)

    def test_finished_runs_are_terminal(self):
        run = MigrationRun('patients', mode=RunMode.ROLLBACK)
        run.transition_to(RunState.DONE)
        with self.assertRaises(InvalidStateTransitionError):
            run.transition_to(RunState.FAILED)

    def test_batch_size_bounds(self):
        with self.assertRaises(ValueError):
            MigrationRun('patients', batch_size=49)
        with self.assertRaises(ValueError):
            MigrationRun('patients', batch_size=1001)
        MigrationRun('patients', batch_size=50)
        MigrationRun('patients', batch_size=1000)


if __name__ == '__main__':
    unittest.main()
