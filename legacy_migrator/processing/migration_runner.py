"""
Entity Migration Runner - drives one entity through its run state machine.

    INIT -> BUILDING_LOOKUPS -> RESOLVING_DIFFERENTIAL -> MIGRATING_BATCH* -> VALIDATING -> DONE

FAILED is entered from any state when a fatal error (lost connection, schema
mismatch) ends the run. Batches are processed one at a time in ascending
legacy id order; each batch is retried on connection loss because loads are
idempotent. A stop request is honoured at the next batch boundary and leaves
the target consistent and resumable.

Validate mode runs INIT -> VALIDATING -> DONE; rollback mode runs INIT -> DONE.
"""

import logging
import threading
import time

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..config.config_manager import ProcessingParameters
from ..database.batch_loader import BatchLoader, clamp_batch_size
from ..database.connection_manager import ConnectionManager
from ..database.differential_resolver import DifferentialResolver
from ..database.lookup_builder import LookupBuilder
from ..exceptions import FATAL_ERRORS, DatabaseConnectionError, TransformError
from ..mapping.record_transformer import RecordTransformer
from ..models import (
    BatchLoadResult,
    EntityDescriptor,
    MigrationContract,
    MigrationRun,
    RunMode,
    RunState,
    Skip,
    TargetRecord,
)
from ..monitoring.progress_tracker import ProgressTracker
from ..validation.reconciliation_validator import ReconciliationValidator
from ..validation.validation_models import ValidationConfig


class EntityMigrationRunner:
    """
    Runs the engine for one entity descriptor.

    Args:
        connection_manager: Open ConnectionManager shared by all components
        contract: Migration contract
        descriptor: Entity to run
        params: Processing parameters (batch size, retries, page sizes, ...)
        batch_size: Explicit batch size; overrides the descriptor and params
        dry_run: Transform and count without writing
        correction_mode: Update correction columns on conflicts
        limit: Cap on pending rows processed this run
        validate: Run reconciliation after migrating
        stop_event: Shared event; when set the run stops at the next batch boundary
        sleep: Used for retry backoff
    """

    def __init__(self, connection_manager: ConnectionManager, contract: MigrationContract,
                 descriptor: EntityDescriptor, params: Optional[ProcessingParameters] = None,
                 batch_size: Optional[int] = None, dry_run: bool = False, correction_mode: bool = False,
                 limit: Optional[int] = None, validate: Optional[bool] = None,
                 stop_event: Optional[threading.Event] = None, sample_resources: bool = True,
                 sleep: Callable[[float], None] = time.sleep):
        self.logger = logging.getLogger(__name__)
        self.connections = connection_manager
        self.contract = contract
        self.descriptor = descriptor
        self.params = params or ProcessingParameters()
        self.dry_run = dry_run
        self.correction_mode = correction_mode
        self.limit = limit
        self.validate_after = self.params.enable_validation if validate is None else validate
        self._stop_event = stop_event or threading.Event()
        self._sleep = sleep

        requested = batch_size or descriptor.batch_size or self.params.batch_size
        self.batch_size = clamp_batch_size(requested, self.logger)

        self.lookup_builder = LookupBuilder(connection_manager, contract,
                                            page_size=self.params.lookup_page_size,
                                            recheck_on_miss=self.params.recheck_on_miss)
        self.resolver = DifferentialResolver(connection_manager, contract, self.lookup_builder,
                                             page_size=self.params.source_page_size)
        self.loader = BatchLoader(connection_manager, contract, batch_size=self.batch_size,
                                  correction_mode=correction_mode)
        self.transformer = RecordTransformer(descriptor, contract.enum_mappings)
        self.validator = ReconciliationValidator(
            connection_manager, contract, self.lookup_builder, self.resolver,
            ValidationConfig(sample_size=self.params.validation_sample_size,
                             min_coverage_percent=self.params.min_coverage_percent)
        )
        self.tracker = ProgressTracker(descriptor.name, self.batch_size, sample_resources=sample_resources)
        self.lookups: Dict[str, Any] = {}
        self.current_run: Optional[MigrationRun] = None

    def request_stop(self) -> None:
        """Ask the run to stop at the next batch boundary."""
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def run(self, mode: RunMode = RunMode.MIGRATE) -> MigrationRun:
        """
        Execute the run in the given mode.

        Returns:
            The finished MigrationRun (DONE)

        Raises:
            DatabaseConnectionError, SchemaMismatchError: After the run is marked FAILED
        """
        run = MigrationRun(entity_type=self.descriptor.name, mode=mode, batch_size=self.batch_size,
                           dry_run=self.dry_run, correction_mode=self.correction_mode,
                           started_at=datetime.now())
        self.current_run = run
        self.logger.info(f"{self.descriptor.name}: starting {mode.value} run "
                         f"(batch size {self.batch_size}{', dry run' if self.dry_run else ''}"
                         f"{', correction mode' if self.correction_mode else ''})")

        try:
            if mode is RunMode.MIGRATE:
                self._migrate(run)
            elif mode is RunMode.VALIDATE:
                self._transition(run, RunState.VALIDATING)
                run.validation = self.validator.validate(self.descriptor, self.transformer)
                self._transition(run, RunState.DONE)
            elif mode is RunMode.ROLLBACK:
                self._rollback(run)
            else:
                raise ValueError(f"Unsupported run mode: {mode}")
        except FATAL_ERRORS as e:
            run.error_summary = f"{type(e).__name__}: {e.message}"
            self.logger.error(f"{self.descriptor.name}: run failed in state {run.state.value}: {e.message}")
            self._transition(run, RunState.FAILED)
            raise
        except Exception as e:
            run.error_summary = f"{type(e).__name__}: {e}"
            self.logger.exception(f"{self.descriptor.name}: unexpected error in state {run.state.value}")
            if not run.is_finished:
                self._transition(run, RunState.FAILED)
            raise
        finally:
            self._finalize(run)

        return run

    def _transition(self, run: MigrationRun, new_state: RunState) -> None:
        previous = run.state
        run.transition_to(new_state)
        if previous is not new_state:
            self.logger.info(f"{self.descriptor.name}: {previous.value} -> {new_state.value}")

    def _migrate(self, run: MigrationRun) -> None:
        descriptor = self.descriptor

        self._transition(run, RunState.BUILDING_LOOKUPS)
        # Schema problems must surface before the first write
        self.lookup_builder.verify_target_schema(descriptor)
        self.lookups = self.lookup_builder.build_lookups(descriptor)

        self._transition(run, RunState.RESOLVING_DIFFERENTIAL)
        differential = self.resolver.resolve(descriptor, limit=self.limit, include_migrated=self.correction_mode)
        self.tracker.start(differential.source_total, differential.already_migrated, len(differential))

        pending = differential.pending
        batch_count = (len(pending) + self.batch_size - 1) // self.batch_size
        for batch_number, start in enumerate(range(0, len(pending), self.batch_size), 1):
            if self.stop_requested:
                run.interrupted = True
                self.logger.warning(f"{descriptor.name}: stop requested, ending before batch "
                                    f"{batch_number}/{batch_count}; re-run to resume")
                break

            self._transition(run, RunState.MIGRATING_BATCH)
            rows = pending[start:start + self.batch_size]
            self._process_batch(rows, batch_number, batch_count)

            if batch_number % max(1, self.params.progress_reporting_interval) == 0:
                self.tracker.log_progress()
            if self.params.batch_delay_ms and batch_number < batch_count:
                # Waiting on the stop event keeps the delay interruptible
                self._stop_event.wait(self.params.batch_delay_ms / 1000.0)

        if self.validate_after and not self.dry_run and not run.interrupted:
            self._transition(run, RunState.VALIDATING)
            run.validation = self.validator.validate(descriptor, self.transformer, self.lookups)
        self._transition(run, RunState.DONE)

    def _process_batch(self, rows: List[Dict[str, Any]], batch_number: int, batch_count: int) -> None:
        descriptor = self.descriptor
        first_id = rows[0].get(descriptor.source_id_column)
        last_id = rows[-1].get(descriptor.source_id_column)
        self.logger.info(f"{descriptor.name}: batch {batch_number}/{batch_count} "
                         f"(legacy ids {first_id}-{last_id}, {len(rows)} rows)")

        records = self._transform_rows(rows)
        if not records:
            self.tracker.record_batch(BatchLoadResult())
            return

        if self.dry_run:
            self.logger.info(f"{descriptor.name}: [dry run] would load {len(records)} rows")
            self.tracker.record_batch(BatchLoadResult(attempted=len(records), inserted_count=len(records)))
            return

        result = self._load_with_retry(records, batch_number)
        for failure in result.failures:
            self.logger.error(f"{descriptor.name} legacy id {failure.legacy_id} failed "
                              f"({failure.error_category}): {failure.message}")
        if not self.correction_mode:
            for legacy_id in result.conflicts:
                self.logger.warning(f"{descriptor.name} legacy id {legacy_id} already on target, left unchanged")
        self.tracker.record_batch(result)

    def _transform_rows(self, rows: List[Dict[str, Any]]) -> List[TargetRecord]:
        records = []
        for row in rows:
            try:
                outcome = self.transformer.transform(row, self.lookups)
            except TransformError as e:
                legacy_id = e.legacy_id if e.legacy_id is not None else row.get(self.descriptor.source_id_column)
                self.logger.error(f"{self.descriptor.name} legacy id {legacy_id} could not be transformed: "
                                  f"{e.message}")
                self.tracker.record_error(legacy_id, e.error_category, e.message)
                continue

            if isinstance(outcome, Skip):
                self.logger.warning(f"{self.descriptor.name} legacy id {outcome.legacy_id} skipped "
                                    f"({outcome.reason}): {outcome.detail}")
                self.tracker.record_skip(outcome)
            else:
                records.append(outcome)
        return records

    def _load_with_retry(self, records: List[TargetRecord], batch_number: int) -> BatchLoadResult:
        """
        Load a batch, retrying on connection loss with exponential backoff.

        Rows settled before the connection dropped keep their outcome; a retry
        only loads the rest, so they are not counted again as conflicts.
        """
        attempts = max(1, self.params.max_retry_attempts)
        result = BatchLoadResult(attempted=len(records))
        remaining = records
        for attempt in range(1, attempts + 1):
            try:
                return self.loader.load_batch(self.descriptor, remaining, result=result)
            except DatabaseConnectionError as e:
                if attempt == attempts:
                    self.logger.error(f"{self.descriptor.name}: batch {batch_number} failed after "
                                      f"{attempts} attempts: {e.message}")
                    raise
                delay = self.params.retry_delay_seconds * (2 ** (attempt - 1))
                self.logger.warning(f"{self.descriptor.name}: batch {batch_number} lost its connection "
                                    f"(attempt {attempt}/{attempts}), retrying in {delay}s: {e.message}")
                self._sleep(delay)
                settled = result.settled_ids
                remaining = [record for record in records if record.legacy_id not in settled]

    def _rollback(self, run: MigrationRun) -> None:
        descriptor = self.descriptor
        self.lookup_builder.verify_columns(descriptor.target_table, [descriptor.legacy_id_column])
        if self.dry_run:
            run.deleted_count = self.validator.count_migrated_rows(descriptor)
            self.logger.info(f"{descriptor.name}: [dry run] would delete {run.deleted_count} migrated rows")
        else:
            run.deleted_count = self.loader.delete_migrated(descriptor)
        self._transition(run, RunState.DONE)

    def _finalize(self, run: MigrationRun) -> None:
        stats = self.tracker.finish()
        stats['transformer'] = self.transformer.stats
        stats['lookup_rechecks'] = {
            name: {'rechecked': getattr(lookup, 'recheck_count', 0),
                   'found_on_recheck': getattr(lookup, 'refreshed_count', 0)}
            for name, lookup in self.lookups.items()
        }
        run.stats = stats
        run.completed_at = datetime.now()
        if run.mode is RunMode.MIGRATE:
            self.tracker.log_summary()
        if run.validation is not None:
            self.logger.info(run.validation.summary or run.validation.generate_summary())
