"""
Batch Loader - idempotent, bounded batch inserts into the target store.

Two-tier insertion strategy:
1. Fast path: one executemany per batch inside a single transaction
2. Fallback path: per-record inserts, each in its own transaction, so one bad
   row does not block its batch-mates

Records whose legacy id is already on the target are conflicts. They are a
no-op by default, or a targeted update of the entity's correction columns
when the loader runs in correction mode.
"""

import json
import logging

from typing import Any, List, Optional, Set, Tuple

import pyodbc

from .connection_manager import ConnectionManager, TARGET
from ..config.processing_defaults import ProcessingDefaults
from ..exceptions import ConflictError, DatabaseConstraintError
from ..interfaces import BatchLoaderInterface
from ..models import (
    BatchLoadResult,
    EntityDescriptor,
    MigrationContract,
    RecordFailure,
    TargetRecord,
)
from ..utils import SqlUtils, json_default


def clamp_batch_size(batch_size: int, logger: logging.Logger = None) -> int:
    """Bound a requested batch size to MIN_BATCH_SIZE..MAX_BATCH_SIZE."""
    bounded = max(ProcessingDefaults.MIN_BATCH_SIZE, min(ProcessingDefaults.MAX_BATCH_SIZE, int(batch_size)))
    if bounded != batch_size and logger:
        logger.warning(f"Batch size {batch_size} out of range, using {bounded}")
    return bounded


def categorize_database_error(error: Exception) -> str:
    """Map a pyodbc error message to a stable error category."""
    error_str = str(error).lower()
    if 'primary key constraint' in error_str or 'duplicate key' in error_str or 'unique' in error_str:
        return 'duplicate_key'
    if 'foreign key constraint' in error_str:
        return 'foreign_key_violation'
    if 'check constraint' in error_str:
        return 'check_constraint_violation'
    if 'cannot insert the value null' in error_str or 'not null constraint' in error_str:
        return 'not_null_violation'
    if 'would be truncated' in error_str:
        return 'truncation'
    if 'cast specification' in error_str or 'converting' in error_str or 'conversion failed' in error_str:
        return 'conversion_error'
    return 'database_error'


class BatchLoader(BatchLoaderInterface):
    """
    Persists transformed records for one entity at a time.

    Args:
        connection_manager: Open ConnectionManager (only the TARGET store is written)
        contract: Migration contract providing the target schema
        batch_size: Upper bound on records per transaction (clamped to 50-1000)
        correction_mode: Update correction columns on conflict instead of ignoring
    """

    def __init__(self, connection_manager: ConnectionManager, contract: MigrationContract,
                 batch_size: int = ProcessingDefaults.BATCH_SIZE, correction_mode: bool = False,
                 logger: logging.Logger = None):
        self.logger = logger or logging.getLogger(__name__)
        self.connections = connection_manager
        self.contract = contract
        self.batch_size = clamp_batch_size(batch_size, self.logger)
        self.correction_mode = correction_mode

    def _table(self, descriptor: EntityDescriptor) -> str:
        return SqlUtils.qualified_table_name(self.contract.target_schema, descriptor.target_table)

    def load_batch(self, descriptor: EntityDescriptor, records: List[TargetRecord],
                   result: Optional[BatchLoadResult] = None) -> BatchLoadResult:
        """
        Load records, splitting into transactions of at most batch_size.

        Args:
            descriptor: Entity being loaded
            records: Transformed records in ascending legacy id order
            result: Result to accumulate into, so a retried batch keeps the outcome
                of rows settled before the connection dropped

        Returns:
            BatchLoadResult; inserted_count is the number of new target rows

        Raises:
            DatabaseConnectionError: If the target store becomes unreachable
        """
        if result is None:
            result = BatchLoadResult(attempted=len(records))
        if not records:
            return result

        for start in range(0, len(records), self.batch_size):
            self._load_chunk(descriptor, records[start:start + self.batch_size], result)

        self.logger.info(
            f"{descriptor.name}: batch of {result.attempted} -> inserted {result.inserted_count}, "
            f"conflicts {len(result.conflicts)}, updated {result.updated_count}, failed {result.failed_count}"
        )
        return result

    def _load_chunk(self, descriptor: EntityDescriptor, records: List[TargetRecord],
                    result: BatchLoadResult) -> None:
        existing = self._existing_legacy_ids(descriptor, [r.legacy_id for r in records])

        to_insert = []
        batch_ids: Set[int] = set()
        for record in records:
            if record.legacy_id in existing or record.legacy_id in batch_ids:
                self._resolve_conflict(descriptor, record, result)
            else:
                batch_ids.add(record.legacy_id)
                to_insert.append(record)

        if not to_insert:
            return

        columns, data_tuples, sql = self._prepare_insert(descriptor, to_insert)

        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(f"SQL: {sql}")
            self.logger.debug(f"Sample params (first record): {dict(zip(columns, data_tuples[0]))}")

        inserted, used_fast_path = self._try_fast_insert(descriptor, sql, data_tuples)
        if used_fast_path:
            result.inserted_count += inserted
            result.inserted_ids.extend(record.legacy_id for record in to_insert)
            return

        result.used_fast_path = False
        self._fallback_individual_insert(descriptor, sql, to_insert, data_tuples, result)

    def _existing_legacy_ids(self, descriptor: EntityDescriptor, legacy_ids: List[int]) -> Set[int]:
        """Return the subset of legacy_ids already present on the target."""
        if not legacy_ids:
            return set()
        legacy = SqlUtils.quote_identifier(descriptor.legacy_id_column)
        sql = (f"SELECT {legacy} FROM {self._table(descriptor)} "
               f"WHERE {legacy} IN ({SqlUtils.placeholders(len(legacy_ids))})")
        rows = self.connections.execute(TARGET, sql, legacy_ids)
        return {int(row[descriptor.legacy_id_column]) for row in rows}

    def _prepare_insert(self, descriptor: EntityDescriptor,
                        records: List[TargetRecord]) -> Tuple[List[str], List[Tuple], str]:
        """
        Prepare data tuples for every column the entity writes.

        Returns:
            (columns, data_tuples, sql_statement)
        """
        columns = descriptor.target_columns
        column_list = ', '.join(SqlUtils.quote_identifier(col) for col in columns)
        sql = (f"INSERT INTO {self._table(descriptor)} ({column_list}) "
               f"VALUES ({SqlUtils.placeholders(len(columns))})")

        data_tuples = [tuple(self._column_value(descriptor, record, col) for col in columns)
                       for record in records]
        return columns, data_tuples, sql

    def _column_value(self, descriptor: EntityDescriptor, record: TargetRecord, column: str) -> Any:
        if column == descriptor.legacy_id_column:
            return record.legacy_id
        if column == descriptor.provenance_column:
            if record.provenance is None:
                return None
            return json.dumps(record.provenance.to_dict(), default=json_default, sort_keys=True)
        value = record.values.get(column)
        # Semi-structured values go to JSON columns as text
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=json_default, sort_keys=True)
        return value

    def _try_fast_insert(self, descriptor: EntityDescriptor, sql: str,
                         data_tuples: List[Tuple]) -> Tuple[int, bool]:
        """
        Attempt the whole batch in one transaction.

        Returns:
            (inserted, success) where success=False means the batch was rolled
            back and the per-record fallback is needed
        """
        if len(data_tuples) <= 1:
            return 0, False  # Single record goes straight to the fallback path

        try:
            with self.connections.transaction(TARGET) as cursor:
                cursor.fast_executemany = True
                cursor.executemany(sql, data_tuples)
            return len(data_tuples), True
        except pyodbc.Error as e:
            self.logger.warning(f"{descriptor.name}: whole-batch insert of {len(data_tuples)} rows failed, "
                                f"falling back to per-record inserts: {e}")
            return 0, False

    def _fallback_individual_insert(self, descriptor: EntityDescriptor, sql: str,
                                    records: List[TargetRecord], data_tuples: List[Tuple],
                                    result: BatchLoadResult) -> None:
        """Insert records one by one; failures are captured with their legacy id."""
        for record, values in zip(records, data_tuples):
            try:
                self._insert_one(descriptor, sql, record, values)
                result.inserted_count += 1
                result.inserted_ids.append(record.legacy_id)
            except ConflictError:
                self._resolve_conflict(descriptor, record, result)
            except DatabaseConstraintError as e:
                result.failures.append(RecordFailure(record.legacy_id, e.error_category, e.message))

    def _insert_one(self, descriptor: EntityDescriptor, sql: str, record: TargetRecord, values: Tuple) -> None:
        """
        Insert one record in its own transaction.

        Raises:
            ConflictError: If the legacy id is already present
            DatabaseConstraintError: For any other constraint or data error
        """
        try:
            with self.connections.transaction(TARGET) as cursor:
                cursor.execute(sql, values)
        except pyodbc.Error as e:
            category = categorize_database_error(e)
            if category == 'duplicate_key' and self._existing_legacy_ids(descriptor, [record.legacy_id]):
                raise ConflictError(
                    f"{descriptor.name} legacy id {record.legacy_id} already migrated",
                    entity_type=descriptor.name,
                    legacy_id=record.legacy_id
                )
            error_msg = f"{descriptor.name} legacy id {record.legacy_id} failed to load ({category}): {e}"
            self.logger.error(error_msg)
            raise DatabaseConstraintError(error_msg, entity_type=descriptor.name,
                                          legacy_id=record.legacy_id, error_category=category)

    def _resolve_conflict(self, descriptor: EntityDescriptor, record: TargetRecord,
                          result: BatchLoadResult) -> None:
        """Treat an existing legacy id as already migrated, or apply a correction update."""
        if not self.correction_mode:
            self.logger.debug(f"{descriptor.name} legacy id {record.legacy_id} already present, skipping")
        elif not descriptor.correction_columns:
            self.logger.warning(f"{descriptor.name} has no correction_columns; "
                                f"legacy id {record.legacy_id} left unchanged")
        else:
            try:
                result.updated_count += self._update_correction_columns(descriptor, record)
            except pyodbc.Error as e:
                category = categorize_database_error(e)
                self.logger.error(f"{descriptor.name} legacy id {record.legacy_id} correction failed ({category}): {e}")
                result.failures.append(RecordFailure(record.legacy_id, category, str(e)))
        # Recorded last: a correction cut short by a lost connection is retried
        result.conflicts.append(record.legacy_id)

    def _update_correction_columns(self, descriptor: EntityDescriptor, record: TargetRecord) -> int:
        """Update only the correction columns of an existing row; the rest of the row is untouched."""
        columns = descriptor.correction_columns
        assignments = ', '.join(f"{SqlUtils.quote_identifier(col)} = ?" for col in columns)
        legacy = SqlUtils.quote_identifier(descriptor.legacy_id_column)
        sql = f"UPDATE {self._table(descriptor)} SET {assignments} WHERE {legacy} = ?"
        params = tuple(self._column_value(descriptor, record, col) for col in columns) + (record.legacy_id,)

        with self.connections.transaction(TARGET) as cursor:
            cursor.execute(sql, params)
            updated = cursor.rowcount if cursor.rowcount and cursor.rowcount > 0 else 0
        self.logger.info(f"{descriptor.name} legacy id {record.legacy_id}: corrected {', '.join(columns)}")
        return updated

    def delete_migrated(self, descriptor: EntityDescriptor) -> int:
        """
        Delete every target row with a non-null legacy id, in chunks.

        Rows created natively on the target (legacy id NULL) are never touched.

        Returns:
            Number of rows deleted
        """
        legacy = SqlUtils.quote_identifier(descriptor.legacy_id_column)
        sql = f"DELETE TOP (?) FROM {self._table(descriptor)} WHERE {legacy} IS NOT NULL"

        deleted = 0
        while True:
            with self.connections.transaction(TARGET) as cursor:
                cursor.execute(sql, (self.batch_size,))
                chunk = cursor.rowcount if cursor.rowcount and cursor.rowcount > 0 else 0
            deleted += chunk
            if chunk < self.batch_size:
                break

        self.logger.warning(f"{descriptor.name}: rolled back {deleted} migrated rows from {descriptor.target_table}")
        return deleted
