"""
Reconciliation Validator - post-migration checks against the live stores.

Runs after an entity run (or standalone in validate mode) and reports:

1. Count parity: migrated target rows vs eligible source rows, as coverage
2. Uniqueness: no legacy id appears twice on the target table
3. Referential integrity: every non-null foreign key on a migrated row points
   at an existing row of the referenced table
4. Sampled field equality: a deterministic sample of migrated rows is
   transformed again from the source and compared column by column

The validator only reads. Findings are collected into a ValidationResult;
connection loss is the one error that propagates.
"""

import json
import logging
import time
import uuid

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import pyodbc

from .validation_models import (
    IntegrityCheckResult,
    ValidationConfig,
    ValidationError,
    ValidationResult,
    ValidationSeverity,
    ValidationType,
)
from ..database.connection_manager import ConnectionManager, TARGET
from ..database.differential_resolver import DifferentialResolver
from ..database.lookup_builder import LookupBuilder
from ..exceptions import TransformError
from ..interfaces import ValidatorInterface
from ..mapping.record_transformer import RecordTransformer
from ..models import EntityDescriptor, MigrationContract, Skip
from ..utils import SqlUtils


COUNT_PARITY_CHECK = "Count Parity"
UNIQUENESS_CHECK = "Legacy Id Uniqueness"
REFERENTIAL_CHECK = "Referential Integrity"
FIELD_EQUALITY_CHECK = "Sampled Field Equality"


def sample_evenly(sorted_ids: List[int], sample_size: int) -> List[int]:
    """Pick sample_size ids spread evenly over sorted_ids (all of them if fewer)."""
    if sample_size <= 0:
        return []
    count = len(sorted_ids)
    if count <= sample_size:
        return list(sorted_ids)
    return [sorted_ids[i * count // sample_size] for i in range(sample_size)]


class ReconciliationValidator(ValidatorInterface):
    """
    Reconciles one entity's target table against its source.

    Args:
        connection_manager: Open ConnectionManager (read-only use)
        contract: Migration contract
        lookup_builder: Used for migrated legacy ids and lookup maps
        resolver: Used for source counts and sampled source rows
        config: Check selection and thresholds
    """

    def __init__(self, connection_manager: ConnectionManager, contract: MigrationContract,
                 lookup_builder: LookupBuilder, resolver: DifferentialResolver,
                 config: Optional[ValidationConfig] = None):
        self.connections = connection_manager
        self.contract = contract
        self.lookup_builder = lookup_builder
        self.resolver = resolver
        self.config = config or ValidationConfig()
        self.logger = logging.getLogger(__name__)

    def _table(self, descriptor: EntityDescriptor) -> str:
        return SqlUtils.qualified_table_name(self.contract.target_schema, descriptor.target_table)

    def validate(self, descriptor: EntityDescriptor, transformer: Optional[RecordTransformer] = None,
                 lookups: Optional[Dict[str, Any]] = None) -> ValidationResult:
        """
        Run every enabled check for an entity.

        Args:
            descriptor: Entity to reconcile
            transformer: Transformer to reuse for field equality (a fresh one is built otherwise)
            lookups: Lookup maps to reuse for field equality (built on demand otherwise)

        Returns:
            ValidationResult; validation_passed is False if any check found an error

        Raises:
            DatabaseConnectionError: If a store becomes unreachable
        """
        start_time = time.time()
        validation_id = str(uuid.uuid4())
        result = ValidationResult(validation_id=validation_id, timestamp=datetime.now(),
                                  entity_type=descriptor.name)

        self.logger.info(f"Starting reconciliation {validation_id} for {descriptor.name}")

        if self.config.enable_count_parity:
            self._check_count_parity(descriptor, result)
        if self.config.enable_uniqueness:
            self._check_uniqueness(descriptor, result)
        if self.config.enable_referential_integrity:
            self._check_referential_integrity(descriptor, result)
        if self.config.enable_field_equality:
            self._check_field_equality(descriptor, result, transformer, lookups)

        result.validation_passed = result.total_errors == 0
        result.execution_time_ms = (time.time() - start_time) * 1000
        result.generate_summary()

        log = self.logger.info if result.validation_passed else self.logger.error
        log(f"Reconciliation {validation_id} for {descriptor.name}: "
            f"{'PASSED' if result.validation_passed else 'FAILED'} "
            f"({result.total_errors} errors, {result.total_warnings} warnings)")
        return result

    def _record(self, result: ValidationResult, check: IntegrityCheckResult, error: ValidationError) -> None:
        if error.severity in (ValidationSeverity.CRITICAL, ValidationSeverity.ERROR):
            check.errors_found += 1
            check.passed = False
        else:
            check.warnings_found += 1
        if check.errors_found + check.warnings_found <= self.config.max_errors_per_check:
            result.add_error(error)

    def _check_failed(self, result: ValidationResult, check: IntegrityCheckResult,
                      error_type: ValidationType, descriptor: EntityDescriptor, e: Exception) -> None:
        self.logger.error(f"{check.check_name} check for {descriptor.name} could not run: {e}")
        self._record(result, check, ValidationError(
            error_type=error_type,
            severity=ValidationSeverity.ERROR,
            message=f"{check.check_name} check could not run: {e}",
            table_name=descriptor.target_table
        ))

    def count_migrated_rows(self, descriptor: EntityDescriptor) -> int:
        legacy = SqlUtils.quote_identifier(descriptor.legacy_id_column)
        rows = self.connections.execute(
            TARGET, f"SELECT COUNT(*) AS row_count FROM {self._table(descriptor)} WHERE {legacy} IS NOT NULL"
        )
        return int(rows[0]['row_count']) if rows else 0

    def _check_count_parity(self, descriptor: EntityDescriptor, result: ValidationResult) -> None:
        check_start = time.time()
        check = IntegrityCheckResult(check_name=COUNT_PARITY_CHECK, passed=True)

        try:
            source_count = self.resolver.count_source_rows(descriptor)
            migrated_count = self.count_migrated_rows(descriptor)
        except pyodbc.Error as e:
            self._check_failed(result, check, ValidationType.COUNT_PARITY, descriptor, e)
        else:
            coverage = (min(migrated_count, source_count) / source_count * 100) if source_count else 100.0
            check.records_checked = migrated_count
            check.details = {'source_count': source_count, 'migrated_count': migrated_count,
                             'coverage_percent': coverage}
            result.total_records_validated = migrated_count
            result.data_quality_metrics['coverage_percent'] = coverage
            result.data_quality_metrics['source_count'] = source_count
            result.data_quality_metrics['migrated_count'] = migrated_count

            if coverage < 100.0:
                threshold = self.config.min_coverage_percent
                below_threshold = threshold is not None and coverage < threshold
                self._record(result, check, ValidationError(
                    error_type=ValidationType.COUNT_PARITY,
                    severity=ValidationSeverity.ERROR if below_threshold else ValidationSeverity.WARNING,
                    message=(f"{migrated_count} of {source_count} eligible source rows migrated "
                             f"({coverage:.2f}% coverage"
                             + (f", below required {threshold}%)" if below_threshold else ")")),
                    table_name=descriptor.target_table,
                    expected_value=source_count,
                    actual_value=migrated_count
                ))
            if migrated_count > source_count:
                # Source rows deleted after migration, or rows outside the source query
                self._record(result, check, ValidationError(
                    error_type=ValidationType.COUNT_PARITY,
                    severity=ValidationSeverity.WARNING,
                    message=f"target holds {migrated_count - source_count} more migrated rows than the source",
                    table_name=descriptor.target_table,
                    expected_value=source_count,
                    actual_value=migrated_count
                ))

        check.execution_time_ms = (time.time() - check_start) * 1000
        result.add_integrity_check(check)

    def _check_uniqueness(self, descriptor: EntityDescriptor, result: ValidationResult) -> None:
        check_start = time.time()
        check = IntegrityCheckResult(check_name=UNIQUENESS_CHECK, passed=True)
        legacy = SqlUtils.quote_identifier(descriptor.legacy_id_column)
        sql = (f"SELECT {legacy}, COUNT(*) AS duplicate_count FROM {self._table(descriptor)} "
               f"WHERE {legacy} IS NOT NULL GROUP BY {legacy} HAVING COUNT(*) > 1")

        try:
            rows = self.connections.execute(TARGET, sql)
        except pyodbc.Error as e:
            self._check_failed(result, check, ValidationType.UNIQUENESS, descriptor, e)
        else:
            check.details = {'duplicate_legacy_ids': len(rows)}
            result.data_quality_metrics['duplicate_legacy_ids'] = len(rows)
            for row in rows:
                self._record(result, check, ValidationError(
                    error_type=ValidationType.UNIQUENESS,
                    severity=ValidationSeverity.CRITICAL,
                    message=f"legacy id appears {row['duplicate_count']} times",
                    table_name=descriptor.target_table,
                    field_name=descriptor.legacy_id_column,
                    legacy_id=row[descriptor.legacy_id_column]
                ))

        check.execution_time_ms = (time.time() - check_start) * 1000
        result.add_integrity_check(check)

    def _check_referential_integrity(self, descriptor: EntityDescriptor, result: ValidationResult) -> None:
        check_start = time.time()
        check = IntegrityCheckResult(check_name=REFERENTIAL_CHECK, passed=True)
        orphan_total = 0
        legacy = SqlUtils.quote_identifier(descriptor.legacy_id_column)

        for fk in descriptor.foreign_keys:
            referenced = self.contract.get_entity(fk.references)
            fk_col = SqlUtils.quote_identifier(fk.target_column)
            key_col = SqlUtils.quote_identifier(referenced.target_key_column)
            sql = (f"SELECT c.{legacy}, c.{fk_col} FROM {self._table(descriptor)} AS c "
                   f"LEFT JOIN {self._table(referenced)} AS p ON c.{fk_col} = p.{key_col} "
                   f"WHERE c.{legacy} IS NOT NULL AND c.{fk_col} IS NOT NULL AND p.{key_col} IS NULL")
            try:
                orphans = self.connections.execute(TARGET, sql)
            except pyodbc.Error as e:
                self._check_failed(result, check, ValidationType.REFERENTIAL_INTEGRITY, descriptor, e)
                continue

            orphan_total += len(orphans)
            check.details[fk.target_column] = len(orphans)
            for row in orphans:
                self._record(result, check, ValidationError(
                    error_type=ValidationType.REFERENTIAL_INTEGRITY,
                    severity=ValidationSeverity.CRITICAL,
                    message=f"{fk.target_column}={row[fk.target_column]} has no row in {referenced.target_table}",
                    table_name=descriptor.target_table,
                    field_name=fk.target_column,
                    legacy_id=row[descriptor.legacy_id_column],
                    actual_value=row[fk.target_column]
                ))

        result.data_quality_metrics['orphaned_references'] = orphan_total
        check.records_checked = len(descriptor.foreign_keys)
        check.execution_time_ms = (time.time() - check_start) * 1000
        result.add_integrity_check(check)

    def _check_field_equality(self, descriptor: EntityDescriptor, result: ValidationResult,
                              transformer: Optional[RecordTransformer],
                              lookups: Optional[Dict[str, Any]]) -> None:
        check_start = time.time()
        check = IntegrityCheckResult(check_name=FIELD_EQUALITY_CHECK, passed=True)

        try:
            migrated_ids = sorted(self.lookup_builder.load_legacy_ids(descriptor))
            sample = sample_evenly(migrated_ids, self.config.sample_size)
            check.details['sampled_legacy_ids'] = sample
            if sample:
                if lookups is None:
                    lookups = self.lookup_builder.build_lookups(descriptor)
                if transformer is None:
                    transformer = RecordTransformer(descriptor, self.contract.enum_mappings)
                source_rows = self.resolver.fetch_source_rows(descriptor, sample)
                target_rows = self._fetch_target_rows(descriptor, sample)
                for legacy_id in sample:
                    self._compare_row(descriptor, legacy_id, source_rows.get(legacy_id),
                                      target_rows.get(legacy_id), transformer, lookups, result, check)
                    check.records_checked += 1
        except pyodbc.Error as e:
            self._check_failed(result, check, ValidationType.FIELD_EQUALITY, descriptor, e)

        check.execution_time_ms = (time.time() - check_start) * 1000
        result.add_integrity_check(check)

    def _fetch_target_rows(self, descriptor: EntityDescriptor, legacy_ids: List[int]) -> Dict[int, Dict[str, Any]]:
        legacy = SqlUtils.quote_identifier(descriptor.legacy_id_column)
        sql = (f"SELECT * FROM {self._table(descriptor)} "
               f"WHERE {legacy} IN ({SqlUtils.placeholders(len(legacy_ids))})")
        rows = self.connections.execute(TARGET, sql, legacy_ids)
        return {int(row[descriptor.legacy_id_column]): row for row in rows}

    def _compare_row(self, descriptor: EntityDescriptor, legacy_id: int, source_row: Optional[Dict[str, Any]],
                     target_row: Optional[Dict[str, Any]], transformer: RecordTransformer,
                     lookups: Dict[str, Any], result: ValidationResult, check: IntegrityCheckResult) -> None:
        if source_row is None:
            self._record(result, check, ValidationError(
                error_type=ValidationType.FIELD_EQUALITY,
                severity=ValidationSeverity.WARNING,
                message="migrated row has no eligible source row any more",
                table_name=descriptor.target_table,
                legacy_id=legacy_id
            ))
            return
        if target_row is None:
            # Deleted between sampling and fetching
            return

        try:
            expected = transformer.transform(source_row, lookups)
        except TransformError as e:
            self._record(result, check, ValidationError(
                error_type=ValidationType.FIELD_EQUALITY,
                severity=ValidationSeverity.ERROR,
                message=f"source row no longer transforms: {e.message}",
                table_name=descriptor.target_table,
                field_name=e.field_name,
                legacy_id=legacy_id
            ))
            return

        if isinstance(expected, Skip):
            self._record(result, check, ValidationError(
                error_type=ValidationType.FIELD_EQUALITY,
                severity=ValidationSeverity.WARNING,
                message=f"source row would now be skipped ({expected.reason})",
                table_name=descriptor.target_table,
                legacy_id=legacy_id
            ))
            return

        for column, expected_value in expected.values.items():
            actual_value = target_row.get(column)
            if not self._values_are_equivalent(expected_value, actual_value):
                self._record(result, check, ValidationError(
                    error_type=ValidationType.FIELD_EQUALITY,
                    severity=ValidationSeverity.ERROR,
                    message="target value differs from re-transformed source value",
                    table_name=descriptor.target_table,
                    field_name=column,
                    legacy_id=legacy_id,
                    expected_value=expected_value,
                    actual_value=actual_value
                ))

    def _values_are_equivalent(self, expected: Any, actual: Any) -> bool:
        """Compare a transformed value with what the target returned, allowing for driver type conversions."""
        if expected is None or actual is None:
            return expected is None and actual is None

        if isinstance(expected, (dict, list)):
            if isinstance(actual, str):
                try:
                    actual = json.loads(actual)
                except json.JSONDecodeError:
                    return False
            return expected == actual

        if isinstance(expected, bool) or isinstance(actual, bool):
            return bool(expected) == bool(actual) and str(actual).lower() in ('0', '1', 'true', 'false')

        if isinstance(expected, (int, float, Decimal)) and not isinstance(expected, bool):
            try:
                return abs(Decimal(str(expected)) - Decimal(str(actual))) < Decimal('0.0001')
            except InvalidOperation:
                return False

        if isinstance(expected, datetime) and isinstance(actual, datetime):
            # datetime columns keep ~3ms precision
            return abs((expected - actual).total_seconds()) < 0.01
        if isinstance(expected, date):
            return str(expected) == str(actual)

        # Fixed-width character columns come back space-padded
        return str(expected).rstrip() == str(actual).rstrip()
