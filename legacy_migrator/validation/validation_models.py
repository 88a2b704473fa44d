"""
Validation Data Models and Structures

This module defines the data structures used by the reconciliation validator
and the pre-flight contract validator for representing findings, integrity
check outcomes and configuration.

Key Data Structures:
- ValidationError: Individual reconciliation finding with severity, type, and context
- IntegrityCheckResult: Outcome of one reconciliation check (count parity, uniqueness, ...)
- ValidationResult: Complete reconciliation report for one entity
- ValidationConfig: Settings controlling which checks run and how strict they are
- ContractIssue / ContractValidationResult: Pre-flight contract findings

ValidationResult.to_dict() is the canonical machine-readable report.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
from datetime import datetime
from enum import Enum


class ValidationSeverity(Enum):
    """Severity levels for validation issues."""
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ValidationType(Enum):
    """Types of reconciliation checks."""
    COUNT_PARITY = "count_parity"
    UNIQUENESS = "uniqueness"
    REFERENTIAL_INTEGRITY = "referential_integrity"
    FIELD_EQUALITY = "field_equality"


@dataclass
class ValidationError:
    """
    Represents a single reconciliation finding with context information.

    Location Context:
    - table_name: Target table the finding is about
    - field_name: Specific column with the issue
    - legacy_id: Legacy identifier of the affected row, for re-running just that row

    Value Context:
    - expected_value: What the source (or re-transformed source) says
    - actual_value: What the target holds
    """
    error_type: ValidationType
    severity: ValidationSeverity
    message: str
    table_name: Optional[str] = None
    field_name: Optional[str] = None
    expected_value: Optional[Any] = None
    actual_value: Optional[Any] = None
    legacy_id: Optional[int] = None
    additional_context: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """String representation of the validation error."""
        location = ""
        if self.table_name:
            location = f" in {self.table_name}"
            if self.legacy_id is not None:
                location += f"[legacy {self.legacy_id}]"
            if self.field_name:
                location += f".{self.field_name}"

        return f"[{self.severity.value.upper()}] {self.error_type.value}{location}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_type': self.error_type.value,
            'severity': self.severity.value,
            'message': self.message,
            'table_name': self.table_name,
            'field_name': self.field_name,
            'legacy_id': self.legacy_id,
            'expected_value': self.expected_value,
            'actual_value': self.actual_value,
            'additional_context': self.additional_context
        }


@dataclass
class IntegrityCheckResult:
    """
    Results from a specific integrity check.

    Attributes:
        check_name: Name of the integrity check
        passed: Whether the check passed
        errors_found: Number of errors found
        warnings_found: Number of warnings found
        records_checked: Number of records checked
        execution_time_ms: Time taken to execute the check
        details: Additional details about the check
    """
    check_name: str
    passed: bool
    errors_found: int = 0
    warnings_found: int = 0
    records_checked: int = 0
    execution_time_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'check_name': self.check_name,
            'passed': self.passed,
            'errors_found': self.errors_found,
            'warnings_found': self.warnings_found,
            'records_checked': self.records_checked,
            'execution_time_ms': self.execution_time_ms,
            'details': self.details
        }


@dataclass
class ValidationResult:
    """
    Complete reconciliation results for one entity.

    Attributes:
        validation_id: Unique identifier for this validation run
        timestamp: When the validation was performed
        entity_type: Entity that was validated
        total_records_validated: Target rows covered by the checks
        total_errors: Total number of errors found
        total_warnings: Total number of warnings found
        validation_passed: Overall validation status
        execution_time_ms: Total validation execution time
        errors: List of findings
        integrity_checks: Results from individual checks
        data_quality_metrics: Coverage and similar metrics
        summary: Human-readable summary
    """
    validation_id: str
    timestamp: datetime
    entity_type: Optional[str] = None
    total_records_validated: int = 0
    total_errors: int = 0
    total_warnings: int = 0
    validation_passed: bool = False
    execution_time_ms: float = 0.0
    errors: List[ValidationError] = field(default_factory=list)
    integrity_checks: List[IntegrityCheckResult] = field(default_factory=list)
    data_quality_metrics: Dict[str, Any] = field(default_factory=dict)
    summary: str = ""

    def add_error(self, error: ValidationError) -> None:
        """Add a finding to the results (totals come from the integrity checks)."""
        self.errors.append(error)

    def add_integrity_check(self, check_result: IntegrityCheckResult) -> None:
        """Add an integrity check result."""
        self.integrity_checks.append(check_result)
        self.total_errors += check_result.errors_found
        self.total_warnings += check_result.warnings_found

    def get_errors_by_severity(self, severity: ValidationSeverity) -> List[ValidationError]:
        """Get errors filtered by severity level."""
        return [error for error in self.errors if error.severity == severity]

    def get_errors_by_type(self, error_type: ValidationType) -> List[ValidationError]:
        """Get errors filtered by validation type."""
        return [error for error in self.errors if error.error_type == error_type]

    def get_check(self, check_name: str) -> Optional[IntegrityCheckResult]:
        for check in self.integrity_checks:
            if check.check_name == check_name:
                return check
        return None

    @property
    def critical_errors(self) -> List[ValidationError]:
        """Get all critical errors."""
        return self.get_errors_by_severity(ValidationSeverity.CRITICAL)

    @property
    def has_critical_errors(self) -> bool:
        """Check if there are any critical errors."""
        return len(self.critical_errors) > 0

    def generate_summary(self) -> str:
        """Generate a summary of validation results."""
        summary_lines = [
            f"Validation Summary for {self.entity_type} (ID: {self.validation_id})",
            f"Timestamp: {self.timestamp}",
            f"Records Validated: {self.total_records_validated}",
            f"Total Errors: {self.total_errors}",
            f"Total Warnings: {self.total_warnings}",
            f"Validation Passed: {'Yes' if self.validation_passed else 'No'}",
            f"Execution Time: {self.execution_time_ms:.2f}ms",
            ""
        ]

        if self.integrity_checks:
            summary_lines.append("Integrity Checks:")
            for check in self.integrity_checks:
                status = "PASSED" if check.passed else "FAILED"
                summary_lines.append(f"  - {check.check_name}: {status} ({check.errors_found} errors, "
                                     f"{check.warnings_found} warnings)")
            summary_lines.append("")

        if self.data_quality_metrics:
            summary_lines.append("Data Quality Metrics:")
            for metric, value in self.data_quality_metrics.items():
                if isinstance(value, float):
                    summary_lines.append(f"  - {metric}: {value:.2f}")
                else:
                    summary_lines.append(f"  - {metric}: {value}")
            summary_lines.append("")

        if self.errors:
            summary_lines.append(f"Top Findings ({min(5, len(self.errors))}):")
            for error in self.errors[:5]:
                summary_lines.append(f"  - {error}")
            if len(self.errors) > 5:
                summary_lines.append(f"  ... and {len(self.errors) - 5} more")

        self.summary = "\n".join(summary_lines)
        return self.summary

    def to_dict(self) -> Dict[str, Any]:
        """Machine-readable report."""
        return {
            'validation_id': self.validation_id,
            'timestamp': self.timestamp.isoformat(),
            'entity_type': self.entity_type,
            'validation_passed': self.validation_passed,
            'total_records_validated': self.total_records_validated,
            'total_errors': self.total_errors,
            'total_warnings': self.total_warnings,
            'execution_time_ms': self.execution_time_ms,
            'data_quality_metrics': self.data_quality_metrics,
            'integrity_checks': [check.to_dict() for check in self.integrity_checks],
            'errors': [error.to_dict() for error in self.errors]
        }


@dataclass
class ValidationConfig:
    """
    Configuration for reconciliation.

    Attributes:
        enable_count_parity: Compare migrated target rows with eligible source rows
        enable_uniqueness: Look for duplicate legacy ids
        enable_referential_integrity: Look for foreign keys without a referenced row
        enable_field_equality: Re-transform a deterministic sample and compare column values
        sample_size: Rows compared by the field equality check
        min_coverage_percent: Coverage below this is an error; None keeps it a warning
        max_errors_per_check: Maximum findings collected per check
    """
    enable_count_parity: bool = True
    enable_uniqueness: bool = True
    enable_referential_integrity: bool = True
    enable_field_equality: bool = True
    sample_size: int = 25
    min_coverage_percent: Optional[float] = None
    max_errors_per_check: int = 100


@dataclass
class ContractIssue:
    """One pre-flight finding about a migration contract."""
    category: str
    message: str
    contract_location: str = "root"
    fix_guidance: Optional[str] = None

    def __str__(self) -> str:
        text = f"[{self.category}] {self.contract_location}: {self.message}"
        if self.fix_guidance:
            text += f" (fix: {self.fix_guidance})"
        return text


@dataclass
class ContractValidationResult:
    """Aggregated pre-flight result."""
    is_valid: bool
    errors: List[ContractIssue] = field(default_factory=list)
    warnings: List[ContractIssue] = field(default_factory=list)

    def format_summary(self) -> str:
        lines = [f"Contract validation: {'VALID' if self.is_valid else 'INVALID'} "
                 f"({len(self.errors)} errors, {len(self.warnings)} warnings)"]
        lines.extend(f"  ERROR {issue}" for issue in self.errors)
        lines.extend(f"  WARNING {issue}" for issue in self.warnings)
        return "\n".join(lines)
