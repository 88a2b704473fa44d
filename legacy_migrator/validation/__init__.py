"""
Validation for the legacy migration engine.

- MigrationContractValidator: pre-flight checks of a parsed contract
- ReconciliationValidator: post-migration count parity, uniqueness,
  referential integrity and sampled field equality

NOTE: Validators are imported directly from their modules to avoid circular
imports (the contract validator is loaded lazily by ConfigManager).
"""

# Shared validation data structures (safe to import here)
from .validation_models import (
    ValidationResult, ValidationError, IntegrityCheckResult,
    ValidationConfig, ValidationSeverity, ValidationType,
    ContractIssue, ContractValidationResult
)

__all__ = [
    'ValidationResult',
    'ValidationError',
    'IntegrityCheckResult',
    'ValidationConfig',
    'ValidationSeverity',
    'ValidationType',
    'ContractIssue',
    'ContractValidationResult',
]
