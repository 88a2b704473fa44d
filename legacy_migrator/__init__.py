"""
Legacy Migrator

A contract-driven differential migration and reconciliation engine that moves
rows from legacy tables into a redesigned schema, one entity at a time, and
can be re-run safely until source and target agree.
"""

__version__ = "1.0.0"

# Import core models and interfaces for easy access
from .models import (
    EntityDescriptor,
    FieldMapping,
    ForeignKeyMapping,
    DerivedField,
    MigrationContract,
    ProvenancePayload,
    TargetRecord,
    Skip,
    DifferentialSet,
    BatchLoadResult,
    MigrationRun,
    RunMode,
    RunState
)

from .interfaces import (
    RecordTransformerInterface,
    BatchLoaderInterface,
    ProgressTrackerInterface,
    ValidatorInterface,
    ConfigurationManagerInterface
)

from .exceptions import (
    MigrationError,
    DatabaseConnectionError,
    SchemaMismatchError,
    LookupMissError,
    TransformError,
    ConflictError,
    DatabaseConstraintError,
    ConfigurationError,
    ContractValidationError,
    InvalidStateTransitionError
)

__all__ = [
    # Models
    'EntityDescriptor',
    'FieldMapping',
    'ForeignKeyMapping',
    'DerivedField',
    'MigrationContract',
    'ProvenancePayload',
    'TargetRecord',
    'Skip',
    'DifferentialSet',
    'BatchLoadResult',
    'MigrationRun',
    'RunMode',
    'RunState',

    # Interfaces
    'RecordTransformerInterface',
    'BatchLoaderInterface',
    'ProgressTrackerInterface',
    'ValidatorInterface',
    'ConfigurationManagerInterface',

    # Exceptions
    'MigrationError',
    'DatabaseConnectionError',
    'SchemaMismatchError',
    'LookupMissError',
    'TransformError',
    'ConflictError',
    'DatabaseConstraintError',
    'ConfigurationError',
    'ContractValidationError',
    'InvalidStateTransitionError'
]
