"""
Custom exceptions for the legacy migration engine.

Errors are split into two groups. Fatal errors (connection and schema level)
abort the entity run. Record level errors are caught by the runner, counted,
and logged with the legacy id so the failed subset can be re-run.
"""


class MigrationError(Exception):
    """Base exception for all migration related errors."""

    def __init__(self, message: str, entity_type: str = None, legacy_id: int = None,
                 error_category: str = None):
        """
        Initialize migration error.

        Args:
            message: Error description
            entity_type: Optional entity being migrated when the error occurred
            legacy_id: Optional legacy identifier of the source record that caused the error
            error_category: Optional machine-readable category (e.g. 'check_constraint_violation')
        """
        super().__init__(message)
        self.message = message
        self.entity_type = entity_type
        self.legacy_id = legacy_id
        self.error_category = error_category


class DatabaseConnectionError(MigrationError, ConnectionError):
    """Raised when a source or target store is unreachable. Fatal."""

    def __init__(self, message: str, store: str = None, **kwargs):
        super().__init__(message, error_category=kwargs.pop('error_category', 'connection_error'), **kwargs)
        self.store = store


class SchemaMismatchError(MigrationError):
    """Raised when an expected table or column is missing on the target. Fatal."""

    def __init__(self, message: str, table_name: str = None, column_name: str = None, **kwargs):
        """
        Initialize schema mismatch error.

        Args:
            message: Error description
            table_name: Table that was inspected
            column_name: Column that was expected but not found
        """
        super().__init__(message, error_category='schema_mismatch', **kwargs)
        self.table_name = table_name
        self.column_name = column_name


class LookupMissError(MigrationError):
    """Raised when a foreign key has no match in its lookup map."""

    def __init__(self, message: str, referenced_entity: str = None, missing_legacy_id: int = None,
                 **kwargs):
        super().__init__(message, error_category='lookup_miss', **kwargs)
        self.referenced_entity = referenced_entity
        self.missing_legacy_id = missing_legacy_id


class TransformError(MigrationError):
    """Raised when a source row is structurally malformed and cannot be transformed."""

    def __init__(self, message: str, field_name: str = None, source_value=None, **kwargs):
        """
        Initialize transform error.

        Args:
            message: Error description
            field_name: Name of the source field that failed transformation
            source_value: Original value that failed transformation
        """
        super().__init__(message, error_category=kwargs.pop('error_category', 'transform_error'), **kwargs)
        self.field_name = field_name
        self.source_value = source_value


class ConflictError(MigrationError):
    """Raised when a record's legacy id is already present on the target."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_category='duplicate_legacy_id', **kwargs)


class DatabaseConstraintError(MigrationError):
    """Raised when a per-record insert violates a target constraint (FK, CHECK, NOT NULL)."""
    pass


class ConfigurationError(MigrationError):
    """Exception raised when configuration is invalid or missing."""
    pass


class ContractValidationError(ConfigurationError):
    """Exception raised when a migration contract fails pre-flight validation."""

    def __init__(self, message: str, errors: list = None):
        super().__init__(message, error_category='contract_validation')
        self.errors = errors or []


class InvalidStateTransitionError(MigrationError):
    """Raised when an entity run attempts a transition its state machine does not allow."""
    pass


# Errors that terminate an entity run (and the process)
FATAL_ERRORS = (DatabaseConnectionError, SchemaMismatchError)
