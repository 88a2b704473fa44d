"""
Abstract interfaces for the core components of the migration engine.

These interfaces define the contracts the entity runner depends on, which
allows alternative implementations (and test doubles) to be swapped in.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from .models import (
    BatchLoadResult,
    EntityDescriptor,
    MigrationContract,
    Skip,
    TargetRecord,
)


class RecordTransformerInterface(ABC):
    """Interface for mapping one source row to zero-or-one target row."""

    @abstractmethod
    def transform(self, source_row: Dict[str, Any], lookups: Dict[str, Any]) -> Union[TargetRecord, Skip]:
        """
        Transform a source row into a target record.

        Args:
            source_row: Column name to value mapping read from the source store
            lookups: Lookup maps keyed by referenced entity name

        Returns:
            TargetRecord, or Skip when an expected domain gap prevents migration

        Raises:
            TransformError: If the source row is structurally malformed
        """
        pass


class BatchLoaderInterface(ABC):
    """Interface for persisting transformed records."""

    @abstractmethod
    def load_batch(self, descriptor: EntityDescriptor, records: List[TargetRecord],
                   result: Optional[BatchLoadResult] = None) -> BatchLoadResult:
        """
        Load one batch of records idempotently.

        Args:
            descriptor: Entity being loaded
            records: Transformed records, in ascending legacy id order
            result: Optional result to accumulate into (retried batches)

        Returns:
            BatchLoadResult with inserted, conflicting and failed records

        Raises:
            DatabaseConnectionError: If the target store becomes unreachable
        """
        pass

    @abstractmethod
    def delete_migrated(self, descriptor: EntityDescriptor) -> int:
        """
        Delete every target row carrying a legacy id.

        Returns:
            Number of rows deleted
        """
        pass


class ProgressTrackerInterface(ABC):
    """Interface for run statistics and progress reporting."""

    @abstractmethod
    def start(self, source_total: int, already_migrated: int, pending: int) -> None:
        """Record the differential set sizes and start timing."""
        pass

    @abstractmethod
    def record_batch(self, result: BatchLoadResult) -> None:
        """Accumulate the outcome of one loaded batch."""
        pass

    @abstractmethod
    def snapshot(self) -> Dict[str, Any]:
        """Return a consistent copy of the counters, safe to call mid-run."""
        pass


class ValidatorInterface(ABC):
    """Interface for post-run reconciliation."""

    @abstractmethod
    def validate(self, descriptor: EntityDescriptor) -> Any:
        """
        Reconcile the target table of an entity against its source.

        Args:
            descriptor: Entity to validate

        Returns:
            ValidationResult with one integrity check per reconciliation rule
        """
        pass


class ConfigurationManagerInterface(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def load_migration_contract(self, contract_path: str = None) -> MigrationContract:
        """
        Load and validate a migration contract.

        Args:
            contract_path: Path to a JSON or YAML contract file

        Returns:
            Parsed MigrationContract

        Raises:
            ConfigurationError: If the file is missing or unreadable
            ContractValidationError: If the contract fails pre-flight validation
        """
        pass
