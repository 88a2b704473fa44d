"""
Centralized configuration management for the legacy migration engine.

This module provides the ConfigManager class that serves as the single source of truth
for all configuration management, including source and target database connections,
migration contracts, processing parameters, and environment variable handling.
"""

import os
import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Union
from dataclasses import dataclass, field

import yaml

from .processing_defaults import ProcessingDefaults
from ..interfaces import ConfigurationManagerInterface
from ..models import (
    DerivedField,
    EntityDescriptor,
    FieldMapping,
    ForeignKeyMapping,
    MigrationContract,
)
from ..exceptions import ConfigurationError, ContractValidationError


ENV_PREFIX = 'LEGACY_MIGRATOR'


def _env_flag(name: str, default: bool) -> bool:
    return os.environ.get(name, 'true' if default else 'false').lower() == 'true'


def _env_number(name: str, default, convert=int):
    """Read a numeric environment variable; malformed values are configuration errors."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return convert(raw.strip())
    except ValueError as e:
        kind = 'an integer' if convert is int else 'a number'
        raise ConfigurationError(f"{name} must be {kind}, got {raw!r}") from e


@dataclass
class DatabaseConfig:
    """Database configuration for one store (source or target) with environment variable support."""
    connection_string: str
    role: str = "target"
    driver: str = "ODBC Driver 17 for SQL Server"
    server: str = "localhost\\SQLEXPRESS"
    database: str = "LegacyMigration"
    trusted_connection: bool = True
    connection_timeout: int = ProcessingDefaults.CONNECTION_TIMEOUT
    application_name: str = "Legacy Migrator"

    @classmethod
    def from_environment(cls, role: str = 'target') -> 'DatabaseConfig':
        """
        Create database configuration from environment variables.

        Reads LEGACY_MIGRATOR_<ROLE>_CONNECTION_STRING first, then falls back to
        building an ODBC connection string from LEGACY_MIGRATOR_<ROLE>_DB_* components.

        Args:
            role: 'source' or 'target'
        """
        prefix = f"{ENV_PREFIX}_{role.upper()}"

        # Primary connection string from environment
        connection_string = os.environ.get(f'{prefix}_CONNECTION_STRING')
        if connection_string:
            return cls(connection_string=connection_string, role=role)

        # Build connection string from individual components
        driver = os.environ.get(f'{prefix}_DB_DRIVER', cls.driver)
        server = os.environ.get(f'{prefix}_DB_SERVER', cls.server)
        database = os.environ.get(f'{prefix}_DB_DATABASE', cls.database)
        trusted_connection = _env_flag(f'{prefix}_DB_TRUSTED_CONNECTION', True)
        connection_timeout = _env_number(f'{prefix}_DB_CONNECTION_TIMEOUT', cls.connection_timeout)
        application_name = f"{cls.application_name} ({role})"

        connection_string = (
            f"DRIVER={{{driver}}};"
            f"SERVER={server};"
            f"DATABASE={database};"
        )
        # Build connection string based on authentication method
        if trusted_connection:
            connection_string += "Trusted_Connection=yes;"
        else:
            username = os.environ.get(f'{prefix}_DB_USERNAME', '')
            password = os.environ.get(f'{prefix}_DB_PASSWORD', '')
            connection_string += f"UID={username};PWD={password};"
        connection_string += (
            f"Connection Timeout={connection_timeout};"
            f"Application Name={application_name};"
            f"TrustServerCertificate=yes;"
        )

        return cls(
            connection_string=connection_string,
            role=role,
            driver=driver,
            server=server,
            database=database,
            trusted_connection=trusted_connection,
            connection_timeout=connection_timeout,
            application_name=application_name
        )


@dataclass
class ProcessingParameters:
    """Processing parameters with environment variable support."""
    batch_size: int = ProcessingDefaults.BATCH_SIZE
    batch_delay_ms: int = ProcessingDefaults.BATCH_DELAY_MS
    max_retry_attempts: int = ProcessingDefaults.MAX_RETRY_ATTEMPTS
    retry_delay_seconds: float = ProcessingDefaults.RETRY_DELAY_SECONDS
    lookup_page_size: int = ProcessingDefaults.LOOKUP_PAGE_SIZE
    source_page_size: int = ProcessingDefaults.SOURCE_PAGE_SIZE
    progress_reporting_interval: int = ProcessingDefaults.PROGRESS_REPORTING_INTERVAL
    validation_sample_size: int = ProcessingDefaults.VALIDATION_SAMPLE_SIZE
    recheck_on_miss: bool = ProcessingDefaults.RECHECK_ON_MISS
    pool_size: int = ProcessingDefaults.POOL_SIZE
    enable_validation: bool = ProcessingDefaults.ENABLE_VALIDATION
    record_run_history: bool = ProcessingDefaults.RECORD_RUN_HISTORY
    min_coverage_percent: Optional[float] = None

    @classmethod
    def from_environment(cls) -> 'ProcessingParameters':
        """Create processing parameters from environment variables."""
        return cls(
            batch_size=_env_number(f'{ENV_PREFIX}_BATCH_SIZE', cls.batch_size),
            batch_delay_ms=_env_number(f'{ENV_PREFIX}_BATCH_DELAY_MS', cls.batch_delay_ms),
            max_retry_attempts=_env_number(f'{ENV_PREFIX}_MAX_RETRY_ATTEMPTS', cls.max_retry_attempts),
            retry_delay_seconds=_env_number(f'{ENV_PREFIX}_RETRY_DELAY_SECONDS', cls.retry_delay_seconds, float),
            lookup_page_size=_env_number(f'{ENV_PREFIX}_LOOKUP_PAGE_SIZE', cls.lookup_page_size),
            source_page_size=_env_number(f'{ENV_PREFIX}_SOURCE_PAGE_SIZE', cls.source_page_size),
            progress_reporting_interval=_env_number(f'{ENV_PREFIX}_PROGRESS_INTERVAL',
                                                    cls.progress_reporting_interval),
            validation_sample_size=_env_number(f'{ENV_PREFIX}_VALIDATION_SAMPLE_SIZE',
                                               cls.validation_sample_size),
            recheck_on_miss=_env_flag(f'{ENV_PREFIX}_RECHECK_ON_MISS', cls.recheck_on_miss),
            pool_size=_env_number(f'{ENV_PREFIX}_POOL_SIZE', cls.pool_size),
            enable_validation=_env_flag(f'{ENV_PREFIX}_ENABLE_VALIDATION', cls.enable_validation),
            record_run_history=_env_flag(f'{ENV_PREFIX}_RECORD_RUN_HISTORY', cls.record_run_history),
            min_coverage_percent=_env_number(f'{ENV_PREFIX}_MIN_COVERAGE_PERCENT', None, float)
        )


@dataclass
class ConfigPaths:
    """Configuration file paths with environment variable support."""
    base_config_path: Path = field(default_factory=lambda: Path.cwd())
    migration_contract_path: str = "config/migration_contract.json"
    report_dir: str = "reports"
    log_dir: str = "logs"

    @classmethod
    def from_environment(cls, base_path: Optional[Union[str, Path]] = None) -> 'ConfigPaths':
        """Create configuration paths from environment variables."""
        if base_path:
            base_config_path = Path(base_path)
        else:
            base_config_path = Path(os.environ.get(f'{ENV_PREFIX}_CONFIG_PATH', Path.cwd()))

        return cls(
            base_config_path=base_config_path,
            migration_contract_path=os.environ.get(f'{ENV_PREFIX}_CONTRACT_PATH', cls.migration_contract_path),
            report_dir=os.environ.get(f'{ENV_PREFIX}_REPORT_DIR', cls.report_dir),
            log_dir=os.environ.get(f'{ENV_PREFIX}_LOG_DIR', cls.log_dir)
        )


class ConfigManager(ConfigurationManagerInterface):
    """
    Centralized configuration manager serving as single source of truth.

    This class consolidates all configuration management including:
    - Source and target database connection configuration
    - Processing parameters
    - Migration contract loading and pre-flight validation
    - File path management
    """

    def __init__(self, base_config_path: Optional[Union[str, Path]] = None):
        """
        Initialize the centralized configuration manager.

        Args:
            base_config_path: Base path for configuration files. If None, uses current directory.
        """
        self.logger = logging.getLogger(__name__)

        # Load configuration from environment variables
        self.paths = ConfigPaths.from_environment(base_config_path)
        self.source_database = DatabaseConfig.from_environment('source')
        self.target_database = DatabaseConfig.from_environment('target')
        self.processing_params = ProcessingParameters.from_environment()

        self._contract_cache: Dict[str, MigrationContract] = {}

        self.logger.info(f"ConfigManager initialized with base path: {self.paths.base_config_path}")
        self.logger.info(f"Source server: {self.source_database.server}, target server: {self.target_database.server}")
        self.logger.info(f"Processing batch size: {self.processing_params.batch_size}")

    def resolve_path(self, relative_path: Union[str, Path]) -> Path:
        """Resolve a path against the base configuration path unless it is absolute."""
        path = Path(relative_path)
        return path if path.is_absolute() else self.paths.base_config_path / path

    def load_migration_contract(self, contract_path: Optional[str] = None) -> MigrationContract:
        """
        Load migration contract with caching.

        Args:
            contract_path: Optional path to contract. If None, uses default from configuration.

        Returns:
            Loaded and validated migration contract
        """
        if contract_path is None:
            contract_path = self.paths.migration_contract_path
        contract_path = str(contract_path)

        # Return cached contract if available
        if contract_path in self._contract_cache:
            self.logger.debug(f"Returning cached migration contract for {contract_path}")
            return self._contract_cache[contract_path]

        full_path = self.resolve_path(contract_path)

        if not full_path.exists():
            raise ConfigurationError(f"Migration contract file not found: {full_path}")

        try:
            with open(full_path, 'r', encoding='utf-8') as file:
                if full_path.suffix.lower() in ['.yaml', '.yml']:
                    contract_data = yaml.safe_load(file)
                elif full_path.suffix.lower() == '.json':
                    contract_data = json.load(file)
                else:
                    raise ConfigurationError(f"Unsupported file format: {full_path.suffix}")
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to parse migration contract file {full_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to read migration contract file {full_path}: {e}")

        contract = self.parse_migration_contract(contract_data, contract_path)
        self._validate_migration_contract(contract)

        # Cache the result
        self._contract_cache[contract_path] = contract

        self.logger.info(f"Loaded migration contract from {contract_path} "
                         f"({len(contract.entities)} entities)")
        return contract

    def parse_migration_contract(self, contract_data: Dict[str, Any],
                                 contract_path: str = "<memory>") -> MigrationContract:
        """
        Parse raw contract data into a MigrationContract object.

        Args:
            contract_data: Raw contract data from JSON/YAML
            contract_path: Path to contract file (for error reporting)

        Returns:
            Parsed MigrationContract object

        Raises:
            ConfigurationError: If contract structure is invalid
        """
        if not isinstance(contract_data, dict):
            raise ConfigurationError(f"Migration contract {contract_path} must be a mapping at the top level")

        try:
            entities: Dict[str, EntityDescriptor] = {}
            for entity_data in contract_data.get('entities', []):
                descriptor = self._parse_entity(entity_data)
                if descriptor.name in entities:
                    raise ValueError(f"duplicate entity name '{descriptor.name}'")
                entities[descriptor.name] = descriptor

            # Code tables are keyed by string so numeric legacy codes match after str()
            enum_mappings = {
                name: {str(code): value for code, value in (table or {}).items()}
                for name, table in (contract_data.get('enum_mappings') or {}).items()
            }

            return MigrationContract(
                source_schema=contract_data.get('source_schema', 'dbo'),
                target_schema=contract_data.get('target_schema', 'dbo'),
                enum_mappings=enum_mappings,
                entities=entities
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise ConfigurationError(f"Failed to parse migration contract from {contract_path}: {e}")

    def _parse_entity(self, entity_data: Dict[str, Any]) -> EntityDescriptor:
        name = entity_data.get('name', '')
        return EntityDescriptor(
            name=name,
            source_table=entity_data.get('source_table', ''),
            target_table=entity_data.get('target_table', ''),
            legacy_id_column=entity_data.get('legacy_id_column', ''),
            source_id_column=entity_data.get('source_id_column', 'id'),
            target_key_column=entity_data.get('target_key_column', 'id'),
            source_query=entity_data.get('source_query'),
            field_mappings=[
                FieldMapping(
                    source_column=m.get('source_column', ''),
                    target_column=m.get('target_column', ''),
                    mapping_type=m.get('mapping_type'),
                    enum_name=m.get('enum_name'),
                    default_value=m.get('default_value'),
                    data_length=m.get('data_length'),
                    description=m.get('description')
                )
                for m in entity_data.get('mappings', [])
            ],
            foreign_keys=[
                ForeignKeyMapping(
                    source_column=fk.get('source_column', ''),
                    target_column=fk.get('target_column', ''),
                    references=fk.get('references', ''),
                    required=fk.get('required', True)
                )
                for fk in entity_data.get('foreign_keys', [])
            ],
            derived_fields=[
                DerivedField(
                    target_column=d.get('target_column', ''),
                    function=d.get('function', ''),
                    source_columns=d.get('source_columns', []),
                    options=d.get('options', {})
                )
                for d in entity_data.get('derived_fields', [])
            ],
            constants=entity_data.get('constants', {}),
            dependencies=entity_data.get('dependencies', []),
            batch_size=entity_data.get('batch_size'),
            correction_columns=entity_data.get('correction_columns', []),
            provenance_column=entity_data.get('provenance_column', 'metadata'),
            description=entity_data.get('description')
        )

    def _validate_migration_contract(self, contract: MigrationContract) -> None:
        """
        Run pre-flight validation and fail with every error at once.

        Raises:
            ContractValidationError: If the contract is invalid
        """
        from ..validation.contract_validator import MigrationContractValidator

        result = MigrationContractValidator(contract).validate_contract()
        for warning in result.warnings:
            self.logger.warning(f"Contract warning: {warning}")
        if not result.is_valid:
            raise ContractValidationError(
                f"Migration contract validation failed:\n{result.format_summary()}",
                errors=result.errors
            )
        self.logger.debug("Migration contract validation passed")

    def validate_configuration(self) -> bool:
        """
        Validate all configuration settings.

        Returns:
            True if all configurations are valid

        Raises:
            ConfigurationError: If any configuration is invalid
        """
        errors = []

        if not self.source_database.connection_string:
            errors.append("Source connection string is empty")
        if not self.target_database.connection_string:
            errors.append("Target connection string is empty")

        contract_full_path = self.resolve_path(self.paths.migration_contract_path)
        if not contract_full_path.exists():
            errors.append(f"Migration contract file does not exist: {contract_full_path}")

        params = self.processing_params
        if not ProcessingDefaults.MIN_BATCH_SIZE <= params.batch_size <= ProcessingDefaults.MAX_BATCH_SIZE:
            errors.append(f"Batch size must be between {ProcessingDefaults.MIN_BATCH_SIZE} "
                          f"and {ProcessingDefaults.MAX_BATCH_SIZE}")
        if params.batch_delay_ms < 0:
            errors.append("Batch delay must not be negative")
        if params.max_retry_attempts < 1:
            errors.append("Max retry attempts must be at least 1")
        if params.pool_size < 1:
            errors.append("Pool size must be at least 1")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

        self.logger.info("Configuration validation passed")
        return True

    def get_configuration_summary(self) -> Dict[str, Any]:
        """
        Get a summary of all configuration settings (no credentials).

        Returns:
            Dictionary containing configuration summary
        """
        return {
            'databases': {
                db.role: {
                    'server': db.server,
                    'database': db.database,
                    'driver': db.driver,
                    'trusted_connection': db.trusted_connection,
                    'connection_timeout': db.connection_timeout
                }
                for db in (self.source_database, self.target_database)
            },
            'processing': {
                'batch_size': self.processing_params.batch_size,
                'batch_delay_ms': self.processing_params.batch_delay_ms,
                'max_retry_attempts': self.processing_params.max_retry_attempts,
                'retry_delay_seconds': self.processing_params.retry_delay_seconds,
                'lookup_page_size': self.processing_params.lookup_page_size,
                'recheck_on_miss': self.processing_params.recheck_on_miss,
                'enable_validation': self.processing_params.enable_validation,
                'validation_sample_size': self.processing_params.validation_sample_size
            },
            'paths': {
                'base_config_path': str(self.paths.base_config_path),
                'migration_contract_path': self.paths.migration_contract_path,
                'report_dir': self.paths.report_dir,
                'log_dir': self.paths.log_dir
            }
        }

    def clear_cache(self) -> None:
        """Clear all cached configurations."""
        self._contract_cache.clear()
        self.logger.info("Configuration cache cleared")


# Global configuration manager instance
_global_config_manager: Optional[ConfigManager] = None


def get_config_manager(base_config_path: Optional[Union[str, Path]] = None) -> ConfigManager:
    """
    Get the global configuration manager instance.

    Args:
        base_config_path: Base path for configuration files. Only used on first call.

    Returns:
        Global ConfigManager instance
    """
    global _global_config_manager

    if _global_config_manager is None:
        _global_config_manager = ConfigManager(base_config_path)

    return _global_config_manager


def reset_config_manager() -> None:
    """Reset the global configuration manager instance."""
    global _global_config_manager
    _global_config_manager = None
