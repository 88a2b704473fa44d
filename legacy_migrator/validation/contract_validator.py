"""
Migration Contract Validator - pre-flight validation for migration contracts.

Validates contract structure and cross-references BEFORE any store is touched.
Catches configuration issues at startup, not after the first 10,000 rows.

Scope:
    - VALIDATES: entity names, dependencies and their ordering, foreign key
      references, code tables, mapping types, derivation names, identifiers
    - DOES NOT VALIDATE: that tables and columns exist (the runner checks the
      live target schema before writing), or data values
"""

from typing import Dict, List, Set

from .validation_models import ContractIssue, ContractValidationResult
from ..mapping.derivations import registered_derivations
from ..mapping.record_transformer import MAPPING_TYPES
from ..models import MAX_BATCH_SIZE, MIN_BATCH_SIZE, EntityDescriptor, MigrationContract
from ..utils import ValidationUtils


class MigrationContractValidator:
    """
    Validates a parsed migration contract.

    Validation continues after the first error so every issue is reported at
    once.

    Usage:
        result = MigrationContractValidator(contract).validate_contract()
        if not result.is_valid:
            print(result.format_summary())
    """

    def __init__(self, contract: MigrationContract):
        self.contract = contract
        self.errors: List[ContractIssue] = []
        self.warnings: List[ContractIssue] = []

    def validate_contract(self) -> ContractValidationResult:
        self.errors.clear()
        self.warnings.clear()

        if not self.contract.entities:
            self._error("entities", "Contract defines no entities", "root",
                        "Add at least one entry to the 'entities' array")

        self._validate_schemas()
        for descriptor in self.contract.entities.values():
            self._validate_identifiers(descriptor)
            self._validate_dependencies(descriptor)
            self._validate_foreign_keys(descriptor)
            self._validate_mappings(descriptor)
            self._validate_derived_fields(descriptor)
            self._validate_options(descriptor)
        self._validate_acyclic()

        return ContractValidationResult(
            is_valid=len(self.errors) == 0,
            errors=self.errors.copy(),
            warnings=self.warnings.copy()
        )

    def _error(self, category: str, message: str, location: str, fix: str = None) -> None:
        self.errors.append(ContractIssue(category, message, location, fix))

    def _warning(self, category: str, message: str, location: str, fix: str = None) -> None:
        self.warnings.append(ContractIssue(category, message, location, fix))

    def _validate_schemas(self) -> None:
        for key in ('source_schema', 'target_schema'):
            value = getattr(self.contract, key)
            if value and not ValidationUtils.is_valid_identifier(value):
                self._error("identifiers", f"{key} {value!r} is not a valid identifier", key)

    def _validate_identifiers(self, descriptor: EntityDescriptor) -> None:
        """Table and column names are interpolated into SQL, so they must be plain identifiers."""
        location = f"entities.{descriptor.name}"
        names = {
            'source_table': descriptor.source_table,
            'target_table': descriptor.target_table,
            'legacy_id_column': descriptor.legacy_id_column,
            'source_id_column': descriptor.source_id_column,
            'target_key_column': descriptor.target_key_column,
        }
        if descriptor.provenance_column:
            names['provenance_column'] = descriptor.provenance_column
        for key, value in names.items():
            if not ValidationUtils.is_valid_identifier(value):
                self._error("identifiers", f"{key} {value!r} is not a valid identifier", location)

        for column in descriptor.target_columns:
            if not ValidationUtils.is_valid_identifier(column):
                self._error("identifiers", f"target column {column!r} is not a valid identifier", location)

        writable = set(descriptor.target_columns)
        for column in descriptor.correction_columns:
            if column not in writable:
                self._error("correction_columns",
                            f"correction column '{column}' is not written by this entity", location,
                            "List only target columns produced by mappings, foreign keys, derivations or constants")
            if column == descriptor.legacy_id_column:
                self._error("correction_columns", "the legacy id column cannot be corrected", location)

    def _validate_dependencies(self, descriptor: EntityDescriptor) -> None:
        location = f"entities.{descriptor.name}.dependencies"
        for dependency in descriptor.dependencies:
            if dependency == descriptor.name:
                self._error("dependencies", f"{descriptor.name} depends on itself", location)
            elif dependency not in self.contract.entities:
                self._error("dependencies", f"unknown entity '{dependency}'", location,
                            f"Define '{dependency}' in 'entities' or remove it from dependencies")

    def _validate_foreign_keys(self, descriptor: EntityDescriptor) -> None:
        location = f"entities.{descriptor.name}.foreign_keys"
        for fk in descriptor.foreign_keys:
            if fk.references not in self.contract.entities:
                self._error("foreign_keys", f"{fk.source_column} references unknown entity '{fk.references}'",
                            location)
            elif fk.references not in descriptor.dependencies and fk.references != descriptor.name:
                self._error("foreign_keys",
                            f"{fk.source_column} references '{fk.references}' which is not a dependency",
                            location, f"Add '{fk.references}' to dependencies so it is migrated first")

    def _validate_mappings(self, descriptor: EntityDescriptor) -> None:
        location = f"entities.{descriptor.name}.mappings"
        for mapping in descriptor.field_mappings:
            for mapping_type in mapping.mapping_type:
                if mapping_type not in MAPPING_TYPES:
                    self._error("mapping_types", f"{mapping.source_column}: unknown mapping type '{mapping_type}'",
                                location, f"Use one of: {', '.join(MAPPING_TYPES)}")

            if 'enum' in mapping.mapping_type:
                if not mapping.enum_name:
                    self._error("enum_mappings", f"{mapping.source_column}: enum mapping without enum_name", location)
                elif mapping.enum_name not in self.contract.enum_mappings:
                    self._error("enum_mappings",
                                f"{mapping.source_column}: code table '{mapping.enum_name}' is not defined",
                                location, f"Add '{mapping.enum_name}' to 'enum_mappings'")
                else:
                    table = self.contract.enum_mappings[mapping.enum_name]
                    if '' not in table and mapping.default_value is None:
                        self._warning("enum_mappings",
                                      f"{mapping.source_column}: code table '{mapping.enum_name}' has no default "
                                      f"('' entry); unmapped codes become NULL", location)

            if 'truncate' in mapping.mapping_type and not mapping.data_length:
                self._warning("mapping_types", f"{mapping.source_column}: truncate without data_length is a no-op",
                              location)

    def _validate_derived_fields(self, descriptor: EntityDescriptor) -> None:
        known = set(registered_derivations())
        location = f"entities.{descriptor.name}.derived_fields"
        for derived in descriptor.derived_fields:
            if derived.function not in known:
                self._error("derived_fields", f"{derived.target_column}: unknown derivation '{derived.function}'",
                            location, f"Use one of: {', '.join(sorted(known))}")

    def _validate_options(self, descriptor: EntityDescriptor) -> None:
        location = f"entities.{descriptor.name}"
        if descriptor.batch_size is not None and not MIN_BATCH_SIZE <= descriptor.batch_size <= MAX_BATCH_SIZE:
            self._warning("batch_size",
                          f"batch_size {descriptor.batch_size} is outside {MIN_BATCH_SIZE}-{MAX_BATCH_SIZE} "
                          f"and will be clamped", location)
        if descriptor.source_query and 'order by' in descriptor.source_query.lower():
            self._warning("source_query", "source_query contains ORDER BY; paging adds its own ordering",
                          location)

    def _validate_acyclic(self) -> None:
        """Dependencies must form a DAG so a migration order exists."""
        graph: Dict[str, List[str]] = {
            name: [d for d in descriptor.dependencies if d in self.contract.entities and d != name]
            for name, descriptor in self.contract.entities.items()
        }
        visiting: Set[str] = set()
        done: Set[str] = set()

        def visit(name: str, path: List[str]) -> None:
            if name in done:
                return
            if name in visiting:
                cycle = path[path.index(name):] + [name]
                self._error("dependencies", f"dependency cycle: {' -> '.join(cycle)}", "entities")
                return
            visiting.add(name)
            for dependency in graph[name]:
                visit(dependency, path + [name])
            visiting.discard(name)
            done.add(name)

        for name in graph:
            visit(name, [])
