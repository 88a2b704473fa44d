"""
Core data models for the legacy migration engine.

This module defines the primary data structures used throughout the system
for entity descriptors, migration contracts, transformed records, and the
per-entity run state machine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict, Any, Set
from enum import Enum


MIN_BATCH_SIZE = 50
MAX_BATCH_SIZE = 1000


class RunMode(Enum):
    """Invocation modes for an entity run."""
    MIGRATE = "migrate"
    VALIDATE = "validate"
    ROLLBACK = "rollback"


class RunState(Enum):
    """States of a single entity run."""
    INIT = "init"
    BUILDING_LOOKUPS = "building_lookups"
    RESOLVING_DIFFERENTIAL = "resolving_differential"
    MIGRATING_BATCH = "migrating_batch"
    VALIDATING = "validating"
    DONE = "done"
    FAILED = "failed"


# FAILED is added to every entry in MigrationRun.transition_to
ALLOWED_TRANSITIONS = {
    RunState.INIT: {RunState.BUILDING_LOOKUPS, RunState.VALIDATING, RunState.DONE},
    RunState.BUILDING_LOOKUPS: {RunState.RESOLVING_DIFFERENTIAL},
    RunState.RESOLVING_DIFFERENTIAL: {RunState.MIGRATING_BATCH, RunState.VALIDATING, RunState.DONE},
    RunState.MIGRATING_BATCH: {RunState.MIGRATING_BATCH, RunState.VALIDATING, RunState.DONE},
    RunState.VALIDATING: {RunState.DONE},
    RunState.DONE: set(),
    RunState.FAILED: set(),
}


@dataclass
class FieldMapping:
    """
    Defines how a source column maps to a target column.

    Attributes:
        source_column: Column name on the source row
        target_column: Destination column on the target table
        mapping_type: Ordered chain of normalizations (trim, lower, digits_only, rate, enum, ...)
        enum_name: Name of the code table used by the 'enum' mapping type
        default_value: Value used when the source value is empty, or when a code is unmapped
        data_length: Optional maximum length applied by the 'truncate' mapping type
    """
    source_column: str
    target_column: str
    mapping_type: Optional[list] = None
    enum_name: Optional[str] = None
    default_value: Any = None
    data_length: Optional[int] = None
    description: Optional[str] = None

    def __post_init__(self):
        """Validate field mapping configuration and normalize mapping_type."""
        if not self.source_column:
            raise ValueError("source_column cannot be empty")
        if not self.target_column:
            raise ValueError("target_column cannot be empty")
        # Normalize mapping_type to always be a list
        if self.mapping_type is None:
            self.mapping_type = []
        elif isinstance(self.mapping_type, str):
            self.mapping_type = [mt.strip() for mt in self.mapping_type.split(",") if mt.strip()]
        elif not isinstance(self.mapping_type, list):
            self.mapping_type = [self.mapping_type]


@dataclass
class ForeignKeyMapping:
    """
    A source column holding a legacy id of another entity.

    Attributes:
        source_column: Source column carrying the referenced legacy id
        target_column: Target column receiving the resolved target id
        references: Name of the referenced entity in the contract
        required: When True a missing or unresolved reference skips the row
    """
    source_column: str
    target_column: str
    references: str
    required: bool = True

    def __post_init__(self):
        if not all([self.source_column, self.target_column, self.references]):
            raise ValueError("source_column, target_column and references must be specified")


@dataclass
class DerivedField:
    """A target column computed by a named derivation function."""
    target_column: str
    function: str
    source_columns: List[str] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.target_column:
            raise ValueError("target_column cannot be empty")
        if not self.function:
            raise ValueError("function cannot be empty")


@dataclass
class EntityDescriptor:
    """
    Parameterizes the engine for one entity type.

    Attributes:
        name: Entity name used on the command line and in dependency lists
        source_table: Legacy table name (also recorded in provenance)
        target_table: Redesigned table name
        legacy_id_column: Nullable, unique column on the target holding the legacy id
        source_id_column: Stable integer identifier column on the source
        target_key_column: Generated primary key on the target
        source_query: Optional SELECT used instead of the whole source table
        field_mappings: Direct column mappings
        foreign_keys: References resolved through lookup maps
        derived_fields: Columns computed by derivation functions
        constants: Literal values written on every row
        dependencies: Entities that must be migrated first
        batch_size: Optional per-entity batch size (50-1000)
        correction_columns: Columns updated on conflict when running in correction mode
        provenance_column: JSON column receiving the provenance payload, or None
    """
    name: str
    source_table: str
    target_table: str
    legacy_id_column: str
    source_id_column: str = "id"
    target_key_column: str = "id"
    source_query: Optional[str] = None
    field_mappings: List[FieldMapping] = None
    foreign_keys: List[ForeignKeyMapping] = None
    derived_fields: List[DerivedField] = None
    constants: Dict[str, Any] = None
    dependencies: List[str] = None
    batch_size: Optional[int] = None
    correction_columns: List[str] = None
    provenance_column: Optional[str] = "metadata"
    description: Optional[str] = None

    def __post_init__(self):
        """Validate descriptor and initialize default values for mutable fields."""
        if not self.name:
            raise ValueError("name cannot be empty")
        if not self.source_table:
            raise ValueError("source_table cannot be empty")
        if not self.target_table:
            raise ValueError("target_table cannot be empty")
        if not self.legacy_id_column:
            raise ValueError("legacy_id_column cannot be empty")
        if self.field_mappings is None:
            self.field_mappings = []
        if self.foreign_keys is None:
            self.foreign_keys = []
        if self.derived_fields is None:
            self.derived_fields = []
        if self.constants is None:
            self.constants = {}
        if self.dependencies is None:
            self.dependencies = []
        if self.correction_columns is None:
            self.correction_columns = []

    @property
    def referenced_entities(self) -> List[str]:
        """Distinct entities referenced by foreign keys, in declaration order."""
        seen = []
        for fk in self.foreign_keys:
            if fk.references not in seen:
                seen.append(fk.references)
        return seen

    @property
    def consumed_source_columns(self) -> set:
        """Source columns that have a destination (everything else goes to the overflow bag)."""
        columns = {self.source_id_column}
        columns.update(m.source_column for m in self.field_mappings)
        columns.update(fk.source_column for fk in self.foreign_keys)
        for derived in self.derived_fields:
            columns.update(derived.source_columns)
        return columns

    @property
    def target_columns(self) -> List[str]:
        """Every target column the engine writes for this entity."""
        columns = [self.legacy_id_column]
        for name in ([m.target_column for m in self.field_mappings]
                     + [fk.target_column for fk in self.foreign_keys]
                     + [d.target_column for d in self.derived_fields]
                     + list(self.constants.keys())):
            if name not in columns:
                columns.append(name)
        if self.provenance_column and self.provenance_column not in columns:
            columns.append(self.provenance_column)
        return columns


@dataclass
class MigrationContract:
    """
    Complete migration contract: schemas, code tables and entity descriptors.

    Attributes:
        source_schema: Schema holding legacy tables
        target_schema: Schema holding redesigned tables
        enum_mappings: Static code tables; the '' key of each table is its default category
        entities: Entity descriptors keyed by name, in contract order
    """
    source_schema: str = "dbo"
    target_schema: str = "dbo"
    enum_mappings: Dict[str, Dict[str, Any]] = None
    entities: Dict[str, EntityDescriptor] = None

    def __post_init__(self):
        if self.enum_mappings is None:
            self.enum_mappings = {}
        if self.entities is None:
            self.entities = {}

    def get_entity(self, name: str) -> EntityDescriptor:
        """Return a descriptor by name, raising KeyError with the known names."""
        try:
            return self.entities[name]
        except KeyError:
            raise KeyError(f"Unknown entity '{name}'. Known entities: {sorted(self.entities)}")


@dataclass
class ProvenancePayload:
    """
    Provenance stored on every migrated row, tagged with its entity type.

    original_values holds the directly mapped source values as read, and
    legacy_data is the overflow bag of source fields without a destination
    column. Together they make every source field recoverable.
    """
    entity_type: str
    source_table: str
    migrated_at: datetime
    legacy_id: int
    original_values: Dict[str, Any] = field(default_factory=dict)
    legacy_data: Dict[str, Any] = field(default_factory=dict)
    unmapped_codes: Dict[str, Any] = field(default_factory=dict)
    unresolved_references: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        migration = {
            'entity_type': self.entity_type,
            'source_table': self.source_table,
            'migrated_at': self.migrated_at.isoformat(),
            'legacy_id': self.legacy_id,
            'original_values': dict(self.original_values),
            'legacy_data': dict(self.legacy_data),
        }
        if self.unmapped_codes:
            migration['unmapped_codes'] = dict(self.unmapped_codes)
        if self.unresolved_references:
            migration['unresolved_references'] = dict(self.unresolved_references)
        return {'migration': migration}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProvenancePayload':
        migration = data['migration']
        return cls(
            entity_type=migration['entity_type'],
            source_table=migration['source_table'],
            migrated_at=datetime.fromisoformat(migration['migrated_at']),
            legacy_id=migration['legacy_id'],
            original_values=migration.get('original_values', {}),
            legacy_data=migration.get('legacy_data', {}),
            unmapped_codes=migration.get('unmapped_codes', {}),
            unresolved_references=migration.get('unresolved_references', {}),
        )

    def recover_source_values(self) -> Dict[str, Any]:
        """Rebuild the source row's fields (mapped, unmapped and unresolved references)."""
        values = dict(self.legacy_data)
        values.update(self.unresolved_references)
        values.update(self.original_values)
        return values


@dataclass
class TargetRecord:
    """A transformed row ready for the batch loader."""
    legacy_id: int
    values: Dict[str, Any]
    provenance: Optional[ProvenancePayload] = None


@dataclass(frozen=True)
class Skip:
    """Expected, counted outcome of a transform that produces no target row."""
    legacy_id: Optional[int]
    reason: str
    detail: str = ""


@dataclass
class DifferentialSet:
    """
    Source rows not yet represented on the target.

    Attributes:
        source_total: Number of distinct candidate source rows
        already_migrated: Candidates whose legacy id is already on the target
        pending: Remaining source rows in ascending legacy id order
    """
    source_total: int = 0
    already_migrated: int = 0
    pending: List[Dict[str, Any]] = None

    def __post_init__(self):
        if self.pending is None:
            self.pending = []

    @property
    def is_empty(self) -> bool:
        return not self.pending

    def __len__(self) -> int:
        return len(self.pending)


@dataclass
class RecordFailure:
    """A record that could not be loaded, with enough context to re-run it."""
    legacy_id: Optional[int]
    error_category: str
    message: str


@dataclass
class BatchLoadResult:
    """
    Outcome of loading one batch.

    Attributes:
        attempted: Records handed to the loader
        inserted_count: Newly inserted rows
        inserted_ids: Legacy ids of the newly inserted rows
        conflicts: Legacy ids already present (no-op unless correcting)
        updated_count: Rows updated by correction mode
        failures: Records that failed in the per-record fallback
        used_fast_path: Whether the whole-batch insert succeeded
    """
    attempted: int = 0
    inserted_count: int = 0
    inserted_ids: List[int] = None
    conflicts: List[int] = None
    updated_count: int = 0
    failures: List[RecordFailure] = None
    used_fast_path: bool = True

    def __post_init__(self):
        if self.inserted_ids is None:
            self.inserted_ids = []
        if self.conflicts is None:
            self.conflicts = []
        if self.failures is None:
            self.failures = []

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    @property
    def settled_ids(self) -> Set[int]:
        """Legacy ids with a final outcome: inserted, conflicting or failed."""
        return set(self.inserted_ids) | set(self.conflicts) | {f.legacy_id for f in self.failures}


@dataclass
class MigrationRun:
    """
    One execution of the engine for a single entity type.

    Counters live in the run's MigrationStats; stats holds their final
    snapshot once the run ends.
    """
    entity_type: str
    mode: RunMode = RunMode.MIGRATE
    batch_size: int = 500
    dry_run: bool = False
    correction_mode: bool = False
    state: RunState = RunState.INIT
    state_history: List[RunState] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    stats: Dict[str, Any] = None
    validation: Any = None
    deleted_count: int = 0
    error_summary: Optional[str] = None
    interrupted: bool = False

    def __post_init__(self):
        if self.state_history is None:
            self.state_history = [self.state]
        if self.stats is None:
            self.stats = {}
        if self.batch_size < MIN_BATCH_SIZE or self.batch_size > MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}")

    def transition_to(self, new_state: RunState) -> None:
        """Move to new_state, enforcing the run state machine."""
        from .exceptions import InvalidStateTransitionError

        allowed = ALLOWED_TRANSITIONS[self.state]
        if new_state is not RunState.FAILED and new_state not in allowed:
            raise InvalidStateTransitionError(
                f"Invalid transition {self.state.value} -> {new_state.value}",
                entity_type=self.entity_type
            )
        if self.state in (RunState.DONE, RunState.FAILED):
            raise InvalidStateTransitionError(
                f"Run already finished in state {self.state.value}",
                entity_type=self.entity_type
            )
        self.state = new_state
        self.state_history.append(new_state)

    @property
    def is_finished(self) -> bool:
        return self.state in (RunState.DONE, RunState.FAILED)

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.DONE
