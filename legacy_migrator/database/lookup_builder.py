"""
Legacy-ID Lookup Builder.

Loads (legacy_id -> target_id) pairs for a referenced entity from the target
store into memory, so foreign keys are resolved without one query per row.
Pages are read with keyset pagination on the legacy id column.
"""

import logging

from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from .connection_manager import ConnectionManager, TARGET
from ..config.processing_defaults import ProcessingDefaults
from ..exceptions import LookupMissError, SchemaMismatchError
from ..models import EntityDescriptor, MigrationContract
from ..utils import SqlUtils, ValidationUtils


class LookupMap(Mapping):
    """
    Read-only legacy id -> target id map for one entity type.

    When a refresher is supplied, resolve() re-checks the target once for an id
    that is missing from the snapshot (a parent written after the map was built)
    and remembers both hits and misses for the rest of the run.
    """

    def __init__(self, entity_type: str, pairs: Dict[int, Any],
                 refresher: Optional[Callable[[int], Any]] = None):
        self.entity_type = entity_type
        self._map = dict(pairs)
        self._refresher = refresher
        self._known_misses: Set[int] = set()
        self.recheck_count = 0
        self.refreshed_count = 0

    def __getitem__(self, legacy_id: int) -> Any:
        return self._map[legacy_id]

    def __iter__(self):
        return iter(self._map)

    def __len__(self) -> int:
        return len(self._map)

    def resolve(self, legacy_id: int) -> Optional[Any]:
        """Return the target id for legacy_id, or None when it is not migrated."""
        if legacy_id in self._map:
            return self._map[legacy_id]
        if self._refresher is None or legacy_id in self._known_misses:
            return None

        self.recheck_count += 1
        target_id = self._refresher(legacy_id)
        if target_id is None:
            self._known_misses.add(legacy_id)
            return None
        self._map[legacy_id] = target_id
        self.refreshed_count += 1
        return target_id

    def require(self, legacy_id: int) -> Any:
        """
        Resolve legacy_id or raise.

        Raises:
            LookupMissError: If the legacy id has no target row
        """
        target_id = self.resolve(legacy_id)
        if target_id is None:
            raise LookupMissError(
                f"{self.entity_type} legacy id {legacy_id} has no target row",
                referenced_entity=self.entity_type,
                missing_legacy_id=legacy_id,
                entity_type=self.entity_type
            )
        return target_id


class LookupBuilder:
    """
    Builds lookup maps and inspects target schema.

    Args:
        connection_manager: Open ConnectionManager
        contract: Migration contract providing target schema and descriptors
        page_size: Rows fetched per lookup page
        recheck_on_miss: Attach a single-row re-check to every map
    """

    def __init__(self, connection_manager: ConnectionManager, contract: MigrationContract,
                 page_size: int = ProcessingDefaults.LOOKUP_PAGE_SIZE,
                 recheck_on_miss: bool = ProcessingDefaults.RECHECK_ON_MISS):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.connections = connection_manager
        self.contract = contract
        self.page_size = page_size
        self.recheck_on_miss = recheck_on_miss
        self.logger = logging.getLogger(__name__)
        self._column_cache: Dict[str, Set[str]] = {}

    def _descriptor(self, entity: Union[str, EntityDescriptor]) -> EntityDescriptor:
        if isinstance(entity, EntityDescriptor):
            return entity
        return self.contract.get_entity(entity)

    def _table(self, descriptor: EntityDescriptor) -> str:
        return SqlUtils.qualified_table_name(self.contract.target_schema, descriptor.target_table)

    def build_lookup(self, entity: Union[str, EntityDescriptor]) -> LookupMap:
        """
        Load the full legacy id -> target id map for an entity.

        Raises:
            SchemaMismatchError: If the legacy id or key column is missing on the target table
        """
        descriptor = self._descriptor(entity)
        self.verify_columns(descriptor.target_table,
                            [descriptor.legacy_id_column, descriptor.target_key_column])

        legacy_col = descriptor.legacy_id_column
        key_col = descriptor.target_key_column
        pairs = {}
        for row in self._page_target(descriptor, [legacy_col, key_col]):
            pairs[int(row[legacy_col])] = row[key_col]

        refresher = self._make_refresher(descriptor) if self.recheck_on_miss else None
        self.logger.info(f"Built {descriptor.name} lookup: {len(pairs)} legacy ids")
        return LookupMap(descriptor.name, pairs, refresher)

    def build_lookups(self, descriptor: EntityDescriptor) -> Dict[str, LookupMap]:
        """Build one lookup map per entity referenced by the descriptor's foreign keys."""
        return {name: self.build_lookup(name) for name in descriptor.referenced_entities}

    def load_legacy_ids(self, entity: Union[str, EntityDescriptor]) -> Set[int]:
        """Return every non-null legacy id already present on the entity's target table."""
        descriptor = self._descriptor(entity)
        self.verify_columns(descriptor.target_table, [descriptor.legacy_id_column])
        legacy_col = descriptor.legacy_id_column
        return {int(row[legacy_col]) for row in self._page_target(descriptor, [legacy_col])}

    def _page_target(self, descriptor: EntityDescriptor, columns: List[str]) -> Iterable[Dict[str, Any]]:
        """Keyset-paginate target rows with a non-null legacy id, ordered by legacy id."""
        table = self._table(descriptor)
        legacy = SqlUtils.quote_identifier(descriptor.legacy_id_column)
        column_list = ', '.join(SqlUtils.quote_identifier(c) for c in columns)

        first_page_sql = (f"SELECT TOP (?) {column_list} FROM {table} "
                          f"WHERE {legacy} IS NOT NULL ORDER BY {legacy}")
        next_page_sql = (f"SELECT TOP (?) {column_list} FROM {table} "
                         f"WHERE {legacy} IS NOT NULL AND {legacy} > ? ORDER BY {legacy}")

        last_id = None
        while True:
            if last_id is None:
                rows = self.connections.execute(TARGET, first_page_sql, (self.page_size,))
            else:
                rows = self.connections.execute(TARGET, next_page_sql, (self.page_size, last_id))
            for row in rows:
                yield row
            if len(rows) < self.page_size:
                break
            last_id = rows[-1][descriptor.legacy_id_column]

    def _make_refresher(self, descriptor: EntityDescriptor) -> Callable[[int], Any]:
        table = self._table(descriptor)
        legacy = SqlUtils.quote_identifier(descriptor.legacy_id_column)
        key_col = descriptor.target_key_column
        sql = f"SELECT {SqlUtils.quote_identifier(key_col)} FROM {table} WHERE {legacy} = ?"

        def refresh(legacy_id: int) -> Any:
            rows = self.connections.execute(TARGET, sql, (legacy_id,))
            if rows:
                self.logger.info(f"{descriptor.name} legacy id {legacy_id} found on re-check "
                                 f"(written after lookup was built)")
                return rows[0][key_col]
            return None

        return refresh

    def get_table_columns(self, table_name: str) -> Set[str]:
        """Return the lower-cased column names of a target table (empty if the table is missing)."""
        cache_key = table_name.lower()
        if cache_key not in self._column_cache:
            rows = self.connections.execute(
                TARGET,
                "SELECT COLUMN_NAME FROM INFORMATION_SCHEMA.COLUMNS WHERE TABLE_SCHEMA = ? AND TABLE_NAME = ?",
                (self.contract.target_schema, table_name)
            )
            self._column_cache[cache_key] = {str(row['COLUMN_NAME']).lower() for row in rows}
        return self._column_cache[cache_key]

    def verify_columns(self, table_name: str, columns: Iterable[str]) -> None:
        """
        Fail loudly if a table or any expected column is missing.

        Raises:
            SchemaMismatchError: On the first missing table or column set
        """
        if not ValidationUtils.is_valid_identifier(table_name):
            raise SchemaMismatchError(f"Invalid table name {table_name!r}", table_name=table_name)

        existing = self.get_table_columns(table_name)
        qualified = f"{self.contract.target_schema}.{table_name}"
        if not existing:
            raise SchemaMismatchError(f"Target table {qualified} does not exist", table_name=table_name)

        missing = [c for c in columns if c.lower() not in existing]
        if missing:
            raise SchemaMismatchError(
                f"Target table {qualified} is missing expected column(s): {', '.join(missing)}",
                table_name=table_name,
                column_name=missing[0]
            )

    def verify_target_schema(self, descriptor: EntityDescriptor) -> None:
        """Check every column the engine writes (and reads back) before any writes happen."""
        self.verify_columns(descriptor.target_table,
                            [descriptor.target_key_column] + descriptor.target_columns)
        self.logger.debug(f"Target schema verified for {descriptor.name}")
