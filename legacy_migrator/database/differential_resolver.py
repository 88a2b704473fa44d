"""
Differential Set Resolver.

Computes the source rows that are not yet represented on the target, by
legacy id absence. The result is computed once per run and emitted in
ascending id order, which makes re-runs deterministic and resumable.
"""

import logging

from typing import Any, Dict, Iterable, Optional

from .connection_manager import ConnectionManager, SOURCE
from .lookup_builder import LookupBuilder
from ..config.processing_defaults import ProcessingDefaults
from ..models import DifferentialSet, EntityDescriptor, MigrationContract
from ..utils import SqlUtils, ValidationUtils


class DifferentialResolver:
    """Resolves the differential set for one entity."""

    def __init__(self, connection_manager: ConnectionManager, contract: MigrationContract,
                 lookup_builder: LookupBuilder,
                 page_size: int = ProcessingDefaults.SOURCE_PAGE_SIZE):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.connections = connection_manager
        self.contract = contract
        self.lookup_builder = lookup_builder
        self.page_size = page_size
        self.logger = logging.getLogger(__name__)

    def source_relation(self, descriptor: EntityDescriptor) -> str:
        """FROM clause for the entity's candidate rows (table or wrapped source query)."""
        if descriptor.source_query:
            return f"({descriptor.source_query}) AS src"
        return SqlUtils.qualified_table_name(self.contract.source_schema, descriptor.source_table)

    def iter_source_rows(self, descriptor: EntityDescriptor) -> Iterable[Dict[str, Any]]:
        """
        Stream candidate source rows in ascending id order.

        Uses keyset pagination (id > last_id) rather than OFFSET so each page is
        an index seek regardless of how deep into the table it is.
        """
        relation = self.source_relation(descriptor)
        id_col = SqlUtils.quote_identifier(descriptor.source_id_column)

        first_page_sql = f"SELECT TOP (?) * FROM {relation} ORDER BY {id_col}"
        next_page_sql = f"SELECT TOP (?) * FROM {relation} WHERE {id_col} > ? ORDER BY {id_col}"

        last_id = None
        while True:
            if last_id is None:
                rows = self.connections.execute(SOURCE, first_page_sql, (self.page_size,))
            else:
                rows = self.connections.execute(SOURCE, next_page_sql, (self.page_size, last_id))
            for row in rows:
                yield row
            if len(rows) < self.page_size:
                break
            last_id = rows[-1][descriptor.source_id_column]

    def resolve(self, descriptor: EntityDescriptor, limit: Optional[int] = None,
                include_migrated: bool = False) -> DifferentialSet:
        """
        Compute the differential set for an entity.

        Args:
            descriptor: Entity to resolve
            limit: Optional cap on the number of pending rows (test runs)
            include_migrated: Keep already-migrated rows in pending (correction runs)

        Returns:
            DifferentialSet with candidate and already-migrated totals and the
            pending rows in ascending legacy id order
        """
        migrated_ids = self.lookup_builder.load_legacy_ids(descriptor)

        seen = set()
        already_migrated = 0
        pending = []
        for row in self.iter_source_rows(descriptor):
            legacy_id = ValidationUtils.safe_int_conversion(row.get(descriptor.source_id_column))
            if legacy_id is None:
                self.logger.warning(f"{descriptor.name}: ignoring source row without an integer "
                                    f"{descriptor.source_id_column}: {row.get(descriptor.source_id_column)!r}")
                continue
            if legacy_id in seen:
                # Joined source queries can repeat an id; the first row wins
                self.logger.debug(f"{descriptor.name}: duplicate source id {legacy_id} ignored")
                continue
            seen.add(legacy_id)
            if legacy_id in migrated_ids:
                already_migrated += 1
                if not include_migrated:
                    continue
            pending.append(row)

        pending.sort(key=lambda r: int(r[descriptor.source_id_column]))
        if limit is not None and limit >= 0:
            pending = pending[:limit]

        result = DifferentialSet(source_total=len(seen), already_migrated=already_migrated, pending=pending)
        if result.is_empty:
            self.logger.info(f"{descriptor.name}: nothing to migrate "
                             f"({already_migrated}/{len(seen)} source rows already on target)")
        else:
            self.logger.info(f"{descriptor.name}: {len(pending)} rows to migrate, "
                             f"{already_migrated} already migrated, {len(seen)} source rows")
        return result

    def count_source_rows(self, descriptor: EntityDescriptor) -> int:
        """Count eligible source rows (used by count parity)."""
        rows = self.connections.execute(
            SOURCE, f"SELECT COUNT(*) AS row_count FROM {self.source_relation(descriptor)}"
        )
        return int(rows[0]['row_count']) if rows else 0

    def fetch_source_rows(self, descriptor: EntityDescriptor, legacy_ids) -> Dict[int, Dict[str, Any]]:
        """Fetch specific source rows by id, keyed by legacy id."""
        legacy_ids = list(legacy_ids)
        if not legacy_ids:
            return {}
        id_col = SqlUtils.quote_identifier(descriptor.source_id_column)
        sql = (f"SELECT * FROM {self.source_relation(descriptor)} "
               f"WHERE {id_col} IN ({SqlUtils.placeholders(len(legacy_ids))})")
        rows = self.connections.execute(SOURCE, sql, legacy_ids)
        return {int(row[descriptor.source_id_column]): row for row in rows}
