"""
Record Transformer - maps one legacy source row to zero-or-one target row.

The transformer is driven entirely by the entity descriptor:

1. Legacy id: read from source_id_column (must be an integer)
2. Foreign keys: resolved through lookup maps; a required reference that is
   missing or unresolved produces a Skip, never an exception
3. Field mappings: each mapping_type in the chain is applied in order
   (trim, lower, digits_only, rate, enum, ...). Every step is deterministic
   and idempotent
4. Derived fields and constants
5. Provenance: mapped source values, the overflow bag of unmapped fields,
   unmapped codes and unresolved optional references, tagged with the source
   table and migration timestamp

TransformError is raised only for structurally malformed rows (a non-integer
id, an unparseable date or JSON payload, a non-numeric rate).
"""

import json
import logging

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from .derivations import get_derivation, is_truthy_flag
from ..exceptions import TransformError
from ..interfaces import RecordTransformerInterface
from ..models import EntityDescriptor, FieldMapping, ProvenancePayload, Skip, TargetRecord
from ..utils import RateUtils, StringUtils, ValidationUtils


MAPPING_TYPES = (
    'trim', 'lower', 'upper', 'collapse_whitespace', 'normalize_text', 'digits_only',
    'rate', 'enum', 'bool', 'int', 'decimal', 'date', 'json', 'truncate'
)

_ZERO_DATE_PREFIXES = ('0000-00-00',)


class RecordTransformer(RecordTransformerInterface):
    """
    Contract-driven transformer for one entity.

    Args:
        descriptor: Entity descriptor carrying the mappings
        enum_mappings: Static code tables from the contract
        clock: Returns the migration timestamp recorded in provenance
    """

    def __init__(self, descriptor: EntityDescriptor, enum_mappings: Dict[str, Dict[str, Any]] = None,
                 clock: Callable[[], datetime] = None):
        self.descriptor = descriptor
        self.enum_mappings = enum_mappings or {}
        self._clock = clock or datetime.now
        self.logger = logging.getLogger(__name__)

        # Case-insensitive views of code tables, built lazily
        self._enum_ci_cache: Dict[str, Dict[str, Any]] = {}
        self._reported_codes = set()
        self._consumed_columns = descriptor.consumed_source_columns

        self._transformation_stats = {
            'transformed': 0,
            'skipped': 0,
            'unmapped_codes': 0,
            'unresolved_optional_references': 0
        }

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._transformation_stats)

    def transform(self, source_row: Dict[str, Any], lookups: Dict[str, Any]) -> Union[TargetRecord, Skip]:
        """
        Transform a source row.

        Args:
            source_row: Source columns keyed by name
            lookups: LookupMap (or plain dict) per referenced entity name

        Returns:
            TargetRecord, or Skip when a required reference cannot be resolved

        Raises:
            TransformError: If the row is structurally malformed
        """
        legacy_id = self._extract_legacy_id(source_row)
        provenance = ProvenancePayload(
            entity_type=self.descriptor.name,
            source_table=self.descriptor.source_table,
            migrated_at=self._clock(),
            legacy_id=legacy_id
        )
        values: Dict[str, Any] = {}

        skip = self._resolve_foreign_keys(source_row, lookups, legacy_id, values, provenance)
        if skip is not None:
            self._transformation_stats['skipped'] += 1
            return skip

        for mapping in self.descriptor.field_mappings:
            raw = source_row.get(mapping.source_column)
            provenance.original_values[mapping.source_column] = raw
            values[mapping.target_column] = self._apply_field_transformation(mapping, raw, legacy_id, provenance)

        for derived in self.descriptor.derived_fields:
            for column in derived.source_columns:
                provenance.original_values[column] = source_row.get(column)
            try:
                function = get_derivation(derived.function)
            except KeyError as e:
                raise TransformError(str(e), field_name=derived.target_column,
                                     entity_type=self.descriptor.name, legacy_id=legacy_id)
            values[derived.target_column] = function(source_row, derived.source_columns, derived.options)

        values.update(self.descriptor.constants)

        # Overflow bag: every source field without a destination column, verbatim
        provenance.legacy_data = {
            column: value for column, value in source_row.items()
            if column not in self._consumed_columns
        }

        self._transformation_stats['transformed'] += 1
        return TargetRecord(legacy_id=legacy_id, values=values, provenance=provenance)

    def _extract_legacy_id(self, source_row: Dict[str, Any]) -> int:
        id_column = self.descriptor.source_id_column
        raw = source_row.get(id_column)
        legacy_id = ValidationUtils.safe_int_conversion(raw)
        if legacy_id is None:
            raise TransformError(
                f"{self.descriptor.name}: source row has no integer {id_column} ({raw!r})",
                field_name=id_column,
                source_value=raw,
                entity_type=self.descriptor.name
            )
        return legacy_id

    def _resolve_foreign_keys(self, source_row: Dict[str, Any], lookups: Dict[str, Any], legacy_id: int,
                              values: Dict[str, Any], provenance: ProvenancePayload) -> Optional[Skip]:
        """Resolve every foreign key; return a Skip for the first required reference that fails."""
        for fk in self.descriptor.foreign_keys:
            raw = source_row.get(fk.source_column)
            provenance.original_values[fk.source_column] = raw

            if not StringUtils.safe_string_check(raw):
                if fk.required:
                    return Skip(legacy_id, f"missing_{fk.source_column}",
                                f"{fk.source_column} is empty on {self.descriptor.source_table}")
                values[fk.target_column] = None
                continue

            referenced_id = ValidationUtils.safe_int_conversion(raw)
            if referenced_id is None:
                raise TransformError(
                    f"{self.descriptor.name} legacy id {legacy_id}: {fk.source_column} is not an integer id ({raw!r})",
                    field_name=fk.source_column,
                    source_value=raw,
                    entity_type=self.descriptor.name,
                    legacy_id=legacy_id
                )

            lookup = lookups.get(fk.references)
            if lookup is None:
                raise ValueError(f"No lookup map supplied for '{fk.references}' "
                                 f"(needed by {self.descriptor.name}.{fk.source_column})")

            target_id = lookup.resolve(referenced_id) if hasattr(lookup, 'resolve') else lookup.get(referenced_id)
            if target_id is None:
                if fk.required:
                    return Skip(legacy_id, f"lookup_miss:{fk.source_column}",
                                f"{fk.references} legacy id {referenced_id} is not migrated")
                self._transformation_stats['unresolved_optional_references'] += 1
                provenance.unresolved_references[fk.source_column] = raw
                values[fk.target_column] = None
                continue

            values[fk.target_column] = target_id
        return None

    def _apply_field_transformation(self, mapping: FieldMapping, value: Any, legacy_id: int,
                                    provenance: ProvenancePayload) -> Any:
        """Apply the mapping_type chain in order, then the default value for empty results."""
        for mapping_type in mapping.mapping_type:
            try:
                value = self._apply_mapping_type(mapping_type, value, mapping, provenance)
            except (ValueError, TypeError) as e:
                raise TransformError(
                    f"{self.descriptor.name} legacy id {legacy_id}: {mapping_type} failed on "
                    f"{mapping.source_column} ({value!r}): {e}",
                    field_name=mapping.source_column,
                    source_value=value,
                    entity_type=self.descriptor.name,
                    legacy_id=legacy_id
                )

        if (value is None or value == '') and mapping.default_value is not None and 'enum' not in mapping.mapping_type:
            return mapping.default_value
        return value

    def _apply_mapping_type(self, mapping_type: str, value: Any, mapping: FieldMapping,
                            provenance: ProvenancePayload) -> Any:
        if mapping_type == 'enum':
            return self._apply_enum_mapping(value, mapping, provenance)
        if mapping_type == 'rate':
            return RateUtils.normalize_rate(value)

        # Every other type passes None through unchanged
        if value is None:
            return None

        if mapping_type == 'trim':
            return str(value).strip()
        if mapping_type == 'lower':
            return str(value).lower()
        if mapping_type == 'upper':
            return str(value).upper()
        if mapping_type == 'collapse_whitespace':
            return StringUtils.normalize_whitespace(value)
        if mapping_type == 'normalize_text':
            return StringUtils.normalize_text(value)
        if mapping_type == 'digits_only':
            return StringUtils.extract_numbers_only(value) or None
        if mapping_type == 'bool':
            return is_truthy_flag(value)
        if mapping_type == 'int':
            return self._to_int(value)
        if mapping_type == 'decimal':
            return self._to_decimal(value)
        if mapping_type == 'date':
            return self._to_datetime(value)
        if mapping_type == 'json':
            return self._to_json(value)
        if mapping_type == 'truncate':
            text = str(value)
            if mapping.data_length and len(text) > mapping.data_length:
                self.logger.debug(f"Truncating {mapping.source_column} from {len(text)} to {mapping.data_length}")
                return text[:mapping.data_length]
            return text
        raise ValueError(f"unknown mapping type '{mapping_type}'")

    def _apply_enum_mapping(self, value: Any, mapping: FieldMapping, provenance: ProvenancePayload) -> Any:
        """
        Translate a legacy code through its static table.

        Lookup order: exact match, case-insensitive match, then the documented
        default (the mapping's default_value, else the table's '' entry).
        Unmapped codes are recorded in provenance rather than failing the row.
        """
        enum_map = self.enum_mappings.get(mapping.enum_name)
        if enum_map is None:
            raise ValueError(f"code table '{mapping.enum_name}' is not defined")

        str_value = self._code_key(value)

        # Try exact match first
        if str_value in enum_map:
            return enum_map[str_value]

        # Try case-insensitive match
        ci_map = self._enum_ci_cache.get(mapping.enum_name)
        if ci_map is None:
            ci_map = {key.lower(): enum_value for key, enum_value in enum_map.items()}
            self._enum_ci_cache[mapping.enum_name] = ci_map
        if str_value.lower() in ci_map:
            return ci_map[str_value.lower()]

        default = mapping.default_value if mapping.default_value is not None else enum_map.get('')
        if value is not None and str_value != '':
            provenance.unmapped_codes[mapping.source_column] = value
            self._transformation_stats['unmapped_codes'] += 1
            report_key = (mapping.enum_name, str_value)
            if report_key not in self._reported_codes:
                self._reported_codes.add(report_key)
                self.logger.warning(f"Unmapped code '{str_value}' in {mapping.enum_name} "
                                    f"({self.descriptor.name}.{mapping.source_column}); using default {default!r}")
        return default

    @staticmethod
    def _code_key(value: Any) -> str:
        """String key for a code value; 1, 1.0, Decimal('1') and ' 1 ' all become '1'."""
        if value is None:
            return ''
        if isinstance(value, bool):
            return '1' if value else '0'
        if isinstance(value, (float, Decimal)) and value == int(value):
            return str(int(value))
        return str(value).strip()

    @staticmethod
    def _to_int(value: Any) -> Optional[int]:
        if isinstance(value, str) and not value.strip():
            return None
        converted = ValidationUtils.safe_int_conversion(value)
        if converted is None:
            raise ValueError("not an integer")
        return converted

    @staticmethod
    def _to_decimal(value: Any) -> Optional[Decimal]:
        if isinstance(value, str) and not value.strip():
            return None
        converted = ValidationUtils.safe_decimal_conversion(value)
        if converted is None:
            raise ValueError("not a decimal")
        return converted

    @staticmethod
    def _to_datetime(value: Any) -> Optional[datetime]:
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        text = str(value).strip()
        if not text or text.startswith(_ZERO_DATE_PREFIXES):
            # Legacy zero dates mean "no date"
            return None
        return datetime.fromisoformat(text.replace('T', ' ').rstrip('Z'))

    @staticmethod
    def _to_json(value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return value
        text = str(value).strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"unparseable JSON payload: {e}")
