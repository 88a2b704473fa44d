"""
Utility functions for common patterns across the migration engine.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


class StringUtils:
    """Utility methods for string validation and normalization."""

    # Cached regex patterns for performance
    _regex_cache = {
        'numbers_only': re.compile(r'[^0-9]'),
        'whitespace': re.compile(r'\s+'),
        'identifier': re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
    }

    @staticmethod
    def safe_string_check(value: Any) -> bool:
        """
        Standardized string validation.

        Args:
            value: Value to check

        Returns:
            True if value is a non-empty string after stripping whitespace
        """
        return value is not None and str(value).strip() != ''

    @staticmethod
    def extract_numbers_only(value: Any) -> str:
        """
        Extract only numeric characters from value.

        Used for phone numbers and zip codes: '(555) 555-0100' -> '5555550100'.

        Args:
            value: Input value

        Returns:
            String containing only numeric characters
        """
        if value is None:
            return ''
        return StringUtils._regex_cache['numbers_only'].sub('', str(value))

    @staticmethod
    def normalize_whitespace(value: Any) -> str:
        """
        Normalize whitespace in string values.

        Args:
            value: Input value

        Returns:
            String with normalized whitespace
        """
        if value is None:
            return ''
        return StringUtils._regex_cache['whitespace'].sub(' ', str(value).strip())

    @staticmethod
    def normalize_text(value: Any) -> Optional[str]:
        """Trim, case-fold and collapse internal whitespace. None stays None."""
        if value is None:
            return None
        return StringUtils.normalize_whitespace(value).lower()


class ValidationUtils:
    """Utility methods for validation and conversion patterns."""

    @staticmethod
    def is_valid_identifier(value: Any) -> bool:
        """
        Check that value is safe to use as a bracket-quoted SQL identifier.

        Args:
            value: Table, schema or column name

        Returns:
            True if value matches [A-Za-z_][A-Za-z0-9_]*
        """
        if not isinstance(value, str):
            return False
        return bool(StringUtils._regex_cache['identifier'].match(value))

    @staticmethod
    def safe_int_conversion(value: Any, default: Optional[int] = None) -> Optional[int]:
        """
        Safely convert value to integer.

        Args:
            value: Value to convert
            default: Default value if conversion fails

        Returns:
            Integer value or default
        """
        if value is None or isinstance(value, bool):
            return default

        try:
            if isinstance(value, int):
                return value
            if isinstance(value, (float, Decimal)):
                if value != int(value):
                    return default
                return int(value)
            return int(str(value).strip())
        except (ValueError, TypeError, InvalidOperation):
            return default

    @staticmethod
    def safe_decimal_conversion(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
        """
        Safely convert value to Decimal.

        Args:
            value: Value to convert
            default: Default value if conversion fails

        Returns:
            Decimal value or default
        """
        if value is None or isinstance(value, bool):
            return default

        try:
            if isinstance(value, Decimal):
                return value
            return Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return default


class RateUtils:
    """Percentage-vs-fraction correction for rate columns."""

    MAX_RATE = Decimal('0.9999')

    @staticmethod
    def normalize_rate(value: Any) -> Decimal:
        """
        Normalize a rate to a fraction.

        Values above 1 are treated as percentages and divided by 100, then
        capped at 0.9999. Missing values become 0. Applying the function to
        its own output returns the same value.

        Examples:
            8.25 -> 0.0825
            0.0825 -> 0.0825
            None -> 0

        Raises:
            ValueError: If the value is not numeric
        """
        if value is None or (isinstance(value, str) and not value.strip()):
            return Decimal('0')
        rate = ValidationUtils.safe_decimal_conversion(value)
        if rate is None:
            raise ValueError(f"Rate is not numeric: {value!r}")
        if rate > 1:
            rate = rate / Decimal('100')
        if rate > RateUtils.MAX_RATE:
            rate = RateUtils.MAX_RATE
        return rate


class SqlUtils:
    """Helpers for building parameterized statements."""

    @staticmethod
    def quote_identifier(name: str) -> str:
        """
        Bracket-quote a validated identifier.

        Raises:
            ValueError: If name is not a plain identifier
        """
        if not ValidationUtils.is_valid_identifier(name):
            raise ValueError(f"Invalid SQL identifier: {name!r}")
        return f"[{name}]"

    @staticmethod
    def qualified_table_name(schema: Optional[str], table: str) -> str:
        """Return [schema].[table], or [table] when schema is empty."""
        if schema:
            return f"{SqlUtils.quote_identifier(schema)}.{SqlUtils.quote_identifier(table)}"
        return SqlUtils.quote_identifier(table)

    @staticmethod
    def placeholders(count: int) -> str:
        """Return '?, ?, ...' for count parameters."""
        return ', '.join('?' * count)


def json_default(obj):
    """JSON serializer for values pyodbc returns that json can't handle natively."""
    if isinstance(obj, Decimal):
        # Kept as text so the legacy value survives exactly
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (bytes, bytearray)):
        return obj.hex()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
