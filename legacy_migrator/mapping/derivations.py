"""
Named derivation functions for computed target columns.

A derived field in the contract names one of these functions together with
the source columns it reads. Functions take (row, source_columns, options)
and must be deterministic. New entities register their own with
@register_derivation.
"""

from typing import Any, Callable, Dict, List

from ..utils import StringUtils


DerivationFunction = Callable[[Dict[str, Any], List[str], Dict[str, Any]], Any]

_DERIVATIONS: Dict[str, DerivationFunction] = {}

_TRUE_VALUES = {'1', 'true', 't', 'y', 'yes'}
_USA_ALIASES = {'usa', 'us', 'united states', 'united states of america', 'u.s.', 'u.s.a.'}


def register_derivation(name: str):
    """Decorator registering a derivation function under name."""
    def decorator(func: DerivationFunction) -> DerivationFunction:
        if name in _DERIVATIONS and _DERIVATIONS[name] is not func:
            raise ValueError(f"Derivation '{name}' is already registered")
        _DERIVATIONS[name] = func
        return func
    return decorator


def get_derivation(name: str) -> DerivationFunction:
    """
    Look up a registered derivation.

    Raises:
        KeyError: If no derivation is registered under name
    """
    try:
        return _DERIVATIONS[name]
    except KeyError:
        raise KeyError(f"Unknown derivation '{name}'. Registered: {sorted(_DERIVATIONS)}")


def registered_derivations() -> List[str]:
    return sorted(_DERIVATIONS)


def is_truthy_flag(value: Any) -> bool:
    """Interpret legacy bit/char flags (1, '1', 'Y', 'true', b'\\x01')."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (bytes, bytearray)):
        return any(value)
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in _TRUE_VALUES


@register_derivation('payment_status')
def payment_status(row: Dict[str, Any], source_columns: List[str], options: Dict[str, Any]) -> str:
    """
    Collapse legacy payment flags into one status.

    A cancelled payment wins over everything else; free or paid payments are
    completed; anything else is still pending.
    """
    canceled_column = options.get('canceled_column', 'canceled')
    paid_column = options.get('paid_column', 'paid')
    free_column = options.get('free_column', 'free')

    if is_truthy_flag(row.get(canceled_column)):
        return options.get('cancelled_value', 'cancelled')
    if is_truthy_flag(row.get(free_column)) or is_truthy_flag(row.get(paid_column)):
        return options.get('completed_value', 'completed')
    return options.get('pending_value', 'pending')


@register_derivation('full_name')
def full_name(row: Dict[str, Any], source_columns: List[str], options: Dict[str, Any]) -> Any:
    parts = [StringUtils.normalize_whitespace(row.get(col)) for col in source_columns]
    name = options.get('separator', ' ').join(part for part in parts if part)
    return name or None


@register_derivation('first_non_empty')
def first_non_empty(row: Dict[str, Any], source_columns: List[str], options: Dict[str, Any]) -> Any:
    for col in source_columns:
        if StringUtils.safe_string_check(row.get(col)):
            return row.get(col)
    return options.get('default')


@register_derivation('country_code')
def country_code(row: Dict[str, Any], source_columns: List[str], options: Dict[str, Any]) -> Any:
    """USA spellings become 'USA'; missing becomes the default ('US'); others are kept trimmed."""
    value = row.get(source_columns[0]) if source_columns else None
    if not StringUtils.safe_string_check(value):
        return options.get('default', 'US')
    text = StringUtils.normalize_whitespace(value)
    if text.lower() in _USA_ALIASES:
        return 'USA'
    return text
