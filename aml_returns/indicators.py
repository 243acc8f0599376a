"""
Indicator Entries Module

A monthly return is an ordered list of statistical indicators, each
identified by a dotted code ("1.1", "6.4", ...). Raw values are kept as
submitted so that completeness and numeric roll-ups can both be computed
the way historical reports computed them.
"""

import math
import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import ValidationError


# Indicator codes rolled up into financial metrics, keyed by metric name
FINANCIAL_INDICATORS: Dict[str, str] = {
    "1.1": "total_strs",                  # Suspicious transaction reports filed
    "1.6": "total_transaction_amount",    # Amount of flagged transactions
    "3.1": "total_inspections",
    "3.3": "total_enforcement_actions",
    "6.1": "total_cases",
    "6.3": "total_convictions",
    "6.4": "total_assets_frozen",
    "6.5": "total_assets_seized",
}

# Standard monthly return form: (code, label)
INDICATOR_CATALOG: Tuple[Tuple[str, str], ...] = (
    # A. Suspicious transaction reports
    ("1.1", "Total number of STRs received during the month"),
    ("1.2", "Number of STRs from banks"),
    ("1.3", "Number of STRs from mobile money operators"),
    ("1.4", "Number of STRs from microfinance institutions"),
    ("1.5", "Number of STRs from forex bureaus"),
    ("1.6", "Total value of STRs"),
    ("1.7", "Number of STRs forwarded to law enforcement"),
    ("1.8", "Number of STRs under analysis"),
    # B. Reporting entities
    ("2.1", "Total number of registered reporting entities"),
    ("2.2", "Number of banks"),
    ("2.3", "Number of mobile money operators"),
    ("2.4", "Number of microfinance institutions"),
    ("2.5", "Number of forex bureaus"),
    ("2.6", "Number of insurance companies"),
    ("2.7", "Number of SACCOs"),
    ("2.8", "Number of designated non-financial businesses"),
    # C. Supervision
    ("3.1", "Number of on-site inspections conducted"),
    ("3.2", "Number of off-site reviews conducted"),
    ("3.3", "Number of enforcement actions taken"),
    ("3.4", "Total value of fines imposed"),
    ("3.5", "Number of licenses suspended"),
    ("3.6", "Number of licenses revoked"),
    # D. International cooperation
    ("4.1", "Number of international requests received"),
    ("4.2", "Number of international requests sent"),
    ("4.3", "Number of requests from INTERPOL"),
    ("4.4", "Number of requests from ESAAMLG"),
    # E. Training
    ("5.1", "Number of training sessions conducted"),
    ("5.2", "Number of participants trained"),
    ("5.3", "Number of reporting entities trained"),
    # F. Investigations and prosecutions
    ("6.1", "Number of cases under investigation"),
    ("6.2", "Number of cases forwarded to DPP"),
    ("6.3", "Number of convictions"),
    ("6.4", "Total value of assets frozen"),
    ("6.5", "Total value of assets seized"),
)

# Leading numeric prefix, as accepted by a lenient float parser
_NUMERIC_PREFIX = re.compile(r'^\s*([+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?)')


def parse_lenient_decimal(value: Any) -> Decimal:
    """
    Coerce a raw indicator value to Decimal.

    The longest leading numeric prefix is parsed ("12 cases" -> 12,
    "80.5" -> 80.5); anything without one ("N/A", "", None) is 0, and so
    is a value beyond the range of a double ("1e400"). Only ASCII digits
    count. Never raises.
    """
    if value is None or isinstance(value, bool):
        return Decimal('0')
    if isinstance(value, Decimal):
        if not value.is_finite():
            return Decimal('0')
    if isinstance(value, (int, float, Decimal)):
        value = str(value)
    match = _NUMERIC_PREFIX.match(str(value))
    if not match:
        return Decimal('0')
    number = match.group(1)
    # "5." and "5.e3" are valid prefixes for the parser but not for Decimal
    number = number.replace('.e', 'e').replace('.E', 'E').rstrip('.')
    if math.isinf(float(number)):
        return Decimal('0')
    return Decimal(number)


def percentage(part: int, whole: int) -> int:
    """Integer percentage rounded half up; 0 when whole is 0"""
    if not whole:
        return 0
    value = (Decimal(part) * 100 / Decimal(whole)).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
    return int(value)


@dataclass(frozen=True)
class IndicatorEntry:
    """Single indicator line of a monthly return"""
    code: str
    label: str
    value: Optional[str] = None

    @property
    def is_filled(self) -> bool:
        """A value counts as filled unless it is missing or the empty string"""
        return self.value is not None and self.value != ""

    @property
    def amount(self) -> Decimal:
        """Numeric value with lenient coercion (non-numeric text is 0)"""
        return parse_lenient_decimal(self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'label': self.label, 'value': self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IndicatorEntry':
        return cls(code=data['code'], label=data.get('label', ''), value=data.get('value'))


def _normalize_value(code: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Indicator {code}: value must be a number or string")
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str):
        return value
    raise ValidationError(f"Indicator {code}: value must be a number or string")


def parse_indicators(payload: Sequence[Any]) -> Tuple[IndicatorEntry, ...]:
    """
    Validate an incoming indicator list and build entries from it.

    Each item is an IndicatorEntry or a mapping with ``code`` (or
    ``number``), ``label`` (or ``name``) and ``value``. Codes must be
    unique within one return.
    """
    if payload is None or isinstance(payload, (str, bytes, dict)):
        raise ValidationError("Indicators must be a list")

    entries: List[IndicatorEntry] = []
    seen = set()
    for position, item in enumerate(payload, start=1):
        if isinstance(item, IndicatorEntry):
            entry = IndicatorEntry(item.code, item.label, _normalize_value(item.code, item.value))
        elif isinstance(item, dict):
            code = item.get('code', item.get('number'))
            label = item.get('label', item.get('name', ''))
            if not isinstance(code, str) or not code.strip():
                raise ValidationError(f"Indicator #{position} is missing its code")
            if not isinstance(label, str):
                raise ValidationError(f"Indicator {code}: label must be a string")
            code = code.strip()
            entry = IndicatorEntry(code, label, _normalize_value(code, item.get('value')))
        else:
            raise ValidationError(f"Indicator #{position} is not an object")

        if entry.code in seen:
            raise ValidationError(f"Indicator {entry.code} appears more than once")
        seen.add(entry.code)
        entries.append(entry)

    return tuple(entries)


def completion_counts(indicators: Sequence[IndicatorEntry]) -> Tuple[int, int, int]:
    """
    Return (filled, total, completion_rate) for an indicator list.

    completion_rate = round(100 * filled / total), clamped to [0, 100];
    an empty list is 0 % complete.
    """
    total = len(indicators)
    filled = sum(1 for entry in indicators if entry.is_filled)
    rate = max(0, min(100, percentage(filled, total)))
    return filled, total, rate


def indicator_amounts(indicators: Sequence[IndicatorEntry]) -> Dict[str, Decimal]:
    """Coerced amounts of the financial indicators present in a return"""
    amounts = {}
    for entry in indicators:
        if entry.code in FINANCIAL_INDICATORS:
            amounts[entry.code] = entry.amount
    return amounts


def blank_return() -> Tuple[IndicatorEntry, ...]:
    """Empty entries for every indicator of the standard form"""
    return tuple(IndicatorEntry(code, label) for code, label in INDICATOR_CATALOG)
