"""
Optional-field resolution for Karbon payloads.

Karbon often exposes the same datum in several places: a top-level field, a
flagged entry inside a nested list (the primary business card, the primary
email) or simply the first nested entry. Each target column declares an
ordered tuple of extractor callables; resolve() runs them in order and
returns the first value that is not None or an empty string.

Every helper here tolerates missing keys, None, wrong container types and
unparseable strings by returning None. Nothing in this module raises on bad
vendor data.
"""
import re
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

Extractor = Callable[[Dict[str, Any]], Any]

_DATETIME_FORMATS = (
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)


def resolve(raw: Dict[str, Any], extractors: Sequence[Extractor]) -> Any:
    """Return the first non-empty value produced by extractors, or None."""
    for extract in extractors:
        try:
            value = extract(raw)
        except (AttributeError, IndexError, KeyError, TypeError, ValueError):
            value = None
        if value is not None and value != "":
            return value
    return None


def field(*path: str) -> Extractor:
    """Extractor for a (possibly nested) dict path: field("Budget", "BudgetedHours")."""

    def extract(raw: Dict[str, Any]) -> Any:
        node: Any = raw
        for key in path:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        return node

    return extract


def as_list(value: Any) -> List[Any]:
    """Karbon returns collections as a list, a single object, or nothing."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def primary_entry(entries: Any, flag: str) -> Optional[Any]:
    """The entry whose `flag` is truthy, else None."""
    for entry in as_list(entries):
        if isinstance(entry, dict) and entry.get(flag):
            return entry
    return None


def first_entry(entries: Any) -> Optional[Any]:
    items = as_list(entries)
    return items[0] if items else None


def labelled_entry(entries: Any, *labels: str, key: str = "Label") -> Optional[Any]:
    """The first entry whose `key` (Label/Type) equals one of labels."""
    for entry in as_list(entries):
        if isinstance(entry, dict) and entry.get(key) in labels:
            return entry
    return None


def business_card(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Primary business card → first business card → empty dict."""
    cards = raw.get("BusinessCards") if isinstance(raw, dict) else None
    if cards is None and isinstance(raw, dict):
        cards = raw.get("BusinessCard")
    card = primary_entry(cards, "IsPrimaryCard") or first_entry(cards)
    return card if isinstance(card, dict) else {}


def card_field(*path: str) -> Extractor:
    """Extractor reading a path inside the resolved business card."""
    inner = field(*path)
    return lambda raw: inner(business_card(raw))


def text(value: Any) -> Optional[str]:
    """Scalar → str; dicts carrying Address/Email/Number/Url unwrap; else None."""
    if value is None:
        return None
    if isinstance(value, dict):
        for key in ("Address", "Email", "EmailAddress", "Number", "Url"):
            if value.get(key) not in (None, ""):
                return str(value[key])
        return None
    if isinstance(value, (list, tuple)):
        return None
    result = str(value).strip()
    return result or None


def to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0"):
            return False
        return None
    if isinstance(value, (int, float)):
        return bool(value)
    return None


def parse_karbon_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a Karbon timestamp into a naive UTC datetime.

    Accepts ISO 8601 with or without fractional seconds, a trailing "Z" or a
    numeric offset, and plain dates. Returns None for anything else.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str) or not value.strip():
        return None

    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(s)
    except ValueError:
        parsed = None
    if parsed is None:
        base = re.split(r"[.+]", s, maxsplit=1)[0]
        for fmt in _DATETIME_FORMATS:
            try:
                parsed = datetime.strptime(base, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_karbon_date(value: Any) -> Optional[date]:
    """Date part of a Karbon timestamp ("2024-04-15T00:00:00Z" → 2024-04-15)."""
    if isinstance(value, str) and len(value) >= 10:
        try:
            return datetime.strptime(value[:10], "%Y-%m-%d").date()
        except ValueError:
            pass
    parsed = parse_karbon_datetime(value)
    return parsed.date() if parsed else None


def compact(values: Iterable[Any]) -> List[Any]:
    return [v for v in values if v not in (None, "")]
