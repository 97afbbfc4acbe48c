"""
Row-level validation and normalization for broker orders.

Each ``validate_*`` helper raises ``ValueError`` with a message meant for the
user ("Invalid quantity: abc ..."); callers prefix it with the row number.
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from tradebook.domain.ingest.parser import MalformedRow
from tradebook.utils.date import parse_flexible_date

MAX_COLUMNS = 50
MAX_STRING_LENGTH = 10000
MAX_QUANTITY = 1_000_000
MAX_PRICE = 1_000_000

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9\-\.]{1,21}$")
ACCOUNT_PATTERN = re.compile(r"^[A-Za-z0-9\-_\.]{1,50}$")

BUY_VALUES = {"BUY", "BOT", "B", "BOUGHT", "YOU BOUGHT", "BUY TO OPEN", "BUY TO CLOSE"}
SELL_VALUES = {"SELL", "SLD", "S", "SOLD", "YOU SOLD", "SELL TO OPEN", "SELL TO CLOSE", "SELL SHORT"}

ORDER_TYPE_ALIASES = {"MKT": "MARKET", "LMT": "LIMIT", "STP": "STOP", "STP LMT": "STOP_LIMIT", "STOP LIMIT": "STOP_LIMIT"}
ORDER_TYPES = {"MARKET", "LIMIT", "STOP", "STOP_LIMIT"}

MIN_ORDER_DATE = datetime(1990, 1, 1, tzinfo=timezone.utc)

_FORBIDDEN_KEYS = {"__proto__", "constructor", "prototype"}
_STRIP_CHARS = re.compile(r"[\$\{\}]")


def validate_csv_row(row: Any) -> None:
    if isinstance(row, MalformedRow):
        raise ValueError(row.error)
    if not isinstance(row, Mapping):
        raise ValueError("Invalid CSV row: must be a mapping of column to value")
    if len(row) == 0:
        raise ValueError("CSV row cannot be empty")
    if len(row) > MAX_COLUMNS:
        raise ValueError(f"CSV row has too many columns (max {MAX_COLUMNS})")


def sanitize_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Drop reserved keys, cap string length and strip template/injection characters."""
    clean = {}
    for key, value in row.items():
        if key in _FORBIDDEN_KEYS:
            continue
        if isinstance(value, str):
            value = _STRIP_CHARS.sub("", value[:MAX_STRING_LENGTH])
        clean[key] = value
    return clean


def _to_number(value: Any) -> float:
    text = str(value).strip().replace(",", "")
    if text.startswith("(") and text.endswith(")"):
        text = "-" + text[1:-1]
    return float(text)


def validate_symbol(value: Any) -> str:
    if value is None or not str(value).strip():
        raise ValueError("Symbol is required")
    normalized = str(value).strip().upper()
    if not SYMBOL_PATTERN.match(normalized):
        raise ValueError(
            f"Invalid symbol format: {value}. Must be 1-21 alphanumeric characters, dots, or hyphens."
        )
    return normalized


def validate_quantity(value: Any) -> int:
    try:
        number = _to_number(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid quantity: {value}. Must be a positive integer between 1 and 1,000,000.")
    if not number.is_integer() or number <= 0 or number > MAX_QUANTITY:
        raise ValueError(f"Invalid quantity: {value}. Must be a positive integer between 1 and 1,000,000.")
    return int(number)


def validate_price(value: Any) -> Optional[float]:
    if value is None or str(value).strip() == "":
        return None
    try:
        number = _to_number(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid price: {value}. Must be a number between 0 and 1,000,000.")
    if number < 0 or number > MAX_PRICE:
        raise ValueError(f"Invalid price: {value}. Must be a number between 0 and 1,000,000.")
    return number


def validate_date(value: Any, *, label: str = "Date") -> datetime:
    if value is None or str(value).strip() == "":
        raise ValueError(f"{label} is required")
    parsed = parse_flexible_date(value, log_context="order_import")
    if parsed is None:
        raise ValueError(f"Invalid date format: {value}")
    max_date = datetime.now(timezone.utc) + timedelta(days=365)
    if parsed < MIN_ORDER_DATE or parsed > max_date:
        raise ValueError(f"Date out of valid range: {value}. Must be between 1990 and one year from now.")
    return parsed


def validate_side(value: Any) -> str:
    normalized = str(value or "").strip().upper()
    if not normalized:
        raise ValueError("Order side is required")
    if normalized in BUY_VALUES:
        return "BUY"
    if normalized in SELL_VALUES:
        return "SELL"
    raise ValueError(f"Invalid order side: {value}. Must be one of: BUY, SELL, BOT, SLD, etc.")


def validate_order_type(value: Any) -> str:
    normalized = str(value or "").strip().upper()
    if not normalized:
        return "MARKET"
    normalized = ORDER_TYPE_ALIASES.get(normalized, normalized)
    return normalized if normalized in ORDER_TYPES else "MARKET"


def validate_account_id(value: Any) -> Optional[str]:
    if value is None or str(value).strip() == "":
        return None
    text = str(value).strip()
    if not ACCOUNT_PATTERN.match(text):
        raise ValueError(f"Invalid account ID format: {value}")
    return text


def infer_side(side: Any, quantity: Any) -> tuple:
    """
    Resolve (side, absolute quantity) for brokers that sign the quantity instead of naming the side.

    An explicit side wins; otherwise a negative quantity means SELL and a
    positive one BUY.
    """
    if side is not None and str(side).strip():
        return validate_side(side), quantity
    if quantity is None or str(quantity).strip() == "":
        raise ValueError("Order side is required")
    try:
        number = _to_number(quantity)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid quantity: {quantity}. Must be a positive integer between 1 and 1,000,000.")
    if number == 0:
        raise ValueError("Order side is required and cannot be inferred from a zero quantity")
    return ("SELL" if number < 0 else "BUY"), abs(number)
