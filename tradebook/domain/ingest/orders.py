"""
Live order creation for approved broker formats.

Rows are mapped through the format's field mappings, normalized by the
validators in ``validators.py`` and written to ``orders``. Columns mapped to
``brokerMetadata`` are kept per order as an opaque JSON blob.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from sqlalchemy.orm import Session

from tradebook.db.models import BrokerCsvFormat, ImportBatch, Order, as_utc
from tradebook.domain.ingest.mappings import BROKER_METADATA, field_assignment
from tradebook.domain.ingest.validators import (
    infer_side,
    sanitize_row,
    validate_account_id,
    validate_csv_row,
    validate_date,
    validate_order_type,
    validate_price,
    validate_quantity,
    validate_symbol,
)

logger = logging.getLogger(__name__)


@dataclass
class NormalizedOrder:
    symbol: str
    side: str
    quantity: int
    order_type: str
    order_placed_time: datetime
    order_executed_time: datetime
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    order_status: str = "FILLED"
    time_in_force: Optional[str] = None
    order_id: Optional[str] = None
    parent_order_id: Optional[str] = None
    account_id: Optional[str] = None
    broker_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["order_placed_time"] = self.order_placed_time.isoformat()
        payload["order_executed_time"] = self.order_executed_time.isoformat()
        return payload

    def dedupe_key(self, broker_id: Optional[str]) -> Tuple:
        return (broker_id, self.symbol, self.side, self.quantity, self.order_executed_time)


@dataclass
class OrderProcessingResult:
    success_count: int = 0
    error_count: int = 0
    duplicate_count: int = 0
    errors: List[str] = field(default_factory=list)
    order_ids: List[str] = field(default_factory=list)


def apply_field_mappings(row: Mapping[str, Any], field_mappings: Mapping[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Split a CSV row into (order fields, broker metadata).

    When several headers map to the same order field the first non-empty
    value wins. Headers without a mapping are kept as metadata.
    """
    assignment = field_assignment(field_mappings)
    mapped: Dict[str, Any] = {}
    metadata: Dict[str, Any] = {}
    for header, value in row.items():
        target = assignment.get(header)
        if not target or target == BROKER_METADATA:
            if value not in (None, ""):
                metadata[header] = value
            continue
        if mapped.get(target) in (None, ""):
            mapped[target] = value
    return mapped, metadata


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_order(row: Mapping[str, Any], field_mappings: Mapping[str, Any]) -> NormalizedOrder:
    """Validate one raw CSV row against a format; raises ValueError with a user-facing message."""
    validate_csv_row(row)
    mapped, metadata = apply_field_mappings(sanitize_row(row), field_mappings)

    side, raw_quantity = infer_side(mapped.get("side"), mapped.get("orderQuantity"))
    quantity = validate_quantity(raw_quantity)
    symbol = validate_symbol(mapped.get("symbol"))

    placed_raw = mapped.get("orderPlacedTime") or mapped.get("orderExecutedTime")
    placed = validate_date(placed_raw, label="Order time")
    executed_raw = mapped.get("orderExecutedTime")
    executed = validate_date(executed_raw, label="Execution time") if executed_raw else placed

    return NormalizedOrder(
        symbol=symbol,
        side=side,
        quantity=quantity,
        order_type=validate_order_type(mapped.get("orderType")),
        order_placed_time=placed,
        order_executed_time=executed,
        limit_price=validate_price(mapped.get("limitPrice")),
        stop_price=validate_price(mapped.get("stopPrice")),
        order_status=(_clean(mapped.get("orderStatus")) or "FILLED").upper(),
        time_in_force=(_clean(mapped.get("timeInForce")) or "").upper() or None,
        order_id=_clean(mapped.get("orderId")),
        parent_order_id=_clean(mapped.get("parentOrderId")),
        account_id=validate_account_id(mapped.get("accountId")),
        broker_metadata=metadata,
    )


def existing_order_keys(db: Session, user_id: str, broker_id: Optional[str], symbols: Set[str]) -> Set[Tuple]:
    if not symbols:
        return set()
    rows = (
        db.query(Order.broker_id, Order.symbol, Order.side, Order.order_quantity, Order.order_executed_time)
        .filter(Order.user_id == user_id, Order.broker_id == broker_id, Order.symbol.in_(symbols))
        .all()
    )
    return {(r[0], r[1], r[2], r[3], as_utc(r[4])) for r in rows}


def build_order(normalized: NormalizedOrder, user_id: str, broker_id: Optional[str], import_batch_id: Optional[str]) -> Order:
    return Order(
        user_id=user_id,
        import_batch_id=import_batch_id,
        broker_id=broker_id,
        order_id=normalized.order_id,
        parent_order_id=normalized.parent_order_id,
        symbol=normalized.symbol,
        side=normalized.side,
        order_type=normalized.order_type,
        order_status=normalized.order_status,
        order_quantity=normalized.quantity,
        limit_price=normalized.limit_price,
        stop_price=normalized.stop_price,
        time_in_force=normalized.time_in_force,
        order_placed_time=normalized.order_placed_time,
        order_executed_time=normalized.order_executed_time,
        account_id=normalized.account_id,
        broker_metadata=normalized.broker_metadata or None,
    )


def create_orders(
    db: Session,
    rows: Sequence[Mapping[str, Any]],
    broker_format: BrokerCsvFormat,
    import_batch: ImportBatch,
    user_id: str,
) -> OrderProcessingResult:
    """
    Write live orders for rows of an approved format.

    Rows that fail validation are reported as ``Row N: message``; rows that
    duplicate an existing order (same broker, symbol, side, quantity and
    execution time) are skipped. Runs inside the caller's transaction.
    """
    result = OrderProcessingResult()
    normalized: List[Tuple[int, NormalizedOrder]] = []
    for index, row in enumerate(rows):
        try:
            normalized.append((index, normalize_order(row, broker_format.field_mappings)))
        except ValueError as exc:
            result.error_count += 1
            result.errors.append(f"Row {index + 1}: {exc}")

    seen = existing_order_keys(
        db, user_id, broker_format.broker_id, {order.symbol for _, order in normalized}
    )
    for index, order in normalized:
        key = order.dedupe_key(broker_format.broker_id)
        if key in seen:
            result.duplicate_count += 1
            continue
        seen.add(key)
        record = build_order(order, user_id, broker_format.broker_id, import_batch.id)
        db.add(record)
        db.flush()
        result.order_ids.append(record.id)
        result.success_count += 1

    logger.info(
        "Created %d orders for batch %s (%d errors, %d duplicates skipped)",
        result.success_count,
        import_batch.id,
        result.error_count,
        result.duplicate_count,
    )
    return result
