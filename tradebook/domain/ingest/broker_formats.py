"""
Broker format catalog.

A broker format is one generation of a broker's CSV layout: the header set, the
header -> order field mappings and whether an admin has approved it. Formats
are matched to uploads by a fingerprint of their normalized header names, with
a Jaccard-similarity fallback for layouts that gained or lost a column.
"""
import hashlib
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import func, text, update
from sqlalchemy.orm import Session

from tradebook.db.models import Broker, BrokerCsvFormat, MigrationStatus, OrderStaging, utcnow
from tradebook.domain.ingest.mappings import field_assignment

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.7
SIMILAR_MATCH_WEIGHT = 0.8


def normalize_column_name(name: str) -> str:
    """Normalize column name: lowercase, alphanumeric only."""
    if not name:
        return ""
    return re.sub(r'[^a-z0-9]', '', str(name).lower())


def normalize_broker_key(name: str) -> str:
    """Case-folded, whitespace-collapsed broker name used for the uniqueness key."""
    return re.sub(r"\s+", " ", (name or "").strip()).lower()


def calculate_header_fingerprint(headers: Sequence[str]) -> Tuple[str, List[str]]:
    """
    Calculate a deterministic fingerprint for a header row.
    Returns (fingerprint_hash, normalized_sorted_headers).
    """
    normalized = sorted(n for n in (normalize_column_name(h) for h in headers if h) if n)
    content = "|".join(normalized)
    return hashlib.sha256(content.encode('utf-8')).hexdigest(), normalized


def calculate_jaccard_similarity(set1: set, set2: set) -> float:
    """Calculate Jaccard similarity between two sets."""
    if not set1 and not set2:
        return 1.0
    if not set1 or not set2:
        return 0.0
    return len(set1 & set2) / len(set1 | set2)


@dataclass
class FormatCreate:
    broker_id: str
    format_name: str
    headers: List[str]
    field_mappings: Dict[str, Any]
    confidence: float
    sample_data: Optional[List[Dict[str, Any]]] = None
    description: Optional[str] = None
    created_by: Optional[str] = None
    is_approved: bool = False


@dataclass
class FormatDetection:
    broker: Broker
    format: BrokerCsvFormat
    confidence: float
    is_exact_match: bool


def find_or_create_broker(db: Session, name: str) -> Broker:
    """
    Return the broker whose case-normalized name matches, creating it if needed.

    Creation goes through ``INSERT ... ON CONFLICT DO NOTHING`` on the unique
    ``name_key`` so two requests racing on a new broker both end up with the
    same row.
    """
    display_name = re.sub(r"\s+", " ", (name or "").strip())
    if not display_name:
        raise ValueError("Broker name must not be blank")
    name_key = normalize_broker_key(display_name)

    broker = db.query(Broker).filter(Broker.name_key == name_key).first()
    if broker:
        return broker

    db.execute(
        text(
            """
            INSERT INTO brokers (id, name, name_key, created_at)
            VALUES (:id, :name, :name_key, CURRENT_TIMESTAMP)
            ON CONFLICT (name_key) DO NOTHING
            """
        ),
        {"id": str(uuid.uuid4()), "name": display_name, "name_key": name_key},
    )
    broker = db.query(Broker).filter(Broker.name_key == name_key).one()
    logger.info("Using broker '%s' (%s)", broker.name, broker.id)
    return broker


def generate_format_name(db: Session, broker_id: str, broker_name: str) -> str:
    """
    Next "{broker} Format N" name for a broker.

    The broker row is locked for the rest of the caller's transaction so
    concurrent finalizations for the same broker number their formats one after
    the other; the (broker_id, format_name) unique constraint is the backstop.
    """
    db.query(Broker).filter(Broker.id == broker_id).with_for_update().one()

    pattern = re.compile(rf"^{re.escape(broker_name)} Format (\d+)$")
    highest = 0
    names = db.query(BrokerCsvFormat.format_name).filter(BrokerCsvFormat.broker_id == broker_id).all()
    for (existing,) in names:
        match = pattern.match(existing or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{broker_name} Format {highest + 1}"


def create_format(db: Session, data: FormatCreate) -> BrokerCsvFormat:
    fingerprint, _ = calculate_header_fingerprint(data.headers)
    broker_format = BrokerCsvFormat(
        broker_id=data.broker_id,
        format_name=data.format_name,
        description=data.description,
        header_fingerprint=fingerprint,
        headers=list(data.headers),
        sample_data=data.sample_data,
        field_mappings=dict(data.field_mappings),
        confidence=data.confidence,
        is_approved=data.is_approved,
        created_by=data.created_by,
        usage_count=0,
        success_rate=1.0,
    )
    db.add(broker_format)
    db.flush()
    logger.info(
        "Created broker format '%s' (%s) approved=%s", broker_format.format_name, broker_format.id, data.is_approved
    )
    return broker_format


def update_format_usage(db: Session, format_id: str, success: bool = True) -> None:
    """
    Bump usage count, last-used time and the rolling success rate.

    Runs in its own short transaction after the caller committed; failures are
    logged and swallowed.
    """
    try:
        result = db.execute(
            update(BrokerCsvFormat)
            .where(BrokerCsvFormat.id == format_id)
            .values(
                success_rate=(
                    (BrokerCsvFormat.success_rate * BrokerCsvFormat.usage_count + (1.0 if success else 0.0))
                    / (BrokerCsvFormat.usage_count + 1)
                ),
                usage_count=BrokerCsvFormat.usage_count + 1,
                last_used=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 0:
            logger.warning("Format usage not updated: format %s not found", format_id)
    except Exception as exc:
        db.rollback()
        logger.error("Failed to update usage statistics for format %s: %s", format_id, exc)


def find_reusable_format(
    db: Session,
    broker_id: str,
    headers: Sequence[str],
    field_mappings: Mapping[str, Any],
) -> Optional[BrokerCsvFormat]:
    """Existing format of this broker with the same headers and the same header -> field assignment."""
    fingerprint, _ = calculate_header_fingerprint(headers)
    wanted = field_assignment(field_mappings)
    candidates = (
        db.query(BrokerCsvFormat)
        .filter(BrokerCsvFormat.broker_id == broker_id, BrokerCsvFormat.header_fingerprint == fingerprint)
        .order_by(BrokerCsvFormat.is_approved.desc(), BrokerCsvFormat.usage_count.desc())
        .all()
    )
    for candidate in candidates:
        if field_assignment(candidate.field_mappings or {}) == wanted:
            return candidate
    return None


def detect_format(db: Session, headers: Sequence[str]) -> Optional[FormatDetection]:
    """
    Find a known format for an uploaded header row.

    Strategies:
    1. Exact fingerprint match (confidence 1.0), preferring approved and heavily used formats
    2. Loose match on normalized header sets (Jaccard similarity > 0.7)
    """
    if not headers:
        return None

    fingerprint, normalized = calculate_header_fingerprint(headers)
    exact = (
        db.query(BrokerCsvFormat)
        .filter(BrokerCsvFormat.header_fingerprint == fingerprint)
        .order_by(BrokerCsvFormat.is_approved.desc(), BrokerCsvFormat.usage_count.desc())
        .first()
    )
    if exact:
        broker = db.get(Broker, exact.broker_id)
        return FormatDetection(broker=broker, format=exact, confidence=1.0, is_exact_match=True)

    target = set(normalized)
    best_format = None
    best_score = 0.0
    for candidate in db.query(BrokerCsvFormat).all():
        _, candidate_normalized = calculate_header_fingerprint(candidate.headers or [])
        score = calculate_jaccard_similarity(target, set(candidate_normalized))
        if score > best_score:
            best_score = score
            best_format = candidate

    if best_format is not None and best_score > SIMILARITY_THRESHOLD:
        broker = db.get(Broker, best_format.broker_id)
        logger.info(
            "Headers loosely match format '%s' (similarity %.2f)", best_format.format_name, best_score
        )
        return FormatDetection(
            broker=broker,
            format=best_format,
            confidence=round(best_score * SIMILAR_MATCH_WEIGHT, 4),
            is_exact_match=False,
        )
    return None


def list_pending_formats(db: Session) -> List[Dict[str, Any]]:
    """Unapproved formats with the number of staged orders waiting on each."""
    pending_counts = dict(
        db.query(OrderStaging.broker_csv_format_id, func.count(OrderStaging.id))
        .filter(OrderStaging.migration_status == MigrationStatus.PENDING)
        .group_by(OrderStaging.broker_csv_format_id)
        .all()
    )
    rows = (
        db.query(BrokerCsvFormat, Broker)
        .join(Broker, Broker.id == BrokerCsvFormat.broker_id)
        .filter(BrokerCsvFormat.is_approved.is_(False))
        .order_by(BrokerCsvFormat.created_at.asc())
        .all()
    )
    return [
        {
            "id": fmt.id,
            "format_name": fmt.format_name,
            "broker_name": broker.name,
            "headers": fmt.headers,
            "field_mappings": fmt.field_mappings,
            "confidence": fmt.confidence,
            "created_at": fmt.created_at,
            "created_by": fmt.created_by,
            "pending_order_count": pending_counts.get(fmt.id, 0),
        }
        for fmt, broker in rows
    ]


def get_format_stats(db: Session) -> Dict[str, Any]:
    total = db.query(func.count(BrokerCsvFormat.id)).scalar() or 0
    approved = (
        db.query(func.count(BrokerCsvFormat.id)).filter(BrokerCsvFormat.is_approved.is_(True)).scalar() or 0
    )
    brokers = db.query(func.count(Broker.id)).scalar() or 0
    return {
        "total_formats": total,
        "approved_formats": approved,
        "pending_formats": total - approved,
        "total_brokers": brokers,
    }
