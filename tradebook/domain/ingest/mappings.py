"""
Typed column-mapping records.

``FieldMapping`` describes where one CSV header lands on an order. A
``PendingReview`` is the scratch record written to ``ImportBatch.column_mappings``
at upload time and consumed at finalization; it is validated on read so a
missing or mangled payload reads as "no pending mappings" instead of leaking a
loosely-typed dict into the finalizer.
"""
import logging
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

BROKER_METADATA = "brokerMetadata"

ORDER_FIELDS = (
    "symbol",
    "side",
    "orderQuantity",
    "orderPlacedTime",
    "orderExecutedTime",
    "limitPrice",
    "orderType",
    "orderStatus",
    "orderId",
    "parentOrderId",
    "timeInForce",
    "stopPrice",
    "orderUpdatedTime",
    "orderCancelledTime",
    "accountId",
    "orderAccount",
    "orderRoute",
    "tags",
    "tradeId",
)

CRITICAL_FIELDS = ("symbol", "side", "orderQuantity", "orderPlacedTime", "orderExecutedTime")

VALID_TARGET_FIELDS = frozenset(ORDER_FIELDS) | {BROKER_METADATA}

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.5
LOW_CONFIDENCE = 0.3


def confidence_band(confidence: float) -> str:
    if confidence >= HIGH_CONFIDENCE:
        return "high"
    if confidence >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


class FieldMapping(BaseModel):
    field: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: Optional[str] = None
    user_corrected: bool = Field(default=False, alias="userCorrected")

    model_config = {"populate_by_name": True}

    def to_json(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"field": self.field, "confidence": self.confidence}
        if self.reasoning:
            payload["reasoning"] = self.reasoning
        if self.user_corrected:
            payload["userCorrected"] = True
        return payload


class PendingReview(BaseModel):
    kind: Literal["pending_review"] = "pending_review"
    ai_mappings: Dict[str, FieldMapping]
    broker_name: str
    metadata_fields: List[str] = Field(default_factory=list)
    overall_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    suggestions: List[str] = Field(default_factory=list)

    @field_validator("broker_name")
    @classmethod
    def broker_name_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("broker_name must not be blank")
        return v.strip()

    @field_validator("ai_mappings")
    @classmethod
    def mappings_not_empty(cls, v: Dict[str, FieldMapping]) -> Dict[str, FieldMapping]:
        if not v:
            raise ValueError("ai_mappings must contain at least one header")
        return v

    def to_column_mappings(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_column_mappings(cls, payload: Any) -> Optional["PendingReview"]:
        """Read the scratch payload back; anything that is not a pending review returns None."""
        if not isinstance(payload, Mapping) or payload.get("kind") != "pending_review":
            return None
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Discarding invalid pending review payload: %s", exc.errors()[:3])
            return None


def mappings_to_json(mappings: Mapping[str, FieldMapping]) -> Dict[str, Dict[str, Any]]:
    return {header: mapping.to_json() for header, mapping in mappings.items()}


def mappings_from_json(payload: Optional[Mapping[str, Any]]) -> Dict[str, FieldMapping]:
    """Load stored format mappings; bare string values are treated as full-confidence assignments."""
    result: Dict[str, FieldMapping] = {}
    for header, value in (payload or {}).items():
        if isinstance(value, str):
            result[header] = FieldMapping(field=value, confidence=1.0)
        elif isinstance(value, Mapping) and value.get("field"):
            result[header] = FieldMapping.model_validate(value)
    return result


def field_assignment(mappings: Mapping[str, Any]) -> Dict[str, str]:
    """Header -> target field, ignoring confidence and provenance."""
    assignment = {}
    for header, mapping in mappings.items():
        if isinstance(mapping, FieldMapping):
            assignment[header] = mapping.field
        elif isinstance(mapping, Mapping):
            assignment[header] = mapping.get("field")
        else:
            assignment[header] = mapping
    return assignment


def calculate_overall_confidence(mappings: Mapping[str, FieldMapping]) -> float:
    """Average confidence of mapped headers, weighting critical order fields three times."""
    total_weight = 0.0
    weighted = 0.0
    for mapping in mappings.values():
        if mapping.field == BROKER_METADATA:
            continue
        weight = 3.0 if mapping.field in CRITICAL_FIELDS else 1.0
        weighted += mapping.confidence * weight
        total_weight += weight
    if total_weight == 0:
        return 0.0
    return round(weighted / total_weight, 4)
