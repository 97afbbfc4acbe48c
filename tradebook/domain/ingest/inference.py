"""
Column-mapping inference for unknown broker CSV layouts.

Two interchangeable backends implement ``MappingInference``:

- ``HeuristicMappingInference`` matches normalized header names against a
  table of common broker spellings.
- ``AnthropicMappingInference`` asks Claude (through LangChain) for a JSON
  mapping and falls back to the heuristics when the call or the parse fails.

Both return an ``InferenceResult`` where every header is present: headers that
could not be mapped with at least medium confidence land on the
``brokerMetadata`` sentinel so no column is ever dropped.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage

from tradebook.core.config import settings
from tradebook.domain.ingest.broker_formats import normalize_column_name
from tradebook.domain.ingest.mappings import (
    BROKER_METADATA,
    CRITICAL_FIELDS,
    MEDIUM_CONFIDENCE,
    ORDER_FIELDS,
    FieldMapping,
    calculate_overall_confidence,
)

logger = logging.getLogger(__name__)

LLM_MODEL = "claude-haiku-4-5-20251001"

ORDER_FIELD_DESCRIPTIONS = {
    "symbol": "Ticker symbol of the instrument (e.g. AAPL)",
    "side": "BUY or SELL",
    "orderQuantity": "Number of shares/contracts",
    "orderPlacedTime": "When the order was submitted",
    "orderExecutedTime": "When the order was filled",
    "limitPrice": "Limit or fill price",
    "orderType": "MARKET, LIMIT, STOP, STOP_LIMIT",
    "orderStatus": "FILLED, CANCELLED, PENDING, ...",
    "orderId": "Broker order identifier",
    "parentOrderId": "Identifier of the parent order for brackets/OCO",
    "timeInForce": "DAY, GTC, IOC, ...",
    "stopPrice": "Stop trigger price",
    "orderUpdatedTime": "Last modification time",
    "orderCancelledTime": "Cancellation time",
    "accountId": "Brokerage account identifier",
    "orderAccount": "Account name or label",
    "orderRoute": "Routing venue",
    "tags": "Free-form labels",
    "tradeId": "Execution/trade identifier",
}

# Normalized header (lowercase alphanumeric) -> (field, confidence)
HEURISTIC_MAPPINGS: Dict[str, tuple] = {
    "symbol": ("symbol", 0.9),
    "ticker": ("symbol", 0.8),
    "instrument": ("symbol", 0.7),
    "stock": ("symbol", 0.7),
    "side": ("side", 0.9),
    "buysell": ("side", 0.9),
    "bs": ("side", 0.8),
    "action": ("side", 0.7),
    "direction": ("side", 0.6),
    "quantity": ("orderQuantity", 0.9),
    "qty": ("orderQuantity", 0.9),
    "shares": ("orderQuantity", 0.8),
    "filledqty": ("orderQuantity", 0.8),
    "volume": ("orderQuantity", 0.7),
    "amount": ("orderQuantity", 0.6),
    "size": ("orderQuantity", 0.6),
    "price": ("limitPrice", 0.8),
    "limitprice": ("limitPrice", 0.9),
    "limit": ("limitPrice", 0.8),
    "avgprice": ("limitPrice", 0.7),
    "fillprice": ("limitPrice", 0.7),
    "executionprice": ("limitPrice", 0.7),
    "stopprice": ("stopPrice", 0.9),
    "stop": ("stopPrice", 0.8),
    "ordertype": ("orderType", 0.9),
    "type": ("orderType", 0.7),
    "status": ("orderStatus", 0.8),
    "orderstatus": ("orderStatus", 0.9),
    "state": ("orderStatus", 0.7),
    "timeplaced": ("orderPlacedTime", 0.9),
    "placedtime": ("orderPlacedTime", 0.9),
    "ordertime": ("orderPlacedTime", 0.8),
    "submittedtime": ("orderPlacedTime", 0.8),
    "createdtime": ("orderPlacedTime", 0.7),
    "datetime": ("orderPlacedTime", 0.6),
    "time": ("orderPlacedTime", 0.6),
    "date": ("orderPlacedTime", 0.6),
    "exectime": ("orderExecutedTime", 0.9),
    "executedtime": ("orderExecutedTime", 0.9),
    "executiontime": ("orderExecutedTime", 0.9),
    "execdate": ("orderExecutedTime", 0.8),
    "executiondate": ("orderExecutedTime", 0.8),
    "filltime": ("orderExecutedTime", 0.8),
    "filledtime": ("orderExecutedTime", 0.8),
    "filldate": ("orderExecutedTime", 0.8),
    "filleddate": ("orderExecutedTime", 0.8),
    "tradetime": ("orderExecutedTime", 0.7),
    "tradedate": ("orderExecutedTime", 0.7),
    "updatedtime": ("orderUpdatedTime", 0.9),
    "lastmodified": ("orderUpdatedTime", 0.8),
    "modifiedtime": ("orderUpdatedTime", 0.8),
    "cancelledtime": ("orderCancelledTime", 0.9),
    "canceltime": ("orderCancelledTime", 0.8),
    "orderid": ("orderId", 0.9),
    "orderno": ("orderId", 0.8),
    "ordernumber": ("orderId", 0.8),
    "parentorderid": ("parentOrderId", 0.9),
    "parentid": ("parentOrderId", 0.8),
    "tif": ("timeInForce", 0.9),
    "timeinforce": ("timeInForce", 0.9),
    "duration": ("timeInForce", 0.6),
    "account": ("accountId", 0.8),
    "accountid": ("accountId", 0.9),
    "accountnumber": ("accountId", 0.8),
    "accountname": ("orderAccount", 0.8),
    "route": ("orderRoute", 0.8),
    "exchange": ("orderRoute", 0.6),
    "tags": ("tags", 0.8),
    "tradeid": ("tradeId", 0.9),
    "execid": ("tradeId", 0.8),
    "executionid": ("tradeId", 0.8),
}


@dataclass
class InferenceResult:
    mappings: Dict[str, FieldMapping]
    overall_confidence: float
    unmapped_fields: List[str] = field(default_factory=list)
    metadata_fields: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    source: str = "heuristic"


class MappingInference(Protocol):
    def infer(
        self,
        headers: Sequence[str],
        sample_rows: Sequence[Mapping[str, Any]],
        broker_name: Optional[str] = None,
    ) -> InferenceResult:
        ...


def _finalize_result(
    headers: Sequence[str],
    proposals: Mapping[str, Mapping[str, Any]],
    suggestions: List[str],
    source: str,
) -> InferenceResult:
    """Apply the confidence floor, route weak headers to brokerMetadata and score the result."""
    mappings: Dict[str, FieldMapping] = {}
    metadata_fields: List[str] = []

    for header in headers:
        proposal = proposals.get(header)
        if not isinstance(proposal, Mapping):
            proposal = {}
        target = proposal.get("field")
        try:
            confidence = float(proposal.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        confidence = min(max(confidence, 0.0), 1.0)

        if target in ORDER_FIELDS and confidence >= MEDIUM_CONFIDENCE:
            mappings[header] = FieldMapping(
                field=target, confidence=confidence, reasoning=proposal.get("reasoning")
            )
        else:
            metadata_fields.append(header)
            mappings[header] = FieldMapping(
                field=BROKER_METADATA,
                confidence=confidence or 0.1,
                reasoning=proposal.get("reasoning") or "Low confidence mapping - storing in brokerMetadata",
            )

    mapped_fields = {m.field for m in mappings.values()}
    unmapped = [name for name in CRITICAL_FIELDS if name not in mapped_fields]
    if unmapped:
        suggestions = suggestions + [f"No column found for: {', '.join(unmapped)}"]

    return InferenceResult(
        mappings=mappings,
        overall_confidence=calculate_overall_confidence(mappings),
        unmapped_fields=unmapped,
        metadata_fields=metadata_fields,
        suggestions=suggestions,
        source=source,
    )


class HeuristicMappingInference:
    """Lookup-table mapping; used when no LLM is configured and as the LLM fallback."""

    def infer(self, headers, sample_rows, broker_name=None) -> InferenceResult:
        proposals: Dict[str, Dict[str, Any]] = {}
        claimed = set()
        for header in headers:
            match = HEURISTIC_MAPPINGS.get(normalize_column_name(header))
            if not match:
                continue
            target, confidence = match
            # One header per order field; later duplicates go to metadata.
            if target in claimed:
                continue
            claimed.add(target)
            proposals[header] = {
                "field": target,
                "confidence": confidence,
                "reasoning": f"Header name matches common spelling for {target}",
            }

        return _finalize_result(
            headers,
            proposals,
            ["Heuristic mapping used - review low-confidence columns before approving."],
            source="heuristic",
        )


def extract_json_payload(content: str) -> Dict[str, Any]:
    """Pull the JSON object out of a model reply (fenced block or first brace span)."""
    match = re.search(r"```(?:json)?\s*(.*?)\s*```", content, re.DOTALL | re.IGNORECASE)
    if match:
        candidate = match.group(1)
    else:
        match = re.search(r"\{.*\}", content, re.DOTALL)
        candidate = match.group(0) if match else content
    payload = json.loads(candidate)
    if not isinstance(payload, dict):
        raise ValueError("Model reply is not a JSON object")
    return payload


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    return str(content)


def build_mapping_prompt(
    headers: Sequence[str],
    sample_rows: Sequence[Mapping[str, Any]],
    broker_name: Optional[str] = None,
) -> str:
    field_lines = "\n".join(f"- {name}: {ORDER_FIELD_DESCRIPTIONS[name]}" for name in ORDER_FIELDS)
    header_lines = "\n".join(f'{i + 1}. "{header}"' for i, header in enumerate(headers))
    sample_block = ""
    if sample_rows:
        first = sample_rows[0]
        sample_block = "\n\n**SAMPLE DATA (first row):**\n" + "\n".join(
            f'{header}: "{first.get(header, "")}"' for header in headers
        )

    return f"""Map CSV headers exported by {broker_name or 'a trading broker'} to standardized order fields.

**CRITICAL FIELDS (map these first):** {', '.join(CRITICAL_FIELDS)}

**ORDER FIELDS:**
{field_lines}

**CSV HEADERS TO MAP:**
{header_lines}{sample_block}

**RULES:**
- Use only field names from the ORDER FIELDS list.
- Confidence 0.9-1.0 for exact matches, 0.7-0.9 for clear matches, 0.5-0.7 for reasonable guesses.
- Headers that do not fit any field get confidence below 0.5; they will be kept as broker metadata.
- Only use orderExecutedTime when the header mentions exec/execution/fill/trade time; otherwise prefer orderPlacedTime.
- Map each order field at most once.

Reply with JSON only:
```json
{{
  "mappings": {{"CSV_HEADER": {{"field": "orderFieldName", "confidence": 0.95, "reasoning": "short reason"}}}},
  "overallConfidence": 0.85,
  "suggestions": ["notes about the format"]
}}
```"""


class AnthropicMappingInference:
    """Claude-backed mapping with a heuristic safety net."""

    def __init__(self, llm: Any = None, fallback: Optional[MappingInference] = None):
        self._llm = llm
        self._fallback = fallback or HeuristicMappingInference()

    def _get_llm(self):
        if self._llm is None:
            api_key = (settings.anthropic_api_key or "").strip()
            if not api_key:
                raise RuntimeError(
                    "Anthropic API key not configured. Set ANTHROPIC_API_KEY in your environment."
                )
            self._llm = ChatAnthropic(
                model=LLM_MODEL,
                api_key=api_key,
                temperature=0,
                max_tokens=2048,
                timeout=settings.llm_api_timeout,
                max_retries=settings.llm_max_retries,
            )
        return self._llm

    def infer(self, headers, sample_rows, broker_name=None) -> InferenceResult:
        try:
            prompt = build_mapping_prompt(headers, sample_rows, broker_name)
            response = self._get_llm().invoke([HumanMessage(content=prompt)])
            payload = extract_json_payload(_message_text(response.content))
        except Exception as exc:
            logger.warning("LLM mapping failed for %d headers, using heuristics: %s", len(headers), exc)
            result = self._fallback.infer(headers, sample_rows, broker_name)
            result.suggestions.insert(0, "AI mapping unavailable - heuristic mapping used.")
            return result

        proposals = payload.get("mappings") or {}
        if not isinstance(proposals, dict):
            proposals = {}
        suggestions = [str(s) for s in payload.get("suggestions") or []]
        result = _finalize_result(headers, proposals, suggestions, source="anthropic")
        logger.info(
            "LLM mapped %d/%d headers (overall confidence %.2f)",
            len(headers) - len(result.metadata_fields),
            len(headers),
            result.overall_confidence,
        )
        return result


def get_mapping_inference() -> MappingInference:
    """FastAPI dependency: Claude when an API key is configured, heuristics otherwise."""
    if (settings.anthropic_api_key or "").strip():
        return AnthropicMappingInference()
    return HeuristicMappingInference()
