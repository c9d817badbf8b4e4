"""
Per-turn usage accounting: one span per model call, one span per tool call,
folded into a UsageRecord at the end of the turn.
"""
import hashlib
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
import structlog

logger = structlog.get_logger()

SQL_STORAGE_MODES = ("full", "truncated", "hash", "none")
SQL_TRUNCATE_AT = 800


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def duration_ms(started_at: datetime, ended_at: datetime) -> int:
    return clamp_non_negative_ms(int((ended_at - started_at).total_seconds() * 1000))


def clamp_non_negative_ms(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    return 0 if value < 0 else value


def safe_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return value
    return None


class TokenUsage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt_tokens: int = Field(0, alias="promptTokens")
    completion_tokens: int = Field(0, alias="completionTokens")
    total_tokens: int = Field(0, alias="totalTokens")


class LlmCallSpan(BaseModel):
    node: str
    model: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    duration_ms: Optional[int] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    response_metadata: Dict[str, Any] = Field(default_factory=dict)
    provider_usage: Optional[Dict[str, Any]] = None
    cost_usd: Optional[float] = None
    cost_details: Optional[Dict[str, Any]] = None


class ToolCallSpan(BaseModel):
    tool_name: str
    started_at: str
    ended_at: str
    duration_ms: int
    input: Dict[str, Any] = Field(default_factory=dict)
    output_meta: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    success: bool = True


class UsageRecord(BaseModel):
    request_id: str
    conversation_id: Optional[str] = None
    ts: str = Field(default_factory=lambda: utc_now().isoformat())
    model: Optional[str] = None
    message_count: Optional[int] = None
    status: Literal["ok", "error", "aborted"] = "ok"
    error_message: Optional[str] = None

    total_time_ms: Optional[int] = None
    llm_time_ms: Optional[int] = None
    db_time_ms: Optional[int] = None

    tokens: TokenUsage = Field(default_factory=TokenUsage)
    cost_usd: Optional[float] = None
    cost_details: Optional[Dict[str, Any]] = None

    llm_calls: List[LlmCallSpan] = Field(default_factory=list)
    tool_calls: List[ToolCallSpan] = Field(default_factory=list)


def get_sql_storage_mode(raw: Optional[str]) -> str:
    mode = (raw or "truncated").lower()
    return mode if mode in SQL_STORAGE_MODES else "truncated"


def format_sql_for_storage(sql: str, mode: str) -> Optional[str]:
    """Shape query text for telemetry according to the configured privacy mode."""
    mode = get_sql_storage_mode(mode)
    if mode == "none":
        return None
    if mode == "full":
        return sql
    if mode == "truncated":
        return f"{sql[:SQL_TRUNCATE_AT]}…" if len(sql) > SQL_TRUNCATE_AT else sql
    return f"sha256:{hashlib.sha256(sql.encode('utf-8')).hexdigest()}"


def _usage_from(prompt: Any, completion: Any, total: Any) -> Optional[TokenUsage]:
    prompt_n, completion_n, total_n = safe_number(prompt), safe_number(completion), safe_number(total)
    if prompt_n is None and completion_n is None and total_n is None:
        return None
    prompt_i = int(prompt_n or 0)
    completion_i = int(completion_n or 0)
    return TokenUsage(
        prompt_tokens=prompt_i,
        completion_tokens=completion_i,
        total_tokens=int(total_n) if total_n is not None else prompt_i + completion_i,
    )


def extract_token_usage(message: Any) -> Optional[TokenUsage]:
    """Token counts from a LangChain AIMessage: usage_metadata first, then provider metadata."""
    usage = getattr(message, "usage_metadata", None)
    if usage:
        found = _usage_from(usage.get("input_tokens"), usage.get("output_tokens"), usage.get("total_tokens"))
        if found:
            return found

    meta = getattr(message, "response_metadata", None) or {}
    token_usage = meta.get("token_usage") or meta.get("usage")
    if isinstance(token_usage, dict):
        found = _usage_from(
            token_usage.get("prompt_tokens", token_usage.get("input_tokens")),
            token_usage.get("completion_tokens", token_usage.get("output_tokens")),
            token_usage.get("total_tokens"),
        )
        if found:
            return found

    token_usage = meta.get("tokenUsage")
    if isinstance(token_usage, dict):
        return _usage_from(
            token_usage.get("promptTokens"),
            token_usage.get("completionTokens"),
            token_usage.get("totalTokens"),
        )
    return None


def _find_value_deep(obj: Any, pattern: "re.Pattern[str]") -> Any:
    if not isinstance(obj, dict):
        return None
    for key, value in obj.items():
        if pattern.search(str(key)):
            return value
        if isinstance(value, dict):
            found = _find_value_deep(value, pattern)
            if found is not None:
                return found
    return None


def extract_provider_usage(response_metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Best-effort OpenRouter usage accounting. The shape varies by model and
    provider, so the raw usage object is kept and the cost is looked up in a
    few common places before falling back to a deep key search.
    """
    meta = response_metadata or {}
    usage = meta.get("usage") or meta.get("token_usage") or meta.get("openrouter_usage")
    if usage is None:
        usage = _find_value_deep(meta, re.compile(r"usage", re.I))
    usage_obj = usage if isinstance(usage, dict) else None

    cost_candidate = meta.get("cost")
    if cost_candidate is None and usage_obj:
        cost_candidate = usage_obj.get("cost", usage_obj.get("total_cost"))
    if cost_candidate is None:
        cost_candidate = _find_value_deep(meta, re.compile(r"^(cost|total_cost)$", re.I))

    cost_details = meta.get("cost_details")
    if cost_details is None and usage_obj:
        cost_details = usage_obj.get("cost_details")
    if cost_details is None:
        cost_details = _find_value_deep(meta, re.compile(r"cost_details|costDetails"))

    return {
        "usage": usage_obj,
        "cost_usd": safe_number(cost_candidate),
        "cost_details": cost_details if isinstance(cost_details, dict) else None,
    }


def build_llm_span(
    node: str,
    model: Optional[str],
    message: Any,
    started_at: datetime,
    ended_at: datetime,
) -> LlmCallSpan:
    usage = extract_token_usage(message)
    response_metadata = dict(getattr(message, "response_metadata", None) or {})
    provider = extract_provider_usage(response_metadata)
    return LlmCallSpan(
        node=node,
        model=response_metadata.get("model_name") or model,
        started_at=started_at.isoformat(),
        ended_at=ended_at.isoformat(),
        duration_ms=duration_ms(started_at, ended_at),
        prompt_tokens=usage.prompt_tokens if usage else None,
        completion_tokens=usage.completion_tokens if usage else None,
        total_tokens=usage.total_tokens if usage else None,
        response_metadata=response_metadata,
        provider_usage=provider["usage"],
        cost_usd=provider["cost_usd"],
        cost_details=provider["cost_details"],
    )


def sum_token_usage(usages: Iterable[Optional[TokenUsage]]) -> TokenUsage:
    total = TokenUsage()
    for usage in usages:
        if usage is None:
            continue
        total.prompt_tokens += usage.prompt_tokens
        total.completion_tokens += usage.completion_tokens
        total.total_tokens += usage.total_tokens
    return total


def build_usage_record(
    request_id: str,
    conversation_id: Optional[str],
    model: Optional[str],
    message_count: int,
    llm_calls: List[LlmCallSpan],
    tool_calls: List[ToolCallSpan],
    total_time_ms: int,
    db_time_ms: int,
    status: str = "ok",
    error_message: Optional[str] = None,
) -> UsageRecord:
    """Fold the turn's spans into one record; span order is kept as recorded."""
    tokens = sum_token_usage(
        TokenUsage(
            prompt_tokens=span.prompt_tokens or 0,
            completion_tokens=span.completion_tokens or 0,
            total_tokens=span.total_tokens or 0,
        )
        for span in llm_calls
    )

    costs = [span.cost_usd for span in llm_calls if span.cost_usd is not None]
    cost_details = [span.cost_details for span in llm_calls if span.cost_details]

    record = UsageRecord(
        request_id=request_id,
        conversation_id=conversation_id,
        model=model,
        message_count=message_count,
        status=status,
        error_message=error_message,
        total_time_ms=clamp_non_negative_ms(total_time_ms),
        llm_time_ms=clamp_non_negative_ms(sum(span.duration_ms or 0 for span in llm_calls)),
        db_time_ms=clamp_non_negative_ms(db_time_ms),
        tokens=tokens,
        cost_usd=round(sum(costs), 8) if costs else None,
        cost_details={"calls": cost_details} if cost_details else None,
        llm_calls=list(llm_calls),
        tool_calls=list(tool_calls),
    )
    logger.debug(
        "Usage record built",
        request_id=request_id,
        total_tokens=tokens.total_tokens,
        cost_usd=record.cost_usd,
        llm_calls=len(llm_calls),
        tool_calls=len(tool_calls),
    )
    return record
