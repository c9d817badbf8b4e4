"""
Per-turn agent state and the merge rule for each field.

Nodes never mutate the state they are given; they return a partial update
dict and the orchestrator folds it in with `apply_update`.
"""
import operator
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Literal, Optional

from langchain_core.messages import BaseMessage

from agent.models import QueryPlan
from services.usage_tracker import LlmCallSpan, ToolCallSpan

Phase = Literal["planning", "executing", "done"]


def _append(current: list, update: list) -> list:
    return [*current, *update]


def _replace(current: Any, update: Any) -> Any:
    return update


@dataclass
class TurnState:
    messages: List[BaseMessage] = field(default_factory=list, metadata={"reducer": _append})
    plan: Optional[QueryPlan] = field(default=None, metadata={"reducer": _replace})
    phase: Phase = field(default="planning", metadata={"reducer": _replace})
    retry_count: int = field(default=0, metadata={"reducer": _replace})
    db_time_ms: int = field(default=0, metadata={"reducer": operator.add})
    llm_calls: List[LlmCallSpan] = field(default_factory=list, metadata={"reducer": _append})
    tool_calls: List[ToolCallSpan] = field(default_factory=list, metadata={"reducer": _append})


_REDUCERS: Dict[str, Callable[[Any, Any], Any]] = {f.name: f.metadata["reducer"] for f in fields(TurnState)}


def apply_update(state: TurnState, update: Optional[Dict[str, Any]]) -> TurnState:
    """Return a new TurnState with `update` merged field by field."""
    if not update:
        return state

    unknown = set(update) - set(_REDUCERS)
    if unknown:
        raise KeyError(f"Unknown turn state fields: {sorted(unknown)}")

    values = {name: getattr(state, name) for name in _REDUCERS}
    for name, value in update.items():
        values[name] = _REDUCERS[name](values[name], value)
    return TurnState(**values)
