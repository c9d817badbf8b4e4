import asyncio
import re
from datetime import date
from typing import Any, Dict, Optional

import structlog
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from pydantic import ValidationError

from agent.models import QueryPlan
from agent.nodes.base import BaseNode
from agent.prompts import PLANNER_SYSTEM_PROMPT, PLANNER_USER_PROMPT
from agent.state import TurnState
from agent.utils import latest_human_question, message_text, parse_json_content

logger = structlog.get_logger()

DEFAULT_RECENCY_FILTER = "spend_entries.payment_date >= CURRENT_DATE - INTERVAL '12 months'"
DEFAULT_CLARIFICATION = "Could you clarify which organisation and time period you are interested in?"


def fallback_plan() -> QueryPlan:
    """Conservative plan used when the model's plan cannot be parsed."""
    return QueryPlan(
        can_answer=True,
        tables=["spend_entries", "buyers", "suppliers"],
        columns=[],
        metrics=[],
        filters=[DEFAULT_RECENCY_FILTER],
        joins=[
            "spend_entries.buyer_id = buyers.id",
            "spend_entries.supplier_id = suppliers.id",
        ],
        reasoning="Fallback plan: query recent spend with buyer and supplier names.",
    )


def _bare_table(name: str) -> str:
    return name.strip().strip('"').split(".")[-1].strip('"').lower()


def ensure_fact_table_filter(plan: QueryPlan, fact_table: str = "spend_entries") -> QueryPlan:
    """Add the default recency filter to a plan that reads the fact table without a payment_date predicate."""
    if not plan.can_answer:
        return plan
    if fact_table not in {_bare_table(t) for t in plan.tables}:
        return plan
    if any(re.search(r"\bpayment_date\b", f, re.IGNORECASE) for f in plan.filters):
        return plan

    logger.info("Plan reads fact table without a date filter, adding default range", fact_table=fact_table)
    recency = DEFAULT_RECENCY_FILTER.replace("spend_entries.", f"{fact_table}.")
    return plan.model_copy(update={"filters": [*plan.filters, recency]})


def _coerce_plan(parsed: Any) -> Optional[QueryPlan]:
    if isinstance(parsed, QueryPlan):
        return parsed
    if isinstance(parsed, dict):
        try:
            return QueryPlan.model_validate(parsed)
        except ValidationError as e:
            logger.warning("Plan failed schema validation", error=str(e))
    return None


class PlannerNode(BaseNode):
    """Turns the latest question into a QueryPlan, or a clarification that ends the turn."""

    node_name = "planner"

    def __init__(
        self,
        llm,
        schema_context: str,
        model_name: Optional[str] = None,
        fact_table: str = "spend_entries",
        today: Optional[date] = None,
    ):
        super().__init__(llm, model_name=model_name)
        self.schema_context = schema_context
        self.fact_table = fact_table
        self.today = today

    async def __call__(self, state: TurnState, signal: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        self.check_abort(signal)

        question = latest_human_question(state.messages)
        system_prompt = PLANNER_SYSTEM_PROMPT.format(
            current_date=(self.today or date.today()).isoformat(),
            schema_context=self.schema_context,
        )
        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=PLANNER_USER_PROMPT.format(question=question)),
        ]

        parsed, raw, span, parsing_error = await self._call_llm(messages, structured_model=QueryPlan)

        plan = _coerce_plan(parsed)
        if plan is None:
            # Some models answer with fenced JSON instead of a tool call
            plan = _coerce_plan(parse_json_content(message_text(raw)))
        if plan is None:
            logger.warning(
                "Planner output could not be parsed, using fallback plan",
                parsing_error=str(parsing_error) if parsing_error else None,
                raw_content=str(getattr(raw, "content", ""))[:200],
            )
            plan = fallback_plan()

        plan = ensure_fact_table_filter(plan, self.fact_table)

        if not plan.can_answer:
            clarification = (plan.clarification_needed or "").strip() or DEFAULT_CLARIFICATION
            logger.info("Planner requested clarification", clarification=clarification[:100])
            return {
                "plan": plan,
                "phase": "done",
                "messages": [AIMessage(content=clarification)],
                "llm_calls": [span],
            }

        logger.info("Plan created", tables=plan.tables, filters=plan.filters)
        return {
            "plan": plan,
            "phase": "executing",
            "llm_calls": [span],
        }
