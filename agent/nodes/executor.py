import asyncio
import json
from datetime import date
from typing import Any, Dict, List, Optional

import structlog
from langchain_core.messages import AIMessage, BaseMessage, SystemMessage, ToolMessage

from agent.models import ExecuteSqlSuccess
from agent.nodes.base import BaseNode, NodeInterrupted
from agent.nodes.planner import fallback_plan
from agent.prompts import (
    EXECUTOR_SYSTEM_PROMPT,
    FATAL_TOOL_ERROR,
    ITERATION_LIMIT_RESPONSE,
    REPAIR_INSTRUCTION,
    build_plan_summary,
)
from agent.state import TurnState
from services.usage_tracker import LlmCallSpan, ToolCallSpan
from sql_guard.execute_tool import ExecuteSqlTool

logger = structlog.get_logger()


class ExecutorNode(BaseNode):
    """
    Bounded tool loop: the model issues execute_sql calls until it answers
    without one, the iteration cap is hit, or it gives up after a fatal tool
    result. Tool calls run one at a time, in the order the model listed them.
    """

    node_name = "executor"

    def __init__(
        self,
        llm,
        tool: ExecuteSqlTool,
        schema_context: str,
        model_name: Optional[str] = None,
        max_iterations: int = 5,
        max_retries: int = 2,
        today: Optional[date] = None,
    ):
        super().__init__(llm, model_name=model_name)
        self.tool = tool
        self.schema_context = schema_context
        self.max_iterations = max_iterations
        self.max_retries = max_retries
        self.today = today

    def _system_message(self, state: TurnState) -> SystemMessage:
        plan = state.plan or fallback_plan()
        return SystemMessage(content=EXECUTOR_SYSTEM_PROMPT.format(
            current_date=(self.today or date.today()).isoformat(),
            plan_summary=build_plan_summary(plan),
            schema_context=self.schema_context,
        ))

    async def __call__(self, state: TurnState, signal: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        system = self._system_message(state)
        history = [m for m in state.messages if not isinstance(m, SystemMessage)]
        tool_schemas = [self.tool.tool_schema()]

        new_messages: List[BaseMessage] = []
        llm_calls: List[LlmCallSpan] = []
        tool_spans: List[ToolCallSpan] = []
        db_time_ms = 0
        retry_count = state.retry_count

        def partial_update() -> Dict[str, Any]:
            return {
                "messages": new_messages,
                "llm_calls": llm_calls,
                "tool_calls": tool_spans,
                "db_time_ms": db_time_ms,
                "retry_count": retry_count,
            }

        try:
            answered = False
            for iteration in range(self.max_iterations):
                self.check_abort(signal)

                response, _, span, _ = await self._call_llm([system, *history, *new_messages], tools=tool_schemas)
                llm_calls.append(span)
                new_messages.append(response)

                if not response.tool_calls:
                    logger.info("Executor produced final answer", iteration=iteration + 1)
                    answered = True
                    break

                for call in response.tool_calls:
                    message, db_ms, retry_count = await self._run_tool_call(call, retry_count, signal, tool_spans)
                    db_time_ms += db_ms
                    new_messages.append(message)

            if not answered:
                logger.warning("Executor hit iteration cap", max_iterations=self.max_iterations)
                new_messages.append(AIMessage(content=ITERATION_LIMIT_RESPONSE))

        except Exception as e:
            raise NodeInterrupted(e, partial_update()) from e

        update = partial_update()
        update["phase"] = "done"
        return update

    async def _run_tool_call(
        self,
        call: Dict[str, Any],
        retry_count: int,
        signal: Optional[asyncio.Event],
        tool_spans: List[ToolCallSpan],
    ):
        call_id = call.get("id") or ""
        name = call.get("name")

        if name != self.tool.name:
            logger.warning("Model requested unknown tool", tool_name=name)
            message = ToolMessage(
                content=f"Unknown tool: {name}. The only available tool is {self.tool.name}.",
                tool_call_id=call_id,
                name=name or "unknown",
                status="error",
            )
            return message, 0, retry_count

        invocation = await self.tool.invoke(call.get("args") or {}, signal=signal, record_span=tool_spans.append)
        outcome = invocation.outcome

        if isinstance(outcome, ExecuteSqlSuccess):
            content = json.dumps(outcome.to_tool_content(), default=str)
            return ToolMessage(content=content, tool_call_id=call_id, name=self.tool.name), invocation.db_time_ms, 0

        if retry_count < self.max_retries:
            logger.info("Tool call failed, asking model to repair", kind=outcome.kind, retry=retry_count + 1)
            message = ToolMessage(
                content=REPAIR_INSTRUCTION.format(error=outcome.message),
                tool_call_id=call_id,
                name=self.tool.name,
                status="error",
            )
            return message, invocation.db_time_ms, retry_count + 1

        logger.warning("Tool call failed with retry budget exhausted", kind=outcome.kind)
        message = ToolMessage(
            content=FATAL_TOOL_ERROR.format(error=outcome.message),
            tool_call_id=call_id,
            name=self.tool.name,
            status="error",
            additional_kwargs={"fatal": True},
        )
        return message, invocation.db_time_ms, retry_count
