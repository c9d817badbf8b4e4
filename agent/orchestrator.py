"""
Runs one assistant turn: load the conversation checkpoint, plan, execute,
save, and fold the turn's spans into a usage record.

Phases run planning -> executing -> done, or planning -> done when the
planner asks for clarification.
"""
import asyncio
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import structlog
from structlog.contextvars import bound_contextvars
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from agent.llm import get_llm
from agent.models import TokenTotals, TurnMetadata, TurnResult
from agent.nodes.base import NodeInterrupted
from agent.nodes.executor import ExecutorNode
from agent.nodes.planner import PlannerNode
from agent.schema_context import get_schema_context
from agent.state import TurnState, apply_update
from agent.utils import final_ai_text, message_text, to_langchain_messages
from services.state_checkpointer import CheckpointStore
from services.usage_tracker import UsageRecord, build_usage_record
from sql_guard.errors import QueryAbortedError
from sql_guard.execute_tool import ExecuteSqlTool

logger = structlog.get_logger()

NO_RESPONSE_TEXT = "No response produced."


class TurnError(Exception):
    def __init__(self, message: str, conversation_id: str, request_id: str, usage_record: Optional[UsageRecord] = None):
        super().__init__(message)
        self.conversation_id = conversation_id
        self.request_id = request_id
        self.usage_record = usage_record


class TurnFailedError(TurnError):
    """Unrecoverable turn failure (model API, checkpoint store, configuration)."""


class TurnAbortedError(TurnError):
    """The caller's abort signal fired; nothing from the turn was saved."""


def new_conversation_id() -> str:
    return f"conv_{uuid.uuid4().hex}"


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


def merge_history(prior: List[BaseMessage], incoming: List[BaseMessage]) -> List[BaseMessage]:
    """
    Combine the checkpointed history with the messages sent for this turn.

    Clients may resend the whole transcript or only the new question. Human
    messages already present in the checkpoint (matched by position and text)
    are skipped; if the transcript does not line up, only the latest human
    message is taken as new.
    """
    incoming = [m for m in incoming if not isinstance(m, SystemMessage)]
    if not prior:
        return incoming

    prior_humans = [message_text(m) for m in prior if isinstance(m, HumanMessage)]
    incoming_humans = [m for m in incoming if isinstance(m, HumanMessage)]

    if (
        len(incoming_humans) > len(prior_humans)
        and [message_text(m) for m in incoming_humans[:len(prior_humans)]] == prior_humans
    ):
        new_humans = incoming_humans[len(prior_humans):]
    else:
        new_humans = incoming_humans[-1:]

    return [*prior, *new_humans]


class AssistantOrchestrator:
    """Entry point for a turn; resources (tool, checkpoint store, persistence) are injected."""

    def __init__(
        self,
        tool: ExecuteSqlTool,
        checkpoint_store: CheckpointStore,
        settings,
        llm_factory: Callable[..., Any] = get_llm,
        schema_context: Optional[str] = None,
        audit=None,
    ):
        self.tool = tool
        self.checkpoint_store = checkpoint_store
        self.settings = settings
        self.llm_factory = llm_factory
        self.schema_context = schema_context if schema_context is not None else get_schema_context(settings.schema_snapshot_path)
        self.audit = audit

    def _build_nodes(self, llm, model_name: str):
        planner = PlannerNode(
            llm,
            schema_context=self.schema_context,
            model_name=model_name,
            fact_table=self.settings.sql_fact_table,
        )
        executor = ExecutorNode(
            llm,
            tool=self.tool,
            schema_context=self.schema_context,
            model_name=model_name,
            max_iterations=self.settings.agent_max_iterations,
            max_retries=self.settings.agent_max_retries,
        )
        return planner, executor

    async def invoke(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        conversation_id: Optional[str] = None,
        request_id: Optional[str] = None,
        signal: Optional[asyncio.Event] = None,
    ) -> TurnResult:
        conversation_id = conversation_id or new_conversation_id()
        request_id = request_id or new_request_id()
        model_name = model or self.settings.ai_model

        incoming = to_langchain_messages(messages)
        if not any(isinstance(m, HumanMessage) for m in incoming):
            raise ValueError("At least one user message is required")

        with bound_contextvars(request_id=request_id, conversation_id=conversation_id):
            logger.info("Assistant turn started", model=model_name, message_count=len(incoming))
            start = time.monotonic()
            state = TurnState()
            prior_count = 0

            try:
                llm = self.llm_factory(model=model_name)
                planner, executor = self._build_nodes(llm, model_name)

                async with self.checkpoint_store.conversation(conversation_id):
                    checkpoint = await self.checkpoint_store.load(conversation_id)
                    merged = merge_history(checkpoint.messages, incoming)
                    prior_count = len(merged)
                    state = TurnState(messages=merged)

                    # Updates fold into the turn state itself so a NodeInterrupted keeps earlier spans
                    state = apply_update(state, await planner(state, signal=signal))
                    if state.phase == "executing":
                        state = apply_update(state, await executor(state, signal=signal))

                    await self.checkpoint_store.save(conversation_id, state.messages, checkpoint.version)

            except asyncio.CancelledError:
                self._finish(state, start, request_id, conversation_id, model_name, len(incoming), "aborted", "Turn cancelled")
                raise
            except Exception as e:
                error = e
                if isinstance(e, NodeInterrupted):
                    state = apply_update(state, e.update)
                    error = e.error

                if isinstance(error, QueryAbortedError):
                    record = self._finish(state, start, request_id, conversation_id, model_name, len(incoming), "aborted", str(error))
                    logger.info("Assistant turn aborted")
                    raise TurnAbortedError(str(error), conversation_id, request_id, record) from error

                record = self._finish(state, start, request_id, conversation_id, model_name, len(incoming), "error", str(error))
                logger.error("Assistant turn failed", error=str(error), error_type=type(error).__name__)
                raise TurnFailedError(str(error), conversation_id, request_id, record) from error

            record = self._finish(state, start, request_id, conversation_id, model_name, len(incoming), "ok", None)
            text = final_ai_text(state.messages[prior_count:]) or NO_RESPONSE_TEXT

            logger.info(
                "Assistant turn complete",
                total_time_ms=record.total_time_ms,
                llm_time_ms=record.llm_time_ms,
                db_time_ms=record.db_time_ms,
                total_tokens=record.tokens.total_tokens,
            )

            return TurnResult(
                text=text,
                conversation_id=conversation_id,
                request_id=request_id,
                metadata=TurnMetadata(
                    total_time_ms=record.total_time_ms or 0,
                    llm_time_ms=record.llm_time_ms or 0,
                    db_time_ms=record.db_time_ms or 0,
                    tokens=TokenTotals(
                        prompt_tokens=record.tokens.prompt_tokens,
                        completion_tokens=record.tokens.completion_tokens,
                        total_tokens=record.tokens.total_tokens,
                    ),
                    cost_usd=record.cost_usd,
                ),
                usage_record=record,
            )

    def _finish(
        self,
        state: TurnState,
        start: float,
        request_id: str,
        conversation_id: str,
        model_name: str,
        message_count: int,
        status: str,
        error_message: Optional[str],
    ) -> UsageRecord:
        record = build_usage_record(
            request_id=request_id,
            conversation_id=conversation_id,
            model=model_name,
            message_count=message_count,
            llm_calls=state.llm_calls,
            tool_calls=state.tool_calls,
            total_time_ms=int((time.monotonic() - start) * 1000),
            db_time_ms=state.db_time_ms,
            status=status,
            error_message=error_message,
        )
        if self.audit is not None:
            first_user = next((message_text(m) for m in state.messages if isinstance(m, HumanMessage)), None)
            try:
                self.audit.persist_turn_in_background(record, first_user)
            except Exception as e:
                logger.warning("Failed to schedule usage persistence", error=str(e))
        return record
