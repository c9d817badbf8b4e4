"""
Audit Service for Direct Database Writes
Best-effort persistence of assistant conversations, tool calls and usage records.
Nothing here is allowed to fail or delay a turn: every write catches, logs and returns.
"""
import asyncio
from typing import Any, Dict, List, Optional, Set
from datetime import datetime, timezone
import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert

from db.session import get_db
from db.models import AssistantConversation, AssistantRequest, AssistantToolCall
from services.usage_tracker import ToolCallSpan, UsageRecord

logger = structlog.get_logger()

TITLE_MAX_CHARS = 60

# Strong references to fire-and-forget writes so they are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


def conversation_title(first_user_message: Optional[str]) -> Optional[str]:
    if not first_user_message:
        return None
    text = first_user_message.strip()
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class AuditService:
    """Service for audit logging with direct database writes"""

    async def upsert_conversation(self, conversation_id: str, first_user_message: Optional[str] = None) -> bool:
        """
        Insert the conversation row on first sight and bump updated_at afterwards.
        The title is only set when the row is created or still has none.
        """
        try:
            title = conversation_title(first_user_message)
            async for session in get_db():
                existing = await session.get(AssistantConversation, conversation_id)
                if existing is None:
                    stmt = insert(AssistantConversation).values(id=conversation_id, title=title)
                    stmt = stmt.on_conflict_do_nothing(index_elements=["id"])
                    await session.execute(stmt)
                else:
                    if not existing.title and title:
                        existing.title = title
                    existing.updatedAt = datetime.now(timezone.utc)
                await session.commit()
                logger.debug("Conversation upserted", conversation_id=conversation_id)
                return True

            logger.warning("get_db() did not yield a session in upsert_conversation")
            return False

        except Exception as e:
            logger.warning("Failed to upsert conversation", error=str(e), conversation_id=conversation_id)
            return False

    async def log_tool_calls(
        self,
        conversation_id: str,
        request_id: Optional[str],
        spans: List[ToolCallSpan],
    ) -> bool:
        """Append one row per tool span, preserving the order they were recorded in."""
        if not spans:
            return True
        try:
            async for session in get_db():
                for span in spans:
                    session.add(AssistantToolCall(
                        conversationId=conversation_id,
                        requestId=request_id,
                        toolName=span.tool_name,
                        input=span.input,
                        output=span.output_meta,
                        startedAt=_parse_ts(span.started_at),
                        finishedAt=_parse_ts(span.ended_at),
                        durationMs=span.duration_ms,
                        success=span.success,
                        errorMessage=span.error,
                    ))
                await session.commit()
                logger.debug("Tool calls logged", conversation_id=conversation_id, count=len(spans))
                return True

            return False

        except Exception as e:
            logger.warning(
                "Failed to log tool calls",
                error=str(e),
                conversation_id=conversation_id,
                request_id=request_id
            )
            return False

    async def log_usage_record(self, record: UsageRecord) -> bool:
        try:
            async for session in get_db():
                session.add(AssistantRequest(
                    requestId=record.request_id,
                    conversationId=record.conversation_id,
                    model=record.model,
                    messageCount=record.message_count,
                    totalTimeMs=record.total_time_ms,
                    llmTimeMs=record.llm_time_ms,
                    dbTimeMs=record.db_time_ms,
                    promptTokens=record.tokens.prompt_tokens,
                    completionTokens=record.tokens.completion_tokens,
                    totalTokens=record.tokens.total_tokens,
                    costUsd=record.cost_usd,
                    costDetails=record.cost_details,
                    llmCalls=[span.model_dump(mode="json") for span in record.llm_calls],
                    toolCalls=[span.model_dump(mode="json") for span in record.tool_calls],
                    status=record.status,
                    errorMessage=record.error_message,
                ))
                await session.commit()
                logger.info(
                    "Usage record persisted",
                    request_id=record.request_id,
                    status=record.status,
                    total_tokens=record.tokens.total_tokens,
                    cost_usd=record.cost_usd
                )
                return True

            return False

        except Exception as e:
            logger.warning("Failed to persist usage record", error=str(e), request_id=record.request_id)
            return False

    async def persist_turn(self, record: UsageRecord, first_user_message: Optional[str] = None) -> None:
        # Conversation row first: tool calls reference it
        if record.conversation_id:
            await self.upsert_conversation(record.conversation_id, first_user_message)
            await self.log_tool_calls(record.conversation_id, record.request_id, record.tool_calls)
        await self.log_usage_record(record)

    def persist_turn_in_background(self, record: UsageRecord, first_user_message: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(self.persist_turn(record, first_user_message))
        _background_tasks.add(task)
        task.add_done_callback(_on_background_done)
        return task

    async def get_tool_calls(self, conversation_id: str, limit: int = 200) -> List[Dict[str, Any]]:
        async for session in get_db():
            stmt = (
                select(AssistantToolCall)
                .where(AssistantToolCall.conversationId == conversation_id)
                .order_by(AssistantToolCall.startedAt, AssistantToolCall.id)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [
                {
                    "id": row.id,
                    "conversationId": row.conversationId,
                    "requestId": row.requestId,
                    "toolName": row.toolName,
                    "input": row.input,
                    "output": row.output,
                    "startedAt": row.startedAt.isoformat() if row.startedAt else None,
                    "finishedAt": row.finishedAt.isoformat() if row.finishedAt else None,
                    "durationMs": row.durationMs,
                    "success": row.success,
                    "errorMessage": row.errorMessage,
                }
                for row in result.scalars().all()
            ]
        return []


def _on_background_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning("Background persistence task failed", error=str(error))


# Global singleton instance
audit_service = AuditService()
