from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
from sqlalchemy import String, Boolean, Integer, Text, ForeignKey, DateTime, Numeric, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class AssistantConversation(Base):
    """One row per conversation; title is derived from the first user message"""
    __tablename__ = "assistant_conversations"
    __table_args__ = (
        Index("assistant_conversations_created_at_idx", "created_at"),
        Index("assistant_conversations_updated_at_idx", "updated_at"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    title: Mapped[Optional[str]] = mapped_column(Text)
    createdAt: Mapped[datetime] = mapped_column("created_at", DateTime(timezone=True), default=_utcnow, nullable=False)
    updatedAt: Mapped[datetime] = mapped_column("updated_at", DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    # Relationships
    toolCalls: Mapped[List["AssistantToolCall"]] = relationship("AssistantToolCall", back_populates="conversation", cascade="all, delete-orphan")


class AssistantToolCall(Base):
    """Append-only log of execute_sql invocations, keyed by conversation and request"""
    __tablename__ = "assistant_tool_calls"
    __table_args__ = (
        Index("assistant_tool_calls_conversation_idx", "conversation_id"),
        Index("assistant_tool_calls_request_idx", "request_id"),
        Index("assistant_tool_calls_tool_name_idx", "tool_name"),
        Index("assistant_tool_calls_started_at_idx", "started_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversationId: Mapped[str] = mapped_column("conversation_id", ForeignKey("assistant_conversations.id", ondelete="CASCADE"), nullable=False)
    requestId: Mapped[Optional[str]] = mapped_column("request_id", Text)
    toolName: Mapped[str] = mapped_column("tool_name", Text, nullable=False)
    input: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB)
    output: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB)
    startedAt: Mapped[datetime] = mapped_column("started_at", DateTime(timezone=True), nullable=False)
    finishedAt: Mapped[Optional[datetime]] = mapped_column("finished_at", DateTime(timezone=True))
    durationMs: Mapped[Optional[int]] = mapped_column("duration_ms", Integer)
    success: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    errorMessage: Mapped[Optional[str]] = mapped_column("error_message", Text)

    conversation: Mapped["AssistantConversation"] = relationship("AssistantConversation", back_populates="toolCalls")


class AssistantRequest(Base):
    """Usage record for one assistant turn"""
    __tablename__ = "assistant_requests"
    __table_args__ = (
        Index("assistant_requests_conversation_idx", "conversation_id"),
    )

    requestId: Mapped[str] = mapped_column("request_id", Text, primary_key=True)
    conversationId: Mapped[Optional[str]] = mapped_column("conversation_id", ForeignKey("assistant_conversations.id", ondelete="SET NULL"))
    model: Mapped[Optional[str]] = mapped_column(String(255))
    messageCount: Mapped[Optional[int]] = mapped_column("message_count", Integer)
    totalTimeMs: Mapped[Optional[int]] = mapped_column("total_time_ms", Integer)
    llmTimeMs: Mapped[Optional[int]] = mapped_column("llm_time_ms", Integer)
    dbTimeMs: Mapped[Optional[int]] = mapped_column("db_time_ms", Integer)
    promptTokens: Mapped[Optional[int]] = mapped_column("prompt_tokens", Integer)
    completionTokens: Mapped[Optional[int]] = mapped_column("completion_tokens", Integer)
    totalTokens: Mapped[Optional[int]] = mapped_column("total_tokens", Integer)
    costUsd: Mapped[Optional[float]] = mapped_column("cost_usd", Numeric(12, 8))
    costDetails: Mapped[Optional[Dict[str, Any]]] = mapped_column("cost_details", JSONB)
    llmCalls: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column("llm_calls", JSONB)
    toolCalls: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column("tool_calls", JSONB)
    status: Mapped[str] = mapped_column(String(16), default="ok", nullable=False)
    errorMessage: Mapped[Optional[str]] = mapped_column("error_message", Text)
    createdAt: Mapped[datetime] = mapped_column("created_at", DateTime(timezone=True), default=_utcnow, nullable=False)


class AssistantCheckpoint(Base):
    """Latest serialized message history for a conversation, guarded by a version counter"""
    __tablename__ = "assistant_checkpoints"

    conversationId: Mapped[str] = mapped_column("conversation_id", Text, primary_key=True)
    state: Mapped[Dict[str, Any]] = mapped_column(JSONB, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    updatedAt: Mapped[datetime] = mapped_column("updated_at", DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
