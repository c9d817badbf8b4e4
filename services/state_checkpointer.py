"""
Conversation state persistence.
A checkpoint is the serialized message history of a conversation plus a
version counter; each turn loads it, appends, and saves it back under the
store's per-conversation atomicity guarantee.
"""
import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional
import structlog
from langchain_core.messages import BaseMessage, messages_from_dict, messages_to_dict
from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert

from db.models import AssistantCheckpoint

logger = structlog.get_logger()


class CheckpointConflictError(Exception):
    """Another turn saved the same conversation first; this turn's update was not applied."""

    def __init__(self, conversation_id: str, expected_version: int):
        super().__init__(
            f"Checkpoint for conversation {conversation_id} changed concurrently (expected version {expected_version})"
        )
        self.conversation_id = conversation_id
        self.expected_version = expected_version


@dataclass
class Checkpoint:
    conversation_id: str
    messages: List[BaseMessage] = field(default_factory=list)
    version: int = 0


def serialize_messages(messages: List[BaseMessage]) -> Dict[str, list]:
    return {"messages": messages_to_dict(messages)}


def deserialize_messages(state: Optional[Dict[str, list]]) -> List[BaseMessage]:
    if not state:
        return []
    return messages_from_dict(state.get("messages") or [])


@dataclass
class _ConversationLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class CheckpointStore:
    """
    Base interface; `conversation()` scopes one turn's read-modify-write.

    Turns on the same conversation in this process run one at a time. A lock
    entry lives only while some turn holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, _ConversationLock] = {}

    @contextlib.asynccontextmanager
    async def conversation(self, conversation_id: str) -> AsyncIterator[None]:
        entry = self._locks.setdefault(conversation_id, _ConversationLock())
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(conversation_id, None)

    async def load(self, conversation_id: str) -> Checkpoint:
        raise NotImplementedError

    async def save(self, conversation_id: str, messages: List[BaseMessage], expected_version: int) -> int:
        raise NotImplementedError

    async def close(self):
        pass


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local store for tests and single-instance development."""

    def __init__(self):
        super().__init__()
        self._states: Dict[str, Checkpoint] = {}

    async def load(self, conversation_id: str) -> Checkpoint:
        stored = self._states.get(conversation_id)
        if stored is None:
            return Checkpoint(conversation_id=conversation_id)
        # Round-trip through the serialized form so callers never share message objects
        return Checkpoint(
            conversation_id=conversation_id,
            messages=deserialize_messages(serialize_messages(stored.messages)),
            version=stored.version,
        )

    async def save(self, conversation_id: str, messages: List[BaseMessage], expected_version: int) -> int:
        current = self._states.get(conversation_id)
        current_version = current.version if current else 0
        if current_version != expected_version:
            raise CheckpointConflictError(conversation_id, expected_version)

        new_version = expected_version + 1
        self._states[conversation_id] = Checkpoint(
            conversation_id=conversation_id,
            messages=deserialize_messages(serialize_messages(messages)),
            version=new_version,
        )
        logger.debug("Checkpoint saved", conversation_id=conversation_id, version=new_version, message_count=len(messages))
        return new_version


class PostgresCheckpointStore(CheckpointStore):
    """
    Checkpoints in the assistant_checkpoints table. Turns within one process
    queue on the conversation lock; across processes writes are optimistic: the
    UPDATE only applies when the stored version still matches the one read at
    the start of the turn, so a concurrent turn can never be silently overwritten.
    """

    def __init__(self, session_factory):
        super().__init__()
        self.session_factory = session_factory

    async def load(self, conversation_id: str) -> Checkpoint:
        async with self.session_factory() as session:
            row = await session.get(AssistantCheckpoint, conversation_id)
            if row is None:
                return Checkpoint(conversation_id=conversation_id)
            return Checkpoint(
                conversation_id=conversation_id,
                messages=deserialize_messages(row.state),
                version=row.version,
            )

    async def save(self, conversation_id: str, messages: List[BaseMessage], expected_version: int) -> int:
        state = serialize_messages(messages)
        new_version = expected_version + 1

        async with self.session_factory() as session:
            if expected_version == 0:
                stmt = (
                    insert(AssistantCheckpoint)
                    .values({
                        AssistantCheckpoint.conversationId: conversation_id,
                        AssistantCheckpoint.state: state,
                        AssistantCheckpoint.version: new_version,
                    })
                    .on_conflict_do_nothing(index_elements=["conversation_id"])
                )
            else:
                stmt = (
                    update(AssistantCheckpoint)
                    .where(
                        AssistantCheckpoint.conversationId == conversation_id,
                        AssistantCheckpoint.version == expected_version,
                    )
                    .values({AssistantCheckpoint.state: state, AssistantCheckpoint.version: new_version})
                )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                logger.warning("Checkpoint version conflict", conversation_id=conversation_id, expected_version=expected_version)
                raise CheckpointConflictError(conversation_id, expected_version)
            await session.commit()

        logger.debug("Checkpoint saved", conversation_id=conversation_id, version=new_version, message_count=len(messages))
        return new_version


def create_checkpoint_store(backend: str, session_factory=None) -> CheckpointStore:
    if backend == "memory":
        logger.info("Using in-memory checkpoint store")
        return InMemoryCheckpointStore()
    if backend == "postgres":
        if session_factory is None:
            raise ValueError("Postgres checkpoint store needs a session factory")
        logger.info("Using Postgres checkpoint store")
        return PostgresCheckpointStore(session_factory)
    raise ValueError(f"Unsupported checkpoint backend: {backend}")
