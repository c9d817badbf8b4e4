import asyncio

import pytest

from services.audit_service import AuditService, conversation_title
from services.usage_tracker import build_usage_record


def test_conversation_title():
    assert conversation_title(None) is None
    assert conversation_title("  Total spend for Trust X  ") == "Total spend for Trust X"
    long = "x" * 80
    assert conversation_title(long) == "x" * 60 + "..."


class RecordingAudit(AuditService):
    def __init__(self):
        self.calls = []

    async def upsert_conversation(self, conversation_id, first_user_message=None):
        self.calls.append(("conversation", conversation_id, first_user_message))
        return True

    async def log_tool_calls(self, conversation_id, request_id, spans):
        self.calls.append(("tool_calls", conversation_id, request_id))
        return True

    async def log_usage_record(self, record):
        self.calls.append(("usage", record.request_id))
        return True


def _record(conversation_id="conv_1"):
    return build_usage_record(
        request_id="req_1",
        conversation_id=conversation_id,
        model="m",
        message_count=1,
        llm_calls=[],
        tool_calls=[],
        total_time_ms=10,
        db_time_ms=0,
    )


@pytest.mark.asyncio
async def test_conversation_row_is_written_before_tool_calls():
    audit = RecordingAudit()
    await audit.persist_turn(_record(), "Total spend")
    assert [c[0] for c in audit.calls] == ["conversation", "tool_calls", "usage"]
    assert audit.calls[0] == ("conversation", "conv_1", "Total spend")


@pytest.mark.asyncio
async def test_usage_without_conversation_skips_tool_calls():
    audit = RecordingAudit()
    await audit.persist_turn(_record(conversation_id=None))
    assert audit.calls == [("usage", "req_1")]


@pytest.mark.asyncio
async def test_background_persistence_runs_to_completion():
    audit = RecordingAudit()
    task = audit.persist_turn_in_background(_record(), "q")
    await asyncio.wait_for(task, timeout=1)
    assert len(audit.calls) == 3
