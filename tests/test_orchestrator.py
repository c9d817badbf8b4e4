import asyncio

import pytest
from langchain_core.messages import AIMessage, HumanMessage

from agent.nodes.planner import DEFAULT_RECENCY_FILTER
from agent.orchestrator import AssistantOrchestrator, TurnAbortedError, TurnFailedError, merge_history

from tests.conftest import FakeChatModel, answer, spend_plan, sql_call

TRUST_X_SQL = (
    "SELECT SUM(s.amount) AS total FROM spend_entries s JOIN buyers b ON s.buyer_id = b.id "
    "WHERE b.name ILIKE '%Trust X%' AND s.payment_date >= '2023-01-01' AND s.payment_date < '2024-01-01'"
)


def _user(text):
    return {"role": "user", "content": text}


@pytest.fixture
def make_orchestrator(sql_tool, checkpoint_store, settings, fake_audit):
    def build(llm):
        return AssistantOrchestrator(
            tool=sql_tool,
            checkpoint_store=checkpoint_store,
            settings=settings,
            llm_factory=lambda model=None: llm,
            schema_context="-- schema",
            audit=fake_audit,
        )
    return build


@pytest.mark.asyncio
async def test_total_spend_question_end_to_end(make_orchestrator, checkpoint_store, fake_audit, fake_pool):
    llm = FakeChatModel(
        plans=[spend_plan()],
        responses=[sql_call(TRUST_X_SQL), answer("Trust X spent £1,234,567.89 in 2023.")],
    )

    result = await make_orchestrator(llm).invoke([_user("Total spend for Trust X in 2023")], conversation_id="conv_x")

    assert result.text == "Trust X spent £1,234,567.89 in 2023."
    assert result.conversation_id == "conv_x"
    assert result.request_id.startswith("req_")

    response = result.to_response()
    assert set(response) == {"text", "conversationId", "requestId", "metadata"}
    assert response["metadata"]["tokens"] == {"promptTokens": 450, "completionTokens": 110, "totalTokens": 560}
    assert response["metadata"]["dbTimeMs"] >= 0

    # the query that ran was validated, clamped and date-bounded
    assert "payment_date" in fake_pool.queries[0]
    assert fake_pool.queries[0].endswith("LIMIT 200")

    record, first_user = fake_audit.persisted[0]
    assert record.status == "ok"
    assert first_user == "Total spend for Trust X in 2023"
    assert [c.node for c in record.llm_calls] == ["planner", "executor", "executor"]
    assert len(record.tool_calls) == 1
    assert record.conversation_id == "conv_x"

    checkpoint = await checkpoint_store.load("conv_x")
    assert checkpoint.version == 1
    assert isinstance(checkpoint.messages[0], HumanMessage)
    assert checkpoint.messages[-1].content == result.text


@pytest.mark.asyncio
async def test_undated_question_gets_default_range(make_orchestrator):
    llm = FakeChatModel(
        plans=[spend_plan(filters=["buyers.name ILIKE '%Trust X%'"])],
        responses=[answer("About £2m over the last 12 months.")],
    )

    await make_orchestrator(llm).invoke([_user("How much has Trust X spent?")])

    executor_system = llm.tool_calls[0][0].content
    assert DEFAULT_RECENCY_FILTER in executor_system


@pytest.mark.asyncio
async def test_follow_up_turn_sees_previous_history(make_orchestrator, checkpoint_store):
    llm = FakeChatModel(
        plans=[spend_plan(), spend_plan()],
        responses=[answer("£1.2m."), answer("£0.9m.")],
    )
    orchestrator = make_orchestrator(llm)

    first = await orchestrator.invoke([_user("Total spend for Trust X in 2023")])
    second = await orchestrator.invoke(
        [_user("Total spend for Trust X in 2023"), {"role": "assistant", "content": "£1.2m."}, _user("And 2022?")],
        conversation_id=first.conversation_id,
    )

    assert second.text == "£0.9m."
    assert "And 2022?" in llm.structured_calls[1][1].content

    second_prompt = [m.content for m in llm.tool_calls[1][1:]]
    assert second_prompt == ["Total spend for Trust X in 2023", "£1.2m.", "And 2022?"]

    checkpoint = await checkpoint_store.load(first.conversation_id)
    assert checkpoint.version == 2
    assert [m.content for m in checkpoint.messages] == ["Total spend for Trust X in 2023", "£1.2m.", "And 2022?", "£0.9m."]


@pytest.mark.asyncio
async def test_clarification_is_returned_and_saved(make_orchestrator, checkpoint_store):
    llm = FakeChatModel(plans=[{"canAnswer": False, "clarificationNeeded": "Which trust?"}])

    result = await make_orchestrator(llm).invoke([_user("How much did the trust spend?")], conversation_id="conv_c")

    assert result.text == "Which trust?"
    assert llm.tool_calls == []
    checkpoint = await checkpoint_store.load("conv_c")
    assert isinstance(checkpoint.messages[-1], AIMessage)


@pytest.mark.asyncio
async def test_failed_turn_saves_no_checkpoint(make_orchestrator, checkpoint_store, fake_audit):
    llm = FakeChatModel(plans=[spend_plan()], responses=[sql_call(TRUST_X_SQL), RuntimeError("provider down")])

    with pytest.raises(TurnFailedError) as exc_info:
        await make_orchestrator(llm).invoke([_user("Total spend for Trust X in 2023")], conversation_id="conv_f")

    assert exc_info.value.conversation_id == "conv_f"
    checkpoint = await checkpoint_store.load("conv_f")
    assert checkpoint.version == 0

    record, _ = fake_audit.persisted[0]
    assert record.status == "error"
    assert record.error_message == "provider down"
    # spans gathered before the failure are kept
    assert len(record.llm_calls) == 2
    assert len(record.tool_calls) == 1


@pytest.mark.asyncio
async def test_aborted_turn_saves_nothing(make_orchestrator, checkpoint_store, fake_audit):
    llm = FakeChatModel(plans=[spend_plan()])
    signal = asyncio.Event()
    signal.set()

    with pytest.raises(TurnAbortedError):
        await make_orchestrator(llm).invoke([_user("Total spend")], conversation_id="conv_a", signal=signal)

    assert llm.structured_calls == []
    assert (await checkpoint_store.load("conv_a")).version == 0
    assert fake_audit.persisted[0][0].status == "aborted"


@pytest.mark.asyncio
async def test_abort_during_execution_keeps_planner_span(make_orchestrator, checkpoint_store, fake_audit):
    signal = asyncio.Event()

    def disconnect_then_call(messages):
        signal.set()
        return sql_call(TRUST_X_SQL)

    llm = FakeChatModel(plans=[spend_plan()], responses=[disconnect_then_call])

    with pytest.raises(TurnAbortedError):
        await make_orchestrator(llm).invoke([_user("Total spend for Trust X in 2023")], conversation_id="conv_b", signal=signal)

    assert (await checkpoint_store.load("conv_b")).version == 0
    record, _ = fake_audit.persisted[0]
    assert record.status == "aborted"
    assert [c.node for c in record.llm_calls] == ["planner", "executor"]
    assert record.tokens.prompt_tokens == 300
    assert record.tool_calls[0].error_kind == "aborted"


@pytest.mark.asyncio
async def test_requires_a_user_message(make_orchestrator):
    with pytest.raises(ValueError):
        await make_orchestrator(FakeChatModel()).invoke([{"role": "system", "content": "be nice"}])


def test_merge_history_with_full_transcript():
    prior = [HumanMessage(content="q1"), AIMessage(content="a1")]
    incoming = [HumanMessage(content="q1"), AIMessage(content="a1 (client copy)"), HumanMessage(content="q2")]
    merged = merge_history(prior, incoming)
    assert [m.content for m in merged] == ["q1", "a1", "q2"]


def test_merge_history_with_only_new_question():
    prior = [HumanMessage(content="q1"), AIMessage(content="a1")]
    merged = merge_history(prior, [HumanMessage(content="q2")])
    assert [m.content for m in merged] == ["q1", "a1", "q2"]


def test_merge_history_without_checkpoint():
    incoming = [HumanMessage(content="q1")]
    assert merge_history([], incoming) == incoming
