"""
Chat Stream Orchestrator tests - one turn end to end against the real
ledger and store, with a scripted upstream.
"""

import asyncio
import uuid

import pytest

from app.db import ExecutionType, MessageRole
from app.errors import (
    BadRequest, Forbidden, InsufficientCredits, ModelRequiresUpgrade, StorageError, UnknownModel,
)
from app.services.chat_orchestrator import ChatOrchestrator, TurnState
from app.services.credit_ledger import ReservationState, get_credit_ledger
from app.services.execution_query import get_execution_query_service
from app.services.execution_store import get_execution_store
from app.services.model_gateway import ModelGateway

from conftest import FREE_MODEL, PREMIUM_MODEL, ScriptedProvider, parse_events, scripted_registry


async def run_turn(orchestrator, user, message="Hello there", model=FREE_MODEL, conversation_id=None):
    """Open and stream a turn; returns the session and the decoded events."""
    session = await orchestrator.open_turn(user.id, message, model, conversation_id=conversation_id)
    frames = [frame async for frame in orchestrator.start(session)]
    await session.task
    return session, parse_events("".join(frames))


async def transcript(execution_id):
    return [(m.role, m.content) for m in await get_execution_store().list_messages(execution_id)]


async def balance(user):
    return await get_credit_ledger().get_balance(user.id)


# ── Completed turns ───────────────────────────────────

@pytest.mark.asyncio
async def test_completed_turn(orchestrator, make_user):
    user = await make_user(credits=5)

    session, events = await run_turn(orchestrator, user)

    assert session.state is TurnState.COMPLETED
    assert session.reservation.state is ReservationState.COMMITTED
    assert events[0] == {"conversationId": session.execution_id, "model": FREE_MODEL}
    assert [e["content"] for e in events if "content" in e] == ["Hello", ", ", "world!"]
    assert events[-2] == {
        "done": True,
        "conversationId": session.execution_id,
        "messageId": session.agent_message_id,
    }
    assert events[-1] == "[DONE]"
    assert await balance(user) == 4
    assert await transcript(session.execution_id) == [
        ("user", "Hello there"),
        ("agent", "Hello, world!"),
    ]


@pytest.mark.asyncio
async def test_five_credits_buy_five_turns(orchestrator, make_user):
    user = await make_user(credits=5)
    conversation_id = str(uuid.uuid4())

    for _ in range(5):
        session, events = await run_turn(orchestrator, user, conversation_id=conversation_id)
        assert events[-2]["done"] is True

    with pytest.raises(InsufficientCredits):
        await orchestrator.open_turn(user.id, "one more", FREE_MODEL, conversation_id=conversation_id)

    assert await balance(user) == 0
    messages = await transcript(conversation_id)
    assert len(messages) == 10
    assert [role for role, _ in messages] == ["user", "agent"] * 5


@pytest.mark.asyncio
async def test_history_is_sent_upstream(orchestrator, provider, make_user):
    user = await make_user(credits=5)
    first, _ = await run_turn(orchestrator, user, message="First question")

    await run_turn(orchestrator, user, message="Second question", conversation_id=first.execution_id)

    assert provider.calls[-1]["messages"] == [
        {"role": "user", "content": "First question"},
        {"role": "assistant", "content": "Hello, world!"},
        {"role": "user", "content": "Second question"},
    ]


@pytest.mark.asyncio
async def test_concurrent_turns_on_one_conversation_take_turns(orchestrator, provider, make_user):
    provider.delay = 0.05
    user = await make_user(credits=5)
    conversation_id = str(uuid.uuid4())
    first = await orchestrator.open_turn(user.id, "question A", FREE_MODEL, conversation_id=conversation_id)
    second = await orchestrator.open_turn(user.id, "question B", FREE_MODEL, conversation_id=conversation_id)

    await asyncio.gather(orchestrator.run(first), orchestrator.run(second))

    assert first.state is TurnState.COMPLETED
    assert second.state is TurnState.COMPLETED
    messages = await transcript(conversation_id)
    assert [role for role, _ in messages] == ["user", "agent", "user", "agent"]
    assert {messages[0][1], messages[2][1]} == {"question A", "question B"}
    assert [m["role"] for m in provider.calls[1]["messages"]] == ["user", "assistant", "user"]
    assert await balance(user) == 3


@pytest.mark.asyncio
async def test_premium_user_uses_premium_model_for_free(orchestrator, make_user):
    user = await make_user(credits=0, is_premium=True)

    session, events = await run_turn(orchestrator, user, model=PREMIUM_MODEL)

    assert session.state is TurnState.COMPLETED
    assert await balance(user) == 0


# ── Rejected before streaming ─────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize("message,model,conversation_id,error", [
    ("   ", FREE_MODEL, None, BadRequest),
    ("hi", None, None, BadRequest),
    ("hi", FREE_MODEL, "not-a-uuid", BadRequest),
    ("hi", "nonexistent/model", None, UnknownModel),
    ("hi", PREMIUM_MODEL, None, ModelRequiresUpgrade),
])
async def test_rejected_turn_has_no_side_effects(
    orchestrator, provider, make_user, message, model, conversation_id, error,
):
    user = await make_user(credits=5)

    with pytest.raises(error):
        await orchestrator.open_turn(user.id, message, model, conversation_id=conversation_id)

    assert await balance(user) == 5
    assert await get_execution_query_service().list_summaries(user.id) == []
    assert provider.calls == []


@pytest.mark.asyncio
async def test_message_length_limit(orchestrator, make_user):
    user = await make_user(credits=5)
    with pytest.raises(BadRequest):
        await orchestrator.open_turn(user.id, "x" * 20, FREE_MODEL, max_chars=10)


@pytest.mark.asyncio
async def test_other_users_conversation(orchestrator, make_user):
    owner = await make_user(credits=5)
    intruder = await make_user(credits=5)
    session, _ = await run_turn(orchestrator, owner)

    with pytest.raises(Forbidden):
        await orchestrator.open_turn(intruder.id, "hi", FREE_MODEL, conversation_id=session.execution_id)

    assert await balance(intruder) == 5


@pytest.mark.asyncio
async def test_out_of_credits_never_reaches_upstream(orchestrator, provider, make_user):
    user = await make_user(credits=0)

    with pytest.raises(InsufficientCredits):
        await orchestrator.open_turn(user.id, "hi", FREE_MODEL)

    assert provider.calls == []


# ── Failures after streaming started ──────────────────

@pytest.mark.asyncio
async def test_failure_without_output_refunds(orchestrator, provider, make_user):
    provider.fail_at = 0
    user = await make_user(credits=5)

    session, events = await run_turn(orchestrator, user)

    assert session.state is TurnState.FAILED
    assert session.reservation.state is ReservationState.REFUNDED
    assert await balance(user) == 5
    assert await transcript(session.execution_id) == [("user", "Hello there")]
    assert events[-2] == {"error": "scripted failure", "code": "upstream_error"}
    assert events[-1] == "[DONE]"


@pytest.mark.asyncio
async def test_failure_with_partial_output_keeps_it(orchestrator, provider, make_user):
    provider.fail_at = 2
    user = await make_user(credits=5)

    session, events = await run_turn(orchestrator, user)

    assert session.state is TurnState.FAILED
    assert session.reservation.state is ReservationState.COMMITTED
    assert await balance(user) == 4
    assert await transcript(session.execution_id) == [
        ("user", "Hello there"),
        ("agent", "Hello, "),
    ]
    assert events[-2]["code"] == "upstream_error"
    assert events[-2]["partial"] is True
    assert sum(1 for e in events if isinstance(e, dict) and ("done" in e or "error" in e)) == 1


@pytest.mark.asyncio
async def test_idle_timeout_keeps_partial_output(make_user):
    class StallingProvider(ScriptedProvider):
        async def stream(self, model, messages, system=None):
            yield "partial"
            await asyncio.sleep(10)
            yield "never"

    stalling = StallingProvider()
    gateway = ModelGateway({stalling.name: stalling}, registry=scripted_registry(), idle_timeout=0.1)
    orchestrator = ChatOrchestrator(gateway=gateway, credit_cost=1)
    user = await make_user(credits=5)
    session = await orchestrator.open_turn(user.id, "hi", FREE_MODEL)

    frames = [frame async for frame in orchestrator.start(session)]
    await session.task
    events = parse_events("".join(frames))

    assert session.state is TurnState.FAILED
    assert session.error.code == "upstream_timeout"
    assert events[-2]["code"] == "upstream_timeout"
    assert events[-2]["partial"] is True
    assert await transcript(session.execution_id) == [("user", "hi"), ("agent", "partial")]
    assert await balance(user) == 4


@pytest.mark.asyncio
async def test_storage_failure_is_reported(orchestrator, make_user, monkeypatch):
    user = await make_user(credits=5)
    store = orchestrator.store
    original_append = store.append_message

    async def failing_append(execution_id, role, content, model_used=None):
        if role is MessageRole.AGENT:
            raise StorageError("disk full")
        return await original_append(execution_id, role, content, model_used)

    monkeypatch.setattr(store, "append_message", failing_append)

    session, events = await run_turn(orchestrator, user)

    assert session.state is TurnState.FAILED
    assert events[-2] == {"error": "disk full", "code": "storage_error"}
    assert await transcript(session.execution_id) == [("user", "Hello there")]


# ── Client disconnect ─────────────────────────────────

@pytest.mark.asyncio
async def test_disconnect_still_persists_full_reply(orchestrator, provider, make_user):
    provider.delay = 0.05
    user = await make_user(credits=5)
    session = await orchestrator.open_turn(user.id, "Hello there", FREE_MODEL)

    relay = orchestrator.start(session)
    await relay.__anext__()  # conversation frame
    await relay.__anext__()  # first content frame
    await relay.aclose()

    assert session.client_gone.is_set()
    await asyncio.wait_for(session.task, timeout=5)

    assert session.state is TurnState.COMPLETED
    assert await balance(user) == 4
    assert await transcript(session.execution_id) == [
        ("user", "Hello there"),
        ("agent", "Hello, world!"),
    ]


@pytest.mark.asyncio
async def test_run_without_client(orchestrator, make_user):
    user = await make_user(credits=1)
    session = await orchestrator.open_turn(user.id, "Summarize", FREE_MODEL)

    await orchestrator.run(session)

    assert session.state is TurnState.COMPLETED
    assert session.outbox.get_nowait() is None


@pytest.mark.asyncio
async def test_article_summary_turn(orchestrator, provider, make_user):
    user = await make_user(credits=1)
    session = await orchestrator.open_turn(
        user.id,
        "A long article.",
        FREE_MODEL,
        execution_type=ExecutionType.ARTICLE_SUMMARIZER,
        system="Summarize",
    )

    await orchestrator.run(session)

    summaries = await get_execution_query_service().list_summaries(user.id, ExecutionType.ARTICLE_SUMMARIZER)
    assert [s.id for s in summaries] == [session.execution_id]
    assert provider.calls[0]["system"] == "Summarize"


# ── Shutdown ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_wait_idle_lets_turns_finish(orchestrator, provider, make_user):
    provider.delay = 0.02
    user = await make_user(credits=5)
    session = await orchestrator.open_turn(user.id, "hi", FREE_MODEL)
    orchestrator.start(session)

    cancelled = await orchestrator.wait_idle(timeout=5)

    assert cancelled == 0
    assert orchestrator.active_turns == 0
    assert session.state is TurnState.COMPLETED


@pytest.mark.asyncio
async def test_wait_idle_cancels_stragglers_and_settles_them(orchestrator, provider, make_user):
    provider.delay = 0.2
    user = await make_user(credits=5)
    session = await orchestrator.open_turn(user.id, "hi", FREE_MODEL)
    session.client_gone.set()
    orchestrator.start(session)
    await asyncio.sleep(0.3)  # first fragment produced

    cancelled = await orchestrator.wait_idle(timeout=0.05)

    assert cancelled == 1
    assert session.state is TurnState.FAILED
    assert await transcript(session.execution_id) == [("user", "hi"), ("agent", "Hello")]
    assert await balance(user) == 4
