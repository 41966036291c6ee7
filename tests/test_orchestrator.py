"""Tests for TurnOrchestrator.handle_turn."""

import uuid
from datetime import UTC, datetime, timedelta

import pytest

from conftest import count_summaries, days_from_now, set_expiry
from rememory.conversation.prompts import CLOSURE_NOTICE
from rememory.errors import PersonaExpired, PersonaNotFound, UpstreamUnavailable


async def test_first_turn_starts_timer_and_persists_two_messages(orchestrator, store, completion, persona):
    client_id = uuid.uuid4()
    outcome = await orchestrator.handle_turn(
        persona.id, "owner-1", "Hello", client_message_id=client_id
    )

    assert outcome.persona_status == "active"
    assert outcome.remaining_ms > 0
    assert [m.sender for m in outcome.messages] == ["user", "ai"]
    user, ai = outcome.messages
    assert user.text == "Hello"
    assert user.meta["clientMessageId"] == str(client_id)
    assert ai.text == completion.reply
    assert ai.meta == {"llmModel": "fake-model", "llmTokens": 42}

    row = await store.get_persona(persona.id)
    expected = datetime.now(UTC) + timedelta(days=30)
    assert abs((row.expires_at - expected).total_seconds()) < 60
    assert await store.count_messages(persona.id) == 2


async def test_turn_uses_chat_settings_and_persona_prompt(orchestrator, completion, persona):
    await orchestrator.handle_turn(persona.id, "owner-1", "Hello")

    call = completion.calls[0]
    assert call["temperature"] == 0.8
    assert call["max_tokens"] == 400
    assert call["timeout"] == 60.0
    assert call["user_message"] == "Hello"
    assert "Alex" in call["system_prompt"]
    assert "Sibling" in call["system_prompt"]
    assert call["history"] == []


async def test_history_carries_previous_turns(orchestrator, completion, persona):
    await orchestrator.handle_turn(persona.id, "owner-1", "Hello")
    await orchestrator.handle_turn(persona.id, "owner-1", "Do you remember the lake?")

    history = completion.calls[1]["history"]
    assert [(t.role, t.content) for t in history] == [
        ("user", "Hello"),
        ("model", completion.reply),
    ]


async def test_wrong_owner_is_not_found(orchestrator, completion, persona):
    with pytest.raises(PersonaNotFound):
        await orchestrator.handle_turn(persona.id, "someone-else", "Hello")
    assert completion.calls == []


async def test_expired_status_is_terminal(orchestrator, db, store, completion, persona):
    await set_expiry(db, persona.id, days_from_now(-1), status="expired")

    with pytest.raises(PersonaExpired):
        await orchestrator.handle_turn(persona.id, "owner-1", "Hello")
    assert completion.calls == []
    assert await store.count_messages(persona.id) == 0


async def test_past_expiry_detected_at_read_time(orchestrator, db, store, completion, notifier, persona):
    await set_expiry(db, persona.id, days_from_now(-0.1))

    with pytest.raises(PersonaExpired):
        await orchestrator.handle_turn(persona.id, "owner-1", "Hello")

    assert completion.calls == []
    row = await store.get_persona(persona.id)
    assert row.status == "expired"
    assert notifier.calls == [("owner-1", persona.id, "expired", "Alex")]

    # Second attempt: already expired, no second notification
    with pytest.raises(PersonaExpired):
        await orchestrator.handle_turn(persona.id, "owner-1", "Hello?")
    assert len(notifier.calls) == 1


async def test_upstream_failure_writes_nothing(orchestrator, store, completion, persona):
    completion.fail = True

    with pytest.raises(UpstreamUnavailable):
        await orchestrator.handle_turn(persona.id, "owner-1", "Hello")

    assert await store.count_messages(persona.id) == 0


async def test_turn_escalates_guidance_once(orchestrator, db, store, persona):
    await set_expiry(db, persona.id, days_from_now(5))

    first = await orchestrator.handle_turn(persona.id, "owner-1", "Hello")
    second = await orchestrator.handle_turn(persona.id, "owner-1", "Still here")

    assert first.guidance_level == 2
    assert second.guidance_level == 2
    messages = await store.oldest_messages(persona.id, 100)
    assert [m.text for m in messages if m.sender == "system"] == [CLOSURE_NOTICE]


async def test_closure_prompt_after_escalation(orchestrator, db, completion, persona):
    await set_expiry(db, persona.id, days_from_now(5), guidance_level=2)

    await orchestrator.handle_turn(persona.id, "owner-1", "Hello")

    assert "final days" in completion.calls[0]["system_prompt"]


async def test_synthetic_trigger_hidden_from_next_prompt(orchestrator, completion, persona):
    await orchestrator.handle_turn(
        persona.id, "owner-1", "Greet the user warmly", kind="synthetic_trigger"
    )
    await orchestrator.handle_turn(persona.id, "owner-1", "Hi")

    history = completion.calls[1]["history"]
    assert [t.content for t in history] == [completion.reply]


async def test_inline_compaction_reports_summary(orchestrator, store, db, persona):
    await store.append_messages(
        persona.id, [{"sender": "user", "text": f"m{i}"} for i in range(300)]
    )

    outcome = await orchestrator.handle_turn(persona.id, "owner-1", "Hello")

    assert outcome.summary_appended is True
    assert await count_summaries(db, persona.id) == 1
    assert await store.count_messages(persona.id) == 152


async def test_compaction_failure_does_not_fail_turn(orchestrator, store, completion, persona, monkeypatch):
    await store.append_messages(
        persona.id, [{"sender": "user", "text": f"m{i}"} for i in range(300)]
    )

    async def broken(persona_id):
        raise RuntimeError("summary store down")

    monkeypatch.setattr(orchestrator._compactor, "compact_if_needed", broken)
    outcome = await orchestrator.handle_turn(persona.id, "owner-1", "Hello")

    assert outcome.summary_appended is False
    assert len(outcome.messages) == 2


async def test_message_timestamps_use_database_clock(orchestrator, store, persona, monkeypatch):
    class SkewedClock(datetime):
        @classmethod
        def now(cls, tz=None):
            return datetime(2000, 1, 1, tzinfo=UTC)

    monkeypatch.setattr("rememory.conversation.orchestrator.datetime", SkewedClock)

    outcome = await orchestrator.handle_turn(persona.id, "owner-1", "Hello")

    real_now = datetime.now(UTC)
    user, ai = outcome.messages
    assert user.timestamp == ai.timestamp
    assert abs((user.timestamp - real_now).total_seconds()) < 60
