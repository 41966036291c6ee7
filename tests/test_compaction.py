"""Tests for ConversationWindow and ConversationCompactor."""

import asyncio
from datetime import UTC, datetime, timedelta

from conftest import count_summaries
from rememory.conversation.prompts import render_transcript


async def _fill(store, persona_id, count, start=0):
    base = datetime(2026, 1, 1, tzinfo=UTC)
    await store.append_messages(
        persona_id,
        [
            {
                "sender": "user" if i % 2 == 0 else "ai",
                "text": f"message {i}",
                "timestamp": base + timedelta(seconds=i),
            }
            for i in range(start, start + count)
        ],
    )


# ---------------------------------------------------------------------------
# select_prompt_window
# ---------------------------------------------------------------------------


async def test_window_returns_trailing_messages_in_order(window, store, persona):
    await _fill(store, persona.id, 30)

    result = await window.select_prompt_window(persona.id)

    assert [t.content for t in result.history] == [f"message {i}" for i in range(18, 30)]
    assert result.history[0].role == "user"
    assert result.history[1].role == "model"
    assert result.summary is None


async def test_window_excludes_synthetic_triggers(window, store, persona):
    await _fill(store, persona.id, 4)
    await store.append_messages(
        persona.id,
        [
            {"sender": "user", "kind": "synthetic_trigger", "text": "Start the conversation"},
            {"sender": "ai", "text": "Hello again, kiddo."},
        ],
    )

    result = await window.select_prompt_window(persona.id)

    contents = [t.content for t in result.history]
    assert "Start the conversation" not in contents
    assert contents[-1] == "Hello again, kiddo."
    # The trigger is still in the raw log
    assert await store.count_messages(persona.id) == 6


async def test_window_drops_system_messages(window, store, persona):
    await _fill(store, persona.id, 2)
    await store.append_messages(persona.id, [{"sender": "system", "kind": "notice", "text": "notice"}])

    result = await window.select_prompt_window(persona.id)

    assert [t.role for t in result.history] == ["user", "model"]


async def test_window_ties_broken_by_insertion_order(window, store, persona):
    same = datetime(2026, 1, 1, tzinfo=UTC)
    await store.append_messages(
        persona.id,
        [
            {"sender": "user", "text": "first", "timestamp": same},
            {"sender": "ai", "text": "second", "timestamp": same},
        ],
    )

    result = await window.select_prompt_window(persona.id)

    assert [t.content for t in result.history] == ["first", "second"]


async def test_window_includes_latest_summary(window, store, persona):
    await store.insert_summary(persona.id, "older summary")
    await store.insert_summary(persona.id, "newest summary")

    result = await window.select_prompt_window(persona.id)

    assert result.summary == "newest summary"


# ---------------------------------------------------------------------------
# compact_if_needed
# ---------------------------------------------------------------------------


async def test_no_compaction_at_threshold(compactor, store, completion, persona):
    await _fill(store, persona.id, 300)

    assert await compactor.compact_if_needed(persona.id) is False
    assert completion.calls == []
    assert await store.count_messages(persona.id) == 300


async def test_compaction_summarizes_and_prunes(compactor, store, db, completion, window, persona):
    completion.reply = "They spoke about the lake house and promised to keep painting."
    await _fill(store, persona.id, 301)

    assert await compactor.compact_if_needed(persona.id) is True

    assert await store.count_messages(persona.id) == 151
    assert await count_summaries(db, persona.id) == 1
    summary = await store.latest_summary(persona.id)
    assert summary.content == completion.reply

    call = completion.calls[0]
    assert call["temperature"] == 0.3
    assert call["max_tokens"] == 400
    assert "USER: message 0" in call["user_message"]
    assert "AI: message 199" in call["user_message"]
    assert "message 200" not in call["user_message"]

    # Oldest survivor is the first message of the overlap buffer
    oldest = await store.oldest_messages(persona.id, 1)
    assert oldest[0].text == "message 150"

    result = await window.select_prompt_window(persona.id)
    assert [t.content for t in result.history] == [f"message {i}" for i in range(289, 301)]
    assert result.summary == completion.reply


async def test_failed_summary_deletes_nothing(compactor, store, db, completion, persona):
    completion.fail = True
    await _fill(store, persona.id, 301)

    assert await compactor.compact_if_needed(persona.id) is False

    assert await store.count_messages(persona.id) == 301
    assert await count_summaries(db, persona.id) == 0


async def test_background_compaction_retries(compactor, store, completion, persona, settings):
    settings.compaction_max_attempts = 3
    await _fill(store, persona.id, 301)

    attempts = 0
    original = completion.complete

    async def flaky(*args, **kwargs):
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            completion.fail = True
        else:
            completion.fail = False
        return await original(*args, **kwargs)

    completion.complete = flaky

    task = compactor.schedule(persona.id)
    assert task is not None
    assert await task is True
    assert attempts == 2
    assert await store.count_messages(persona.id) == 151


async def test_schedule_coalesces_per_persona(compactor, store, persona):
    await _fill(store, persona.id, 10)

    first = compactor.schedule(persona.id)
    second = compactor.schedule(persona.id)

    assert first is not None
    assert second is None
    await compactor.drain()
    await asyncio.sleep(0)
    assert first.done()


def test_render_transcript():
    class M:
        def __init__(self, sender, text):
            self.sender = sender
            self.text = text

    assert render_transcript([M("user", "hi"), M("ai", "hello")]) == "USER: hi\nAI: hello"
