"""Tests for the session timer and remaining-time helpers."""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import pytest

from rememory.errors import PersonaNotFound
from rememory.lifecycle.timer import compute_remaining_ms, remaining_days


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# compute_remaining_ms / remaining_days
# ---------------------------------------------------------------------------


def test_remaining_ms_none_without_expiry():
    assert compute_remaining_ms(None, NOW) is None


def test_remaining_ms_counts_down():
    assert compute_remaining_ms(NOW + timedelta(seconds=90), NOW) == 90_000


def test_remaining_ms_never_negative():
    assert compute_remaining_ms(NOW - timedelta(days=2), NOW) == 0


def test_remaining_days_rounds_up():
    assert remaining_days(None) is None
    assert remaining_days(0) == 0
    assert remaining_days(1) == 1
    assert remaining_days(86_400_000) == 1
    assert remaining_days(86_400_001) == 2


# ---------------------------------------------------------------------------
# start_session_if_needed
# ---------------------------------------------------------------------------


async def test_first_call_starts_thirty_day_window(timer, store, persona):
    before = datetime.now(UTC)
    assert await timer.start_session_if_needed(persona.id) is True

    row = await store.get_persona(persona.id)
    assert row.started_at >= before
    assert row.expires_at - row.started_at == timedelta(days=30)
    assert row.status == "active"
    assert row.guidance_level == 0


async def test_second_call_is_noop(timer, store, persona):
    await timer.start_session_if_needed(persona.id)
    first = await store.get_persona(persona.id)

    assert await timer.start_session_if_needed(persona.id) is False
    second = await store.get_persona(persona.id)
    assert second.started_at == first.started_at
    assert second.expires_at == first.expires_at


async def test_missing_persona_raises_not_found(timer):
    with pytest.raises(PersonaNotFound):
        await timer.start_session_if_needed(uuid.uuid4())


async def test_claim_timer_only_wins_once(store, persona):
    """The conditional write refuses to overwrite an existing timer."""
    now = datetime.now(UTC)
    async with store.transaction() as session:
        assert await store.claim_timer(persona.id, now, now + timedelta(days=30), session=session)
    async with store.transaction() as session:
        later = now + timedelta(hours=1)
        assert not await store.claim_timer(persona.id, later, later + timedelta(days=30), session=session)

    row = await store.get_persona(persona.id)
    assert row.started_at == now


async def test_concurrent_starts_set_timer_once(timer, store, persona):
    results = await asyncio.gather(
        timer.start_session_if_needed(persona.id),
        timer.start_session_if_needed(persona.id),
    )

    assert sorted(results) == [False, True]
    row = await store.get_persona(persona.id)
    assert row.started_at is not None
    assert row.expires_at - row.started_at == timedelta(days=30)
