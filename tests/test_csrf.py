"""
Tests for the single-use CSRF state guard.
"""

from datetime import datetime, timedelta, timezone

import pytest

from connectors.csrf import CsrfStateGuard
from database.store import InMemoryStore
from utils.errors import StateExpired, StateMismatch


class _Clock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


class TestCsrfStateGuard:
    @pytest.mark.asyncio
    async def test_issue_then_validate(self):
        guard = CsrfStateGuard(InMemoryStore(), ttl_seconds=60)

        nonce = await guard.issue("owner-1", "meta")
        record = await guard.validate(nonce, "owner-1")

        assert record.owner_id == "owner-1"
        assert record.platform == "meta"
        assert len(nonce) >= 32

    @pytest.mark.asyncio
    async def test_second_validation_fails(self):
        guard = CsrfStateGuard(InMemoryStore(), ttl_seconds=60)
        nonce = await guard.issue("owner-1", "meta")
        await guard.validate(nonce, "owner-1")

        with pytest.raises(StateExpired):
            await guard.validate(nonce, "owner-1")

    @pytest.mark.asyncio
    async def test_unknown_or_empty_nonce(self):
        guard = CsrfStateGuard(InMemoryStore(), ttl_seconds=60)

        with pytest.raises(StateMismatch):
            await guard.validate("never-issued", "owner-1")
        with pytest.raises(StateMismatch):
            await guard.validate("", "owner-1")

    @pytest.mark.asyncio
    async def test_owner_mismatch_consumes_nonce(self):
        guard = CsrfStateGuard(InMemoryStore(), ttl_seconds=60)
        nonce = await guard.issue("owner-1", "meta")

        with pytest.raises(StateMismatch):
            await guard.validate(nonce, "owner-2")
        with pytest.raises(StateExpired):
            await guard.validate(nonce, "owner-1")

    @pytest.mark.asyncio
    async def test_expired_nonce(self):
        clock = _Clock()
        guard = CsrfStateGuard(InMemoryStore(), ttl_seconds=60, clock=clock)
        nonce = await guard.issue("owner-1", "meta")

        clock.now += timedelta(seconds=61)

        with pytest.raises(StateExpired):
            await guard.validate(nonce, "owner-1")

    @pytest.mark.asyncio
    async def test_issue_prunes_expired_states(self):
        clock = _Clock()
        store = InMemoryStore()
        guard = CsrfStateGuard(store, ttl_seconds=60, clock=clock)
        stale = await guard.issue("owner-1", "meta")

        clock.now += timedelta(seconds=61)
        fresh = await guard.issue("owner-1", "meta")

        assert list(store._states) == [fresh]
        with pytest.raises(StateMismatch):
            await guard.validate(stale, "owner-1")
