"""
Tests for the in-memory LeadStore.
"""

from datetime import timedelta

import pytest

from database.store import InMemoryStore
from utils.schemas import CampaignRef, CsrfState, Lead, utcnow


def _lead(external_id="L1", email="a@b.io", platform="meta"):
    return Lead(
        external_id=external_id,
        email=email,
        source_platform=platform,
        campaign_ref=CampaignRef(account_id="act_1", form_id="f1"),
    )


class TestLeads:
    @pytest.mark.asyncio
    async def test_upsert_reports_creation_then_updates(self):
        store = InMemoryStore()

        assert await store.upsert_lead("owner-1", _lead()) is True
        assert await store.upsert_lead("owner-1", _lead(email="new@b.io")) is False

        (lead,) = await store.list_leads("owner-1")
        assert lead.email == "new@b.io"

    @pytest.mark.asyncio
    async def test_same_vendor_lead_for_two_owners(self):
        store = InMemoryStore()

        assert await store.upsert_lead("owner-1", _lead()) is True
        assert await store.upsert_lead("owner-2", _lead()) is True
        assert len(await store.list_leads("owner-1")) == 1
        assert await store.get_lead("owner-2", "meta", "L1") is not None

    @pytest.mark.asyncio
    async def test_list_filters_by_platform(self):
        store = InMemoryStore()
        await store.upsert_lead("owner-1", _lead("L1", platform="meta"))
        await store.upsert_lead("owner-1", _lead("L2", platform="other"))

        assert [l.external_id for l in await store.list_leads("owner-1", "meta")] == ["L1"]


class TestCsrfStates:
    @pytest.mark.asyncio
    async def test_take_marks_consumed(self):
        store = InMemoryStore()
        now = utcnow()
        await store.put_csrf_state(
            CsrfState(nonce="n", owner_id="o", platform="meta", issued_at=now, expires_at=now + timedelta(minutes=5))
        )

        first = await store.take_csrf_state("n")
        second = await store.take_csrf_state("n")

        assert first.consumed_at is None
        assert second.consumed_at is not None
        assert await store.take_csrf_state("missing") is None

    @pytest.mark.asyncio
    async def test_prune_removes_only_expired_states(self):
        store = InMemoryStore()
        now = utcnow()
        for nonce, ttl in (("old", -1), ("live", 5)):
            await store.put_csrf_state(
                CsrfState(
                    nonce=nonce,
                    owner_id="o",
                    platform="meta",
                    issued_at=now - timedelta(minutes=10),
                    expires_at=now + timedelta(minutes=ttl),
                )
            )

        assert await store.prune_csrf_states(now) == 1
        assert await store.take_csrf_state("old") is None
        assert (await store.take_csrf_state("live")).owner_id == "o"


class TestReturnedCopies:
    @pytest.mark.asyncio
    async def test_mutating_a_returned_lead_does_not_change_the_store(self):
        store = InMemoryStore()
        await store.upsert_lead("owner-1", _lead("L1", email="a@b.io"))

        fetched = await store.get_lead("owner-1", "meta", "L1")
        fetched.email = "changed@b.io"
        fetched.raw_fields["note"] = "edited"
        (listed,) = await store.list_leads("owner-1")
        listed.campaign_ref.form_id = "other"

        stored = await store.get_lead("owner-1", "meta", "L1")
        assert stored.email == "a@b.io"
        assert stored.raw_fields == {}
        assert stored.campaign_ref.form_id == "f1"
