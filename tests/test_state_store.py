"""Tests for the OAuth state store."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.integrations.xero.exceptions import ExpiredStateError, InvalidStateError
from app.integrations.xero.state_store import OAuthStateStore
from app.models.xero_oauth_state import XeroOAuthState


async def _age_state(session, state: str, minutes: int) -> None:
    record = await session.get(XeroOAuthState, state)
    record.created_at = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    await session.commit()


class TestOAuthStateStore:
    """State tokens map to one company and are single use."""

    async def test_consume_returns_owner(self, db_session):
        store = OAuthStateStore(db_session)
        await store.save_state("state-abc", 7)
        assert await store.consume_state("state-abc") == 7

    async def test_state_is_single_use(self, db_session):
        store = OAuthStateStore(db_session)
        await store.save_state("state-abc", 7)
        await store.consume_state("state-abc")
        with pytest.raises(InvalidStateError):
            await store.consume_state("state-abc")

    async def test_unknown_state_rejected(self, db_session):
        with pytest.raises(InvalidStateError):
            await OAuthStateStore(db_session).consume_state("never-issued")

    async def test_empty_state_rejected(self, db_session):
        with pytest.raises(InvalidStateError):
            await OAuthStateStore(db_session).consume_state("")

    async def test_expired_state_rejected_and_deleted(self, db_session):
        store = OAuthStateStore(db_session)
        await store.save_state("old-state", 7)
        await _age_state(db_session, "old-state", 11)

        with pytest.raises(ExpiredStateError):
            await store.consume_state("old-state")
        with pytest.raises(InvalidStateError):
            await store.consume_state("old-state")

    async def test_state_within_lifetime_accepted(self, db_session):
        store = OAuthStateStore(db_session)
        await store.save_state("fresh-state", 7)
        await _age_state(db_session, "fresh-state", 9)
        assert await store.consume_state("fresh-state") == 7

    async def test_mismatched_company_hint_rejected(self, db_session):
        store = OAuthStateStore(db_session)
        await store.save_state("state-abc", 7)
        with pytest.raises(InvalidStateError):
            await store.consume_state("state-abc", company_id_hint=8)

    async def test_save_purges_expired_states(self, db_session):
        store = OAuthStateStore(db_session)
        await store.save_state("old-state", 1)
        await _age_state(db_session, "old-state", 30)

        await store.save_state("new-state", 2)

        result = await db_session.execute(select(XeroOAuthState.state))
        assert set(result.scalars()) == {"new-state"}
