"""
OAuth State Store
Database-backed state token → company mapping for the OAuth callback.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.integrations.xero.exceptions import ExpiredStateError, InvalidStateError
from app.models.xero_oauth_state import STATE_LIFETIME, XeroOAuthState

logger = logging.getLogger(__name__)


class OAuthStateStore:
    """
    Store for OAuth state tokens.

    Maps state → company_id for callback lookup.
    States expire after 10 minutes and can be consumed once.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def save_state(self, state: str, company_id: int) -> XeroOAuthState:
        """
        Save state → company mapping.

        Expired states are purged first (simple garbage collection).

        Args:
            state: OAuth state token
            company_id: Company that started the authorization
        """
        await self.purge_expired()

        record = XeroOAuthState(state=state, company_id=company_id)
        self.db.add(record)
        await self.db.commit()
        return record

    async def consume_state(self, state: str, company_id_hint: Optional[int] = None) -> int:
        """
        Resolve and delete a state (one-time use).

        The owning company always comes from the stored row. A hint that
        disagrees with it is treated as a cross-tenant mixup.

        Args:
            state: OAuth state token
            company_id_hint: Company the caller believes it is acting for

        Returns:
            Owning company ID

        Raises:
            InvalidStateError: If the state is unknown or bound to another company
            ExpiredStateError: If the state is older than 10 minutes
        """
        record: Optional[XeroOAuthState] = None
        if state:
            result = await self.db.execute(
                select(XeroOAuthState).where(XeroOAuthState.state == state)
            )
            record = result.scalar_one_or_none()

        if record is None:
            logger.warning("OAuth callback with unknown state")
            raise InvalidStateError()

        # Single use: the row goes away whatever the outcome below
        await self.db.delete(record)
        await self.db.commit()

        if record.is_expired:
            logger.warning("OAuth state for company %s expired", record.company_id)
            raise ExpiredStateError()

        if company_id_hint is not None and company_id_hint != record.company_id:
            logger.warning(
                "OAuth state owned by company %s presented for company %s",
                record.company_id,
                company_id_hint,
            )
            raise InvalidStateError()

        return record.company_id

    async def purge_expired(self) -> int:
        """Delete states older than their lifetime. Returns rows removed."""
        cutoff = datetime.now(timezone.utc) - STATE_LIFETIME
        result = await self.db.execute(
            delete(XeroOAuthState).where(XeroOAuthState.created_at < cutoff)
        )
        if result.rowcount:
            logger.debug("Purged %d expired OAuth states", result.rowcount)
        return result.rowcount or 0
