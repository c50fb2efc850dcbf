"""
Token Refresh Lock
Provides per-company async locks to prevent token refresh race conditions.
"""

import asyncio
import logging

logger = logging.getLogger(__name__)


class TokenRefreshLock:
    """
    Manages async locks for token refresh operations per company.

    Xero rotates the refresh token on every use, so two concurrent refreshes
    for one company would leave the loser holding a dead token. Callers
    refresh inside the lock and re-check expiry after acquiring it.

    Locks are process-local; separate worker processes are not coordinated.
    """

    _locks: dict[int, asyncio.Lock] = {}

    @classmethod
    def get_lock(cls, company_id: int) -> asyncio.Lock:
        """
        Get or create the lock for a company.

        Runs without awaiting, so creation cannot interleave on one event loop.

        Args:
            company_id: Company ID

        Returns:
            asyncio.Lock instance for the company
        """
        lock = cls._locks.get(company_id)
        if lock is None:
            lock = asyncio.Lock()
            cls._locks[company_id] = lock
            logger.debug("Created token refresh lock for company %s", company_id)
        return lock

    @classmethod
    def release_lock(cls, company_id: int) -> None:
        """
        Forget the lock for a company (e.g. after its settings are deleted).

        Args:
            company_id: Company ID
        """
        lock = cls._locks.get(company_id)
        if lock is not None and not lock.locked():
            del cls._locks[company_id]
            logger.debug("Released token refresh lock for company %s", company_id)
