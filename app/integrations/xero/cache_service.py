"""
Cache Service for Xero Data
Read-through cache of Xero payloads keyed by (company, tenant, resource type).
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.xero_data_cache import XeroDataCache

logger = logging.getLogger(__name__)


# TTL per resource type, in hours
CACHE_TTL_HOURS: dict[str, float] = {
    "invoices": 0.25,
    "contacts": 0.5,
    "accounts": 1.0,
    "bas_data": 1.0,
    "fas_data": 1.0,
    "financial_summary": 0.5,
    "dashboard_data": 0.25,
}


def ttl_hours_for(resource_type: str) -> float:
    """TTL for a resource type, falling back to the configured default."""
    return CACHE_TTL_HOURS.get(resource_type, settings.cache_ttl_minutes / 60)


class CacheService:
    """
    Service for managing the Xero response cache.

    Handles:
    - Fresh-only reads (stale or absent entries are misses)
    - Unconditional overwrite on put
    - Explicit clears by company, tenant and resource type
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_entry(
        self, company_id: int, tenant_id: str, resource_type: str
    ) -> Optional[XeroDataCache]:
        result = await self.db.execute(
            select(XeroDataCache)
            .where(XeroDataCache.company_id == company_id)
            .where(XeroDataCache.tenant_id == tenant_id)
            .where(XeroDataCache.resource_type == resource_type)
        )
        return result.scalar_one_or_none()

    async def get(self, company_id: int, tenant_id: str, resource_type: str) -> Optional[Any]:
        """
        Get a cached payload if it has not expired.

        Args:
            company_id: Company ID
            tenant_id: Xero tenant ID
            resource_type: Logical resource type

        Returns:
            Cached payload, or None on a miss
        """
        entry = await self._get_entry(company_id, tenant_id, resource_type)
        if entry is None or not entry.is_fresh:
            return None

        logger.debug(
            "Cache hit for company %s tenant %s %s",
            company_id,
            tenant_id,
            resource_type,
        )
        return entry.payload

    async def put(
        self,
        company_id: int,
        tenant_id: str,
        resource_type: str,
        payload: Any,
        ttl_hours: Optional[float] = None,
    ) -> XeroDataCache:
        """
        Store a payload, replacing any existing entry for the key.

        Args:
            company_id: Company ID
            tenant_id: Xero tenant ID
            resource_type: Logical resource type
            payload: JSON-serialisable data
            ttl_hours: Lifetime; defaults to the resource type's TTL
        """
        if ttl_hours is None:
            ttl_hours = ttl_hours_for(resource_type)

        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(hours=ttl_hours)

        entry = await self._get_entry(company_id, tenant_id, resource_type)
        if entry is None:
            entry = XeroDataCache(
                company_id=company_id,
                tenant_id=tenant_id,
                resource_type=resource_type,
            )
            self.db.add(entry)

        entry.payload = payload
        entry.cached_at = now
        entry.expires_at = expires_at

        await self.db.commit()
        logger.info(
            "Cached %s for company %s tenant %s (ttl %.2fh)",
            resource_type,
            company_id,
            tenant_id,
            ttl_hours,
        )
        return entry

    async def clear(
        self,
        company_id: int,
        tenant_id: Optional[str] = None,
        resource_type: Optional[str] = None,
    ) -> int:
        """
        Delete cache entries for a company.

        Used on disconnect, credential changes and explicit cache clears.

        Args:
            company_id: Company ID
            tenant_id: Only this tenant's entries, if given
            resource_type: Only this resource type, if given

        Returns:
            Number of entries removed
        """
        stmt = delete(XeroDataCache).where(XeroDataCache.company_id == company_id)
        if tenant_id:
            stmt = stmt.where(XeroDataCache.tenant_id == tenant_id)
        if resource_type:
            stmt = stmt.where(XeroDataCache.resource_type == resource_type)

        result = await self.db.execute(stmt)
        await self.db.commit()

        cleared = result.rowcount or 0
        logger.info("Cleared %d cache entries for company %s", cleared, company_id)
        return cleared
