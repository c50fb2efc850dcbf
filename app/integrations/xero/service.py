"""
Xero Connection Service
Credential storage and OAuth token lifecycle for Xero connections.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.integrations.xero.cache_service import CacheService
from app.integrations.xero.exceptions import (
    NotConfiguredError,
    NotConnectedError,
    NotFoundError,
    RefreshFailedError,
    TokenExchangeFailedError,
    XeroIntegrationError,
)
from app.integrations.xero.oauth import ClientCredentials, XeroOAuth
from app.integrations.xero.schemas import (
    Tenant,
    TenantMetadata,
    ValidToken,
    XeroAuthURLResponse,
    XeroCallbackResponse,
    XeroConnectionStatus,
    XeroSettingsResponse,
    XeroTenantsResponse,
)
from app.integrations.xero.state_store import OAuthStateStore
from app.integrations.xero.token_cipher import SecretCipher
from app.integrations.xero.token_refresh_lock import TokenRefreshLock
from app.models.xero_connection import ConnectionStatus, XeroConnection

logger = logging.getLogger(__name__)


class XeroService:
    """
    Service for Xero connections.

    Handles:
    - Client credential storage (secret encrypted at rest)
    - Authorization URL generation and callback handling
    - Token refresh with per-company mutual exclusion
    - Connection status, tenant listing and disconnect
    """

    def __init__(
        self,
        db: AsyncSession,
        oauth: Optional[XeroOAuth] = None,
        cipher: Optional[SecretCipher] = None,
    ):
        self.db = db
        self.oauth = oauth or XeroOAuth(settings.xero_config())
        self.config = self.oauth.config
        self.cipher = cipher or SecretCipher()
        self.state_store = OAuthStateStore(db)
        self.cache = CacheService(db)

    # =========================================================================
    # Storage helpers
    # =========================================================================

    async def get_connection(
        self, company_id: int, *, reload: bool = False
    ) -> Optional[XeroConnection]:
        """
        Get the Xero connection for a company.

        Args:
            company_id: Company ID
            reload: Overwrite any in-session copy with the current row

        Returns:
            XeroConnection if exists, None otherwise
        """
        stmt = select(XeroConnection).where(XeroConnection.company_id == company_id)
        if reload:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _require_connection(self, company_id: int) -> XeroConnection:
        connection = await self.get_connection(company_id)
        if connection is None:
            raise NotFoundError()
        return connection

    def _credentials(self, connection: Optional[XeroConnection]) -> ClientCredentials:
        """
        Resolve client credentials, using configured fallbacks per field.

        Raises:
            NotConfiguredError: If any credential is still missing
        """
        if connection is None:
            raise NotConfiguredError()

        client_id = connection.client_id or self.config.fallback_client_id
        client_secret = (
            self.cipher.decrypt(connection.client_secret)
            or self.config.fallback_client_secret
        )
        redirect_uri = connection.redirect_uri or self.config.fallback_redirect_uri

        if not (client_id and client_secret and redirect_uri):
            raise NotConfiguredError()

        return ClientCredentials(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
        )

    def _store_tokens(self, connection: XeroConnection, token_response: dict) -> None:
        """Write a token endpoint response onto the connection (encrypted)."""
        connection.access_token = self.cipher.encrypt(token_response["access_token"])
        refresh_token = token_response.get("refresh_token")
        if refresh_token:
            connection.refresh_token = self.cipher.encrypt(refresh_token)
        connection.token_expires_at = XeroOAuth.calculate_expiry(
            token_response.get("expires_in", 1800)
        )
        connection.last_refreshed_at = datetime.now(timezone.utc)
        connection.status = ConnectionStatus.CONNECTED.value
        connection.last_error = None

    # =========================================================================
    # Settings
    # =========================================================================

    async def save_settings(
        self,
        company_id: int,
        client_id: str,
        redirect_uri: str,
        client_secret: Optional[str] = None,
    ) -> XeroConnection:
        """
        Create or update a company's Xero app credentials.

        Changing the credentials of an existing connection drops its tokens,
        tenants and cached data, since they belong to the previous app.

        Args:
            company_id: Company ID
            client_id: Xero app client ID (required)
            redirect_uri: Redirect URI (required)
            client_secret: Client secret; None or empty keeps the stored one

        Returns:
            Saved XeroConnection
        """
        client_id = (client_id or "").strip()
        redirect_uri = (redirect_uri or "").strip()
        client_secret = (client_secret or "").strip() or None

        if not client_id or not redirect_uri:
            raise NotConfiguredError("Client ID and redirect URI are required.")

        connection = await self.get_connection(company_id)
        changed = False

        if connection is None:
            connection = XeroConnection(company_id=company_id)
            self.db.add(connection)
        else:
            changed = (
                connection.client_id != client_id
                or connection.redirect_uri != redirect_uri
                or (
                    client_secret is not None
                    and client_secret != self.cipher.decrypt(connection.client_secret)
                )
            )

        connection.client_id = client_id
        connection.redirect_uri = redirect_uri
        if client_secret is not None:
            connection.client_secret = self.cipher.encrypt(client_secret)

        if changed and connection.has_tokens:
            logger.info("Xero credentials changed for company %s; clearing tokens", company_id)
            connection.clear_tokens()
            await self.cache.clear(company_id)

        if not connection.has_tokens:
            connection.status = (
                ConnectionStatus.DISCONNECTED.value
                if connection.has_credentials
                else ConnectionStatus.NOT_CONFIGURED.value
            )

        await self.db.commit()
        logger.info("Saved Xero settings for company %s", company_id)
        return connection

    async def get_settings(self, company_id: int) -> XeroSettingsResponse:
        """Read back stored credentials without the client secret."""
        connection = await self.get_connection(company_id)
        if connection is None:
            return XeroSettingsResponse()

        return XeroSettingsResponse(
            client_id=connection.client_id,
            redirect_uri=connection.redirect_uri,
            has_client_secret=bool(connection.client_secret),
            configured=connection.has_credentials,
            created_at=connection.created_at,
            updated_at=connection.updated_at,
        )

    async def delete_settings(self, company_id: int) -> None:
        """
        Remove the company's connection row entirely.

        Raises:
            NotFoundError: If no connection exists
        """
        connection = await self._require_connection(company_id)
        await self.cache.clear(company_id)
        await self.db.delete(connection)
        await self.db.commit()
        TokenRefreshLock.release_lock(company_id)
        logger.info("Deleted Xero settings for company %s", company_id)

    # =========================================================================
    # Authorization flow
    # =========================================================================

    async def generate_auth_url(self, company_id: int) -> XeroAuthURLResponse:
        """
        Start the OAuth flow for a company.

        Returns:
            Authorization URL and the persisted state token

        Raises:
            NotConfiguredError: If client credentials are incomplete
        """
        credentials = self._credentials(await self.get_connection(company_id))

        state = XeroOAuth.generate_state()
        await self.state_store.save_state(state, company_id)

        return XeroAuthURLResponse(
            authorization_url=self.oauth.get_authorization_url(
                credentials.client_id,
                credentials.redirect_uri,
                state,
            ),
            state=state,
        )

    async def _enrich_tenant(self, access_token: str, tenant: Tenant) -> Tenant:
        """Attach organisation details; on failure keep the bare tenant."""
        try:
            organisation = await self.oauth.get_organisation(access_token, tenant.id)
        except XeroIntegrationError as e:
            logger.warning("Could not fetch organisation for tenant %s: %s", tenant.id, e.message)
            return tenant

        if not organisation:
            return tenant

        tenant.metadata = TenantMetadata(
            name=organisation.get("Name"),
            legal_name=organisation.get("LegalName"),
            country_code=organisation.get("CountryCode"),
            tax_number=organisation.get("TaxNumber"),
            short_code=organisation.get("ShortCode"),
        )
        return tenant

    async def _fetch_tenants(self, access_token: str) -> list[Tenant]:
        """Authorised tenants in Xero's order, each enriched where possible."""
        connections = await self.oauth.get_connections(access_token)
        tenants = [Tenant.from_connection(item) for item in connections if item.get("tenantId")]
        return list(
            await asyncio.gather(*(self._enrich_tenant(access_token, t) for t in tenants))
        )

    async def handle_callback(
        self,
        code: str,
        state: str,
        company_id_hint: Optional[int] = None,
    ) -> XeroCallbackResponse:
        """
        Complete the OAuth flow.

        The state is consumed before the code exchange, so a replayed
        callback fails even if the exchange below does.

        Args:
            code: Authorization code from Xero
            state: State token issued by generate_auth_url
            company_id_hint: Company the caller claims; must match the state owner

        Returns:
            Connected tenant details

        Raises:
            InvalidStateError: Unknown, reused or foreign state
            ExpiredStateError: State older than 10 minutes
            TokenExchangeFailedError: Xero rejected the code
        """
        company_id = await self.state_store.consume_state(state, company_id_hint)

        connection = await self.get_connection(company_id)
        credentials = self._credentials(connection)

        try:
            token_response = await self.oauth.exchange_code_for_tokens(code, credentials)
            tenants = await self._fetch_tenants(token_response["access_token"])
            if not tenants:
                raise TokenExchangeFailedError(
                    "No Xero organisations were authorised. Please try connecting again.",
                    upstream_error="no_tenants",
                )
        except TokenExchangeFailedError as e:
            connection.status = ConnectionStatus.ERROR.value
            connection.last_error = e.message
            await self.db.commit()
            raise

        primary = tenants[0]
        self._store_tokens(connection, token_response)
        connection.tenants = tenants
        connection.tenant_id = primary.id
        connection.organization_name = primary.name

        await self.db.commit()
        await self.cache.clear(company_id)
        logger.info(
            "Xero connected for company %s (%d tenant(s), primary %s)",
            company_id,
            len(tenants),
            primary.id,
        )

        return XeroCallbackResponse(
            success=True,
            message="Xero connected successfully",
            company_id=company_id,
            tenant_id=primary.id,
            organization_name=primary.name,
            tenants=tenants,
            token_expires_at=connection.expires_at,
        )

    # =========================================================================
    # Token lifecycle
    # =========================================================================

    async def refresh(
        self,
        company_id: int,
        *,
        force: bool = False,
        rejected_access_token: Optional[str] = None,
    ) -> XeroConnection:
        """
        Refresh the company's tokens.

        Runs inside the company's refresh lock and re-reads the row once the
        lock is held; if another request already refreshed, no upstream call
        is made.

        Args:
            company_id: Company ID
            force: Refresh even if the token is not near expiry
            rejected_access_token: Token Xero just rejected; skip the refresh
                if the stored token has already changed

        Returns:
            Connection with current tokens

        Raises:
            NotFoundError: If no connection exists
            RefreshFailedError: No refresh token or Xero rejected it
        """
        async with TokenRefreshLock.get_lock(company_id):
            connection = await self.get_connection(company_id, reload=True)
            if connection is None:
                raise NotFoundError()

            if rejected_access_token is not None:
                if self.cipher.decrypt(connection.access_token) != rejected_access_token:
                    logger.debug("Tokens for company %s already rotated", company_id)
                    return connection
            elif not force and connection.has_tokens and not connection.needs_refresh:
                logger.debug("Tokens for company %s refreshed concurrently", company_id)
                return connection

            refresh_token = self.cipher.decrypt(connection.refresh_token)
            if not refresh_token:
                raise RefreshFailedError("No refresh token stored. Please reconnect to Xero.")

            try:
                token_response = await self.oauth.refresh_tokens(
                    refresh_token,
                    self._credentials(connection),
                )
            except RefreshFailedError as e:
                connection.status = ConnectionStatus.EXPIRED.value
                connection.last_error = (
                    f"Token refresh failed: {e.upstream_error}" if e.upstream_error else e.message
                )
                await self.db.commit()
                logger.warning("Token refresh failed for company %s", company_id)
                raise

            self._store_tokens(connection, token_response)
            await self.db.commit()
            logger.info("Refreshed Xero tokens for company %s", company_id)
            return connection

    async def get_valid_token(self, company_id: int) -> ValidToken:
        """
        Get an unexpired access token, refreshing first if needed.

        Args:
            company_id: Company ID

        Returns:
            Access token with the selected tenant

        Raises:
            NotConnectedError: If no tokens are stored
            RefreshFailedError: If a needed refresh fails
        """
        connection = await self.get_connection(company_id)
        if connection is None or not connection.has_tokens:
            raise NotConnectedError()

        if connection.needs_refresh:
            connection = await self.refresh(company_id)

        return ValidToken(
            access_token=self.cipher.decrypt(connection.access_token),
            refresh_token=self.cipher.decrypt(connection.refresh_token),
            tenant_id=connection.tenant_id,
            organization_name=connection.organization_name,
            expires_at=connection.expires_at,
        )

    async def disconnect(self, company_id: int) -> XeroConnection:
        """
        Disconnect Xero, keeping client credentials.

        Idempotent: disconnecting twice leaves the same state.

        Raises:
            NotFoundError: If no connection exists
        """
        connection = await self._require_connection(company_id)

        connection.clear_tokens()
        connection.last_error = None
        connection.status = (
            ConnectionStatus.DISCONNECTED.value
            if connection.has_credentials
            else ConnectionStatus.NOT_CONFIGURED.value
        )
        await self.db.commit()
        await self.cache.clear(company_id)

        logger.info("Disconnected Xero for company %s", company_id)
        return connection

    # =========================================================================
    # Status and tenants
    # =========================================================================

    @staticmethod
    def compute_status(connection: Optional[XeroConnection]) -> ConnectionStatus:
        """Derive the reported connection status from the stored row."""
        if connection is None or not connection.has_credentials:
            return ConnectionStatus.NOT_CONFIGURED
        if connection.status == ConnectionStatus.ERROR.value:
            return ConnectionStatus.ERROR
        if not connection.has_tokens:
            return ConnectionStatus.DISCONNECTED
        if connection.status == ConnectionStatus.EXPIRED.value or connection.is_token_expired:
            return ConnectionStatus.EXPIRED
        return ConnectionStatus.CONNECTED

    async def get_status(self, company_id: int) -> XeroConnectionStatus:
        """Get the connection status for a company."""
        connection = await self.get_connection(company_id)
        status = self.compute_status(connection)

        if connection is None:
            return XeroConnectionStatus(connected=False, connection_status=status.value)

        tenants = connection.tenants
        primary = next((t for t in tenants if t.id == connection.tenant_id), None)
        if primary is None and connection.tenant_id:
            primary = Tenant(id=connection.tenant_id, name=connection.organization_name)

        return XeroConnectionStatus(
            connected=status == ConnectionStatus.CONNECTED,
            connection_status=status.value,
            has_credentials=connection.has_credentials,
            tenant_id=connection.tenant_id,
            primary_organization=primary,
            tenants=tenants,
            token_expires_at=connection.expires_at,
            last_refreshed_at=connection.last_refreshed_at,
            last_error=connection.last_error,
        )

    async def list_tenants(self, company_id: int) -> XeroTenantsResponse:
        """List authorised tenants and the current selection."""
        connection = await self.get_connection(company_id)
        if connection is None:
            return XeroTenantsResponse()
        return XeroTenantsResponse(
            tenants=connection.tenants,
            selected_tenant_id=connection.tenant_id,
        )

    @staticmethod
    def resolve_tenant(
        connection: XeroConnection, requested_tenant_id: Optional[str] = None
    ) -> Tenant:
        """
        Pick the tenant to query.

        A requested tenant is used only if the company authorised it;
        otherwise the selected tenant, then the first authorised one.

        Raises:
            NotConnectedError: If there is no tenant to fall back to
        """
        tenants = connection.tenants

        if requested_tenant_id:
            for tenant in tenants:
                if tenant.id == requested_tenant_id:
                    return tenant
            logger.warning(
                "Tenant %s not authorised for company %s; using default",
                requested_tenant_id,
                connection.company_id,
            )

        if connection.tenant_id:
            for tenant in tenants:
                if tenant.id == connection.tenant_id:
                    return tenant
            return Tenant(id=connection.tenant_id, name=connection.organization_name)

        if tenants:
            return tenants[0]

        raise NotConnectedError("No Xero organisation selected. Please reconnect to Xero.")
