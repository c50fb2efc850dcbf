"""
Xero OAuth 2.0 Utilities
Handles authorization URL generation, token exchange, refresh and tenant lookup.
"""

import base64
import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional
from urllib.parse import urlencode

import httpx

from app.config import XeroConfig
from app.integrations.xero.exceptions import (
    RefreshFailedError,
    TokenExchangeFailedError,
    UnauthorizedError,
    UpstreamUnavailableError,
    UpstreamUnreachableError,
)

logger = logging.getLogger(__name__)


# User-facing messages for Xero token endpoint error codes
TOKEN_ERROR_MESSAGES = {
    "invalid_client": (
        "Invalid Xero client credentials. "
        "Please check your Client ID and Client Secret configuration."
    ),
    "invalid_grant": "Authorization code expired or invalid. Please try connecting to Xero again.",
    "invalid_redirect_uri": "Invalid redirect URI. Please check your Xero app configuration.",
}


@dataclass(frozen=True)
class ClientCredentials:
    """Xero app credentials used for a token request."""

    client_id: str
    client_secret: str
    redirect_uri: str


class XeroOAuth:
    """
    Xero OAuth 2.0 client.

    Handles:
    - Authorization URL generation
    - Authorization code exchange for tokens
    - Token refresh
    - Connection (tenant) and organisation lookup
    """

    def __init__(self, config: XeroConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._http_client = http_client

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        """Yield the injected client, or a short-lived one."""
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.config.oauth_timeout_seconds) as client:
            yield client

    @staticmethod
    def generate_state() -> str:
        """Generate a cryptographically secure state parameter."""
        return secrets.token_urlsafe(32)

    def get_authorization_url(self, client_id: str, redirect_uri: str, state: str) -> str:
        """
        Generate the Xero authorization URL.

        Args:
            client_id: Company's Xero app client ID
            redirect_uri: Redirect URI registered with the Xero app
            state: CSRF protection token (persisted in the state store)

        Returns:
            Full authorization URL to redirect user to
        """
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": self.config.scopes,
            "state": state,
        }
        return f"{self.config.authorization_url}?{urlencode(params)}"

    @staticmethod
    def _get_auth_header(credentials: ClientCredentials) -> str:
        """Generate Basic auth header for token requests."""
        raw = f"{credentials.client_id}:{credentials.client_secret}"
        return f"Basic {base64.b64encode(raw.encode()).decode()}"

    async def _post_token_request(self, credentials: ClientCredentials, data: dict) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.post(
                    self.config.token_url,
                    headers={
                        "Authorization": self._get_auth_header(credentials),
                        "Content-Type": "application/x-www-form-urlencoded",
                        "Accept": "application/json",
                    },
                    data=data,
                )
        except httpx.HTTPError as e:
            logger.error("Xero token endpoint unreachable: %s", e)
            raise UpstreamUnreachableError() from e

    @staticmethod
    def _parse_token_error(response: httpx.Response) -> tuple[Optional[str], Optional[str]]:
        """Extract (error, error_description) from a failed token response."""
        try:
            body = response.json()
        except ValueError:
            return None, None
        if not isinstance(body, dict):
            return None, None
        return body.get("error"), body.get("error_description")

    async def exchange_code_for_tokens(self, code: str, credentials: ClientCredentials) -> dict:
        """
        Exchange authorization code for access and refresh tokens.

        Args:
            code: Authorization code from Xero callback
            credentials: Company's Xero app credentials

        Returns:
            Token response containing access_token, refresh_token,
            expires_in (seconds), token_type and scope

        Raises:
            TokenExchangeFailedError: If Xero rejects the exchange
        """
        response = await self._post_token_request(
            credentials,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": credentials.redirect_uri,
            },
        )

        if not response.is_success:
            error, description = self._parse_token_error(response)
            logger.warning(
                "Xero token exchange failed: status=%s error=%s",
                response.status_code,
                error,
            )
            message = TOKEN_ERROR_MESSAGES.get(error or "") or description
            raise TokenExchangeFailedError(message, upstream_error=error)

        return response.json()

    async def refresh_tokens(self, refresh_token: str, credentials: ClientCredentials) -> dict:
        """
        Refresh access token using refresh token.

        Xero rotates both tokens on each refresh; the old refresh token
        is unusable afterwards.

        Args:
            refresh_token: Current refresh token
            credentials: Company's Xero app credentials

        Returns:
            New token response with fresh access and refresh tokens

        Raises:
            RefreshFailedError: If Xero rejects the refresh
        """
        response = await self._post_token_request(
            credentials,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )

        if not response.is_success:
            error, _ = self._parse_token_error(response)
            logger.warning(
                "Xero token refresh failed: status=%s error=%s",
                response.status_code,
                error,
            )
            raise RefreshFailedError(upstream_error=error)

        return response.json()

    async def get_connections(self, access_token: str) -> list[dict]:
        """
        Get list of authorized Xero tenants (organizations).

        Args:
            access_token: Valid access token

        Returns:
            Connection objects in the order Xero returns them

        Raises:
            UnauthorizedError: If the token is rejected
            UpstreamUnavailableError: For any other failure
        """
        try:
            async with self._client() as client:
                response = await client.get(
                    self.config.connections_url,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            raise UpstreamUnreachableError() from e

        if response.status_code == 401:
            raise UnauthorizedError()
        if not response.is_success:
            raise UpstreamUnavailableError(
                "Failed to fetch Xero connections",
                upstream_status=response.status_code,
                endpoint=self.config.connections_url,
            )

        return response.json()

    async def get_organisation(self, access_token: str, tenant_id: str) -> Optional[dict]:
        """
        Get organisation details for a tenant.

        Returns:
            First Organisation object, or None if the response has none

        Raises:
            UpstreamUnavailableError: If the request fails
        """
        url = f"{self.config.api_base_url}/Organisation"
        try:
            async with self._client() as client:
                response = await client.get(
                    url,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Xero-tenant-id": tenant_id,
                        "Accept": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            raise UpstreamUnreachableError() from e

        if not response.is_success:
            raise UpstreamUnavailableError(
                "Failed to fetch Xero organisation",
                upstream_status=response.status_code,
                endpoint=url,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamUnavailableError(
                "Xero organisation response was not JSON",
                upstream_status=response.status_code,
                endpoint=url,
            ) from e
        if not isinstance(body, dict):
            raise UpstreamUnavailableError(
                "Unexpected Xero organisation response",
                upstream_status=response.status_code,
                endpoint=url,
            )

        organisations = body.get("Organisations") or body.get("Organisation") or []
        if not isinstance(organisations, list) or not organisations:
            return None
        return organisations[0] if isinstance(organisations[0], dict) else None

    @staticmethod
    def calculate_expiry(expires_in: int) -> datetime:
        """
        Calculate token expiry datetime from expires_in seconds.

        Args:
            expires_in: Token lifetime in seconds

        Returns:
            Timezone-aware expiry datetime
        """
        return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
