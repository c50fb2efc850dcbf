"""
Xero Integration Exceptions
Error taxonomy for the Xero integration.

Every error carries a stable machine-readable code, a user-facing message
and the HTTP status it is rendered with (see app.core.errors).
"""

from typing import Any, Optional


class XeroIntegrationError(Exception):
    """Base class for Xero integration errors."""

    code = "XERO_ERROR"
    status_code = 500
    default_message = "Xero integration error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message or self.default_message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)

    def extra(self) -> dict[str, Any]:
        """Additional fields included in the error response body."""
        return {}


class NotConfiguredError(XeroIntegrationError):
    """Client credentials are missing."""

    code = "XERO_NOT_CONFIGURED"
    status_code = 400
    default_message = "Xero is not configured. Please save your Xero app credentials first."

    def extra(self) -> dict[str, Any]:
        return {"requires_configuration": True}


class NotConnectedError(XeroIntegrationError):
    """No tokens are stored for the company."""

    code = "XERO_NOT_CONNECTED"
    status_code = 400
    default_message = "Xero is not connected. Please connect to Xero first."


class InvalidStateError(XeroIntegrationError):
    """OAuth state is unknown, already used, or owned by another company."""

    code = "XERO_INVALID_STATE"
    status_code = 400
    default_message = "Invalid state token. Please restart the connection flow."


class ExpiredStateError(XeroIntegrationError):
    """OAuth state is older than its lifetime."""

    code = "XERO_EXPIRED_STATE"
    status_code = 400
    default_message = "The connection request has expired. Please restart the connection flow."


class TokenExchangeFailedError(XeroIntegrationError):
    """The authorization code could not be exchanged for tokens."""

    code = "XERO_TOKEN_EXCHANGE_FAILED"
    status_code = 400
    default_message = "Failed to exchange authorization code with Xero."

    def __init__(self, message: Optional[str] = None, upstream_error: Optional[str] = None):
        super().__init__(message)
        self.upstream_error = upstream_error

    def extra(self) -> dict[str, Any]:
        return {"upstream_error": self.upstream_error}


class RefreshFailedError(XeroIntegrationError):
    """The refresh token is missing or was rejected; re-authorization required."""

    code = "XERO_REFRESH_FAILED"
    status_code = 401
    default_message = "Xero connection expired. Please reconnect to Xero."

    def __init__(self, message: Optional[str] = None, upstream_error: Optional[str] = None):
        super().__init__(message)
        self.upstream_error = upstream_error

    def extra(self) -> dict[str, Any]:
        return {"requires_reconnection": True}


class UnauthorizedError(XeroIntegrationError):
    """Xero rejected the access token (401)."""

    code = "XERO_TOKEN_EXPIRED"
    status_code = 401
    default_message = "Xero connection expired. Please reconnect to Xero."

    def extra(self) -> dict[str, Any]:
        return {"requires_reconnection": True}


class ForbiddenError(XeroIntegrationError):
    """Xero denied access to the resource (403)."""

    code = "XERO_FORBIDDEN"
    status_code = 403
    default_message = "Access to this Xero resource is not permitted for the connected organisation."


class RateLimitedError(XeroIntegrationError):
    """Xero rate limit hit (429)."""

    code = "XERO_RATE_LIMITED"
    status_code = 429
    default_message = "Xero API rate limit exceeded. Please try again later."

    def __init__(self, message: Optional[str] = None, retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after

    def extra(self) -> dict[str, Any]:
        return {"retry_after": self.retry_after}


class UpstreamUnavailableError(XeroIntegrationError):
    """Xero returned a server error or an unexpected status."""

    code = "XERO_API_UNAVAILABLE"
    status_code = 502
    default_message = "Xero API is currently unavailable. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        upstream_status: Optional[int] = None,
        endpoint: Optional[str] = None,
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.endpoint = endpoint

    def extra(self) -> dict[str, Any]:
        return {"upstream_status": self.upstream_status}


class UpstreamUnreachableError(XeroIntegrationError):
    """Network-level failure talking to Xero (timeout, DNS, connection)."""

    code = "XERO_API_UNREACHABLE"
    status_code = 502
    default_message = "Unable to reach the Xero API. Please check connectivity and try again."


class UnsupportedResourceTypeError(XeroIntegrationError):
    """Requested resource type is not in the catalog."""

    code = "XERO_UNSUPPORTED_RESOURCE"
    status_code = 400

    def __init__(self, resource_type: str, supported: Optional[list[str]] = None):
        super().__init__(f"Unsupported Xero resource type: {resource_type}")
        self.resource_type = resource_type
        self.supported = supported or []

    def extra(self) -> dict[str, Any]:
        return {"supported_types": self.supported}


class NotFoundError(XeroIntegrationError):
    """No connection exists for the company."""

    code = "XERO_NOT_FOUND"
    status_code = 404
    default_message = "No Xero connection found for this company."
