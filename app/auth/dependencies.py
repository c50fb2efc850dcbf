"""
Authentication Dependencies
FastAPI dependencies for route protection.
"""

from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.auth.utils import decode_token
from app.core.errors import ErrorCode, create_error_response

# Security scheme for Swagger UI
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CompanyIdentity:
    """Authenticated caller, scoped to one company."""

    company_id: int
    email: Optional[str] = None


async def get_current_company(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> CompanyIdentity:
    """
    Dependency that validates the JWT and returns the caller's company.

    Usage:
        @router.get("/protected")
        async def protected_route(company: CurrentCompany):
            return {"company_id": company.company_id}

    Args:
        credentials: Bearer token from Authorization header

    Returns:
        CompanyIdentity for the token's subject

    Raises:
        HTTPException: If the token is missing, invalid or not an access token
    """
    credentials_exception = create_error_response(
        ErrorCode.AUTHENTICATION_FAILED,
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access":
        raise credentials_exception

    try:
        company_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise credentials_exception

    return CompanyIdentity(company_id=company_id, email=payload.get("email"))


async def get_optional_company(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Optional[CompanyIdentity]:
    """
    Like get_current_company, but returns None when no bearer token is sent.

    A token that is present but invalid is still rejected.
    """
    if credentials is None:
        return None
    return await get_current_company(credentials)


# Type alias for cleaner route signatures
CurrentCompany = Annotated[CompanyIdentity, Depends(get_current_company)]
