"""
Authentication Package
Resolves the calling company from a signed JWT.
"""

from app.auth.dependencies import (
    CompanyIdentity,
    CurrentCompany,
    get_current_company,
    get_optional_company,
)
from app.auth.utils import create_access_token, decode_token

__all__ = [
    # Dependencies
    "CompanyIdentity",
    "CurrentCompany",
    "get_current_company",
    "get_optional_company",
    # Utils
    "create_access_token",
    "decode_token",
]
