"""
Models Package
SQLAlchemy ORM models for the application.
"""

from app.models.xero_connection import ConnectionStatus, XeroConnection
from app.models.xero_data_cache import XeroDataCache
from app.models.xero_oauth_state import XeroOAuthState

__all__ = [
    "ConnectionStatus",
    "XeroConnection",
    "XeroDataCache",
    "XeroOAuthState",
]
