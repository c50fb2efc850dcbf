"""
Rate Limiting Utilities
Rate limiting for the public OAuth endpoints.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Keyed by client address
limiter = Limiter(key_func=get_remote_address)
