"""
Middleware module for certroute.
"""

from .admin_auth import (
    get_admin_token,
    verify_admin_token,
    require_admin_token,
)

__all__ = [
    "get_admin_token",
    "verify_admin_token",
    "require_admin_token",
]
