"""
Admin authentication for mutating operator routes.

Operator routes (deleting subdomains or certificates, revoking, reconciling,
storing credentials) take ``Authorization: Bearer <token>``. The token comes
from the running engine's configuration, falling back to ``ADMIN_TOKEN``.
"""

import os
import secrets
from typing import Optional
from fastapi import HTTPException, Header
from log import init_logger

from services.engine_service import get_engine_service

logger = init_logger(__name__)

BEARER_CHALLENGE = {"WWW-Authenticate": "Bearer"}


def get_admin_token() -> Optional[str]:
    """Admin token of the running engine, else from the environment."""
    service = get_engine_service()
    if service is not None and service.admin_token:
        return service.admin_token
    return os.getenv("ADMIN_TOKEN")


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        logger.warning("Operator request rejected: no Authorization header")
        raise HTTPException(
            status_code=401,
            detail="Operator token required in Authorization header.",
            headers=BEARER_CHALLENGE,
        )
    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        logger.warning(f"Operator request rejected: unsupported auth scheme {scheme!r}")
        raise HTTPException(
            status_code=401,
            detail="Expected 'Authorization: Bearer <token>'.",
            headers=BEARER_CHALLENGE,
        )
    return token


def verify_admin_token(authorization: Optional[str]) -> None:
    """
    Check an Authorization header against the configured operator token.

    With no token configured every request passes.

    Raises:
        HTTPException: 401 for a missing or malformed header, 403 for a wrong token
    """
    expected = get_admin_token()
    if not expected:
        logger.debug("Operator token not configured; skipping check")
        return

    if not secrets.compare_digest(_bearer_token(authorization), expected):
        logger.warning("Operator request rejected: token mismatch")
        raise HTTPException(status_code=403, detail="Operator token rejected.")


def require_admin_token():
    """
    Route dependency guarding operator endpoints.

    Usage:
        @router.delete("/{id}", dependencies=[Depends(require_admin_token())])
    """

    def dependency(authorization: Optional[str] = Header(None, alias="Authorization")):
        verify_admin_token(authorization)

    return dependency
