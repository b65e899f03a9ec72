"""
FastAPI dependencies for authentication.

Provides ``get_current_principal``, used across all protected routes.
"""

from __future__ import annotations

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth.jwt import verify_token
from auth.models import Principal

_bearer_scheme = HTTPBearer()


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> Principal:
    """
    Extract and verify the Bearer token, returning the authenticated
    user and tenant.
    """
    return verify_token(credentials.credentials)
