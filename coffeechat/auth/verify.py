"""
verify.py
---------
Purpose:
    JWT verification for organizer requests.

Notes:
    - HS256 with AUTH_JWT_SECRET when it is set (local and test setups).
    - Otherwise ES256/RS256 keys fetched from AUTH_JWKS_URL and cached by PyJWKClient.
    - Provides `auth_dependency` for protected routes.
"""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from coffeechat.config import settings

_security = HTTPBearer()
_jwk_client: PyJWKClient | None = None


def _get_jwk_client() -> PyJWKClient:
    global _jwk_client
    if _jwk_client is None:
        if not settings.AUTH_JWKS_URL:
            raise jwt.InvalidTokenError("No JWT verification key configured")
        _jwk_client = PyJWKClient(settings.AUTH_JWKS_URL)
    return _jwk_client


def verify_jwt(token: str) -> dict:
    try:
        if settings.AUTH_JWT_SECRET:
            key = settings.AUTH_JWT_SECRET
            algorithms = ["HS256"]
        else:
            key = _get_jwk_client().get_signing_key_from_jwt(token).key
            algorithms = ["ES256", "RS256"]

        return jwt.decode(
            token,
            key,
            algorithms=algorithms,
            audience=settings.AUTH_AUDIENCE,
            options={"verify_exp": True},
        )
    except jwt.PyJWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> dict:
    token = credentials.credentials
    return verify_jwt(token)
