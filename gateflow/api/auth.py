"""
Bearer token authentication for the access API.

Tokens are HS256 JWTs signed with GATEFLOW_JWT_SECRET carrying:
- sub: user id
- email: account email (used to match guest purchases)
- role: "admin" for admin routes

A request without an Authorization header is anonymous. A header that is
present but invalid is always rejected, never downgraded to anonymous.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status

from gateflow.api.dependencies import get_access_settings
from gateflow.config.settings import AccessSettings
from gateflow.entitlements.models import Identity

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of a bearer token."""
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def identity(self) -> Identity:
        return Identity.user(self.user_id, self.email)


def decode_token(token: str, secret: str) -> TokenClaims:
    """
    Verify and decode a bearer token.

    Raises:
        jwt.InvalidTokenError: If the signature, expiry or claims are invalid
    """
    payload = jwt.decode(
        token,
        secret,
        algorithms=[JWT_ALGORITHM],
        options={"require": ["sub"]},
    )
    return TokenClaims(
        user_id=str(payload["sub"]),
        email=payload.get("email"),
        role=payload.get("role"),
    )


def get_optional_claims(
    request: Request,
    settings: AccessSettings = Depends(get_access_settings),
) -> Optional[TokenClaims]:
    """Claims for the caller, or None when no Authorization header is sent."""
    header = request.headers.get("Authorization")
    if not header:
        return None

    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must be a Bearer token",
        )

    if not settings.jwt_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication not configured",
        )

    try:
        return decode_token(token.strip(), settings.jwt_secret)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        logger.warning("Rejected invalid bearer token", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )


def get_identity(claims: Optional[TokenClaims] = Depends(get_optional_claims)) -> Identity:
    return claims.identity() if claims else Identity.anonymous()


def require_user(claims: Optional[TokenClaims] = Depends(get_optional_claims)) -> TokenClaims:
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return claims


def require_admin(claims: TokenClaims = Depends(require_user)) -> TokenClaims:
    if not claims.is_admin:
        logger.warning("Admin route denied", extra={"user_id": claims.user_id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return claims
