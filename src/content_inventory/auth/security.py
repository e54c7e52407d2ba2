"""
JWT Verification & Role Enforcement

This module is responsible for:

1. Verifying bearer JWTs issued by the content-inventory web front-end.
2. Enforcing role-based authorization (reader < contributor < admin).
3. Producing a validated `UserContext` object to downstream routes.

Security Model
--------------
- Tokens are short-lived and include issuer, audience, subject and role claims.
- A missing or invalid token is always a 401; an insufficient role is a 403.
"""

from __future__ import annotations

import jwt
from typing import Callable, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings
from .models import UserContext, ROLE_RANKS


# ---------------------------------------------------------------------
# Security Scheme
# ---------------------------------------------------------------------

# auto_error is off so that a missing header maps to 401 rather than 403.
security = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class JWTVerificationError(RuntimeError):
    """Raised internally when token verification fails before converting to HTTP errors."""


# ---------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------

def _validate_jwt_config() -> None:
    """
    Validate that JWT verification configuration is present.
    """
    if not settings.jwt_secret.get_secret_value():
        raise JWTVerificationError("Missing jwt_secret in configuration.")
    if not settings.jwt_algo:
        raise JWTVerificationError("Missing jwt_algo in configuration.")


def _decode_token(token: str) -> dict:
    """
    Decode and validate an access token.

    Raises
    ------
    Various JWT-related exceptions, which the public wrapper handles.
    """
    _validate_jwt_config()

    return jwt.decode(
        token,
        settings.jwt_secret.get_secret_value(),
        algorithms=[settings.jwt_algo],
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
        options={
            "require": ["iss", "aud", "iat", "exp", "sub", "role"],
        },
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


# ---------------------------------------------------------------------
# Public Authentication Dependency
# ---------------------------------------------------------------------

def verify_access_token(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> UserContext:
    """
    Verify a bearer JWT and construct a UserContext.

    Expected claims:
      - iss / aud: configured issuer and audience
      - sub: user identifier
      - role: reader | contributor | admin
      - email: optional

    Returns
    -------
    UserContext

    Raises
    ------
    HTTPException(401) for missing, invalid or expired tokens.
    """
    if creds is None or not creds.credentials:
        raise _unauthorized("Not authenticated.")

    try:
        payload = _decode_token(creds.credentials)
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired.")
    except jwt.InvalidAudienceError:
        raise _unauthorized("Invalid token audience.")
    except jwt.InvalidIssuerError:
        raise _unauthorized("Invalid token issuer.")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid or malformed token.")
    except JWTVerificationError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="JWT verification configuration error.",
        )

    # ---------------------------------------------------------------
    # Validate required fields
    # ---------------------------------------------------------------
    user_id = payload.get("sub")
    role = payload.get("role")

    if not user_id or not isinstance(user_id, str):
        raise _unauthorized("Token missing 'sub' claim.")

    if role not in ROLE_RANKS:
        raise _unauthorized("Token carries an unknown 'role' claim.")

    return UserContext(
        user_id=user_id,
        email=payload.get("email"),
        role=role,
    )


# ---------------------------------------------------------------------
# Role enforcement helper
# ---------------------------------------------------------------------

def require_role(minimum: str) -> Callable:
    """
    Create a FastAPI dependency that enforces a minimum role.

    Example:
        @router.post("/csv/import")
        async def run_import(user = Depends(require_role("contributor"))):
            ...

    Parameters
    ----------
    minimum : str
        The least privileged role that may call the route.

    Returns
    -------
    Callable
        A dependency function that returns UserContext if allowed.
    """
    if minimum not in ROLE_RANKS:
        raise ValueError(f"Unknown role: {minimum}")

    def check_role(
        user: UserContext = Depends(verify_access_token),
    ) -> UserContext:

        if not user.has_role(minimum):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role '{minimum}' or higher.",
            )

        return user

    return check_role
