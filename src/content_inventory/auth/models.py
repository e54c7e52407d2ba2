"""
Authentication Models

This module defines strongly-typed authentication and authorization models
used throughout the service after JWT verification.
"""

from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


# Ordered from least to most privileged.
ROLE_RANKS = {
    "reader": 0,
    "contributor": 1,
    "admin": 2,
}


class UserContext(BaseModel):
    """
    Authenticated user context derived from a verified JWT.

    This object is injected into all protected routes and identifies the
    owner of import sessions and created content items.
    """

    user_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the authenticated user (JWT 'sub' claim).",
    )

    email: Optional[str] = Field(
        default=None,
        description="Email address of the user, when the issuer provides it.",
    )

    role: str = Field(
        ...,
        description="Application role: reader, contributor or admin.",
    )

    model_config = ConfigDict(
        frozen=True,                # Makes UserContext immutable after creation
        arbitrary_types_allowed=False,
        extra="forbid",             # Prevents claim injection via unexpected fields
    )

    def has_role(self, minimum: str) -> bool:
        """Return True if this user's role is at least `minimum`."""
        return ROLE_RANKS.get(self.role, -1) >= ROLE_RANKS[minimum]
