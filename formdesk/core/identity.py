"""
Caller identity passed explicitly into every service operation.

Credentials are verified upstream (auth gateway, session middleware);
the core only reads the already-verified id and role.
"""

from enum import Enum

from pydantic import BaseModel


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class CallerContext(BaseModel):
    """Who is making the call."""

    user_id: str | None = None
    role: Role = Role.USER
    authenticated: bool = False

    @property
    def is_admin(self) -> bool:
        return self.authenticated and self.role == Role.ADMIN

    def owns(self, owner_id: str | None) -> bool:
        return self.authenticated and owner_id is not None and self.user_id == owner_id

    def can_manage(self, owner_id: str | None) -> bool:
        """Owner or admin."""
        return self.is_admin or self.owns(owner_id)

    @classmethod
    def anonymous(cls) -> "CallerContext":
        return cls()

    @classmethod
    def user(cls, user_id: str) -> "CallerContext":
        return cls(user_id=user_id, role=Role.USER, authenticated=True)

    @classmethod
    def admin(cls, user_id: str) -> "CallerContext":
        return cls(user_id=user_id, role=Role.ADMIN, authenticated=True)
