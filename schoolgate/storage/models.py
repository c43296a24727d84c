from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

ROLES = ("student", "parent", "faculty", "admin")
OTP_LOGIN_ROLES = frozenset({"student", "parent"})
PASSWORD_LOGIN_ROLES = frozenset({"faculty", "admin"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Organization:
    id: int
    name: str
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class User:
    id: str
    role: str
    org_id: int
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    username: Optional[str] = None
    register_number: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: bool = True
    password_hash: Optional[str] = None
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(cls, role: str, org_id: int, **kwargs) -> "User":
        return cls(id=str(uuid.uuid4()), role=role, org_id=org_id, **kwargs)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if not self.locked_until:
            return False
        locked_until = self.locked_until
        if locked_until.tzinfo is None:
            locked_until = locked_until.replace(tzinfo=timezone.utc)
        return (now or _utcnow()) < locked_until


@dataclass(frozen=True)
class Membership:
    """One organization a user belongs to, in the order it should be offered."""

    organization_id: int
    role: str
    is_primary: bool = False
    organization_name: Optional[str] = None
