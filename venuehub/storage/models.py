from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Account roles; admin unlocks back-office operations and emergency codes."""

    USER = "user"
    ADMIN = "admin"


@dataclass
class Account:
    id: str
    username: str
    password_hash: str
    role: Role = Role.USER
    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = False
    emergency_reset_codes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    # Bumped on every write; used for conditional updates
    version: int = 1

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def two_factor_provisioning(self) -> bool:
        """Secret issued but not yet confirmed."""
        return self.two_factor_secret is not None and not self.two_factor_enabled


@dataclass(frozen=True)
class Identity:
    account_id: str
    username: str
    role: Role
    login_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# Session state is a tagged union so "pending and authenticated at once"
# cannot be represented.


@dataclass(frozen=True)
class Anonymous:
    kind: str = field(default="anonymous", init=False)


@dataclass(frozen=True)
class Pending:
    account_id: str
    username: str
    since: datetime = field(default_factory=utcnow)
    kind: str = field(default="pending", init=False)


@dataclass(frozen=True)
class Authenticated:
    identity: Identity
    kind: str = field(default="authenticated", init=False)


SessionState = Union[Anonymous, Pending, Authenticated]

ANONYMOUS = Anonymous()


@dataclass
class Session:
    id: str
    created_at: datetime
    expires_at: datetime
    state: SessionState = ANONYMOUS
    # Set once a pending login on this id completed under a new id
    promoted_to: Optional[str] = None

    @classmethod
    def new(cls, ttl_minutes: int = 60 * 24, state: SessionState = ANONYMOUS) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            state=state,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    @property
    def identity(self) -> Optional[Identity]:
        if isinstance(self.state, Authenticated):
            return self.state.identity
        return None

    @property
    def pending(self) -> Optional[Pending]:
        if isinstance(self.state, Pending):
            return self.state
        return None
