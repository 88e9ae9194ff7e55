from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every persisted datetime."""

    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    uuid: str
    email: str
    name: str
    is_admin: bool = False
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_email_verified(self) -> bool:
        return self.email_verified_at is not None

    @classmethod
    def new(
        cls,
        user_id: int,
        email: str,
        name: str,
        *,
        is_admin: bool = False,
        now: Optional[datetime] = None,
    ) -> "User":
        stamp = now or utcnow()
        return cls(
            id=user_id,
            uuid=str(uuid.uuid4()),
            email=email,
            name=name,
            is_admin=is_admin,
            created_at=stamp,
            updated_at=stamp,
        )


@dataclass
class TokenRecord:
    """One credential lineage.

    ``version`` is the rotation marker embedded in every token issued for the
    record. Rotation bumps it, which permanently invalidates every token that
    still carries the previous value.
    """

    id: int
    uuid: str
    user_id: int
    version: int
    created_at: datetime
    name: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    @classmethod
    def new(
        cls,
        record_id: int,
        user_id: int,
        *,
        version: int = 1,
        expiration_minutes: Optional[int] = None,
        name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "TokenRecord":
        created_at = now or utcnow()
        expires_at = None
        if expiration_minutes is not None:
            expires_at = created_at + timedelta(minutes=expiration_minutes)
        return cls(
            id=record_id,
            uuid=str(uuid.uuid4()),
            user_id=user_id,
            version=version,
            created_at=created_at,
            name=name,
            expires_at=expires_at,
        )
