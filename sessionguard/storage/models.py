from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


@dataclass
class RefreshToken:
    """One link of a refresh-token rotation chain.

    Rows are only ever marked (``rotated_at`` / ``revoked_at``), never
    mutated back, so the chain stays intact for forensics.
    """

    id: str
    secret_hash: str
    subject: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    rotated_at: Optional[datetime] = None
    successor_id: Optional[str] = None
    client_ip: Optional[str] = None
    client_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        subject: str,
        secret_hash: str,
        ttl_seconds: int,
        *,
        client_ip: str | None = None,
        client_agent: str | None = None,
        now: datetime | None = None,
    ) -> "RefreshToken":
        issued_at = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            secret_hash=secret_hash,
            subject=subject,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=ttl_seconds),
            client_ip=client_ip,
            client_agent=client_agent,
        )

    def is_usable(self, now: datetime) -> bool:
        return (
            self.revoked_at is None
            and self.rotated_at is None
            and now < self.expires_at
        )

    def status(self, now: datetime) -> str:
        if self.revoked_at is not None:
            return "revoked"
        if self.rotated_at is not None:
            return "rotated"
        if now >= self.expires_at:
            return "expired"
        return "active"


@dataclass
class AccessTokenBlacklistEntry:
    signature: str
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at
