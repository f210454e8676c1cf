from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service import monitoring
from sessionguard.service.blacklist import AccessTokenBlacklist
from sessionguard.service.errors import (
    InvalidRequestError,
    InvalidTokenError,
    UserNotFoundError,
)
from sessionguard.service.monitoring import SecurityMonitor
from sessionguard.service.tokens import AccessTokenSigner
from sessionguard.storage.models import RefreshToken, utcnow

# 48 bytes -> 384 bits of entropy, 64 url-safe characters
_SECRET_BYTES = 48


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    subject: str
    token_type: str = "bearer"

    def as_response(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


class TokenAuthority:
    """Issues, rotates and revokes refresh tokens.

    Each refresh token is single-use. Exchanging one marks it rotated and
    links it to its successor; presenting a rotated token again is treated
    as theft and revokes everything downstream of it. All rejections surface
    as ``InvalidTokenError`` and the real cause is reported only to the
    ``SecurityMonitor``.
    """

    def __init__(
        self,
        store,
        signer: AccessTokenSigner,
        blacklist: AccessTokenBlacklist,
        monitor: SecurityMonitor,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.blacklist = blacklist
        self.monitor = monitor
        self.settings = settings
        self._clock = clock
        self.logger = get_logger(__name__)

    def _mint(self, subject: str, secret: str) -> IssuedTokens:
        access_token, exp = self.signer.mint(subject)
        expires_in = max(0, int(exp - self._clock().timestamp()))
        return IssuedTokens(
            access_token=access_token,
            refresh_token=secret,
            expires_in=expires_in,
            subject=subject,
        )

    def _new_refresh_token(
        self,
        subject: str,
        now: datetime,
        *,
        ttl: Optional[int] = None,
        client_ip: Optional[str] = None,
        client_agent: Optional[str] = None,
    ) -> tuple[RefreshToken, str]:
        if ttl is None:
            ttl = self.settings.refresh_token_ttl_seconds
        if ttl <= 0:
            raise InvalidRequestError("refresh token ttl must be positive")
        secret = secrets.token_urlsafe(_SECRET_BYTES)
        row = RefreshToken.new(
            subject,
            hash_secret(secret),
            ttl,
            client_ip=client_ip,
            client_agent=client_agent,
            now=now,
        )
        self.store.insert_refresh_token(row)
        return row, secret

    async def issue(
        self,
        subject: str,
        *,
        client_ip: Optional[str] = None,
        client_agent: Optional[str] = None,
        ttl: Optional[int] = None,
    ) -> IssuedTokens:
        """Start a new rotation chain for ``subject``."""
        now = self._clock()
        row, secret = self._new_refresh_token(
            subject, now, ttl=ttl, client_ip=client_ip, client_agent=client_agent
        )
        self.logger.info("refresh_chain_started", subject=subject, refresh_id=row.id)
        return self._mint(subject, secret)

    async def refresh(
        self,
        secret: Optional[str],
        *,
        client_ip: Optional[str] = None,
        client_agent: Optional[str] = None,
    ) -> IssuedTokens:
        if not secret:
            raise InvalidRequestError("refresh_token is required")
        now = self._clock()
        current = self.store.get_refresh_token_by_hash(hash_secret(secret))
        if current is None:
            self._reject(monitoring.REJECT_UNKNOWN, None, client_ip, client_agent)
        if current.revoked_at is not None:
            self._reject(monitoring.REJECT_REVOKED, current.subject, client_ip, client_agent)
        if now >= current.expires_at:
            self._reject(monitoring.REJECT_EXPIRED, current.subject, client_ip, client_agent)
        if current.rotated_at is not None:
            self._respond_to_breach(
                current, monitoring.REJECT_REUSE, now, client_ip, client_agent
            )

        if self.store.get_user(current.subject) is None:
            self.monitor.refresh_rejected(
                monitoring.REJECT_USER_NOT_FOUND,
                subject=current.subject,
                client_ip=client_ip,
                client_agent=client_agent,
            )
            raise UserNotFoundError("user no longer exists")

        # Successors keep the chain's lifetime, counted from their own rotation
        chain_ttl = int((current.expires_at - current.issued_at).total_seconds())
        successor, new_secret = self._new_refresh_token(
            current.subject,
            now,
            ttl=chain_ttl,
            client_ip=client_ip,
            client_agent=client_agent,
        )
        if not self.store.mark_rotated(current.id, successor.id, now):
            # Another request consumed the same secret first
            self.store.revoke_refresh_token(successor.id, now)
            self._respond_to_breach(
                current, monitoring.REJECT_RACE, now, client_ip, client_agent
            )

        await self.monitor.token_refreshed(
            current.subject, client_ip=client_ip, client_agent=client_agent
        )
        return self._mint(current.subject, new_secret)

    def _reject(
        self,
        reason: str,
        subject: Optional[str],
        client_ip: Optional[str],
        client_agent: Optional[str],
    ) -> None:
        self.monitor.refresh_rejected(
            reason, subject=subject, client_ip=client_ip, client_agent=client_agent
        )
        raise InvalidTokenError(reason)

    def _respond_to_breach(
        self,
        token: RefreshToken,
        reason: str,
        now: datetime,
        client_ip: Optional[str],
        client_agent: Optional[str],
    ) -> None:
        revoked = self.store.revoke_chain(token.id, now)
        self.monitor.breach_detected(
            token.subject,
            refresh_id=token.id,
            revoked_count=revoked,
            client_ip=client_ip,
            client_agent=client_agent,
        )
        self._reject(reason, token.subject, client_ip, client_agent)

    async def logout(
        self, secret: Optional[str], access_token: Optional[str] = None
    ) -> None:
        """Revoke the refresh token and blacklist the access token; repeat calls are no-ops."""
        if not secret and not access_token:
            raise InvalidRequestError("refresh_token or access_token is required")
        subject = None
        revoked = False
        if secret:
            row = self.store.get_refresh_token_by_hash(hash_secret(secret))
            if row is not None:
                subject = row.subject
                if row.revoked_at is None:
                    revoked = self.store.revoke_refresh_token(row.id, self._clock())
        if access_token:
            claims = self.signer.decode(access_token)
            if claims is not None:
                subject = subject or claims.get("sub")
                await self.blacklist.add(access_token, float(claims["exp"]))
        self.monitor.logged_out(subject, revoked=revoked)

    async def is_blacklisted(self, access_token_or_signature: str) -> bool:
        return await self.blacklist.contains(access_token_or_signature)

    async def verify_access_token(self, access_token: str) -> Optional[dict]:
        """Claims for a valid, non-blacklisted access token, else None."""
        if await self.is_blacklisted(access_token):
            self.logger.info("access_token_blacklisted_use")
            return None
        return self.signer.decode(access_token)

    async def rotation_chain(self, secret: str) -> List[RefreshToken]:
        """Every link of the chain holding ``secret``, oldest first."""
        row = self.store.get_refresh_token_by_hash(hash_secret(secret))
        if row is None:
            return []
        return self.store.rotation_chain(row.id)

    async def purge_expired(
        self, before: Optional[datetime] = None, *, dry_run: bool = False
    ) -> dict:
        cutoff = before or self._clock()
        if dry_run:
            return {
                "refresh_tokens": self.store.count_expired_refresh_tokens(cutoff),
                "blacklist_entries": 0,
                "dry_run": True,
            }
        deleted = self.store.delete_expired_refresh_tokens(cutoff)
        pruned = self.blacklist.prune()
        self.logger.info("token_purge_completed", refresh_rows=deleted, blacklist_entries=pruned)
        return {"refresh_tokens": deleted, "blacklist_entries": pruned, "dry_run": False}
