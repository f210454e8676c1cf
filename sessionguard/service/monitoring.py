from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Optional

from sessionguard.logging import SECURITY_LOGGER, get_logger
from sessionguard.storage.redis_cache import RedisCache

# Differentiated rejection reasons; only ever logged, never sent to clients
REJECT_UNKNOWN = "unknown"
REJECT_REVOKED = "revoked"
REJECT_EXPIRED = "expired"
REJECT_REUSE = "reuse_detected"
REJECT_RACE = "rotation_race"
REJECT_USER_NOT_FOUND = "user_not_found"

_WINDOW_SECONDS = 60


class SecurityMonitor:
    """Emits authentication events as structured log lines.

    Events go to the ``sessionguard.security`` logger for an external
    collector to pick up; nothing is stored here apart from the per-subject
    refresh counter used for the suspicious-activity warning.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        suspicious_threshold: int = 10,
        clock=time.monotonic,
    ) -> None:
        self.cache = cache
        self.suspicious_threshold = suspicious_threshold
        self._clock = clock
        self._refreshes: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self.logger = get_logger(SECURITY_LOGGER)

    def login_succeeded(self, subject: str, *, client_ip: Optional[str] = None) -> None:
        self.logger.info("auth.login_succeeded", subject=subject, client_ip=client_ip)

    def login_failed(self, *, client_ip: Optional[str] = None, reason: str) -> None:
        self.logger.warning("auth.login_failed", client_ip=client_ip, reason=reason)

    async def token_refreshed(
        self,
        subject: str,
        *,
        client_ip: Optional[str] = None,
        client_agent: Optional[str] = None,
    ) -> None:
        self.logger.info(
            "auth.token_refresh",
            subject=subject,
            client_ip=client_ip,
            client_agent=client_agent,
            outcome="success",
        )
        count = await self._count_refresh(subject)
        if count > self.suspicious_threshold:
            self.logger.warning(
                "auth.suspicious_refresh_activity",
                subject=subject,
                refresh_count=count,
                window_seconds=_WINDOW_SECONDS,
            )

    def refresh_rejected(
        self,
        reason: str,
        *,
        subject: Optional[str] = None,
        client_ip: Optional[str] = None,
        client_agent: Optional[str] = None,
    ) -> None:
        self.logger.warning(
            "auth.refresh_rejected",
            reason=reason,
            subject=subject,
            client_ip=client_ip,
            client_agent=client_agent,
            outcome="rejected",
        )

    def breach_detected(
        self,
        subject: str,
        *,
        refresh_id: str,
        revoked_count: int,
        client_ip: Optional[str] = None,
        client_agent: Optional[str] = None,
    ) -> None:
        self.logger.error(
            "auth.breach_detected",
            subject=subject,
            refresh_id=refresh_id,
            revoked_count=revoked_count,
            client_ip=client_ip,
            client_agent=client_agent,
        )

    def logged_out(self, subject: Optional[str], *, revoked: bool) -> None:
        self.logger.info("auth.logout", subject=subject, revoked=revoked)

    async def _count_refresh(self, subject: str) -> int:
        if self.cache:
            try:
                return await self.cache.count_refresh(subject, _WINDOW_SECONDS)
            except Exception as exc:
                # Counter is advisory; fall through to the local window
                self.logger.warning("refresh_counter_failed", error=str(exc))
        now = self._clock()
        with self._lock:
            window = self._refreshes[subject]
            window.append(now)
            while window and window[0] <= now - _WINDOW_SECONDS:
                window.popleft()
            return len(window)
