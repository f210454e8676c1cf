from __future__ import annotations

import hashlib
import math
import threading
import time
from typing import Dict, Optional

from sessionguard.logging import get_logger
from sessionguard.service.tokens import AccessTokenSigner
from sessionguard.storage.redis_cache import RedisCache


def signature_key(token_or_signature: str) -> str:
    """Hash the signature segment so raw signatures never land in redis."""
    signature = AccessTokenSigner.signature_of(token_or_signature)
    return hashlib.sha256(signature.encode()).hexdigest()


class AccessTokenBlacklist:
    """Short-lived denylist for access tokens revoked before their ``exp``.

    Redis owns expiry when configured. Without redis, entries live in a dict
    and are dropped the first time they are read past their expiry, or by
    ``prune``.
    """

    def __init__(self, cache: Optional[RedisCache] = None, *, clock=time.time) -> None:
        self.cache = cache
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    async def add(self, token: str, expires_at: float) -> None:
        remaining = expires_at - self._clock()
        if remaining <= 0:
            return
        key = signature_key(token)
        if self.cache:
            # Rounded up so the key never lapses before the token's exp
            await self.cache.denylist_access_token(key, math.ceil(remaining * 1000))
        else:
            with self._lock:
                self._entries[key] = float(expires_at)
        self.logger.info("access_token_blacklisted", ttl_seconds=math.ceil(remaining))

    async def contains(self, token_or_signature: str) -> bool:
        if not token_or_signature:
            return False
        key = signature_key(token_or_signature)
        if self.cache:
            # Errors propagate so a redis outage fails closed
            return await self.cache.is_access_token_denylisted(key)
        with self._lock:
            expires_at = self._entries.get(key)
            if expires_at is None:
                return False
            if self._clock() >= expires_at:
                self._entries.pop(key, None)
                return False
            return True

    def prune(self) -> int:
        """Drop dead in-process entries; redis expires its own."""
        now = self._clock()
        with self._lock:
            dead = [key for key, exp in self._entries.items() if exp <= now]
            for key in dead:
                del self._entries[key]
        return len(dead)
