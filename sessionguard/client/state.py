from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sessionguard.service.tokens import AccessTokenSigner


@dataclass
class ClientSessionState:
    """What one tab believes about the session.

    Rebuilt from the access token on every load; nothing here is persisted.
    """

    expires_at: Optional[float] = None
    is_leader: bool = False

    def seconds_left(self, now: float) -> Optional[float]:
        if self.expires_at is None:
            return None
        return self.expires_at - now

    def clear(self) -> None:
        self.expires_at = None


def expiry_from_access_token(access_token: Optional[str]) -> Optional[float]:
    """Epoch expiry read from the token's ``exp`` claim, or None if unreadable."""
    if not access_token:
        return None
    exp = AccessTokenSigner.expiry_of(access_token)
    return float(exp) if exp is not None else None
