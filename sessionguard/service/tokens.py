from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Optional, Tuple

from sessionguard.config import Settings
from sessionguard.logging import get_logger

logger = get_logger(__name__)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class AccessTokenSigner:
    """Mints and verifies compact HS256 access tokens.

    Only what the rotation flow needs: a subject, a ``jti`` and an expiry.
    """

    def __init__(self, settings: Settings, *, clock=time.time) -> None:
        self.settings = settings
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def mint(self, subject: str, *, ttl_seconds: Optional[int] = None) -> Tuple[str, int]:
        """Return ``(token, exp)`` where ``exp`` is epoch seconds."""
        issued = int(self._clock())
        exp = issued + int(ttl_seconds or self.settings.access_token_ttl_seconds)
        header = {"alg": "HS256", "typ": "JWT"}
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "jti": str(uuid.uuid4()),
            "iat": issued,
            "exp": exp,
            "token_type": "access",
        }
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}", exp

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Verify and return the claims, or None if the token is not acceptable."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            logger.warning("access_token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("access_token_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("access_token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or payload.get("token_type") != "access":
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock():
            return None
        return payload

    @staticmethod
    def signature_of(token: str) -> str:
        """Return the signature segment; a bare signature is returned unchanged."""
        return token.rsplit(".", 1)[-1]

    @staticmethod
    def expiry_of(token: str) -> Optional[int]:
        """Read ``exp`` without verifying the signature."""
        parts = token.split(".")
        if len(parts) != 3:
            return None
        try:
            payload = json.loads(_decode_segment(parts[1]))
            return int(payload["exp"])
        except (ValueError, KeyError, TypeError):
            # TypeError covers a non-object payload
            return None
