from __future__ import annotations

from typing import Optional

import httpx

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class RefreshRejected(Exception):
    """The server refused the refresh or could not be reached."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class AuthApiClient:
    """HTTP side of a tab: logs in, refreshes and logs out.

    The refresh token travels in the http-only cookie the server sets, so
    the client's cookie jar is the only place it lives unless a caller
    passes one explicitly.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
            follow_redirects=False,
        )
        self.access_token: Optional[str] = None

    async def __aenter__(self) -> "AuthApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _error_code(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        return body.get("error") if isinstance(body, dict) else None

    async def login(self, email: str, password: str) -> dict:
        response = await self._client.post(
            "/auth/login", json={"email": email, "password": password}
        )
        response.raise_for_status()
        body = response.json()
        self.access_token = body.get("access_token")
        return body

    async def refresh(self, refresh_token: Optional[str] = None) -> int:
        """Rotate the refresh token and return the new ``expires_in``.

        Any non-200 answer, malformed body or transport error raises
        ``RefreshRejected``.
        """
        payload = {"refresh_token": refresh_token} if refresh_token else {}
        try:
            response = await self._client.post("/auth/refresh", json=payload)
        except httpx.HTTPError as exc:
            logger.warning("refresh_transport_error", error=str(exc))
            raise RefreshRejected(f"refresh request failed: {exc}") from exc
        if response.status_code != 200:
            error_code = self._error_code(response)
            logger.info(
                "refresh_rejected_by_server",
                status_code=response.status_code,
                error_code=error_code,
            )
            raise RefreshRejected(
                "refresh rejected",
                status_code=response.status_code,
                error_code=error_code,
            )
        try:
            body = response.json()
            expires_in = int(body["expires_in"])
        except (ValueError, KeyError, TypeError) as exc:
            raise RefreshRejected("refresh response malformed", status_code=200) from exc
        self.access_token = body.get("access_token")
        return expires_in

    async def logout(self, refresh_token: Optional[str] = None) -> None:
        payload = {}
        if refresh_token:
            payload["refresh_token"] = refresh_token
        if self.access_token:
            payload["access_token"] = self.access_token
        response = await self._client.post("/auth/logout", json=payload)
        response.raise_for_status()
        self.access_token = None
