from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from sessionguard.client.channel import (
    REFRESH_FAILED,
    REFRESH_SUCCESS,
    CrossTabMessage,
    TabChannel,
)
from sessionguard.client.election import LeaderElection
from sessionguard.client.state import ClientSessionState, expiry_from_access_token
from sessionguard.config import Settings, get_settings
from sessionguard.logging import get_logger

logger = get_logger(__name__)

Refresher = Callable[[], Awaitable[int]]


class SessionCoordinator:
    """Keeps one tab's session alive in step with its sibling tabs.

    Only the elected leader talks to the refresh endpoint; it schedules one
    refresh ``refresh_threshold_seconds`` ahead of expiry and broadcasts the
    outcome. Followers adopt the new expiry or end the session on failure.
    """

    def __init__(
        self,
        channel: TabChannel,
        refresher: Refresher,
        on_redirect: Callable[[], None],
        *,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
        election: Optional[LeaderElection] = None,
    ) -> None:
        settings = settings or get_settings()
        self.channel = channel
        self.refresher = refresher
        self.on_redirect = on_redirect
        self.refresh_threshold = settings.refresh_threshold_seconds
        self._clock = clock
        self.election = election or LeaderElection(
            channel,
            liveness_interval=settings.liveness_check_interval_seconds,
            ack_timeout=settings.leader_ack_timeout_seconds,
            clock=clock,
        )
        self.state = ClientSessionState()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._inflight: Optional[asyncio.Task] = None
        self._closed = False
        channel.on_message(self._handle_message)
        self.election.on_change(self._on_leadership_change)

    @property
    def is_leader(self) -> bool:
        return self.election.is_leader

    async def start(
        self, expires_at: Optional[float] = None, *, access_token: Optional[str] = None
    ) -> None:
        if expires_at is None:
            expires_at = expiry_from_access_token(access_token)
        self.state.expires_at = expires_at
        await self.election.start()

    async def close(self) -> None:
        self._closed = True
        self._cancel_timer()
        await self.election.stop()
        self.state.is_leader = False
        self.channel.close()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_leadership_change(self, is_leader: bool) -> None:
        self.state.is_leader = is_leader
        self._cancel_timer()
        if is_leader:
            self.schedule_refresh()

    def schedule_refresh(self) -> None:
        """Arm the single refresh timer; followers never hold one."""
        self._cancel_timer()
        if self._closed or not self.is_leader or self.state.expires_at is None:
            return
        refresh_in = (self.state.expires_at - self._clock()) - self.refresh_threshold
        if refresh_in <= 0:
            logger.info("session_refresh_due_now", tab_id=self.channel.tab_id)
            self._fire()
            return
        self._timer = asyncio.get_running_loop().call_later(refresh_in, self._fire)
        logger.debug("session_refresh_scheduled", tab_id=self.channel.tab_id, refresh_in=refresh_in)

    def on_visible(self) -> None:
        """Re-evaluate the timer when a backgrounded tab comes back into view."""
        if self.is_leader:
            self.schedule_refresh()

    def _fire(self) -> None:
        self._timer = None
        if self._inflight is not None and not self._inflight.done():
            return
        self._inflight = asyncio.ensure_future(self.on_refresh_fire())
        self._inflight.add_done_callback(self._log_fire_error)

    def _log_fire_error(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "session_refresh_task_failed",
                tab_id=self.channel.tab_id,
                error=str(exc),
                exc_info=exc,
            )

    async def on_refresh_fire(self) -> None:
        if self._closed or not self.is_leader:
            return
        try:
            expires_in = int(await self.refresher())
        except Exception as exc:
            # No retry: a rejected refresh means the session is gone
            logger.warning(
                "session_refresh_failed",
                tab_id=self.channel.tab_id,
                error_type=type(exc).__name__,
            )
            self.channel.send(
                CrossTabMessage(REFRESH_FAILED, self.channel.tab_id, timestamp=self._clock())
            )
            self._end_session()
            return
        self.state.expires_at = self._clock() + expires_in
        self.channel.send(
            CrossTabMessage(
                REFRESH_SUCCESS,
                self.channel.tab_id,
                expires_in=expires_in,
                timestamp=self._clock(),
            )
        )
        logger.info("session_refreshed", tab_id=self.channel.tab_id, expires_in=expires_in)
        self.schedule_refresh()

    def _end_session(self) -> None:
        self._cancel_timer()
        self.state.clear()
        self.on_redirect()

    def _handle_message(self, message: CrossTabMessage) -> None:
        if self._closed:
            return
        if message.type == REFRESH_SUCCESS and message.expires_in is not None:
            self.state.expires_at = self._clock() + message.expires_in
            if self.is_leader:
                self.schedule_refresh()
        elif message.type == REFRESH_FAILED:
            logger.info("session_ended_by_peer", tab_id=self.channel.tab_id, sender=message.sender)
            self._end_session()
