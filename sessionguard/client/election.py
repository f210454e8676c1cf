from __future__ import annotations

import asyncio
import time
from typing import Callable, List, Optional

from sessionguard.client.channel import (
    LEADER_ACK,
    LEADER_PING,
    CrossTabMessage,
    TabChannel,
)
from sessionguard.logging import get_logger

logger = get_logger(__name__)

LeadershipListener = Callable[[bool], None]


class LeaderElection:
    """Picks the one tab allowed to refresh.

    Every tab claims leadership when it starts and announces itself with a
    ping. Claiming tabs answer pings with an ack carrying the time of their
    claim; a claimant that hears an ack from an older claim (ties broken by
    tab id) steps down, so concurrent claims settle on the senior tab. A
    claim becomes leadership, and listeners hear about it, only once it has
    gone ``ack_timeout`` seconds unchallenged.

    Followers ping every ``liveness_interval`` seconds and claim again when
    no ack arrives within ``ack_timeout``.
    """

    def __init__(
        self,
        channel: TabChannel,
        *,
        liveness_interval: float = 10.0,
        ack_timeout: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.channel = channel
        self.tab_id = channel.tab_id
        self.liveness_interval = liveness_interval
        self.ack_timeout = ack_timeout
        self._clock = clock
        self.is_leader = False
        self.claimed_at: Optional[float] = None
        self._listeners: List[LeadershipListener] = []
        self._ack_waiter: Optional[asyncio.Event] = None
        self._confirm_handle: Optional[asyncio.TimerHandle] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        channel.on_message(self._handle_message)

    @property
    def claiming(self) -> bool:
        return self.claimed_at is not None

    def on_change(self, listener: LeadershipListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._claim()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._running = False
        self._cancel_confirm()
        self.claimed_at = None
        self.is_leader = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def _cancel_confirm(self) -> None:
        if self._confirm_handle is not None:
            self._confirm_handle.cancel()
            self._confirm_handle = None

    def _claim(self) -> None:
        self.claimed_at = self._clock()
        self.channel.send(
            CrossTabMessage(LEADER_PING, self.tab_id, claimed_at=self.claimed_at)
        )
        self._cancel_confirm()
        self._confirm_handle = asyncio.get_running_loop().call_later(
            self.ack_timeout, self._confirm
        )

    def _confirm(self) -> None:
        self._confirm_handle = None
        if self._running and self.claiming:
            self._set_leader(True)

    def _step_down(self) -> None:
        self._cancel_confirm()
        self.claimed_at = None
        self._set_leader(False)

    def _set_leader(self, value: bool) -> None:
        if value == self.is_leader:
            return
        self.is_leader = value
        logger.info("tab_leadership_changed", tab_id=self.tab_id, is_leader=value)
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception as exc:
                logger.error("leadership_listener_failed", tab_id=self.tab_id, error=str(exc))

    def _send_ack(self) -> None:
        self.channel.send(
            CrossTabMessage(LEADER_ACK, self.tab_id, claimed_at=self.claimed_at)
        )

    def _outranks_me(self, message: CrossTabMessage) -> bool:
        theirs = message.claimed_at if message.claimed_at is not None else float("inf")
        return (theirs, message.sender) < (self.claimed_at, self.tab_id)

    def _handle_message(self, message: CrossTabMessage) -> None:
        if not self._running:
            return
        if message.type == LEADER_PING:
            if self.claiming:
                self._send_ack()
        elif message.type == LEADER_ACK:
            if self._ack_waiter is not None:
                self._ack_waiter.set()
            if self.claiming:
                if self._outranks_me(message):
                    self._step_down()
                else:
                    # Junior claimant still out there; tell it who is senior
                    self._send_ack()

    async def _leader_alive(self) -> bool:
        waiter = asyncio.Event()
        self._ack_waiter = waiter
        try:
            self.channel.send(CrossTabMessage(LEADER_PING, self.tab_id))
            await asyncio.wait_for(waiter.wait(), self.ack_timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            self._ack_waiter = None

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.liveness_interval)
            if not self._running or self.claiming:
                continue
            if not await self._leader_alive() and self._running and not self.claiming:
                logger.info("tab_leader_missing", tab_id=self.tab_id)
                self._claim()
