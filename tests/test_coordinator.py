"""Refresh scheduling and cross-tab propagation for SessionCoordinator."""

import asyncio
import time

import pytest

from sessionguard.client.api import RefreshRejected
from sessionguard.client.channel import (
    REFRESH_FAILED,
    REFRESH_SUCCESS,
    CrossTabMessage,
    InMemoryBroadcastBus,
)
from sessionguard.client import coordinator as coordinator_module
from sessionguard.client.coordinator import SessionCoordinator
from sessionguard.config import Settings
from sessionguard.service.tokens import AccessTokenSigner


class StepClock:
    """Wall clock that tests can push forward to simulate a sleeping tab."""

    def __init__(self):
        self.offset = 0.0

    def __call__(self) -> float:
        return time.time() + self.offset


class FakeRefresher:
    def __init__(self, expires_in: int = 3600, error: Exception | None = None):
        self.expires_in = expires_in
        self.error = error
        self.calls = 0

    async def __call__(self) -> int:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.expires_in


class Redirects:
    def __init__(self):
        self.count = 0

    def __call__(self) -> None:
        self.count += 1


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="coordinator-unit-test-secret-0123456789",
        refresh_threshold_seconds=300,
        liveness_check_interval_seconds=0.05,
        leader_ack_timeout_seconds=0.02,
    )


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def bus():
    return InMemoryBroadcastBus.named("session_refresh_sync")


def make_tab(bus, tab_id, settings, clock, refresher=None, redirect=None):
    return SessionCoordinator(
        bus.open(tab_id),
        refresher or FakeRefresher(),
        redirect or Redirects(),
        settings=settings,
        clock=clock,
    )


async def wait_until(predicate, timeout: float = 1.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


async def test_refresh_fires_immediately_inside_threshold(bus, settings, clock):
    refresher = FakeRefresher(expires_in=3600)
    tab = make_tab(bus, "tab-a", settings, clock, refresher)

    await tab.start(clock() + 200)
    assert await wait_until(lambda: refresher.calls == 1)
    await asyncio.sleep(0.05)

    assert refresher.calls == 1
    assert tab.state.seconds_left(clock()) == pytest.approx(3600, abs=2)
    assert tab._timer is not None
    await tab.close()


async def test_refresh_waits_until_threshold(bus, settings, clock):
    refresher = FakeRefresher()
    tab = make_tab(bus, "tab-a", settings, clock, refresher)

    await tab.start(clock() + 1000)
    assert await wait_until(lambda: tab.is_leader)
    assert refresher.calls == 0
    # Scheduled roughly 700 seconds out
    assert tab._timer.when() - asyncio.get_running_loop().time() == pytest.approx(700, abs=2)
    await tab.close()


async def test_followers_adopt_leader_expiry_without_refreshing(bus, settings, clock):
    leader_refresher = FakeRefresher(expires_in=3600)
    follower_refresher = FakeRefresher()
    leader = make_tab(bus, "tab-a", settings, clock, leader_refresher)
    await leader.start(clock() + 1000)
    assert await wait_until(lambda: leader.is_leader)

    follower = make_tab(bus, "tab-b", settings, clock, follower_refresher)
    await follower.start(clock() + 1000)
    await asyncio.sleep(0.1)
    assert not follower.is_leader
    assert follower._timer is None

    leader.state.expires_at = clock() + 100
    leader.schedule_refresh()
    assert await wait_until(lambda: leader_refresher.calls == 1)
    assert await wait_until(lambda: follower.state.seconds_left(clock()) > 3000)

    assert follower_refresher.calls == 0
    assert follower.state.seconds_left(clock()) == pytest.approx(3600, abs=2)
    await leader.close()
    await follower.close()


async def test_failure_ends_every_tab_without_retry(bus, settings, clock):
    refresher = FakeRefresher(error=RefreshRejected("refresh rejected", status_code=401))
    leader_redirect, follower_redirect = Redirects(), Redirects()
    leader = make_tab(bus, "tab-a", settings, clock, refresher, leader_redirect)
    await leader.start(clock() + 1000)
    assert await wait_until(lambda: leader.is_leader)
    follower = make_tab(bus, "tab-b", settings, clock, redirect=follower_redirect)
    await follower.start(clock() + 1000)
    await asyncio.sleep(0.05)

    leader.state.expires_at = clock() + 10
    leader.schedule_refresh()
    assert await wait_until(lambda: follower_redirect.count == 1)
    await asyncio.sleep(0.1)

    assert refresher.calls == 1
    assert leader_redirect.count == 1
    assert leader.state.expires_at is None
    assert follower.state.expires_at is None
    assert leader._timer is None
    await leader.close()
    await follower.close()


async def test_redirect_error_during_refresh_is_logged(
    bus, settings, clock, recording_logger, monkeypatch
):
    monkeypatch.setattr(coordinator_module, "logger", recording_logger)

    def broken_redirect():
        raise RuntimeError("navigation blocked")

    refresher = FakeRefresher(error=RefreshRejected("refresh rejected", status_code=401))
    tab = make_tab(bus, "tab-a", settings, clock, refresher, broken_redirect)
    await tab.start(clock() + 10)

    assert await wait_until(lambda: recording_logger.named("session_refresh_task_failed"))
    (event,) = recording_logger.named("session_refresh_task_failed")
    assert event["tab_id"] == "tab-a"
    assert event["error"] == "navigation blocked"
    assert isinstance(event["exc_info"], RuntimeError)
    assert refresher.calls == 1
    await tab.close()


async def test_failover_resumes_scheduling(bus, settings, clock):
    first = make_tab(bus, "tab-a", settings, clock)
    await first.start(clock() + 1000)
    assert await wait_until(lambda: first.is_leader)
    second = make_tab(bus, "tab-b", settings, clock)
    await second.start(clock() + 1000)
    await asyncio.sleep(0.05)
    assert second._timer is None

    await first.close()
    assert await wait_until(lambda: second.is_leader)
    assert second._timer is not None
    assert second.state.is_leader
    await second.close()


async def test_close_cancels_the_timer(bus, settings, clock):
    tab = make_tab(bus, "tab-a", settings, clock)
    await tab.start(clock() + 1000)
    assert await wait_until(lambda: tab._timer is not None)
    timer = tab._timer

    await tab.close()
    assert tab._timer is None
    assert timer.cancelled()
    assert not tab.is_leader
    assert bus.endpoints == []


async def test_visible_again_after_sleep_refreshes(bus, settings, clock):
    refresher = FakeRefresher()
    tab = make_tab(bus, "tab-a", settings, clock, refresher)
    await tab.start(clock() + 1000)
    assert await wait_until(lambda: tab.is_leader)

    # Laptop lid closed long enough to blow through the threshold
    clock.offset += 800
    tab.on_visible()
    assert await wait_until(lambda: refresher.calls == 1)
    await tab.close()


async def test_visible_on_follower_does_nothing(bus, settings, clock):
    leader = make_tab(bus, "tab-a", settings, clock)
    await leader.start(clock() + 1000)
    assert await wait_until(lambda: leader.is_leader)
    refresher = FakeRefresher()
    follower = make_tab(bus, "tab-b", settings, clock, refresher)
    await follower.start(clock() + 10)
    await asyncio.sleep(0.1)

    follower.on_visible()
    await asyncio.sleep(0.02)
    assert refresher.calls == 0
    assert follower._timer is None
    await leader.close()
    await follower.close()


async def test_start_reads_expiry_from_access_token(bus, settings, clock):
    token, exp = AccessTokenSigner(settings).mint("user-1")
    tab = make_tab(bus, "tab-a", settings, clock)
    await tab.start(access_token=token)
    assert tab.state.expires_at == float(exp)
    await tab.close()


async def test_peer_messages_update_state(bus, settings, clock):
    redirect = Redirects()
    tab = make_tab(bus, "tab-b", settings, clock, redirect=redirect)
    await tab.start(clock() + 1000)
    peer = bus.open("tab-a")

    peer.send(CrossTabMessage(REFRESH_SUCCESS, "tab-a", expires_in=1800, timestamp=clock()))
    await asyncio.sleep(0.01)
    assert tab.state.seconds_left(clock()) == pytest.approx(1800, abs=2)

    peer.send(CrossTabMessage(REFRESH_FAILED, "tab-a", timestamp=clock()))
    await asyncio.sleep(0.01)
    assert tab.state.expires_at is None
    assert redirect.count == 1
    await tab.close()
