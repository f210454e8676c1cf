"""Unit tests for refresh-token rotation.

Covers issuance, single-use rotation, reuse (breach) handling, concurrent
presentation of one secret, logout, chain lookup and the expiry purge.
"""

from datetime import datetime, timedelta, timezone

import pytest

from sessionguard.config import Settings
from sessionguard.service.blacklist import AccessTokenBlacklist
from sessionguard.service.errors import (
    InvalidRequestError,
    InvalidTokenError,
    UserNotFoundError,
)
from sessionguard.service.monitoring import SecurityMonitor
from sessionguard.service.rotation import TokenAuthority, hash_secret
from sessionguard.service.tokens import AccessTokenSigner
from sessionguard.storage.memory import MemoryStore

START = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    def epoch(self) -> float:
        return self.now.timestamp()


@pytest.fixture
def settings():
    return Settings(jwt_secret="rotation-unit-test-secret-0123456789abcdef")


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("alice@example.com")


@pytest.fixture
def monitor(recording_logger):
    monitor = SecurityMonitor(None, suspicious_threshold=10)
    monitor.logger = recording_logger
    return monitor


@pytest.fixture
def authority(store, settings, clock, monitor):
    signer = AccessTokenSigner(settings, clock=clock.epoch)
    blacklist = AccessTokenBlacklist(None, clock=clock.epoch)
    return TokenAuthority(store, signer, blacklist, monitor, settings, clock=clock)


async def test_issue_persists_only_the_hash(authority, store, user, settings):
    issued = await authority.issue(user.id, client_ip="10.0.0.1", client_agent="pytest")

    row = store.get_refresh_token_by_hash(hash_secret(issued.refresh_token))
    assert row is not None
    assert row.secret_hash != issued.refresh_token
    assert len(row.secret_hash) == 64
    assert row.subject == user.id
    assert row.client_ip == "10.0.0.1"
    assert (row.expires_at - row.issued_at).total_seconds() == settings.refresh_token_ttl_seconds
    assert issued.expires_in == settings.access_token_ttl_seconds
    assert issued.token_type == "bearer"


async def test_issue_secrets_are_long_and_distinct(authority, user):
    first = await authority.issue(user.id)
    second = await authority.issue(user.id)
    assert first.refresh_token != second.refresh_token
    assert len(first.refresh_token) >= 64


async def test_refresh_rotates_once(authority, store, user):
    issued = await authority.issue(user.id)
    rotated = await authority.refresh(issued.refresh_token)

    assert rotated.refresh_token != issued.refresh_token
    assert rotated.access_token != issued.access_token
    assert rotated.subject == user.id

    old = store.get_refresh_token_by_hash(hash_secret(issued.refresh_token))
    new = store.get_refresh_token_by_hash(hash_secret(rotated.refresh_token))
    assert old.rotated_at is not None
    assert old.successor_id == new.id
    assert new.is_usable(START)


async def test_successor_gets_a_fresh_lifetime(authority, store, user, clock, settings):
    issued = await authority.issue(user.id)
    clock.advance(3600)
    rotated = await authority.refresh(issued.refresh_token)

    new = store.get_refresh_token_by_hash(hash_secret(rotated.refresh_token))
    assert new.issued_at == clock.now
    assert new.expires_at == clock.now + timedelta(seconds=settings.refresh_token_ttl_seconds)


async def test_custom_chain_lifetime_survives_rotation(authority, store, user, clock):
    issued = await authority.issue(user.id, ttl=86400)
    clock.advance(600)
    second = await authority.refresh(issued.refresh_token)
    clock.advance(600)
    third = await authority.refresh(second.refresh_token)

    lifetimes = [
        (row.expires_at - row.issued_at).total_seconds()
        for row in await authority.rotation_chain(third.refresh_token)
    ]
    assert lifetimes == [86400.0, 86400.0, 86400.0]

    latest = store.get_refresh_token_by_hash(hash_secret(third.refresh_token))
    assert latest.expires_at == clock.now + timedelta(days=1)


@pytest.mark.parametrize("ttl", [0, -60])
async def test_non_positive_ttl_is_rejected(authority, store, user, ttl):
    with pytest.raises(InvalidRequestError):
        await authority.issue(user.id, ttl=ttl)
    assert store.refresh_tokens == {}


async def test_reuse_revokes_the_whole_chain(authority, store, user, recording_logger):
    first = await authority.issue(user.id)
    second = await authority.refresh(first.refresh_token)
    third = await authority.refresh(second.refresh_token)

    with pytest.raises(InvalidTokenError) as excinfo:
        await authority.refresh(first.refresh_token)
    assert excinfo.value.error_code == "invalid_token"
    assert excinfo.value.reason == "reuse_detected"

    # The legitimate holder's newest secret is dead too
    with pytest.raises(InvalidTokenError):
        await authority.refresh(third.refresh_token)

    chain = await authority.rotation_chain(third.refresh_token)
    assert len(chain) == 3
    assert all(link.revoked_at is not None for link in chain)

    breaches = recording_logger.named("auth.breach_detected")
    assert len(breaches) == 1
    assert breaches[0]["revoked_count"] == 3


async def test_second_refresh_of_same_secret_kills_first_result(authority, user):
    issued = await authority.issue(user.id)
    winner = await authority.refresh(issued.refresh_token)

    with pytest.raises(InvalidTokenError):
        await authority.refresh(issued.refresh_token)
    with pytest.raises(InvalidTokenError):
        await authority.refresh(winner.refresh_token)


async def test_expired_token_is_rejected(authority, store, user, clock, settings):
    issued = await authority.issue(user.id)
    clock.advance(settings.refresh_token_ttl_seconds)

    with pytest.raises(InvalidTokenError) as excinfo:
        await authority.refresh(issued.refresh_token)
    assert excinfo.value.reason == "expired"
    row = store.get_refresh_token_by_hash(hash_secret(issued.refresh_token))
    assert row.rotated_at is None


async def test_unknown_and_revoked_tokens_look_the_same(authority, user):
    issued = await authority.issue(user.id)
    await authority.logout(issued.refresh_token)

    with pytest.raises(InvalidTokenError) as revoked:
        await authority.refresh(issued.refresh_token)
    with pytest.raises(InvalidTokenError) as unknown:
        await authority.refresh("not-a-real-secret")

    assert revoked.value.reason == "revoked"
    assert unknown.value.reason == "unknown"
    assert revoked.value.message == unknown.value.message
    assert revoked.value.status_code == unknown.value.status_code == 401


async def test_empty_secret_is_a_bad_request(authority):
    with pytest.raises(InvalidRequestError):
        await authority.refresh("")
    with pytest.raises(InvalidRequestError):
        await authority.refresh(None)


async def test_deleted_user_does_not_consume_the_token(authority, store, user):
    issued = await authority.issue(user.id)
    store.delete_user(user.id)

    with pytest.raises(UserNotFoundError) as excinfo:
        await authority.refresh(issued.refresh_token)
    assert excinfo.value.error_code == "user_not_found"

    row = store.get_refresh_token_by_hash(hash_secret(issued.refresh_token))
    assert row.rotated_at is None
    assert row.revoked_at is None


async def test_losing_a_rotation_race_is_treated_as_breach(authority, store, user, recording_logger):
    issued = await authority.issue(user.id)
    # Another request flipped the row between our read and our update
    store.mark_rotated = lambda token_id, successor_id, rotated_at: False

    with pytest.raises(InvalidTokenError) as excinfo:
        await authority.refresh(issued.refresh_token)
    assert excinfo.value.reason == "rotation_race"

    rows = list(store.refresh_tokens.values())
    assert len(rows) == 2
    assert all(row.revoked_at is not None for row in rows)
    assert recording_logger.named("auth.breach_detected")


async def test_logout_is_idempotent(authority, store, user):
    issued = await authority.issue(user.id)
    await authority.logout(issued.refresh_token)
    await authority.logout(issued.refresh_token)
    await authority.logout("never-issued")

    row = store.get_refresh_token_by_hash(hash_secret(issued.refresh_token))
    assert row.revoked_at is not None


async def test_logout_requires_some_token(authority):
    with pytest.raises(InvalidRequestError):
        await authority.logout(None, None)


async def test_logout_blacklists_the_access_token(authority, user, clock):
    issued = await authority.issue(user.id)
    assert await authority.verify_access_token(issued.access_token) is not None

    await authority.logout(issued.refresh_token, issued.access_token)

    assert await authority.is_blacklisted(issued.access_token)
    assert await authority.is_blacklisted(issued.access_token.rsplit(".", 1)[1])
    assert await authority.verify_access_token(issued.access_token) is None


async def test_rotation_chain_is_oldest_first(authority, user):
    first = await authority.issue(user.id)
    second = await authority.refresh(first.refresh_token)
    await authority.refresh(second.refresh_token)

    chain = await authority.rotation_chain(second.refresh_token)
    assert [link.status(START) for link in chain] == ["rotated", "rotated", "active"]
    assert chain[0].successor_id == chain[1].id
    assert chain[1].successor_id == chain[2].id
    assert await authority.rotation_chain("missing") == []


async def test_purge_keeps_chains_with_a_live_link(authority, store, user, clock, settings):
    dead = await authority.issue(user.id, ttl=60)
    clock.advance(30)
    alive = await authority.issue(user.id, ttl=60)
    rotated = await authority.refresh(alive.refresh_token)
    clock.advance(70)

    preview = await authority.purge_expired(dry_run=True)
    assert preview == {"refresh_tokens": 1, "blacklist_entries": 0, "dry_run": True}
    assert len(store.refresh_tokens) == 3

    result = await authority.purge_expired()
    assert result["refresh_tokens"] == 1
    assert store.get_refresh_token_by_hash(hash_secret(dead.refresh_token)) is None
    # alive expired but its successor has not
    assert store.get_refresh_token_by_hash(hash_secret(alive.refresh_token)) is not None
    assert store.get_refresh_token_by_hash(hash_secret(rotated.refresh_token)) is not None


async def test_suspicious_refresh_rate_is_reported(store, settings, clock, recording_logger, user):
    monitor = SecurityMonitor(None, suspicious_threshold=2)
    monitor.logger = recording_logger
    authority = TokenAuthority(
        store,
        AccessTokenSigner(settings, clock=clock.epoch),
        AccessTokenBlacklist(None, clock=clock.epoch),
        monitor,
        settings,
        clock=clock,
    )
    issued = await authority.issue(user.id)
    secret = issued.refresh_token
    for _ in range(3):
        secret = (await authority.refresh(secret)).refresh_token

    warnings = recording_logger.named("auth.suspicious_refresh_activity")
    assert len(warnings) == 1
    assert warnings[0]["refresh_count"] == 3
