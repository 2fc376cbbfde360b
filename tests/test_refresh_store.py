"""
tests/test_refresh_store.py -- Refresh-token rotation, reuse detection and revocation.

Every behavioural test runs twice: against the in-process store and against
the Redis store on fakeredis, which executes the real Lua scripts. The two
backends must be indistinguishable through RefreshTokenStore.

Covers:
  - chain property: after N rotations exactly one token is active
  - reuse of a used token revokes the whole chain (descendants included)
  - concurrent rotations of one token: exactly one winner
  - revoke / revoke_chain / revoke_user, idempotent logout
  - expiry on read, Redis TTLs
"""

from __future__ import annotations

import threading
from datetime import timedelta

import fakeredis
import pytest

from auth.errors import InvalidToken, RefreshTokenExpired, ReuseDetected
from auth.refresh import RefreshTokenStore
from tokenstore.base import RotationOutcome, TokenRecordStore
from tokenstore.memory import MemoryTokenRecordStore
from tokenstore.redis_store import KEY_PREFIX, RedisTokenRecordStore


@pytest.fixture(params=["memory", "redis"])
def records(request):
    if request.param == "memory":
        yield MemoryTokenRecordStore()
    else:
        client = fakeredis.FakeRedis(decode_responses=True)
        yield RedisTokenRecordStore(client=client)
        client.flushall()


@pytest.fixture
def refresh(records, clock) -> RefreshTokenStore:
    return RefreshTokenStore(records, expire_seconds=3600, clock=clock)


def test_stores_satisfy_protocol(records):
    assert isinstance(records, TokenRecordStore)


def test_issue_starts_own_chain(refresh, clock):
    t0 = refresh.issue("user-1")
    assert t0.chain_root_id == t0.token_id
    assert t0.is_active
    assert t0.expires_at == clock() + timedelta(seconds=3600)
    stored = refresh.get(t0.token_id)
    assert stored == t0


def test_rotation_links_successor(refresh):
    t0 = refresh.issue("user-1")
    t1 = refresh.rotate(t0.token_id)

    assert t1.token_id != t0.token_id
    assert t1.chain_root_id == t0.token_id
    assert t1.user_id == "user-1"
    assert t1.is_active
    spent = refresh.get(t0.token_id)
    assert spent.used
    assert spent.successor_id == t1.token_id
    assert not spent.revoked


def test_chain_property_after_n_rotations(refresh):
    t0 = refresh.issue("user-1")
    current = t0
    for _ in range(5):
        current = refresh.rotate(current.token_id)

    chain = refresh.chain(t0.token_id)
    assert len(chain) == 6
    active = [r for r in chain if r.is_active]
    assert [r.token_id for r in active] == [current.token_id]
    assert all(r.used and r.successor_id for r in chain if r.token_id != current.token_id)


def test_reuse_revokes_whole_chain(refresh):
    """T0 -> T1, replay T0: ReuseDetected, and T1 is dead too."""
    t0 = refresh.issue("user-1")
    t1 = refresh.rotate(t0.token_id)

    with pytest.raises(ReuseDetected) as exc_info:
        refresh.rotate(t0.token_id)
    assert exc_info.value.user_id == "user-1"
    assert exc_info.value.chain_root_id == t0.token_id

    assert refresh.get(t1.token_id).revoked
    with pytest.raises(InvalidToken) as second:
        refresh.rotate(t1.token_id)
    assert not isinstance(second.value, ReuseDetected)


def test_reuse_leaves_other_chains_alone(refresh):
    t0 = refresh.issue("user-1")
    other = refresh.issue("user-1")
    refresh.rotate(t0.token_id)
    with pytest.raises(ReuseDetected):
        refresh.rotate(t0.token_id)
    assert refresh.get(other.token_id).is_active
    refresh.rotate(other.token_id)


def test_unknown_token_is_invalid(refresh):
    with pytest.raises(InvalidToken):
        refresh.rotate("no-such-token")


def test_expired_token(refresh, clock):
    t0 = refresh.issue("user-1")
    clock.advance(seconds=3601)
    with pytest.raises(RefreshTokenExpired):
        refresh.rotate(t0.token_id)


def test_revoked_token_cannot_rotate(refresh):
    t0 = refresh.issue("user-1")
    assert refresh.revoke(t0.token_id) is True
    with pytest.raises(InvalidToken):
        refresh.rotate(t0.token_id)


def test_revoke_is_idempotent(refresh):
    t0 = refresh.issue("user-1")
    assert refresh.revoke(t0.token_id) is True
    assert refresh.revoke(t0.token_id) is False
    assert refresh.revoke("never-issued") is False
    assert refresh.get(t0.token_id).revoked


def test_revoke_chain_counts_live_members(refresh):
    t0 = refresh.issue("user-1")
    t1 = refresh.rotate(t0.token_id)
    refresh.rotate(t1.token_id)
    assert refresh.revoke_chain(t0.token_id) == 3
    assert refresh.revoke_chain(t0.token_id) == 0


def test_revoke_user_revokes_every_chain(refresh):
    a = refresh.issue("user-1")
    b = refresh.issue("user-1")
    refresh.rotate(b.token_id)
    bystander = refresh.issue("user-2")

    assert refresh.revoke_user("user-1") == 3
    assert refresh.get(a.token_id).revoked
    assert refresh.get(bystander.token_id).is_active
    assert refresh.revoke_user("nobody") == 0


def test_concurrent_rotation_has_exactly_one_winner(clock):
    """Redis gets the same guarantee from running rotate as one Lua script."""
    refresh = RefreshTokenStore(MemoryTokenRecordStore(), expire_seconds=3600, clock=clock)
    t0 = refresh.issue("user-1")
    workers = 8
    barrier = threading.Barrier(workers)
    outcomes: list[str] = []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        try:
            refresh.rotate(t0.token_id)
            result = "rotated"
        except ReuseDetected:
            result = "reuse"
        except InvalidToken:
            result = "invalid"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("rotated") == 1
    assert outcomes.count("reuse") == workers - 1
    # The loser's reuse poisoned the chain, including the winner's successor.
    assert not any(r.is_active for r in refresh.chain(t0.token_id))


# ---------------------------------------------------------------------------
# Backend-specific behaviour
# ---------------------------------------------------------------------------


class TestMemoryStore:
    def test_purge_expired(self, clock):
        records = MemoryTokenRecordStore()
        refresh = RefreshTokenStore(records, expire_seconds=60, clock=clock)
        old = refresh.issue("user-1")
        clock.advance(seconds=30)
        fresh = refresh.issue("user-1")
        clock.advance(seconds=31)

        assert refresh.purge_expired() == 1
        assert refresh.get(old.token_id) is None
        assert refresh.get(fresh.token_id) is not None
        assert refresh.revoke_user("user-1") == 1

    def test_rotate_outcome_order(self, clock):
        records = MemoryTokenRecordStore()
        refresh = RefreshTokenStore(records, expire_seconds=60, clock=clock)
        t0 = refresh.issue("user-1")
        successor = refresh._new_record("", None)
        assert records.rotate("missing", successor, clock()) is RotationOutcome.NOT_FOUND
        refresh.revoke(t0.token_id)
        assert records.rotate(t0.token_id, successor, clock()) is RotationOutcome.REVOKED
        # Expiry is reported before any other state.
        assert records.rotate(t0.token_id, successor, clock() + timedelta(seconds=61)) is RotationOutcome.EXPIRED


class TestRedisStore:
    @pytest.fixture
    def client(self):
        client = fakeredis.FakeRedis(decode_responses=True)
        yield client
        client.flushall()

    def test_keys_carry_ttl_of_remaining_lifetime(self, client, clock):
        refresh = RefreshTokenStore(RedisTokenRecordStore(client=client), expire_seconds=3600, clock=clock)
        t0 = refresh.issue("user-1")
        token_ttl = client.ttl(f"{KEY_PREFIX}token:{t0.token_id}")
        assert 3590 <= token_ttl <= 3601
        assert 0 < client.ttl(f"{KEY_PREFIX}chain:{t0.token_id}") <= 3601
        assert 0 < client.ttl(f"{KEY_PREFIX}user:user-1") <= 3601

    def test_record_layout(self, client, clock):
        refresh = RefreshTokenStore(RedisTokenRecordStore(client=client), expire_seconds=3600, clock=clock)
        t0 = refresh.issue("user-1")
        t1 = refresh.rotate(t0.token_id)
        fields = client.hgetall(f"{KEY_PREFIX}token:{t0.token_id}")
        assert fields["used"] == "1"
        assert fields["revoked"] == "0"
        assert fields["successor_id"] == t1.token_id
        assert fields["chain_root_id"] == t0.token_id
        assert client.smembers(f"{KEY_PREFIX}chain:{t0.token_id}") == {t0.token_id, t1.token_id}
        assert client.smembers(f"{KEY_PREFIX}user:user-1") == {t0.token_id}

    def test_custom_prefix_isolates_namespaces(self, client, clock):
        a = RefreshTokenStore(RedisTokenRecordStore(client=client, prefix="a:"), clock=clock)
        b = RefreshTokenStore(RedisTokenRecordStore(client=client, prefix="b:"), clock=clock)
        token = a.issue("user-1")
        assert b.get(token.token_id) is None
        assert b.revoke_user("user-1") == 0

    def test_ping(self, client):
        assert RedisTokenRecordStore(client=client).ping() is True
