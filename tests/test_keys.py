"""
tests/test_keys.py -- KeyManager rotation, grace window, persistence, atomic swap and shared-ring reload.
"""

from __future__ import annotations

import threading

import pytest

from auth.errors import CryptoError
from auth.keys import KeyManager
from auth.store import CredentialStore, SigningKeyStore

PASSPHRASE = "p" * 32


@pytest.fixture
def key_store():
    store = CredentialStore("sqlite:///:memory:")
    yield SigningKeyStore(store.engine)
    store.close()


def test_first_key_generated_on_start(clock):
    keys = KeyManager("ES256", 1800, clock=clock)
    active = keys.active_key()
    assert active.active
    assert active.algorithm == "ES256"
    assert active.private_pem is not None
    assert keys.verification_keys() == [active]


def test_rotate_keeps_old_key_verifiable_during_grace(clock):
    keys = KeyManager("ES256", 1800, clock=clock)
    old = keys.active_key()
    new = keys.rotate()

    assert keys.active_key().kid == new.kid
    assert new.kid != old.kid
    retired = keys.key_by_id(old.kid)
    assert retired is not None
    assert not retired.active
    assert retired.retired_at == clock()
    assert retired.private_pem is None  # retired keys only verify

    clock.advance(seconds=1799)
    assert keys.key_by_id(old.kid) is not None


def test_retired_key_unusable_after_grace_and_purged(clock):
    keys = KeyManager("ES256", 1800, clock=clock)
    old = keys.active_key()
    keys.rotate()
    clock.advance(seconds=1801)

    assert keys.key_by_id(old.kid) is None
    assert [k.kid for k in keys.verification_keys()] == [keys.active_key().kid]
    assert keys.purge_expired() == [old.kid]
    assert keys.purge_expired() == []


def test_exactly_one_active_key_after_many_rotations(clock):
    keys = KeyManager("ES256", 1800, clock=clock)
    for _ in range(4):
        clock.advance(seconds=10)
        keys.rotate()
    verification = keys.verification_keys()
    assert sum(1 for k in verification if k.active) == 1
    assert verification[0].active
    assert len(verification) == 5


def test_readers_always_see_an_active_key_during_rotation(clock):
    keys = KeyManager("ES256", 1800, clock=clock)
    stop = threading.Event()
    failures: list[Exception] = []

    def reader():
        while not stop.is_set():
            try:
                key = keys.active_key()
                assert key.active and key.private_pem is not None
            except Exception as exc:  # pragma: no cover - only on failure
                failures.append(exc)
                return

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for _ in range(10):
        keys.rotate()
    stop.set()
    for t in threads:
        t.join()
    assert failures == []


def test_persisted_ring_survives_restart(key_store, clock):
    first = KeyManager("ES256", 1800, store=key_store, passphrase=PASSPHRASE, clock=clock)
    old = first.active_key()
    new = first.rotate()

    second = KeyManager("ES256", 1800, store=key_store, passphrase=PASSPHRASE, clock=clock)
    assert second.active_key().kid == new.kid
    assert second.active_key().private_pem is not None
    assert second.key_by_id(old.kid) is not None


def test_private_keys_stored_encrypted(key_store, clock):
    KeyManager("ES256", 1800, store=key_store, passphrase=PASSPHRASE, clock=clock)
    ((key, encrypted),) = key_store.load_all()
    assert key.private_pem is None
    assert "ENCRYPTED PRIVATE KEY" in encrypted


def test_wrong_passphrase_is_fatal(key_store, clock):
    KeyManager("ES256", 1800, store=key_store, passphrase=PASSPHRASE, clock=clock)
    with pytest.raises(CryptoError, match="SECRET_KEY"):
        KeyManager("ES256", 1800, store=key_store, passphrase="q" * 32, clock=clock)


def test_store_without_passphrase_rejected(key_store):
    with pytest.raises(CryptoError):
        KeyManager("ES256", 1800, store=key_store)


def test_algorithm_change_rotates_to_new_algorithm(key_store, clock):
    es = KeyManager("ES256", 1800, store=key_store, passphrase=PASSPHRASE, clock=clock)
    old = es.active_key()
    rs = KeyManager("RS256", 1800, store=key_store, passphrase=PASSPHRASE, clock=clock)
    assert rs.active_key().algorithm == "RS256"
    # The ES256 key is retired, not dropped, so its tokens still verify.
    assert rs.key_by_id(old.kid) is not None


def test_purge_deletes_persisted_keys(key_store, clock):
    keys = KeyManager("ES256", 60, store=key_store, passphrase=PASSPHRASE, clock=clock)
    keys.rotate()
    clock.advance(seconds=61)
    keys.purge_expired()
    assert len(key_store.load_all()) == 1


def test_rotation_by_another_manager_is_picked_up_after_refresh(key_store, clock):
    server = KeyManager("ES256", 1800, store=key_store, passphrase=PASSPHRASE, refresh_seconds=5, clock=clock)
    operator = KeyManager("ES256", 1800, store=key_store, passphrase=PASSPHRASE, clock=clock)
    old = server.active_key()
    new = operator.rotate()

    # Inside the refresh interval the cached ring is still served.
    assert server.active_key().kid == old.kid

    clock.advance(seconds=5)
    active = server.active_key()
    assert active.kid == new.kid
    assert active.private_pem is not None
    assert [k.kid for k in server.verification_keys()] == [new.kid, old.kid]
    assert server.key_by_id(old.kid).private_pem is None


def test_unknown_kid_triggers_immediate_reload(key_store, clock):
    server = KeyManager("ES256", 1800, store=key_store, passphrase=PASSPHRASE, refresh_seconds=3600, clock=clock)
    operator = KeyManager("ES256", 1800, store=key_store, passphrase=PASSPHRASE, clock=clock)
    new = operator.rotate()

    assert server.key_by_id(new.kid).kid == new.kid
    assert server.active_key().kid == new.kid
    assert server.key_by_id("no-such-kid") is None


def test_rotate_builds_on_the_stored_ring(key_store, clock):
    first = KeyManager("ES256", 1800, store=key_store, passphrase=PASSPHRASE, refresh_seconds=3600, clock=clock)
    second = KeyManager("ES256", 1800, store=key_store, passphrase=PASSPHRASE, refresh_seconds=3600, clock=clock)
    original = first.active_key()
    middle = second.rotate()
    latest = first.rotate()

    assert first.key_by_id(middle.kid) is not None
    assert first.key_by_id(original.kid) is not None
    stored = {key.kid: key for key, _ in key_store.load_all()}
    assert [kid for kid, key in stored.items() if key.active] == [latest.kid]
