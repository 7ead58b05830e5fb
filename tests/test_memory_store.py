"""Tests for the in-memory user and refresh-token store."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from cobalt_auth.storage.errors import ConstraintViolation, StoreError
from cobalt_auth.storage.memory import MemoryStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
LATER = NOW + timedelta(days=7)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("alice", "alice@example.com")


class TestUsers:
    def test_create_and_lookup(self, store):
        user = store.create_user("bob", "bob@example.com")
        assert store.get_user(user.id) == user
        assert store.get_user_by_username("bob") == user
        assert store.get_user_by_email("bob@example.com") == user
        assert store.get_user_by_username("nobody") is None

    def test_duplicate_username_or_email_rejected(self, store, user):
        with pytest.raises(ConstraintViolation):
            store.create_user("alice", "other@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_user("other", "alice@example.com")

    def test_password_record_is_optional(self, store, user):
        assert store.get_password_record(user.id) is None
        store.save_password(user.id, "$argon2id$fake", "argon2id")
        record = store.get_password_record(user.id)
        assert record.password_hash == "$argon2id$fake"
        assert record.password_algo == "argon2id"

    def test_save_password_for_unknown_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "$argon2id$fake", "argon2id")


class TestRefreshTokens:
    def test_store_and_find(self, store, user):
        record = store.store("tok-1", user.id, "h" * 64, LATER)
        assert store.find("tok-1") == record
        assert record.revoked_at is None
        assert record.is_active(NOW)
        assert store.find("tok-2") is None

    def test_token_hash_is_unique(self, store, user):
        store.store("tok-1", user.id, "h" * 64, LATER)
        with pytest.raises(ConstraintViolation):
            store.store("tok-2", user.id, "h" * 64, LATER)

    def test_token_requires_existing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.store("tok-1", "missing", "h" * 64, LATER)

    def test_revoke_transitions_once(self, store, user):
        store.store("tok-1", user.id, "h" * 64, LATER)
        assert store.revoke("tok-1", NOW) is True
        assert store.revoke("tok-1", NOW + timedelta(minutes=1)) is False
        record = store.find("tok-1")
        assert record.revoked_at == NOW
        assert record.revoked_reason == "logout"
        assert record.is_revoked
        assert not record.is_active(NOW)

    def test_revoke_unknown_is_not_an_error(self, store):
        assert store.revoke("missing", NOW) is False

    def test_expiry_is_derived_from_clock(self, store, user):
        record = store.store("tok-1", user.id, "h" * 64, NOW)
        assert record.is_expired(NOW)
        assert not record.is_expired(NOW - timedelta(seconds=1))

    def test_revoke_all_only_touches_one_user(self, store, user):
        other = store.create_user("bob", "bob@example.com")
        store.store("a1", user.id, "a" * 64, LATER)
        store.store("a2", user.id, "b" * 64, LATER)
        store.store("a3", user.id, "c" * 64, LATER)
        store.store("b1", other.id, "d" * 64, LATER)
        store.revoke("a3", NOW)

        assert store.revoke_all_for_user(user.id, NOW) == 2
        assert store.find("a1").is_revoked
        assert store.find("a2").is_revoked
        assert store.find("a1").revoked_reason == "revoke_all"
        assert store.find("a3").revoked_reason == "logout"
        assert not store.find("b1").is_revoked
        assert store.revoke_all_for_user(user.id, NOW) == 0


class TestTransactions:
    def test_commit_applies_all_changes(self, store, user):
        store.store("old", user.id, "o" * 64, LATER)
        with store.transaction() as tx:
            assert tx.revoke("old", NOW)
            tx.store("new", user.id, "n" * 64, LATER)
        assert store.find("old").is_revoked
        assert store.find("new") is not None

    def test_failure_rolls_back_everything(self, store, user):
        store.store("old", user.id, "o" * 64, LATER)
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.revoke("old", NOW)
                tx.store("new", user.id, "n" * 64, LATER)
                raise RuntimeError("boom")
        assert not store.find("old").is_revoked
        assert store.find("new") is None

    def test_constraint_failure_inside_transaction_rolls_back(self, store, user):
        store.store("old", user.id, "o" * 64, LATER)
        store.store("other", user.id, "x" * 64, LATER)
        with pytest.raises(ConstraintViolation):
            with store.transaction() as tx:
                tx.revoke("old", NOW)
                tx.store("new", user.id, "x" * 64, LATER)
        assert not store.find("old").is_revoked

    def test_concurrent_revokers_have_one_winner(self, store, user):
        store.store("tok-1", user.id, "h" * 64, LATER)
        barrier = threading.Barrier(8)

        def revoke():
            barrier.wait()
            return store.revoke("tok-1", NOW)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: revoke(), range(8)))
        assert results.count(True) == 1
        assert results.count(False) == 7


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        path = tmp_path / "state" / "store.json"
        first = MemoryStore(state_path=str(path))
        user = first.create_user("alice", "alice@example.com")
        first.save_password(user.id, "$argon2id$fake", "argon2id")
        first.store("tok-1", user.id, "h" * 64, LATER)
        first.revoke("tok-1", NOW, "rotated")

        second = MemoryStore(state_path=str(path))
        assert second.get_user_by_username("alice").id == user.id
        assert second.get_password_record(user.id).password_hash == "$argon2id$fake"
        restored = second.find("tok-1")
        assert restored.revoked_at == NOW
        assert restored.revoked_reason == "rotated"
        assert restored.expires_at == LATER

    def test_rolled_back_transaction_is_not_persisted(self, tmp_path):
        path = tmp_path / "store.json"
        store = MemoryStore(state_path=str(path))
        user = store.create_user("alice", "alice@example.com")
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.store("tok-1", user.id, "h" * 64, LATER)
                raise RuntimeError("boom")
        assert MemoryStore(state_path=str(path)).find("tok-1") is None

    def _block_writes(self, store, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store._state_path = blocker / "store.json"

    def test_failed_state_write_rolls_back_transaction(self, tmp_path):
        store = MemoryStore(state_path=str(tmp_path / "store.json"))
        user = store.create_user("alice", "alice@example.com")
        store.store("old", user.id, "o" * 64, LATER)
        self._block_writes(store, tmp_path)

        with pytest.raises(StoreError):
            with store.transaction() as tx:
                assert tx.revoke("old", NOW, "rotated")
                tx.store("new", user.id, "n" * 64, LATER)
        assert not store.find("old").is_revoked
        assert store.find("new") is None

    def test_failed_state_write_rolls_back_single_write(self, tmp_path):
        store = MemoryStore(state_path=str(tmp_path / "store.json"))
        user = store.create_user("alice", "alice@example.com")
        store.store("tok-1", user.id, "h" * 64, LATER)
        self._block_writes(store, tmp_path)

        with pytest.raises(StoreError):
            store.revoke("tok-1", NOW)
        with pytest.raises(StoreError):
            store.create_user("bob", "bob@example.com")
        assert not store.find("tok-1").is_revoked
        assert store.get_user_by_username("bob") is None
