"""Unit tests for the storage backends.

Tests for:
- User CRUD and uniqueness in the memory store
- Persistence across store instances
- MFA secret encryption and backup code bookkeeping
- Postgres store error mapping with a stubbed pool
"""

import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import psycopg
import pytest

from agrilink.logging import get_logger
from agrilink.storage.errors import ConstraintViolation, StoreUnavailable
from agrilink.storage.memory import MemoryStore
from agrilink.storage.postgres import PostgresStore


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="storage-test-key")


@pytest.fixture
def test_user(memory_store):
    return memory_store.create_user(
        "Cal Rivers", "cal@farm.example", "+15550104", role="farmer", farm_name="Rivers Bend"
    )


class TestUsers:
    def test_create_and_lookup(self, memory_store, test_user):
        assert memory_store.get_user(test_user.id) is test_user
        assert memory_store.get_user_by_email("cal@farm.example").id == test_user.id
        assert memory_store.get_user_by_phone("+15550104").id == test_user.id
        assert test_user.role == "farmer"
        assert test_user.is_verified is False

    def test_duplicate_email(self, memory_store, test_user):
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("Other", "cal@farm.example", "+15550999")
        assert excinfo.value.detail == {"field": "email"}

    def test_duplicate_phone(self, memory_store, test_user):
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("Other", "other@farm.example", "+15550104")
        assert excinfo.value.detail == {"field": "phone"}

    def test_list_users_filters_by_role(self, memory_store, test_user):
        memory_store.create_user("Dee Buyer", "dee@buyers.example", "+15550105")
        farmers = memory_store.list_users(role="farmer")
        assert [u.id for u in farmers] == [test_user.id]
        assert len(memory_store.list_users()) == 2
        assert len(memory_store.list_users(limit=1)) == 1

    def test_update_role(self, memory_store, test_user):
        updated = memory_store.update_user_role(test_user.id, "produce_manager")
        assert updated.role == "produce_manager"
        assert memory_store.update_user_role("missing", "admin") is None

    def test_state_survives_restart(self, tmp_path, memory_store, test_user):
        memory_store.save_password(test_user.id, "hash-value", "argon2id")
        memory_store.set_user_mfa_secret(test_user.id, "JBSWY3DPEHPK3PXP")
        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="storage-test-key")
        assert reloaded.get_user_by_email("cal@farm.example").farm_name == "Rivers Bend"
        assert reloaded.get_password_record(test_user.id) == ("hash-value", "argon2id")
        assert reloaded.get_user_mfa_secret(test_user.id).secret == "JBSWY3DPEHPK3PXP"

    def test_deactivation_persists(self, tmp_path, memory_store, test_user):
        assert test_user.is_active is True
        assert memory_store.set_user_active(test_user.id, False).is_active is False
        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="storage-test-key")
        assert reloaded.get_user(test_user.id).is_active is False
        assert memory_store.set_user_active("missing", False) is None

    def test_profile_update(self, memory_store, test_user):
        updated = memory_store.update_user_profile(
            test_user.id, name="Cal R.", phone=None, farm_location="Yakima"
        )
        assert updated.name == "Cal R."
        assert updated.phone == "+15550104"
        assert updated.farm_location == "Yakima"

    def test_profile_phone_must_stay_unique(self, memory_store, test_user):
        memory_store.create_user("Dee Buyer", "dee@buyers.example", "+15550105")
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.update_user_profile(test_user.id, phone="+15550105")
        assert excinfo.value.detail == {"field": "phone"}


class TestPasswordResets:
    NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_grant_is_single_use(self, memory_store, test_user):
        memory_store.save_password_reset(test_user.id, "digest", self.NOW + timedelta(hours=1))
        assert memory_store.get_password_reset("digest", self.NOW).user_id == test_user.id
        assert memory_store.consume_password_reset("digest", self.NOW) == test_user.id
        assert memory_store.consume_password_reset("digest", self.NOW) is None

    def test_expired_grant(self, memory_store, test_user):
        memory_store.save_password_reset(test_user.id, "digest", self.NOW)
        assert memory_store.get_password_reset("digest", self.NOW) is None
        assert memory_store.consume_password_reset("digest", self.NOW) is None

    def test_new_grant_replaces_old(self, tmp_path, memory_store, test_user):
        later = self.NOW + timedelta(hours=1)
        memory_store.save_password_reset(test_user.id, "first", later)
        memory_store.save_password_reset(test_user.id, "second", later)
        assert memory_store.get_password_reset("first", self.NOW) is None
        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="storage-test-key")
        assert reloaded.get_password_reset("second", self.NOW).expires_at == later

    def test_grant_for_unknown_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.save_password_reset("missing", "digest", self.NOW)



class TestCredentials:
    def test_password_for_unknown_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.save_password("missing", "hash", "argon2id")

    def test_missing_record(self, memory_store, test_user):
        assert memory_store.get_password_record(test_user.id) is None


class TestSecondFactorRecords:
    def test_secret_round_trip_and_enable(self, memory_store, test_user):
        memory_store.set_user_mfa_secret(test_user.id, "JBSWY3DPEHPK3PXP")
        cfg = memory_store.get_user_mfa_secret(test_user.id)
        assert cfg.secret == "JBSWY3DPEHPK3PXP"
        assert cfg.enabled is False
        assert memory_store.enable_user_mfa(test_user.id) is True
        assert memory_store.get_user_mfa_secret(test_user.id).enabled is True

    def test_secret_is_unreadable_with_another_key(self, tmp_path, memory_store, test_user):
        memory_store.set_user_mfa_secret(test_user.id, "JBSWY3DPEHPK3PXP")
        other = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="a-different-key")
        with pytest.raises(StoreUnavailable):
            other.get_user_mfa_secret(test_user.id)

    def test_enable_without_secret(self, memory_store, test_user):
        assert memory_store.enable_user_mfa(test_user.id) is False

    def test_clear_removes_secret_and_codes(self, memory_store, test_user):
        memory_store.set_user_mfa_secret(test_user.id, "JBSWY3DPEHPK3PXP")
        memory_store.replace_backup_codes(test_user.id, ["h1", "h2"])
        memory_store.clear_user_mfa(test_user.id)
        assert memory_store.get_user_mfa_secret(test_user.id) is None
        assert memory_store.count_unused_backup_codes(test_user.id) == 0

    def test_consume_marks_code_used(self, memory_store, test_user):
        memory_store.replace_backup_codes(test_user.id, ["h1", "h2"])
        assert memory_store.consume_backup_code(test_user.id, "h1") is True
        assert memory_store.consume_backup_code(test_user.id, "h1") is False
        assert memory_store.consume_backup_code(test_user.id, "unknown") is False
        assert memory_store.count_unused_backup_codes(test_user.id) == 1

    def test_replace_discards_previous_codes(self, memory_store, test_user):
        memory_store.replace_backup_codes(test_user.id, ["h1"])
        memory_store.replace_backup_codes(test_user.id, ["h2", "h3"])
        assert memory_store.consume_backup_code(test_user.id, "h1") is False
        assert memory_store.count_unused_backup_codes(test_user.id) == 2

    def test_concurrent_consume_has_one_winner(self, memory_store, test_user):
        memory_store.replace_backup_codes(test_user.id, ["shared"])
        results = []
        barrier = threading.Barrier(10)

        def consume():
            barrier.wait()
            results.append(memory_store.consume_backup_code(test_user.id, "shared"))

        threads = [threading.Thread(target=consume) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1


class _FakeResult:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


class _FakeConnection:
    def __init__(self, row):
        self.row = row
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((sql, params))
        return _FakeResult(self.row)


class _FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextmanager
    def connection(self):
        if self.error:
            raise self.error
        yield self.conn


def _stub_store(tmp_path: Path, pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    store.dsn = "postgresql://stub"
    store.logger = get_logger(__name__)
    return store


class TestPostgresStoreStubbed:
    def test_consume_reports_returned_row(self, tmp_path):
        conn = _FakeConnection({"id": 1})
        store = _stub_store(tmp_path, _FakePool(conn))
        assert store.consume_backup_code("u1", "digest") is True
        sql, params = conn.statements[0]
        assert "used_at IS NULL" in sql
        assert params == ("u1", "digest")

    def test_consume_without_row(self, tmp_path):
        store = _stub_store(tmp_path, _FakePool(_FakeConnection(None)))
        assert store.consume_backup_code("u1", "digest") is False

    def test_unavailable_database(self, tmp_path):
        pool = _FakePool(error=psycopg.OperationalError("connection refused"))
        store = _stub_store(tmp_path, pool)
        with pytest.raises(StoreUnavailable):
            store.get_user_by_email("cal@farm.example")

    @pytest.mark.parametrize("user_id", ["not-a-uuid", "", "1; DROP TABLE app_user"])
    def test_malformed_user_id_is_not_found(self, tmp_path, user_id):
        conn = _FakeConnection({"id": user_id})
        store = _stub_store(tmp_path, _FakePool(conn))
        assert store.get_user(user_id) is None
        assert store.update_user_role(user_id, "admin") is None
        assert store.set_user_active(user_id, False) is None
        assert store.update_user_profile(user_id, name="X") is None
        assert conn.statements == []

    def test_well_formed_user_id_reaches_the_database(self, tmp_path):
        user_id = str(uuid.uuid4())
        conn = _FakeConnection(None)
        store = _stub_store(tmp_path, _FakePool(conn))
        assert store.get_user(user_id) is None
        assert conn.statements[0][1] == (user_id,)

    def test_expired_reset_grant_is_consumed_without_a_user(self, tmp_path):
        now = datetime.now(timezone.utc)
        row = {"user_id": "u1", "expires_at": now - timedelta(seconds=1)}
        conn = _FakeConnection(row)
        store = _stub_store(tmp_path, _FakePool(conn))
        assert store.consume_password_reset("digest", now) is None
        assert conn.statements[0][0].startswith("DELETE FROM password_reset_token")
        conn.row = {"user_id": "u1", "expires_at": now + timedelta(minutes=5)}
        assert store.consume_password_reset("digest", now) == "u1"
