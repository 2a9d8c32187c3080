from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from agrilink.logging import get_logger, sanitize_error_message
from agrilink.storage.common import (
    build_mfa_cipher,
    decrypt_secret,
    encrypt_secret,
    parse_json_meta,
)
from agrilink.storage.errors import ConstraintViolation, StoreUnavailable
from agrilink.storage.models import PasswordResetToken, User, UserMFAConfig

_PROFILE_FIELDS = ("name", "phone", "location", "farm_name", "farm_location")


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (TypeError, ValueError, AttributeError):
        return False
    return True


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        phone TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'buyer',
        location TEXT NOT NULL DEFAULT '',
        farm_name TEXT NOT NULL DEFAULT '',
        farm_location TEXT NOT NULL DEFAULT '',
        is_verified BOOLEAN NOT NULL DEFAULT false,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_mfa_secret (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT false,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_backup_code (
        id BIGSERIAL PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_backup_code_user_idx ON user_backup_code (user_id)",
    "ALTER TABLE app_user ADD COLUMN IF NOT EXISTS is_active BOOLEAN NOT NULL DEFAULT true",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        token_hash TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed identity and second-factor store."""

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=sanitize_error_message(str(exc)))
            raise StoreUnavailable("database unavailable") from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _ensure_schema(self) -> None:
        """Create the access tables when they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            name=row.get("name", ""),
            email=row["email"],
            phone=row.get("phone", ""),
            role=row.get("role", "buyer"),
            location=row.get("location", ""),
            farm_name=row.get("farm_name", ""),
            farm_location=row.get("farm_location", ""),
            is_verified=bool(row.get("is_verified", False)),
            is_active=bool(row.get("is_active", True)),
            created_at=row.get("created_at", datetime.utcnow()),
            meta=parse_json_meta(row.get("meta")),
        )

    # users
    def create_user(
        self,
        name: str,
        email: str,
        phone: str,
        *,
        role: str = "buyer",
        location: str = "",
        farm_name: str = "",
        farm_location: str = "",
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized_meta = meta.copy() if meta else {}
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, phone, role, location, farm_name, farm_location, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        name,
                        email,
                        phone,
                        role,
                        location,
                        farm_name,
                        farm_location,
                        json.dumps(normalized_meta) if normalized_meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            field = "phone" if "phone" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        # ids are UUIDs; anything else would raise a DataError in the driver
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE phone = %s", (phone,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, role: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            if role:
                rows = conn.execute(
                    "SELECT * FROM app_user WHERE role = %s ORDER BY created_at DESC LIMIT %s",
                    (role, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_profile(self, user_id: str, **fields: Optional[str]) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        updates = {
            name: fields[name] for name in _PROFILE_FIELDS if fields.get(name) is not None
        }
        if not updates:
            return self.get_user(user_id)
        assignments = ", ".join(f"{name} = %s" for name in updates)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    (*updates.values(), user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("phone already exists", {"field": "phone"})
        return self._row_to_user(row) if row else None

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (active, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # second factor
    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_mfa_secret (user_id, secret, enabled, created_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE SET secret = EXCLUDED.secret, enabled = EXCLUDED.enabled
                    """,
                    (user_id, encrypt_secret(self._mfa_cipher, secret), enabled),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return UserMFAConfig(user_id=user_id, secret=secret, enabled=enabled)

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_mfa_secret WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return UserMFAConfig(
            user_id=str(row["user_id"]),
            secret=decrypt_secret(self._mfa_cipher, row["secret"]),
            enabled=bool(row.get("enabled", False)),
            created_at=row.get("created_at", datetime.utcnow()),
            meta=parse_json_meta(row.get("meta")),
        )

    def enable_user_mfa(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE user_mfa_secret SET enabled = true WHERE user_id = %s RETURNING user_id",
                (user_id,),
            ).fetchone()
        return row is not None

    def clear_user_mfa(self, user_id: str) -> None:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("DELETE FROM user_backup_code WHERE user_id = %s", (user_id,))
                conn.execute("DELETE FROM user_mfa_secret WHERE user_id = %s", (user_id,))

    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> None:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "DELETE FROM user_backup_code WHERE user_id = %s", (user_id,)
                    )
                    with conn.cursor() as cur:
                        cur.executemany(
                            "INSERT INTO user_backup_code (user_id, code_hash) VALUES (%s, %s)",
                            [(user_id, code_hash) for code_hash in code_hashes],
                        )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for backup codes", {"user_id": user_id}
            )

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        """Mark one matching unused code as used in a single conditional UPDATE.

        Concurrent callers race on the ``used_at IS NULL`` predicate, so only one
        of them gets a row back.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_backup_code SET used_at = now()
                WHERE id = (
                    SELECT id FROM user_backup_code
                    WHERE user_id = %s AND code_hash = %s AND used_at IS NULL
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                AND used_at IS NULL
                RETURNING id
                """,
                (user_id, code_hash),
            ).fetchone()
        return row is not None

    def count_unused_backup_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS remaining FROM user_backup_code WHERE user_id = %s AND used_at IS NULL",
                (user_id,),
            ).fetchone()
        return int(row["remaining"]) if row else 0

    # password reset
    def save_password_reset(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "DELETE FROM password_reset_token WHERE user_id = %s", (user_id,)
                    )
                    conn.execute(
                        "INSERT INTO password_reset_token (token_hash, user_id, expires_at) VALUES (%s, %s, %s)",
                        (token_hash, user_id, expires_at),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for password reset", {"user_id": user_id}
            )
        return PasswordResetToken(
            token_hash=token_hash, user_id=user_id, expires_at=expires_at
        )

    def get_password_reset(
        self, token_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s AND expires_at > %s",
                (token_hash, now),
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at", datetime.utcnow()),
        )

    def consume_password_reset(self, token_hash: str, now: datetime) -> Optional[str]:
        """Delete the grant in one statement; only a live grant yields its user id."""
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM password_reset_token WHERE token_hash = %s RETURNING user_id, expires_at",
                (token_hash,),
            ).fetchone()
        if not row or row["expires_at"] <= now:
            return None
        return str(row["user_id"])

    def close(self) -> None:
        self.pool.close()
