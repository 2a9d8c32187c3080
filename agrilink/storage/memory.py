from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from agrilink.logging import get_logger
from agrilink.storage.common import build_mfa_cipher, decrypt_secret, encrypt_secret
from agrilink.storage.errors import ConstraintViolation, StoreUnavailable
from agrilink.storage.models import BackupCode, PasswordResetToken, User, UserMFAConfig

_PROFILE_FIELDS = ("name", "phone", "location", "farm_name", "farm_location")


class MemoryStore:
    """In-process identity and second-factor store persisted to a JSON file.

    All reads and writes go through ``_data_lock`` so check-and-mark
    operations such as backup code consumption are atomic across threads.
    """

    def __init__(
        self, fs_root: str = "/tmp/agrilink", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.mfa_secrets: Dict[str, UserMFAConfig] = {}
        self.backup_codes: Dict[str, List[BackupCode]] = {}
        self.password_resets: Dict[str, PasswordResetToken] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_mfa_cipher(
            mfa_encryption_key or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "access_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- users ---------------------------------------------------------------

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
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.phone == phone:
                    raise ConstraintViolation("phone already exists", {"field": "phone"})
            user = User(
                id=str(uuid.uuid4()),
                name=name,
                email=email,
                phone=phone,
                role=role,
                location=location,
                farm_name=farm_name,
                farm_location=farm_location,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.phone == phone), None)

    def list_users(self, role: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = [u for u in self.users.values() if not role or u.role == role]
            return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def update_user_profile(self, user_id: str, **fields: Optional[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            phone = fields.get("phone")
            if phone and any(
                u.phone == phone and u.id != user_id for u in self.users.values()
            ):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            for name in _PROFILE_FIELDS:
                if fields.get(name) is not None:
                    setattr(user, name, fields[name])
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = active
            self._persist_state()
            return user

    # -- credentials ---------------------------------------------------------

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- second factor -------------------------------------------------------

    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            record = UserMFAConfig(
                user_id=user_id,
                secret=encrypt_secret(self._mfa_cipher, secret),
                enabled=enabled,
            )
            self.mfa_secrets[user_id] = record
            self._persist_state()
            return UserMFAConfig(
                user_id=user_id,
                secret=secret,
                enabled=enabled,
                created_at=record.created_at,
            )

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._data_lock:
            cfg = self.mfa_secrets.get(user_id)
            if not cfg:
                return None
            return UserMFAConfig(
                user_id=cfg.user_id,
                secret=decrypt_secret(self._mfa_cipher, cfg.secret),
                enabled=cfg.enabled,
                created_at=cfg.created_at,
                meta=cfg.meta,
            )

    def enable_user_mfa(self, user_id: str) -> bool:
        with self._data_lock:
            cfg = self.mfa_secrets.get(user_id)
            if not cfg:
                return False
            cfg.enabled = True
            self._persist_state()
            return True

    def clear_user_mfa(self, user_id: str) -> None:
        """Drop the secret and every backup code so the account returns to password-only."""
        with self._data_lock:
            self.mfa_secrets.pop(user_id, None)
            self.backup_codes.pop(user_id, None)
            self._persist_state()

    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for backup codes", {"user_id": user_id}
                )
            self.backup_codes[user_id] = [
                BackupCode(user_id=user_id, code_hash=h) for h in code_hashes
            ]
            self._persist_state()

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        """Mark a matching unused code as used; True only for the caller that marked it."""
        with self._data_lock:
            for code in self.backup_codes.get(user_id, []):
                if code.code_hash == code_hash and code.used_at is None:
                    code.used_at = datetime.utcnow()
                    self._persist_state()
                    return True
            return False

    def count_unused_backup_codes(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for c in self.backup_codes.get(user_id, []) if not c.used)

    # -- password reset ------------------------------------------------------

    def save_password_reset(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        """Store a reset grant, replacing any earlier one for the same user."""
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for password reset", {"user_id": user_id}
                )
            self.password_resets = {
                h: r for h, r in self.password_resets.items() if r.user_id != user_id
            }
            record = PasswordResetToken(
                token_hash=token_hash, user_id=user_id, expires_at=expires_at
            )
            self.password_resets[token_hash] = record
            self._persist_state()
            return record

    def get_password_reset(
        self, token_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.password_resets.get(token_hash)
            if record is None or record.expires_at <= now:
                return None
            return record

    def consume_password_reset(self, token_hash: str, now: datetime) -> Optional[str]:
        """Remove a live grant and return its user id; None if missing or expired."""
        with self._data_lock:
            record = self.password_resets.pop(token_hash, None)
            if record is None:
                return None
            self._persist_state()
            if record.expires_at <= now:
                return None
            return record.user_id

    # -- persistence ---------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "mfa_secrets": [
                self._serialize_mfa_config(cfg) for cfg in self.mfa_secrets.values()
            ],
            "backup_codes": [
                self._serialize_backup_code(code)
                for codes in self.backup_codes.values()
                for code in codes
            ],
            "password_resets": [
                {
                    "token_hash": r.token_hash,
                    "user_id": r.user_id,
                    "expires_at": self._serialize_datetime(r.expires_at),
                    "created_at": self._serialize_datetime(r.created_at),
                }
                for r in self.password_resets.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.mfa_secrets = {
            cfg["user_id"]: self._deserialize_mfa_config(cfg)
            for cfg in data.get("mfa_secrets", [])
        }
        self.backup_codes = {}
        for raw in data.get("backup_codes", []):
            code = self._deserialize_backup_code(raw)
            self.backup_codes.setdefault(code.user_id, []).append(code)
        self.password_resets = {
            raw["token_hash"]: PasswordResetToken(
                token_hash=raw["token_hash"],
                user_id=raw["user_id"],
                expires_at=self._deserialize_datetime(raw["expires_at"]),
                created_at=self._deserialize_datetime(raw.get("created_at"))
                or datetime.utcnow(),
            )
            for raw in data.get("password_resets", [])
        }
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "phone": user.phone,
            "role": user.role,
            "location": user.location,
            "farm_name": user.farm_name,
            "farm_location": user.farm_location,
            "is_verified": user.is_verified,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            name=data.get("name", ""),
            email=data["email"],
            phone=data.get("phone", ""),
            role=data.get("role", "buyer"),
            location=data.get("location", ""),
            farm_name=data.get("farm_name", ""),
            farm_location=data.get("farm_location", ""),
            is_verified=data.get("is_verified", False),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data.get("created_at"))
            or datetime.utcnow(),
            meta=data.get("meta"),
        )

    def _serialize_mfa_config(self, cfg: UserMFAConfig) -> dict:
        return {
            "user_id": cfg.user_id,
            "secret": cfg.secret,
            "enabled": cfg.enabled,
            "created_at": self._serialize_datetime(cfg.created_at),
            "meta": cfg.meta,
        }

    def _deserialize_mfa_config(self, data: dict) -> UserMFAConfig:
        return UserMFAConfig(
            user_id=data["user_id"],
            secret=data["secret"],
            enabled=data.get("enabled", False),
            created_at=self._deserialize_datetime(data.get("created_at"))
            or datetime.utcnow(),
            meta=data.get("meta"),
        )

    def _serialize_backup_code(self, code: BackupCode) -> dict:
        return {
            "user_id": code.user_id,
            "code_hash": code.code_hash,
            "created_at": self._serialize_datetime(code.created_at),
            "used_at": self._serialize_datetime(code.used_at),
        }

    def _deserialize_backup_code(self, data: dict) -> BackupCode:
        return BackupCode(
            user_id=data["user_id"],
            code_hash=data["code_hash"],
            created_at=self._deserialize_datetime(data.get("created_at"))
            or datetime.utcnow(),
            used_at=self._deserialize_datetime(data.get("used_at")),
        )
