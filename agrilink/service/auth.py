from __future__ import annotations

import hashlib
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol

from agrilink.logging import get_logger, sanitize_error_message
from agrilink.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InternalError,
    InvalidPasswordError,
    NotFoundError,
    SecondFactorRequiredError,
    TokenExpiredError,
    UserNotFoundError,
    ValidationError,
)
from agrilink.service.mfa import SecondFactorEngine
from agrilink.service.passwords import PasswordVerifier
from agrilink.service.rbac import (
    PRIVILEGED_ROLES,
    SELF_SERVICE_ROLES,
    Role,
    is_known_role,
)
from agrilink.service.tokens import IssuedToken, TokenCodec, extract_bearer
from agrilink.storage.errors import ConstraintViolation, StorageError
from agrilink.storage.models import PasswordResetToken, User

logger = get_logger(__name__)

_PHONE_RE = re.compile(r"^\+?[0-9][0-9 ()-]{6,19}$")


class IdentityStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def update_user_profile(self, user_id: str, **fields: Optional[str]) -> Optional[User]: ...

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def save_password_reset(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken: ...

    def get_password_reset(
        self, token_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]: ...

    def consume_password_reset(self, token_hash: str, now: datetime) -> Optional[str]: ...

    def list_users(self, role: Optional[str] = None, limit: int = 100) -> List[User]: ...


@dataclass(frozen=True)
class Identity:
    """Request-scoped view of an authenticated user. Never carries credentials."""

    id: str
    name: str
    email: str
    role: str
    phone: str
    location: str = ""
    farm_name: str = ""
    farm_location: str = ""
    is_verified: bool = False
    second_factor_verified: bool = False

    @classmethod
    def from_user(cls, user: User, *, second_factor_verified: bool = False) -> "Identity":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            phone=user.phone,
            location=user.location,
            farm_name=user.farm_name,
            farm_location=user.farm_location,
            is_verified=user.is_verified,
            second_factor_verified=second_factor_verified,
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "phone": self.phone,
            "location": self.location,
            "farm_name": self.farm_name,
            "farm_location": self.farm_location,
            "is_verified": self.is_verified,
        }


class CredentialVerifier:
    """Turn an Authorization header into a live ``Identity``.

    The user record is re-read on every call so role changes, deletions and
    deactivations apply to the next request rather than at token expiry.
    Nothing is written.
    """

    def __init__(self, codec: TokenCodec, store: IdentityStore) -> None:
        self.codec = codec
        self.store = store

    def resolve(
        self, authorization: Optional[str], *, now: Optional[float] = None
    ) -> Identity:
        token = extract_bearer(authorization)
        try:
            claims = self.codec.decode(token, now=now)
        except TokenExpiredError:
            logger.info("token_expired")
            raise
        user_id = claims["sub"]
        try:
            user = self.store.get_user(user_id)
        except StorageError as exc:
            logger.error(
                "identity_lookup_failed",
                user_id=user_id,
                error=sanitize_error_message(str(exc)),
            )
            raise InternalError("server error") from exc
        except Exception as exc:
            logger.exception("identity_lookup_crashed", user_id=user_id)
            raise InternalError("server error") from exc
        if user is None or not user.is_active:
            logger.warning("user_not_found", user_id=user_id, inactive=user is not None)
            raise UserNotFoundError("user not found")
        return Identity.from_user(
            user, second_factor_verified=bool(claims.get("mfa", False))
        )


@dataclass(frozen=True)
class LoginResult:
    user: User
    token: IssuedToken
    second_factor_verified: bool


class AuthService:
    """Registration, login, profile and password management, and administrative account changes."""

    def __init__(
        self,
        store: IdentityStore,
        passwords: PasswordVerifier,
        codec: TokenCodec,
        second_factor: SecondFactorEngine,
        *,
        password_reset_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.codec = codec
        self.second_factor = second_factor
        self.password_reset_ttl_seconds = password_reset_ttl_seconds
        self._clock = clock
        self.logger = logger

    @staticmethod
    def normalize_email(email: str) -> str:
        return email.strip().lower()

    @staticmethod
    def _hash_reset_token(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def issue_token(self, user: User, *, second_factor_verified: bool = False) -> IssuedToken:
        return self.codec.encode(user.id, second_factor=second_factor_verified)

    def register(
        self,
        *,
        name: str,
        email: str,
        password: str,
        phone: str,
        role: str = Role.BUYER.value,
        location: str = "",
        farm_name: str = "",
        farm_location: str = "",
    ) -> tuple[User, IssuedToken]:
        if role not in SELF_SERVICE_ROLES:
            raise ValidationError(
                "role must be buyer or farmer", detail={"field": "role"}
            )
        if not name.strip():
            raise ValidationError("name is required", detail={"field": "name"})
        phone = phone.strip()
        if not _PHONE_RE.match(phone):
            raise ValidationError("invalid phone number", detail={"field": "phone"})
        # hashed before the account row exists
        pwd_hash, algo = self.passwords.hash_password(password)
        try:
            user = self.store.create_user(
                name.strip(),
                self.normalize_email(email),
                phone,
                role=role,
                location=location,
                farm_name=farm_name,
                farm_location=farm_location,
            )
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "email")
            raise ConflictError(
                f"user with this {field} already exists", detail={"field": field}
            ) from exc
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        return user, self.issue_token(user)

    async def login(
        self, email: str, password: str, code: Optional[str] = None
    ) -> LoginResult:
        user = self.store.get_user_by_email(self.normalize_email(email))
        if not user or not self.passwords.verify_password(user.id, password):
            self.logger.warning("login_failed")
            raise AuthenticationError("invalid credentials")
        if not user.is_active:
            self.logger.warning("login_inactive_account", user_id=user.id)
            raise AuthenticationError("invalid credentials")
        verified = False
        if self.second_factor.is_enabled(user.id):
            if not code:
                raise SecondFactorRequiredError(
                    "two-factor code required", detail={"second_factor": "totp"}
                )
            await self.second_factor.verify(user.id, code)
            verified = True
        self.logger.info("login_succeeded", user_id=user.id, mfa=verified)
        return LoginResult(
            user=user,
            token=self.issue_token(user, second_factor_verified=verified),
            second_factor_verified=verified,
        )

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        if not self.passwords.verify_password(user_id, current_password):
            raise InvalidPasswordError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError("new password must differ from the current one")
        self.passwords.save_password(user_id, new_password)
        self.logger.info("password_changed", user_id=user_id)

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        location: Optional[str] = None,
        farm_name: Optional[str] = None,
        farm_location: Optional[str] = None,
    ) -> User:
        """Apply the given profile fields; farm details only change for farmers."""
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("name is required", detail={"field": "name"})
        if phone is not None:
            phone = phone.strip()
            if not _PHONE_RE.match(phone):
                raise ValidationError("invalid phone number", detail={"field": "phone"})
            holder = self.store.get_user_by_phone(phone)
            if holder and holder.id != user_id:
                raise ConflictError(
                    "user with this phone already exists", detail={"field": "phone"}
                )
        fields = {"name": name, "phone": phone, "location": location}
        if user.role == Role.FARMER.value:
            fields.update(farm_name=farm_name, farm_location=farm_location)
        try:
            updated = self.store.update_user_profile(user_id, **fields)
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "phone")
            raise ConflictError(
                f"user with this {field} already exists", detail={"field": field}
            ) from exc
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        changed = sorted(k for k, v in fields.items() if v is not None)
        self.logger.info("profile_updated", user_id=user_id, fields=changed)
        return updated

    # -- password reset ------------------------------------------------------

    def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a single-use reset token for ``email``.

        Returns None for unknown or deactivated accounts so callers can answer
        identically either way. Only the token's SHA-256 is stored.
        """
        email = self.normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active:
            self.logger.info(
                "password_reset_unknown_account",
                email_hash=hashlib.sha256(email.encode()).hexdigest(),
            )
            return None
        token = secrets.token_hex(32)
        expires_at = self._now() + timedelta(seconds=self.password_reset_ttl_seconds)
        self.store.save_password_reset(user.id, self._hash_reset_token(token), expires_at)
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    def verify_password_reset(self, token: str) -> User:
        record = self.store.get_password_reset(self._hash_reset_token(token), self._now())
        user = self.store.get_user(record.user_id) if record else None
        if not user or not user.is_active:
            raise ValidationError("invalid or expired reset token")
        return user

    def complete_password_reset(self, token: str, new_password: str) -> User:
        pwd_hash, algo = self.passwords.hash_password(new_password)
        user_id = self.store.consume_password_reset(
            self._hash_reset_token(token), self._now()
        )
        user = self.store.get_user(user_id) if user_id else None
        if not user or not user.is_active:
            self.logger.warning("password_reset_invalid_token")
            raise ValidationError("invalid or expired reset token")
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    # -- administration ------------------------------------------------------

    def list_users(self, role: Optional[str] = None, limit: int = 100) -> List[User]:
        return self.store.list_users(role=role, limit=limit)

    def _load_target(self, actor: Any, user_id: str, *, new_role: Optional[str] = None) -> User:
        """Fetch ``user_id`` for an administrative change by ``actor``.

        Only a super_admin acts on admin and super_admin accounts (or grants
        those roles), and nobody acts on their own account.
        """
        if actor.id == user_id:
            raise ForbiddenError("cannot change your own account")
        target = self.store.get_user(user_id)
        if not target:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        touches_privileged = new_role in PRIVILEGED_ROLES or target.role in PRIVILEGED_ROLES
        if touches_privileged and actor.role != Role.SUPER_ADMIN.value:
            raise ForbiddenError(
                "only a super admin may manage admin accounts",
                detail={"required": [Role.SUPER_ADMIN.value], "current": actor.role},
            )
        return target

    def set_role(self, actor: Any, user_id: str, role: str) -> User:
        """Change ``user_id``'s role on behalf of ``actor`` (an ``Identity``)."""
        if not is_known_role(role):
            raise ValidationError("unknown role", detail={"field": "role", "role": role})
        target = self._load_target(actor, user_id, new_role=role)
        updated = self.store.update_user_role(user_id, role)
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info(
            "user_role_updated",
            user_id=user_id,
            actor_id=actor.id,
            previous_role=target.role,
            new_role=role,
        )
        return updated

    def set_active(
        self, actor: Any, user_id: str, active: bool, *, reason: str = ""
    ) -> User:
        """Suspend or reinstate an account.

        Tokens already issued to a suspended account fail as "user not found"
        on their next use.
        """
        self._load_target(actor, user_id)
        updated = self.store.set_user_active(user_id, active)
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info(
            "user_activated" if active else "user_deactivated",
            user_id=user_id,
            actor_id=actor.id,
            reason=reason or None,
        )
        return updated


__all__ = [
    "AuthService",
    "CredentialVerifier",
    "Identity",
    "IdentityStore",
    "LoginResult",
]
