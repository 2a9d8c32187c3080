"""Time-based one-time passwords and backup codes.

Per-user state moves ``disabled -> pending_setup -> enabled`` and back to
``disabled`` only through an explicit, password-confirmed disable. A stored
secret with ``enabled=False`` is ``pending_setup``; no secret is ``disabled``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import io
import secrets
import struct
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Protocol, Union
from urllib.parse import quote, urlencode

import qrcode
import qrcode.image.svg

from agrilink.logging import get_logger
from agrilink.service.errors import (
    InternalError,
    InvalidPasswordError,
    SecondFactorInvalidError,
    ValidationError,
)
from agrilink.service.passwords import PasswordVerifier
from agrilink.storage.models import User, UserMFAConfig
from agrilink.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

STATE_DISABLED = "disabled"
STATE_PENDING = "pending_setup"
STATE_ENABLED = "enabled"

TOTP_DIGITS = 6
BACKUP_CODE_DIGITS = 6

INVALID_CODE_MESSAGE = "invalid code"


# ---------------------------------------------------------------------------
# TOTP primitives (RFC 6238, HMAC-SHA1 for authenticator compatibility)
# ---------------------------------------------------------------------------


def generate_secret(num_bytes: int = 20) -> str:
    """Fresh base32 secret; 20 bytes is the 160-bit key size RFC 4226 recommends."""
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> bytes:
    normalized = secret.replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    return base64.b32decode(padded, casefold=True)


def generate_totp(
    secret: str, timestamp: float, *, step: int = 30, digits: int = TOTP_DIGITS
) -> str:
    counter = struct.pack(">Q", int(timestamp // step))
    digest = hmac.new(_decode_secret(secret), counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def _is_ascii_digits(code: str) -> bool:
    return code.isascii() and code.isdigit()


def verify_totp(
    secret: str,
    code: str,
    *,
    now: float,
    step: int = 30,
    window: int = 10,
    digits: int = TOTP_DIGITS,
) -> bool:
    """Accept ``code`` if it matches any step within ``window`` steps of ``now``."""
    if len(code) != digits or not _is_ascii_digits(code):
        return False
    matched = False
    for offset in range(-window, window + 1):
        candidate = generate_totp(secret, now + offset * step, step=step, digits=digits)
        # scan every step, no early exit
        if hmac.compare_digest(candidate, code):
            matched = True
    return matched


def provisioning_uri(
    secret: str, account: str, *, issuer: str, step: int = 30, digits: int = TOTP_DIGITS
) -> str:
    label = quote(f"{issuer}:{account}", safe="@:")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": digits,
            "period": step,
        }
    )
    return f"otpauth://totp/{label}?{params}"


# ---------------------------------------------------------------------------
# Scannable code rendering
# ---------------------------------------------------------------------------


class CodeRenderer(Protocol):
    def render(self, uri: str) -> str: ...


class QRCodeRenderer:
    """Render an otpauth URI as an SVG QR code wrapped in a data URL."""

    def __init__(self, box_size: int = 10, border: int = 4) -> None:
        self.box_size = box_size
        self.border = border

    def render(self, uri: str) -> str:
        qr = qrcode.QRCode(
            box_size=self.box_size,
            border=self.border,
            image_factory=qrcode.image.svg.SvgPathImage,
        )
        qr.add_data(uri)
        qr.make(fit=True)
        buf = io.BytesIO()
        qr.make_image().save(buf)
        encoded = base64.b64encode(buf.getvalue()).decode("ascii")
        return f"data:image/svg+xml;base64,{encoded}"


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SecondFactorStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig: ...

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]: ...

    def enable_user_mfa(self, user_id: str) -> bool: ...

    def clear_user_mfa(self, user_id: str) -> None: ...

    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> None: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...

    def count_unused_backup_codes(self, user_id: str) -> int: ...


@dataclass(frozen=True)
class Enrollment:
    secret: str
    otpauth_uri: str
    qr_code: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Verification:
    method: str  # "totp" or "backup_code"
    activated: bool = False
    backup_codes_remaining: Optional[int] = None


class SecondFactorEngine:
    """Enrollment, verification, disable and backup-code lifecycle."""

    def __init__(
        self,
        store: SecondFactorStore,
        passwords: PasswordVerifier,
        *,
        code_pepper: str,
        renderer: Optional[CodeRenderer] = None,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        enabled: bool = True,
        issuer: str = "AgriLink",
        step_seconds: int = 30,
        window_steps: int = 10,
        backup_code_count: int = 8,
        max_attempts: int = 5,
        lockout_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.renderer: CodeRenderer = renderer or QRCodeRenderer()
        self.cache = cache
        self.enabled = enabled
        self.issuer = issuer
        self.step_seconds = step_seconds
        self.window_steps = window_steps
        self.backup_code_count = backup_code_count
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self._clock = clock
        self._pepper = code_pepper.encode()
        # In-memory lockout fallback when Redis is not configured
        self._state_lock = threading.Lock()
        self._attempts: dict[str, tuple[int, datetime]] = {}
        self._lockouts: dict[str, datetime] = {}

    # -- helpers -------------------------------------------------------------

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def hash_backup_code(self, user_id: str, code: str) -> str:
        """HMAC of a backup code bound to its owner; only digests are stored."""
        return hmac.new(
            self._pepper, f"{user_id}:{code}".encode(), hashlib.sha256
        ).hexdigest()

    def _new_backup_codes(self) -> List[str]:
        low = 10 ** (BACKUP_CODE_DIGITS - 1)
        codes: List[str] = []
        while len(codes) < self.backup_code_count:
            code = str(low + secrets.randbelow(9 * low))
            if code not in codes:
                codes.append(code)
        return codes

    @staticmethod
    def _normalize_code(code: Optional[str]) -> str:
        return (code or "").replace(" ", "").replace("-", "").strip()

    def state(self, user_id: str) -> str:
        cfg = self.store.get_user_mfa_secret(user_id)
        if cfg is None:
            return STATE_DISABLED
        return STATE_ENABLED if cfg.enabled else STATE_PENDING

    def is_enabled(self, user_id: str) -> bool:
        return self.enabled and self.state(user_id) == STATE_ENABLED

    # -- lockout -------------------------------------------------------------

    async def _is_locked_out(self, user_id: str) -> bool:
        if self.cache:
            return await self.cache.check_mfa_lockout(user_id)
        now = self._now()
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(user_id, None)
        return False

    async def _record_failure(self, user_id: str) -> None:
        if self.cache:
            locked, attempts = await self.cache.atomic_mfa_attempt(
                user_id,
                max_attempts=self.max_attempts,
                lockout_seconds=self.lockout_seconds,
            )
            if locked and attempts >= 0:
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)
            return
        now = self._now()
        window = timedelta(seconds=self.lockout_seconds)
        with self._state_lock:
            attempts, window_start = 1, now
            current = self._attempts.get(user_id)
            if current and now - current[1] < window:
                attempts, window_start = current[0] + 1, current[1]
            self._attempts[user_id] = (attempts, window_start)
            if attempts >= self.max_attempts:
                self._lockouts[user_id] = now + window
                self._attempts.pop(user_id, None)
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)

    async def _clear_failures(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(user_id)
            return
        with self._state_lock:
            self._attempts.pop(user_id, None)

    # -- operations ----------------------------------------------------------

    def enroll(self, user: User) -> Enrollment:
        """Start (or restart) setup for ``user``; the account stays password-only until verified."""
        if not self.enabled:
            raise ValidationError("two-factor authentication is not available")
        if self.state(user.id) == STATE_ENABLED:
            raise ValidationError("two-factor authentication is already enabled")
        try:
            secret = generate_secret()
            uri = provisioning_uri(
                secret, user.email, issuer=self.issuer, step=self.step_seconds
            )
            qr_code = self.renderer.render(uri)
        except Exception as exc:
            logger.error("mfa_enrollment_artifact_failed", user_id=user.id, error=str(exc))
            raise InternalError("failed to generate two-factor enrollment") from exc
        codes = self._new_backup_codes()
        self.store.set_user_mfa_secret(user.id, secret, enabled=False)
        self.store.replace_backup_codes(
            user.id, [self.hash_backup_code(user.id, c) for c in codes]
        )
        logger.info("mfa_enrollment_started", user_id=user.id)
        return Enrollment(secret=secret, otpauth_uri=uri, qr_code=qr_code, backup_codes=codes)

    async def verify(
        self, user_id: str, code: Optional[str], *, now: Optional[float] = None
    ) -> Verification:
        """Check a TOTP or backup code.

        In ``pending_setup`` only a TOTP code is accepted and success enables
        2FA. In ``enabled`` an unused backup code is accepted too and is
        consumed. Every rejection, including lockout, is "invalid code".
        """
        cfg = self.store.get_user_mfa_secret(user_id)
        if cfg is None:
            raise ValidationError("two-factor setup not initiated")

        if await self._is_locked_out(user_id):
            logger.warning("mfa_locked_out", user_id=user_id)
            raise SecondFactorInvalidError(INVALID_CODE_MESSAGE)

        normalized = self._normalize_code(code)
        current = self._clock() if now is None else now
        if verify_totp(
            cfg.secret,
            normalized,
            now=current,
            step=self.step_seconds,
            window=self.window_steps,
        ):
            await self._clear_failures(user_id)
            activated = False
            if not cfg.enabled:
                self.store.enable_user_mfa(user_id)
                activated = True
                logger.info("mfa_enabled", user_id=user_id)
            logger.info("mfa_verified", user_id=user_id, method="totp")
            return Verification(method="totp", activated=activated)

        if (
            cfg.enabled
            and _is_ascii_digits(normalized)
            and len(normalized) == BACKUP_CODE_DIGITS
        ):
            if self.store.consume_backup_code(
                user_id, self.hash_backup_code(user_id, normalized)
            ):
                await self._clear_failures(user_id)
                remaining = self.store.count_unused_backup_codes(user_id)
                logger.info(
                    "backup_code_consumed", user_id=user_id, remaining=remaining
                )
                return Verification(
                    method="backup_code", backup_codes_remaining=remaining
                )

        await self._record_failure(user_id)
        logger.warning("mfa_verification_failed", user_id=user_id)
        raise SecondFactorInvalidError(INVALID_CODE_MESSAGE)

    def disable(self, user_id: str, password: str) -> None:
        if self.state(user_id) != STATE_ENABLED:
            raise ValidationError("two-factor authentication is not enabled")
        if not self.passwords.verify_password(user_id, password):
            logger.warning("mfa_disable_rejected", user_id=user_id)
            raise InvalidPasswordError("invalid password")
        self.store.clear_user_mfa(user_id)
        logger.info("mfa_disabled", user_id=user_id)

    def regenerate_backup_codes(self, user_id: str) -> List[str]:
        if self.state(user_id) != STATE_ENABLED:
            raise ValidationError("two-factor authentication is not enabled")
        codes = self._new_backup_codes()
        self.store.replace_backup_codes(
            user_id, [self.hash_backup_code(user_id, c) for c in codes]
        )
        logger.info("backup_codes_regenerated", user_id=user_id, count=len(codes))
        return codes

    def status(self, user_id: str) -> dict:
        state = self.state(user_id)
        return {
            "enabled": state == STATE_ENABLED,
            "state": state,
            "configured": state != STATE_DISABLED,
            "backup_codes_remaining": (
                self.store.count_unused_backup_codes(user_id)
                if state == STATE_ENABLED
                else 0
            ),
        }
