from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from agrilink.config import get_settings, reset_settings_cache
from agrilink.logging import get_logger
from agrilink.service.auth import AuthService, CredentialVerifier
from agrilink.service.gate import RequestGate
from agrilink.service.mfa import QRCodeRenderer, SecondFactorEngine
from agrilink.service.passwords import PasswordVerifier
from agrilink.service.rbac import AccessPolicy
from agrilink.service.tokens import TokenCodec
from agrilink.storage.memory import MemoryStore
from agrilink.storage.postgres import PostgresStore
from agrilink.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        mfa_key = self.settings.mfa_secret_key or self.settings.jwt_secret

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root, mfa_encryption_key=mfa_key
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=mfa_key,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and two-factor lockouts; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl_seconds=self.settings.access_token_ttl_minutes * 60,
            leeway_seconds=self.settings.token_leeway_seconds,
        )
        self.passwords = PasswordVerifier(self.store)
        self.second_factor = SecondFactorEngine(
            self.store,
            self.passwords,
            code_pepper=mfa_key,
            renderer=QRCodeRenderer(),
            cache=self.cache,
            enabled=self.settings.enable_mfa,
            issuer=self.settings.totp_issuer,
            step_seconds=self.settings.totp_step_seconds,
            window_steps=self.settings.totp_window_steps,
            backup_code_count=self.settings.backup_code_count,
            max_attempts=self.settings.mfa_max_attempts,
            lockout_seconds=self.settings.mfa_lockout_seconds,
        )
        self.verifier = CredentialVerifier(self.codec, self.store)
        self.policy = AccessPolicy()
        self.gate = RequestGate(self.policy, self.second_factor)
        self.auth = AuthService(
            self.store,
            self.passwords,
            self.codec,
            self.second_factor,
            password_reset_ttl_seconds=self.settings.password_reset_ttl_minutes * 60,
        )

        self._local_rate_limits: dict[str, tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()
        logger.info(
            "runtime_init_completed",
            store_type=type(self.store).__name__,
            redis=bool(self.cache),
            mfa_enabled=self.settings.enable_mfa,
        )

    async def close(self) -> None:
        """Release the Redis and database pools."""
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, creating it under a lock on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.disconnect()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit via Redis, or an in-process bucket when Redis is absent.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = 0 if allowed else int((cost - tokens) / refill_rate) + 1
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def collect_health(runtime: Runtime) -> Dict[str, Any]:
    """Check the store, Redis and the shared filesystem with bounded waits."""

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    if isinstance(runtime.store, PostgresStore):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    fs_path = Path(runtime.settings.shared_fs_root)

    def _fs_check() -> None:
        if not fs_path.is_dir():
            raise FileNotFoundError(fs_path)
        health_file = fs_path / ".health_check"
        health_file.write_text(datetime.utcnow().isoformat())
        health_file.read_text()
        health_file.unlink(missing_ok=True)

    fs_ok = await _run_bounded("filesystem", _fs_check)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

    healthy = db_ok and redis_ok and fs_ok
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "build": runtime.settings.build_sha,
        "timestamp": datetime.utcnow().isoformat(),
    }
