"""Unit tests for the second-factor engine.

Tests for:
- TOTP generation and the +/- 10 step acceptance window
- Enrollment and the pending_setup -> enabled transition
- Backup code single use, including concurrent redemption
- Backup code regeneration
- Password-confirmed disable
- Failed-attempt lockout
"""

import asyncio
import threading

import pytest

from agrilink.service.errors import (
    InternalError,
    InvalidPasswordError,
    SecondFactorInvalidError,
    ValidationError,
)
from agrilink.service.mfa import (
    STATE_DISABLED,
    STATE_ENABLED,
    STATE_PENDING,
    SecondFactorEngine,
    generate_secret,
    generate_totp,
    provisioning_uri,
    verify_totp,
)
from agrilink.service.passwords import PasswordVerifier
from agrilink.storage.memory import MemoryStore

NOW = 1_700_000_010.0
PASSWORD = "orchard-ledger-42"
ARABIC_INDIC_CODE = "\u0661\u0662\u0663\u0664\u0665\u0666"


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FailingRenderer:
    def render(self, uri: str) -> str:
        raise RuntimeError("renderer offline")


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="mfa-unit-test-key")


@pytest.fixture
def passwords(store):
    return PasswordVerifier(store)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(store, passwords, clock):
    return SecondFactorEngine(
        store, passwords, code_pepper="mfa-unit-test-key", clock=clock
    )


@pytest.fixture
def user(store, passwords):
    created = store.create_user("Bea Market", "bea@buyers.example", "+15550102")
    passwords.save_password(created.id, PASSWORD)
    return created


@pytest.fixture
def enabled(engine, user):
    """An account with 2FA enabled; returns the enrollment."""
    enrollment = engine.enroll(user)
    asyncio.run(engine.verify(user.id, generate_totp(enrollment.secret, NOW)))
    return enrollment


class TestTotp:
    def test_rfc_6238_sha1_vector(self):
        # RFC 6238 appendix B, SHA1 seed "12345678901234567890"
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert generate_totp(secret, 59, digits=8) == "94287082"
        assert generate_totp(secret, 1111111109, digits=8) == "07081804"

    def test_code_from_250_seconds_ago_is_accepted(self):
        secret = generate_secret()
        old = generate_totp(secret, NOW - 250)
        assert verify_totp(secret, old, now=NOW)

    def test_code_from_400_seconds_ago_is_rejected(self):
        secret = generate_secret()
        old = generate_totp(secret, NOW - 400)
        assert not verify_totp(secret, old, now=NOW)

    def test_rejects_malformed_codes(self):
        secret = generate_secret()
        assert not verify_totp(secret, "", now=NOW)
        assert not verify_totp(secret, "12345", now=NOW)
        assert not verify_totp(secret, "abcdef", now=NOW)

    def test_rejects_non_ascii_digits(self):
        # Arabic-Indic digits satisfy str.isdigit()
        assert not verify_totp(generate_secret(), ARABIC_INDIC_CODE, now=NOW)

    def test_provisioning_uri(self):
        uri = provisioning_uri("ABCDEF", "bea@buyers.example", issuer="AgriLink")
        assert uri.startswith("otpauth://totp/AgriLink:bea@buyers.example?")
        assert "secret=ABCDEF" in uri
        assert "issuer=AgriLink" in uri


class TestEnrollment:
    def test_enroll_returns_artifacts_and_stays_pending(self, engine, user):
        enrollment = engine.enroll(user)
        assert enrollment.otpauth_uri.startswith("otpauth://totp/")
        assert enrollment.qr_code.startswith("data:image/svg+xml;base64,")
        assert len(enrollment.backup_codes) == 8
        assert len(set(enrollment.backup_codes)) == 8
        assert all(len(c) == 6 and c.isdigit() for c in enrollment.backup_codes)
        assert engine.state(user.id) == STATE_PENDING
        assert engine.is_enabled(user.id) is False

    def test_secret_is_encrypted_at_rest(self, engine, user, store):
        enrollment = engine.enroll(user)
        assert store.mfa_secrets[user.id].secret != enrollment.secret
        assert store.get_user_mfa_secret(user.id).secret == enrollment.secret

    def test_backup_codes_are_stored_as_digests(self, engine, user, store):
        enrollment = engine.enroll(user)
        stored = {c.code_hash for c in store.backup_codes[user.id]}
        assert stored.isdisjoint(enrollment.backup_codes)

    def test_re_enroll_while_pending_replaces_secret(self, engine, user):
        first = engine.enroll(user)
        second = engine.enroll(user)
        assert first.secret != second.secret
        assert engine.state(user.id) == STATE_PENDING

    def test_enroll_when_enabled_is_refused(self, engine, user, enabled):
        with pytest.raises(ValidationError):
            engine.enroll(user)

    def test_renderer_failure_is_internal_and_leaves_state(self, store, passwords, user):
        engine = SecondFactorEngine(
            store, passwords, code_pepper="k", renderer=FailingRenderer()
        )
        with pytest.raises(InternalError):
            engine.enroll(user)
        assert engine.state(user.id) == STATE_DISABLED

    def test_feature_switch_off(self, store, passwords, user):
        engine = SecondFactorEngine(store, passwords, code_pepper="k", enabled=False)
        with pytest.raises(ValidationError):
            engine.enroll(user)


class TestVerify:
    async def test_first_totp_activates(self, engine, user):
        enrollment = engine.enroll(user)
        result = await engine.verify(user.id, generate_totp(enrollment.secret, NOW))
        assert result.method == "totp"
        assert result.activated is True
        assert engine.state(user.id) == STATE_ENABLED

    async def test_later_totp_does_not_reactivate(self, engine, user, enabled):
        result = await engine.verify(user.id, generate_totp(enabled.secret, NOW))
        assert result.activated is False

    async def test_not_initiated(self, engine, user):
        with pytest.raises(ValidationError) as excinfo:
            await engine.verify(user.id, "123456")
        assert excinfo.value.message == "two-factor setup not initiated"

    async def test_wrong_code(self, engine, user, enabled):
        with pytest.raises(SecondFactorInvalidError) as excinfo:
            await engine.verify(user.id, "abcdef")
        assert excinfo.value.message == "invalid code"

    async def test_non_ascii_digits_are_an_invalid_code(self, engine, user, enabled):
        with pytest.raises(SecondFactorInvalidError) as excinfo:
            await engine.verify(user.id, ARABIC_INDIC_CODE)
        assert excinfo.value.message == "invalid code"

    async def test_backup_code_is_not_accepted_during_setup(self, engine, user):
        enrollment = engine.enroll(user)
        with pytest.raises(SecondFactorInvalidError):
            await engine.verify(user.id, enrollment.backup_codes[0])
        assert engine.state(user.id) == STATE_PENDING

    async def test_backup_code_works_exactly_once(self, engine, user, enabled):
        code = enabled.backup_codes[0]
        result = await engine.verify(user.id, code)
        assert result.method == "backup_code"
        assert result.backup_codes_remaining == 7
        with pytest.raises(SecondFactorInvalidError):
            await engine.verify(user.id, code)

    async def test_backup_code_with_separators(self, engine, user, enabled):
        code = enabled.backup_codes[1]
        result = await engine.verify(user.id, f"{code[:3]}-{code[3:]}")
        assert result.method == "backup_code"

    def test_concurrent_backup_redemption_succeeds_once(self, store, passwords, user):
        engine = SecondFactorEngine(
            store, passwords, code_pepper="k", max_attempts=100, clock=FakeClock()
        )
        enrollment = engine.enroll(user)
        asyncio.run(engine.verify(user.id, generate_totp(enrollment.secret, NOW)))
        code = enrollment.backup_codes[0]
        outcomes = []
        barrier = threading.Barrier(8)

        def redeem():
            barrier.wait()
            try:
                asyncio.run(engine.verify(user.id, code))
                outcomes.append("ok")
            except SecondFactorInvalidError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=redeem) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == 7
        assert store.count_unused_backup_codes(user.id) == 7


class TestLockout:
    async def test_lockout_after_repeated_failures(self, engine, user, enabled, clock):
        for _ in range(5):
            with pytest.raises(SecondFactorInvalidError):
                await engine.verify(user.id, "abcdef")
        # Even a correct code reports "invalid code" while locked
        with pytest.raises(SecondFactorInvalidError) as excinfo:
            await engine.verify(user.id, generate_totp(enabled.secret, clock.now))
        assert excinfo.value.message == "invalid code"

        clock.now += 301
        result = await engine.verify(user.id, generate_totp(enabled.secret, clock.now))
        assert result.method == "totp"

    async def test_non_ascii_codes_count_toward_lockout(self, engine, user, enabled, clock):
        for _ in range(5):
            with pytest.raises(SecondFactorInvalidError):
                await engine.verify(user.id, ARABIC_INDIC_CODE)
        with pytest.raises(SecondFactorInvalidError):
            await engine.verify(user.id, generate_totp(enabled.secret, clock.now))

    async def test_success_resets_the_counter(self, engine, user, enabled):
        for _ in range(4):
            with pytest.raises(SecondFactorInvalidError):
                await engine.verify(user.id, "abcdef")
        await engine.verify(user.id, generate_totp(enabled.secret, NOW))
        for _ in range(4):
            with pytest.raises(SecondFactorInvalidError):
                await engine.verify(user.id, "abcdef")
        await engine.verify(user.id, generate_totp(enabled.secret, NOW))


class TestBackupCodeLifecycle:
    async def test_regeneration_invalidates_old_codes(self, engine, user, enabled):
        fresh = engine.regenerate_backup_codes(user.id)
        assert len(fresh) == 8
        with pytest.raises(SecondFactorInvalidError):
            await engine.verify(user.id, enabled.backup_codes[0])
        result = await engine.verify(user.id, fresh[0])
        assert result.method == "backup_code"

    def test_regeneration_requires_enabled(self, engine, user):
        with pytest.raises(ValidationError):
            engine.regenerate_backup_codes(user.id)

    def test_backup_hash_is_bound_to_user(self, engine):
        assert engine.hash_backup_code("u1", "123456") != engine.hash_backup_code(
            "u2", "123456"
        )


class TestDisable:
    def test_wrong_password_keeps_2fa(self, engine, user, enabled):
        with pytest.raises(InvalidPasswordError):
            engine.disable(user.id, "not-the-password")
        assert engine.is_enabled(user.id) is True

    def test_disable_clears_secret_and_codes(self, engine, user, enabled, store):
        engine.disable(user.id, PASSWORD)
        assert engine.state(user.id) == STATE_DISABLED
        assert store.get_user_mfa_secret(user.id) is None
        assert store.count_unused_backup_codes(user.id) == 0

    def test_disable_when_not_enabled(self, engine, user):
        with pytest.raises(ValidationError):
            engine.disable(user.id, PASSWORD)

    def test_status(self, engine, user, enabled):
        assert engine.status(user.id) == {
            "enabled": True,
            "state": STATE_ENABLED,
            "configured": True,
            "backup_codes_remaining": 8,
        }
