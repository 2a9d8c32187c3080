"""Unit tests for CredentialVerifier: header -> token -> live identity."""

import pytest

from agrilink.service.auth import CredentialVerifier, Identity
from agrilink.service.errors import (
    InternalError,
    MissingCredentialsError,
    TokenExpiredError,
    TokenInvalidError,
    UserNotFoundError,
)
from agrilink.service.tokens import TokenCodec
from agrilink.storage.errors import StoreUnavailable
from agrilink.storage.memory import MemoryStore

NOW = 1_700_000_000


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="verifier-test-key")


@pytest.fixture
def codec():
    return TokenCodec(
        "verifier-test-secret-0123456789abcdefgh",
        issuer="agrilink",
        audience="agrilink-clients",
        ttl_seconds=900,
    )


@pytest.fixture
def verifier(codec, store):
    return CredentialVerifier(codec, store)


@pytest.fixture
def farmer(store):
    return store.create_user(
        "Ada Greenfield",
        "ada@farm.example",
        "+15550101",
        role="farmer",
        farm_name="Greenfield Acres",
        farm_location="Willamette Valley",
    )


def _bearer(codec, user_id, **kwargs):
    return f"Bearer {codec.encode(user_id, now=NOW, **kwargs).token}"


def test_resolves_identity_from_store(verifier, codec, farmer):
    identity = verifier.resolve(_bearer(codec, farmer.id), now=NOW + 1)
    assert isinstance(identity, Identity)
    assert identity.id == farmer.id
    assert identity.role == "farmer"
    assert identity.farm_name == "Greenfield Acres"
    assert identity.second_factor_verified is False


def test_identity_exposes_no_credentials(verifier, codec, farmer, store):
    store.save_password(farmer.id, "hash", "argon2id")
    public = verifier.resolve(_bearer(codec, farmer.id), now=NOW).to_public()
    assert "password" not in public
    assert "password_hash" not in public


def test_second_factor_claim_is_reflected(verifier, codec, farmer):
    identity = verifier.resolve(_bearer(codec, farmer.id, second_factor=True), now=NOW)
    assert identity.second_factor_verified is True


def test_role_change_applies_to_next_request(verifier, codec, farmer, store):
    header = _bearer(codec, farmer.id)
    store.update_user_role(farmer.id, "produce_manager")
    assert verifier.resolve(header, now=NOW).role == "produce_manager"


def test_missing_header(verifier):
    with pytest.raises(MissingCredentialsError):
        verifier.resolve(None, now=NOW)


def test_invalid_token(verifier):
    with pytest.raises(TokenInvalidError):
        verifier.resolve("Bearer not.a.token", now=NOW)


def test_expired_token(verifier, codec, farmer):
    with pytest.raises(TokenExpiredError):
        verifier.resolve(_bearer(codec, farmer.id), now=NOW + 900)


def test_deleted_user(verifier, codec):
    with pytest.raises(UserNotFoundError) as excinfo:
        verifier.resolve(_bearer(codec, "no-such-user"), now=NOW)
    assert excinfo.value.message == "user not found"
    assert excinfo.value.status_code == 401


def test_deactivated_after_issue(verifier, codec, farmer, store):
    header = _bearer(codec, farmer.id, second_factor=True)
    store.set_user_active(farmer.id, False)
    with pytest.raises(UserNotFoundError) as excinfo:
        verifier.resolve(header, now=NOW)
    assert excinfo.value.status_code == 401

    store.set_user_active(farmer.id, True)
    assert verifier.resolve(header, now=NOW).id == farmer.id


def test_store_failure_is_a_server_error(codec, farmer):
    class BrokenStore:
        def get_user(self, user_id):
            raise StoreUnavailable("database unavailable")

    verifier = CredentialVerifier(codec, BrokenStore())
    with pytest.raises(InternalError) as excinfo:
        verifier.resolve(_bearer(codec, farmer.id), now=NOW)
    assert excinfo.value.status_code == 500
    assert excinfo.value.message == "server error"
