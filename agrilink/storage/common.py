"""Helpers shared between the memory and postgres stores.

Both backends encrypt TOTP secrets with the same Fernet key derivation so a
deployment can move between them without re-enrolling every authenticator.
"""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from agrilink.storage.errors import StoreUnavailable


def derive_cipher_key(key_material: str) -> bytes:
    """Turn arbitrary key material into a urlsafe 32-byte Fernet key."""
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: Optional[str]) -> Fernet:
    """Build the cipher used for TOTP secrets at rest.

    Args:
        key_material: MFA_SECRET_KEY, or the JWT secret when no dedicated key is set

    Raises:
        RuntimeError: when no key material is available
    """
    if not key_material:
        raise RuntimeError(
            "MFA encryption key unavailable; set MFA_SECRET_KEY or JWT_SECRET"
        )
    return Fernet(derive_cipher_key(key_material))


def encrypt_secret(cipher: Fernet, secret: str) -> str:
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, token: str) -> str:
    try:
        return cipher.decrypt(token.encode()).decode()
    except InvalidToken as exc:
        raise StoreUnavailable("stored mfa secret cannot be decrypted") from exc


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a metadata column that may arrive as a JSON string or a dict."""
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except json.JSONDecodeError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None
