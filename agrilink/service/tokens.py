from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from agrilink.logging import get_logger
from agrilink.service.errors import (
    MissingCredentialsError,
    TokenExpiredError,
    TokenInvalidError,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: int
    jti: str


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def extract_bearer(header: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header.

    Raises:
        MissingCredentialsError: header absent, wrong scheme, or empty token
    """
    if not header:
        raise MissingCredentialsError("no token, authorization denied")
    scheme, _, token = header.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise MissingCredentialsError("no token, authorization denied")
    return token


class TokenCodec:
    """HS256 access tokens carrying the identity id and a second-factor flag.

    Tokens are stateless; validity is signature, header, issuer, audience and
    expiry. Expiry is checked last so a forged token never reports "expired".
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(
        self,
        subject: str,
        *,
        second_factor: bool = False,
        now: Optional[float] = None,
        ttl_seconds: Optional[int] = None,
    ) -> IssuedToken:
        issued_at = int(self._clock() if now is None else now)
        expires_at = issued_at + (self.ttl_seconds if ttl_seconds is None else ttl_seconds)
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "iat": issued_at,
            "exp": expires_at,
            "jti": jti,
            "token_type": "access",
            "mfa": bool(second_factor),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return IssuedToken(token=token, expires_at=expires_at, jti=jti)

    def decode(self, token: str, *, now: Optional[float] = None) -> dict[str, Any]:
        """Verify ``token`` and return its claims.

        Raises:
            TokenInvalidError: signature, structure or claim mismatch
            TokenExpiredError: authentic token past ``exp`` (plus leeway)
        """
        parts = token.split(".")
        if len(parts) != 3 or not token.isascii():
            raise TokenInvalidError("token is not valid")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("token is not valid")
        # Reject alg=none and friends before touching the signature
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise TokenInvalidError("token is not valid")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError("token is not valid")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_payload_decode_failed")
            raise TokenInvalidError("token is not valid")
        if not isinstance(payload, dict):
            raise TokenInvalidError("token is not valid")
        if payload.get("iss") != self.issuer:
            raise TokenInvalidError("token is not valid")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud or payload.get("token_type") != "access":
            raise TokenInvalidError("token is not valid")
        if not isinstance(payload.get("sub"), str) or not payload["sub"]:
            raise TokenInvalidError("token is not valid")

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise TokenInvalidError("token is not valid")
        current = self._clock() if now is None else now
        if exp <= current - self.leeway_seconds:
            raise TokenExpiredError("token has expired")
        return payload
