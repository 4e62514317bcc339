from __future__ import annotations

import base64
import logging
import os
import time
from typing import Any, Callable, Dict, Mapping

import jwt
from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import constant_time
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import Unauthenticated

log = logging.getLogger("dmrelay.auth")

_B64_PAD = {0: "", 2: "==", 3: "="}

SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_LEN = 32

DEFAULT_TOKEN_TTL_SECS = 24 * 3600
JWT_ALGORITHM = "HS256"

NowFn = Callable[[], float]


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    pad = _B64_PAD.get(len(value) % 4)
    if pad is None:
        raise ValueError("invalid base64url length")
    return base64.urlsafe_b64decode(value + pad)


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------

def _scrypt(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=SCRYPT_LEN, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)


def hash_password(password: str) -> str:
    """Return a ``scrypt$<salt>$<hash>`` entry suitable for the ``auth.users`` config."""

    salt = os.urandom(16)
    derived = _scrypt(salt).derive(password.encode("utf-8"))
    return f"scrypt${b64url(salt)}${b64url(derived)}"


def check_password(stored: str, password: str) -> bool:
    scheme, _, rest = stored.partition("$")
    if scheme == "plain":
        return constant_time.bytes_eq(rest.encode("utf-8"), password.encode("utf-8"))
    if scheme != "scrypt":
        log.warning("Unsupported password scheme %r", scheme)
        return False
    try:
        salt_b64, hash_b64 = rest.split("$", 1)
        salt, expected = b64url_decode(salt_b64), b64url_decode(hash_b64)
    except ValueError:
        return False
    try:
        _scrypt(salt).verify(password.encode("utf-8"), expected)
        return True
    except InvalidKey:
        return False


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

class Authenticator:
    """Issues and verifies HS256 JWT bearer tokens for a fixed set of configured users."""

    def __init__(
        self,
        users: Mapping[str, str],
        secret: str | bytes,
        *,
        token_ttl_secs: int = DEFAULT_TOKEN_TTL_SECS,
        now: NowFn = time.time,
    ) -> None:
        if not secret:
            raise ValueError("auth secret is required")
        self.users = dict(users)
        self.secret = secret.encode("utf-8") if isinstance(secret, str) else secret
        self.token_ttl_secs = token_ttl_secs
        self.now = now

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "Authenticator":
        section = config.get("auth") or {}
        return cls(
            section.get("users") or {},
            section.get("secret", ""),
            token_ttl_secs=int(section.get("token_ttl_secs", DEFAULT_TOKEN_TTL_SECS)),
        )

    def authenticate(self, username: str, password: str) -> str:
        stored = self.users.get(username)
        if stored is None or not check_password(stored, password):
            log.info("Rejected login for %r", username)
            raise Unauthenticated("invalid username or password")
        return self.issue(username)

    def issue(self, identity: str) -> str:
        issued_at = int(self.now())
        payload = {"sub": identity, "iat": issued_at, "exp": issued_at + self.token_ttl_secs}
        return jwt.encode(payload, self.secret, algorithm=JWT_ALGORITHM)

    def verify(self, token: str) -> str:
        if not token:
            raise Unauthenticated("bearer token required")
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["sub", "exp"], "verify_iat": False},
            )
        except jwt.ExpiredSignatureError:
            raise Unauthenticated("token expired") from None
        except jwt.InvalidTokenError:
            raise Unauthenticated("invalid token") from None
        identity = payload.get("sub")
        if not isinstance(identity, str) or not identity:
            raise Unauthenticated("invalid token")
        return identity


__all__ = [
    "Authenticator",
    "hash_password",
    "check_password",
    "b64url",
    "b64url_decode",
]
