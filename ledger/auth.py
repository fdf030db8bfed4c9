"""
Credential hashing and bearer tokens.

Passwords are stored as salted PBKDF2-HMAC-SHA256 digests. Tokens are
"<user_id>.<expires_at>.<signature>" where the signature is an
HMAC-SHA256 of the first two parts under the server secret.
"""

import hashlib
import hmac
import secrets
import time
from typing import Callable, Optional


PASSWORD_SCHEME = "pbkdf2_sha256"
PASSWORD_ITERATIONS = 100_000


class InvalidTokenError(Exception):
    pass


def hash_password(password: str, iterations: int = PASSWORD_ITERATIONS) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, iterations)
    return f"{PASSWORD_SCHEME}${iterations}${salt.hex()}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        scheme, iterations, salt_hex, digest_hex = encoded.split("$")
        if scheme != PASSWORD_SCHEME:
            return False
        digest = hashlib.pbkdf2_hmac(
            "sha256", password.encode(), bytes.fromhex(salt_hex), int(iterations)
        )
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), digest_hex)


class TokenSigner:
    def __init__(self, secret: str, ttl_seconds: int = 3600, clock: Optional[Callable[[], float]] = None):
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._key = secret.encode()
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time

    def issue(self, user_id: int) -> str:
        expires_at = int(self._clock()) + self.ttl_seconds
        payload = f"{user_id}.{expires_at}"
        return f"{payload}.{self._sign(payload)}"

    def verify(self, token: str) -> int:
        """Return the user id carried by ``token`` or raise InvalidTokenError."""
        parts = token.split(".")
        if len(parts) != 3:
            raise InvalidTokenError("Malformed token")
        user_id, expires_at, signature = parts
        if not hmac.compare_digest(self._sign(f"{user_id}.{expires_at}"), signature):
            raise InvalidTokenError("Bad token signature")
        try:
            uid, expiry = int(user_id), int(expires_at)
        except ValueError:
            raise InvalidTokenError("Malformed token")
        if expiry < self._clock():
            raise InvalidTokenError("Token expired")
        return uid

    def _sign(self, payload: str) -> str:
        return hmac.new(self._key, payload.encode(), hashlib.sha256).hexdigest()
