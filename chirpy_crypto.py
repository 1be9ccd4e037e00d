"""
chirpy_crypto.py — Password hashing and bearer tokens for Chirpy.

Key Design:
  - Passwords : PBKDF2-HMAC-SHA256, 16-byte random salt, 32-byte key.
                Stored as  pbkdf2_sha256$<iterations>$<salt hex>$<key hex>
                so a credential remains verifiable after the cost changes.
  - Tokens    : HS256 JWT (iss, sub, iat, exp), stateless.  Verification
                recomputes the signature with the process-wide secret and
                compares `exp` against the injected clock.
"""

import hmac
import time
import logging
import secrets
from typing import Callable, Optional

import jwt
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from chirpy_errors import AuthFault, ConfigurationFault, ValidationFault

log = logging.getLogger("chirpy.crypto")

# ============================================================
#  CONFIGURATION
# ============================================================

HASH_SCHEME = "pbkdf2_sha256"
DEFAULT_HASH_ITERATIONS = 480_000
MAX_HASH_ITERATIONS = 2 ** 31 - 1   # larger counts overflow PBKDF2HMAC
SALT_BYTES = 16
KEY_BYTES = 32

TOKEN_ISSUER = "chirpy"
TOKEN_ALGORITHM = "HS256"
MAX_TOKEN_LIFETIME = 24 * 60 * 60   # seconds
BEARER_PREFIX = "Bearer "


# ============================================================
#  1. CREDENTIALS - PBKDF2 Password Hashing
# ============================================================

def _derive(plaintext: str, salt: bytes, iterations: int) -> bytes:
    """Raises UnicodeEncodeError for text that is not valid UTF-8 (lone surrogates)."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(), length=KEY_BYTES,
        salt=salt, iterations=iterations,
    )
    return kdf.derive(plaintext.encode('utf-8'))


class CredentialManager:
    """
    Hashes and verifies passwords.  The work factor is fixed at construction;
    verification uses whatever factor the stored credential was made with.
    """

    def __init__(self, iterations: int = DEFAULT_HASH_ITERATIONS):
        if (isinstance(iterations, bool) or not isinstance(iterations, int)
                or not 1 <= iterations <= MAX_HASH_ITERATIONS):
            raise ConfigurationFault(
                f"Hash iterations must be an integer in 1..{MAX_HASH_ITERATIONS}, got {iterations!r}")
        self.iterations = iterations

    def hash(self, plaintext: str) -> str:
        if not isinstance(plaintext, str):
            raise ValidationFault("Password must be a string")
        salt = secrets.token_bytes(SALT_BYTES)
        try:
            key = _derive(plaintext, salt, self.iterations)
        except UnicodeEncodeError:
            raise ValidationFault("Password must be valid UTF-8 text")
        return f"{HASH_SCHEME}${self.iterations}${salt.hex()}${key.hex()}"

    @staticmethod
    def verify(credential: str, plaintext: str) -> bool:
        """Constant-time check.  Malformed credentials simply fail."""
        if not isinstance(credential, str) or not isinstance(plaintext, str):
            return False
        parts = credential.split("$")
        if len(parts) != 4 or parts[0] != HASH_SCHEME:
            return False
        try:
            iterations = int(parts[1])
            salt = bytes.fromhex(parts[2])
            expected = bytes.fromhex(parts[3])
        except ValueError:
            return False
        if not 1 <= iterations <= MAX_HASH_ITERATIONS or not salt or len(expected) != KEY_BYTES:
            return False
        try:
            computed = _derive(plaintext, salt, iterations)
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(computed, expected)


# ============================================================
#  2. TOKENS - HS256 Bearer Tokens
# ============================================================

class TokenService:
    """
    Issues and verifies signed, time-bounded tokens bound to a user id.

    The secret is process-wide immutable state: an unusable secret is a
    start-up defect and is rejected here, not per request.
    """

    def __init__(self, secret: str, max_lifetime: int = MAX_TOKEN_LIFETIME,
                 clock: Callable[[], float] = time.time):
        if not isinstance(secret, str) or not secret:
            raise ConfigurationFault("Token signing secret must be a non-empty string")
        if isinstance(max_lifetime, bool) or not isinstance(max_lifetime, int) or max_lifetime <= 0:
            raise ConfigurationFault(f"Token max lifetime must be a positive integer, got {max_lifetime!r}")
        self._secret = secret
        self.max_lifetime = max_lifetime
        self._clock = clock

    def clamp_lifetime(self, expires_in_seconds: Optional[int]) -> int:
        if expires_in_seconds is not None and (
                isinstance(expires_in_seconds, bool) or not isinstance(expires_in_seconds, int)):
            raise ValidationFault("Token lifetime must be a whole number of seconds")
        if not expires_in_seconds or expires_in_seconds <= 0 or expires_in_seconds > self.max_lifetime:
            return self.max_lifetime
        return expires_in_seconds

    def issue(self, subject: int, expires_in_seconds: Optional[int] = 0) -> str:
        lifetime = self.clamp_lifetime(expires_in_seconds)
        now = int(self._clock())
        claims = {
            "iss": TOKEN_ISSUER,
            "sub": str(subject),
            "iat": now,
            "exp": now + lifetime,
        }
        # Signing errors propagate: they mean the process is misconfigured
        token = jwt.encode(claims, self._secret, algorithm=TOKEN_ALGORITHM)
        log.debug("Issued token for user %s (lifetime %ss)", subject, lifetime)
        return token

    def verify(self, token: str) -> int:
        """Return the subject (user id) of a valid token, else raise AuthFault."""
        if not isinstance(token, str) or not token:
            raise AuthFault("Missing token")
        try:
            claims = jwt.decode(
                token, self._secret,
                algorithms=[TOKEN_ALGORITHM],
                issuer=TOKEN_ISSUER,
                # Expiry is checked below against our own clock
                options={
                    "require": ["iss", "sub", "iat", "exp"],
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except jwt.InvalidTokenError as exc:
            log.debug("Token rejected: %s", exc)
            raise AuthFault("Invalid token") from exc

        exp = claims["exp"]
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise AuthFault("Invalid token expiry")
        if self._clock() >= exp:
            raise AuthFault("Token expired")

        try:
            subject = int(claims["sub"])
        except (TypeError, ValueError):
            raise AuthFault("Invalid token subject")
        if subject <= 0:
            raise AuthFault("Invalid token subject")
        return subject


def bearer_token(header_value: Optional[str]) -> str:
    """Extract the token from an `Authorization: Bearer <token>` header."""
    if not header_value or not header_value.startswith(BEARER_PREFIX):
        raise AuthFault("Missing bearer token")
    token = header_value[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthFault("Missing bearer token")
    return token
