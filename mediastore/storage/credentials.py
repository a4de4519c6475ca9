"""Password hashing and verification.

Relational backends store PBKDF2 records:

    pbkdf2$<iterations>$<salt-hex>$<derived-key-hex>

Key-value backends store scrypt records:

    scrypt$<n>$<r>$<p>$<salt-hex>$<derived-key-hex>

Values without a known scheme prefix are legacy plaintext passwords written
before hashing existed. They still verify, but every such comparison is
logged so remaining accounts can be found and rehashed. This fallback is a
migration shim.

Records whose cost parameters exceed MAX_COST_FACTOR times the codec's own
settings are refused without deriving a key.
"""

import hashlib
import hmac
import secrets

import structlog

logger = structlog.get_logger(__name__)

SALT_BYTES = 32
KEY_BYTES = 64
MIN_PBKDF2_ITERATIONS = 100_000
# Stored records may cost at most this multiple of the configured cost
MAX_COST_FACTOR = 10


def _verify_legacy(password: str, stored: str) -> bool:
    """Compare against a legacy plaintext value."""
    logger.warning("legacy_plaintext_password")
    return hmac.compare_digest(password.encode(), stored.encode())


class Pbkdf2PasswordCodec:
    """PBKDF2-HMAC-SHA512 password codec."""

    scheme = "pbkdf2"

    def __init__(self, iterations: int = MIN_PBKDF2_ITERATIONS):
        """Initialize codec.

        Args:
            iterations: PBKDF2 iteration count for new hashes

        Raises:
            ValueError: If iterations is below the minimum
        """
        if iterations < MIN_PBKDF2_ITERATIONS:
            raise ValueError(f"iterations must be at least {MIN_PBKDF2_ITERATIONS}")
        self.iterations = iterations

    def hash(self, password: str) -> str:
        """Hash a password with a fresh random salt."""
        salt = secrets.token_bytes(SALT_BYTES)
        key = hashlib.pbkdf2_hmac("sha512", password.encode(), salt, self.iterations, KEY_BYTES)
        return f"{self.scheme}${self.iterations}${salt.hex()}${key.hex()}"

    def verify(self, password: str, stored: str) -> bool:
        """Check a password against a stored record.

        Derived keys are compared in constant time. Malformed records
        verify false.
        """
        if not stored.startswith(f"{self.scheme}$"):
            return _verify_legacy(password, stored)

        parts = stored.split("$")
        if len(parts) != 4:
            logger.warning("malformed_password_record", scheme=self.scheme)
            return False
        try:
            iterations = int(parts[1])
            salt = bytes.fromhex(parts[2])
            expected = bytes.fromhex(parts[3])
        except ValueError:
            logger.warning("malformed_password_record", scheme=self.scheme)
            return False
        if iterations <= 0 or not expected:
            return False
        if iterations > self.iterations * MAX_COST_FACTOR:
            logger.warning("password_cost_too_high", scheme=self.scheme, iterations=iterations)
            return False

        key = hashlib.pbkdf2_hmac("sha512", password.encode(), salt, iterations, len(expected))
        return hmac.compare_digest(key, expected)

    def needs_rehash(self, stored: str) -> bool:
        """Check whether a stored record is legacy or weaker than current settings."""
        if not stored.startswith(f"{self.scheme}$"):
            return True
        try:
            return int(stored.split("$")[1]) < self.iterations
        except (IndexError, ValueError):
            return True


class ScryptPasswordCodec:
    """scrypt password codec used by key-value backends."""

    scheme = "scrypt"

    def __init__(self, n: int = 2**14, r: int = 8, p: int = 1):
        self.n = n
        self.r = r
        self.p = p

    def _derive(self, password: str, salt: bytes, n: int, r: int, p: int, length: int) -> bytes:
        return hashlib.scrypt(
            password.encode(),
            salt=salt,
            n=n,
            r=r,
            p=p,
            maxmem=128 * n * r * p + 1024 * 1024,
            dklen=length,
        )

    def hash(self, password: str) -> str:
        """Hash a password with a fresh random salt."""
        salt = secrets.token_bytes(SALT_BYTES)
        key = self._derive(password, salt, self.n, self.r, self.p, KEY_BYTES)
        return f"{self.scheme}${self.n}${self.r}${self.p}${salt.hex()}${key.hex()}"

    def verify(self, password: str, stored: str) -> bool:
        """Check a password against a stored record in constant time."""
        if not stored.startswith(f"{self.scheme}$"):
            return _verify_legacy(password, stored)

        parts = stored.split("$")
        if len(parts) != 6:
            logger.warning("malformed_password_record", scheme=self.scheme)
            return False
        try:
            n, r, p = int(parts[1]), int(parts[2]), int(parts[3])
            salt = bytes.fromhex(parts[4])
            expected = bytes.fromhex(parts[5])
        except ValueError:
            logger.warning("malformed_password_record", scheme=self.scheme)
            return False
        if min(n, r, p) <= 0 or not expected:
            return False
        if n * r * p > self.n * self.r * self.p * MAX_COST_FACTOR:
            logger.warning("password_cost_too_high", scheme=self.scheme, n=n, r=r, p=p)
            return False

        try:
            key = self._derive(password, salt, n, r, p, len(expected))
        except ValueError:
            logger.warning("malformed_password_record", scheme=self.scheme)
            return False
        return hmac.compare_digest(key, expected)

    def needs_rehash(self, stored: str) -> bool:
        """Check whether a stored record is legacy or uses other cost parameters."""
        if not stored.startswith(f"{self.scheme}$"):
            return True
        return stored.split("$")[1:4] != [str(self.n), str(self.r), str(self.p)]
