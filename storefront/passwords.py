"""Password hashing and backward-compatible verification."""
import logging

import bcrypt
from passlib.context import CryptContext

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 10
LEGACY_PREFIX = "$2y$"
MODERN_PREFIX = "$2b$"

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=BCRYPT_ROUNDS,
    bcrypt__ident="2b",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def normalize_hash(stored: str | None) -> str:
    """Trim a stored hash and rewrite the legacy `$2y$` tag to `$2b$`.

    Both tags name the same bcrypt algorithm; older account tooling wrote `$2y$`.
    """
    value = (stored or "").strip()
    if value.startswith(LEGACY_PREFIX):
        value = MODERN_PREFIX + value[len(LEGACY_PREFIX):]
    return value


def _context_verify(secret: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(secret, hashed)
    except (ValueError, TypeError) as e:
        # unknown or malformed hash
        logger.debug("passlib could not verify hash: %s", e)
        return False


def _bcrypt_verify(secret: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(secret.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError) as e:
        logger.debug("bcrypt could not verify hash: %s", e)
        return False


def verify_password(supplied: str, stored: str | None) -> bool:
    """Check `supplied` against a stored hash. Never raises.

    Order of attempts:
      1. passlib verification against the normalized hash
      2. the same with surrounding whitespace stripped from `supplied`
      3. the bcrypt library directly, for the case where passlib's backend fails

    NOTE: step 2 makes "secret " and "secret" equivalent for accounts whose
    password was created with stray whitespace. Kept for existing accounts.
    """
    hashed = normalize_hash(stored)
    if not hashed or supplied is None:
        return False

    if _context_verify(supplied, hashed):
        return True

    trimmed = supplied.strip()
    if trimmed != supplied and _context_verify(trimmed, hashed):
        logger.info("password matched after trimming surrounding whitespace")
        return True

    return _bcrypt_verify(supplied, hashed)
