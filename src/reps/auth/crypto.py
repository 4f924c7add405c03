"""Secret generation and hashing.

Learn: Every bearer secret in the system (session token, magic-link
token, device code) is 32 random bytes rendered as hex, and only its
SHA-256 digest is ever stored. SHA-256 without a salt is fine here —
unlike passwords, these secrets have 256 bits of entropy, so there is
nothing to brute-force.
"""

import hashlib
import hmac
import re
import secrets

# No 0/O, 1/I/L — a person reads this off one screen and types it on another.
USER_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
USER_CODE_LENGTH = 8

SECRET_BYTES = 32

_SECRET_RE = re.compile(r"[0-9a-f]{64}", re.IGNORECASE)


def generate_secret() -> str:
    """Return a 256-bit random secret as 64 lowercase hex chars."""
    return secrets.token_hex(SECRET_BYTES)


def hash_secret(secret: str) -> str:
    """One-way SHA-256 digest (hex) used for at-rest storage."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_user_code() -> str:
    """Return an 8-char human code from the unambiguous alphabet.

    Not a credential on its own: it only ever resolves server-side to a
    hashed device code, and it expires within minutes.
    """
    return "".join(
        secrets.choice(USER_CODE_ALPHABET) for _ in range(USER_CODE_LENGTH)
    )


def normalize_user_code(code: str) -> str:
    """Uppercase and drop separators, so "abcd-efgh" matches "ABCDEFGH"."""
    return re.sub(r"[\s-]", "", code).upper()


def secrets_equal(a: str, b: str) -> bool:
    """Constant-time string comparison."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def looks_like_secret(value: str) -> bool:
    """True for values shaped like generate_secret() output."""
    return bool(_SECRET_RE.fullmatch(value))
