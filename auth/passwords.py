"""
auth/passwords.py -- Password hashing and strength policy.

Hashing uses bcrypt directly (no passlib wrapper). passlib's wrap-bug
detection builds a >72 byte secret that bcrypt 4.x rejects, and bcrypt 5.x
raises ValueError for any input over 72 bytes. The strength policy therefore
caps passwords at 72 UTF-8 bytes so hash_password() never sees one.

bcrypt.checkpw compares in constant time, which is what login and captcha
verification need.
"""

from __future__ import annotations

import re

import bcrypt

from auth.errors import WeakPassword

BCRYPT_MAX_BYTES = 72

_LETTER_RE = re.compile(r"[A-Za-z]")
_DIGIT_RE = re.compile(r"[0-9]")


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a salted bcrypt hash of the given plaintext."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash.

    Malformed hashes and over-long inputs count as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def check_password_strength(password: str, min_length: int, require_alnum: bool) -> None:
    """Raise WeakPassword with a readable reason if the policy is not met."""
    if not password or len(password) < min_length:
        raise WeakPassword(f"Password must be at least {min_length} characters long.")
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise WeakPassword(f"Password must be at most {BCRYPT_MAX_BYTES} bytes long.")
    if require_alnum and not (_LETTER_RE.search(password) and _DIGIT_RE.search(password)):
        raise WeakPassword("Password must contain both letters and digits.")
