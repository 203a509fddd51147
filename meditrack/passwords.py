"""
Password hashing with bcrypt.
"""

from __future__ import annotations

import logging
from typing import Optional

import bcrypt

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 12
# bcrypt only looks at the first 72 bytes of a password.
_BCRYPT_MAX_BYTES = 72


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(_password_bytes(password), salt).decode("utf-8")


def verify_password(password: str, hashed_password: Optional[str]) -> bool:
    """
    Check a plain password against a stored hash. Accounts without a hash
    (identity-provider logins) never match.
    """
    if not hashed_password:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(password), hashed_password.encode("utf-8"))
    except ValueError as exc:
        logger.error("Password verification error: %s", exc)
        return False
