# backend/authguard/core/security.py

import logging
from collections.abc import Callable

from fastapi_users.password import PasswordHelper

logger = logging.getLogger(__name__)

# --- Password Hashing ---
password_helper = PasswordHelper()

# (plaintext, stored_hash) -> bool
CredentialComparator = Callable[[str, str], bool]


def get_password_hash(password: str) -> str:
    """Hashes a password using the configured password helper."""
    return password_helper.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verifies a plain password against a hashed password (timing-safe)."""
    verified, _ = password_helper.verify_and_update(plain_password, hashed_password)
    return verified


def burn_password_hash(plain_password: str) -> None:
    """
    Hash the submitted secret and throw the result away.

    Run when the identifier does not resolve to an account so that the
    response takes about as long as a real comparison.
    """
    password_helper.hash(plain_password)
