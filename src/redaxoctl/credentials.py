"""Random credential generation."""
from __future__ import annotations

import secrets
import string

PASSWORD_ALPHABET = string.ascii_letters + string.digits

DB_PASSWORD_LENGTH = 12
ROOT_PASSWORD_LENGTH = 16


def generate_password(length: int = DB_PASSWORD_LENGTH) -> str:
    """Return a random alphanumeric string of *length* characters."""
    if length < 1:
        raise ValueError("Password length must be at least 1.")
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


__all__ = [
    "DB_PASSWORD_LENGTH",
    "PASSWORD_ALPHABET",
    "ROOT_PASSWORD_LENGTH",
    "generate_password",
]
