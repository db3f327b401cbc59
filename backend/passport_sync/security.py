"""Credential helpers for identities created by sync."""

import re
import secrets

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def generate_one_time_password(length: int = 12) -> str:
    """Random credential handed to operators once for an auto-registered account."""
    return secrets.token_urlsafe(length)[:length]


def slugify(value: str) -> str:
    """Lowercase token safe for synthetic emails and license numbers."""
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").strip().lower()).strip("-")
    return slug or "unknown"
