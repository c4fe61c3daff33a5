"""Hashing utilities for clipmesh."""

import hashlib
import secrets
import string


def hash_content(content: str | bytes, algorithm: str = "sha256") -> str:
    """Calculate hash of content.

    Args:
        content: String or bytes to hash
        algorithm: Hash algorithm

    Returns:
        Hex digest of the hash
    """
    if isinstance(content, str):
        content = content.encode("utf-8")

    hasher = hashlib.new(algorithm)
    hasher.update(content)
    return hasher.hexdigest()


def random_suffix(length: int = 4) -> str:
    """Random lowercase alphanumeric suffix, used for generated peer ids."""
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))
