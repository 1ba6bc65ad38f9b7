"""Content fingerprinting for secret values."""

import hashlib


def content_hash(value: bytes) -> str:
    """
    Compute the SHA-512 hex digest of a secret value.

    Two locations whose values share a digest are considered to hold the
    same secret.

    Args:
        value: Exact bytes as held by the store or target

    Returns:
        128-character lowercase hex digest
    """
    return hashlib.sha512(value).hexdigest()
