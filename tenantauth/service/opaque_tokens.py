from __future__ import annotations

import hashlib
import secrets
from typing import Tuple

DEFAULT_NONCE_BYTES = 32


class OpaqueTokenGenerator:
    """Random refresh token material and its storage-side digest.

    Plaintext tokens are never stored; callers persist only ``hash(token)``
    and compare by recomputing the digest of whatever the client presents.
    """

    def __init__(self, hash_algorithm: str = "sha256", nonce_bytes: int = DEFAULT_NONCE_BYTES):
        if nonce_bytes < DEFAULT_NONCE_BYTES:
            raise ValueError("refresh tokens need at least 256 bits of entropy")
        hashlib.new(hash_algorithm)  # fail fast on unknown algorithms
        self.hash_algorithm = hash_algorithm
        self.nonce_bytes = nonce_bytes

    def new_token(self) -> str:
        return secrets.token_urlsafe(self.nonce_bytes)

    def hash(self, token: str) -> str:
        return hashlib.new(self.hash_algorithm, token.encode("utf-8")).hexdigest()

    def generate(self) -> Tuple[str, str]:
        """Return ``(plaintext, storage_hash)`` for a fresh token."""
        token = self.new_token()
        return token, self.hash(token)


__all__ = ["OpaqueTokenGenerator"]
