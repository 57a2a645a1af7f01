"""Security utilities - password hashing"""

import secrets
import threading
from typing import Optional

import bcrypt
from argon2 import PasswordHasher as Argon2Hasher
from argon2.exceptions import InvalidHashError, VerificationError

from authbackend.config import settings

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


class PasswordHasher:
    """
    One-way salted password hashing.

    New hashes are Argon2id PHC strings carrying their own salt and cost
    parameters. Hashes written by the previous bcrypt scheme still verify and
    are always reported as needing a rehash.
    """

    def __init__(
        self,
        time_cost: int = settings.ARGON2_TIME_COST,
        memory_cost: int = settings.ARGON2_MEMORY_COST_KIB,
        parallelism: int = settings.ARGON2_PARALLELISM,
    ) -> None:
        self._argon2 = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
        )
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()

    def hash(self, plaintext: str) -> str:
        """
        Hash a password with a fresh random salt

        Args:
            plaintext: Plain text password

        Returns:
            str: Encoded hash including salt and parameters
        """
        return self._argon2.hash(plaintext)

    def verify(self, plaintext: str, hash_blob: str) -> bool:
        """
        Verify a password against its hash

        Args:
            plaintext: Plain text password
            hash_blob: Stored hash

        Returns:
            bool: True if password matches
        """
        if not hash_blob:
            return False
        if hash_blob.startswith(_BCRYPT_PREFIXES):
            try:
                return bcrypt.checkpw(plaintext.encode("utf-8"), hash_blob.encode("utf-8"))
            except ValueError:
                return False
        try:
            return self._argon2.verify(hash_blob, plaintext)
        except (VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, hash_blob: str) -> bool:
        if hash_blob.startswith(_BCRYPT_PREFIXES):
            return True
        try:
            return self._argon2.check_needs_rehash(hash_blob)
        except (InvalidHashError, ValueError):
            return True

    @property
    def dummy_hash(self) -> str:
        """Hash of a random secret, verified against when no account matches."""
        if self._dummy_hash is None:
            with self._dummy_lock:
                if self._dummy_hash is None:
                    self._dummy_hash = self.hash(secrets.token_urlsafe(32))
        return self._dummy_hash


password_hasher = PasswordHasher()
