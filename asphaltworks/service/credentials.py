from __future__ import annotations

import asyncio
import hashlib
import secrets
from typing import Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from asphaltworks.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialManager:
    """Password hashing and random token generation in one place.

    Hashing cost and token entropy are constructor arguments so tests can
    run with a cheap hasher and deployments can tune both.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
        token_bytes: int = 32,
    ) -> None:
        if token_bytes < 32:
            raise ValueError("token_bytes must be at least 32")
        self.token_bytes = token_bytes
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when the account does not exist so login timing
        # does not reveal which emails are registered.
        self._dummy_hash = self._hasher.hash(secrets.token_hex(16))

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify(self, stored_hash: str, password: str, *, algo: str = PASSWORD_ALGO) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unusable", error_type=type(exc).__name__)
            return False

    def burn_verify(self, password: str) -> None:
        """Spend one verification worth of CPU without a real hash."""
        self.verify(self._dummy_hash, password)

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    async def hash_async(self, password: str) -> Tuple[str, str]:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(
        self, stored_hash: str, password: str, *, algo: str = PASSWORD_ALGO
    ) -> bool:
        return await asyncio.to_thread(self.verify, stored_hash, password, algo=algo)

    def generate_token(self, n_bytes: int | None = None) -> str:
        """Hex token from the OS CSPRNG; ``n_bytes`` defaults to the configured entropy."""
        size = n_bytes if n_bytes is not None else self.token_bytes
        if size < 1:
            raise ValueError("n_bytes must be positive")
        return secrets.token_hex(size)

    @staticmethod
    def digest(token: str) -> str:
        """SHA-256 of a bearer token, the form persisted in the store."""
        return hashlib.sha256(token.encode("utf-8")).hexdigest()
