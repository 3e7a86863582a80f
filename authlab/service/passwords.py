from __future__ import annotations

import asyncio
import hmac
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authlab.logging import get_logger
from authlab.storage.models import User


def timing_safe_compare(a: str, b: str) -> bool:
    """Constant-time equality for opaque tokens.

    ``hmac.compare_digest`` walks the full input even after a mismatch and
    does not return early on a length difference.
    """
    return hmac.compare_digest((a or "").encode("utf-8"), (b or "").encode("utf-8"))


class CredentialVerifier:
    """Slow, salted password hashing with argon2id.

    Every verification runs one full argon2 computation, including for
    unknown users, which are checked against a dummy hash built with the
    same parameters at start-up.
    """

    def __init__(self, *, time_cost: int = 3, memory_cost_kib: int = 65536) -> None:
        self.logger = get_logger(__name__)
        self._hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost_kib, type=Type.ID
        )
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable")
            return False

    def verify_user(self, user: Optional[User], plaintext: str) -> bool:
        """Verify ``plaintext`` for ``user``; a missing user costs the same and fails."""
        if user is None:
            self.verify(plaintext, self._dummy_hash)
            return False
        return self.verify(plaintext, user.password_hash)

    async def verify_user_async(self, user: Optional[User], plaintext: str) -> bool:
        return await asyncio.to_thread(self.verify_user, user, plaintext)

    async def hash_async(self, plaintext: str) -> str:
        return await asyncio.to_thread(self.hash, plaintext)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
