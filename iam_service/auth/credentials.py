"""
Password hashing and verification.

bcrypt embeds a per-call random salt and its cost factor in the hash it
returns, and checkpw compares in constant time.
"""
import re
from typing import Optional

import bcrypt
from starlette.concurrency import run_in_threadpool

from iam_service.auth.errors import Failure, Result

MIN_PASSWORD_LENGTH = 8
# bcrypt only reads the first 72 bytes
MAX_PASSWORD_BYTES = 72

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")


class CredentialStore:
    """One-way password hashing with a configurable bcrypt cost."""

    def __init__(self, rounds: int = 12):
        self.rounds = rounds
        # Used to spend a real verify's CPU time when no account matched
        self._dummy_hash = bcrypt.hashpw(b"dummy-password", bcrypt.gensalt(rounds))

    @staticmethod
    def check_strength(password: str) -> Result[None]:
        """
        Apply the password policy.

        Args:
            password: Candidate plaintext password

        Returns:
            Successful Result, or WEAK_PASSWORD with the reason as detail
        """
        if len(password) < MIN_PASSWORD_LENGTH:
            return Result.fail(Failure.WEAK_PASSWORD, f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            return Result.fail(Failure.WEAK_PASSWORD, f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
        if not (_LOWER.search(password) and _UPPER.search(password) and _DIGIT.search(password)):
            return Result.fail(
                Failure.WEAK_PASSWORD,
                "Password must include uppercase, lowercase, and numbers",
            )
        return Result.success()

    def hash_sync(self, plaintext: str) -> str:
        return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt(self.rounds)).decode("utf-8")

    def verify_sync(self, plaintext: str, hashed: Optional[str]) -> bool:
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # Malformed hash or over-long input
            return False

    async def hash(self, plaintext: str) -> str:
        """Hash a password off the event loop."""
        return await run_in_threadpool(self.hash_sync, plaintext)

    async def verify(self, plaintext: str, hashed: Optional[str]) -> bool:
        """Check a password against a stored hash off the event loop."""
        return await run_in_threadpool(self.verify_sync, plaintext, hashed)

    async def dummy_verify(self, plaintext: str) -> bool:
        """Spend the same work as verify() and always fail."""
        await run_in_threadpool(self.verify_sync, plaintext, self._dummy_hash.decode("utf-8"))
        return False
