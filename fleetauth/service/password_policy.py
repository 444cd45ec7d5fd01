from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from fleetauth.config import PasswordPolicy, Settings
from fleetauth.logging import get_logger
from fleetauth.service.errors import PasswordPolicyViolation, PasswordReused

logger = get_logger(__name__)

_SPECIAL_CHARS = re.compile(r"[^A-Za-z0-9]")
_DRIVER_PIN = re.compile(r"[0-9]{4}")


class SecretHasher:
    """Argon2id hashing for passwords, PINs and backup codes."""

    algo = "argon2id"

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretHasher":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, stored_hash: Optional[str], secret: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("secret_hash_unverifiable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True


@dataclass
class RotatedCredential:
    credential_hash: str
    credential_history: List[str]


class PasswordPolicyEngine:
    """Checks candidate secrets against the admin policy and reuse history."""

    def __init__(self, hasher: SecretHasher) -> None:
        self.hasher = hasher

    def validate(self, candidate: str, policy: PasswordPolicy) -> None:
        """Raise ``PasswordPolicyViolation`` for the first rule that fails."""
        if len(candidate) < policy.min_length:
            raise PasswordPolicyViolation(
                f"Password must be at least {policy.min_length} characters long",
                rule="min_length",
            )
        if policy.require_uppercase and not re.search(r"[A-Z]", candidate):
            raise PasswordPolicyViolation(
                "Password must contain at least one uppercase letter",
                rule="require_uppercase",
            )
        if policy.require_lowercase and not re.search(r"[a-z]", candidate):
            raise PasswordPolicyViolation(
                "Password must contain at least one lowercase letter",
                rule="require_lowercase",
            )
        if policy.require_numbers and not re.search(r"\d", candidate):
            raise PasswordPolicyViolation(
                "Password must contain at least one number",
                rule="require_numbers",
            )
        if policy.require_special_chars and not _SPECIAL_CHARS.search(candidate):
            raise PasswordPolicyViolation(
                "Password must contain at least one special character",
                rule="require_special_chars",
            )

    def validate_pin(self, candidate: str) -> None:
        """Driver PINs are exactly four digits; the password policy does not apply."""
        if not _DRIVER_PIN.fullmatch(candidate or ""):
            raise PasswordPolicyViolation("PIN must be exactly 4 digits", rule="pin_format")

    def check_history(
        self,
        candidate: str,
        credential_hash: Optional[str],
        credential_history: Sequence[str],
        history_count: int,
    ) -> None:
        """Reject a candidate matching the current or recent secrets.

        The window is the current hash plus ``history_count - 1`` historical
        hashes, so ``history_count`` distinct secrets are blocked in total.
        """
        if history_count <= 0:
            return
        window = ([credential_hash] if credential_hash else []) + list(credential_history)
        for stored in window[:history_count]:
            if self.hasher.verify(stored, candidate):
                raise PasswordReused(history_count)

    def rotate(
        self,
        new_secret: str,
        current_hash: Optional[str],
        current_history: Sequence[str],
        history_count: int,
    ) -> RotatedCredential:
        history: List[str] = []
        if history_count > 0:
            history = ([current_hash] if current_hash else []) + list(current_history)
            history = history[:history_count]
        return RotatedCredential(
            credential_hash=self.hasher.hash(new_secret),
            credential_history=history,
        )
