from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatehouse.config import Settings
from gatehouse.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id digests; the configured cost factor is argon2's time_cost."""

    algorithm = "argon2id"

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against unknown emails so both login failures cost the same
        self.dummy_digest = self._hasher.hash("gatehouse-timing-equalizer")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_hash_cost,
            memory_cost=settings.password_hash_memory_kib,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, digest: str) -> bool:
        try:
            return self._hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_digest_unusable", error=str(exc))
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True
