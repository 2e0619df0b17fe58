from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.cache import CacheService
from gatehouse.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    SessionNotFoundError,
    store_errors,
)
from gatehouse.service.login_attempts import LoginAttemptTracker
from gatehouse.service.passwords import PasswordHasher
from gatehouse.service.sessions import SessionStore
from gatehouse.service.tokens import TokenCodec
from gatehouse.storage.errors import ConstraintViolation, StoreUnavailable
from gatehouse.storage.fast_store import FastStore
from gatehouse.storage.models import PublicUser, SessionRecord, User

logger = get_logger(__name__)


class UserDirectory(Protocol):
    async def find_user_by_email(self, email: str) -> Optional[User]: ...

    async def find_user_by_id(self, user_id: str) -> Optional[User]: ...

    async def create_user(self, name: str, email: str, password_hash: str) -> User: ...

    async def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...


@dataclass
class RegistrationData:
    name: str
    email: str
    password: str


@dataclass
class Credentials:
    email: str
    password: str


@dataclass
class AuthResult:
    user: PublicUser
    token: str
    session_id: str
    expires_in: int


@dataclass
class RefreshResult:
    token: str
    session_id: str
    expires_in: int


@dataclass
class AuthContext:
    user_id: str
    session_id: str
    email: str


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Session lifecycle: NONE -> ACTIVE -> (REFRESHED)* -> REVOKED | EXPIRED.

    Composes the login-attempt tracker, session store and token codec over a
    user directory. Input-shaped failures surface as the typed errors in
    ``gatehouse.service.errors``; store outages surface as
    ``InfrastructureError`` so authentication fails closed.
    """

    RESET_KEY_PREFIX = "password-reset:"

    def __init__(
        self,
        db: UserDirectory,
        store: FastStore,
        sessions: SessionStore,
        attempts: LoginAttemptTracker,
        tokens: TokenCodec,
        hasher: PasswordHasher,
        settings: Settings,
        *,
        cache: Optional[CacheService] = None,
    ) -> None:
        self.db = db
        self.store = store
        self.sessions = sessions
        self.attempts = attempts
        self.tokens = tokens
        self.hasher = hasher
        self.settings = settings
        self.cache = cache
        self.logger = logger

    @classmethod
    def build(
        cls,
        db: UserDirectory,
        store: FastStore,
        settings: Settings,
        *,
        cache: Optional[CacheService] = None,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], float] = time.time,
    ) -> "AuthService":
        return cls(
            db,
            store,
            SessionStore(store, settings, clock=clock),
            LoginAttemptTracker(store, settings, clock=clock),
            TokenCodec(
                settings.jwt_secret,
                issuer=settings.jwt_issuer,
                leeway_seconds=settings.token_leeway_seconds,
                clock=clock,
            ),
            hasher or PasswordHasher.from_settings(settings),
            settings,
            cache=cache,
        )

    def _mint(self, record: SessionRecord) -> str:
        return self.tokens.mint(
            record.user_id, record.session_id, self.settings.session_ttl_seconds
        )

    async def _invalidate_user_cache(self, user_id: Optional[str] = None) -> None:
        if self.cache:
            await self.cache.invalidate_user_cache(user_id)

    async def register(
        self,
        data: RegistrationData,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        email = normalize_email(data.email)
        with store_errors("find_user_by_email"):
            existing = await self.db.find_user_by_email(email)
        if existing:
            raise ConflictError(
                "User with this email already exists", detail={"field": "email"}
            )
        digest = self.hasher.hash(data.password)
        try:
            with store_errors("create_user"):
                user = await self.db.create_user(
                    name=data.name.strip(), email=email, password_hash=digest
                )
        except ConstraintViolation as exc:
            raise ConflictError(
                "User with this email already exists", detail=exc.detail
            ) from exc
        await self._invalidate_user_cache()

        record = await self.sessions.create(user, ip_address, user_agent)
        self.logger.info("user_registered", user_id=user.id, ip_address=ip_address)
        return AuthResult(
            user=user.to_public(),
            token=self._mint(record),
            session_id=record.session_id,
            expires_in=self.settings.session_ttl_seconds,
        )

    async def login(
        self,
        credentials: Credentials,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        email = normalize_email(credentials.email)
        identities = self.attempts.identities(email, ip_address)
        for identity in identities:
            await self.attempts.check_allowed(identity)

        with store_errors("find_user_by_email"):
            user = await self.db.find_user_by_email(email)
        if user is None:
            # Spend the same hashing work as a real mismatch
            self.hasher.verify(credentials.password, self.hasher.dummy_digest)
            valid = False
        else:
            valid = self.hasher.verify(credentials.password, user.password_hash)

        if not valid:
            for identity in identities:
                await self.attempts.record_failure(identity)
            self.logger.info("login_failed", ip_address=ip_address)
            raise InvalidCredentialsError()

        for identity in identities:
            await self.attempts.record_success(identity)
        await self._maybe_rehash(user, credentials.password)

        record = await self.sessions.create(user, ip_address, user_agent)
        self.logger.info(
            "login_succeeded", user_id=user.id, session_id=record.session_id
        )
        return AuthResult(
            user=user.to_public(),
            token=self._mint(record),
            session_id=record.session_id,
            expires_in=self.settings.session_ttl_seconds,
        )

    async def _maybe_rehash(self, user: User, password: str) -> None:
        if not self.hasher.needs_rehash(user.password_hash):
            return
        try:
            await self.db.update_user(user.id, password_hash=self.hasher.hash(password))
        except StoreUnavailable as exc:
            self.logger.warning("password_rehash_failed", user_id=user.id, error=str(exc))

    async def logout(self, session_id: str) -> None:
        record = await self.sessions.get(session_id)
        if record is None:
            return
        await self.sessions.revoke(session_id, record.user_id)

    async def verify_session(self, token: Optional[str]) -> Optional[SessionRecord]:
        try:
            claims = self.tokens.verify(token)
        except InvalidTokenError:
            return None
        record = await self.sessions.verify(claims.session_id)
        if record is None or record.user_id != claims.user_id:
            return None
        return record

    async def authenticate(self, token: Optional[str]) -> AuthContext:
        """Resolve a bearer token to its caller or raise an auth error."""
        claims = self.tokens.verify(token)
        record = await self.sessions.verify(claims.session_id)
        if record is None or record.user_id != claims.user_id:
            raise SessionNotFoundError("Your session has expired. Please log in again.")
        return AuthContext(
            user_id=record.user_id, session_id=record.session_id, email=record.email
        )

    async def refresh_session(self, session_id: str) -> RefreshResult:
        record = await self.sessions.verify(session_id)
        if record is None:
            raise SessionNotFoundError()
        self.logger.info("session_refreshed", session_id=session_id, user_id=record.user_id)
        return RefreshResult(
            token=self._mint(record),
            session_id=record.session_id,
            expires_in=self.settings.session_ttl_seconds,
        )

    async def _owned_session(self, session_id: str, user_id: str) -> SessionRecord:
        record = await self.sessions.get(session_id)
        if record is None or record.user_id != user_id:
            raise SessionNotFoundError(status_code=404, error_code="not_found")
        return record

    async def revoke_session(self, session_id: str, user_id: str) -> bool:
        await self._owned_session(session_id, user_id)
        return await self.sessions.revoke(session_id, user_id)

    async def revoke_all_other_sessions(self, current_session_id: str, user_id: str) -> int:
        await self._owned_session(current_session_id, user_id)
        return await self.sessions.revoke_all_except(current_session_id, user_id)

    async def get_all_user_sessions(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> List[SessionRecord]:
        return await self.sessions.list_active(user_id, current_session_id)

    async def get_current_session(self, session_id: str, user_id: str) -> SessionRecord:
        record = await self._owned_session(session_id, user_id)
        record.is_current = True
        return record

    async def invalidate_all_user_sessions(self, user_id: str) -> int:
        return await self.sessions.revoke_all(user_id)

    async def get_profile(self, user_id: str) -> PublicUser:
        with store_errors("find_user_by_id"):
            user = await self.db.find_user_by_id(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user.to_public()

    async def create_password_reset_token(self, email: str) -> Optional[str]:
        """Issue a single-use reset token; unknown emails quietly get ``None``."""
        with store_errors("find_user_by_email"):
            user = await self.db.find_user_by_email(normalize_email(email))
        if not user:
            self.logger.info("password_reset_unknown_email")
            return None
        token = secrets.token_urlsafe(32)
        with store_errors("store_reset_token"):
            await self.store.set(
                f"{self.RESET_KEY_PREFIX}{token}",
                user.id,
                self.settings.password_reset_ttl_seconds,
            )
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def reset_password(
        self, token: str, new_password: str, ip_address: Optional[str] = None
    ) -> int:
        """Set a new password, burn the token and end every session of the user.

        Returns the number of sessions revoked.
        """
        key = f"{self.RESET_KEY_PREFIX}{token}"
        with store_errors("load_reset_token"):
            user_id = await self.store.get(key)
        if not user_id:
            raise InvalidTokenError("Invalid or expired password reset token")
        with store_errors("reset_password"):
            # Burn first so a concurrent replay finds nothing
            await self.store.delete(key)
            user = await self.db.update_user(
                user_id, password_hash=self.hasher.hash(new_password)
            )
        if not user:
            raise InvalidTokenError("Invalid or expired password reset token")
        revoked = await self.sessions.revoke_all(user.id)
        await self.attempts.record_success(self.attempts.identities(user.email)[0])
        await self._invalidate_user_cache(user.id)
        self.logger.info(
            "password_reset_completed",
            user_id=user.id,
            ip_address=ip_address or "unknown",
            sessions_revoked=revoked,
        )
        return revoked
