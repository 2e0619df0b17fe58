"""Tests for registration, login, session management and password reset.

Covers:
- Registration and duplicate detection
- Credential checks and lockout by email and by client address
- Logout, verification, refresh and idle expiry
- Listing and revoking sessions
- Password reset tokens
- Behaviour when the fast store is down
"""

import pytest

from gatehouse.service.auth import AuthService, Credentials, RegistrationData
from gatehouse.service.errors import (
    AuthenticationError,
    ConflictError,
    InfrastructureError,
    InvalidCredentialsError,
    InvalidTokenError,
    RateLimitedError,
    SessionNotFoundError,
)
from gatehouse.service.passwords import PasswordHasher

PASSWORD = "password123"


async def _register(auth, email="john@example.com", name="John Doe", ip=None):
    return await auth.register(
        RegistrationData(name=name, email=email, password=PASSWORD), ip_address=ip
    )


async def _bad_login(auth, email="john@example.com", ip=None):
    with pytest.raises((InvalidCredentialsError, RateLimitedError)) as excinfo:
        await auth.login(Credentials(email=email, password="wrong-password"), ip_address=ip)
    return excinfo.value


class TestRegistration:
    async def test_register_returns_user_and_session(self, auth):
        result = await _register(auth)

        assert result.user.name == "John Doe"
        assert result.user.email == "john@example.com"
        assert result.expires_in == 3600
        assert not hasattr(result.user, "password_hash")
        context = await auth.authenticate(result.token)
        assert context.user_id == result.user.id
        assert context.session_id == result.session_id

    async def test_password_is_stored_as_argon2id(self, auth, db):
        result = await _register(auth)

        stored = await db.find_user_by_id(result.user.id)
        assert stored.password_hash != PASSWORD
        assert stored.password_hash.startswith("$argon2id$")

    async def test_email_is_normalized(self, auth):
        result = await _register(auth, email="  John@Example.COM ")
        assert result.user.email == "john@example.com"

    async def test_duplicate_email_conflicts(self, auth):
        await _register(auth)

        with pytest.raises(ConflictError) as excinfo:
            await _register(auth, email="JOHN@example.com")
        assert excinfo.value.status_code == 409

    async def test_register_invalidates_user_listing_cache(self, auth, cache):
        await cache.set("users:page:1:limit:10:search::sort:", {"total": 0})

        await _register(auth)

        assert await cache.get("users:page:1:limit:10:search::sort:") is None


class TestLogin:
    async def test_login_opens_another_session(self, auth):
        registered = await _register(auth)

        result = await auth.login(
            Credentials(email="John@Example.com", password=PASSWORD),
            ip_address="10.0.0.1",
            user_agent="pytest",
        )

        assert result.session_id != registered.session_id
        sessions = await auth.get_all_user_sessions(result.user.id)
        assert len(sessions) == 2

    async def test_wrong_password_and_unknown_email_look_the_same(self, auth):
        await _register(auth)

        wrong = await _bad_login(auth)
        unknown = await _bad_login(auth, email="nobody@example.com")

        assert type(wrong) is type(unknown) is InvalidCredentialsError
        assert wrong.message == unknown.message

    async def test_sixth_attempt_is_locked_even_with_right_password(self, auth):
        await _register(auth)
        for _ in range(5):
            assert isinstance(await _bad_login(auth, ip="10.0.0.1"), InvalidCredentialsError)

        with pytest.raises(RateLimitedError) as excinfo:
            await auth.login(
                Credentials(email="john@example.com", password=PASSWORD),
                ip_address="10.0.0.1",
            )
        assert excinfo.value.retry_after == 900

    async def test_lockout_expires(self, auth, clock):
        await _register(auth)
        for _ in range(5):
            await _bad_login(auth, ip="10.0.0.1")
        await _bad_login(auth, ip="10.0.0.1")

        clock.advance(901)
        result = await auth.login(
            Credentials(email="john@example.com", password=PASSWORD), ip_address="10.0.0.1"
        )
        assert result.token

    async def test_client_address_lockout_spans_emails(self, auth):
        await _register(auth)
        for n in range(5):
            await _bad_login(auth, email=f"guess{n}@example.com", ip="10.0.0.9")

        with pytest.raises(RateLimitedError):
            await auth.login(
                Credentials(email="john@example.com", password=PASSWORD),
                ip_address="10.0.0.9",
            )
        result = await auth.login(
            Credentials(email="john@example.com", password=PASSWORD),
            ip_address="10.0.0.10",
        )
        assert result.token

    async def test_success_clears_failures(self, auth):
        await _register(auth)
        for _ in range(4):
            await _bad_login(auth)
        await auth.login(Credentials(email="john@example.com", password=PASSWORD))
        for _ in range(4):
            await _bad_login(auth)

        result = await auth.login(Credentials(email="john@example.com", password=PASSWORD))
        assert result.token

    async def test_outdated_digest_is_upgraded(self, auth, db):
        stronger = PasswordHasher(time_cost=2, memory_cost=1024, parallelism=1)
        user = await db.create_user("Old", "old@example.com", stronger.hash(PASSWORD))

        await auth.login(Credentials(email="old@example.com", password=PASSWORD))

        refreshed = await db.find_user_by_id(user.id)
        assert refreshed.password_hash != user.password_hash
        assert "t=1" in refreshed.password_hash


class TestSessionVerification:
    async def test_logout_ends_session(self, auth):
        result = await _register(auth)

        await auth.logout(result.session_id)

        assert await auth.verify_session(result.token) is None
        with pytest.raises(SessionNotFoundError):
            await auth.authenticate(result.token)

    async def test_logout_is_idempotent(self, auth):
        result = await _register(auth)
        await auth.logout(result.session_id)
        await auth.logout(result.session_id)
        await auth.logout("never-existed")

    async def test_verify_session_rejects_garbage(self, auth):
        assert await auth.verify_session("not-a-token") is None
        assert await auth.verify_session(None) is None
        with pytest.raises(InvalidTokenError):
            await auth.authenticate("not-a-token")

    async def test_verify_session_returns_record(self, auth):
        result = await _register(auth)
        record = await auth.verify_session(result.token)
        assert record.session_id == result.session_id
        assert record.user_id == result.user.id

    async def test_idle_session_expires(self, auth, clock):
        result = await _register(auth)
        clock.advance(3601)

        with pytest.raises(AuthenticationError):
            await auth.authenticate(result.token)

    async def test_activity_keeps_session_alive_and_refresh_reissues(self, auth, clock):
        result = await _register(auth)
        clock.advance(3000)
        await auth.authenticate(result.token)
        clock.advance(3000)

        # The first token has expired but the session slid forward
        assert await auth.verify_session(result.token) is None
        refreshed = await auth.refresh_session(result.session_id)

        assert refreshed.session_id == result.session_id
        context = await auth.authenticate(refreshed.token)
        assert context.session_id == result.session_id

    async def test_refresh_revoked_session(self, auth):
        result = await _register(auth)
        await auth.logout(result.session_id)

        with pytest.raises(SessionNotFoundError):
            await auth.refresh_session(result.session_id)


class TestSessionManagement:
    async def test_revoke_all_other_sessions(self, auth):
        first = await _register(auth)
        for _ in range(2):
            await auth.login(Credentials(email="john@example.com", password=PASSWORD))

        revoked = await auth.revoke_all_other_sessions(first.session_id, first.user.id)

        assert revoked == 2
        remaining = await auth.get_all_user_sessions(first.user.id, first.session_id)
        assert [(s.session_id, s.is_current) for s in remaining] == [(first.session_id, True)]

    async def test_revoke_single_session(self, auth):
        first = await _register(auth)
        second = await auth.login(Credentials(email="john@example.com", password=PASSWORD))

        assert await auth.revoke_session(second.session_id, first.user.id) is True
        with pytest.raises(SessionNotFoundError):
            await auth.authenticate(second.token)
        await auth.authenticate(first.token)

    async def test_cannot_touch_another_users_session(self, auth):
        john = await _register(auth)
        jane = await _register(auth, email="jane@example.com", name="Jane")

        with pytest.raises(SessionNotFoundError) as excinfo:
            await auth.revoke_session(jane.session_id, john.user.id)
        assert excinfo.value.status_code == 404
        assert excinfo.value.error_code == "not_found"
        await auth.authenticate(jane.token)

    async def test_get_current_session(self, auth):
        result = await _register(auth, ip="10.0.0.1")

        current = await auth.get_current_session(result.session_id, result.user.id)

        assert current.is_current is True
        assert current.ip_address == "10.0.0.1"

    async def test_sessions_newest_first(self, auth, clock):
        first = await _register(auth)
        clock.advance(5)
        second = await auth.login(Credentials(email="john@example.com", password=PASSWORD))

        listed = await auth.get_all_user_sessions(first.user.id, second.session_id)

        assert [s.session_id for s in listed] == [second.session_id, first.session_id]
        assert [s.is_current for s in listed] == [True, False]

    async def test_invalidate_all_user_sessions(self, auth):
        result = await _register(auth)
        await auth.login(Credentials(email="john@example.com", password=PASSWORD))

        assert await auth.invalidate_all_user_sessions(result.user.id) == 2
        assert await auth.get_all_user_sessions(result.user.id) == []


class TestPasswordReset:
    async def test_unknown_email_gets_no_token(self, auth):
        assert await auth.create_password_reset_token("ghost@example.com") is None

    async def test_reset_changes_password_and_ends_sessions(self, auth):
        result = await _register(auth)
        token = await auth.create_password_reset_token("john@example.com")

        revoked = await auth.reset_password(token, "a-new-password-456")

        assert revoked == 1
        with pytest.raises(SessionNotFoundError):
            await auth.authenticate(result.token)
        with pytest.raises(InvalidCredentialsError):
            await auth.login(Credentials(email="john@example.com", password=PASSWORD))
        await auth.login(Credentials(email="john@example.com", password="a-new-password-456"))

    async def test_token_is_single_use(self, auth):
        await _register(auth)
        token = await auth.create_password_reset_token("john@example.com")
        await auth.reset_password(token, "a-new-password-456")

        with pytest.raises(InvalidTokenError):
            await auth.reset_password(token, "another-password-789")

    async def test_token_expires(self, auth, clock):
        await _register(auth)
        token = await auth.create_password_reset_token("john@example.com")
        clock.advance(901)

        with pytest.raises(InvalidTokenError):
            await auth.reset_password(token, "a-new-password-456")

    async def test_reset_lifts_email_lockout(self, auth):
        await _register(auth)
        for _ in range(6):
            await _bad_login(auth)
        token = await auth.create_password_reset_token("john@example.com")

        await auth.reset_password(token, "a-new-password-456")

        result = await auth.login(
            Credentials(email="john@example.com", password="a-new-password-456")
        )
        assert result.token


class TestStoreOutage:
    async def test_login_fails_closed_without_session_store(
        self, db, failing_store, settings, hasher, clock
    ):
        await db.create_user("Ann", "ann@example.com", hasher.hash(PASSWORD))
        auth = AuthService.build(db, failing_store, settings, hasher=hasher, clock=clock)

        with pytest.raises(InfrastructureError) as excinfo:
            await auth.login(Credentials(email="ann@example.com", password=PASSWORD))
        assert excinfo.value.status_code == 503

    async def test_bad_password_still_rejected_without_store(
        self, db, failing_store, settings, hasher, clock
    ):
        await db.create_user("Ann", "ann@example.com", hasher.hash(PASSWORD))
        auth = AuthService.build(db, failing_store, settings, hasher=hasher, clock=clock)

        with pytest.raises(InvalidCredentialsError):
            await auth.login(Credentials(email="ann@example.com", password="nope-nope"))

    async def test_authenticate_fails_closed(self, auth, db, failing_store, settings, clock):
        result = await _register(auth)
        broken = AuthService.build(db, failing_store, settings, clock=clock)

        with pytest.raises(InfrastructureError):
            await broken.authenticate(result.token)
