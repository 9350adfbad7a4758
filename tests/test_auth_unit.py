"""Unit tests for the account lifecycle in AuthService."""

from datetime import timedelta

import pytest

from asphaltworks.service.errors import AuthenticationError, ConflictError, ValidationError
from asphaltworks.service.runtime import get_runtime
from asphaltworks.storage.models import utcnow

PASSWORD = "Asphalt@2024"
NEW_PASSWORD = "Bitume$2025"


async def _register(username="alice", email="alice@example.com"):
    return await get_runtime().auth.register(
        username=username,
        email=email,
        password=PASSWORD,
        first_name="Alice",
        last_name="Martin",
    )


class TestRegister:
    async def test_register_creates_unverified_user(self, outbox):
        user = await _register(email="  Alice@Example.com ")
        assert user.role == "user"
        assert user.email == "alice@example.com"
        assert not user.is_email_verified
        assert user.email_verification_token is not None
        assert outbox.token("alice@example.com", "verify-email")

    async def test_stored_token_is_a_digest(self, outbox):
        user = await _register()
        token = outbox.token("alice@example.com", "verify-email")
        assert user.email_verification_token != token
        assert user.email_verification_token == get_runtime().credentials.digest(token)

    async def test_duplicate_email_conflicts(self, outbox):
        await _register()
        with pytest.raises(ConflictError) as excinfo:
            await _register(username="alice2")
        assert excinfo.value.detail["field"] == "email"

    async def test_duplicate_username_conflicts_case_insensitively(self, outbox):
        await _register()
        with pytest.raises(ConflictError) as excinfo:
            await _register(username="ALICE", email="other@example.com")
        assert excinfo.value.detail["field"] == "username"


class TestLogin:
    async def test_login_issues_tokens(self, make_user):
        user = make_user()
        logged_in, issued = await get_runtime().auth.login(
            email="alice@example.com", password=PASSWORD
        )
        assert logged_in.id == user.id
        assert logged_in.last_login is not None
        assert logged_in.refresh_token == issued.refresh_digest
        assert get_runtime().tokens.decode_access_token(issued.access_token) == user.id

    async def test_unknown_email_and_bad_password_look_alike(self, make_user):
        make_user()
        auth = get_runtime().auth
        with pytest.raises(AuthenticationError) as unknown:
            await auth.login(email="nobody@example.com", password=PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            await auth.login(email="alice@example.com", password="Wrong#Pass1")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.reason == wrong.value.reason == "invalid_credentials"

    async def test_lockout_after_max_attempts(self, make_user, outbox):
        make_user()
        runtime = get_runtime()
        attempts = runtime.settings.max_login_attempts
        for _ in range(attempts):
            with pytest.raises(AuthenticationError):
                await runtime.auth.login(email="alice@example.com", password="Wrong#Pass1")

        # the right password no longer helps while the lock holds
        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.auth.login(email="alice@example.com", password=PASSWORD)
        assert excinfo.value.reason == "account_locked"
        assert "lockUntil" in excinfo.value.detail

        locked = [m for m in outbox.to("alice@example.com") if "blocked" in m["subject"]]
        assert len(locked) == 1

    async def test_expired_lock_resets_counter(self, make_user):
        user = make_user()
        runtime = get_runtime()
        runtime.store.update_user(
            user.id, login_attempts=5, lock_until=utcnow() - timedelta(minutes=1)
        )
        with pytest.raises(AuthenticationError):
            await runtime.auth.login(email="alice@example.com", password="Wrong#Pass1")
        assert runtime.store.get_user(user.id).login_attempts == 1

    async def test_success_resets_counter(self, make_user):
        user = make_user()
        runtime = get_runtime()
        with pytest.raises(AuthenticationError):
            await runtime.auth.login(email="alice@example.com", password="Wrong#Pass1")
        await runtime.auth.login(email="alice@example.com", password=PASSWORD)
        assert runtime.store.get_user(user.id).login_attempts == 0

    async def test_deactivated_checked_after_password(self, make_user):
        user = make_user()
        runtime = get_runtime()
        runtime.store.update_user(user.id, is_active=False)
        with pytest.raises(AuthenticationError) as wrong:
            await runtime.auth.login(email="alice@example.com", password="Wrong#Pass1")
        assert wrong.value.reason == "invalid_credentials"
        with pytest.raises(AuthenticationError) as right:
            await runtime.auth.login(email="alice@example.com", password=PASSWORD)
        assert right.value.reason == "account_deactivated"


class TestRefresh:
    async def test_rotation_invalidates_old_token(self, make_user):
        make_user()
        auth = get_runtime().auth
        _, first = await auth.login(email="alice@example.com", password=PASSWORD)
        _, second = await auth.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token

        with pytest.raises(AuthenticationError) as excinfo:
            await auth.refresh(first.refresh_token)
        assert excinfo.value.reason == "token_invalid"
        await auth.refresh(second.refresh_token)

    async def test_concurrent_refresh_with_same_token_has_one_winner(self, make_user, monkeypatch):
        make_user()
        runtime = get_runtime()
        auth = runtime.auth
        _, first = await auth.login(email="alice@example.com", password=PASSWORD)
        # both requests looked the token up before either rotated it
        stale = runtime.store.get_user_by_refresh_token(
            runtime.credentials.digest(first.refresh_token)
        )
        _, winner = await auth.refresh(first.refresh_token)
        monkeypatch.setattr(
            runtime.store, "get_user_by_refresh_token", lambda digest: stale
        )

        with pytest.raises(AuthenticationError) as excinfo:
            await auth.refresh(first.refresh_token)
        assert excinfo.value.reason == "token_invalid"
        monkeypatch.undo()
        assert runtime.store.get_user(stale.id).refresh_token == runtime.credentials.digest(
            winner.refresh_token
        )

    async def test_new_login_invalidates_previous_device(self, make_user):
        make_user()
        auth = get_runtime().auth
        _, laptop = await auth.login(email="alice@example.com", password=PASSWORD)
        await auth.login(email="alice@example.com", password=PASSWORD)
        with pytest.raises(AuthenticationError):
            await auth.refresh(laptop.refresh_token)

    async def test_expired_refresh_token(self, make_user):
        user = make_user()
        runtime = get_runtime()
        _, issued = await runtime.auth.login(email="alice@example.com", password=PASSWORD)
        runtime.store.update_user(user.id, refresh_token_expires=utcnow() - timedelta(seconds=1))
        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.auth.refresh(issued.refresh_token)
        assert excinfo.value.reason == "token_expired"
        assert runtime.store.get_user(user.id).refresh_token is None

    async def test_missing_refresh_token(self):
        with pytest.raises(AuthenticationError) as excinfo:
            await get_runtime().auth.refresh(None)
        assert excinfo.value.reason == "token_missing"

    async def test_logout_is_idempotent(self, make_user):
        user = make_user()
        auth = get_runtime().auth
        _, issued = await auth.login(email="alice@example.com", password=PASSWORD)
        await auth.logout(user)
        await auth.logout(user)
        with pytest.raises(AuthenticationError):
            await auth.refresh(issued.refresh_token)


class TestVerification:
    async def test_verify_round_trip_is_single_use(self, outbox):
        user = await _register()
        auth = get_runtime().auth
        token = outbox.token("alice@example.com", "verify-email")
        verified = await auth.verify_email(token)
        assert verified.id == user.id and verified.is_email_verified
        with pytest.raises(ValidationError):
            await auth.verify_email(token)

    async def test_expired_verification_token(self, outbox):
        user = await _register()
        runtime = get_runtime()
        token = outbox.token("alice@example.com", "verify-email")
        runtime.store.update_user(
            user.id, email_verification_expires=utcnow() - timedelta(seconds=1)
        )
        with pytest.raises(ValidationError):
            await runtime.auth.verify_email(token)
        assert not runtime.store.get_user(user.id).is_email_verified

    async def test_resend_replaces_token(self, outbox):
        await _register()
        auth = get_runtime().auth
        first = outbox.token("alice@example.com", "verify-email")
        await auth.resend_verification("alice@example.com")
        second = outbox.token("alice@example.com", "verify-email")
        assert first != second
        with pytest.raises(ValidationError):
            await auth.verify_email(first)
        await auth.verify_email(second)

    async def test_resend_when_verified(self, make_user):
        make_user(verified=True)
        with pytest.raises(ValidationError):
            await get_runtime().auth.resend_verification("alice@example.com")

    async def test_resend_unknown_email_is_silent(self, outbox):
        await get_runtime().auth.resend_verification("ghost@example.com")
        assert outbox.flush() == []


class TestPasswordRecovery:
    async def test_forgot_unknown_email_sends_nothing(self, outbox):
        await get_runtime().auth.forgot_password("ghost@example.com")
        assert outbox.flush() == []

    async def test_reset_round_trip(self, make_user, outbox):
        user = make_user()
        auth = get_runtime().auth
        _, issued = await auth.login(email="alice@example.com", password=PASSWORD)
        await auth.forgot_password("alice@example.com")
        token = outbox.token("alice@example.com", "reset-password")

        await auth.reset_password(token, NEW_PASSWORD)
        # the token is spent and the old refresh token is revoked
        with pytest.raises(ValidationError):
            await auth.reset_password(token, NEW_PASSWORD)
        with pytest.raises(AuthenticationError):
            await auth.refresh(issued.refresh_token)

        logged_in, _ = await auth.login(email="alice@example.com", password=NEW_PASSWORD)
        assert logged_in.id == user.id

    async def test_expired_reset_token_is_treated_as_absent(self, make_user, outbox):
        user = make_user()
        runtime = get_runtime()
        await runtime.auth.forgot_password("alice@example.com")
        token = outbox.token("alice@example.com", "reset-password")
        before = runtime.store.get_password_record(user.id)
        runtime.store.update_user(
            user.id, reset_password_expires=utcnow() - timedelta(seconds=1)
        )

        with pytest.raises(ValidationError):
            await runtime.auth.reset_password(token, NEW_PASSWORD)
        assert runtime.store.get_password_record(user.id) == before
        logged_in, _ = await runtime.auth.login(email="alice@example.com", password=PASSWORD)
        assert logged_in.id == user.id

    async def test_change_password(self, make_user, outbox):
        user = make_user()
        auth = get_runtime().auth
        with pytest.raises(ValidationError) as excinfo:
            await auth.change_password(
                user, current_password="Wrong#Pass1", new_password=NEW_PASSWORD
            )
        assert excinfo.value.detail["field"] == "currentPassword"

        await auth.change_password(user, current_password=PASSWORD, new_password=NEW_PASSWORD)
        await auth.login(email="alice@example.com", password=NEW_PASSWORD)
        assert any("changed" in m["subject"] for m in outbox.to("alice@example.com"))


class TestProfileUpdate:
    async def test_email_change_requires_new_verification(self, make_user, outbox):
        user = make_user()
        updated = await get_runtime().auth.update_profile(
            user, {"email": "New@Example.com", "first_name": "Alicia"}
        )
        assert updated.email == "new@example.com"
        assert updated.first_name == "Alicia"
        assert not updated.is_email_verified
        assert outbox.token("new@example.com", "verify-email")

    async def test_username_taken_by_someone_else(self, make_user):
        user = make_user()
        make_user("bob", "bob@example.com")
        with pytest.raises(ConflictError):
            await get_runtime().auth.update_profile(user, {"username": "bob"})

    async def test_keeping_own_username_is_fine(self, make_user):
        user = make_user()
        updated = await get_runtime().auth.update_profile(
            user, {"username": "alice", "language": "en"}
        )
        assert updated.language == "en"
