"""Unit tests for AuthService.

Tests for:
- Login, lockout and enumeration resistance
- Token refresh and logout
- Password change and administrative reset
- User creation, update and soft delete
"""

import asyncio
from datetime import timedelta

import pytest

from gymauth.service.auth import INVALID_CREDENTIALS, REFRESH_FAILED
from gymauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from gymauth.storage.models import DeviceInfo, UserStatus

PASSWORD = "Gym!Strong7Pass"
NEW_PASSWORD = "Fresh#Lift42Now"
DEVICE = DeviceInfo(user_agent="pytest", ip_address="203.0.113.5")


def _security_events(services, event_type):
    return services.store.list_security_events(event_type=event_type)


def _actions(services):
    return [entry.action for entry in services.store.list_activity_log()]


class TestLogin:
    async def test_login_by_username_and_email(self, services):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)

        by_name = await services.auth.login("jdoe", PASSWORD, DEVICE)
        by_email = await services.auth.login("JDoe@Example.com", PASSWORD, DEVICE)

        assert by_name.user.id == user.id
        assert by_email.user.id == user.id
        assert by_name.session_id != by_email.session_id
        claims = services.codec.verify_access_token(by_name.token)
        assert claims["session_id"] == by_name.session_id
        assert by_name.csrf_token
        assert "login_success" in _actions(services)

    async def test_success_resets_counter_and_records_last_login(self, services, clock):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                await services.auth.login("jdoe", "wrong", DEVICE)
        assert services.store.find_user_by_id(user.id).failed_login_attempts == 2

        await services.auth.login("jdoe", PASSWORD, DEVICE)
        stored = services.store.find_user_by_id(user.id)
        assert stored.failed_login_attempts == 0
        assert stored.last_login_at == clock()

    async def test_unknown_user_and_wrong_password_look_identical(self, services):
        await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)

        with pytest.raises(AuthenticationError) as unknown:
            await services.auth.login("ghost", PASSWORD, DEVICE)
        with pytest.raises(AuthenticationError) as wrong:
            await services.auth.login("jdoe", "not-it", DEVICE)

        assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS
        assert type(unknown.value) is type(wrong.value)

    async def test_inactive_user_cannot_login(self, services):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        services.store.set_user_status(user.id, UserStatus.INACTIVE.value)

        with pytest.raises(AuthenticationError) as excinfo:
            await services.auth.login("jdoe", PASSWORD, DEVICE)
        assert excinfo.value.message == INVALID_CREDENTIALS

    async def test_failed_attempts_are_audited(self, services):
        await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        with pytest.raises(AuthenticationError):
            await services.auth.login("jdoe", "wrong", DEVICE)

        events = _security_events(services, "failed_login")
        assert events[0].details["message"] == "Failed login attempt 1/5"
        assert events[0].ip_address == "203.0.113.5"
        assert "login_failed" in _actions(services)

    async def test_unknown_identifier_is_audited(self, services):
        with pytest.raises(AuthenticationError):
            await services.auth.login("nonexistent_user", "whatever", DEVICE)

        [event] = _security_events(services, "failed_login")
        assert event.severity == "medium"
        assert event.user_id is None
        assert event.details["identifier"] == "nonexistent_user"
        assert event.ip_address == "203.0.113.5"


class TestLockout:
    async def test_fifth_failure_locks_account(self, services, clock):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        for _ in range(5):
            with pytest.raises(AuthenticationError) as excinfo:
                await services.auth.login("jdoe", "wrong", DEVICE)
            assert excinfo.value.message == INVALID_CREDENTIALS

        stored = services.store.find_user_by_id(user.id)
        assert stored.failed_login_attempts == 5
        assert stored.is_locked(clock())
        assert len(_security_events(services, "account_locked")) == 1

        # Even the right password is refused while locked
        with pytest.raises(AccountLockedError) as locked:
            await services.auth.login("jdoe", PASSWORD, DEVICE)
        assert locked.value.message == "Account is temporarily locked"
        assert _security_events(services, "login_blocked_locked")

    async def test_lock_expires_after_fifteen_minutes(self, services, clock):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await services.auth.login("jdoe", "wrong", DEVICE)

        clock.advance(minutes=14)
        with pytest.raises(AccountLockedError):
            await services.auth.login("jdoe", PASSWORD, DEVICE)

        clock.advance(minutes=2)
        result = await services.auth.login("jdoe", PASSWORD, DEVICE)
        assert result.user.id == user.id
        assert services.store.find_user_by_id(user.id).locked_until is None

    async def test_elapsed_lock_restarts_the_count(self, services, clock):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await services.auth.login("jdoe", "wrong", DEVICE)
        clock.advance(minutes=16)

        with pytest.raises(AuthenticationError) as excinfo:
            await services.auth.login("jdoe", "wrong", DEVICE)
        assert not isinstance(excinfo.value, AccountLockedError)
        assert services.store.find_user_by_id(user.id).failed_login_attempts == 1

    async def test_elapsed_lock_reset_keeps_concurrent_failures(self, services, clock, monkeypatch):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await services.auth.login("jdoe", "wrong", DEVICE)
        clock.advance(minutes=16)
        store = services.store
        original_clear = store.clear_expired_lockout

        def clear_after_other_request(user_id, *, locked_until):
            # Another request resets the same lock and records its own failure first
            original_clear(user_id, locked_until=locked_until)
            store.increment_failed_login(
                user_id, max_attempts=5, lockout_until=clock() + timedelta(minutes=15)
            )
            return original_clear(user_id, locked_until=locked_until)

        monkeypatch.setattr(store, "clear_expired_lockout", clear_after_other_request)

        with pytest.raises(AuthenticationError):
            await services.auth.login("jdoe", "wrong", DEVICE)
        assert store.find_user_by_id(user.id).failed_login_attempts == 2

    async def test_concurrent_failures_are_all_counted(self, services):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)

        async def attempt():
            with pytest.raises(AuthenticationError):
                await services.auth.login("jdoe", "wrong", DEVICE)

        await asyncio.gather(*(attempt() for _ in range(4)))
        assert services.store.find_user_by_id(user.id).failed_login_attempts == 4


class TestRefreshAndLogout:
    async def test_refresh_issues_new_access_token(self, services):
        await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        login = await services.auth.login("jdoe", PASSWORD, DEVICE)

        refreshed = await services.auth.refresh_token(login.refresh_token, DEVICE)

        assert refreshed.token != login.token
        claims = services.codec.verify_access_token(refreshed.token)
        assert claims["session_id"] == login.session_id
        assert "token_refreshed" in _actions(services)

    async def test_refresh_with_access_token_fails_generically(self, services):
        await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        login = await services.auth.login("jdoe", PASSWORD, DEVICE)

        with pytest.raises(AuthenticationError) as excinfo:
            await services.auth.refresh_token(login.token, DEVICE)
        assert excinfo.value.message == REFRESH_FAILED
        assert _security_events(services, "token_refresh_failed")

    async def test_refresh_after_logout_fails(self, services):
        await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        login = await services.auth.login("jdoe", PASSWORD, DEVICE)
        await services.auth.logout(login.session.session_token, login.user.id)

        with pytest.raises(AuthenticationError) as excinfo:
            await services.auth.refresh_token(login.refresh_token, DEVICE)
        assert excinfo.value.message == REFRESH_FAILED

    async def test_refresh_for_deactivated_user_fails(self, services):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        login = await services.auth.login("jdoe", PASSWORD, DEVICE)
        services.store.set_user_status(user.id, UserStatus.INACTIVE.value)

        with pytest.raises(AuthenticationError) as excinfo:
            await services.auth.refresh_token(login.refresh_token, DEVICE)
        assert excinfo.value.message == REFRESH_FAILED

    async def test_refresh_with_garbage_fails(self, services):
        with pytest.raises(AuthenticationError) as excinfo:
            await services.auth.refresh_token("garbage", DEVICE)
        assert excinfo.value.message == REFRESH_FAILED

    async def test_logout_is_idempotent_and_audited(self, services):
        await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        login = await services.auth.login("jdoe", PASSWORD, DEVICE)

        assert await services.auth.logout(login.session.session_token, login.user.id) == 1
        assert await services.auth.logout(login.session.session_token, login.user.id) == 0
        assert _actions(services).count("logout") == 2

    async def test_logout_all_sessions(self, services):
        await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        first = await services.auth.login("jdoe", PASSWORD, DEVICE)
        await services.auth.login("jdoe", PASSWORD, DEVICE)

        count = await services.auth.logout(
            first.session.session_token, first.user.id, all_sessions=True
        )
        assert count == 2
        assert services.auth.get_user_sessions(first.user.id) == []

    async def test_revoke_unknown_session(self, services):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        with pytest.raises(NotFoundError):
            services.auth.revoke_session(user.id, "missing")


class TestPasswords:
    async def test_change_password_invalidates_sessions(self, services):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        login = await services.auth.login("jdoe", PASSWORD, DEVICE)
        await services.auth.login("jdoe", PASSWORD, DEVICE)

        invalidated = await services.auth.change_password(user.id, PASSWORD, NEW_PASSWORD)

        assert invalidated == 2
        assert services.sessions.validate_session(login.session.session_token) is None
        with pytest.raises(AuthenticationError):
            await services.auth.login("jdoe", PASSWORD, DEVICE)
        assert (await services.auth.login("jdoe", NEW_PASSWORD, DEVICE)).user.id == user.id
        assert "password_changed" in _actions(services)

    async def test_change_password_requires_current(self, services):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as excinfo:
            await services.auth.change_password(user.id, "wrong", NEW_PASSWORD)
        assert excinfo.value.message == "Current password is incorrect"
        assert "password_change_failed" in _actions(services)

    async def test_change_password_rejects_weak(self, services):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        with pytest.raises(ValidationError) as excinfo:
            await services.auth.change_password(user.id, PASSWORD, "weak")
        assert excinfo.value.detail["errors"]
        assert "score" in excinfo.value.detail

    async def test_change_password_rejects_reuse(self, services):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        with pytest.raises(ValidationError):
            await services.auth.change_password(user.id, PASSWORD, PASSWORD)

    async def test_admin_reset_clears_lockout_and_forces_change(self, services):
        admin = await services.auth.create_user("boss", "boss@example.com", PASSWORD, role="admin")
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await services.auth.login("jdoe", "wrong", DEVICE)

        temporary = await services.auth.reset_user_password(user.id, reset_by=admin.id)

        stored = services.store.find_user_by_id(user.id)
        assert stored.must_change_password is True
        assert stored.failed_login_attempts == 0
        assert stored.locked_until is None
        result = await services.auth.login("jdoe", temporary, DEVICE)
        assert result.user.must_change_password is True
        assert "password_reset_by_admin" in _actions(services)

    async def test_reset_unknown_user(self, services):
        with pytest.raises(NotFoundError):
            await services.auth.reset_user_password(999, NEW_PASSWORD)

    async def test_store_failures_during_password_change_are_audited(self, services, monkeypatch):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        admin = await services.auth.create_user("boss", "boss@example.com", PASSWORD, role="admin")

        def broken_update(*args, **kwargs):
            raise RuntimeError("could not write state file")

        monkeypatch.setattr(services.store, "update_user_password", broken_update)

        with pytest.raises(RuntimeError):
            await services.auth.change_password(user.id, PASSWORD, NEW_PASSWORD)
        with pytest.raises(RuntimeError):
            await services.auth.reset_user_password(user.id, reset_by=admin.id)

        entries = {e.action: e for e in services.store.list_activity_log()}
        assert entries["password_change_failed"].success is False
        assert entries["password_change_failed"].details == {
            "reason": "internal error",
            "error_type": "RuntimeError",
        }
        assert entries["password_reset_failed"].details["target_user_id"] == user.id
        assert entries["password_reset_failed"].details["error_type"] == "RuntimeError"



class TestUserAdministration:
    async def test_duplicate_user_rejected_before_hashing(self, services, monkeypatch):
        await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)

        async def no_hash(_):
            raise AssertionError("duplicate check must precede hashing")

        monkeypatch.setattr(services.auth, "_hash", no_hash)
        with pytest.raises(ConflictError) as excinfo:
            await services.auth.create_user("jdoe", "someone@example.com", PASSWORD)
        assert excinfo.value.message == "Username or email already exists"
        with pytest.raises(ConflictError):
            await services.auth.create_user("another", "JDOE@example.com", PASSWORD)
        assert "user_creation_failed" in _actions(services)

    async def test_create_user_validates_input(self, services):
        with pytest.raises(ValidationError):
            await services.auth.create_user("x", "x@example.com", PASSWORD)
        with pytest.raises(ValidationError):
            await services.auth.create_user("jdoe", "not-an-email", PASSWORD)
        with pytest.raises(ValidationError):
            await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD, role="owner")
        with pytest.raises(ValidationError):
            await services.auth.create_user("jdoe", "jdoe@example.com", "weak")

    async def test_update_user_allow_list(self, services):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)

        updated = await services.auth.update_user(user.id, {"role": "trainer", "email": "New@Example.com"})
        assert updated.role == "trainer"
        assert updated.email == "new@example.com"

        with pytest.raises(ValidationError) as excinfo:
            await services.auth.update_user(user.id, {"password_hash": "x"})
        assert excinfo.value.message == "Field 'password_hash' cannot be updated"

    async def test_update_user_conflict(self, services):
        await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        other = await services.auth.create_user("mary", "mary@example.com", PASSWORD)
        with pytest.raises(ConflictError):
            await services.auth.update_user(other.id, {"username": "jdoe"})

    async def test_deactivating_ends_sessions(self, services):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        login = await services.auth.login("jdoe", PASSWORD, DEVICE)
        await services.auth.update_user(user.id, {"status": "inactive"})
        assert services.sessions.validate_session(login.session.session_token) is None

    async def test_delete_user_is_soft(self, services):
        admin = await services.auth.create_user("boss", "boss@example.com", PASSWORD, role="admin")
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        login = await services.auth.login("jdoe", PASSWORD, DEVICE)

        await services.auth.delete_user(user.id, deleted_by=admin.id)

        stored = services.store.find_user_by_id(user.id)
        assert stored is not None
        assert stored.status == UserStatus.INACTIVE.value
        assert services.sessions.validate_session(login.session.session_token) is None
        with pytest.raises(AuthenticationError):
            await services.auth.login("jdoe", PASSWORD, DEVICE)

    async def test_cannot_delete_self(self, services):
        admin = await services.auth.create_user("boss", "boss@example.com", PASSWORD, role="admin")
        with pytest.raises(ValidationError) as excinfo:
            await services.auth.delete_user(admin.id, deleted_by=admin.id)
        assert excinfo.value.message == "Cannot delete your own account"

    async def test_delete_unknown_user(self, services):
        with pytest.raises(NotFoundError):
            await services.auth.delete_user(404, deleted_by=1)


class TestPermissions:
    async def test_role_permissions(self, services):
        member = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        trainer = await services.auth.create_user("coach", "coach@example.com", PASSWORD, role="trainer")

        assert services.auth.has_permission(member.id, "dashboard.view")
        assert not services.auth.has_permission(member.id, "members.view")
        assert services.auth.has_permission(trainer.id, "members.view")
        assert not services.auth.has_permission(trainer.id, "users.delete")

    async def test_inactive_user_has_no_permissions(self, services):
        user = await services.auth.create_user("jdoe", "jdoe@example.com", PASSWORD)
        services.store.set_user_status(user.id, UserStatus.INACTIVE.value)
        assert services.auth.get_user_permissions(user.id) == []

    async def test_needs_setup_until_admin_exists(self, services):
        assert services.auth.needs_setup()
        await services.auth.create_user("boss", "boss@example.com", PASSWORD, role="admin")
        assert not services.auth.needs_setup()
