"""Tests for the account state machine and password login."""

from datetime import datetime, timedelta, timezone

import pytest

from warden.service.errors import AccountStateViolation, InvalidCredential, ValidationError
from warden.storage.models import Account, AccountStatus

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def account():
    return Account.register("alice", "Alice@Example.com ", now=NOW)


class TestRegistration:
    def test_new_accounts_are_pending_and_normalized(self, account):
        assert account.status is AccountStatus.PENDING_ACTIVATION
        assert account.username == "alice"
        assert account.email == "alice@example.com"

    def test_username_required_unless_anonymous(self):
        with pytest.raises(ValidationError):
            Account.register("  ")
        anon = Account.register(None, is_anonymous=True)
        assert anon.username is None
        assert anon.is_anonymous

    def test_pending_accounts_may_authenticate(self, account):
        assert account.can_authenticate(NOW)


class TestLockout:
    def test_threshold_failures_lock_until_deadline(self, account):
        lockout = timedelta(minutes=15)
        results = [account.record_failed_login(NOW, 3, lockout) for _ in range(3)]
        assert results == [False, False, True]
        assert account.status is AccountStatus.LOCKED
        assert account.locked_until == NOW + lockout
        assert not account.can_authenticate(NOW + timedelta(minutes=14))
        assert account.can_authenticate(NOW + lockout)

    def test_successful_login_resets_counters_and_activates(self, account):
        account.record_failed_login(NOW, 5, timedelta(minutes=1))
        account.require_password_reset()
        account.record_successful_login(NOW)
        assert account.failed_login_count == 0
        assert account.status is AccountStatus.ACTIVE
        assert account.must_reset_password is False
        assert account.last_login_at == NOW

    def test_successful_login_after_lock_expiry_unlocks(self, account):
        account.lock(NOW + timedelta(minutes=1))
        account.record_successful_login(NOW + timedelta(minutes=2))
        assert account.status is AccountStatus.ACTIVE
        assert account.locked_until is None

    def test_login_while_locked_is_rejected(self, account):
        account.lock(NOW + timedelta(minutes=5))
        with pytest.raises(AccountStateViolation):
            account.record_successful_login(NOW)

    def test_failure_after_lock_expiry_starts_a_new_count(self, account):
        lockout = timedelta(minutes=15)
        for _ in range(5):
            account.record_failed_login(NOW, 5, lockout)
        assert account.status is AccountStatus.LOCKED
        assert account.failed_login_count == 0

        later = NOW + timedelta(minutes=16)
        assert account.record_failed_login(later, 5, lockout) is False
        assert account.status is AccountStatus.ACTIVE
        assert account.failed_login_count == 1
        assert account.can_authenticate(later)

    def test_expired_lock_relocks_only_after_full_threshold(self, account):
        lockout = timedelta(minutes=15)
        for _ in range(3):
            account.record_failed_login(NOW, 3, lockout)
        later = NOW + lockout
        results = [account.record_failed_login(later, 3, lockout) for _ in range(3)]
        assert results == [False, False, True]
        assert account.locked_until == later + lockout

    def test_unlock_clears_lock(self, account):
        account.lock(NOW + timedelta(hours=1))
        account.unlock()
        assert account.status is AccountStatus.ACTIVE
        assert account.can_authenticate(NOW)


class TestTransitions:
    def test_activate_only_from_pending(self, account):
        account.activate()
        assert account.status is AccountStatus.ACTIVE
        account.activate()
        account.suspend()
        with pytest.raises(AccountStateViolation) as excinfo:
            account.activate()
        assert excinfo.value.status_code == 409

    def test_suspended_cannot_authenticate_or_be_locked(self, account):
        account.suspend()
        assert not account.can_authenticate(NOW)
        with pytest.raises(AccountStateViolation):
            account.lock(NOW + timedelta(minutes=5))
        with pytest.raises(AccountStateViolation):
            account.record_failed_login(NOW)

    def test_deactivation_is_terminal(self, account):
        account.deactivate()
        assert not account.can_authenticate(NOW)
        for transition in (account.suspend, account.deactivate, account.activate):
            with pytest.raises(AccountStateViolation):
                transition()
        with pytest.raises(AccountStateViolation):
            account.set_password_hash("x")

    def test_violation_message_is_generic(self, account):
        account.deactivate()
        with pytest.raises(AccountStateViolation) as excinfo:
            account.suspend()
        assert excinfo.value.message == AccountStateViolation.public_message
        assert "suspend" in excinfo.value.reason


class TestPasswordLogin:
    def test_login_promotes_pending_account(self, services):
        created = services.accounts.register("bob", "hunter2hunter2", "bob@example.com")
        account = services.accounts.authenticate_password("bob", "hunter2hunter2")
        assert created.status is AccountStatus.PENDING_ACTIVATION
        assert account.status is AccountStatus.ACTIVE

    def test_login_by_email(self, services):
        services.accounts.register("bob", "hunter2hunter2", "bob@example.com")
        account = services.accounts.authenticate_password("BOB@example.com", "hunter2hunter2")
        assert account.username == "bob"

    def test_unknown_user_and_wrong_password_look_the_same(self, services):
        services.accounts.register("bob", "hunter2hunter2")
        with pytest.raises(InvalidCredential) as unknown:
            services.accounts.authenticate_password("nobody", "hunter2hunter2")
        with pytest.raises(InvalidCredential) as wrong:
            services.accounts.authenticate_password("bob", "wrong-password")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401

    def test_failed_attempts_persist_and_lock(self, services):
        services.accounts.register("bob", "hunter2hunter2")
        for _ in range(services.settings.lockout_threshold):
            with pytest.raises(InvalidCredential):
                services.accounts.authenticate_password("bob", "wrong-password")
        stored = services.store.get_account_by_username("bob")
        assert stored.status is AccountStatus.LOCKED
        with pytest.raises(AccountStateViolation):
            services.accounts.authenticate_password("bob", "hunter2hunter2")

    def test_one_failure_after_lock_expiry_does_not_relock(self, services):
        services.accounts.register("bob", "hunter2hunter2")
        for _ in range(services.settings.lockout_threshold):
            with pytest.raises(InvalidCredential):
                services.accounts.authenticate_password("bob", "wrong-password", now=NOW)
        later = NOW + timedelta(minutes=services.settings.lockout_minutes + 1)
        with pytest.raises(InvalidCredential):
            services.accounts.authenticate_password("bob", "wrong-password", now=later)
        stored = services.store.get_account_by_username("bob")
        assert stored.status is AccountStatus.ACTIVE
        assert stored.failed_login_count == 1
        assert services.accounts.authenticate_password("bob", "hunter2hunter2", now=later).id == stored.id

    def test_passwordless_account_cannot_password_login(self, services):
        services.accounts.register_external("github", "12345", username="octo")
        with pytest.raises(InvalidCredential):
            services.accounts.authenticate_password("octo", "anything-at-all")

    def test_external_registration_is_find_or_create(self, services):
        first = services.accounts.register_external("github", "12345", email="octo@example.com")
        second = services.accounts.register_external("github", "12345")
        assert first.id == second.id
        assert first.username == "octo"

    def test_change_password_requires_current(self, services):
        account = services.accounts.register("bob", "hunter2hunter2")
        with pytest.raises(InvalidCredential):
            services.accounts.change_password(account.id, "nope-nope", "new-password-1")
        services.accounts.change_password(account.id, "hunter2hunter2", "new-password-1")
        assert services.accounts.authenticate_password("bob", "new-password-1").id == account.id

    def test_short_password_rejected(self, services):
        with pytest.raises(ValidationError):
            services.accounts.register("bob", "short")

    async def test_suspend_revokes_sessions(self, services):
        account = services.accounts.register("bob", "hunter2hunter2")
        _, session, _ = await services.auth.login("bob", "hunter2hunter2")
        services.accounts.suspend(account.id)
        assert services.store.get_session(session.id).revoked
        with pytest.raises(AccountStateViolation):
            services.accounts.authenticate_password("bob", "hunter2hunter2")


class TestIdentityLinks:
    def test_link_is_normalized_and_unique(self, account):
        assert account.link_identity(" GitHub ", "12345", "Alice@Example.com", now=NOW)
        assert not account.link_identity("github", "12345")
        [link] = account.identity_links()
        assert (link.provider, link.subject, link.email) == ("github", "12345", "alice@example.com")

    def test_unlink(self, account):
        account.link_identity("github", "12345")
        assert account.unlink_identity("GitHub", "12345")
        assert not account.unlink_identity("github", "12345")
        assert account.identity_links() == []

    def test_blank_provider_is_rejected(self, account):
        with pytest.raises(ValidationError):
            account.link_identity(" ", "12345")
