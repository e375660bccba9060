"""Unit tests for AuthService.authenticate() / login() and the password policy.

Covers:
- Correct password returns the user with secrets stripped
- Wrong password, unknown email, passwordless and inactive accounts all
  return None and count toward lockout
- Lockout engages after five failures and lifts after the window
- Parallel wrong-password attempts get at most max_attempts guesses
- Successful login clears the failure counter
- login() raises InvalidCredentials and issues a session on success
- check_password_policy() rules and register()
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

import auth.service as service_module
from auth.errors import AccountLocked, InvalidCredentials, RegistrationError, WeakPassword
from auth.models import LinkPurpose


class TestAuthenticate:
    def test_valid_credentials(self, service, alice, password):
        user = service.authenticate("alice@example.com", password)
        assert user is not None
        assert user.id == alice.id
        assert user.hashed_password is None
        assert user.refresh_token_hash is None

    def test_email_is_case_insensitive(self, service, alice, password):
        assert service.authenticate("ALICE@Example.com", password) is not None

    def test_wrong_password(self, service, alice):
        assert service.authenticate("alice@example.com", "Wrong-Horse-1") is None
        assert service.lockout.status("alice@example.com").attempts == 1

    def test_unknown_email_counts_as_failure(self, service):
        assert service.authenticate("nobody@example.com", "Whatever-1") is None
        assert service.lockout.status("nobody@example.com").attempts == 1

    def test_passwordless_account_cannot_use_password(self, service):
        service.create_user(email="ml@example.com")
        assert service.authenticate("ml@example.com", "Anything-1") is None

    def test_inactive_account_rejected(self, service, alice, password):
        service.users.update_user(alice.id, is_active=False)
        assert service.authenticate("alice@example.com", password) is None
        assert service.lockout.status("alice@example.com").attempts == 1

    def test_success_clears_counter(self, service, alice, password):
        for _ in range(3):
            service.authenticate("alice@example.com", "Wrong-Horse-1")
        assert service.authenticate("alice@example.com", password) is not None
        assert service.lockout.status("alice@example.com").attempts == 0


class TestLockoutThroughService:
    def test_lock_then_unlock_after_window(self, service, clock, password):
        service.create_user(email="a@x.com", password=password)
        for _ in range(5):
            assert service.authenticate("a@x.com", "Wrong-Horse-1") is None

        clock.advance(minutes=1)
        with pytest.raises(AccountLocked) as exc_info:
            service.authenticate("a@x.com", password)
        assert exc_info.value.minutes_remaining == 14

        clock.advance(minutes=15)
        assert service.authenticate("a@x.com", password) is not None
        assert service.lockout.status("a@x.com").attempts == 0

    def test_correct_password_refused_while_locked(self, service, alice, password):
        for _ in range(5):
            service.authenticate("alice@example.com", "Wrong-Horse-1")
        with pytest.raises(AccountLocked):
            service.authenticate("alice@example.com", password)

    def test_parallel_guesses_capped_at_max_attempts(self, service, alice, monkeypatch):
        checked = []
        real_verify = service_module.verify_password

        def counting_verify(plain, hashed):
            checked.append(plain)
            return real_verify(plain, hashed)

        monkeypatch.setattr(service_module, "verify_password", counting_verify)

        def guess(i):
            try:
                return service.authenticate("alice@example.com", f"Wrong-guess-{i}!")
            except AccountLocked:
                return "locked"

        with ThreadPoolExecutor(max_workers=40) as pool:
            results = list(pool.map(guess, range(40)))

        assert len(checked) <= service.lockout.max_attempts
        assert results.count("locked") >= 40 - service.lockout.max_attempts
        assert service.lockout.status("alice@example.com").locked is True


class TestLogin:
    def test_login_issues_session(self, service, alice, password):
        session = service.login("alice@example.com", password)
        assert session.token_type == "bearer"
        assert session.expires_in == service.settings.access_token_expire_seconds
        payload = service.verify_bearer(session.access_token)
        assert payload["user_id"] == alice.id
        assert payload["email"] == "alice@example.com"
        assert service.users.get_by_id(alice.id).refresh_token_hash is not None

    def test_login_failure_raises(self, service, alice):
        with pytest.raises(InvalidCredentials) as exc_info:
            service.login("alice@example.com", "Wrong-Horse-1")
        assert exc_info.value.status_code == 401
        assert exc_info.value.code == "bad_credentials"

    def test_unknown_and_wrong_password_look_identical(self, service, alice):
        with pytest.raises(InvalidCredentials) as wrong:
            service.login("alice@example.com", "Wrong-Horse-1")
        with pytest.raises(InvalidCredentials) as unknown:
            service.login("nobody@example.com", "Wrong-Horse-1")
        assert wrong.value.message == unknown.value.message


class TestPasswordPolicy:
    @pytest.mark.parametrize(
        "candidate",
        ["Sh0rt!", "alllower-1", "ALLUPPER-1", "NoDigits-here", "NoSpecial123", "Ab1!" + "x" * 80],
    )
    def test_rejects_weak_passwords(self, service, candidate):
        with pytest.raises(WeakPassword):
            service.check_password_policy(candidate)

    def test_accepts_strong_password(self, service, password):
        service.check_password_policy(password)


class TestRegister:
    def test_register_sends_verification_link(self, service, sender, password):
        user = service.register("Bob", "bob@example.com", password)
        assert user.is_email_verified is False
        assert sender.sent[-1].to == "bob@example.com"
        assert service.users.get_by_id(user.id).link_purpose is LinkPurpose.VERIFY_EMAIL

    def test_register_assigns_default_role(self, service, role_store, password):
        user = service.register("Bob", "bob@example.com", password)
        assert user.role_ids == {role_store.get_default().id}

    def test_duplicate_email_rejected(self, service, alice, password):
        with pytest.raises(RegistrationError):
            service.register("Alice again", "ALICE@example.com", password)

    def test_weak_password_rejected(self, service):
        with pytest.raises(WeakPassword):
            service.register("Bob", "bob@example.com", "password")
        assert service.users.get_by_email("bob@example.com") is None
