"""Unit tests for the bearer / refresh lifecycle in auth/service.py.

Covers:
- issue_session() supersedes any earlier refresh secret
- rotate() returns a fresh pair and the old secret stops working
- Replaying a rotated-out secret clears the stored hash, so the legitimate
  holder's newer secret is dead too, and records the replayed secret
- rotate() refuses expired secrets and deactivated users
- A lost compare-and-swap race is treated as reuse
- end_session() clears the refresh hash and revokes only the caller's bearer
- revoke_all_sessions() and verify_bearer()
- Injected Settings set the bearer lifetime, signing key and HMAC key
"""

from __future__ import annotations

import pytest
from jose import jwt

from auth.errors import InvalidRefreshToken
from auth.models import TokenClass
from auth.service import AuthService
from auth.tokens import decode_access_token, hash_token
from core.config import Settings


@pytest.fixture
def session(service, alice):
    return service.issue_session(alice)


class TestIssue:
    def test_new_session_supersedes_old_refresh(self, service, alice, session):
        second = service.issue_session(alice)
        with pytest.raises(InvalidRefreshToken):
            service.rotate(alice.id, session.refresh_token)
        # the reuse detection above wiped the second secret too
        with pytest.raises(InvalidRefreshToken):
            service.rotate(alice.id, second.refresh_token)

    def test_refresh_stored_as_hash(self, service, alice, session):
        stored = service.users.get_by_id(alice.id).refresh_token_hash
        assert stored == hash_token(session.refresh_token)
        assert session.refresh_token not in stored


class TestRotate:
    def test_rotation_returns_new_pair(self, service, alice, session):
        rotated = service.rotate(alice.id, session.refresh_token)
        assert rotated.refresh_token != session.refresh_token
        assert rotated.access_token != session.access_token
        assert service.verify_bearer(rotated.access_token)["user_id"] == alice.id

    def test_rotation_is_single_use(self, service, alice, session):
        rotated = service.rotate(alice.id, session.refresh_token)
        again = service.rotate(alice.id, rotated.refresh_token)
        assert again.refresh_token != rotated.refresh_token

    def test_replay_revokes_current_secret(self, service, alice, session):
        rotated = service.rotate(alice.id, session.refresh_token)

        with pytest.raises(InvalidRefreshToken):
            service.rotate(alice.id, session.refresh_token)

        assert service.users.get_by_id(alice.id).refresh_token_hash is None
        with pytest.raises(InvalidRefreshToken):
            service.rotate(alice.id, rotated.refresh_token)

    def test_replay_is_recorded(self, service, alice, session):
        service.rotate(alice.id, session.refresh_token)
        with pytest.raises(InvalidRefreshToken):
            service.rotate(alice.id, session.refresh_token)

        assert service.revocations.is_revoked(session.refresh_token)
        records = service.revocations.list_for_owner(alice.id)
        assert [r.token_class for r in records] == [TokenClass.REFRESH]
        assert records[0].reason == "Refresh token reuse detected"

    def test_unknown_user(self, service):
        with pytest.raises(InvalidRefreshToken):
            service.rotate(9999, "deadbeef")

    def test_no_stored_secret(self, service, alice):
        with pytest.raises(InvalidRefreshToken):
            service.rotate(alice.id, "deadbeef")

    def test_expired_secret(self, service, alice, session, clock):
        clock.advance(days=31)
        with pytest.raises(InvalidRefreshToken):
            service.rotate(alice.id, session.refresh_token)
        assert service.users.get_by_id(alice.id).refresh_token_hash is None

    def test_deactivated_user(self, service, alice, session):
        service.users.update_user(alice.id, is_active=False)
        with pytest.raises(InvalidRefreshToken):
            service.rotate(alice.id, session.refresh_token)

    def test_lost_race_counts_as_reuse(self, service, alice, session, monkeypatch):
        # Simulate another request rotating the secret between read and write.
        monkeypatch.setattr(service.users, "swap_refresh_token", lambda *a, **kw: False)
        with pytest.raises(InvalidRefreshToken):
            service.rotate(alice.id, session.refresh_token)
        assert service.users.get_by_id(alice.id).refresh_token_hash is None
        assert service.revocations.is_revoked(session.refresh_token)

    def test_bearer_carries_permission_snapshot(self, service, alice, session, role_store):
        rotated = service.rotate(alice.id, session.refresh_token)
        payload = service.verify_bearer(rotated.access_token)
        assert set(payload["permissions"]) == role_store.get_default().permissions


class TestEndSession:
    def test_logout_clears_refresh(self, service, alice, session):
        service.end_session(alice.id)
        with pytest.raises(InvalidRefreshToken):
            service.rotate(alice.id, session.refresh_token)

    def test_logout_revokes_own_bearer(self, service, alice, session):
        service.end_session(alice.id, bearer=session.access_token)
        assert service.verify_bearer(session.access_token) is None
        record = service.revocations.list_for_owner(alice.id)[0]
        assert record.token_class is TokenClass.ACCESS
        assert record.reason == "User-initiated logout"

    def test_logout_ignores_foreign_bearer(self, service, alice, session, password):
        bob = service.create_user(email="bob@example.com", password=password)
        bob_session = service.issue_session(bob)
        service.end_session(alice.id, bearer=bob_session.access_token)
        assert service.verify_bearer(bob_session.access_token) is not None


class TestRevokeAll:
    def test_revoke_all_sessions(self, service, alice, session):
        service.end_session(alice.id, bearer=session.access_token)
        fresh = service.issue_session(alice)

        count = service.revoke_all_sessions(alice.id, "Subscription cancelled")

        assert count == 1
        assert service.revocations.list_for_owner(alice.id)[0].reason == "Subscription cancelled"
        with pytest.raises(InvalidRefreshToken):
            service.rotate(alice.id, fresh.refresh_token)


class TestVerifyBearer:
    def test_valid(self, service, alice, session):
        assert service.verify_bearer(session.access_token)["email"] == "alice@example.com"

    def test_garbage(self, service):
        assert service.verify_bearer("garbage") is None


class TestInjectedSettings:
    KEY = "x" * 40

    @pytest.fixture
    def short_lived(self, user_store, role_store, revocation_store, sender, clock):
        settings = Settings(_env_file=None, debug=True, secret_key=self.KEY, access_token_expire_seconds=60)
        return AuthService(
            users=user_store,
            roles=role_store,
            revocations=revocation_store,
            mailer=sender,
            settings=settings,
            clock=clock,
        )

    def test_bearer_uses_injected_lifetime_and_clock(self, short_lived, clock):
        user = short_lived.create_user(email="dave@example.com")
        session = short_lived.issue_session(user)
        assert session.expires_in == 60

        claims = jwt.decode(session.access_token, self.KEY, algorithms=["HS256"], options={"verify_exp": False})
        assert claims["exp"] - claims["iat"] == 60
        assert claims["iat"] == int(clock.now.timestamp())

        assert short_lived.verify_bearer(session.access_token)["user_id"] == user.id
        clock.advance(seconds=61)
        assert short_lived.verify_bearer(session.access_token) is None

    def test_signing_and_hmac_use_injected_key(self, short_lived):
        user = short_lived.create_user(email="dave@example.com")
        session = short_lived.issue_session(user)

        assert decode_access_token(session.access_token) is None
        stored = short_lived.users.get_by_id(user.id).refresh_token_hash
        assert stored == hash_token(session.refresh_token, self.KEY)
        assert stored != hash_token(session.refresh_token)
        assert short_lived.rotate(user.id, session.refresh_token).expires_in == 60
