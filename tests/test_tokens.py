"""Tests for session-bound JWT issuance, rotation and revocation."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from vdid.auth.tokens import TOKEN_TYPE_ACCESS, TOKEN_TYPE_REFRESH, TokenIssuer, fingerprint
from vdid.exceptions import AuthenticationError
from vdid.models import PrincipalStatus

from .conftest import TEST_JWT_SECRET


@pytest.fixture
def issuer(services):
    return services.tokens


class TestIssue:
    """Tests for token minting."""

    def test_claims(self, issuer, registered):
        pair = issuer.issue(registered)
        access = jwt.decode(pair.access_token, TEST_JWT_SECRET, algorithms=["HS256"], issuer="vdid.io")
        refresh = jwt.decode(pair.refresh_token, TEST_JWT_SECRET, algorithms=["HS256"], issuer="vdid.io")

        assert access["type"] == TOKEN_TYPE_ACCESS
        assert access["userId"] == registered.id
        assert access["vid"] == registered.vid
        assert access["email"] == registered.email
        assert access["sessionId"] == pair.session_id
        assert access["sub"] == registered.id
        assert access["exp"] - access["iat"] == 900

        assert refresh["type"] == TOKEN_TYPE_REFRESH
        assert refresh["sessionId"] == pair.session_id
        assert "vid" not in refresh
        assert refresh["exp"] - refresh["iat"] == 7 * 24 * 3600
        assert access["jti"] != refresh["jti"]

    def test_session_row_stores_fingerprint_only(self, issuer, repository, registered):
        pair = issuer.issue(registered, ip_address="10.0.0.1", user_agent="pytest")
        session = repository.get_session(pair.session_id)
        assert session.is_active
        assert session.refresh_fingerprint == fingerprint(pair.refresh_token)
        assert session.refresh_fingerprint != pair.refresh_token
        assert session.ip_address == "10.0.0.1"
        assert session.user_agent == "pytest"


class TestVerify:
    """Tests for access/refresh verification."""

    def test_authenticate(self, issuer, registered):
        pair = issuer.issue(registered)
        ctx = issuer.authenticate(pair.access_token)
        assert ctx.principal_id == registered.id
        assert ctx.session_id == pair.session_id

    def test_type_confusion_rejected(self, issuer, registered):
        pair = issuer.issue(registered)
        assert issuer.verify_access(pair.refresh_token) is None
        assert issuer.verify_refresh(pair.access_token) is None

    def test_wrong_secret_rejected(self, issuer, repository, registered):
        other = TokenIssuer(repository, secret="some-other-secret")
        pair = other.issue(registered)
        assert issuer.verify_access(pair.access_token) is None

    def test_garbage_rejected(self, issuer):
        assert issuer.verify_access(None) is None
        assert issuer.verify_access("") is None
        assert issuer.verify_access("not.a.jwt") is None
        with pytest.raises(AuthenticationError):
            issuer.authenticate("not.a.jwt")

    def test_expired_access_token(self, repository, registered):
        expired = TokenIssuer(repository, secret=TEST_JWT_SECRET, access_ttl_seconds=-1)
        pair = expired.issue(registered)
        assert expired.verify_access(pair.access_token) is None
        # Refresh window is still open
        assert expired.verify_refresh(pair.refresh_token) is not None

    def test_session_expiry_enforced_server_side(self, repository, registered):
        now = datetime.now(timezone.utc)
        clock = {"now": now}
        issuer = TokenIssuer(repository, secret=TEST_JWT_SECRET, clock=lambda: clock["now"])
        pair = issuer.issue(registered)
        assert issuer.verify_access(pair.access_token) is not None

        clock["now"] = now + timedelta(minutes=16)
        # Signature is still within exp as seen by PyJWT (wall clock), session row is not
        assert issuer.verify_access(pair.access_token) is None

    def test_suspended_principal_rejected(self, issuer, repository, registered):
        pair = issuer.issue(registered)
        repository.set_status(registered.id, PrincipalStatus.SUSPENDED)
        with pytest.raises(AuthenticationError) as exc:
            issuer.authenticate(pair.access_token)
        assert exc.value.message == "Invalid or expired token"


class TestRefresh:
    """Tests for refresh rotation."""

    def test_rotation(self, issuer, registered):
        first = issuer.issue(registered)
        principal, second = issuer.refresh(first.refresh_token)

        assert principal.id == registered.id
        assert second.session_id != first.session_id
        assert issuer.authenticate(second.access_token).session_id == second.session_id

        # Old pair is dead
        assert issuer.verify_access(first.access_token) is None
        with pytest.raises(AuthenticationError):
            issuer.refresh(first.refresh_token)

    def test_rotated_token_reuse_rejected_and_audited(self, services, issuer, registered):
        first = issuer.issue(registered)
        issuer.refresh(first.refresh_token)
        with pytest.raises(AuthenticationError):
            issuer.refresh(first.refresh_token)

        failures = services.audit.get_recent_events(action_filter="auth.failure")
        assert failures[0]["details"]["method"] == "refresh"
        assert failures[0]["details"]["reason"] == "invalid_refresh_token"

    def test_access_token_cannot_refresh(self, issuer, registered):
        pair = issuer.issue(registered)
        with pytest.raises(AuthenticationError):
            issuer.refresh(pair.access_token)

    def test_missing_token(self, issuer):
        with pytest.raises(AuthenticationError):
            issuer.refresh(None)


class TestRevocation:
    """Tests for logout and session listing."""

    def test_logout(self, issuer, registered):
        pair = issuer.issue(registered)
        assert issuer.logout(pair.session_id) == 1
        assert issuer.verify_access(pair.access_token) is None
        assert issuer.verify_refresh(pair.refresh_token) is None
        assert issuer.logout(pair.session_id) == 0

    def test_logout_all(self, issuer, registered):
        pairs = [issuer.issue(registered) for _ in range(3)]
        assert len(issuer.list_sessions(registered.id)) == 3
        assert issuer.logout_all(registered.id) == 3
        assert all(issuer.verify_access(p.access_token) is None for p in pairs)
        assert issuer.list_sessions(registered.id) == []
