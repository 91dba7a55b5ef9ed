"""Tests for password registration, login, password change, email verification and reset."""

from datetime import timedelta

import pytest
from argon2 import PasswordHasher
from sqlalchemy import text

from vdid.auth.password import NO_PASSWORD_MARKER
from vdid.auth.service import PasswordAuthService, normalize_email
from vdid.db.models import utcnow
from vdid.exceptions import AuthenticationError, ConflictError, ValidationError
from vdid.identity.vid import generate_vid, validate_did, validate_vid
from vdid.models import AuthContext, PrincipalStatus

from .conftest import STRONG_PASSWORD

NEW_PASSWORD = "An0ther!Secret42"


class TestNormalizeEmail:
    """Tests for email normalization."""

    def test_lowercases(self):
        assert normalize_email("Alice@Example.COM") == "alice@example.com"

    def test_rejects_malformed(self):
        with pytest.raises(ValidationError) as exc:
            normalize_email("not-an-email")
        assert exc.value.field == "email"
        assert exc.value.status_code == 400


class TestRegister:
    """Tests for PasswordAuthService.register."""

    def test_creates_principal(self, services, registered):
        assert validate_vid(registered.vid)
        assert validate_did(registered.did)
        assert registered.did.startswith("did:vdid:base:")
        assert registered.email == "alice@example.com"
        assert registered.display_name == "Alice"
        assert registered.has_password
        assert registered.password_hash.startswith("$argon2id$")

    def test_registration_trust_bonus(self, services, registered):
        assert registered.scores.trust == 100
        assert registered.vscore_total == 15
        history = services.scores.get_history(registered.id)
        assert len(history) == 1
        assert history[0].source_action == "ACCOUNT_REGISTRATION"

    def test_duplicate_email_case_insensitive(self, services, registered):
        with pytest.raises(ConflictError):
            services.passwords.register("ALICE@example.com", STRONG_PASSWORD)

    def test_weak_password(self, services):
        with pytest.raises(ValidationError) as exc:
            services.passwords.register("bob@example.com", "weak")
        assert exc.value.field == "password"
        assert "password" in exc.value.details

    def test_bad_email(self, services):
        with pytest.raises(ValidationError):
            services.passwords.register("bob@", STRONG_PASSWORD)

    def test_audited(self, services, registered):
        events = services.audit.get_recent_events(action_filter="auth.register")
        assert events[0]["principal"] == registered.id


class TestLogin:
    """Tests for PasswordAuthService.login."""

    def test_success(self, services, registered):
        principal, tokens = services.passwords.login("alice@example.com", STRONG_PASSWORD, ip_address="1.2.3.4")
        assert principal.id == registered.id
        assert services.tokens.authenticate(tokens.access_token).principal_id == registered.id
        # LOGIN adds 5 activity points
        assert principal.scores.activity == 5

        events = services.audit.get_recent_events(action_filter="auth.success")
        assert events[0]["details"] == {"method": "password", "ip": "1.2.3.4"}

    def test_email_case_insensitive(self, services, registered):
        principal, _ = services.passwords.login("ALICE@EXAMPLE.COM", STRONG_PASSWORD)
        assert principal.id == registered.id

    def test_wrong_password_generic_error(self, services, registered):
        with pytest.raises(AuthenticationError) as exc:
            services.passwords.login("alice@example.com", "Wrong!Password1")
        assert exc.value.message == "Invalid credentials"
        assert exc.value.reason == "bad_password"

    def test_unknown_email_same_message(self, services):
        with pytest.raises(AuthenticationError) as exc:
            services.passwords.login("nobody@example.com", STRONG_PASSWORD)
        assert exc.value.message == "Invalid credentials"

        failure = services.audit.get_recent_events(action_filter="auth.failure")[0]
        assert failure["details"]["reason"] == "unknown_email"
        assert failure["status"] == "denied"

    def test_malformed_email_is_auth_failure(self, services):
        with pytest.raises(AuthenticationError):
            services.passwords.login("garbage", STRONG_PASSWORD)

    def test_suspended_account(self, services, repository, registered):
        repository.set_status(registered.id, PrincipalStatus.SUSPENDED)
        with pytest.raises(AuthenticationError) as exc:
            services.passwords.login("alice@example.com", STRONG_PASSWORD)
        assert exc.value.message == "Invalid credentials"

    def test_wallet_only_account_cannot_password_login(self, services, repository):
        repository.create_principal(
            vid="VID-AAAA-AAAA-AAAA",
            did="did:vdid:base:" + "a" * 32,
            email="wallet@example.com",
            display_name=None,
            password_hash=NO_PASSWORD_MARKER,
        )
        with pytest.raises(AuthenticationError):
            services.passwords.login("wallet@example.com", NO_PASSWORD_MARKER)

    def test_rehash_on_login(self, services, repository, registered):
        weak = PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1).hash(STRONG_PASSWORD)
        repository.update_password_hash(registered.id, weak)

        services.passwords.login("alice@example.com", STRONG_PASSWORD)

        upgraded = repository.get_principal(registered.id).password_hash
        assert upgraded != weak
        assert "m=65536,t=3,p=4" in upgraded

    def test_login_count(self, services, repository, registered):
        services.passwords.login("alice@example.com", STRONG_PASSWORD, ip_address="5.6.7.8")
        services.passwords.login("alice@example.com", STRONG_PASSWORD, ip_address="5.6.7.8")
        principal = repository.get_principal(registered.id)
        assert principal.login_count == 2
        assert principal.last_login_ip == "5.6.7.8"


class TestChangePassword:
    """Tests for PasswordAuthService.change_password."""

    def test_change_revokes_other_sessions(self, services, registered):
        _, current = services.passwords.login("alice@example.com", STRONG_PASSWORD)
        _, other = services.passwords.login("alice@example.com", STRONG_PASSWORD)
        ctx = services.tokens.authenticate(current.access_token)

        revoked = services.passwords.change_password(ctx, STRONG_PASSWORD, NEW_PASSWORD)

        assert revoked == 1
        assert services.tokens.verify_access(current.access_token) is not None
        assert services.tokens.verify_access(other.access_token) is None
        services.passwords.login("alice@example.com", NEW_PASSWORD)
        with pytest.raises(AuthenticationError):
            services.passwords.login("alice@example.com", STRONG_PASSWORD)

    def test_wrong_current_password(self, services, registered):
        ctx = AuthContext(principal=registered, session_id="none")
        with pytest.raises(AuthenticationError):
            services.passwords.change_password(ctx, "Wrong!Password1", NEW_PASSWORD)

    def test_weak_new_password(self, services, registered):
        ctx = AuthContext(principal=registered, session_id="none")
        with pytest.raises(ValidationError) as exc:
            services.passwords.change_password(ctx, STRONG_PASSWORD, "short")
        assert exc.value.field == "newPassword"


class TestEmailVerification:
    """Tests for verify_email / resend_email_verification."""

    def test_token_sent_on_register(self, mailer, registered):
        token = mailer.last_verification_token("alice@example.com")
        assert len(token) == 64
        assert registered.email_verified is False

    def test_token_stored_as_digest(self, engine, mailer, registered):
        token = mailer.last_verification_token("alice@example.com")
        with engine.connect() as conn:
            stored = conn.execute(text("SELECT email_verify_token FROM users")).scalar_one()
        assert stored != token
        assert len(stored) == 64

    def test_verify_grants_trust_once(self, services, mailer, registered):
        token = mailer.last_verification_token("alice@example.com")

        principal = services.passwords.verify_email(token)

        assert principal.email_verified is True
        assert principal.scores.trust == 150
        assert principal.vscore_total == 23
        assert services.scores.get_history(registered.id)[0].source_action == "VERIFY_EMAIL"

        with pytest.raises(ValidationError) as exc:
            services.passwords.verify_email(token)
        assert exc.value.field == "token"
        assert services.scores.get_score(registered.id).trust == 150

    def test_unknown_token(self, services, registered):
        with pytest.raises(ValidationError):
            services.passwords.verify_email("0" * 64)
        with pytest.raises(ValidationError):
            services.passwords.verify_email("")
        event = services.audit.get_recent_events(action_filter="auth.verify_email")[0]
        assert event["status"] == "denied"

    def test_expired_token(self, services, mailer, registered):
        token = mailer.last_verification_token("alice@example.com")
        later = PasswordAuthService(
            services.repository,
            services.tokens,
            services.scores,
            services.audit,
            mailer=mailer,
            clock=lambda: utcnow() + timedelta(hours=25),
        )
        with pytest.raises(ValidationError):
            later.verify_email(token)
        assert services.repository.get_principal(registered.id).email_verified is False

    def test_resend_replaces_token(self, services, mailer, registered):
        first = mailer.last_verification_token("alice@example.com")
        services.passwords.resend_email_verification(AuthContext(principal=registered, session_id="none"))
        second = mailer.last_verification_token("alice@example.com")

        assert first != second
        with pytest.raises(ValidationError):
            services.passwords.verify_email(first)
        assert services.passwords.verify_email(second).email_verified

    def test_resend_when_verified(self, services, mailer, registered):
        verified = services.passwords.verify_email(mailer.last_verification_token("alice@example.com"))
        with pytest.raises(ConflictError):
            services.passwords.resend_email_verification(AuthContext(principal=verified, session_id="none"))

    def test_resend_without_email(self, services, repository):
        principal = repository.create_principal(vid=generate_vid(), password_hash=NO_PASSWORD_MARKER)
        with pytest.raises(ValidationError):
            services.passwords.resend_email_verification(AuthContext(principal=principal, session_id="none"))


class TestPasswordReset:
    """Tests for request_password_reset / reset_password."""

    def test_reset_revokes_every_session(self, services, mailer, registered):
        _, first = services.passwords.login("alice@example.com", STRONG_PASSWORD)
        _, second = services.passwords.login("alice@example.com", STRONG_PASSWORD)

        services.passwords.request_password_reset("Alice@Example.com")
        revoked = services.passwords.reset_password(mailer.last_reset_token("alice@example.com"), NEW_PASSWORD)

        assert revoked == 2
        assert services.tokens.verify_access(first.access_token) is None
        assert services.tokens.verify_refresh(second.refresh_token) is None
        services.passwords.login("alice@example.com", NEW_PASSWORD)
        with pytest.raises(AuthenticationError):
            services.passwords.login("alice@example.com", STRONG_PASSWORD)

    def test_token_single_use(self, services, mailer, registered):
        services.passwords.request_password_reset("alice@example.com")
        token = mailer.last_reset_token("alice@example.com")
        services.passwords.reset_password(token, NEW_PASSWORD)
        with pytest.raises(ValidationError) as exc:
            services.passwords.reset_password(token, "Th1rd!Password99")
        assert exc.value.field == "token"
        services.passwords.login("alice@example.com", NEW_PASSWORD)

    def test_weak_password_keeps_token(self, services, mailer, registered):
        services.passwords.request_password_reset("alice@example.com")
        token = mailer.last_reset_token("alice@example.com")
        with pytest.raises(ValidationError) as exc:
            services.passwords.reset_password(token, "short")
        assert exc.value.field == "newPassword"
        assert services.passwords.reset_password(token, NEW_PASSWORD) == 0

    def test_unknown_email_sends_nothing(self, services, mailer):
        assert services.passwords.request_password_reset("nobody@example.com") is None
        assert mailer.resets == []
        event = services.audit.get_recent_events(action_filter="auth.password_reset.request")[0]
        assert event["status"] == "denied"

    def test_new_request_replaces_token(self, services, mailer, registered):
        services.passwords.request_password_reset("alice@example.com")
        first = mailer.last_reset_token("alice@example.com")
        services.passwords.request_password_reset("alice@example.com")
        with pytest.raises(ValidationError):
            services.passwords.reset_password(first, NEW_PASSWORD)

    def test_expired_token(self, services, mailer, registered):
        services.passwords.request_password_reset("alice@example.com")
        token = mailer.last_reset_token("alice@example.com")
        later = PasswordAuthService(
            services.repository,
            services.tokens,
            services.scores,
            services.audit,
            mailer=mailer,
            clock=lambda: utcnow() + timedelta(hours=2),
        )
        with pytest.raises(ValidationError):
            later.reset_password(token, NEW_PASSWORD)
        services.passwords.login("alice@example.com", STRONG_PASSWORD)


class TestCheckVid:
    """Tests for check_vid."""

    def test_existing(self, services, registered):
        assert services.passwords.check_vid(registered.vid) is True

    def test_well_formed_but_unknown(self, services):
        assert services.passwords.check_vid(generate_vid()) is False

    def test_malformed(self, services):
        assert services.passwords.check_vid("VID-0000-0000-0000") is False
