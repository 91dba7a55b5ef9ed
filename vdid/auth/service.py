"""Password authentication.

Registration, email/password login and password change. Wallet and passkey
sign-in live in their own modules and share the token issuer, score engine
and audit logger with this one.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from email_validator import EmailNotValidError, validate_email

from vdid.audit.logger import AuditLogger
from vdid.auth.password import (
    hash_password,
    needs_rehash,
    validate_password_strength,
    verify_password,
)
from vdid.auth.mail import EmailSender, LoggingEmailSender
from vdid.auth.tokens import TokenIssuer, fingerprint
from vdid.config import EMAIL_VERIFY_TTL_SECONDS, PASSWORD_RESET_TTL_SECONDS
from vdid.db.models import utcnow
from vdid.db.repository import PrincipalRepository
from vdid.exceptions import AuthenticationError, ConflictError, NotFoundError, ValidationError
from vdid.identity.vid import generate_did, generate_secure_token, generate_vid, validate_vid
from vdid.models import AuthContext, Principal, TokenPair
from vdid.vscore.engine import ScoreEngine

log = logging.getLogger(__name__)

MAX_VID_ATTEMPTS = 5


def normalize_email(email: str) -> str:
    """Validate syntax and return the lowercased address.

    Raises:
        ValidationError: Malformed email
    """
    try:
        result = validate_email(email, check_deliverability=False)
    except EmailNotValidError as e:
        raise ValidationError("Invalid email address", field="email", errors=[str(e)]) from e
    return result.normalized.lower()


def allocate_vid(repository: PrincipalRepository) -> str:
    """Generate a V-ID not already present in storage."""
    for _ in range(MAX_VID_ATTEMPTS):
        vid = generate_vid()
        if not repository.vid_exists(vid):
            return vid
    raise ConflictError("Could not allocate a unique V-ID")


class PasswordAuthService:
    """Email + password registration, sign-in, email verification and password reset."""

    def __init__(
        self,
        repository: PrincipalRepository,
        tokens: TokenIssuer,
        scores: ScoreEngine,
        audit: AuditLogger,
        mailer: EmailSender | None = None,
        email_verify_ttl_seconds: int = EMAIL_VERIFY_TTL_SECONDS,
        password_reset_ttl_seconds: int = PASSWORD_RESET_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repo = repository
        self._tokens = tokens
        self._scores = scores
        self._audit = audit
        self._mailer = mailer or LoggingEmailSender()
        self._email_verify_ttl = timedelta(seconds=email_verify_ttl_seconds)
        self._password_reset_ttl = timedelta(seconds=password_reset_ttl_seconds)
        self._clock = clock
        self._dummy_hash: str | None = None

    def register(self, email: str, password: str, display_name: str | None = None) -> Principal:
        """Create a password principal with the registration trust bonus.

        Raises:
            ValidationError: Bad email or weak password
            ConflictError: Email already registered
        """
        email = normalize_email(email)

        strength = validate_password_strength(password)
        if not strength.is_valid:
            raise ValidationError(strength.errors[0], field="password", errors=strength.errors)

        if self._repo.get_principal_by_email(email) is not None:
            raise ConflictError("Email already registered")

        principal = self._repo.create_principal(
            vid=allocate_vid(self._repo),
            did=generate_did("base"),
            email=email,
            display_name=display_name,
            password_hash=hash_password(password),
        )
        self._scores.apply_action(principal.id, "ACCOUNT_REGISTRATION")
        self._audit.log_access("auth.register", principal.id, resource=principal.vid)
        self._issue_email_verification(principal.id, email)

        log.info(f"Registered {principal.vid}")
        return self._repo.get_principal(principal.id)

    def _burn_hash_time(self, password: str) -> None:
        # Unknown emails still pay for one argon2 verification
        if self._dummy_hash is None:
            self._dummy_hash = hash_password("vdid-timing-equalizer")
        verify_password(password, self._dummy_hash)

    def login(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
    ) -> tuple[Principal, TokenPair]:
        """Verify email + password and mint a session.

        Raises:
            AuthenticationError: Unknown email, wrong password, suspended account
        """
        try:
            email = normalize_email(email)
        except ValidationError:
            self._audit.log_auth_failure("password", reason="invalid_email", ip_address=ip_address, request_id=request_id)
            raise AuthenticationError("Invalid credentials", reason="invalid_email")

        principal = self._repo.get_principal_by_email(email)
        if principal is None:
            self._burn_hash_time(password)
            self._audit.log_auth_failure(
                "password", reason="unknown_email", subject=email, ip_address=ip_address, request_id=request_id
            )
            raise AuthenticationError("Invalid credentials", reason="unknown_email")

        if not verify_password(password, principal.password_hash):
            self._audit.log_auth_failure(
                "password", reason="bad_password", subject=principal.id, ip_address=ip_address, request_id=request_id
            )
            raise AuthenticationError("Invalid credentials", reason="bad_password")

        if not principal.is_active:
            self._audit.log_auth_failure(
                "password", reason="suspended", subject=principal.id, ip_address=ip_address, request_id=request_id
            )
            raise AuthenticationError("Invalid credentials", reason="suspended")

        if needs_rehash(principal.password_hash):
            self._repo.update_password_hash(principal.id, hash_password(password))
            log.info(f"Upgraded password hash for {principal.vid}")

        self._repo.record_login(principal.id, ip_address)
        tokens = self._tokens.issue(principal, ip_address=ip_address, user_agent=user_agent)
        self._scores.apply_action(principal.id, "LOGIN")
        self._audit.log_auth_success(principal.id, "password", ip_address=ip_address, request_id=request_id)

        return self._repo.get_principal(principal.id), tokens

    def change_password(self, ctx: AuthContext, current_password: str | None, new_password: str) -> int:
        """Change (or, for password-less accounts, set) the password.

        Every other session of the principal is revoked.

        Returns:
            Number of sessions revoked

        Raises:
            AuthenticationError: Current password wrong
            ValidationError: New password too weak
        """
        principal = self._repo.get_principal(ctx.principal_id)
        if principal is None:
            raise NotFoundError("User not found")

        if principal.has_password and not verify_password(current_password or "", principal.password_hash):
            self._audit.log_access(
                "auth.change_password", principal.id, status="denied", details={"reason": "bad_password"}
            )
            raise AuthenticationError("Current password is incorrect", reason="bad_password")

        strength = validate_password_strength(new_password)
        if not strength.is_valid:
            raise ValidationError(strength.errors[0], field="newPassword", errors=strength.errors)

        self._repo.update_password_hash(principal.id, hash_password(new_password))
        revoked = self._repo.deactivate_all_sessions(principal.id, except_session_id=ctx.session_id)
        self._audit.log_access("auth.change_password", principal.id, details={"revoked_sessions": revoked})
        return revoked

    def get_principal(self, principal_id: str) -> Principal:
        principal = self._repo.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("User not found")
        return principal

    def check_vid(self, vid: str) -> bool:
        """True when ``vid`` is well-formed and belongs to an account."""
        return validate_vid(vid) and self._repo.get_principal_by_vid(vid) is not None

    # =========================================================================
    # Email verification
    # =========================================================================

    def _issue_email_verification(self, principal_id: str, email: str) -> None:
        token = generate_secure_token(32)
        self._repo.set_email_verify_token(principal_id, fingerprint(token), self._clock() + self._email_verify_ttl)
        self._mailer.send_verification_email(email, token)

    def resend_email_verification(self, ctx: AuthContext) -> None:
        """Issue a fresh verification token, replacing any earlier one.

        Raises:
            ValidationError: The account has no email
            ConflictError: Email already verified
        """
        principal = ctx.principal
        if not principal.email:
            raise ValidationError("Account has no email address", field="email")
        if principal.email_verified:
            raise ConflictError("Email already verified")
        self._issue_email_verification(principal.id, principal.email)
        self._audit.log_access("auth.verify_email.resend", principal.id)

    def verify_email(self, token: str) -> Principal:
        """Consume a verification token and grant the VERIFY_EMAIL trust bonus.

        Raises:
            ValidationError: Unknown, expired or already used token
        """
        principal = None
        if token:
            principal = self._repo.consume_email_verify_token(fingerprint(token), now=self._clock())
        if principal is None:
            self._audit.log_access(
                "auth.verify_email", "anonymous", status="denied", details={"reason": "invalid_token"}
            )
            raise ValidationError("Invalid or expired verification token", field="token")

        self._scores.apply_action(principal.id, "VERIFY_EMAIL")
        self._audit.log_access("auth.verify_email", principal.id, resource=principal.email)
        log.info(f"Email verified for {principal.vid}")
        return self._repo.get_principal(principal.id)

    # =========================================================================
    # Password reset
    # =========================================================================

    def request_password_reset(self, email: str, request_id: str | None = None) -> None:
        """Send a reset token when ``email`` belongs to an account.

        Returns nothing either way, so the answer does not reveal which
        emails have accounts.

        Raises:
            ValidationError: Malformed email
        """
        email = normalize_email(email)
        principal = self._repo.get_principal_by_email(email)
        if principal is None:
            self._audit.log_access(
                "auth.password_reset.request",
                "anonymous",
                resource=email,
                status="denied",
                details={"reason": "unknown_email"},
                request_id=request_id,
            )
            return

        token = generate_secure_token(32)
        self._repo.set_password_reset_token(principal.id, fingerprint(token), self._clock() + self._password_reset_ttl)
        self._mailer.send_password_reset_email(email, token)
        self._audit.log_access("auth.password_reset.request", principal.id, request_id=request_id)

    def reset_password(self, token: str, new_password: str) -> int:
        """Set a new password from a reset token and sign out every session.

        Returns:
            Number of sessions revoked

        Raises:
            ValidationError: Weak password, or unknown/expired/used token
        """
        strength = validate_password_strength(new_password)
        if not strength.is_valid:
            raise ValidationError(strength.errors[0], field="newPassword", errors=strength.errors)

        principal = None
        if token:
            principal = self._repo.consume_password_reset_token(
                fingerprint(token), hash_password(new_password), now=self._clock()
            )
        if principal is None:
            self._audit.log_access(
                "auth.password_reset", "anonymous", status="denied", details={"reason": "invalid_token"}
            )
            raise ValidationError("Invalid or expired reset token", field="token")

        revoked = self._tokens.logout_all(principal.id)
        self._audit.log_access("auth.password_reset", principal.id, details={"revoked_sessions": revoked})
        log.info(f"Password reset for {principal.vid}; {revoked} session(s) revoked")
        return revoked
