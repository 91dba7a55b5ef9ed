"""Session and JWT token issuance.

Each successful sign-in creates a server-side session row and a pair of
HS256 JWTs sharing its session id:

- access token (15 min): userId, vid, email, sessionId, type="access"
- refresh token (7 days): userId, sessionId, type="refresh"

Both carry sub/iss/iat/exp/jti. A token only verifies while its session row
is active, so logout and rotation revoke tokens before they expire.
"""

import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import jwt

from vdid.audit.logger import AuditLogger
from vdid.config import (
    ACCESS_TOKEN_TTL_SECONDS,
    JWT_ALGORITHM,
    JWT_ISSUER,
    JWT_SECRET,
    REFRESH_TOKEN_TTL_SECONDS,
)
from vdid.db.repository import PrincipalRepository
from vdid.exceptions import AuthenticationError
from vdid.identity.vid import generate_session_id
from vdid.models import AuthContext, Principal, Session, TokenPair

log = logging.getLogger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"


def fingerprint(token: str) -> str:
    """SHA-256 hex of a token; the only form in which refresh tokens are stored."""
    return hashlib.sha256(token.encode()).hexdigest()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Creates, verifies, rotates and revokes session-bound token pairs."""

    def __init__(
        self,
        repository: PrincipalRepository,
        audit: AuditLogger | None = None,
        secret: str = JWT_SECRET,
        issuer: str = JWT_ISSUER,
        access_ttl_seconds: int = ACCESS_TOKEN_TTL_SECONDS,
        refresh_ttl_seconds: int = REFRESH_TOKEN_TTL_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._repo = repository
        self._audit = audit or AuditLogger(enabled=False)
        self._secret = secret
        self._issuer = issuer
        self._access_ttl = timedelta(seconds=access_ttl_seconds)
        self._refresh_ttl = timedelta(seconds=refresh_ttl_seconds)
        self._clock = clock

    # =========================================================================
    # Encoding
    # =========================================================================

    def _encode(self, claims: dict[str, Any], now: datetime, expires_at: datetime) -> str:
        payload = {
            **claims,
            "sub": claims["userId"],
            "iss": self._issuer,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def _mint(self, principal: Principal, session_id: str) -> TokenPair:
        now = self._clock()
        access_expires_at = now + self._access_ttl
        refresh_expires_at = now + self._refresh_ttl

        access_token = self._encode(
            {
                "userId": principal.id,
                "vid": principal.vid,
                "email": principal.email,
                "sessionId": session_id,
                "type": TOKEN_TYPE_ACCESS,
            },
            now,
            access_expires_at,
        )
        refresh_token = self._encode(
            {
                "userId": principal.id,
                "sessionId": session_id,
                "type": TOKEN_TYPE_REFRESH,
            },
            now,
            refresh_expires_at,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
            session_id=session_id,
        )

    def decode(self, token: str | None, expected_type: str) -> dict[str, Any] | None:
        """Check signature, expiry, issuer and type tag.

        Returns:
            The claims, or None for any invalid token
        """
        if not token:
            return None
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                issuer=self._issuer,
                options={"require": ["exp", "iat", "iss", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            log.debug(f"Rejected expired {expected_type} token")
            return None
        except jwt.InvalidTokenError as e:
            log.debug(f"Rejected {expected_type} token: {e}")
            return None

        if claims.get("type") != expected_type:
            return None
        if not claims.get("sessionId") or not claims.get("userId"):
            return None
        return claims

    # =========================================================================
    # Issue / verify
    # =========================================================================

    def issue(
        self,
        principal: Principal,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_type: str = "web",
    ) -> TokenPair:
        """Create a session row and a token pair bound to it."""
        session_id = generate_session_id()
        tokens = self._mint(principal, session_id)
        self._repo.create_session(
            principal_id=principal.id,
            session_id=session_id,
            refresh_fingerprint=fingerprint(tokens.refresh_token),
            access_expires_at=tokens.access_expires_at.replace(tzinfo=None),
            refresh_expires_at=tokens.refresh_expires_at.replace(tzinfo=None),
            ip_address=ip_address,
            user_agent=user_agent,
            device_type=device_type,
        )
        log.info(f"Issued session {session_id[:8]}... for {principal.vid}")
        return tokens

    def _live_session(self, session_id: str, window: str) -> Session | None:
        session = self._repo.get_session(session_id)
        if session is None or not session.is_active:
            return None
        now = self._clock().replace(tzinfo=None)
        expires_at = session.access_expires_at if window == TOKEN_TYPE_ACCESS else session.refresh_expires_at
        if expires_at <= now:
            return None
        return session

    def verify_access(self, token: str | None) -> dict[str, Any] | None:
        claims = self.decode(token, TOKEN_TYPE_ACCESS)
        if claims is None:
            return None
        session = self._live_session(claims["sessionId"], TOKEN_TYPE_ACCESS)
        if session is None or session.principal_id != claims["userId"]:
            return None
        return claims

    def verify_refresh(self, token: str | None) -> dict[str, Any] | None:
        claims = self.decode(token, TOKEN_TYPE_REFRESH)
        if claims is None:
            return None
        session = self._live_session(claims["sessionId"], TOKEN_TYPE_REFRESH)
        if session is None or session.principal_id != claims["userId"]:
            return None
        if not hmac.compare_digest(session.refresh_fingerprint, fingerprint(token)):
            return None
        return claims

    def authenticate(self, token: str | None) -> AuthContext:
        """Turn a bearer access token into an explicit AuthContext.

        Raises:
            AuthenticationError: Invalid token, revoked session, unknown or
                suspended principal
        """
        claims = self.verify_access(token)
        if claims is None:
            raise AuthenticationError("Invalid or expired token", reason="invalid_token")

        principal = self._repo.get_principal(claims["userId"])
        if principal is None or not principal.is_active:
            raise AuthenticationError("Invalid or expired token", reason="inactive_principal")

        return AuthContext(principal=principal, session_id=claims["sessionId"])

    # =========================================================================
    # Rotation / revocation
    # =========================================================================

    def refresh(self, refresh_token: str | None, ip_address: str | None = None) -> tuple[Principal, TokenPair]:
        """Rotate a session to a new id and return a fresh token pair.

        The presented refresh token, and any access token of the old pair,
        stop verifying.

        Raises:
            AuthenticationError: Invalid, rotated or revoked refresh token
        """
        claims = self.verify_refresh(refresh_token)
        if claims is None:
            self._audit.log_auth_failure("refresh", reason="invalid_refresh_token", ip_address=ip_address)
            raise AuthenticationError("Invalid refresh token", reason="invalid_refresh_token")

        principal = self._repo.get_principal(claims["userId"])
        if principal is None or not principal.is_active:
            self._audit.log_auth_failure("refresh", reason="inactive_principal", ip_address=ip_address)
            raise AuthenticationError("Invalid refresh token", reason="inactive_principal")

        new_session_id = generate_session_id()
        tokens = self._mint(principal, new_session_id)
        rotated = self._repo.rotate_session(
            old_session_id=claims["sessionId"],
            new_session_id=new_session_id,
            refresh_fingerprint=fingerprint(tokens.refresh_token),
            access_expires_at=tokens.access_expires_at.replace(tzinfo=None),
            refresh_expires_at=tokens.refresh_expires_at.replace(tzinfo=None),
        )
        if not rotated:
            # Concurrent refresh of the same token won
            self._audit.log_auth_failure("refresh", reason="session_rotated", ip_address=ip_address)
            raise AuthenticationError("Invalid refresh token", reason="session_rotated")

        self._audit.log_auth_success(principal.id, "refresh", ip_address=ip_address)
        return principal, tokens

    def logout(self, session_id: str) -> int:
        changed = self._repo.deactivate_session(session_id)
        if changed:
            log.info(f"Session {session_id[:8]}... logged out")
        return changed

    def logout_all(self, principal_id: str) -> int:
        changed = self._repo.deactivate_all_sessions(principal_id)
        log.info(f"Deactivated {changed} sessions for {principal_id}")
        return changed

    def list_sessions(self, principal_id: str) -> list[Session]:
        return self._repo.list_active_sessions(principal_id, now=self._clock().replace(tzinfo=None))
