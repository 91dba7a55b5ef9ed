"""Passkey (WebAuthn) ceremonies.

Registration:
1. registration_options() issues a challenge keyed by the principal id
2. The browser creates a credential (navigator.credentials.create)
3. verify_registration() consumes the challenge and verifies the attestation

Authentication:
1. authentication_options() issues a challenge, keyed by the principal id when
   the caller named an account and by the challenge itself otherwise
2. The browser signs it (navigator.credentials.get)
3. verify_authentication() verifies the assertion against the stored public
   key and signature counter, then signs the principal in

Attestation and assertion checks are delegated to py_webauthn.
"""

import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import InvalidAuthenticationResponse, InvalidRegistrationResponse
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from vdid.audit.logger import AuditLogger
from vdid.auth.challenge import ChallengeStore
from vdid.auth.tokens import TokenIssuer
from vdid.config import (
    CHALLENGE_TTL_SECONDS,
    WEBAUTHN_ORIGIN,
    WEBAUTHN_RP_ID,
    WEBAUTHN_RP_NAME,
    WEBAUTHN_TIMEOUT_MS,
)
from vdid.db.repository import PrincipalRepository
from vdid.exceptions import AuthenticationError, ConflictError, NotFoundError, ValidationError
from vdid.models import Passkey, Principal, TokenPair
from vdid.vscore.engine import ScoreEngine

log = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,  # ES256 (-7)
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,  # RS256 (-257)
]
MAX_DEVICE_NAME_LENGTH = 100


@dataclass(frozen=True)
class PasskeyAuthResult:
    principal: Principal
    tokens: TokenPair


def registration_key(principal_id: str) -> str:
    return f"reg:{principal_id}"


def authentication_key(ref: str) -> str:
    """Challenge key for a sign-in ceremony, by principal id or by the challenge itself."""
    return f"auth:{ref}"


def extract_challenge(credential: dict[str, Any]) -> str | None:
    """Pull the base64url challenge out of a credential's clientDataJSON."""
    try:
        client_data = json.loads(base64url_to_bytes(credential["response"]["clientDataJSON"]))
        challenge = client_data["challenge"]
    except (KeyError, TypeError, ValueError):
        return None
    return challenge if isinstance(challenge, str) and challenge else None


class PasskeyService:
    """Registration, sign-in and management of passkeys."""

    def __init__(
        self,
        repository: PrincipalRepository,
        challenges: ChallengeStore,
        tokens: TokenIssuer,
        scores: ScoreEngine,
        audit: AuditLogger,
        rp_id: str = WEBAUTHN_RP_ID,
        rp_name: str = WEBAUTHN_RP_NAME,
        origin: str = WEBAUTHN_ORIGIN,
        challenge_ttl_seconds: int = CHALLENGE_TTL_SECONDS,
        timeout_ms: int = WEBAUTHN_TIMEOUT_MS,
    ):
        self._repo = repository
        self._challenges = challenges
        self._tokens = tokens
        self._scores = scores
        self._audit = audit
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self._challenge_ttl = challenge_ttl_seconds
        self._timeout_ms = timeout_ms

    def _new_challenge(self) -> bytes:
        return secrets.token_bytes(32)

    # =========================================================================
    # Registration
    # =========================================================================

    def registration_options(self, principal_id: str) -> dict[str, Any]:
        """Build creation options for a new passkey on an existing account.

        Raises:
            NotFoundError: Unknown principal
        """
        principal = self._repo.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("User not found")

        existing = self._repo.list_passkeys(principal_id)
        challenge = self._new_challenge()
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=principal.id.encode(),
            user_name=principal.email or principal.vid,
            user_display_name=principal.display_name or principal.vid,
            challenge=challenge,
            timeout=self._timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(p.credential_id)) for p in existing
            ],
            supported_pub_key_algs=SUPPORTED_ALGORITHMS,
        )

        self._challenges.issue(
            registration_key(principal.id), value=bytes_to_base64url(challenge), ttl_seconds=self._challenge_ttl
        )
        result = json.loads(options_to_json(options))
        result.setdefault("excludeCredentials", [])
        return result

    def verify_registration(
        self,
        principal_id: str,
        credential: dict[str, Any],
        device_name: str | None = None,
    ) -> Passkey:
        """Verify an attestation response and store the new passkey.

        Raises:
            NotFoundError: Unknown principal
            ValidationError: Bad/expired challenge or attestation
            ConflictError: Credential id already registered
        """
        principal = self._repo.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("User not found")

        challenge = extract_challenge(credential)
        if challenge is None or not self._challenges.consume(registration_key(principal_id), challenge):
            self._audit.log_access(
                "passkey.register", principal_id, status="denied", details={"reason": "invalid_challenge"}
            )
            raise ValidationError("Invalid or expired challenge", field="credential")

        try:
            verified = verify_registration_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                supported_pub_key_algs=SUPPORTED_ALGORITHMS,
            )
        except InvalidRegistrationResponse as e:
            log.info(f"Passkey registration rejected for {principal.vid}: {e}")
            self._audit.log_access(
                "passkey.register", principal_id, status="denied", details={"reason": "invalid_attestation"}
            )
            raise ValidationError("Passkey verification failed", field="credential", errors=[str(e)]) from e

        credential_id = bytes_to_base64url(verified.credential_id)
        if self._repo.credential_exists(credential_id):
            raise ConflictError("Passkey already registered")

        transports = (credential.get("response") or {}).get("transports") or credential.get("transports")
        name = (device_name or "Unknown Device")[:MAX_DEVICE_NAME_LENGTH]

        passkey = self._repo.add_passkey(
            principal_id,
            credential_id=credential_id,
            public_key=bytes_to_base64url(verified.credential_public_key),
            counter=0,
            device_name=name,
            aaguid=verified.aaguid,
            transports=transports,
        )
        self._audit.log_access("passkey.register", principal_id, resource=passkey.id)
        return passkey

    # =========================================================================
    # Authentication
    # =========================================================================

    def authentication_options(
        self,
        email: str | None = None,
        principal_id: str | None = None,
    ) -> dict[str, Any]:
        """Build request options for signing in with a passkey.

        The response shape does not depend on whether the account exists.
        """
        principal = None
        if principal_id:
            principal = self._repo.get_principal(principal_id)
        elif email:
            principal = self._repo.get_principal_by_email(email)

        allow = []
        if principal is not None:
            allow = [
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(p.credential_id))
                for p in self._repo.list_passkeys(principal.id)
            ]

        challenge = self._new_challenge()
        options = generate_authentication_options(
            rp_id=self.rp_id,
            challenge=challenge,
            timeout=self._timeout_ms,
            allow_credentials=allow,
            user_verification=UserVerificationRequirement.PREFERRED,
        )

        value = bytes_to_base64url(challenge)
        key = authentication_key(principal.id if principal is not None else value)
        self._challenges.issue(key, value=value, ttl_seconds=self._challenge_ttl)

        result = json.loads(options_to_json(options))
        result.setdefault("allowCredentials", [])
        return result

    def verify_authentication(
        self,
        credential: dict[str, Any],
        ip_address: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
    ) -> PasskeyAuthResult:
        """Verify an assertion and sign the owning principal in.

        Raises:
            AuthenticationError: Any failure; the reason is audited only
        """
        credential_id = None
        if isinstance(credential, dict):
            credential_id = credential.get("id") or credential.get("rawId")

        def fail(reason: str, subject: str | None = None) -> AuthenticationError:
            self._audit.log_auth_failure(
                "passkey", reason=reason, subject=subject, ip_address=ip_address, request_id=request_id
            )
            return AuthenticationError(reason=reason)

        if not credential_id:
            raise fail("missing_credential_id")

        passkey = self._repo.get_passkey_by_credential_id(credential_id)
        if passkey is None or not passkey.is_active:
            raise fail("unknown_credential")

        challenge = extract_challenge(credential)
        if challenge is None:
            raise fail("missing_challenge", passkey.principal_id)
        if not (
            self._challenges.consume(authentication_key(passkey.principal_id), challenge)
            or self._challenges.consume(authentication_key(challenge), challenge)
        ):
            raise fail("invalid_challenge", passkey.principal_id)

        try:
            verified = verify_authentication_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(passkey.public_key),
                credential_current_sign_count=passkey.counter,
            )
        except InvalidAuthenticationResponse as e:
            log.info(f"Passkey assertion rejected for {passkey.principal_id}: {e}")
            raise fail("invalid_assertion", passkey.principal_id) from None

        principal = self._repo.get_principal(passkey.principal_id)
        if principal is None or not principal.is_active:
            raise fail("inactive_principal", passkey.principal_id)

        self._repo.record_passkey_use(passkey.id, verified.new_sign_count)
        self._repo.record_login(principal.id, ip_address)
        tokens = self._tokens.issue(principal, ip_address=ip_address, user_agent=user_agent)
        self._scores.apply_action(principal.id, "LOGIN")
        self._audit.log_auth_success(principal.id, "passkey", ip_address=ip_address, request_id=request_id)

        return PasskeyAuthResult(principal=self._repo.get_principal(principal.id), tokens=tokens)

    # =========================================================================
    # Management
    # =========================================================================

    def list_passkeys(self, principal_id: str) -> list[Passkey]:
        return self._repo.list_passkeys(principal_id)

    def rename_passkey(self, principal_id: str, passkey_id: str, name: str) -> Passkey:
        name = (name or "").strip()
        if not name or len(name) > MAX_DEVICE_NAME_LENGTH:
            raise ValidationError("Device name must be 1-100 characters", field="deviceName")
        return self._repo.rename_passkey(principal_id, passkey_id, name)

    def delete_passkey(self, principal_id: str, passkey_id: str) -> None:
        """Delete a passkey unless it is the principal's last way to sign in.

        Raises:
            NotFoundError: Passkey not owned by the principal
            ConflictError: Last remaining authentication method
        """
        principal = self._repo.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("User not found")

        passkeys = self._repo.list_passkeys(principal_id)
        if not any(p.id == passkey_id for p in passkeys):
            raise NotFoundError("Passkey not found")

        other_methods = (
            principal.has_password
            or principal.wallet_verified
            or bool(self._repo.list_wallets(principal_id))
            or len(passkeys) > 1
        )
        if not other_methods:
            raise ConflictError("Cannot remove the last authentication method")

        self._repo.delete_passkey(principal_id, passkey_id)
        self._audit.log_access("passkey.delete", principal_id, resource=passkey_id)
