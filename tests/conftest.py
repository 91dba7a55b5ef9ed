"""Pytest fixtures for VDID tests."""
import hashlib
import json
import secrets
from typing import AsyncGenerator

import cbor2
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import to_hex
from httpx import ASGITransport, AsyncClient
from webauthn.helpers import bytes_to_base64url

from vdid.db.session import create_db_engine, init_database
from vdid.main import create_app
from vdid.services import Services, build_services

TEST_JWT_SECRET = "test-secret-for-vdid-tests"
TEST_RP_ID = "localhost"
TEST_ORIGIN = "http://localhost:5000"
TEST_SIWE_DOMAIN = "vdid.test"
TEST_SIWE_URI = "https://vdid.test"

STRONG_PASSWORD = "Str0ng!Passphrase"


# =============================================================================
# Software authenticator (ES256, "none" attestation)
# =============================================================================


class SoftAuthenticator:
    """Minimal WebAuthn authenticator producing real ES256 responses."""

    def __init__(self, rp_id: str = TEST_RP_ID, origin: str = TEST_ORIGIN):
        self.rp_id = rp_id
        self.origin = origin
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = secrets.token_bytes(16)
        self.sign_count = 0

    @property
    def credential_id_b64(self) -> str:
        return bytes_to_base64url(self.credential_id)

    def _cose_public_key(self) -> bytes:
        numbers = self.private_key.public_key().public_numbers()
        return cbor2.dumps({
            1: 2,    # kty: EC2
            3: -7,   # alg: ES256
            -1: 1,   # crv: P-256
            -2: numbers.x.to_bytes(32, "big"),
            -3: numbers.y.to_bytes(32, "big"),
        })

    def _client_data(self, ceremony: str, challenge: str, origin: str | None) -> bytes:
        return json.dumps({
            "type": ceremony,
            "challenge": challenge,
            "origin": origin or self.origin,
            "crossOrigin": False,
        }).encode()

    def _authenticator_data(self, flags: int, sign_count: int, attested: bytes = b"") -> bytes:
        rp_id_hash = hashlib.sha256(self.rp_id.encode()).digest()
        return rp_id_hash + bytes([flags]) + sign_count.to_bytes(4, "big") + attested

    def register(self, challenge: str, origin: str | None = None) -> dict:
        """Build a navigator.credentials.create() response for ``challenge``."""
        attested = (
            bytes(16)  # AAGUID
            + len(self.credential_id).to_bytes(2, "big")
            + self.credential_id
            + self._cose_public_key()
        )
        auth_data = self._authenticator_data(0x45, self.sign_count, attested)  # UP | UV | AT
        attestation_object = cbor2.dumps({"fmt": "none", "attStmt": {}, "authData": auth_data})
        return {
            "id": self.credential_id_b64,
            "rawId": self.credential_id_b64,
            "type": "public-key",
            "response": {
                "clientDataJSON": bytes_to_base64url(self._client_data("webauthn.create", challenge, origin)),
                "attestationObject": bytes_to_base64url(attestation_object),
                "transports": ["internal"],
            },
            "clientExtensionResults": {},
        }

    def authenticate(self, challenge: str, sign_count: int | None = None, origin: str | None = None) -> dict:
        """Build a navigator.credentials.get() response for ``challenge``."""
        if sign_count is None:
            self.sign_count += 1
            sign_count = self.sign_count
        auth_data = self._authenticator_data(0x05, sign_count)  # UP | UV
        client_data = self._client_data("webauthn.get", challenge, origin)
        signature = self.private_key.sign(
            auth_data + hashlib.sha256(client_data).digest(),
            ec.ECDSA(hashes.SHA256()),
        )
        return {
            "id": self.credential_id_b64,
            "rawId": self.credential_id_b64,
            "type": "public-key",
            "response": {
                "clientDataJSON": bytes_to_base64url(client_data),
                "authenticatorData": bytes_to_base64url(auth_data),
                "signature": bytes_to_base64url(signature),
            },
            "clientExtensionResults": {},
        }


class RecordingEmailSender:
    """Captures outbound account email instead of delivering it."""

    def __init__(self):
        self.verifications: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []

    def send_verification_email(self, to: str, token: str) -> None:
        self.verifications.append((to, token))

    def send_password_reset_email(self, to: str, token: str) -> None:
        self.resets.append((to, token))

    def last_verification_token(self, to: str) -> str:
        return [t for addr, t in self.verifications if addr == to][-1]

    def last_reset_token(self, to: str) -> str:
        return [t for addr, t in self.resets if addr == to][-1]


def sign_siwe(account, message: str) -> str:
    """EIP-191 sign ``message`` with ``account``; 0x-prefixed 132-char hex."""
    signed = Account.sign_message(encode_defunct(text=message), private_key=account.key)
    return to_hex(signed.signature)


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    eng = create_db_engine("sqlite://")
    init_database(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def mailer() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def services(engine, mailer) -> Services:
    return build_services(
        engine=engine,
        mailer=mailer,
        audit_enabled=True,
        token_options={"secret": TEST_JWT_SECRET},
        wallet_options={"domain": TEST_SIWE_DOMAIN, "uri": TEST_SIWE_URI},
        passkey_options={"rp_id": TEST_RP_ID, "origin": TEST_ORIGIN},
    )


@pytest.fixture
def repository(services):
    return services.repository


@pytest.fixture
def registered(services):
    """A password principal (email alice@example.com)."""
    return services.passwords.register("alice@example.com", STRONG_PASSWORD, "Alice")


@pytest.fixture
def wallet_account():
    return Account.create()


@pytest.fixture
def authenticator():
    return SoftAuthenticator()


@pytest.fixture
def siwe_signer():
    return sign_siwe


@pytest.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app built around the test services."""
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
