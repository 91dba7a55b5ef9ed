"""Wallet (Sign-In with Ethereum) authentication.

Flow:
1. Client requests a nonce for its address; the server renders the SIWE
   message containing it.
2. The wallet signs the message (EIP-191 personal_sign).
3. Server parses the message, recovers the signer, consumes the nonce and
   signs the principal in, creating it on first sight.

Also manages the set of wallets bound to an account (bind, unbind, primary).
"""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import to_checksum_address

from vdid.audit.logger import AuditLogger
from vdid.auth.challenge import ChallengeStore
from vdid.auth.password import NO_PASSWORD_MARKER
from vdid.auth.service import allocate_vid
from vdid.auth.tokens import TokenIssuer
from vdid.config import DEFAULT_CHAIN_ID, NONCE_TTL_SECONDS, SIWE_DOMAIN, SIWE_URI
from vdid.db.repository import PrincipalRepository
from vdid.exceptions import AuthenticationError, ConflictError, NotFoundError, ValidationError
from vdid.identity.vid import generate_did, network_for_chain
from vdid.models import Principal, TokenPair, WalletIdentity
from vdid.vscore.engine import ScoreEngine

log = logging.getLogger(__name__)

SUPPORTED_CHAINS: dict[int, dict[str, str]] = {
    1: {"name": "Ethereum", "symbol": "ETH"},
    10: {"name": "Optimism", "symbol": "ETH"},
    56: {"name": "BNB Chain", "symbol": "BNB"},
    137: {"name": "Polygon", "symbol": "MATIC"},
    8453: {"name": "Base", "symbol": "ETH"},
    42161: {"name": "Arbitrum", "symbol": "ETH"},
}

SIWE_STATEMENT = "Sign in to VDID - Velon Decentralized Identity"
SIWE_HEADER_SUFFIX = " wants you to sign in with your Ethereum account:"
MESSAGE_TTL = timedelta(minutes=10)
SIGNATURE_LENGTH = 132  # 0x + 65 bytes hex
MAX_LABEL_LENGTH = 100

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


@dataclass(frozen=True)
class SiweMessage:
    domain: str
    address: str
    statement: str | None
    uri: str
    version: str
    chain_id: int
    nonce: str
    issued_at: datetime
    expiration_time: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expiration_time is not None and self.expiration_time <= now


@dataclass(frozen=True)
class WalletAuthResult:
    principal: Principal
    tokens: TokenPair
    is_new_user: bool


# =============================================================================
# Message helpers
# =============================================================================


def get_chain_info(chain_id: int) -> dict[str, str]:
    return SUPPORTED_CHAINS.get(chain_id, {"name": "Unknown", "symbol": "ETH"})


def is_valid_address(address: object) -> bool:
    return isinstance(address, str) and _ADDRESS_RE.match(address) is not None


def checksum_address(address: str) -> str:
    """EIP-55 checksum form of ``address``.

    Raises:
        ValidationError: Not a 0x-prefixed 40-hex-digit address
    """
    if not is_valid_address(address):
        raise ValidationError("Invalid Ethereum address", field="address")
    return to_checksum_address(address)


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


def create_message(
    address: str,
    chain_id: int,
    nonce: str,
    domain: str = SIWE_DOMAIN,
    uri: str = SIWE_URI,
    issued_at: datetime | None = None,
) -> str:
    """Render the SIWE message the wallet is asked to sign."""
    issued_at = issued_at or datetime.now(timezone.utc)
    return (
        f"{domain}{SIWE_HEADER_SUFFIX}\n"
        f"{address}\n"
        f"\n"
        f"{SIWE_STATEMENT}\n"
        f"\n"
        f"URI: {uri}\n"
        f"Version: 1\n"
        f"Chain ID: {chain_id}\n"
        f"Nonce: {nonce}\n"
        f"Issued At: {format_timestamp(issued_at)}\n"
        f"Expiration Time: {format_timestamp(issued_at + MESSAGE_TTL)}"
    )


def parse_message(message: str) -> SiweMessage:
    """Parse a SIWE message back into its fields.

    Raises:
        ValidationError: Message does not follow the SIWE layout
    """
    if not message:
        raise ValidationError("Empty sign-in message", field="message")

    lines = message.split("\n")
    if len(lines) < 2 or not lines[0].endswith(SIWE_HEADER_SUFFIX):
        raise ValidationError("Malformed sign-in message header", field="message")

    domain = lines[0][: -len(SIWE_HEADER_SUFFIX)]
    address = lines[1].strip()
    if not is_valid_address(address):
        raise ValidationError("Malformed sign-in message address", field="message")

    fields: dict[str, str] = {}
    statement = None
    for line in lines[2:]:
        key, sep, value = line.partition(": ")
        if sep and key in ("URI", "Version", "Chain ID", "Nonce", "Issued At", "Expiration Time"):
            fields[key] = value.strip()
        elif line.strip() and statement is None and not fields:
            statement = line.strip()

    missing = [k for k in ("URI", "Version", "Chain ID", "Nonce", "Issued At") if k not in fields]
    if missing:
        raise ValidationError(
            "Malformed sign-in message", field="message", errors=[f"Missing {k}" for k in missing]
        )

    try:
        return SiweMessage(
            domain=domain,
            address=address,
            statement=statement,
            uri=fields["URI"],
            version=fields["Version"],
            chain_id=int(fields["Chain ID"]),
            nonce=fields["Nonce"],
            issued_at=_parse_timestamp(fields["Issued At"]),
            expiration_time=(
                _parse_timestamp(fields["Expiration Time"]) if "Expiration Time" in fields else None
            ),
        )
    except ValueError as e:
        raise ValidationError("Malformed sign-in message", field="message", errors=[str(e)]) from e


def verify_signature(message: str, signature: str, address: str) -> bool:
    """Recover the EIP-191 signer of ``message`` and compare it to ``address``.

    Returns False (never raises) for malformed input or a mismatch.
    """
    if not signature or not signature.startswith("0x"):
        log.debug("SIWE: signature missing 0x prefix")
        return False
    if len(signature) != SIGNATURE_LENGTH:
        log.debug("SIWE: invalid signature length")
        return False
    if not message:
        log.debug("SIWE: empty message")
        return False

    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        # eth_account raises a variety of types for malformed signatures
        log.debug(f"SIWE: signature recovery failed: {e}")
        return False

    if recovered.lower() != (address or "").lower():
        log.debug(f"SIWE: address mismatch, expected {address}, recovered {recovered}")
        return False
    return True


# =============================================================================
# Service
# =============================================================================


class WalletService:
    """Wallet sign-in and wallet management for principals."""

    def __init__(
        self,
        repository: PrincipalRepository,
        challenges: ChallengeStore,
        tokens: TokenIssuer,
        scores: ScoreEngine,
        audit: AuditLogger,
        domain: str = SIWE_DOMAIN,
        uri: str = SIWE_URI,
        nonce_ttl_seconds: int = NONCE_TTL_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._repo = repository
        self._challenges = challenges
        self._tokens = tokens
        self._scores = scores
        self._audit = audit
        self._domain = domain
        self._uri = uri
        self._nonce_ttl = nonce_ttl_seconds
        self._clock = clock

    def get_or_create_nonce(self, address: str, chain_id: int = DEFAULT_CHAIN_ID) -> dict:
        """Issue a fresh nonce for ``address`` and the message embedding it.

        Any earlier unconsumed nonce for the address is replaced.

        Raises:
            ValidationError: Malformed address
        """
        address = checksum_address(address)
        nonce = secrets.token_hex(16)
        challenge = self._challenges.issue(address, value=nonce, ttl_seconds=self._nonce_ttl)
        message = create_message(
            address,
            chain_id,
            nonce,
            domain=self._domain,
            uri=self._uri,
            issued_at=self._clock(),
        )
        return {"nonce": nonce, "message": message, "expiresAt": challenge.expires_at}

    def _verify_siwe(
        self, address: str, signature: str, message: str, chain_id: int
    ) -> tuple[str, SiweMessage]:
        """Check a signed SIWE message and consume its nonce.

        The message must name this service's domain and URI and the chain the
        caller claims; a signature over any other origin is refused.

        Returns:
            (checksummed address, parsed message)

        Raises:
            AuthenticationError: with the concrete reason for the audit log
        """
        if not is_valid_address(address):
            raise AuthenticationError(reason="invalid_address")
        checksummed = to_checksum_address(address)

        try:
            parsed = parse_message(message)
        except ValidationError:
            raise AuthenticationError(reason="malformed_message")

        if parsed.address.lower() != checksummed.lower():
            raise AuthenticationError(reason="address_mismatch")
        if parsed.domain != self._domain or parsed.uri != self._uri:
            raise AuthenticationError(reason="domain_mismatch")
        if parsed.chain_id != chain_id:
            raise AuthenticationError(reason="chain_mismatch")
        if parsed.is_expired(self._clock()):
            raise AuthenticationError(reason="message_expired")

        if not verify_signature(message, signature, checksummed):
            raise AuthenticationError(reason="invalid_signature")

        if not self._challenges.consume(checksummed, parsed.nonce):
            raise AuthenticationError(reason="invalid_nonce")

        return checksummed, parsed

    def wallet_auth(
        self,
        address: str,
        signature: str,
        message: str,
        chain_id: int = DEFAULT_CHAIN_ID,
        ens_name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
    ) -> WalletAuthResult:
        """Sign in with a wallet, creating the principal on first sight.

        Raises:
            AuthenticationError: Any verification failure (reason is audited only)
        """
        try:
            address, _ = self._verify_siwe(address, signature, message, chain_id)
        except AuthenticationError as e:
            self._audit.log_auth_failure(
                "wallet", reason=e.reason, subject=address, ip_address=ip_address, request_id=request_id
            )
            raise AuthenticationError("Invalid signature", reason=e.reason) from None

        principal = self._repo.get_principal_by_wallet(address)
        is_new_user = principal is None

        if is_new_user:
            chain = get_chain_info(chain_id)
            principal, _ = self._repo.create_wallet_principal(
                vid=allocate_vid(self._repo),
                did=generate_did(network_for_chain(chain_id), address),
                address=address,
                chain_id=chain_id,
                chain_name=chain["name"],
                display_name=ens_name or f"{address[:6]}...{address[-4:]}",
                password_hash=NO_PASSWORD_MARKER,
                ens_name=ens_name,
                signature=signature,
                message=message,
            )
            self._scores.apply_action(principal.id, "WALLET_SIGNUP")
            log.info(f"Created wallet principal {principal.vid}")
        else:
            if not principal.is_active:
                self._audit.log_auth_failure(
                    "wallet", reason="suspended", subject=principal.id, ip_address=ip_address, request_id=request_id
                )
                raise AuthenticationError("Invalid signature", reason="suspended")
            self._repo.touch_wallet(address)
            self._scores.apply_action(principal.id, "LOGIN")

        self._repo.record_login(principal.id, ip_address)
        tokens = self._tokens.issue(principal, ip_address=ip_address, user_agent=user_agent)
        self._audit.log_auth_success(principal.id, "wallet", ip_address=ip_address, request_id=request_id)

        return WalletAuthResult(
            principal=self._repo.get_principal(principal.id),
            tokens=tokens,
            is_new_user=is_new_user,
        )

    # =========================================================================
    # Wallet management
    # =========================================================================

    def bind_wallet(
        self,
        principal_id: str,
        address: str,
        signature: str,
        message: str,
        chain_id: int = DEFAULT_CHAIN_ID,
        ens_name: str | None = None,
        label: str | None = None,
    ) -> WalletIdentity:
        """Attach a newly verified wallet to an existing principal.

        Raises:
            AuthenticationError: Signature, message or nonce check failed
            ConflictError: Address already linked (to this or another account)
        """
        try:
            address, _ = self._verify_siwe(address, signature, message, chain_id)
        except AuthenticationError as e:
            self._audit.log_access(
                "wallet.bind", principal_id, resource=address, status="denied", details={"reason": e.reason}
            )
            raise AuthenticationError("Invalid signature", reason=e.reason) from None

        existing = self._repo.get_wallet_by_address(address)
        if existing is not None:
            if existing.principal_id == principal_id:
                raise ConflictError("Wallet is already bound to this account")
            raise ConflictError("Wallet is already linked to another account")

        if label is not None and len(label) > MAX_LABEL_LENGTH:
            raise ValidationError("Label too long", field="label")

        wallet = self._repo.add_wallet(
            principal_id,
            address,
            chain_id=chain_id,
            chain_name=get_chain_info(chain_id)["name"],
            label=label,
            ens_name=ens_name,
            signature=signature,
            message=message,
        )

        if not self._repo.has_score_action(principal_id, "VERIFY_WALLET"):
            self._scores.apply_action(principal_id, "VERIFY_WALLET")

        self._audit.log_access("wallet.bind", principal_id, resource=address, details={"chain_id": chain_id})
        return wallet

    def unbind_wallet(self, principal_id: str, address: str) -> WalletIdentity:
        """Remove a wallet from a principal.

        Raises:
            ValidationError: Malformed address
            NotFoundError: Wallet not bound to this principal
            ConflictError: It is the principal's last authentication method
        """
        address = checksum_address(address)
        principal = self._repo.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("User not found")

        wallets = self._repo.list_wallets(principal_id)
        if not any(w.address == address for w in wallets):
            raise NotFoundError("Wallet not found")

        other_methods = (
            principal.has_password
            or len(wallets) > 1
            or bool(self._repo.list_passkeys(principal_id))
        )
        if not other_methods:
            raise ConflictError("Cannot remove the last authentication method")

        removed = self._repo.remove_wallet(principal_id, address)
        self._audit.log_access("wallet.unbind", principal_id, resource=address)
        return removed

    def list_wallets(self, principal_id: str) -> list[WalletIdentity]:
        return self._repo.list_wallets(principal_id)

    def set_primary_wallet(self, principal_id: str, wallet_id: int) -> WalletIdentity:
        wallet = self._repo.set_primary_wallet(principal_id, wallet_id)
        self._audit.log_access("wallet.set_primary", principal_id, resource=wallet.address)
        return wallet

    def update_wallet_label(self, principal_id: str, wallet_id: int, label: str | None) -> WalletIdentity:
        if label is not None and len(label) > MAX_LABEL_LENGTH:
            raise ValidationError("Label too long", field="label")
        return self._repo.update_wallet_label(principal_id, wallet_id, label)
