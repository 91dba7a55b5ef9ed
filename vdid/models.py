"""Typed value objects exchanged between services.

ORM rows are converted into these once, at the repository boundary; no
service sees a SQLAlchemy object.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from vdid.auth.password import has_usable_password


class PrincipalStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class ScoreCategory(str, Enum):
    ACTIVITY = "activity"
    FINANCIAL = "financial"
    SOCIAL = "social"
    TRUST = "trust"


@dataclass(frozen=True)
class ScoreSnapshot:
    """The four V-Score category values at a point in time."""

    activity: int = 0
    financial: int = 0
    social: int = 0
    trust: int = 0

    def get(self, category: ScoreCategory) -> int:
        return getattr(self, category.value)

    def as_dict(self) -> dict[str, int]:
        return {
            "activity": self.activity,
            "financial": self.financial,
            "social": self.social,
            "trust": self.trust,
        }


@dataclass(frozen=True)
class Principal:
    """An end-user account.

    Attributes:
        id: Internal UUID
        vid: Public checksummed identifier (VID-XXXX-XXXX-XXXX)
        did: Decentralized identifier, if assigned
        password_hash: argon2 hash, the no-password marker, or None
        scores: Category scores; total/level are derived and stored alongside
        score_version: Compare-and-swap counter for score updates
    """

    id: str
    vid: str
    did: str | None = None
    email: str | None = None
    display_name: str | None = None
    password_hash: str | None = field(default=None, repr=False)
    wallet_address: str | None = None
    wallet_verified: bool = False
    ens_name: str | None = None
    chain_id: int | None = None
    passkey_enabled: bool = False
    email_verified: bool = False
    scores: ScoreSnapshot = field(default_factory=ScoreSnapshot)
    vscore_total: int = 0
    vscore_level: str = "Newcomer"
    score_version: int = 0
    status: PrincipalStatus = PrincipalStatus.ACTIVE
    login_count: int = 0
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_password(self) -> bool:
        return has_usable_password(self.password_hash)

    @property
    def is_active(self) -> bool:
        return self.status == PrincipalStatus.ACTIVE

    def to_public_dict(self) -> dict:
        """Safe representation for API responses (no secrets)."""
        return {
            "id": self.id,
            "vid": self.vid,
            "did": self.did,
            "email": self.email,
            "emailVerified": self.email_verified,
            "displayName": self.display_name,
            "walletAddress": self.wallet_address,
            "walletVerified": self.wallet_verified,
            "ensName": self.ens_name,
            "passkeyEnabled": self.passkey_enabled,
            "vscoreTotal": self.vscore_total,
            "vscoreLevel": self.vscore_level,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class WalletIdentity:
    id: int
    principal_id: str
    address: str
    chain_id: int
    chain_name: str
    is_primary: bool = False
    label: str | None = None
    ens_name: str | None = None
    signature: str | None = field(default=None, repr=False)
    verified_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime | None = None

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "walletAddress": self.address,
            "chainId": self.chain_id,
            "chainName": self.chain_name,
            "isPrimary": self.is_primary,
            "label": self.label,
            "ensName": self.ens_name,
            "verifiedAt": self.verified_at.isoformat() if self.verified_at else None,
            "lastUsed": self.last_used_at.isoformat() if self.last_used_at else None,
        }


@dataclass(frozen=True)
class Passkey:
    id: str
    principal_id: str
    credential_id: str
    public_key: str = field(repr=False)
    counter: int = 0
    device_name: str = "Unknown Device"
    aaguid: str | None = None
    transports: list[str] | None = None
    is_active: bool = True
    use_count: int = 0
    last_used_at: datetime | None = None
    created_at: datetime | None = None

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "deviceName": self.device_name,
            "useCount": self.use_count,
            "lastUsedAt": self.last_used_at.isoformat() if self.last_used_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "isActive": self.is_active,
        }


@dataclass(frozen=True)
class Session:
    """Server-side record backing an access/refresh token pair."""

    id: int
    principal_id: str
    session_id: str
    refresh_fingerprint: str = field(repr=False)
    access_expires_at: datetime
    refresh_expires_at: datetime
    is_active: bool = True
    ip_address: str | None = None
    user_agent: str | None = None
    device_type: str = "web"
    created_at: datetime | None = None
    last_activity_at: datetime | None = None


@dataclass(frozen=True)
class ScoreHistoryEntry:
    id: int
    principal_id: str
    previous_total: int
    new_total: int
    change: int
    snapshot: ScoreSnapshot
    reason: str | None
    source_action: str | None
    previous_level: str | None
    new_level: str
    level_changed: bool
    created_at: datetime

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "previousTotal": self.previous_total,
            "newTotal": self.new_total,
            "change": self.change,
            "reason": self.reason,
            "sourceAction": self.source_action,
            "levelChanged": self.level_changed,
            "newLevel": self.new_level,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str


@dataclass(frozen=True)
class AuthContext:
    """The authenticated caller, produced once per request by the token issuer."""

    principal: Principal
    session_id: str

    @property
    def principal_id(self) -> str:
        return self.principal.id
