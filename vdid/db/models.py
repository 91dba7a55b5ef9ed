"""SQLAlchemy ORM models for the VDID identity core.

This module defines the database schema for:
- Users (principals with VID/DID, credential flags and V-Score columns)
- Wallet identities (verified EVM addresses bound to a user)
- Passkeys (WebAuthn credentials)
- Sessions (server-side records behind access/refresh token pairs)
- Score history (append-only V-Score ledger)

Timestamps are stored as naive UTC.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def utcnow() -> datetime:
    """Current time as naive UTC, matching what the columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class User(Base):
    """End-user principal.

    A user authenticates with any of: a password (argon2id hash), one or more
    verified wallets, one or more passkeys. Wallet-only users carry the
    WALLET_AUTH_NO_PASSWORD marker instead of a hash.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # UUID
    vid = Column(String(19), nullable=False, unique=True)
    did = Column(String(128), nullable=True, unique=True)
    email = Column(String(255), nullable=True, unique=True)  # Lowercase
    display_name = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=True)

    wallet_address = Column(String(42), nullable=True, unique=True)  # Primary wallet
    wallet_verified = Column(Boolean, default=False, nullable=False)
    ens_name = Column(String(255), nullable=True)
    chain_id = Column(Integer, nullable=True)
    passkey_enabled = Column(Boolean, default=False, nullable=False)

    # Email verification and password reset; only SHA-256 digests of the tokens are stored
    email_verified = Column(Boolean, default=False, nullable=False)
    email_verify_token = Column(String(64), nullable=True, index=True)
    email_verify_expires = Column(DateTime, nullable=True)
    password_reset_token = Column(String(64), nullable=True, index=True)
    password_reset_expires = Column(DateTime, nullable=True)

    # V-Score
    vscore_activity = Column(Integer, default=0, nullable=False)
    vscore_financial = Column(Integer, default=0, nullable=False)
    vscore_social = Column(Integer, default=0, nullable=False)
    vscore_trust = Column(Integer, default=0, nullable=False)
    vscore_total = Column(Integer, default=0, nullable=False)
    vscore_level = Column(String(32), default="Newcomer", nullable=False)
    score_version = Column(Integer, default=0, nullable=False)  # CAS counter

    status = Column(String(16), default="active", nullable=False)
    login_count = Column(Integer, default=0, nullable=False)
    last_login_at = Column(DateTime, nullable=True)
    last_login_ip = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    wallets = relationship("WalletIdentity", back_populates="user", cascade="all, delete-orphan")
    passkeys = relationship("PasskeyCredential", back_populates="user", cascade="all, delete-orphan")
    sessions = relationship("UserSession", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<User(id={self.id!r}, vid={self.vid!r}, email={self.email!r})>"


class WalletIdentity(Base):
    """A verified EVM address bound to a user.

    An address belongs to at most one user. At most one wallet per user is
    primary; the primary address is mirrored on users.wallet_address.
    """

    __tablename__ = "wallet_identities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    address = Column(String(42), nullable=False, unique=True)  # EIP-55 checksummed
    chain_id = Column(Integer, default=1, nullable=False)
    chain_name = Column(String(64), default="Ethereum", nullable=False)
    label = Column(String(100), nullable=True)
    ens_name = Column(String(255), nullable=True)
    signature = Column(Text, nullable=True)
    siwe_message = Column(Text, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    is_primary = Column(Boolean, default=False, nullable=False)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="wallets")

    __table_args__ = (Index("ix_wallet_identities_user_id", "user_id"),)

    def __repr__(self) -> str:
        return f"<WalletIdentity(address={self.address!r}, user_id={self.user_id!r})>"


class PasskeyCredential(Base):
    """A WebAuthn credential registered by a user."""

    __tablename__ = "passkeys"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    credential_id = Column(String(512), nullable=False, unique=True)  # base64url
    public_key = Column(Text, nullable=False)  # base64url COSE key
    counter = Column(Integer, default=0, nullable=False)
    device_name = Column(String(100), default="Unknown Device", nullable=False)
    aaguid = Column(String(64), nullable=True)
    transports = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    use_count = Column(Integer, default=0, nullable=False)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="passkeys")

    __table_args__ = (Index("ix_passkeys_user_id", "user_id"),)

    def __repr__(self) -> str:
        return f"<PasskeyCredential(id={self.id!r}, user_id={self.user_id!r})>"


class UserSession(Base):
    """Server-side session record behind a token pair.

    The refresh token itself is never stored; only its SHA-256 fingerprint.
    """

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String(64), nullable=False, unique=True)
    refresh_fingerprint = Column(String(64), nullable=False)
    access_expires_at = Column(DateTime, nullable=False)
    refresh_expires_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    device_type = Column(String(32), default="web", nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_activity_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="sessions")

    __table_args__ = (Index("ix_sessions_user_id", "user_id"),)

    def __repr__(self) -> str:
        return f"<UserSession(session_id={self.session_id!r}, active={self.is_active})>"


class ScoreHistory(Base):
    """Append-only V-Score ledger row, one per score mutation."""

    __tablename__ = "score_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    previous_total = Column(Integer, nullable=False)
    new_total = Column(Integer, nullable=False)
    change = Column(Integer, nullable=False)
    activity = Column(Integer, nullable=False)
    financial = Column(Integer, nullable=False)
    social = Column(Integer, nullable=False)
    trust = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=True)
    source_action = Column(String(64), nullable=True)
    previous_level = Column(String(32), nullable=True)
    new_level = Column(String(32), nullable=False)
    level_changed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_score_history_user_created", "user_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<ScoreHistory(user_id={self.user_id!r}, change={self.change})>"
