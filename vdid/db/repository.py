"""Principal repository.

The only component that touches ORM rows. Every public method runs in its
own unit of work and returns typed value objects from ``vdid.models``.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vdid.db.models import (
    PasskeyCredential,
    ScoreHistory,
    User,
    UserSession,
    WalletIdentity as WalletRow,
    utcnow,
)
from vdid.db.session import get_db_session
from vdid.exceptions import ConflictError, NotFoundError
from vdid.models import (
    Passkey,
    Principal,
    PrincipalStatus,
    ScoreHistoryEntry,
    ScoreSnapshot,
    Session as SessionRecord,
    WalletIdentity,
)

log = logging.getLogger(__name__)


# =============================================================================
# Row -> value object conversion
# =============================================================================


def _to_principal(row: User) -> Principal:
    return Principal(
        id=row.id,
        vid=row.vid,
        did=row.did,
        email=row.email,
        display_name=row.display_name,
        password_hash=row.password_hash,
        wallet_address=row.wallet_address,
        wallet_verified=row.wallet_verified,
        ens_name=row.ens_name,
        chain_id=row.chain_id,
        passkey_enabled=row.passkey_enabled,
        email_verified=row.email_verified,
        scores=ScoreSnapshot(
            activity=row.vscore_activity,
            financial=row.vscore_financial,
            social=row.vscore_social,
            trust=row.vscore_trust,
        ),
        vscore_total=row.vscore_total,
        vscore_level=row.vscore_level,
        score_version=row.score_version,
        status=PrincipalStatus(row.status),
        login_count=row.login_count,
        last_login_at=row.last_login_at,
        last_login_ip=row.last_login_ip,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_wallet(row: WalletRow) -> WalletIdentity:
    return WalletIdentity(
        id=row.id,
        principal_id=row.user_id,
        address=row.address,
        chain_id=row.chain_id,
        chain_name=row.chain_name,
        is_primary=row.is_primary,
        label=row.label,
        ens_name=row.ens_name,
        signature=row.signature,
        verified_at=row.verified_at,
        last_used_at=row.last_used_at,
        created_at=row.created_at,
    )


def _to_passkey(row: PasskeyCredential) -> Passkey:
    return Passkey(
        id=row.id,
        principal_id=row.user_id,
        credential_id=row.credential_id,
        public_key=row.public_key,
        counter=row.counter,
        device_name=row.device_name,
        aaguid=row.aaguid,
        transports=list(row.transports) if row.transports else None,
        is_active=row.is_active,
        use_count=row.use_count,
        last_used_at=row.last_used_at,
        created_at=row.created_at,
    )


def _to_session(row: UserSession) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        principal_id=row.user_id,
        session_id=row.session_id,
        refresh_fingerprint=row.refresh_fingerprint,
        access_expires_at=row.access_expires_at,
        refresh_expires_at=row.refresh_expires_at,
        is_active=row.is_active,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        device_type=row.device_type,
        created_at=row.created_at,
        last_activity_at=row.last_activity_at,
    )


def _to_history(row: ScoreHistory) -> ScoreHistoryEntry:
    return ScoreHistoryEntry(
        id=row.id,
        principal_id=row.user_id,
        previous_total=row.previous_total,
        new_total=row.new_total,
        change=row.change,
        snapshot=ScoreSnapshot(
            activity=row.activity,
            financial=row.financial,
            social=row.social,
            trust=row.trust,
        ),
        reason=row.reason,
        source_action=row.source_action,
        previous_level=row.previous_level,
        new_level=row.new_level,
        level_changed=row.level_changed,
        created_at=row.created_at,
    )


class PrincipalRepository:
    """Persistence for principals and everything hanging off them.

    Exposes no update or delete for score history: the ledger only grows.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        """Initialize the repository.

        Args:
            session_factory: sessionmaker bound to the VDID engine
        """
        self._session_factory = session_factory

    def _uow(self):
        return get_db_session(self._session_factory)

    # =========================================================================
    # Principals
    # =========================================================================

    def create_principal(
        self,
        vid: str,
        did: str | None = None,
        email: str | None = None,
        display_name: str | None = None,
        password_hash: str | None = None,
    ) -> Principal:
        """Insert a new principal.

        Raises:
            ConflictError: If the email or VID is already taken
        """
        try:
            with self._uow() as db:
                user = User(
                    id=str(uuid.uuid4()),
                    vid=vid,
                    did=did,
                    email=email.lower() if email else None,
                    display_name=display_name,
                    password_hash=password_hash,
                )
                db.add(user)
                db.flush()
                db.refresh(user)
                principal = _to_principal(user)
        except IntegrityError as e:
            log.warning(f"Principal insert conflict for {vid}: {e.orig}")
            raise ConflictError("Email already registered") from e

        log.info(f"Created principal {principal.vid}")
        return principal

    def create_wallet_principal(
        self,
        vid: str,
        did: str,
        address: str,
        chain_id: int,
        chain_name: str,
        display_name: str,
        password_hash: str,
        ens_name: str | None = None,
        signature: str | None = None,
        message: str | None = None,
    ) -> tuple[Principal, WalletIdentity]:
        """Insert a wallet-originated principal and its primary wallet together.

        Raises:
            ConflictError: If the address is already linked
        """
        now = utcnow()
        try:
            with self._uow() as db:
                user = User(
                    id=str(uuid.uuid4()),
                    vid=vid,
                    did=did,
                    display_name=display_name,
                    password_hash=password_hash,
                    wallet_address=address,
                    wallet_verified=True,
                    ens_name=ens_name,
                    chain_id=chain_id,
                    login_count=0,
                )
                db.add(user)
                db.flush()
                wallet = WalletRow(
                    user_id=user.id,
                    address=address,
                    chain_id=chain_id,
                    chain_name=chain_name,
                    ens_name=ens_name,
                    signature=signature,
                    siwe_message=message,
                    verified_at=now,
                    is_primary=True,
                    last_used_at=now,
                )
                db.add(wallet)
                db.flush()
                db.refresh(user)
                result = _to_principal(user), _to_wallet(wallet)
        except IntegrityError as e:
            raise ConflictError("Wallet is already linked to an account") from e

        log.info(f"Created wallet principal {vid} for {address[:10]}...")
        return result

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._uow() as db:
            user = db.query(User).filter(User.id == principal_id).first()
            return _to_principal(user) if user else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._uow() as db:
            user = db.query(User).filter(User.email == email.lower()).first()
            return _to_principal(user) if user else None

    def get_principal_by_vid(self, vid: str) -> Optional[Principal]:
        with self._uow() as db:
            user = db.query(User).filter(User.vid == vid).first()
            return _to_principal(user) if user else None

    def get_principal_by_wallet(self, address: str) -> Optional[Principal]:
        """Find the principal owning ``address`` (checksummed)."""
        with self._uow() as db:
            user = (
                db.query(User)
                .join(WalletRow, WalletRow.user_id == User.id)
                .filter(WalletRow.address == address)
                .first()
            )
            if user is None:
                user = db.query(User).filter(User.wallet_address == address).first()
            return _to_principal(user) if user else None

    def vid_exists(self, vid: str) -> bool:
        with self._uow() as db:
            return db.query(User.id).filter(User.vid == vid).first() is not None

    def update_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._uow() as db:
            updated = (
                db.query(User)
                .filter(User.id == principal_id)
                .update({User.password_hash: password_hash, User.updated_at: utcnow()})
            )
        if not updated:
            raise NotFoundError("User not found")

    def record_login(self, principal_id: str, ip_address: str | None = None) -> Optional[Principal]:
        """Bump login count and last-login metadata."""
        with self._uow() as db:
            user = db.query(User).filter(User.id == principal_id).first()
            if user is None:
                return None
            user.login_count = (user.login_count or 0) + 1
            user.last_login_at = utcnow()
            user.last_login_ip = ip_address
            db.flush()
            return _to_principal(user)

    def set_status(self, principal_id: str, status: PrincipalStatus) -> None:
        with self._uow() as db:
            updated = (
                db.query(User)
                .filter(User.id == principal_id)
                .update({User.status: status.value, User.updated_at: utcnow()})
            )
        if not updated:
            raise NotFoundError("User not found")
        log.info(f"Principal {principal_id} status -> {status.value}")

    # =========================================================================
    # Email verification / password reset tokens
    # =========================================================================

    def set_email_verify_token(self, principal_id: str, token_digest: str, expires_at: datetime) -> None:
        with self._uow() as db:
            updated = (
                db.query(User)
                .filter(User.id == principal_id)
                .update({
                    User.email_verify_token: token_digest,
                    User.email_verify_expires: expires_at,
                    User.updated_at: utcnow(),
                })
            )
        if not updated:
            raise NotFoundError("User not found")

    def consume_email_verify_token(self, token_digest: str, now: datetime | None = None) -> Optional[Principal]:
        """Mark the owner's email verified and clear the token.

        Returns None for an unknown, expired or already used token. The
        update is conditional on the token still being present, so two
        concurrent uses cannot both succeed.
        """
        now = now or utcnow()
        with self._uow() as db:
            user = (
                db.query(User)
                .filter(User.email_verify_token == token_digest, User.email_verify_expires > now)
                .first()
            )
            if user is None:
                return None
            updated = (
                db.query(User)
                .filter(User.id == user.id, User.email_verify_token == token_digest)
                .update(
                    {
                        User.email_verified: True,
                        User.email_verify_token: None,
                        User.email_verify_expires: None,
                        User.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if not updated:
                return None
            db.refresh(user)
            return _to_principal(user)

    def set_password_reset_token(self, principal_id: str, token_digest: str, expires_at: datetime) -> None:
        with self._uow() as db:
            updated = (
                db.query(User)
                .filter(User.id == principal_id)
                .update({
                    User.password_reset_token: token_digest,
                    User.password_reset_expires: expires_at,
                    User.updated_at: utcnow(),
                })
            )
        if not updated:
            raise NotFoundError("User not found")

    def consume_password_reset_token(
        self, token_digest: str, password_hash: str, now: datetime | None = None
    ) -> Optional[Principal]:
        """Replace the owner's password hash and clear the reset token.

        Returns None for an unknown, expired or already used token.
        """
        now = now or utcnow()
        with self._uow() as db:
            user = (
                db.query(User)
                .filter(User.password_reset_token == token_digest, User.password_reset_expires > now)
                .first()
            )
            if user is None:
                return None
            updated = (
                db.query(User)
                .filter(User.id == user.id, User.password_reset_token == token_digest)
                .update(
                    {
                        User.password_hash: password_hash,
                        User.password_reset_token: None,
                        User.password_reset_expires: None,
                        User.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if not updated:
                return None
            db.refresh(user)
            return _to_principal(user)

    # =========================================================================
    # Wallet identities
    # =========================================================================

    def get_wallet_by_address(self, address: str) -> Optional[WalletIdentity]:
        with self._uow() as db:
            row = db.query(WalletRow).filter(WalletRow.address == address).first()
            return _to_wallet(row) if row else None

    def list_wallets(self, principal_id: str) -> list[WalletIdentity]:
        """Wallets for a principal, primary first then newest."""
        with self._uow() as db:
            rows = (
                db.query(WalletRow)
                .filter(WalletRow.user_id == principal_id)
                .order_by(WalletRow.is_primary.desc(), WalletRow.created_at.desc(), WalletRow.id.desc())
                .all()
            )
            return [_to_wallet(r) for r in rows]

    def add_wallet(
        self,
        principal_id: str,
        address: str,
        chain_id: int,
        chain_name: str,
        label: str | None = None,
        ens_name: str | None = None,
        signature: str | None = None,
        message: str | None = None,
    ) -> WalletIdentity:
        """Bind a verified wallet to an existing principal.

        The first wallet a principal binds becomes primary and is mirrored
        onto the principal row.

        Raises:
            NotFoundError: Unknown principal
            ConflictError: Address already linked
        """
        now = utcnow()
        try:
            with self._uow() as db:
                user = db.query(User).filter(User.id == principal_id).first()
                if user is None:
                    raise NotFoundError("User not found")
                has_wallets = (
                    db.query(WalletRow.id).filter(WalletRow.user_id == principal_id).first()
                    is not None
                )
                wallet = WalletRow(
                    user_id=principal_id,
                    address=address,
                    chain_id=chain_id,
                    chain_name=chain_name,
                    label=label,
                    ens_name=ens_name,
                    signature=signature,
                    siwe_message=message,
                    verified_at=now,
                    is_primary=not has_wallets,
                    last_used_at=now,
                )
                db.add(wallet)
                if not has_wallets:
                    user.wallet_address = address
                    user.wallet_verified = True
                    user.chain_id = chain_id
                    if ens_name:
                        user.ens_name = ens_name
                db.flush()
                result = _to_wallet(wallet)
        except IntegrityError as e:
            raise ConflictError("Wallet is already linked to an account") from e

        log.info(f"Bound wallet {address[:10]}... to {principal_id}")
        return result

    def touch_wallet(self, address: str) -> None:
        with self._uow() as db:
            db.query(WalletRow).filter(WalletRow.address == address).update(
                {WalletRow.last_used_at: utcnow()}
            )

    def remove_wallet(self, principal_id: str, address: str) -> WalletIdentity:
        """Unbind a wallet, promoting the newest remaining wallet when the primary goes.

        Raises:
            NotFoundError: The wallet is not bound to this principal
        """
        with self._uow() as db:
            row = (
                db.query(WalletRow)
                .filter(WalletRow.user_id == principal_id, WalletRow.address == address)
                .first()
            )
            if row is None:
                raise NotFoundError("Wallet not found")
            removed = _to_wallet(row)
            db.delete(row)
            db.flush()

            user = db.query(User).filter(User.id == principal_id).first()
            remaining = (
                db.query(WalletRow)
                .filter(WalletRow.user_id == principal_id)
                .order_by(WalletRow.created_at.desc(), WalletRow.id.desc())
                .all()
            )
            if not remaining:
                user.wallet_address = None
                user.wallet_verified = False
                user.chain_id = None
            elif removed.is_primary:
                promoted = remaining[0]
                promoted.is_primary = True
                user.wallet_address = promoted.address
                user.chain_id = promoted.chain_id
                user.ens_name = promoted.ens_name or user.ens_name

        log.info(f"Unbound wallet {address[:10]}... from {principal_id}")
        return removed

    def set_primary_wallet(self, principal_id: str, wallet_id: int) -> WalletIdentity:
        with self._uow() as db:
            target = (
                db.query(WalletRow)
                .filter(WalletRow.user_id == principal_id, WalletRow.id == wallet_id)
                .first()
            )
            if target is None:
                raise NotFoundError("Wallet not found")
            db.query(WalletRow).filter(
                WalletRow.user_id == principal_id, WalletRow.id != wallet_id
            ).update({WalletRow.is_primary: False})
            target.is_primary = True

            user = db.query(User).filter(User.id == principal_id).first()
            user.wallet_address = target.address
            user.chain_id = target.chain_id
            db.flush()
            return _to_wallet(target)

    def update_wallet_label(self, principal_id: str, wallet_id: int, label: str | None) -> WalletIdentity:
        with self._uow() as db:
            row = (
                db.query(WalletRow)
                .filter(WalletRow.user_id == principal_id, WalletRow.id == wallet_id)
                .first()
            )
            if row is None:
                raise NotFoundError("Wallet not found")
            row.label = label
            db.flush()
            return _to_wallet(row)

    def count_wallets(self, principal_id: str) -> int:
        with self._uow() as db:
            return db.query(func.count(WalletRow.id)).filter(WalletRow.user_id == principal_id).scalar() or 0

    # =========================================================================
    # Passkeys
    # =========================================================================

    def add_passkey(
        self,
        principal_id: str,
        credential_id: str,
        public_key: str,
        counter: int = 0,
        device_name: str = "Unknown Device",
        aaguid: str | None = None,
        transports: list[str] | None = None,
    ) -> Passkey:
        """Persist a new passkey and mark the principal passkey-enabled.

        Raises:
            ConflictError: Credential id already registered anywhere
        """
        try:
            with self._uow() as db:
                row = PasskeyCredential(
                    id=str(uuid.uuid4()),
                    user_id=principal_id,
                    credential_id=credential_id,
                    public_key=public_key,
                    counter=counter,
                    device_name=device_name,
                    aaguid=aaguid,
                    transports=transports,
                )
                db.add(row)
                db.query(User).filter(User.id == principal_id).update(
                    {User.passkey_enabled: True, User.updated_at: utcnow()}
                )
                db.flush()
                db.refresh(row)
                result = _to_passkey(row)
        except IntegrityError as e:
            raise ConflictError("Passkey already registered") from e

        log.info(f"Registered passkey {result.id} for {principal_id}")
        return result

    def get_passkey_by_credential_id(self, credential_id: str) -> Optional[Passkey]:
        with self._uow() as db:
            row = (
                db.query(PasskeyCredential)
                .filter(PasskeyCredential.credential_id == credential_id)
                .first()
            )
            return _to_passkey(row) if row else None

    def credential_exists(self, credential_id: str) -> bool:
        with self._uow() as db:
            return (
                db.query(PasskeyCredential.id)
                .filter(PasskeyCredential.credential_id == credential_id)
                .first()
                is not None
            )

    def list_passkeys(self, principal_id: str, active_only: bool = True) -> list[Passkey]:
        with self._uow() as db:
            query = db.query(PasskeyCredential).filter(PasskeyCredential.user_id == principal_id)
            if active_only:
                query = query.filter(PasskeyCredential.is_active == True)  # noqa: E712
            rows = query.order_by(PasskeyCredential.created_at.desc()).all()
            return [_to_passkey(r) for r in rows]

    def record_passkey_use(self, passkey_id: str, new_counter: int) -> None:
        """Store the authenticator-reported counter and bump use statistics."""
        with self._uow() as db:
            row = db.query(PasskeyCredential).filter(PasskeyCredential.id == passkey_id).first()
            if row is None:
                raise NotFoundError("Passkey not found")
            row.counter = new_counter
            row.use_count = (row.use_count or 0) + 1
            row.last_used_at = utcnow()

    def rename_passkey(self, principal_id: str, passkey_id: str, device_name: str) -> Passkey:
        with self._uow() as db:
            row = (
                db.query(PasskeyCredential)
                .filter(PasskeyCredential.id == passkey_id, PasskeyCredential.user_id == principal_id)
                .first()
            )
            if row is None:
                raise NotFoundError("Passkey not found")
            row.device_name = device_name
            db.flush()
            return _to_passkey(row)

    def delete_passkey(self, principal_id: str, passkey_id: str) -> None:
        """Delete a passkey; clears passkey_enabled when none remain active."""
        with self._uow() as db:
            row = (
                db.query(PasskeyCredential)
                .filter(PasskeyCredential.id == passkey_id, PasskeyCredential.user_id == principal_id)
                .first()
            )
            if row is None:
                raise NotFoundError("Passkey not found")
            db.delete(row)
            db.flush()

            remaining = (
                db.query(func.count(PasskeyCredential.id))
                .filter(
                    PasskeyCredential.user_id == principal_id,
                    PasskeyCredential.is_active == True,  # noqa: E712
                )
                .scalar()
            )
            if not remaining:
                db.query(User).filter(User.id == principal_id).update({User.passkey_enabled: False})

        log.info(f"Deleted passkey {passkey_id} for {principal_id}")

    # =========================================================================
    # Sessions
    # =========================================================================

    def create_session(
        self,
        principal_id: str,
        session_id: str,
        refresh_fingerprint: str,
        access_expires_at: datetime,
        refresh_expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_type: str = "web",
    ) -> SessionRecord:
        with self._uow() as db:
            row = UserSession(
                user_id=principal_id,
                session_id=session_id,
                refresh_fingerprint=refresh_fingerprint,
                access_expires_at=access_expires_at,
                refresh_expires_at=refresh_expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
                device_type=device_type,
            )
            db.add(row)
            db.flush()
            db.refresh(row)
            return _to_session(row)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._uow() as db:
            row = db.query(UserSession).filter(UserSession.session_id == session_id).first()
            return _to_session(row) if row else None

    def rotate_session(
        self,
        old_session_id: str,
        new_session_id: str,
        refresh_fingerprint: str,
        access_expires_at: datetime,
        refresh_expires_at: datetime,
    ) -> bool:
        """Move an active session row to a new session id.

        Returns:
            False if the old session was already rotated or deactivated
        """
        with self._uow() as db:
            updated = (
                db.query(UserSession)
                .filter(
                    UserSession.session_id == old_session_id,
                    UserSession.is_active == True,  # noqa: E712
                )
                .update(
                    {
                        UserSession.session_id: new_session_id,
                        UserSession.refresh_fingerprint: refresh_fingerprint,
                        UserSession.access_expires_at: access_expires_at,
                        UserSession.refresh_expires_at: refresh_expires_at,
                        UserSession.last_activity_at: utcnow(),
                    },
                    synchronize_session=False,
                )
            )
        return updated == 1

    def deactivate_session(self, session_id: str) -> int:
        with self._uow() as db:
            return (
                db.query(UserSession)
                .filter(
                    UserSession.session_id == session_id,
                    UserSession.is_active == True,  # noqa: E712
                )
                .update({UserSession.is_active: False}, synchronize_session=False)
            )

    def deactivate_all_sessions(self, principal_id: str, except_session_id: str | None = None) -> int:
        with self._uow() as db:
            query = db.query(UserSession).filter(
                UserSession.user_id == principal_id,
                UserSession.is_active == True,  # noqa: E712
            )
            if except_session_id:
                query = query.filter(UserSession.session_id != except_session_id)
            return query.update({UserSession.is_active: False}, synchronize_session=False)

    def list_active_sessions(self, principal_id: str, now: datetime | None = None) -> list[SessionRecord]:
        now = now or utcnow()
        with self._uow() as db:
            rows = (
                db.query(UserSession)
                .filter(
                    UserSession.user_id == principal_id,
                    UserSession.is_active == True,  # noqa: E712
                    UserSession.refresh_expires_at > now,
                )
                .order_by(UserSession.last_activity_at.desc())
                .all()
            )
            return [_to_session(r) for r in rows]

    # =========================================================================
    # V-Score
    # =========================================================================

    def compare_and_swap_score(
        self,
        principal_id: str,
        expected_version: int,
        scores: ScoreSnapshot,
        total: int,
        level: str,
        previous_total: int,
        previous_level: str,
        reason: str | None,
        source_action: str | None,
    ) -> Optional[ScoreHistoryEntry]:
        """Write new scores and their ledger entry atomically.

        The principal row is only updated if its score_version still equals
        ``expected_version``; the history row is inserted in the same
        transaction.

        Returns:
            The new ledger entry, or None if the version check lost a race
        """
        with self._uow() as db:
            updated = (
                db.query(User)
                .filter(User.id == principal_id, User.score_version == expected_version)
                .update(
                    {
                        User.vscore_activity: scores.activity,
                        User.vscore_financial: scores.financial,
                        User.vscore_social: scores.social,
                        User.vscore_trust: scores.trust,
                        User.vscore_total: total,
                        User.vscore_level: level,
                        User.score_version: expected_version + 1,
                        User.updated_at: utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                return None

            entry = ScoreHistory(
                user_id=principal_id,
                previous_total=previous_total,
                new_total=total,
                change=total - previous_total,
                activity=scores.activity,
                financial=scores.financial,
                social=scores.social,
                trust=scores.trust,
                reason=reason,
                source_action=source_action,
                previous_level=previous_level,
                new_level=level,
                level_changed=previous_level != level,
            )
            db.add(entry)
            db.flush()
            db.refresh(entry)
            return _to_history(entry)

    def list_score_history(self, principal_id: str, limit: int = 20, offset: int = 0) -> list[ScoreHistoryEntry]:
        """Ledger entries, newest first."""
        with self._uow() as db:
            rows = (
                db.query(ScoreHistory)
                .filter(ScoreHistory.user_id == principal_id)
                .order_by(ScoreHistory.created_at.desc(), ScoreHistory.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_to_history(r) for r in rows]

    def has_score_action(self, principal_id: str, source_action: str) -> bool:
        with self._uow() as db:
            return (
                db.query(ScoreHistory.id)
                .filter(ScoreHistory.user_id == principal_id, ScoreHistory.source_action == source_action)
                .first()
                is not None
            )

    def sum_score_changes_since(self, principal_id: str, since: datetime) -> int:
        with self._uow() as db:
            total = (
                db.query(func.coalesce(func.sum(ScoreHistory.change), 0))
                .filter(ScoreHistory.user_id == principal_id, ScoreHistory.created_at >= since)
                .scalar()
            )
            return int(total or 0)
