"""Service container.

One Services instance is built per application and stored on
``app.state.services``; every service gets its collaborators through its
constructor.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from vdid.audit.logger import AuditLogger
from vdid.auth.challenge import ChallengeStore
from vdid.auth.mail import EmailSender
from vdid.auth.passkeys import PasskeyService
from vdid.auth.service import PasswordAuthService
from vdid.auth.tokens import TokenIssuer
from vdid.auth.wallet import WalletService
from vdid.config import AUDIT_ENABLED, CHALLENGE_TTL_SECONDS, DATABASE_URL
from vdid.db.repository import PrincipalRepository
from vdid.db.session import create_db_engine, make_session_factory
from vdid.vscore.engine import ScoreEngine

log = logging.getLogger(__name__)


@dataclass
class Services:
    engine: Engine
    repository: PrincipalRepository
    challenges: ChallengeStore
    audit: AuditLogger
    tokens: TokenIssuer
    scores: ScoreEngine
    passwords: PasswordAuthService
    wallets: WalletService
    passkeys: PasskeyService


def build_services(
    engine: Engine | None = None,
    audit_enabled: bool = AUDIT_ENABLED,
    token_options: dict | None = None,
    wallet_options: dict | None = None,
    passkey_options: dict | None = None,
    mailer: EmailSender | None = None,
    password_options: dict | None = None,
) -> Services:
    """Wire the identity services together.

    Args:
        engine: SQLAlchemy engine; built from VDID_DATABASE_URL when omitted
        audit_enabled: Whether audit events are emitted
        token_options: Extra TokenIssuer kwargs (secret, TTLs, clock)
        wallet_options: Extra WalletService kwargs (domain, uri, nonce TTL)
        passkey_options: Extra PasskeyService kwargs (rp id/name/origin)
        mailer: Outbound account email; logs only when omitted
        password_options: Extra PasswordAuthService kwargs (token TTLs, clock)
    """
    if engine is None:
        engine = create_db_engine(DATABASE_URL)

    repository = PrincipalRepository(make_session_factory(engine))
    challenges = ChallengeStore(ttl_seconds=CHALLENGE_TTL_SECONDS)
    audit = AuditLogger(enabled=audit_enabled)
    tokens = TokenIssuer(repository, audit, **(token_options or {}))
    scores = ScoreEngine(repository)
    log.info(f"Identity services built (audit={'on' if audit_enabled else 'off'}, dialect={engine.dialect.name})")

    return Services(
        engine=engine,
        repository=repository,
        challenges=challenges,
        audit=audit,
        tokens=tokens,
        scores=scores,
        passwords=PasswordAuthService(
            repository, tokens, scores, audit, mailer=mailer, **(password_options or {})
        ),
        wallets=WalletService(repository, challenges, tokens, scores, audit, **(wallet_options or {})),
        passkeys=PasskeyService(repository, challenges, tokens, scores, audit, **(passkey_options or {})),
    )
