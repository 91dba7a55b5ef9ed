"""V-Score reputation engine.

Total = 30% activity + 35% financial + 20% social + 15% trust, each category
clamped to [0, 1000], rounded half-up in integer arithmetic.

Levels:
- Newcomer: 0-199
- Active: 200-399
- Established: 400-599
- Trusted: 600-799
- Elite: 800-1000
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Iterable

from vdid.db.models import utcnow
from vdid.db.repository import PrincipalRepository
from vdid.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from vdid.models import Principal, ScoreCategory, ScoreHistoryEntry

log = logging.getLogger(__name__)

CATEGORY_MIN = 0
CATEGORY_MAX = 1000

# Integer percentages; must sum to 100
WEIGHT_PERCENT: dict[ScoreCategory, int] = {
    ScoreCategory.ACTIVITY: 30,
    ScoreCategory.FINANCIAL: 35,
    ScoreCategory.SOCIAL: 20,
    ScoreCategory.TRUST: 15,
}
WEIGHTS: dict[str, float] = {c.value: p / 100 for c, p in WEIGHT_PERCENT.items()}

MAX_CAS_RETRIES = 5


@dataclass(frozen=True)
class Level:
    name: str
    min: int
    max: int


LEVELS: tuple[Level, ...] = (
    Level("Newcomer", 0, 199),
    Level("Active", 200, 399),
    Level("Established", 400, 599),
    Level("Trusted", 600, 799),
    Level("Elite", 800, 1000),
)


@dataclass(frozen=True)
class ScoreAction:
    category: ScoreCategory
    points: int
    reason: str
    system_only: bool = False


ACTIONS: dict[str, ScoreAction] = {
    # Activity
    "DAILY_LOGIN": ScoreAction(ScoreCategory.ACTIVITY, 5, "Daily login"),
    "COMPLETE_PROFILE": ScoreAction(ScoreCategory.ACTIVITY, 20, "Complete profile"),
    "USE_FEATURE": ScoreAction(ScoreCategory.ACTIVITY, 2, "Use platform feature"),
    # Financial
    "FIRST_TRANSACTION": ScoreAction(ScoreCategory.FINANCIAL, 50, "First transaction", system_only=True),
    "TRANSACTION": ScoreAction(ScoreCategory.FINANCIAL, 5, "Complete transaction", system_only=True),
    "HOLD_TOKEN": ScoreAction(ScoreCategory.FINANCIAL, 10, "Hold RTX token"),
    # Social
    "INVITE_FRIEND": ScoreAction(ScoreCategory.SOCIAL, 30, "Invite friend"),
    "FRIEND_JOINED": ScoreAction(ScoreCategory.SOCIAL, 20, "Friend joined"),
    "SHARE_CONTENT": ScoreAction(ScoreCategory.SOCIAL, 5, "Share content"),
    # Trust
    "VERIFY_EMAIL": ScoreAction(ScoreCategory.TRUST, 50, "Verify email", system_only=True),
    "VERIFY_PHONE": ScoreAction(ScoreCategory.TRUST, 30, "Verify phone"),
    "ENABLE_2FA": ScoreAction(ScoreCategory.TRUST, 40, "Enable 2FA"),
    "VERIFY_WALLET": ScoreAction(ScoreCategory.TRUST, 50, "Verify wallet"),
    "KYC_COMPLETE": ScoreAction(ScoreCategory.TRUST, 100, "Complete KYC", system_only=True),
    # Internal system actions
    "ACCOUNT_REGISTRATION": ScoreAction(ScoreCategory.TRUST, 100, "Account registration", system_only=True),
    "WALLET_SIGNUP": ScoreAction(ScoreCategory.ACTIVITY, 50, "Wallet signup", system_only=True),
    "LOGIN": ScoreAction(ScoreCategory.ACTIVITY, 5, "Login", system_only=True),
}


@dataclass(frozen=True)
class NextLevel:
    name: str
    points_needed: int


@dataclass(frozen=True)
class ScoreInfo:
    total: int
    level: str
    activity: int
    financial: int
    social: int
    trust: int
    next_level: NextLevel | None = None

    def to_dict(self) -> dict:
        data = {
            "total": self.total,
            "level": self.level,
            "activity": self.activity,
            "financial": self.financial,
            "social": self.social,
            "trust": self.trust,
        }
        if self.next_level:
            data["nextLevel"] = {
                "name": self.next_level.name,
                "pointsNeeded": self.next_level.points_needed,
            }
        return data


@dataclass(frozen=True)
class ScoreUpdate:
    principal_id: str
    category: ScoreCategory | str
    points: int
    reason: str
    source_action: str | None = None


@dataclass
class ScoreSummary:
    current: ScoreInfo
    weekly_change: int
    recent_history: list[ScoreHistoryEntry] = field(default_factory=list)
    tips: list[str] = field(default_factory=list)


# =============================================================================
# Pure functions
# =============================================================================


def calculate_total(activity: int, financial: int, social: int, trust: int) -> int:
    """Weighted total, rounded half-up without floating point."""
    weighted = (
        WEIGHT_PERCENT[ScoreCategory.ACTIVITY] * activity
        + WEIGHT_PERCENT[ScoreCategory.FINANCIAL] * financial
        + WEIGHT_PERCENT[ScoreCategory.SOCIAL] * social
        + WEIGHT_PERCENT[ScoreCategory.TRUST] * trust
    )
    return (weighted + 50) // 100


def get_level(total: int) -> str:
    for level in reversed(LEVELS):
        if total >= level.min:
            return level.name
    return LEVELS[0].name


def get_level_details(total: int) -> Level:
    name = get_level(total)
    return next(level for level in LEVELS if level.name == name)


def next_level(total: int) -> NextLevel | None:
    """The next level above ``total`` and how far away it is; None at Elite."""
    for level in LEVELS:
        if total < level.min:
            return NextLevel(name=level.name, points_needed=level.min - total)
    return None


def clamp(value: int) -> int:
    return max(CATEGORY_MIN, min(CATEGORY_MAX, value))


def generate_tips(info: ScoreInfo) -> list[str]:
    """Up to three suggestions for the weakest categories and current level."""
    tips: list[str] = []

    if info.trust < 100:
        tips.append("Verify your email to earn 50 Trust points")
    if info.trust < 200:
        tips.append("Enable 2FA to earn 40 Trust points and secure your account")
    if info.activity < 100:
        tips.append("Login daily to earn 5 Activity points")
    if info.social < 50:
        tips.append("Invite friends to earn 30 Social points per referral")
    if info.financial < 50:
        tips.append("Complete your first transaction to earn 50 Financial points")

    if info.level == "Newcomer":
        tips.append("Reach Active level (200 points) to unlock reduced transaction fees")
    elif info.level == "Active":
        tips.append("Reach Established level (400 points) for higher transaction limits")

    return tips[:3]


def _to_category(category: ScoreCategory | str) -> ScoreCategory:
    try:
        return ScoreCategory(category)
    except ValueError:
        raise ValidationError(f"Unknown V-Score category: {category}", field="category")


# =============================================================================
# Engine
# =============================================================================


class ScoreEngine:
    """Applies score changes and reads score state for principals."""

    def __init__(self, repository: PrincipalRepository, max_retries: int = MAX_CAS_RETRIES):
        self._repo = repository
        self._max_retries = max_retries

    def _load(self, principal_id: str) -> Principal:
        principal = self._repo.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("User not found")
        return principal

    @staticmethod
    def _info(principal: Principal) -> ScoreInfo:
        s = principal.scores
        return ScoreInfo(
            total=principal.vscore_total,
            level=principal.vscore_level,
            activity=s.activity,
            financial=s.financial,
            social=s.social,
            trust=s.trust,
            next_level=next_level(principal.vscore_total),
        )

    def get_score(self, principal_id: str) -> ScoreInfo:
        return self._info(self._load(principal_id))

    def update_score(
        self,
        principal_id: str,
        category: ScoreCategory | str,
        points: int,
        reason: str,
        source_action: str | None = None,
    ) -> ScoreInfo:
        """Add ``points`` to one category and append a history entry.

        The principal row and the ledger entry are written together under a
        version check; on a lost race the scores are re-read and the change
        is recomputed.

        Raises:
            NotFoundError: Unknown principal
            ValidationError: Unknown category
            ConflictError: Version check lost more than max_retries times
        """
        category = _to_category(category)

        for attempt in range(self._max_retries):
            principal = self._load(principal_id)
            current = principal.scores
            updated = replace(current, **{category.value: clamp(current.get(category) + points)})
            total = calculate_total(updated.activity, updated.financial, updated.social, updated.trust)
            level = get_level(total)

            entry = self._repo.compare_and_swap_score(
                principal_id=principal_id,
                expected_version=principal.score_version,
                scores=updated,
                total=total,
                level=level,
                previous_total=principal.vscore_total,
                previous_level=principal.vscore_level,
                reason=reason,
                source_action=source_action,
            )
            if entry is not None:
                if entry.level_changed:
                    log.info(f"V-Score level change for {principal.vid}: {entry.previous_level} -> {level}")
                log.debug(f"V-Score {principal.vid} {category.value} {points:+d} -> total {total}")
                return ScoreInfo(
                    total=total,
                    level=level,
                    activity=updated.activity,
                    financial=updated.financial,
                    social=updated.social,
                    trust=updated.trust,
                    next_level=next_level(total),
                )

            log.debug(f"V-Score version conflict for {principal_id} (attempt {attempt + 1})")

        log.warning(f"V-Score update for {principal_id} gave up after {self._max_retries} conflicts")
        raise ConflictError("Score update conflict, please retry")

    def apply_action(self, principal_id: str, action_key: str) -> ScoreInfo:
        """System path: apply any catalog action, including system-only ones."""
        action = ACTIONS.get(action_key)
        if action is None:
            raise ValidationError(f"Unknown V-Score action: {action_key}", field="action")
        return self.update_score(
            principal_id,
            action.category,
            action.points,
            action.reason,
            source_action=action_key,
        )

    def claim_action(self, principal_id: str, action_key: str) -> ScoreInfo:
        """Public path: system-only actions are refused without any state change."""
        action = ACTIONS.get(action_key)
        if action is None:
            raise ValidationError(f"Unknown V-Score action: {action_key}", field="action")
        if action.system_only:
            raise ForbiddenError("This action can only be triggered by the system")
        return self.apply_action(principal_id, action_key)

    def get_history(self, principal_id: str, limit: int = 20, offset: int = 0) -> list[ScoreHistoryEntry]:
        return self._repo.list_score_history(principal_id, limit=limit, offset=offset)

    def get_summary(self, principal_id: str, now=None) -> ScoreSummary:
        current = self.get_score(principal_id)
        now = now or utcnow()
        weekly_change = self._repo.sum_score_changes_since(principal_id, now - timedelta(days=7))
        return ScoreSummary(
            current=current,
            weekly_change=weekly_change,
            recent_history=self.get_history(principal_id, limit=5),
            tips=generate_tips(current),
        )

    def recalculate_total(self, principal_id: str) -> ScoreInfo:
        """Recompute total and level from the stored categories.

        Writes (and records) only when the stored total is out of step.
        """
        for _ in range(self._max_retries):
            principal = self._load(principal_id)
            s = principal.scores
            total = calculate_total(s.activity, s.financial, s.social, s.trust)
            level = get_level(total)
            if total == principal.vscore_total and level == principal.vscore_level:
                return self._info(principal)

            entry = self._repo.compare_and_swap_score(
                principal_id=principal_id,
                expected_version=principal.score_version,
                scores=s,
                total=total,
                level=level,
                previous_total=principal.vscore_total,
                previous_level=principal.vscore_level,
                reason="Score recalculation",
                source_action=None,
            )
            if entry is not None:
                log.info(f"Recalculated V-Score for {principal.vid}: {principal.vscore_total} -> {total}")
                return self._info(replace(principal, vscore_total=total, vscore_level=level))

        raise ConflictError("Score update conflict, please retry")

    def batch_update(self, updates: Iterable[ScoreUpdate]) -> int:
        """Apply several updates; failures are logged and skipped."""
        success_count = 0
        for update in updates:
            try:
                self.update_score(
                    update.principal_id,
                    update.category,
                    update.points,
                    update.reason,
                    source_action=update.source_action,
                )
                success_count += 1
            except (NotFoundError, ValidationError, ConflictError) as e:
                log.error(f"Failed to update V-Score for {update.principal_id}: {e}")
        return success_count
