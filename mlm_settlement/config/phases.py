"""
MLM phase configuration.

Phase levels are admin-curated rows in `phase_levels`. Engine code never
reads them ad hoc: a settlement run loads one immutable PhaseConfig
snapshot and passes it explicitly into the calculator and phase engine.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from sqlalchemy.orm import Session

from config import Config
from mlm_settlement.errors import ConfigurationMissing

logger = logging.getLogger(__name__)

MAX_PHASE = 3


class RewardMode(Enum):
    """How a phase reward is granted."""
    ONE_TIME = "one_time"   # once ever, guarded by phaseN_granted
    MONTHLY = "monthly"     # once per calendar month, phase_rewards bucket


@dataclass(frozen=True)
class PhaseLevelConfig:
    phase: int
    commissionRate: Decimal = Decimal("0")
    subscriptionDiscountRate: Decimal = Decimal("0")
    affiliateSponsorRate: Decimal = Decimal("0")
    oneTimeCreditCents: int = 0
    freeProductValueCents: int = 0
    creditRewardMode: RewardMode = RewardMode.ONE_TIME
    freeProductRewardMode: RewardMode = RewardMode.MONTHLY
    directReferralsRequired: int = 0
    teamSizeRequired: int = 0
    name: Optional[str] = None


@dataclass(frozen=True)
class PhaseConfig:
    """
    Immutable snapshot of the phase ladder.

    Attributes:
        levels: phase number -> PhaseLevelConfig
        commissionDepth: number of upline levels paid per payment
        visibleLevels: depth of the team counted by phase evaluation
        demotionEnabled: whether phases may decrease
        version: digest of the levels, logged with every settlement run
    """
    levels: Dict[int, PhaseLevelConfig] = field(default_factory=dict)
    commissionDepth: int = 2
    visibleLevels: int = 2
    demotionEnabled: bool = False
    version: str = ""

    def level(self, phase: int) -> PhaseLevelConfig:
        """
        Get configuration for a phase.

        Raises:
            ConfigurationMissing: If no row exists for the phase
        """
        try:
            return self.levels[phase]
        except KeyError:
            raise ConfigurationMissing(phase)

    def commissionRate(self, phase: int) -> Decimal:
        """Commission rate for a phase; a missing level is logged and pays nothing."""
        try:
            return self.level(phase).commissionRate
        except ConfigurationMissing as e:
            logger.error(f"Configuration defect: {e}, using rate 0")
            return Decimal("0")

    @property
    def maxPhase(self) -> int:
        return max([p for p in self.levels if p <= MAX_PHASE], default=0)


def _compute_version(levels: Dict[int, PhaseLevelConfig]) -> str:
    digest = hashlib.sha1()
    for phase in sorted(levels):
        digest.update(repr(levels[phase]).encode())
    return digest.hexdigest()[:12]


def build_phase_config(
        levels: Dict[int, PhaseLevelConfig],
        commissionDepth: Optional[int] = None,
        visibleLevels: Optional[int] = None,
        demotionEnabled: Optional[bool] = None
) -> PhaseConfig:
    """Build a snapshot from explicit levels; engine knobs default to Config."""
    return PhaseConfig(
        levels=dict(levels),
        commissionDepth=int(
            commissionDepth if commissionDepth is not None else Config.get(Config.COMMISSION_DEPTH)
        ),
        visibleLevels=int(
            visibleLevels if visibleLevels is not None else Config.get(Config.PHASE_VISIBLE_LEVELS)
        ),
        demotionEnabled=bool(
            demotionEnabled if demotionEnabled is not None else Config.get(Config.PHASE_DEMOTION_ENABLED)
        ),
        version=_compute_version(levels)
    )


def load_phase_config(session: Session) -> PhaseConfig:
    """
    Load the phase ladder from the ledger store.

    Rows with an unknown reward mode are skipped and logged.

    Returns:
        PhaseConfig snapshot
    """
    from models.phase_level import PhaseLevel

    levels: Dict[int, PhaseLevelConfig] = {}

    for row in session.query(PhaseLevel).order_by(PhaseLevel.phase).all():
        try:
            levels[row.phase] = PhaseLevelConfig(
                phase=row.phase,
                name=row.name,
                commissionRate=Decimal(str(row.commissionRate or 0)),
                subscriptionDiscountRate=Decimal(str(row.subscriptionDiscountRate or 0)),
                affiliateSponsorRate=Decimal(str(row.affiliateSponsorRate or 0)),
                oneTimeCreditCents=int(row.oneTimeCreditCents or 0),
                freeProductValueCents=int(row.freeProductValueCents or 0),
                creditRewardMode=RewardMode(row.creditRewardMode or "one_time"),
                freeProductRewardMode=RewardMode(row.freeProductRewardMode or "monthly"),
                directReferralsRequired=int(row.directReferralsRequired or 0),
                teamSizeRequired=int(row.teamSizeRequired or 0)
            )
        except ValueError as e:
            logger.error(f"Invalid phase level configuration for phase {row.phase}: {e}")
            continue

    if not levels:
        logger.error("No phase levels configured, every commission rate resolves to 0")

    phaseConfig = build_phase_config(levels)
    logger.debug(f"Loaded phase config v{phaseConfig.version}: {len(levels)} levels")
    return phaseConfig
