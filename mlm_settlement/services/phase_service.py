# mlm_settlement/services/phase_service.py
"""
Phase progression engine - qualification, transitions and phase rewards.
"""
from dataclasses import dataclass, field
from typing import List, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.member import Member
from models.phase_record import PhaseRecord
from models.mlm.phase_history import PhaseHistory
from mlm_settlement.config.phases import PhaseConfig, PhaseLevelConfig, RewardMode, MAX_PHASE
from mlm_settlement.errors import ConfigurationMissing
from mlm_settlement.services.ledger_service import WalletLedger
from mlm_settlement.services.phase_reward_service import PhaseRewardService
from mlm_settlement.utils.chain_walker import ChainWalker
from mlm_settlement.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


@dataclass
class TeamMetrics:
    isActive: bool
    directActive: int
    teamActive: int


@dataclass
class PhaseEvaluation:
    """Outcome of one member evaluation."""
    memberId: str
    previousPhase: int
    newPhase: int
    highestPhaseAchieved: int
    skipped: Optional[str] = None
    rewardsGranted: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.previousPhase != self.newPhase


class PhaseService:
    """Service for MLM phase progression."""

    def __init__(self, session: Session):
        self.session = session
        self.walker = ChainWalker(session)
        self.wallet = WalletLedger(session)
        self.rewards = PhaseRewardService(session)

    # ═══════════════════════════════════════════════════════════════════════
    # RECORDS AND METRICS
    # ═══════════════════════════════════════════════════════════════════════

    def _recordQuery(self, memberId: str):
        return (
            self.session.query(PhaseRecord)
            .filter_by(memberID=memberId)
            .with_for_update()
            .populate_existing()
        )

    def lockRecord(self, memberId: str) -> PhaseRecord:
        """PhaseRecord under a row lock, created at phase 0 if missing."""
        record = self._recordQuery(memberId).first()
        if record:
            return record

        record = PhaseRecord()
        record.memberID = memberId
        record.phase = 0
        record.highestPhaseAchieved = 0
        record.manualPhaseOverride = False
        try:
            with self.session.begin_nested():
                self.session.add(record)
                self.session.flush()
        except IntegrityError:
            record = self._recordQuery(memberId).one()

        return record

    def getTeamMetrics(self, member: Member, phaseConfig: PhaseConfig) -> TeamMetrics:
        return TeamMetrics(
            isActive=self.walker.is_member_active(member.memberID),
            directActive=self.walker.count_active_direct(member),
            teamActive=self.walker.count_active_downline(member, phaseConfig.visibleLevels)
        )

    def qualifiedPhase(self, metrics: TeamMetrics, phaseConfig: PhaseConfig) -> int:
        """
        Highest phase whose thresholds, and those of every lower phase, are met.
        Inactive members qualify for phase 0 only.
        """
        if not metrics.isActive:
            return 0

        qualified = 0
        for phase in range(1, MAX_PHASE + 1):
            try:
                level = phaseConfig.level(phase)
            except ConfigurationMissing as e:
                logger.error(f"Configuration defect: {e}, phases above {qualified} unreachable")
                break

            if metrics.directActive < level.directReferralsRequired:
                break
            if metrics.teamActive < level.teamSizeRequired:
                break
            qualified = phase

        return qualified

    # ═══════════════════════════════════════════════════════════════════════
    # TRANSITIONS
    # ═══════════════════════════════════════════════════════════════════════

    def applyTransition(
            self,
            record: PhaseRecord,
            newPhase: int,
            method: str,
            phaseConfig: PhaseConfig,
            metrics: Optional[TeamMetrics] = None
    ) -> None:
        """Move a record to newPhase and write history. highestPhaseAchieved only grows."""
        previous = record.phase
        record.phase = newPhase
        record.highestPhaseAchieved = max(record.highestPhaseAchieved or 0, newPhase)
        record.ecommerceCommission = phaseConfig.commissionRate(newPhase)

        if newPhase >= 2 and record.phase2AchievedAt is None:
            record.phase2AchievedAt = timeMachine.now

        history = PhaseHistory()
        history.memberID = record.memberID
        history.previousPhase = previous
        history.newPhase = newPhase
        history.method = method
        if metrics:
            history.directActive = metrics.directActive
            history.teamActive = metrics.teamActive
        self.session.add(history)
        self.session.flush()

        logger.info(f"Member {record.memberID} phase {previous} -> {newPhase} ({method})")

    async def evaluateMember(self, memberId: str, phaseConfig: PhaseConfig) -> Optional[PhaseEvaluation]:
        """
        Re-evaluate one member's phase and grant due rewards.

        Forward moves are one step per evaluation. Reverse moves happen only
        when demotion is enabled and go straight to the qualified phase.
        A member under manual override is left untouched. Does not commit.

        Returns:
            PhaseEvaluation, or None if the member does not exist
        """
        member = self.session.query(Member).filter_by(memberID=memberId).first()
        if not member:
            logger.warning(f"Phase evaluation: member {memberId} not found")
            return None

        # Serializes concurrent evaluations of the same member
        record = self.lockRecord(memberId)
        previous = record.phase

        if record.manualPhaseOverride:
            logger.debug(f"Member {memberId} under manual phase override, skipping")
            return PhaseEvaluation(
                memberId=memberId,
                previousPhase=previous,
                newPhase=previous,
                highestPhaseAchieved=record.highestPhaseAchieved,
                skipped="manual_override"
            )

        metrics = self.getTeamMetrics(member, phaseConfig)
        qualified = self.qualifiedPhase(metrics, phaseConfig)

        if qualified > previous:
            self.applyTransition(record, previous + 1, "natural", phaseConfig, metrics)
        elif qualified < previous and phaseConfig.demotionEnabled:
            self.applyTransition(record, qualified, "demotion", phaseConfig, metrics)

        evaluation = PhaseEvaluation(
            memberId=memberId,
            previousPhase=previous,
            newPhase=record.phase,
            highestPhaseAchieved=record.highestPhaseAchieved
        )

        if record.phase >= 1 and metrics.isActive:
            evaluation.rewardsGranted = await self.grantPhaseRewards(record, phaseConfig)

        return evaluation

    # ═══════════════════════════════════════════════════════════════════════
    # REWARDS
    # ═══════════════════════════════════════════════════════════════════════

    async def grantPhaseRewards(self, record: PhaseRecord, phaseConfig: PhaseConfig) -> List[str]:
        """
        Grant the monthly rewards of the record's current phase and every
        one-time reward still owed for phases 1..current, lowest first.

        Runs in a savepoint: a failure is logged, rolled back, and retried
        on the next evaluation. Settlement continues either way.
        """
        granted = []
        phase = record.phase

        try:
            with self.session.begin_nested():
                # One-time components: guarded by phaseN_granted
                for owedPhase in range(1, phase + 1):
                    if record.isGranted(owedPhase):
                        continue

                    try:
                        owedLevel = phaseConfig.level(owedPhase)
                    except ConfigurationMissing as e:
                        logger.error(f"Configuration defect: {e}, phase {owedPhase} reward skipped for {record.memberID}")
                        continue

                    granted.extend(await self._grantOneTime(record.memberID, owedLevel))
                    record.markGranted(owedPhase)
                    self.session.flush()

                # Monthly components: one bucket per calendar month
                level = phaseConfig.levels.get(phase)
                if level is None:
                    logger.error(f"Configuration defect: phase {phase} not configured, no monthly reward for {record.memberID}")
                elif await self.rewards.grantMonthlyReward(record.memberID, level):
                    granted.append(f"monthly:{phase}:{timeMachine.currentMonth}")

        except Exception as e:
            logger.error(
                f"Phase {phase} rewards for {record.memberID} failed, will retry on next evaluation: {e}",
                exc_info=True
            )
            return []

        if granted:
            logger.info(f"Phase rewards granted to {record.memberID}: {', '.join(granted)}")
        return granted

    async def _grantOneTime(self, memberId: str, level: PhaseLevelConfig) -> List[str]:
        granted = []
        phase = level.phase

        if level.creditRewardMode == RewardMode.ONE_TIME and level.oneTimeCreditCents > 0:
            await self.wallet.applyDelta(
                memberId,
                level.oneTimeCreditCents,
                "phase_reward",
                idempotencyKey=f"phase_reward:{memberId}:{phase}",
                notes=f"Phase {phase} one-time reward"
            )
            granted.append(f"credit:{phase}")

        if level.freeProductRewardMode == RewardMode.ONE_TIME and level.freeProductValueCents > 0:
            await self.rewards.grantFreeProduct(memberId, phase)
            granted.append(f"free_product:{phase}")

        return granted

        try:
            with self.session.begin_nested():
                # Monthly components: one bucket per calendar month
                if await self.rewards.grantMonthlyReward(record.memberID, level):
                    granted.append(f"monthly:{phase}:{timeMachine.currentMonth}")

                # One-time components: guarded by phaseN_granted
                if not record.isGranted(phase):
                    if level.creditRewardMode == RewardMode.ONE_TIME and level.oneTimeCreditCents > 0:
                        await self.wallet.applyDelta(
                            record.memberID,
                            level.oneTimeCreditCents,
                            "phase_reward",
                            idempotencyKey=f"phase_reward:{record.memberID}:{phase}",
                            notes=f"Phase {phase} one-time reward"
                        )
                        granted.append(f"credit:{phase}")

                    if level.freeProductRewardMode == RewardMode.ONE_TIME and level.freeProductValueCents > 0:
                        await self.rewards.grantFreeProduct(record.memberID, phase)
                        granted.append(f"free_product:{phase}")

                    record.markGranted(phase)
                    self.session.flush()

        except Exception as e:
            logger.error(
                f"Phase {phase} reward for {record.memberID} failed, will retry on next evaluation: {e}",
                exc_info=True
            )
            return []

        if granted:
            logger.info(f"Phase rewards granted to {record.memberID}: {', '.join(granted)}")
        return granted

    # ═══════════════════════════════════════════════════════════════════════
    # FAN-OUT
    # ═══════════════════════════════════════════════════════════════════════

    async def reevaluateAffected(self, member: Member, phaseConfig: PhaseConfig) -> List[PhaseEvaluation]:
        """
        Re-evaluate a member and every ancestor whose counted team includes them.
        Does not commit.
        """
        evaluations = []

        targets = [member.memberID] + [
            ancestor.memberID
            for ancestor in self.walker.get_upline_chain(member, max_depth=phaseConfig.visibleLevels)
        ]

        for memberId in targets:
            evaluation = await self.evaluateMember(memberId, phaseConfig)
            if evaluation:
                evaluations.append(evaluation)

        return evaluations

    async def evaluateAll(self, phaseConfig: PhaseConfig) -> List[PhaseEvaluation]:
        """
        Re-evaluate every member. Commits per member; a failing member is
        logged and skipped.
        """
        changed = []
        memberIds = [row.memberID for row in self.session.query(Member.memberID).filter(
            Member.isDeactivated.is_(False)
        ).all()]

        for memberId in memberIds:
            try:
                evaluation = await self.evaluateMember(memberId, phaseConfig)
                self.session.commit()
                if evaluation and evaluation.changed:
                    changed.append(evaluation)
            except Exception as e:
                self.session.rollback()
                logger.error(f"Phase evaluation for {memberId} failed: {e}", exc_info=True)

        logger.info(f"Phase sweep: {len(memberIds)} evaluated, {len(changed)} changed")
        return changed
