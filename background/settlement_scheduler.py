# background/settlement_scheduler.py
"""
Settlement Scheduler - periodic sweeps around the settlement engine.
Uses APScheduler; each job is a short unit of work in its own session.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.db import get_db_session_ctx
from mlm_settlement.config.phases import load_phase_config
from mlm_settlement.events.event_bus import eventBus, SettlementEvents
from mlm_settlement.services.payout_service import PayoutService
from mlm_settlement.services.phase_reward_service import PhaseRewardService
from mlm_settlement.services.phase_service import PhaseService
from mlm_settlement.services.subscription_service import SubscriptionService
from mlm_settlement.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class SettlementScheduler:
    """
    Background scheduler for settlement sweeps.

    Jobs:
    - Auto-payout sweep: every hour
    - Subscription expiry: every 15 minutes
    - Phase re-evaluation: every day at 00:00 UTC
    - Monthly phase rewards: 1st of month at 00:05 UTC
    """

    def __init__(self, session_ctx: Callable = get_db_session_ctx, payout_providers: Optional[dict] = None):
        """
        Initialize scheduler.

        Args:
            session_ctx: Context manager factory yielding a database session
            payout_providers: Optional provider overrides for PayoutService
        """
        self.session_ctx = session_ctx
        self.payout_providers = payout_providers
        self.isRunning = False

        self.scheduler = AsyncIOScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job at a time
                'misfire_grace_time': 300  # 5 minutes grace period
            }
        )

        self.stats = {
            "tasksExecuted": 0,
            "errors": 0,
            "lastError": None,
            "startedAt": None,
            "lastExecutedAt": None,
            "payoutsProcessed": 0,
            "subscriptionsExpired": 0,
            "phaseChanges": 0,
            "rewardsGranted": 0
        }

    async def start(self):
        """Start scheduler with all jobs."""
        if self.isRunning:
            logger.warning("Settlement Scheduler already running")
            return

        logger.info("=" * 60)
        logger.info("Starting Settlement Scheduler with APScheduler")
        logger.info("=" * 60)

        self.isRunning = True
        self.stats["startedAt"] = datetime.now(timezone.utc)

        # ═══════════════════════════════════════════════════════════════
        # JOB 1: Auto-payout sweep (every hour)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_auto_payout_wrapper,
            trigger=IntervalTrigger(hours=1),
            id='auto_payouts',
            name='Auto-payout Sweep',
            replace_existing=True
        )
        logger.info("✓ Job registered: Auto-payout Sweep (every hour)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 2: Subscription expiry (every 15 minutes)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_subscription_expiry_wrapper,
            trigger=IntervalTrigger(minutes=15),
            id='subscription_expiry',
            name='Subscription Expiry',
            replace_existing=True
        )
        logger.info("✓ Job registered: Subscription Expiry (every 15 minutes)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 3: Phase re-evaluation (every day at 00:00 UTC)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_phase_sweep_wrapper,
            trigger=CronTrigger(hour=0, minute=0),
            id='phase_sweep',
            name='Phase Re-evaluation (00:00 UTC)',
            replace_existing=True
        )
        logger.info("✓ Job registered: Phase Re-evaluation (00:00 UTC)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 4: Monthly rewards (1st of month at 00:05 UTC)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_monthly_rewards_wrapper,
            trigger=CronTrigger(day=1, hour=0, minute=5),
            id='monthly_rewards',
            name='Monthly Phase Rewards',
            replace_existing=True
        )
        logger.info("✓ Job registered: Monthly Phase Rewards (1st, 00:05 UTC)")

        self.scheduler.start()

        logger.info("=" * 60)
        logger.info("✅ Settlement Scheduler started successfully")
        logger.info(f"Active jobs: {len(self.scheduler.get_jobs())}")
        logger.info("=" * 60)

    async def stop(self):
        """Stop scheduler gracefully."""
        if not self.isRunning:
            return

        logger.info("Stopping Settlement Scheduler...")
        self.isRunning = False

        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        logger.info("✓ Settlement Scheduler stopped")

    # ═══════════════════════════════════════════════════════════════════
    # SAFE WRAPPERS (error handling for APScheduler jobs)
    # ═══════════════════════════════════════════════════════════════════

    def _record_error(self, job: str, e: Exception):
        logger.error(f"Error in {job} job: {e}", exc_info=True)
        self.stats["errors"] += 1
        self.stats["lastError"] = str(e)

    def _record_success(self):
        self.stats["tasksExecuted"] += 1
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)

    async def _safe_auto_payout_wrapper(self):
        """Safe wrapper for the auto-payout sweep."""
        try:
            await self.runAutoPayouts()
        except Exception as e:
            self._record_error("auto-payout", e)

    async def _safe_subscription_expiry_wrapper(self):
        """Safe wrapper for subscription expiry."""
        try:
            await self.runSubscriptionExpiry()
        except Exception as e:
            self._record_error("subscription expiry", e)

    async def _safe_phase_sweep_wrapper(self):
        """Safe wrapper for the phase sweep."""
        try:
            await self.runPhaseSweep()
        except Exception as e:
            self._record_error("phase sweep", e)

    async def _safe_monthly_rewards_wrapper(self):
        """Safe wrapper for monthly rewards."""
        try:
            await self.runMonthlyRewards()
        except Exception as e:
            self._record_error("monthly rewards", e)

    # ═══════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════

    async def _announcePhaseChanges(self, evaluations) -> None:
        """Emit PHASE_CHANGED for committed evaluations."""
        for evaluation in evaluations:
            await eventBus.emit(SettlementEvents.PHASE_CHANGED, {
                "memberId": evaluation.memberId,
                "previousPhase": evaluation.previousPhase,
                "newPhase": evaluation.newPhase,
                "rewardsGranted": list(evaluation.rewardsGranted),
            })
        self.stats["phaseChanges"] += len(evaluations)

    async def runAutoPayouts(self) -> int:
        """Pay out every eligible member."""
        with self.session_ctx() as session:
            service = PayoutService(session, providers=self.payout_providers)
            results = await service.sweepAutoPayouts()

        self.stats["payoutsProcessed"] += len(results)
        self._record_success()
        return len(results)

    async def runSubscriptionExpiry(self) -> int:
        """Close subscriptions whose period has ended."""
        with self.session_ctx() as session:
            phaseConfig = load_phase_config(session)
            result = await SubscriptionService(session).expireSubscriptions(phaseConfig)

        await self._announcePhaseChanges(result.phaseChanges)

        self.stats["subscriptionsExpired"] += len(result.expired)
        self._record_success()
        return len(result.expired)

    async def runPhaseSweep(self) -> int:
        """Re-evaluate every member's phase and announce the changes."""
        logger.info(f"Executing phase sweep for {timeMachine.now.date()}")

        with self.session_ctx() as session:
            phaseConfig = load_phase_config(session)
            changed = await PhaseService(session).evaluateAll(phaseConfig)

        await self._announcePhaseChanges(changed)

        self._record_success()
        return len(changed)

    async def runMonthlyRewards(self) -> int:
        """Grant this month's phase rewards."""
        logger.info(f"Executing monthly rewards for {timeMachine.currentMonth}")

        with self.session_ctx() as session:
            phaseConfig = load_phase_config(session)
            granted = await PhaseRewardService(session).sweepMonthlyRewards(phaseConfig)

        self.stats["rewardsGranted"] += granted
        self._record_success()
        return granted

    def getStatus(self) -> dict:
        """Get scheduler status."""
        jobs_info = []
        if self.scheduler.running:
            for job in self.scheduler.get_jobs():
                jobs_info.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None
                })

        return {
            "isRunning": self.isRunning,
            "schedulerRunning": self.scheduler.running,
            "currentTime": timeMachine.now.isoformat(),
            "isTestMode": timeMachine.isTestMode,
            "stats": self.stats,
            "jobs": jobs_info
        }


# Global scheduler instance (created in settlement_worker.py)
scheduler: Optional[SettlementScheduler] = None
