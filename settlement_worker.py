# settlement_worker.py
"""
Settlement worker - main entry point.
Boots configuration, database and listeners, then runs the settlement
sweeps until stopped.
"""
import asyncio
import logging
import signal
import sys

from config import Config
from core.db import setup_database, dispose_engine
from models import register_all_listeners

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('settlement.log')
    ]
)

logger = logging.getLogger(__name__)


async def initialize_worker():
    """
    Initialize the settlement worker.

    Returns:
        SettlementScheduler: Started scheduler
    """
    try:
        logger.info("=" * 60)
        logger.info("SETTLEMENT WORKER INITIALIZATION")
        logger.info("=" * 60)

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 1: Load configuration from .env
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("📋 Loading configuration from .env...")
        Config.initialize_from_env()
        logger.info("✓ Configuration loaded")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 2: Validate critical configuration
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🔍 Validating critical configuration keys...")
        await Config.validate_critical_keys()
        logger.info("✓ Configuration validated")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 3: Setup database and balance listeners
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("💾 Setting up database...")
        setup_database()
        register_all_listeners()
        logger.info("✓ Database ready")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 4: Notifications and event handlers
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("📧 Initializing notifications...")
        from notifications import notificationService
        notificationService.initialize()

        from mlm_settlement.events.setup import setup_settlement_event_handlers
        setup_settlement_event_handlers()
        logger.info("✓ Settlement event handlers registered")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 5: Start scheduler
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🚀 Starting settlement scheduler...")
        import background.settlement_scheduler as scheduler_module
        scheduler_module.scheduler = scheduler_module.SettlementScheduler()
        await scheduler_module.scheduler.start()

        Config.set(Config.SYSTEM_READY, True)

        logger.info("=" * 60)
        logger.info("✅ INITIALIZATION COMPLETE")
        logger.info("=" * 60)

        return scheduler_module.scheduler

    except Exception as e:
        logger.critical(f"❌ Initialization failed: {e}", exc_info=True)
        raise


async def main():
    """Main entry point."""
    scheduler = None
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        scheduler = await initialize_worker()
        logger.info("🔄 Settlement worker running")
        await stop_event.wait()
        logger.info("⚠️ Shutdown signal received")

    except Exception as e:
        logger.critical(f"❌ Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if scheduler:
            await scheduler.stop()
        from mlm_settlement.events.setup import teardown_settlement_event_handlers
        teardown_settlement_event_handlers()
        dispose_engine()
        logger.info("👋 Worker shutdown complete")


if __name__ == '__main__':
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker stopped")
