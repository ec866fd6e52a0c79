# background/engine_scheduler.py
"""
Engine Scheduler - triggers the periodic engine sweeps.
Uses APScheduler for task scheduling.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.db import get_db_session_ctx, get_session
from models.transaction import Transaction
from network_engine.repository import MemberRepository
from network_engine.services.commission_service import CommissionService
from network_engine.services.volume_service import VolumeService
from network_engine.services.qualification_service import TierQualificationService
from network_engine.exceptions import EngineError
from network_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class EngineScheduler:
    """
    Background scheduler for engine batch work.

    The sweeps are always invoked with an explicit period id; the scheduler
    is the only place that derives it from the clock.
    """

    def __init__(self, catchUpBatchSize: int = 100):
        self.isRunning = False
        self.catchUpBatchSize = catchUpBatchSize

        self.scheduler = AsyncIOScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job at a time
                'misfire_grace_time': 300  # 5 minutes grace period
            }
        )

        # Statistics
        self.stats = {
            "tasksExecuted": 0,
            "errors": 0,
            "lastError": None,
            "startedAt": None,
            "lastExecutedAt": None,
            "lastPeriodClosed": None,
            "transactionsCaughtUp": 0,
        }

    async def start(self):
        """
        Start scheduler with all jobs.

        Jobs configured:
        - Period close: 1st of month at 00:05 UTC, for the previous period
        - Commission catch-up: every 15 minutes
        """
        if self.isRunning:
            logger.warning("Engine Scheduler already running")
            return

        logger.info("Starting Engine Scheduler with APScheduler")

        self.isRunning = True
        self.stats["startedAt"] = datetime.now(timezone.utc)

        self.scheduler.add_job(
            func=self._safe_period_close_wrapper,
            trigger=CronTrigger(day=1, hour=0, minute=5),
            id='period_close',
            name='Period Close (1st, 00:05 UTC)',
            replace_existing=True
        )
        logger.info("✓ Job registered: Period Close (1st of month, 00:05 UTC)")

        self.scheduler.add_job(
            func=self._safe_catch_up_wrapper,
            trigger=IntervalTrigger(minutes=15),
            id='commission_catch_up',
            name='Commission Catch-up',
            replace_existing=True
        )
        logger.info("✓ Job registered: Commission Catch-up (every 15 minutes)")

        self.scheduler.start()

        logger.info(f"✅ Engine Scheduler started, active jobs: {len(self.scheduler.get_jobs())}")

    async def stop(self):
        """Stop scheduler gracefully."""
        if not self.isRunning:
            return

        logger.info("Stopping Engine Scheduler...")
        self.isRunning = False

        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        logger.info("✓ Engine Scheduler stopped")

    # ═══════════════════════════════════════════════════════════════════
    # SAFE WRAPPERS (error handling for APScheduler jobs)
    # ═══════════════════════════════════════════════════════════════════

    async def _safe_period_close_wrapper(self):
        """Safe wrapper for the monthly period close."""
        try:
            await self.closePeriod(timeMachine.previousPeriod)
        except Exception as e:
            logger.error(f"Error in period close job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    async def _safe_catch_up_wrapper(self):
        """Safe wrapper for the commission catch-up."""
        try:
            await self.catchUpCommissions()
        except Exception as e:
            logger.error(f"Error in commission catch-up job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    # ═══════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════

    async def closePeriod(self, periodId: str) -> Dict:
        """
        Run the period sweeps in order: team volume (snapshots the stats
        tier evaluation reads), then tier evaluation.
        """
        logger.info(f"Closing period {periodId}")

        with get_db_session_ctx() as session:
            volumeResult = await VolumeService(session).runTeamVolumeBonusSweep(periodId)

        with get_db_session_ctx() as session:
            tierResult = await TierQualificationService(
                session, sessionFactory=get_session
            ).runTierEvaluationSweep(periodId)

        self.stats["tasksExecuted"] += 1
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)
        self.stats["lastPeriodClosed"] = periodId

        return {"periodId": periodId, "volume": volumeResult, "tiers": tierResult}

    async def catchUpCommissions(self) -> int:
        """Process commissionable transactions still new or deferred."""
        with get_db_session_ctx() as session:
            pending = MemberRepository(session).listUnprocessedTransactionIds(
                Transaction.COMMISSIONABLE_STATUSES, limit=self.catchUpBatchSize
            )

        processed = 0
        for transactionId in pending:
            session = get_session()
            try:
                await CommissionService(session).processTransaction(transactionId)
                processed += 1
            except EngineError as e:
                logger.warning(f"Catch-up skipped transaction {transactionId}: {e}")
            except Exception as e:
                logger.error(f"Error in catch-up for transaction {transactionId}: {e}", exc_info=True)
                self.stats["errors"] += 1
            finally:
                session.close()

        if processed:
            self.stats["transactionsCaughtUp"] += processed
            logger.info(f"Commission catch-up processed {processed}/{len(pending)} transactions")

        return processed

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
            "isTestMode": timeMachine.isVirtual,
            "stats": self.stats,
            "jobs": jobs_info
        }


# Global scheduler instance (created by the host application)
scheduler: Optional[EngineScheduler] = None
