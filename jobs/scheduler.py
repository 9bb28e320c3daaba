"""
Background Job Scheduler

Runs the review-deadline sweep on an interval. Reads also finalize due jobs, so
the sweep only has to catch jobs nobody looks at.
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.review_deadline_sweeper import run_review_deadline_sweep

logger = logging.getLogger(__name__)


class ReviewScheduler:
    """AsyncIO scheduler owning the review-deadline sweep job"""

    SWEEP_JOB_ID = "review_deadline_sweep"

    def __init__(self, interval_minutes: Optional[int] = None):
        self.interval_minutes = interval_minutes or Config.REVIEW_SWEEP_INTERVAL_MINUTES

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 300
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        self.scheduler.add_job(
            run_review_deadline_sweep,
            trigger=IntervalTrigger(
                minutes=self.interval_minutes,
                start_date=datetime.now().replace(second=10, microsecond=0),
            ),
            id=self.SWEEP_JOB_ID,
            name="⏰ Review Deadline Sweep - Finalize Lapsed Review Windows",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True
        )
        logger.info(f"✅ Review deadline sweep scheduled every {self.interval_minutes} minutes")

    def start(self):
        """Register jobs and start the scheduler; must be called with a running event loop"""
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"📋 Active jobs: {[f'{job.name} ({job.id})' for job in self.scheduler.get_jobs()]}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Review scheduler stopped")


_global_scheduler = None


def get_scheduler_instance() -> ReviewScheduler:
    """Get the process-wide scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = ReviewScheduler()
    return _global_scheduler
