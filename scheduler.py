import logging
from datetime import date
from typing import Callable, ContextManager, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from services import RecurringRuleService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Posts due auto-pay occurrences in the background.

    One tick runs at startup, then daily at 03:15 local time, with an hourly
    tick as a safety net for a missed daily run.
    """

    def __init__(
        self, session_factory: Callable[[], ContextManager[Session]] = session_scope
    ) -> None:
        self.settings = get_settings()
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def tick(self, source: str = "manual", today: Optional[date] = None) -> int:
        with self.session_factory() as session:
            service = RecurringRuleService(
                session,
                self.settings.fallbacks,
                self.settings.upcoming_window_days,
            )
            count = service.catch_up_all(today)
        logger.info(f"recurring_tick: source={source} occurrences_posted={count}")
        return count

    def start(self) -> None:
        self.tick("startup")

        jobs = (
            ("recurring_daily", CronTrigger(hour=3, minute=15), "daily_03:15", 3600),
            ("recurring_hourly", IntervalTrigger(hours=1), "hourly_safety_net", 300),
        )
        for job_id, trigger, source, grace in jobs:
            self.scheduler.add_job(
                self.tick,
                trigger,
                args=[source],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=grace,
                coalesce=True,
            )

        self.scheduler.start()
        logger.info("Recurring scheduler started")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Recurring scheduler stopped")
