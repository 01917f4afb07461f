import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import Settings, get_settings
from recurrence import RecurrenceProcessor, RunReport

logger = logging.getLogger(__name__)

JOB_ID = "recurring_daily"


class SchedulerManager:
    def __init__(
        self,
        processor: RecurrenceProcessor,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.processor = processor
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> RunReport:
        logger.info(f"scheduler_run: source={source}")
        report = self.processor.run()
        logger.info(
            f"scheduler_run: source={source} fired={report.fired} "
            f"failed={report.failed}"
        )
        return report

    def start(self) -> None:
        if self.settings.run_on_startup:
            self._run_job("startup")

        trigger = CronTrigger(
            hour=self.settings.run_hour,
            minute=self.settings.run_minute,
            timezone=self.settings.timezone,
        )
        label = f"daily_{self.settings.run_hour:02d}:{self.settings.run_minute:02d}"
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[label],
            id=JOB_ID,
            replace_existing=True,
            misfire_grace_time=3600,
            coalesce=True,
            max_instances=1,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with {label} ({self.settings.timezone})")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Scheduler stopped")
