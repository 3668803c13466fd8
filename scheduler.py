import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from config import get_settings
from database import run_with_retries
from errors import FinanceError
from services import PeriodicProcessor, SplitwiseService
from splitwise import SplitwiseClient


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, splitwise: Optional[SplitwiseClient] = None) -> None:
        settings = get_settings()
        self.settings = settings
        self.splitwise = splitwise or SplitwiseClient(settings.splitwise)
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_processor(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=processor source={source}")
        try:
            result = run_with_retries(
                lambda session: PeriodicProcessor(session, self.splitwise).run_batch()
            )
        except (FinanceError, SQLAlchemyError):
            logger.exception(f"scheduler_failed: job=processor source={source}")
            return
        logger.info(
            f"scheduler_run: job=processor source={source} "
            f"processed={result.processed} occurrences={result.occurrences_created}"
        )

    def _run_splitwise_import(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=splitwise source={source}")
        try:
            result = run_with_retries(
                lambda session: SplitwiseService(
                    session, self.splitwise
                ).import_from_splitwise()
            )
        except (FinanceError, SQLAlchemyError):
            logger.exception(f"scheduler_failed: job=splitwise source={source}")
            return
        logger.info(
            f"scheduler_run: job=splitwise source={source} "
            f"fetched={result.fetched} stored={result.stored}"
        )

    def start(self) -> None:
        self._run_processor("startup")

        self.scheduler.add_job(
            self._run_processor,
            IntervalTrigger(hours=self.settings.processor_interval_hours),
            args=["interval"],
            id="periodic_processor",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        if self.splitwise.enabled:
            self._run_splitwise_import("startup")
            self.scheduler.add_job(
                self._run_splitwise_import,
                IntervalTrigger(hours=self.settings.splitwise_interval_hours),
                args=["interval"],
                id="splitwise_import",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        self.scheduler.start()
        logger.info(
            f"Scheduler started: processor every {self.settings.processor_interval_hours}h, "
            f"splitwise {'enabled' if self.splitwise.enabled else 'disabled'}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            # Let a running batch finish before returning.
            self.scheduler.shutdown(wait=True)
            logger.info("Scheduler stopped")
