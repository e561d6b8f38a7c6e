import logging
from typing import Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import SessionLocal, session_scope
from services import run_alert_sweep


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class TaskQueue:
    """Fire-and-forget background jobs; outcomes are logged by a job listener."""

    def __init__(self, scheduler: BackgroundScheduler) -> None:
        self.scheduler = scheduler

    def submit(self, func: Callable, *args: object, name: str) -> None:
        job = self.scheduler.add_job(
            func,
            args=list(args),
            name=name,
            misfire_grace_time=300,
        )
        logger.info(f"task_submitted: name={name} job_id={job.id}")


class InlineTaskQueue:
    """Runs submitted jobs immediately in the caller's thread, logging failures."""

    def submit(self, func: Callable, *args: object, name: str) -> None:
        try:
            func(*args)
        except Exception:
            logger.exception(f"task_failed: name={name}")
            return
        logger.info(f"task_succeeded: name={name}")


def _log_job_outcome(event: JobExecutionEvent) -> None:
    if event.exception is not None:
        logger.error(
            f"task_failed: job_id={event.job_id} error={event.exception!r}"
        )
    else:
        logger.info(f"task_succeeded: job_id={event.job_id}")


class SchedulerManager:
    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        settings = get_settings()
        self.session_factory = session_factory or SessionLocal
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.scheduler.add_listener(
            _log_job_outcome, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR
        )
        self.tasks = TaskQueue(self.scheduler)

    def _run_alert_sweep(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        with session_scope(self.session_factory) as session:
            created = run_alert_sweep(session)
        logger.info(f"scheduler_run: source={source} alerts_created={created}")
        return created

    def start(self) -> None:
        trigger = CronTrigger(hour=6, minute=0)
        self.scheduler.add_job(
            self._run_alert_sweep,
            trigger,
            args=["daily_06:00"],
            id="alert_sweep_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 06:00 alert sweep")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
