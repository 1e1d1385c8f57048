"""In-process backup scheduling with APScheduler, as an alternative to cron."""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

logger = structlog.get_logger(__name__)

BACKUP_JOB_ID = "scheduled_backup"


def parse_cron_expression(cron_expression: str) -> CronTrigger:
    """Build a trigger from a 5-field expression (minute hour day month day_of_week)."""
    cron_parts = cron_expression.split()
    if len(cron_parts) != 5:
        raise ValueError(f"Invalid cron expression: {cron_expression}")

    return CronTrigger(
        minute=cron_parts[0],
        hour=cron_parts[1],
        day=cron_parts[2],
        month=cron_parts[3],
        day_of_week=cron_parts[4]
    )


class BackupScheduler:
    """Runs the backup job in the foreground on a cron schedule.

    Only one instance of the job runs at a time; a run still in progress
    when the next fire time arrives causes that fire time to be skipped.
    """

    def __init__(self, scheduler: Optional[BlockingScheduler] = None):
        self.scheduler = scheduler or BlockingScheduler()
        self.job_info: Optional[Dict[str, Any]] = None

    def add_backup_job(self, func: Callable, cron_expression: str, description: Optional[str] = None):
        """Register ``func`` under the backup job id, replacing any earlier one."""
        trigger = parse_cron_expression(cron_expression)

        if self.job_info is not None:
            logger.warning("Backup job already exists, replacing", job_id=BACKUP_JOB_ID)
            self.scheduler.remove_job(BACKUP_JOB_ID)

        job = self.scheduler.add_job(
            func=self._guarded(func),
            trigger=trigger,
            id=BACKUP_JOB_ID,
            name=description or BACKUP_JOB_ID,
            max_instances=1,
            coalesce=True,
        )

        self.job_info = {
            "job": job,
            "expression": cron_expression,
            "description": description,
            "added_at": datetime.now()
        }

        logger.info("Added backup job", job_id=BACKUP_JOB_ID, cron=cron_expression, description=description)
        return job

    @staticmethod
    def _guarded(func: Callable) -> Callable:
        def run():
            logger.info("Scheduled backup starting")
            exit_code = func()
            if exit_code:
                logger.error("Scheduled backup failed", exit_code=exit_code)
            else:
                logger.info("Scheduled backup finished")
            return exit_code
        return run

    def get_job_status(self) -> Optional[Dict[str, Any]]:
        if self.job_info is None:
            return None
        scheduler_job = self.scheduler.get_job(BACKUP_JOB_ID)
        if scheduler_job is None:
            return None
        next_run = getattr(scheduler_job, "next_run_time", None)
        return {
            "job_id": BACKUP_JOB_ID,
            "name": scheduler_job.name,
            "expression": self.job_info["expression"],
            "next_run": next_run.isoformat() if next_run else None,
            "added_at": self.job_info["added_at"].isoformat(),
        }

    def start(self):
        """Block until interrupted."""
        logger.info("Backup scheduler started", job=self.get_job_status())
        try:
            self.scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            logger.info("Backup scheduler stopping")
        finally:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=True)


__all__ = ["BACKUP_JOB_ID", "BackupScheduler", "parse_cron_expression"]
