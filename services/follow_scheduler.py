"""Cron-driven trigger for the chapter checker."""

import logging
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.config import Settings, get_settings
from services.chapter_checker import ChapterChecker, ChapterCheckSummary

logger = logging.getLogger(__name__)

CHECK_JOB_ID = "chapter_check"


class InvalidScheduleError(ValueError):
    """The cron expression could not be parsed."""
    pass


def parse_cron(expression: str) -> CronTrigger:
    """Build a trigger from a five-field crontab expression."""
    try:
        return CronTrigger.from_crontab(expression)
    except ValueError as e:
        raise InvalidScheduleError(f"Invalid cron expression {expression!r}: {e}") from e


class FollowScheduler:
    """Runs :meth:`ChapterChecker.check_and_queue_new_chapters` on a cron schedule."""

    def __init__(self, checker: ChapterChecker, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.checker = checker
        self.enabled = self.settings.follow_enabled
        self.cron = self.settings.follow_cron
        parse_cron(self.cron)
        self.scheduler = AsyncIOScheduler()
        self.last_summary: ChapterCheckSummary | None = None

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
        self._apply()
        logger.info("Follow scheduler started (enabled=%s, cron=%s)", self.enabled, self.cron)

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def _apply(self) -> None:
        if self.scheduler.get_job(CHECK_JOB_ID):
            self.scheduler.remove_job(CHECK_JOB_ID)
        if not self.enabled:
            return
        self.scheduler.add_job(
            self.run_now,
            trigger=parse_cron(self.cron),
            id=CHECK_JOB_ID,
            name="Check followed titles for new chapters",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def update_schedule(self, enabled: bool | None = None, cron: str | None = None) -> dict[str, Any]:
        """
        Change the schedule at runtime.

        Raises:
            InvalidScheduleError: ``cron`` is not a valid crontab expression.
        """
        if cron is not None:
            parse_cron(cron)
            self.cron = cron
        if enabled is not None:
            self.enabled = enabled
        if self.scheduler.running:
            self._apply()
        logger.info("Follow schedule updated (enabled=%s, cron=%s)", self.enabled, self.cron)
        return self.status()

    async def run_now(self) -> ChapterCheckSummary:
        summary = await self.checker.check_and_queue_new_chapters()
        self.last_summary = summary
        return summary

    def status(self) -> dict[str, Any]:
        job = self.scheduler.get_job(CHECK_JOB_ID) if self.scheduler.running else None
        next_run = getattr(job, "next_run_time", None) if job else None
        return {
            "enabled": self.enabled,
            "cron": self.cron,
            "next_run_time": next_run.isoformat() if next_run else None,
            "last_run": (
                {
                    "checked": self.last_summary.checked,
                    "needs_download": self.last_summary.needs_download,
                    "queued": self.last_summary.queued,
                    "errors": self.last_summary.errors,
                    "duration_ms": self.last_summary.duration_ms,
                }
                if self.last_summary
                else None
            ),
        }
