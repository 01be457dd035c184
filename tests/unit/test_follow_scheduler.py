"""Unit tests for the cron-driven follow scheduler."""

from collections.abc import AsyncGenerator
from typing import Any

import pytest

from core.config import Settings
from helpers import FakeMangaDexClient, title_url
from services.chapter_checker import ChapterChecker
from services.chapter_history import ChapterHistoryStore
from services.download_queue import DownloadQueue
from services.follow_list import FollowList
from services.follow_scheduler import CHECK_JOB_ID, FollowScheduler, InvalidScheduleError, parse_cron


@pytest.fixture
async def scheduler(
    session_factory: Any,
    fake_api: FakeMangaDexClient,
    history: ChapterHistoryStore,
    queue: DownloadQueue,
    test_settings: Settings,
) -> AsyncGenerator[FollowScheduler, None]:
    checker = ChapterChecker(session_factory, fake_api, history, queue, test_settings)  # type: ignore[arg-type]
    scheduler = FollowScheduler(checker, test_settings)
    yield scheduler
    scheduler.shutdown()


class TestParseCron:
    """Tests for parse_cron."""

    def test_valid_expression(self) -> None:
        assert parse_cron("*/15 * * * *") is not None

    @pytest.mark.parametrize("expression", ["", "every hour", "* * *", "99 * * * *"])
    def test_invalid_expression(self, expression: str) -> None:
        with pytest.raises(InvalidScheduleError):
            parse_cron(expression)

    def test_invalid_default_is_rejected(self, test_settings: Settings) -> None:
        test_settings.follow_cron = "not cron"

        with pytest.raises(InvalidScheduleError):
            FollowScheduler(None, test_settings)  # type: ignore[arg-type]


class TestFollowScheduler:
    """Tests for FollowScheduler."""

    @pytest.mark.asyncio
    async def test_disabled_schedule_has_no_job(self, scheduler: FollowScheduler) -> None:
        scheduler.start()

        status = scheduler.status()

        assert not status["enabled"]
        assert status["next_run_time"] is None
        assert scheduler.scheduler.get_job(CHECK_JOB_ID) is None

    @pytest.mark.asyncio
    async def test_enable_schedules_next_run(self, scheduler: FollowScheduler) -> None:
        scheduler.start()

        status = scheduler.update_schedule(enabled=True, cron="30 2 * * *")

        assert status["enabled"]
        assert status["cron"] == "30 2 * * *"
        assert status["next_run_time"] is not None
        job = scheduler.scheduler.get_job(CHECK_JOB_ID)
        assert job is not None
        assert job.next_run_time.hour == 2
        assert job.next_run_time.minute == 30

    @pytest.mark.asyncio
    async def test_invalid_update_keeps_previous_schedule(self, scheduler: FollowScheduler) -> None:
        scheduler.start()
        scheduler.update_schedule(enabled=True, cron="0 * * * *")

        with pytest.raises(InvalidScheduleError):
            scheduler.update_schedule(cron="61 * * * *")

        assert scheduler.cron == "0 * * * *"
        assert scheduler.scheduler.get_job(CHECK_JOB_ID) is not None

    @pytest.mark.asyncio
    async def test_disable_removes_job(self, scheduler: FollowScheduler) -> None:
        scheduler.start()
        scheduler.update_schedule(enabled=True)

        scheduler.update_schedule(enabled=False)

        assert scheduler.scheduler.get_job(CHECK_JOB_ID) is None

    @pytest.mark.asyncio
    async def test_run_now_records_last_run(
        self,
        scheduler: FollowScheduler,
        session_factory: Any,
        queue: DownloadQueue,
        fake_api: FakeMangaDexClient,
        test_settings: Settings,
    ) -> None:
        title_id = fake_api.add_title("Foo", count=2)
        await FollowList(session_factory, queue, test_settings).add(title_url(title_id))

        summary = await scheduler.run_now()

        assert summary.queued == 1
        last_run = scheduler.status()["last_run"]
        assert last_run is not None
        assert last_run["checked"] == 1
        assert last_run["queued"] == 1

    @pytest.mark.asyncio
    async def test_shutdown(self, scheduler: FollowScheduler) -> None:
        scheduler.start()
        assert scheduler.scheduler.running

        scheduler.shutdown()

        assert not scheduler.scheduler.running
        assert scheduler.status()["next_run_time"] is None
