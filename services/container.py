"""Wires the download services together for one application instance."""

import logging
from typing import Any

from core.config import Settings, get_settings
from db.models import Job
from services.chapter_checker import ChapterChecker
from services.chapter_history import ChapterHistoryStore
from services.download_engine import DownloadEngine, RescanHook
from services.download_queue import DownloadQueue
from services.follow_list import FollowList
from services.follow_scheduler import FollowScheduler
from services.mangadex_client import MangaDexClient
from services.process_runner import ProcessRunner
from services.rate_limiter import RateLimiter
from services.websocket_manager import WebSocketManager

logger = logging.getLogger(__name__)


async def log_rescan_request(job: Job) -> None:
    """Default rescan hook; a catalog integration replaces it."""
    logger.info("Library rescan requested for %s (%s)", job.destination_path or job.library_path, job.title)


class ServiceContainer:
    """Owns the long-lived services and their start/stop order."""

    def __init__(
        self,
        session_factory: Any,
        settings: Settings | None = None,
        api_client: MangaDexClient | None = None,
        runner: ProcessRunner | None = None,
        rescan_hook: RescanHook | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.rate_limiter = RateLimiter(
            per_second=self.settings.rate_limit_per_second,
            per_minute=self.settings.rate_limit_per_minute,
        )
        self.api_client = api_client or MangaDexClient(self.rate_limiter, self.settings)
        self.history = ChapterHistoryStore(session_factory)
        self.queue = DownloadQueue(session_factory, self.settings)
        self.runner = runner or ProcessRunner(self.settings)
        self.ws_manager = WebSocketManager(self.settings)
        self.engine = DownloadEngine(
            self.queue,
            self.history,
            self.runner,
            self.api_client,
            self.rate_limiter,
            self.settings,
            rescan_hook=rescan_hook or log_rescan_request,
        )
        self.engine.subscribe(self.ws_manager.publish_progress)
        self.checker = ChapterChecker(session_factory, self.api_client, self.history, self.queue, self.settings)
        self.follow_list = FollowList(session_factory, self.queue, self.settings)
        self.follow_scheduler = FollowScheduler(self.checker, self.settings)

    async def start(self) -> None:
        await self.engine.start()
        self.follow_scheduler.start()

    async def shutdown(self, timeout: float = 25.0) -> None:
        self.follow_scheduler.shutdown()
        await self.engine.shutdown(timeout=timeout)
        await self.ws_manager.close_all()
        await self.api_client.close()
