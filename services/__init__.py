"""Services module."""

from .chapter_checker import ChapterChecker, ChapterCheckResult, ChapterCheckSummary
from .chapter_history import ChapterHistoryStore, ReconcileResult
from .container import ServiceContainer
from .download_engine import ActiveJobRegistry, DownloadEngine, ProgressUpdate
from .download_queue import (
    DownloadQueue,
    DownloadQueueError,
    DuplicateJobError,
    IllegalTransitionError,
    InvalidDownloadRequestError,
    JobNotFoundError,
)
from .follow_list import DuplicateFollowError, FollowList
from .follow_scheduler import FollowScheduler, InvalidScheduleError
from .mangadex_client import (
    MangaDexClient,
    RemoteApiError,
    RemoteTransientError,
    TitleNotFoundError,
)
from .process_runner import ProcessAlreadyRunningError, ProcessRunner
from .rate_limiter import RateLimiter
from .websocket_manager import WebSocketManager

__all__ = [
    # Queue
    "DownloadQueue",
    "DownloadQueueError",
    "DuplicateJobError",
    "IllegalTransitionError",
    "InvalidDownloadRequestError",
    "JobNotFoundError",
    # Engine
    "ActiveJobRegistry",
    "DownloadEngine",
    "ProgressUpdate",
    # Chapter tracking
    "ChapterHistoryStore",
    "ReconcileResult",
    "ChapterChecker",
    "ChapterCheckResult",
    "ChapterCheckSummary",
    # Follow list
    "DuplicateFollowError",
    "FollowList",
    "FollowScheduler",
    "InvalidScheduleError",
    # Remote API
    "MangaDexClient",
    "RemoteApiError",
    "RemoteTransientError",
    "TitleNotFoundError",
    # Subprocess / rate limiting
    "ProcessAlreadyRunningError",
    "ProcessRunner",
    "RateLimiter",
    # WebSocketManager
    "WebSocketManager",
    # Wiring
    "ServiceContainer",
]
