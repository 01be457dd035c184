"""Database module."""

from .models import (
    ChapterRecord,
    ChapterRecordRead,
    ChapterSource,
    DownloadStatus,
    FollowEntry,
    FollowEntryRead,
    Job,
    JobOrigin,
    JobRead,
)
from .session import create_db_and_tables

__all__ = [
    "ChapterRecord",
    "ChapterRecordRead",
    "ChapterSource",
    "DownloadStatus",
    "FollowEntry",
    "FollowEntryRead",
    "Job",
    "JobOrigin",
    "JobRead",
    "create_db_and_tables",
]
