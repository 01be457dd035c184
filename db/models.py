"""Database models using SQLModel."""

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive values as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DownloadStatus(str, Enum):
    """Download job execution status."""

    PENDING = "PENDING"
    DOWNLOADING = "DOWNLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, target: "DownloadStatus") -> bool:
        """Check whether the state machine allows moving to ``target``."""
        return target in _TRANSITIONS[self]


TERMINAL_STATUSES = frozenset({DownloadStatus.COMPLETED, DownloadStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({DownloadStatus.PENDING, DownloadStatus.DOWNLOADING})

# DOWNLOADING -> PENDING exists only for crash recovery at startup.
_TRANSITIONS: dict[DownloadStatus, frozenset[DownloadStatus]] = {
    DownloadStatus.PENDING: frozenset({DownloadStatus.DOWNLOADING, DownloadStatus.CANCELLED}),
    DownloadStatus.DOWNLOADING: frozenset(
        {
            DownloadStatus.COMPLETED,
            DownloadStatus.FAILED,
            DownloadStatus.CANCELLED,
            DownloadStatus.PENDING,
        }
    ),
    DownloadStatus.FAILED: frozenset({DownloadStatus.PENDING, DownloadStatus.CANCELLED}),
    DownloadStatus.COMPLETED: frozenset(),
    DownloadStatus.CANCELLED: frozenset(),
}


class JobOrigin(str, Enum):
    """Who created a download job."""

    MANUAL = "MANUAL"
    FOLLOW_LIST = "FOLLOW_LIST"
    CHAPTER_CHECK = "CHAPTER_CHECK"


class ChapterSource(str, Enum):
    """How a chapter history row came to exist."""

    DOWNLOAD = "download"
    ARCHIVE_SCAN = "archive-scan"
    LEGACY_IMPORT = "legacy-import"


class JobBase(SQLModel):
    """Base job model with common fields."""

    source_url: str = Field(index=True, description="Remote title URL handed to the download tool")
    title: str = Field(default="", description="Display title")
    title_id: str = Field(index=True, description="Stable remote title identifier")
    library_path: str | None = Field(default=None, index=True, description="Target library root")
    language: str = Field(default="en")
    priority: int = Field(default=5, ge=1, le=10, index=True, description="1 = highest")
    origin: JobOrigin = Field(default=JobOrigin.MANUAL)


class Job(JobBase, table=True):
    """Download job database table model."""

    __tablename__ = "download_queue"
    __table_args__ = (
        sa.CheckConstraint("retry_count <= max_retries", name="ck_download_queue_retry_ceiling"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    status: DownloadStatus = Field(default=DownloadStatus.PENDING, index=True)
    destination_path: str | None = Field(default=None, description="Directory the archives land in")
    progress_percent: int = Field(default=0, ge=0, le=100)
    current_chapter: int = Field(default=0)
    total_chapters: int = Field(default=0)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    error_message: str | None = Field(default=None)
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def can_retry(self) -> bool:
        return self.status == DownloadStatus.FAILED and self.retry_count < self.max_retries


class JobRead(JobBase):
    """Schema for reading a job."""

    id: UUID
    status: DownloadStatus
    destination_path: str | None
    progress_percent: int
    current_chapter: int
    total_chapters: int
    retry_count: int
    max_retries: int
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ChapterRecord(SQLModel, table=True):
    """
    One materialized chapter archive.

    Unique per (title, chapter number, language, scanlation group) so two
    groups releasing the same chapter are tracked independently. The group is
    stored as an empty string when unknown; NULLs would compare distinct and
    defeat the constraint.
    """

    __tablename__ = "chapter_history"
    __table_args__ = (
        sa.UniqueConstraint(
            "title_id",
            "chapter_number",
            "language",
            "scanlation_group",
            name="uq_chapter_history_key",
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID | None = Field(default=None, index=True, description="Job that materialized the archive")
    title_id: str = Field(index=True)
    chapter_url: str | None = Field(default=None, index=True, description="Canonical chapter URL")
    chapter_id: str | None = Field(default=None, description="Remote chapter identifier")
    chapter_number: float
    volume: str | None = Field(default=None)
    language: str = Field(default="en")
    scanlation_group: str = Field(default="")
    filename: str | None = Field(default=None)
    source: ChapterSource = Field(default=ChapterSource.DOWNLOAD)
    downloaded_at: datetime = Field(default_factory=utcnow)


class ChapterRecordRead(SQLModel):
    """Schema for reading a chapter history row."""

    id: UUID
    job_id: UUID | None
    title_id: str
    chapter_url: str | None
    chapter_id: str | None
    chapter_number: float
    volume: str | None
    language: str
    scanlation_group: str
    filename: str | None
    source: ChapterSource
    downloaded_at: datetime


class FollowEntryBase(SQLModel):
    """Base follow list model."""

    source_url: str = Field(unique=True, index=True)
    title: str = Field(default="")
    title_id: str = Field(index=True)
    library_path: str | None = Field(default=None)
    language: str = Field(default="en")
    enabled: bool = Field(default=True)


class FollowEntry(FollowEntryBase, table=True):
    """A followed title checked periodically for new chapters."""

    __tablename__ = "follow_entries"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    last_remote_count: int | None = Field(default=None)
    last_checked_at: datetime | None = Field(default=None)
    last_error: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FollowEntryRead(FollowEntryBase):
    """Schema for reading a follow entry."""

    id: UUID
    last_remote_count: int | None
    last_checked_at: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime
