"""Runs the external download tool as a subprocess and streams its progress."""

import asyncio
import inspect
import json
import logging
import re
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import UUID

from core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# gallery-dl: " 45%   1.20MB   350.00kB/s"
PERCENT_RE = re.compile(r"(\d+)%\s+[\d.]+\s*[KMG]?i?B\s+[\d.]+\s*[KMG]?i?B/s", re.IGNORECASE)
# gallery-dl prints finished files as "✔ path" (or "* path" without unicode) and skipped ones as "# path"
FILE_LINE_RE = re.compile(r"^\s*(?:✔|\*|#)\s+(?P<path>.+)$")

MAX_CAPTURE = 50_000

CONFIG_FILE_NAME = "gallery-dl.json"


class ProcessRunnerError(Exception):
    """Base exception for process runner operations."""
    pass


class ProcessAlreadyRunningError(ProcessRunnerError):
    """A subprocess is already live for this job."""
    pass


@dataclass
class ProgressEvent:
    """Progress signal derived from one output line of the download tool."""

    kind: str
    percent: int | None = None
    current: int | None = None
    total: int | None = None
    filename: str | None = None
    message: str | None = None


@dataclass
class ProcessResult:
    """Outcome of one download tool invocation."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    cancelled: bool = False
    error_message: str | None = None

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.cancelled


ProgressCallback = Callable[[ProgressEvent], Awaitable[None] | None]


def build_downloader_config() -> dict[str, Any]:
    """
    gallery-dl options for one-archive-per-chapter output.

    Pages of chapter N land in ``c00N/`` under the ``-d`` directory and the
    zip post-processor packs them into ``c00N.cbz`` without keeping the loose
    images.
    """
    return {
        "extractor": {
            "base-directory": "",
            "directory": ["c{chapter:>03}{chapter_minor}"],
            "filename": "{page:>03}.{extension}",
        },
        "postprocessors": [
            {
                "name": "zip",
                "extension": "cbz",
                "compression": "store",
                "keep-files": False,
            }
        ],
    }


def _safe_int(val: Any) -> int | None:
    """Safely convert value to int, return None on failure."""
    if val is None:
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


def parse_progress_line(line: str) -> ProgressEvent | None:
    """
    Translate one line of tool output into a progress event.

    Understands NDJSON events (``chapter_start``, ``progress``,
    ``chapter_complete``, ``file``) and gallery-dl's plain text output.

    Returns:
        ProgressEvent, or None for lines that carry no progress.
    """
    line = line.strip()
    if not line:
        return None

    if line.startswith("{"):
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("NDJSON parse error (ignoring line): %s | line=%r", e, line[:200])
            return None
        if not isinstance(data, dict):
            return None
        kind = data.get("event") or data.get("type") or "unknown"
        percent = _safe_int(data.get("percent"))
        if percent is not None:
            percent = max(0, min(100, percent))
        return ProgressEvent(
            kind=str(kind),
            percent=percent,
            current=_safe_int(data.get("current")),
            total=_safe_int(data.get("total")),
            filename=data.get("filename") or data.get("path"),
            message=data.get("message"),
        )

    m = PERCENT_RE.search(line)
    if m:
        return ProgressEvent(kind="progress", percent=min(100, int(m.group(1))))

    m = FILE_LINE_RE.match(line)
    if m:
        return ProgressEvent(kind="file", filename=m.group("path").strip())

    return None


class ProcessRunner:
    """
    Owns the OS processes of running downloads.

    At most one live subprocess exists per job id. ``cancel`` and ``kill``
    both terminate with SIGKILL; the tool holds no state worth a graceful
    shutdown.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._processes: dict[UUID, asyncio.subprocess.Process] = {}
        self._cancelled: set[UUID] = set()

    def build_command(self, url: str, destination: Path, language: str = "en") -> list[str]:
        """
        Build the download tool command line.

        Args:
            url: Title or chapter URL.
            destination: Directory the tool writes into.
            language: Translated language filter.

        Returns:
            Argument list for ``create_subprocess_exec``.
        """
        return [
            *self.settings.downloader_argv,
            url,
            "--config",
            str(self.config_path()),
            "-d",
            str(destination),
            "-o",
            f"lang={language}",
        ]

    def config_path(self) -> Path:
        """
        Path of the gallery-dl config passed with ``--config``.

        A configured ``downloader_config_path`` is used as is. Otherwise
        ``build_downloader_config()`` is written to the data directory the
        first time it is needed.
        """
        if self.settings.downloader_config_path is not None:
            return self.settings.downloader_config_path

        path = self.settings.data_dir / CONFIG_FILE_NAME
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(build_downloader_config(), indent=2), encoding="utf-8")
            logger.info("Wrote download tool config to %s", path)
        return path

    def is_available(self) -> bool:
        argv = self.settings.downloader_argv
        return bool(argv) and shutil.which(argv[0]) is not None

    def is_running(self, job_id: UUID) -> bool:
        process = self._processes.get(job_id)
        return process is not None and process.returncode is None

    async def start(
        self,
        job_id: UUID,
        url: str,
        destination: Path,
        language: str = "en",
        on_progress: ProgressCallback | None = None,
    ) -> ProcessResult:
        """
        Run the tool for ``url`` and wait for it to exit.

        Raises:
            ProcessAlreadyRunningError: A subprocess for this job is still live.
        """
        if self.is_running(job_id):
            raise ProcessAlreadyRunningError(f"Job {job_id} already has a running process")

        destination.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(url, destination, language)
        timeout = self.settings.chapter_timeout_seconds or None
        logger.info("Starting download tool for job %s: %s", job_id, url)

        stdout_buf: list[str] = []
        stderr_buf: list[str] = []

        async def _emit(line: str) -> None:
            if on_progress is None:
                return
            event = parse_progress_line(line)
            if event is None:
                return
            try:
                outcome = on_progress(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning("Progress callback failed for job %s: %s", job_id, e)

        async def _read_stream(
            stream: asyncio.StreamReader | None,
            sink: list[str],
            parse: bool,
        ) -> None:
            if stream is None:
                return
            captured = 0
            buf = ""
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                text = chunk.decode("utf-8", errors="replace")
                if captured < MAX_CAPTURE:
                    take = text[: MAX_CAPTURE - captured]
                    sink.append(take)
                    captured += len(take)

                buf += text
                # progress bars redraw with carriage returns
                while True:
                    split_idx = None
                    for sep in ("\r", "\n"):
                        i = buf.find(sep)
                        if i != -1 and (split_idx is None or i < split_idx):
                            split_idx = i
                    if split_idx is None:
                        break
                    line = buf[:split_idx]
                    buf = buf[split_idx + 1 :]
                    if parse and line.strip():
                        await _emit(line)
            if parse and buf.strip():
                await _emit(buf)

        process: asyncio.subprocess.Process | None = None
        readers: list[asyncio.Task[None]] = []
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            self._processes[job_id] = process
            if job_id in self._cancelled:
                self._kill_process(process)

            readers = [
                asyncio.create_task(_read_stream(process.stdout, stdout_buf, True)),
                asyncio.create_task(_read_stream(process.stderr, stderr_buf, True)),
            ]

            await asyncio.wait_for(process.wait(), timeout=timeout)
            await asyncio.gather(*readers)

            return self._build_result(job_id, process.returncode, stdout_buf, stderr_buf)

        except asyncio.CancelledError:
            if process:
                self._kill_process(process)
                await process.wait()
            for reader in readers:
                reader.cancel()
            raise
        except asyncio.TimeoutError:
            logger.error("Download tool timed out after %ss for job %s", timeout, job_id)
            if process:
                self._kill_process(process)
                await process.wait()
            return ProcessResult(
                returncode=-1,
                stdout="".join(stdout_buf),
                stderr="".join(stderr_buf),
                error_message=f"Download tool timed out after {timeout}s",
            )
        except FileNotFoundError as e:
            logger.error("Download tool not found: %s - %s", cmd[0], e)
            return ProcessResult(returncode=-1, error_message=f"Command not found: {cmd[0]}")
        finally:
            if self._processes.get(job_id) is process:
                self._processes.pop(job_id, None)
            self._cancelled.discard(job_id)

    def _build_result(
        self,
        job_id: UUID,
        returncode: int | None,
        stdout_buf: list[str],
        stderr_buf: list[str],
    ) -> ProcessResult:
        stdout = "".join(stdout_buf)
        stderr = "".join(stderr_buf)
        rc = returncode if returncode is not None else -1
        result = ProcessResult(
            returncode=rc,
            stdout=stdout,
            stderr=stderr,
            cancelled=job_id in self._cancelled,
        )
        if result.cancelled:
            result.error_message = "Cancelled by user"
        elif rc != 0:
            tail = stderr.strip()[-self.settings.stderr_max_chars :]
            result.error_message = tail or f"Download tool exited with code {rc}"
            logger.error("Download tool failed for job %s (exit %d): %s", job_id, rc, tail[:200])
        return result

    @staticmethod
    def _kill_process(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass

    def kill(self, job_id: UUID) -> bool:
        """Forcefully terminate the job's subprocess. Returns False if none is live."""
        process = self._processes.get(job_id)
        if process is None or process.returncode is not None:
            return False
        logger.info("Killing download tool for job %s (pid %s)", job_id, process.pid)
        self._kill_process(process)
        return True

    def cancel(self, job_id: UUID) -> bool:
        """
        User-requested stop; same signal as :meth:`kill`.

        A cancel that arrives while the process is still being spawned is
        remembered and applied as soon as the process is registered.

        Returns:
            True if a live process was killed.
        """
        self._cancelled.add(job_id)
        return self.kill(job_id)

    def discard_cancel(self, job_id: UUID) -> None:
        self._cancelled.discard(job_id)

    def kill_all(self) -> int:
        killed = 0
        for job_id in list(self._processes):
            if self.kill(job_id):
                killed += 1
        return killed
