"""ComicInfo.xml metadata embedded in CBZ archives.

The ``<Web>`` element of an archive's ComicInfo.xml holds the canonical
chapter URL. It travels with the file, so it is the ground truth the
chapter history index is rebuilt from.
"""

import logging
import os
import re
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from xml.etree import ElementTree as ET

logger = logging.getLogger(__name__)

COMIC_INFO_NAME = "ComicInfo.xml"
ARCHIVE_SUFFIX = ".cbz"
IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp", ".gif", ".avif")

_UNSAFE_CHARS_RE = re.compile(r'[\\/:*?"<>|]')
_SPACES_RE = re.compile(r"\s+")
_GROUP_RE = re.compile(r"\[([^\]]+)\]")
_NUMBER_PATTERNS = (
    re.compile(r"\bch(?:apter)?\.?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"\bc(\d+(?:\.\d+)?)\b", re.IGNORECASE),
)


class ArchiveMetadataError(Exception):
    """Raised when an archive cannot be read or rewritten."""
    pass


@dataclass
class ComicInfo:
    """Subset of the ComicInfo schema this service reads and writes."""

    web: str | None = None
    series: str | None = None
    title: str | None = None
    number: str | None = None
    volume: str | None = None
    translator: str | None = None
    language_iso: str | None = None
    page_count: int | None = None
    manga: str | None = "YesAndRightToLeft"

    _FIELDS = (
        ("Series", "series"),
        ("Title", "title"),
        ("Number", "number"),
        ("Volume", "volume"),
        ("Web", "web"),
        ("Translator", "translator"),
        ("LanguageISO", "language_iso"),
        ("PageCount", "page_count"),
        ("Manga", "manga"),
    )

    def to_xml(self) -> bytes:
        root = ET.Element("ComicInfo")
        root.set("xmlns:xsi", "http://www.w3.org/2001/XMLSchema-instance")
        root.set("xmlns:xsd", "http://www.w3.org/2001/XMLSchema")
        for tag, attr in self._FIELDS:
            value = getattr(self, attr)
            if value is None or value == "":
                continue
            ET.SubElement(root, tag).text = str(value)
        ET.indent(root)
        return ET.tostring(root, encoding="utf-8", xml_declaration=True)

    @classmethod
    def from_xml(cls, data: bytes) -> "ComicInfo":
        try:
            root = ET.fromstring(data)
        except ET.ParseError as e:
            raise ArchiveMetadataError(f"Invalid ComicInfo.xml: {e}") from e

        values: dict[str, object] = {}
        for tag, attr in cls._FIELDS:
            el = root.find(tag)
            if el is None or el.text is None:
                continue
            text = el.text.strip()
            if attr == "page_count":
                values[attr] = int(text) if text.isdigit() else None
            else:
                values[attr] = text
        info = cls(**values)
        if "manga" not in values:
            info.manga = None
        return info


def read_comic_info(path: Path) -> ComicInfo | None:
    """
    Read the embedded metadata tag of an archive.

    Returns:
        ComicInfo, or None if the archive has no tag or is unreadable.
    """
    try:
        with zipfile.ZipFile(path) as zf:
            name = _find_comic_info(zf)
            if name is None:
                return None
            return ComicInfo.from_xml(zf.read(name))
    except (zipfile.BadZipFile, OSError, ArchiveMetadataError) as e:
        logger.warning("Could not read metadata from %s: %s", path, e)
        return None


def _find_comic_info(zf: zipfile.ZipFile) -> str | None:
    for name in zf.namelist():
        if name.lower() == COMIC_INFO_NAME.lower():
            return name
    return None


def count_pages(path: Path) -> int:
    try:
        with zipfile.ZipFile(path) as zf:
            return sum(1 for n in zf.namelist() if n.lower().endswith(IMAGE_SUFFIXES))
    except (zipfile.BadZipFile, OSError):
        return 0


def write_comic_info(path: Path, info: ComicInfo) -> None:
    """
    Embed ``info`` into the archive, replacing any existing tag.

    The archive is rebuilt next to the original, fsynced, then swapped in with
    an atomic rename so a crash leaves either the old or the new file.
    """
    if info.page_count is None:
        info.page_count = count_pages(path)

    fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", suffix=ARCHIVE_SUFFIX, dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as raw:
            with zipfile.ZipFile(path) as src, zipfile.ZipFile(raw, "w", zipfile.ZIP_DEFLATED) as dst:
                for item in src.infolist():
                    if item.filename.lower() == COMIC_INFO_NAME.lower():
                        continue
                    dst.writestr(item, src.read(item.filename))
                dst.writestr(COMIC_INFO_NAME, info.to_xml())
            raw.flush()
            os.fsync(raw.fileno())
        os.replace(tmp_path, path)
        _fsync_directory(path.parent)
    except (zipfile.BadZipFile, OSError) as e:
        tmp_path.unlink(missing_ok=True)
        raise ArchiveMetadataError(f"Failed to write metadata into {path}: {e}") from e


def _fsync_directory(directory: Path) -> None:
    if os.name != "posix":
        return
    try:
        dir_fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


def sanitize_filename(name: str) -> str:
    """Replace characters that are invalid on common filesystems."""
    cleaned = _UNSAFE_CHARS_RE.sub(" ", name)
    return _SPACES_RE.sub(" ", cleaned).strip()


def format_chapter_number(number: float) -> str:
    """Zero-pad the integer part: 1 -> ``001``, 10.5 -> ``010.5``."""
    if float(number).is_integer():
        return f"{int(number):03d}"
    whole, _, fraction = f"{number}".partition(".")
    return f"{int(whole):03d}.{fraction}"


def chapter_number_text(number: float) -> str:
    """Plain chapter number for metadata: 5.0 -> ``5``, 10.5 -> ``10.5``."""
    return str(int(number)) if float(number).is_integer() else str(number)


def build_archive_filename(
    chapter_number: float,
    chapter_title: str | None = None,
    group: str | None = None,
) -> str:
    """Canonical archive name, e.g. ``Ch. 001 - Title [Group].cbz``."""
    name = f"Ch. {format_chapter_number(chapter_number)}"
    if chapter_title:
        name += f" - {chapter_title}"
    if group:
        name += f" [{group}]"
    return sanitize_filename(name) + ARCHIVE_SUFFIX


def parse_chapter_number(filename: str) -> float | None:
    """Best-effort chapter number from an archive name (``Ch. 005``, ``c5``, ``Chapter 5``)."""
    stem = Path(filename).stem
    for pattern in _NUMBER_PATTERNS:
        m = pattern.search(stem)
        if m:
            return float(m.group(1))
    return None


def parse_group(filename: str) -> str:
    """Scanlation group from the last ``[...]`` in an archive name, or ``""``."""
    matches = _GROUP_RE.findall(Path(filename).stem)
    return matches[-1].strip() if matches else ""


def finalize_archive(path: Path, info: ComicInfo, filename: str) -> Path:
    """
    Embed metadata and move the archive to its canonical name.

    An existing archive with the target name is never overwritten; the file
    keeps its original name in that case.
    """
    write_comic_info(path, info)
    target = path.with_name(filename)
    if target == path:
        return path
    if target.exists():
        logger.warning("Archive %s already exists, keeping %s", target.name, path.name)
        return path
    os.replace(path, target)
    _fsync_directory(path.parent)
    return target


def list_archives(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.suffix.lower() == ARCHIVE_SUFFIX and not p.name.startswith(".tmp-")
    )
