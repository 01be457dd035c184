"""Unit tests for archive naming and embedded ComicInfo metadata."""

import zipfile
from pathlib import Path

import pytest

from services.archive_metadata import (
    ArchiveMetadataError,
    ComicInfo,
    build_archive_filename,
    chapter_number_text,
    count_pages,
    finalize_archive,
    format_chapter_number,
    list_archives,
    parse_chapter_number,
    parse_group,
    read_comic_info,
    sanitize_filename,
    write_comic_info,
)
from helpers import make_archive


class TestNaming:
    """Tests for canonical archive names."""

    @pytest.mark.parametrize(
        "number,expected",
        [(1, "001"), (1.0, "001"), (10.5, "010.5"), (123, "123"), (1000, "1000"), (0, "000")],
    )
    def test_format_chapter_number(self, number: float, expected: str) -> None:
        assert format_chapter_number(number) == expected

    def test_chapter_number_text(self) -> None:
        assert chapter_number_text(5.0) == "5"
        assert chapter_number_text(10.5) == "10.5"

    def test_build_archive_filename(self) -> None:
        assert build_archive_filename(1, "The Start", "Group A") == "Ch. 001 - The Start [Group A].cbz"
        assert build_archive_filename(2.5) == "Ch. 002.5.cbz"
        assert build_archive_filename(3, None, "G") == "Ch. 003 [G].cbz"

    def test_build_archive_filename_strips_unsafe_characters(self) -> None:
        assert build_archive_filename(7, 'What? A "Title": Part/2') == "Ch. 007 - What A Title Part 2.cbz"

    def test_sanitize_filename(self) -> None:
        assert sanitize_filename('  a<b>c|d  ') == "a b c d"


class TestFilenameParsing:
    """Tests for recovering chapter number and group from archive names."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Ch. 005 - Title [Group].cbz", 5.0),
            ("Chapter 12.5.cbz", 12.5),
            ("Series c007 (v01).cbz", 7.0),
            ("ch10.cbz", 10.0),
            ("random.cbz", None),
        ],
    )
    def test_parse_chapter_number(self, name: str, expected: float | None) -> None:
        assert parse_chapter_number(name) == expected

    def test_parse_group_uses_last_brackets(self) -> None:
        assert parse_group("Ch. 001 [Official] - x [Group B].cbz") == "Group B"
        assert parse_group("Ch. 001.cbz") == ""


class TestComicInfo:
    """Tests for reading and writing ComicInfo.xml."""

    def test_write_then_read(self, tmp_path: Path) -> None:
        """Test metadata survives a rewrite and pages are preserved."""
        archive = make_archive(tmp_path / "c1.cbz", pages=3)

        write_comic_info(
            archive,
            ComicInfo(
                web="https://mangadex.org/chapter/abc",
                series="Foo",
                number="1",
                translator="Group A",
                language_iso="en",
            ),
        )
        info = read_comic_info(archive)

        assert info is not None
        assert info.web == "https://mangadex.org/chapter/abc"
        assert info.series == "Foo"
        assert info.number == "1"
        assert info.translator == "Group A"
        assert info.page_count == 3
        assert count_pages(archive) == 3
        assert not list(tmp_path.glob(".tmp-*"))

    def test_rewrite_replaces_existing_tag(self, tmp_path: Path) -> None:
        archive = make_archive(tmp_path / "c1.cbz", ComicInfo(web="https://old"))

        write_comic_info(archive, ComicInfo(web="https://new"))

        with zipfile.ZipFile(archive) as zf:
            names = [n for n in zf.namelist() if n.lower() == "comicinfo.xml"]
        assert len(names) == 1
        assert read_comic_info(archive).web == "https://new"  # type: ignore[union-attr]

    def test_read_untagged_archive(self, tmp_path: Path) -> None:
        archive = make_archive(tmp_path / "c1.cbz")

        assert read_comic_info(archive) is None

    def test_read_corrupt_archive_returns_none(self, tmp_path: Path) -> None:
        bad = tmp_path / "bad.cbz"
        bad.write_bytes(b"not a zip")

        assert read_comic_info(bad) is None

    def test_write_corrupt_archive_raises(self, tmp_path: Path) -> None:
        bad = tmp_path / "bad.cbz"
        bad.write_bytes(b"not a zip")

        with pytest.raises(ArchiveMetadataError):
            write_comic_info(bad, ComicInfo(web="https://x"))
        assert not list(tmp_path.glob(".tmp-*"))

    def test_from_xml_rejects_garbage(self) -> None:
        with pytest.raises(ArchiveMetadataError):
            ComicInfo.from_xml(b"<ComicInfo>")


class TestFinalizeArchive:
    """Tests for finalize_archive."""

    def test_renames_to_canonical_name(self, tmp_path: Path) -> None:
        archive = make_archive(tmp_path / "raw-download.cbz")

        final = finalize_archive(archive, ComicInfo(web="https://x"), "Ch. 001.cbz")

        assert final == tmp_path / "Ch. 001.cbz"
        assert final.exists()
        assert not archive.exists()
        assert read_comic_info(final).web == "https://x"  # type: ignore[union-attr]

    def test_never_overwrites_existing_archive(self, tmp_path: Path) -> None:
        existing = make_archive(tmp_path / "Ch. 001.cbz", ComicInfo(web="https://first"))
        archive = make_archive(tmp_path / "raw.cbz")

        final = finalize_archive(archive, ComicInfo(web="https://second"), "Ch. 001.cbz")

        assert final == archive
        assert read_comic_info(existing).web == "https://first"  # type: ignore[union-attr]
        assert read_comic_info(archive).web == "https://second"  # type: ignore[union-attr]

    def test_list_archives_skips_temp_files(self, tmp_path: Path) -> None:
        make_archive(tmp_path / "b.cbz")
        make_archive(tmp_path / "a.cbz")
        (tmp_path / ".tmp-xyz.cbz").write_bytes(b"")
        (tmp_path / "notes.txt").write_text("x")

        assert [p.name for p in list_archives(tmp_path)] == ["a.cbz", "b.cbz"]
        assert list_archives(tmp_path / "missing") == []
