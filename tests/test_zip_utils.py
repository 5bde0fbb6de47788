"""Tests for archive building."""

import io
import os
import threading
import zipfile
from pathlib import Path
from unittest.mock import patch

import pytest

from arpack_backend import zip_utils
from arpack_backend.errors import StorageFailure
from arpack_backend.zip_utils import build_archive, iter_archive_members, write_archive


def _populate(root: Path) -> dict[str, bytes]:
    files = {
        "a/b.json": b'{\n  "x": 1\n}',
        "models/cube.glb": bytes(range(256)) * 4,
        "targets.mind": b"\x00mind",
        "deep/er/still/x.json": b"[]",
        "empty.json": b"",
    }
    for rel, data in files.items():
        dest = root / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
    return files


def _leftovers(directory: Path) -> list[Path]:
    return list(directory.glob(".ar_output.zip.*partial"))


class TestBuildArchive:
    def test_round_trip(self, tmp_path: Path) -> None:
        """Extracting the archive yields the same relative paths and bytes."""
        source = tmp_path / "output"
        expected = _populate(source)

        with zipfile.ZipFile(io.BytesIO(build_archive(source))) as zf:
            names = [n for n in zf.namelist() if not n.endswith("/")]
            assert sorted(names) == sorted(expected)
            for name in names:
                assert zf.read(name) == expected[name]
            assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in zf.infolist())

    def test_empty_directory(self, tmp_path: Path) -> None:
        source = tmp_path / "output"
        source.mkdir()
        with zipfile.ZipFile(io.BytesIO(build_archive(source))) as zf:
            assert zf.namelist() == []

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
    def test_symlinks_are_not_archived(self, tmp_path: Path) -> None:
        source = tmp_path / "output"
        source.mkdir()
        secret = tmp_path / "secret.json"
        secret.write_text("{}")
        (source / "link.json").symlink_to(secret)
        (source / "real.json").write_text("{}")

        assert [arc for _, arc in iter_archive_members(source)] == ["real.json"]


class TestWriteArchive:
    def test_publishes_complete_archive(self, tmp_path: Path) -> None:
        source = tmp_path / "output"
        expected = _populate(source)
        dest = tmp_path / "ar_output.zip"

        assert write_archive(source, dest) == len(expected)
        with zipfile.ZipFile(dest) as zf:
            assert zf.testzip() is None
            assert sorted(zf.namelist()) == sorted(expected)
        assert _leftovers(tmp_path) == []

    def test_failure_publishes_nothing(self, tmp_path: Path) -> None:
        source = tmp_path / "output"
        _populate(source)
        dest = tmp_path / "ar_output.zip"

        with patch("arpack_backend.zip_utils.zipfile.ZipFile.write", side_effect=OSError("disk full")):
            with pytest.raises(StorageFailure):
                write_archive(source, dest)

        assert not dest.exists()
        assert _leftovers(tmp_path) == []

    def test_failure_keeps_previous_archive(self, tmp_path: Path) -> None:
        source = tmp_path / "output"
        _populate(source)
        dest = tmp_path / "ar_output.zip"
        write_archive(source, dest)
        before = dest.read_bytes()

        with patch("arpack_backend.zip_utils.os.replace", side_effect=OSError("EXDEV")):
            with pytest.raises(StorageFailure):
                write_archive(source, dest)

        assert dest.read_bytes() == before
        assert _leftovers(tmp_path) == []

    def test_overlapping_writers_publish_valid_archive(self, tmp_path: Path) -> None:
        source = tmp_path / "output"
        expected = _populate(source)
        dest = tmp_path / "ar_output.zip"

        original = zip_utils.iter_archive_members
        first_member_written = threading.Event()
        release = threading.Event()

        def paused_members(src: Path):
            for i, member in enumerate(original(src)):
                yield member
                # The member has been written once the next one is requested.
                if i == 0 and threading.current_thread().name == "slow-writer":
                    first_member_written.set()
                    release.wait(5)

        errors: list[Exception] = []

        def slow_writer() -> None:
            try:
                write_archive(source, dest)
            except Exception as exc:
                errors.append(exc)

        with patch("arpack_backend.zip_utils.iter_archive_members", side_effect=paused_members):
            thread = threading.Thread(target=slow_writer, name="slow-writer")
            thread.start()
            assert first_member_written.wait(5)
            assert write_archive(source, dest) == len(expected)
            release.set()
            thread.join(5)

        assert not thread.is_alive()
        assert errors == []
        with zipfile.ZipFile(dest) as zf:
            assert zf.testzip() is None
            assert sorted(zf.namelist()) == sorted(expected)
        assert _leftovers(tmp_path) == []
