from __future__ import annotations

import io
import logging
import os
import tempfile
import zipfile
from pathlib import Path
from typing import IO, Iterator

from .errors import StorageFailure

logger = logging.getLogger(__name__)


def iter_archive_members(source_dir: Path) -> Iterator[tuple[Path, str]]:
    """Yield (path, arcname) for every regular file under source_dir.

    Symlinks are skipped so nothing outside the source can be pulled in.
    """
    source_dir = Path(source_dir)
    for path in sorted(source_dir.rglob("*")):
        if path.is_symlink() or not path.is_file():
            continue
        yield path, path.relative_to(source_dir).as_posix()


def _write_members(target: str | Path | IO[bytes], source_dir: Path) -> int:
    count = 0
    with zipfile.ZipFile(target, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for path, arcname in iter_archive_members(source_dir):
            zf.write(path, arcname=arcname)
            count += 1
    return count


def build_archive(source_dir: Path) -> bytes:
    """Build an in-memory ZIP of source_dir with relative paths preserved."""
    buf = io.BytesIO()
    try:
        _write_members(buf, source_dir)
    except (OSError, zipfile.BadZipFile) as exc:
        raise StorageFailure(f"Archive build failed: {exc}") from exc
    return buf.getvalue()


def write_archive(source_dir: Path, dest: Path) -> int:
    """Stream source_dir into a ZIP at dest, all or nothing.

    Each call writes to its own hidden temp file next to dest and only renames
    it onto dest once the zip has closed cleanly, so overlapping writers never
    share a file. On any error the temp file is removed and StorageFailure is
    raised; a previous archive at dest is left untouched. Returns the number
    of archived files.
    """
    dest = Path(dest)
    try:
        fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".partial")
    except OSError as exc:
        raise StorageFailure(f"Archive build failed: {exc}") from exc
    partial = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            count = _write_members(fh, source_dir)
        os.replace(partial, dest)
    except (OSError, zipfile.BadZipFile) as exc:
        partial.unlink(missing_ok=True)
        raise StorageFailure(f"Archive build failed: {exc}") from exc
    logger.info("Archive written with %d file(s)", count)
    return count
