from __future__ import annotations

import json
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ValidationError

from .config import (
    ALLOWED_OUTPUT_EXTS,
    ARCHIVE_FILENAME,
    META_FILENAME,
    OUTPUT_SUBDIR,
    UPLOADED_IMAGES_SUBDIR,
    Settings,
)
from .content import classify_image, decode_file_content
from .errors import InputValidationError, InvalidImage, PayloadTooLarge, StorageFailure
from .security import (
    audit_logger,
    contain_in,
    is_allowed_extension,
    is_valid_session_id,
    issue_session_id,
    normalize_session_id,
    sanitize_relative_path,
    sanitize_upload_filename,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionWorkspace:
    session_id: str
    root: Path
    output_dir: Path
    archive_path: Path
    meta_path: Path


class FileDescriptor(BaseModel):
    path: str
    content: Any = None
    type: Optional[str] = None


@dataclass(frozen=True)
class SkippedEntry:
    index: int
    path: str
    reason: str


@dataclass
class MaterializeResult:
    written: list[str] = field(default_factory=list)
    skipped: list[SkippedEntry] = field(default_factory=list)


def _now_epoch() -> float:
    return time.time()


def _meta_default() -> dict:
    now = _now_epoch()
    return {"created_at": now, "last_access": now, "version": 1}


def _load_meta(meta_path: Path) -> dict:
    try:
        return json.loads(meta_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return _meta_default()


def _write_meta(meta_path: Path, meta: dict) -> None:
    meta_path.write_text(json.dumps(meta, indent=2, sort_keys=True), encoding="utf-8")


def sandbox_path_for(settings: Settings, session_id: str) -> Path:
    sid = normalize_session_id(session_id)
    return settings.workspaces_root / sid


def get_session_workspace(settings: Settings, session_id: str) -> SessionWorkspace:
    root = sandbox_path_for(settings, session_id)
    return SessionWorkspace(
        session_id=root.name,
        root=root,
        output_dir=root / OUTPUT_SUBDIR,
        archive_path=root / ARCHIVE_FILENAME,
        meta_path=root / META_FILENAME,
    )


def ensure_workspace_dirs(ws: SessionWorkspace) -> None:
    ws.output_dir.mkdir(parents=True, exist_ok=True)
    if not ws.meta_path.exists():
        _write_meta(ws.meta_path, _meta_default())


def create_new_session(settings: Settings) -> SessionWorkspace:
    settings.workspaces_root.mkdir(parents=True, exist_ok=True)
    ws = get_session_workspace(settings, issue_session_id())
    ensure_workspace_dirs(ws)
    return ws


def update_session_meta(ws: SessionWorkspace, **fields: Any) -> None:
    meta = _load_meta(ws.meta_path)
    meta.update(fields)
    meta["last_access"] = _now_epoch()
    _write_meta(ws.meta_path, meta)


def delete_session(settings: Settings, session_id: str) -> bool:
    """Remove a sandbox recursively. Missing sandboxes are not an error.

    Returns True if a directory was removed.
    """
    ws = get_session_workspace(settings, session_id)
    if not ws.root.exists():
        return False
    shutil.rmtree(ws.root, ignore_errors=True)
    return True


# Raised when an entry's own target clashes with an existing file or directory
# of the same sandbox (e.g. "x.json" and then "x.json/y.json").
PATH_CONFLICT_ERRORS = (FileExistsError, NotADirectoryError, IsADirectoryError)

# Upper bound on "-N" suffixes tried for a colliding upload name.
MAX_UPLOAD_NAME_ATTEMPTS = 1000


def _write_bytes(dest: Path, data: bytes) -> None:
    """Write data to dest, creating parents.

    Path conflicts propagate unchanged; any other OSError is a StorageFailure.
    """
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
    except PATH_CONFLICT_ERRORS:
        raise
    except OSError as exc:
        raise StorageFailure(f"Failed to write {dest.name}: {exc}") from exc


def _create_exclusive(dest: Path, data: bytes) -> None:
    # FileExistsError means the name is taken; the caller picks another one.
    try:
        fh = dest.open("xb")
    except FileExistsError:
        raise
    except OSError as exc:
        raise StorageFailure(f"Failed to write {dest.name}: {exc}") from exc
    try:
        with fh:
            fh.write(data)
    except OSError as exc:
        dest.unlink(missing_ok=True)
        raise StorageFailure(f"Failed to write {dest.name}: {exc}") from exc


def materialize_files(
    ws: SessionWorkspace,
    files: Iterable[Any],
    settings: Settings,
    allowed_exts: Iterable[str] = ALLOWED_OUTPUT_EXTS,
) -> MaterializeResult:
    """Write a batch of client file descriptors under ws.output_dir.

    A bad entry (shape, path, extension, encoding, size, or a path that clashes
    with an earlier entry) is logged and skipped; the rest of the batch still
    lands. Disk errors are not per-entry problems and raise StorageFailure.
    """
    ensure_workspace_dirs(ws)
    allowed = frozenset(allowed_exts)
    result = MaterializeResult()

    for index, raw in enumerate(files):
        try:
            descriptor = FileDescriptor.model_validate(raw)
        except ValidationError:
            logger.warning("Skipping malformed file entry #%d", index)
            result.skipped.append(SkippedEntry(index, "", "malformed"))
            continue

        safe_path = sanitize_relative_path(descriptor.path)
        if safe_path is None:
            logger.warning("Invalid file path: %r", descriptor.path)
            result.skipped.append(SkippedEntry(index, descriptor.path, "invalid_path"))
            continue

        full_path = ws.output_dir / safe_path
        if not contain_in(ws.output_dir, full_path):
            audit_logger.warning(
                "Path traversal attempt in session %s: %r", ws.session_id, descriptor.path
            )
            result.skipped.append(SkippedEntry(index, descriptor.path, "path_traversal"))
            continue

        if not is_allowed_extension(safe_path, allowed):
            logger.warning("Invalid file extension: %r", descriptor.path)
            result.skipped.append(SkippedEntry(index, descriptor.path, "extension"))
            continue

        try:
            data = decode_file_content(descriptor.content, descriptor.type, settings.max_file_bytes)
        except PayloadTooLarge:
            logger.warning("Content too large: %r", descriptor.path)
            result.skipped.append(SkippedEntry(index, descriptor.path, "too_large"))
            continue
        except InputValidationError as exc:
            logger.warning("Undecodable content for %r: %s", descriptor.path, exc.detail)
            result.skipped.append(SkippedEntry(index, descriptor.path, "decode"))
            continue

        try:
            _write_bytes(full_path, data)
        except PATH_CONFLICT_ERRORS as exc:
            logger.warning("Path conflict for %r: %s", descriptor.path, exc)
            result.skipped.append(SkippedEntry(index, descriptor.path, "path_conflict"))
            continue
        logger.info("  Saved: %s", safe_path)
        result.written.append(safe_path)

    update_session_meta(
        ws,
        expected_files=len(result.written) + len(result.skipped),
        written_files=len(result.written),
    )
    return result


def save_uploaded_image(
    ws: SessionWorkspace,
    original_name: str | None,
    data: bytes,
    settings: Settings,
) -> str:
    """Save a client-pushed image under output/images/.

    The stored extension comes from the detected format, not from the
    client's filename. A name that is already taken gets a "-1", "-2", ...
    suffix instead of overwriting. Returns the path relative to output/.
    """
    if len(data) > settings.max_upload_image_bytes:
        raise PayloadTooLarge("Uploaded image too large")
    kind = classify_image(data)
    if kind is None:
        raise InvalidImage("Upload failed magic byte check")

    stem = Path(sanitize_upload_filename(original_name)).stem[:100] or "upload"

    ensure_workspace_dirs(ws)
    images_dir = ws.output_dir / UPLOADED_IMAGES_SUBDIR
    try:
        images_dir.mkdir(exist_ok=True)
    except PATH_CONFLICT_ERRORS as exc:
        raise InputValidationError(f"Upload directory unavailable: {exc}") from exc
    except OSError as exc:
        raise StorageFailure(f"Failed to create {images_dir.name}: {exc}") from exc

    for attempt in range(MAX_UPLOAD_NAME_ATTEMPTS):
        suffix = f"-{attempt}" if attempt else ""
        relative = sanitize_relative_path(f"{UPLOADED_IMAGES_SUBDIR}/{stem}{suffix}{kind.extension}")
        if relative is None:
            raise InputValidationError("Invalid upload filename")
        dest = ws.output_dir / relative
        if not contain_in(ws.output_dir, dest):
            audit_logger.warning("Upload path escaped sandbox in session %s", ws.session_id)
            raise InputValidationError("Invalid upload filename")
        try:
            _create_exclusive(dest, data)
        except FileExistsError:
            continue
        update_session_meta(ws)
        return relative

    raise InputValidationError(f"No free name for upload {stem!r}")


def cleanup_expired_sessions(settings: Settings) -> int:
    """Delete sandboxes whose last_access is older than sandbox_ttl_seconds.

    Disabled (returns 0) when the TTL is not positive. Returns the number of
    deleted sandboxes.
    """
    ttl_seconds = settings.sandbox_ttl_seconds
    root = settings.workspaces_root
    if ttl_seconds <= 0 or not root.exists():
        return 0

    deleted = 0
    now = _now_epoch()
    for child in root.iterdir():
        if not child.is_dir() or not is_valid_session_id(child.name):
            continue
        meta_path = child / META_FILENAME
        if meta_path.is_file():
            meta = _load_meta(meta_path)
            last_access = float(meta.get("last_access", meta.get("created_at", 0)))
        else:
            last_access = child.stat().st_mtime
        if (now - last_access) > ttl_seconds:
            shutil.rmtree(child, ignore_errors=True)
            logger.info("Expired sandbox removed: %s", child.name)
            deleted += 1
    return deleted
