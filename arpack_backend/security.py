from __future__ import annotations

import logging
import posixpath
import re
import secrets
from pathlib import Path
from typing import Iterable

from .config import ALLOWED_OUTPUT_EXTS, MAX_RELATIVE_PATH_LENGTH
from .errors import InvalidSessionId, PathTraversalError

audit_logger = logging.getLogger("arpack_backend.audit")


_SESSION_ID_RE = re.compile(r"^[a-f0-9]{64}$")
_SAFE_FILENAME_RE = re.compile(r"^[A-Za-z0-9_\-.]+$")
_UNSAFE_FILENAME_CHARS_RE = re.compile(r"[^A-Za-z0-9_\-.]")
_DRIVE_LETTER_RE = re.compile(r"^[A-Za-z]:")


def issue_session_id() -> str:
    """Return a fresh 256-bit session id as 64 lowercase hex characters."""
    return secrets.token_hex(32)


def is_valid_session_id(session_id: object) -> bool:
    return isinstance(session_id, str) and bool(_SESSION_ID_RE.fullmatch(session_id))


def normalize_session_id(session_id: object) -> str:
    """Validate a session id.

    Session ids are capability tokens. Unlike most inputs we do not strip or
    lowercase them: anything that is not already canonical is rejected, so two
    spellings can never map to the same sandbox.
    """
    if not is_valid_session_id(session_id):
        raise InvalidSessionId("Malformed session id")
    return str(session_id)


def sanitize_relative_path(raw_path: object) -> str | None:
    """Normalize an untrusted relative path, or return None to reject it.

    - backslashes are treated as separators
    - '.' and '..' segments are resolved
    - any leading run of '..' segments is dropped
    - absolute paths, drive letters and NUL bytes are rejected
    - results longer than MAX_RELATIVE_PATH_LENGTH are rejected
    """
    if not isinstance(raw_path, str) or not raw_path:
        return None
    if "\x00" in raw_path:
        return None

    unified = raw_path.replace("\\", "/")
    if unified.startswith("/") or _DRIVE_LETTER_RE.match(unified):
        return None

    normalized = posixpath.normpath(unified)
    parts = normalized.split("/")
    while parts and parts[0] == "..":
        parts.pop(0)
    cleaned = "/".join(parts)

    if not cleaned or cleaned == ".":
        return None
    if len(cleaned) > MAX_RELATIVE_PATH_LENGTH:
        return None
    return cleaned


def contain_in(base_dir: Path, candidate: Path) -> bool:
    """True if candidate resolves to base_dir or somewhere beneath it.

    Comparison is by path segments on resolved paths, so symlinks are followed
    and '/base-evil' never passes for '/base'.
    """
    base = Path(base_dir).resolve()
    resolved = Path(candidate).resolve()
    return resolved == base or base in resolved.parents


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Join paths and ensure the result stays within base_dir.

    This defends against path traversal when serving or writing user-controlled paths.
    """
    base_dir = Path(base_dir).resolve()
    candidate = base_dir
    for part in parts:
        candidate = candidate / part
    if not contain_in(base_dir, candidate):
        audit_logger.warning("Path traversal attempt: %r escapes %s", "/".join(parts), base_dir)
        raise PathTraversalError("Path escapes base directory")
    return candidate.resolve()


def is_allowed_extension(path: str | Path, allowed: Iterable[str] = ALLOWED_OUTPUT_EXTS) -> bool:
    return Path(path).suffix.lower() in set(allowed)


def is_safe_filename(name: object) -> bool:
    """Allow only simple, non-hidden filenames (no directories)."""
    if not isinstance(name, str) or not name:
        return False
    if name.startswith("."):
        return False
    return bool(_SAFE_FILENAME_RE.fullmatch(name))


def sanitize_upload_filename(name: str | None) -> str:
    """Replace anything outside [A-Za-z0-9_-.] with '_' and drop directories."""
    base = posixpath.basename((name or "").replace("\\", "/"))
    cleaned = _UNSAFE_FILENAME_CHARS_RE.sub("_", base).lstrip(".")
    return cleaned or "upload"
