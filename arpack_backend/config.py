from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


# Sandbox layout. Only OUTPUT_SUBDIR ever receives client-named files.
OUTPUT_SUBDIR = "output"
UPLOADED_IMAGES_SUBDIR = "images"
ARCHIVE_FILENAME = "ar_output.zip"
META_FILENAME = ".meta.json"

# Closed set of extensions the create-zip pipeline will persist.
ALLOWED_OUTPUT_EXTS = frozenset({".glb", ".mind", ".json"})

# Declared upload types we accept (magic bytes still decide).
ALLOWED_UPLOAD_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})

MAX_RELATIVE_PATH_LENGTH = 255

DEFAULT_ALLOWED_REMOTE_HOSTS = (
    "drive.google.com",
    "lh3.googleusercontent.com",
    # Target of drive.google.com/uc download redirects.
    "drive.usercontent.google.com",
)
DEFAULT_CORS_ORIGINS = ("http://localhost:3000", "http://127.0.0.1:3000")

_MB = 1024 * 1024


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return tuple(p.strip().lower() for p in raw.split(",") if p.strip())


def _default_root() -> Path:
    # arpack_backend/ -> project root
    return Path(__file__).resolve().parent.parent / "temp"


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and never mutated."""

    workspaces_root: Path = field(default_factory=_default_root)

    max_files_per_batch: int = 1000
    max_file_bytes: int = 20 * _MB
    max_request_bytes: int = 50 * _MB

    max_upload_files: int = 10
    max_upload_image_bytes: int = 10 * _MB

    max_remote_image_bytes: int = 10 * _MB
    remote_fetch_timeout_seconds: float = 30.0
    max_remote_redirects: int = 5
    allowed_remote_hosts: tuple[str, ...] = DEFAULT_ALLOWED_REMOTE_HOSTS
    remote_cache_max_age_seconds: int = 3600

    # Delay between a served download and removal of its sandbox.
    delete_delay_seconds: float = 60.0
    # Abandoned-sandbox sweep; 0 disables it.
    sandbox_ttl_seconds: float = 0.0
    cleanup_interval_seconds: int = 600

    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS

    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 15 * 60
    proxy_rate_limit_requests: int = 10
    proxy_rate_limit_window_seconds: int = 60

    def __post_init__(self) -> None:
        object.__setattr__(self, "workspaces_root", Path(self.workspaces_root).resolve())
        object.__setattr__(
            self,
            "allowed_remote_hosts",
            tuple(h.lower() for h in self.allowed_remote_hosts),
        )


def load_settings() -> Settings:
    """Build Settings from ARPACK_* environment variables."""
    root_raw = os.environ.get("ARPACK_WORKSPACES_ROOT")
    root = Path(root_raw) if root_raw and root_raw.strip() else _default_root()

    return Settings(
        workspaces_root=root,
        max_files_per_batch=_env_int("ARPACK_MAX_FILES_PER_BATCH", 1000),
        max_file_bytes=_env_int("ARPACK_MAX_FILE_BYTES", 20 * _MB),
        max_request_bytes=_env_int("ARPACK_MAX_REQUEST_BYTES", 50 * _MB),
        max_upload_files=_env_int("ARPACK_MAX_UPLOAD_FILES", 10),
        max_upload_image_bytes=_env_int("ARPACK_MAX_UPLOAD_IMAGE_BYTES", 10 * _MB),
        max_remote_image_bytes=_env_int("ARPACK_MAX_REMOTE_IMAGE_BYTES", 10 * _MB),
        remote_fetch_timeout_seconds=_env_float("ARPACK_REMOTE_FETCH_TIMEOUT_SECONDS", 30.0),
        max_remote_redirects=_env_int("ARPACK_MAX_REMOTE_REDIRECTS", 5),
        allowed_remote_hosts=_env_list("ARPACK_ALLOWED_REMOTE_HOSTS", DEFAULT_ALLOWED_REMOTE_HOSTS),
        remote_cache_max_age_seconds=_env_int("ARPACK_REMOTE_CACHE_MAX_AGE_SECONDS", 3600),
        delete_delay_seconds=_env_float("ARPACK_DELETE_DELAY_SECONDS", 60.0),
        sandbox_ttl_seconds=_env_float("ARPACK_SANDBOX_TTL_SECONDS", 0.0),
        cleanup_interval_seconds=_env_int("ARPACK_CLEANUP_INTERVAL_SECONDS", 600),
        cors_origins=_env_list("ARPACK_CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
        rate_limit_requests=_env_int("ARPACK_RATE_LIMIT_REQUESTS", 100),
        rate_limit_window_seconds=_env_int("ARPACK_RATE_LIMIT_WINDOW_SECONDS", 15 * 60),
        proxy_rate_limit_requests=_env_int("ARPACK_PROXY_RATE_LIMIT_REQUESTS", 10),
        proxy_rate_limit_window_seconds=_env_int("ARPACK_PROXY_RATE_LIMIT_WINDOW_SECONDS", 60),
    )
