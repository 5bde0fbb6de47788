"""Shared fixtures for backend and API tests."""

from pathlib import Path
from typing import Iterator
from unittest.mock import patch

import pytest

from arpack_backend.config import Settings

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 24
WEBP_BYTES = b"RIFF\x24\x00\x00\x00WEBPVP8 " + b"\x00" * 16
GIF_BYTES = b"GIF89a" + b"\x00" * 24

PUBLIC_IP = "142.250.80.46"


def make_settings(root: Path, **overrides: object) -> Settings:
    """Create Settings rooted at a temporary directory."""
    return Settings(workspaces_root=root, **overrides)  # type: ignore[arg-type]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path / "sandboxes")


@pytest.fixture
def public_dns() -> Iterator[object]:
    """Resolve every hostname to a public address."""
    with patch("arpack_backend.remote.socket.getaddrinfo") as mock_getaddrinfo:
        mock_getaddrinfo.return_value = [(2, 1, 6, "", (PUBLIC_IP, 443))]
        yield mock_getaddrinfo
