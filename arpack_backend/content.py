from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from typing import Any, Optional

from .errors import InputValidationError, PayloadTooLarge


@dataclass(frozen=True)
class ImageKind:
    mime_type: str
    extension: str


PNG = ImageKind("image/png", ".png")
JPEG = ImageKind("image/jpeg", ".jpg")
WEBP = ImageKind("image/webp", ".webp")

_DATA_URL_PREFIX_RE = re.compile(r"^data:.*?;base64,", re.DOTALL)


def classify_image(data: bytes) -> Optional[ImageKind]:
    """Identify PNG/JPEG/WebP from leading bytes.

    Declared content types are never consulted here; anything that does not
    match one of the three signatures is None.
    """
    head = bytes(data[:4])
    if head == b"\x89PNG":
        return PNG
    if head[:3] == b"\xff\xd8\xff":
        return JPEG
    if head == b"RIFF":
        return WEBP
    return None


def check_size(data: bytes | str, limit: int) -> bool:
    return len(data) <= limit


def _decode_base64(content: str) -> bytes:
    payload = _DATA_URL_PREFIX_RE.sub("", content, count=1)
    payload = "".join(payload.split())
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InputValidationError("Malformed base64 content") from exc


def decode_file_content(content: Any, encoding: str | None, max_bytes: int) -> bytes:
    """Turn a file descriptor's content into bytes.

    encoding is "base64", "json" or anything else for raw text. Size is
    checked on the encoded form (base64) and again after decoding.
    """
    if encoding == "base64":
        if not isinstance(content, str):
            raise InputValidationError("base64 content must be a string")
        if not check_size(content, max_bytes):
            raise PayloadTooLarge("Base64 content too large")
        data = _decode_base64(content)
    elif encoding == "json":
        try:
            data = json.dumps(content, indent=2, ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise InputValidationError("Content is not JSON serializable") from exc
    else:
        if not isinstance(content, str):
            raise InputValidationError("Raw content must be a string")
        data = content.encode("utf-8")

    if not check_size(data, max_bytes):
        raise PayloadTooLarge("Decoded content too large")
    return data
