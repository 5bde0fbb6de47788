"""SSRF-guarded remote image fetching.

The allow-list of hostnames is the primary defense. Address checks (literal
IPs and DNS answers) are defense in depth against redirects and DNS
rebinding. Every redirect hop goes back through the same guard.
"""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urljoin, urlsplit

import httpx

from .config import Settings
from .content import classify_image
from .errors import (
    BlockedAddress,
    DomainNotAllowed,
    InvalidImage,
    InvalidUrl,
    PayloadTooLarge,
    UpstreamFailure,
    UpstreamTimeout,
)
from .security import audit_logger

logger = logging.getLogger(__name__)

DRIVE_HOST = "drive.google.com"
DRIVE_DOWNLOAD_URL = "https://drive.google.com/uc?export=download&id={file_id}&confirm=t"

_DRIVE_FILE_PATH_RE = re.compile(r"^/file/d/(?P<file_id>[A-Za-z0-9_-]+)(?:/|$)")
_DRIVE_FILE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)*$")

_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


@dataclass(frozen=True)
class RemoteImage:
    content: bytes
    mime_type: str


def is_private_address(ip_str: str) -> bool:
    """True for anything that is not a globally routable unicast address.

    Covers private, loopback, link-local (including cloud metadata), reserved,
    unspecified and multicast ranges for both IPv4 and IPv6. Unparseable
    input counts as private.
    """
    try:
        ip = ipaddress.ip_address(ip_str.split("%", 1)[0])
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return not ip.is_global or ip.is_multicast


def _resolve_host(hostname: str, port: int) -> list[str]:
    try:
        infos = socket.getaddrinfo(hostname, port, proto=socket.IPPROTO_TCP)
    except socket.gaierror as exc:
        raise UpstreamFailure(f"DNS resolution failed for {hostname}: {exc}") from exc
    return [str(info[4][0]) for info in infos]


def rewrite_share_link(url: str) -> str:
    """Turn Google Drive share links into direct download URLs.

    Recognized shapes:
      https://drive.google.com/file/d/<id>/view?...
      https://drive.google.com/open?id=<id>
    Only the file id survives; the rest of the original URL is discarded.
    Other URLs are returned unchanged.
    """
    parts = urlsplit(url)
    if (parts.hostname or "").lower() != DRIVE_HOST:
        return url

    file_id: Optional[str] = None
    match = _DRIVE_FILE_PATH_RE.match(parts.path)
    if match:
        file_id = match.group("file_id")
    elif parts.path == "/open":
        ids = parse_qs(parts.query).get("id") or []
        if ids and _DRIVE_FILE_ID_RE.fullmatch(ids[0]):
            file_id = ids[0]

    if file_id is None:
        return url
    logger.info("Converted to Google Drive download URL")
    return DRIVE_DOWNLOAD_URL.format(file_id=file_id)


def _check_url(url: str, settings: Settings) -> None:
    if not url or not isinstance(url, str) or len(url) > 2048:
        raise InvalidUrl("Empty or oversized URL")
    if any(ch.isspace() for ch in url):
        raise InvalidUrl("Whitespace in URL")

    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as exc:
        raise InvalidUrl(f"Unparseable URL: {exc}") from exc

    if parts.scheme.lower() != "https":
        raise InvalidUrl(f"Scheme {parts.scheme!r} not allowed")
    if parts.username or parts.password:
        raise InvalidUrl("Credentials in URL")

    hostname = (parts.hostname or "").lower()
    if not hostname:
        raise InvalidUrl("URL has no hostname")

    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        if not _HOSTNAME_RE.match(hostname.rstrip(".")):
            raise InvalidUrl(f"Malformed hostname {hostname!r}")
    else:
        if is_private_address(hostname):
            audit_logger.warning("Blocked request to private address: %s", url)
            raise BlockedAddress(f"Private address {hostname}")

    if hostname.rstrip(".") not in settings.allowed_remote_hosts:
        audit_logger.warning("Blocked request to non-allow-listed host: %s", hostname)
        raise DomainNotAllowed(f"Host {hostname} not allowed")

    for ip_str in _resolve_host(hostname, port or 443):
        if is_private_address(ip_str):
            audit_logger.warning("Host %s resolves to private address %s", hostname, ip_str)
            raise BlockedAddress(f"Host {hostname} resolves to private address")


def validate_remote_url(url: str, settings: Settings) -> str:
    """Validate a client-supplied URL and return the URL to actually fetch.

    Raises InvalidUrl (bad syntax/scheme), DomainNotAllowed, BlockedAddress,
    or UpstreamFailure when the host does not resolve.
    """
    _check_url(url, settings)
    fetch_url = rewrite_share_link(url)
    if fetch_url != url:
        _check_url(fetch_url, settings)
    return fetch_url


async def _read_capped(response: httpx.Response, limit: int) -> bytes:
    declared = response.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLarge(f"Declared size {declared} exceeds {limit}")

    chunks: list[bytes] = []
    total = 0
    async for chunk in response.aiter_bytes():
        total += len(chunk)
        if total > limit:
            raise PayloadTooLarge(f"Body exceeds {limit} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


async def _fetch(
    fetch_url: str,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport],
) -> RemoteImage:
    timeout = httpx.Timeout(settings.remote_fetch_timeout_seconds)
    async with httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=False,
        transport=transport,
        headers={"User-Agent": _USER_AGENT},
    ) as client:
        current_url = fetch_url
        for _ in range(settings.max_remote_redirects + 1):
            async with client.stream("GET", current_url) as response:
                logger.info("Response status: %s", response.status_code)
                if response.is_redirect:
                    location = response.headers.get("location")
                    if not location:
                        raise UpstreamFailure("Redirect without Location")
                    next_url = urljoin(current_url, location)
                    # Redirect targets pass the same guard as client URLs.
                    await asyncio.to_thread(_check_url, next_url, settings)
                    current_url = next_url
                    continue

                if not response.is_success:
                    logger.error("Fetch failed: %s", response.status_code)
                    raise UpstreamFailure(
                        f"Upstream returned {response.status_code}",
                        status_code=response.status_code,
                    )

                data = await _read_capped(response, settings.max_remote_image_bytes)

            kind = classify_image(data)
            if kind is None:
                raise InvalidImage("Fetched bytes are not a supported image")
            logger.info("Successfully fetched: %d bytes, type: %s", len(data), kind.mime_type)
            return RemoteImage(content=data, mime_type=kind.mime_type)

    raise UpstreamFailure(f"Too many redirects (max {settings.max_remote_redirects})")


async def _guarded_fetch(
    url: str,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport],
) -> RemoteImage:
    # Validation resolves the host, so it shares the fetch deadline.
    fetch_url = await asyncio.to_thread(validate_remote_url, url, settings)
    return await _fetch(fetch_url, settings, transport)


async def fetch_remote_image(
    url: str,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RemoteImage:
    """Validate, fetch and verify a remote image.

    The whole exchange, from the initial DNS check through every redirect,
    is bounded by settings.remote_fetch_timeout_seconds and surfaces as
    UpstreamTimeout. Non-success upstream statuses surface as UpstreamFailure
    with the same status code.
    """
    try:
        return await asyncio.wait_for(
            _guarded_fetch(url, settings, transport),
            timeout=settings.remote_fetch_timeout_seconds,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        raise UpstreamTimeout("Remote fetch timed out") from exc
    except httpx.HTTPError as exc:
        raise UpstreamFailure(f"Remote fetch failed: {exc}") from exc
