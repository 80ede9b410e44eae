from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

from avatar_ingest.core.logging import get_logger

from .errors import FetchError, SourceError

__all__ = [
    "ALLOWED_CONTENT_TYPES",
    "ParsedUrl",
    "PullResult",
    "SourceFetcher",
    "parse_url",
]

ALLOWED_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})

logger = get_logger(component="source_fetcher")


@dataclass(frozen=True, slots=True)
class ParsedUrl:
    channel_id: int
    attachment_id: int
    filename: str
    full_url: str


@dataclass(frozen=True, slots=True)
class PullResult:
    data: bytes
    content_type: str
    last_modified: Optional[str] = None


def _parse_id(raw: str, label: str) -> int:
    if not (raw.isascii() and raw.isdigit()):
        raise SourceError(f"invalid cdn url: bad {label}", stage="requested")
    return int(raw)


def parse_url(url: str, allowed_hosts: Iterable[str]) -> ParsedUrl:
    """Validate an upstream attachment URL and pull the ids out of its path.

    Accepts ``https://<cdn host>/<bucket>/<channel_id>/<attachment_id>/<filename>``.
    The query string is kept since signed CDN links need it to resolve.
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError as exc:
        raise SourceError("invalid cdn url", stage="requested") from exc

    if parts.scheme != "https" or (parts.hostname or "") not in set(allowed_hosts):
        raise SourceError("invalid cdn url: not a supported cdn host", stage="requested")

    segments = parts.path.split("/")[1:]
    if len(segments) != 4 or not all(segments):
        raise SourceError("invalid cdn url: unexpected path", stage="requested")

    _, channel, attachment, filename = segments
    return ParsedUrl(
        channel_id=_parse_id(channel, "channel id"),
        attachment_id=_parse_id(attachment, "attachment id"),
        filename=filename,
        full_url=urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, "")),
    )


class SourceFetcher:
    """Thin GET wrapper around the upstream CDN with size and type checks."""

    def __init__(
        self,
        *,
        timeout_s: float = 3.0,
        max_bytes: int = 4_000_000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.max_bytes = max_bytes
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), transport=transport)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def fetch(self, parsed: ParsedUrl) -> PullResult:
        url = parsed.full_url
        started = time.perf_counter()
        try:
            async with self.client.stream("GET", url) as response:
                headers_ms = round((time.perf_counter() - started) * 1000)
                status = response.status_code
                if status != httpx.codes.OK:
                    retryable = status >= 500 or status == httpx.codes.TOO_MANY_REQUESTS
                    error_cls = FetchError if retryable else SourceError
                    raise error_cls(
                        f"cdn responded with status code: {status}",
                        status_code=status,
                        stage="requested",
                    )

                raw_length = response.headers.get("Content-Length")
                if raw_length is None or not (raw_length.isascii() and raw_length.isdigit()):
                    raise SourceError("response is missing header: Content-Length", stage="requested")
                size = int(raw_length)
                if size > self.max_bytes:
                    raise SourceError(f"image file size too large ({size} > {self.max_bytes})", stage="requested")

                content_type = response.headers.get("Content-Type", "").split(";")[0].strip().lower()
                if not content_type:
                    raise SourceError("response is missing header: Content-Type", stage="requested")
                if content_type not in ALLOWED_CONTENT_TYPES:
                    raise SourceError(f"unsupported content type: {content_type}", stage="requested")

                body = await response.aread()
        except httpx.TransportError as exc:
            logger.error("cdn_network_error", url=url, error=str(exc))
            raise FetchError(f"network error: {exc}", stage="requested") from exc

        if len(body) != size:
            raise FetchError("server responded with wrong length", stage="requested")

        logger.info(
            "cdn_fetched",
            url=url,
            status=status,
            bytes=len(body),
            headers_ms=headers_ms,
            body_ms=round((time.perf_counter() - started) * 1000) - headers_ms,
        )
        return PullResult(
            data=body,
            content_type=content_type,
            last_modified=response.headers.get("Last-Modified"),
        )
