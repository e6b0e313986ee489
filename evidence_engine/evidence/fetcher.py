"""Async httpx fetcher for URL imports."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from evidence_engine.config import settings
from evidence_engine.events import emit
from evidence_engine.exceptions import FetchError, ValidationError
from evidence_engine.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")


@dataclass(frozen=True)
class FetchedResource:
    url: str
    final_url: str
    status_code: int
    content_type: str
    content: bytes


def validate_url(url: str) -> str:
    """Return the stripped URL, or raise ValidationError for non-http(s) or host-less URLs."""
    candidate = (url or "").strip()
    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in ALLOWED_SCHEMES or not parsed.netloc:
        msg = f"Only http and https URLs can be imported: {candidate or '(empty)'}"
        raise ValidationError(msg)
    return candidate


class UrlFetcher:
    """GETs a page under one wall-clock deadline, with a body size cap and bounded redirects."""

    def __init__(
        self,
        timeout: float | None = None,
        user_agent: str | None = None,
        max_redirects: int | None = None,
        max_bytes: int | None = None,
    ) -> None:
        cfg = settings.fetch
        self._total_timeout = timeout or cfg.fetch_timeout
        self._timeout = httpx.Timeout(self._total_timeout, connect=min(self._total_timeout, 10.0))
        self._user_agent = user_agent or cfg.fetch_user_agent
        self._max_redirects = max_redirects if max_redirects is not None else cfg.fetch_max_redirects
        self._max_bytes = max_bytes if max_bytes is not None else settings.scanner.max_file_size

    async def fetch(self, url: str) -> FetchedResource:
        """Fetch a URL.

        The timeout bounds the whole call (connect, redirects and body), not
        each read. The body is streamed and abandoned once it passes max_bytes.

        Raises:
            ValidationError: Not an http(s) URL.
            FetchError: Timeout, transport failure, oversized body, or HTTP
                status >= 400 (the message embeds the status code).
        """
        target = validate_url(url)
        await emit(SystemEvent(
            event_type=EventType.EXTERNAL_FETCH,
            data={"host": urlparse(target).netloc},
            source_module="evidence.fetcher",
        ))

        try:
            async with asyncio.timeout(self._total_timeout):
                async with httpx.AsyncClient(
                    timeout=self._timeout,
                    follow_redirects=True,
                    max_redirects=self._max_redirects,
                    headers={"User-Agent": self._user_agent},
                ) as client:
                    async with client.stream("GET", target) as response:
                        if response.status_code >= 400:
                            logger.warning("Fetch of %s returned HTTP %d", target, response.status_code)
                            raise FetchError(
                                f"HTTP {response.status_code}: {response.reason_phrase or 'error'} fetching {target}",
                                status_code=response.status_code,
                            )
                        content = await self._read_capped(response, target)
        except (TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("Fetch timeout for %s after %.1fs", target, self._total_timeout)
            raise FetchError(f"Timed out fetching {target}") from exc
        except httpx.HTTPError as exc:
            logger.warning("Fetch failed for %s: %s", target, exc)
            raise FetchError(f"Failed to fetch {target}: {exc}") from exc

        content_type = response.headers.get("content-type", "")
        logger.info("Fetched %s (%d bytes, %s)", target, len(content), content_type or "no content-type")
        return FetchedResource(
            url=target,
            final_url=str(response.url),
            status_code=response.status_code,
            content_type=content_type,
            content=content,
        )

    async def _read_capped(self, response: httpx.Response, target: str) -> bytes:
        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self._max_bytes:
            raise FetchError(f"Response from {target} declares {declared} bytes, over the {self._max_bytes} byte limit")

        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > self._max_bytes:
                logger.warning("Fetch of %s abandoned after %d bytes", target, received)
                raise FetchError(f"Response from {target} exceeds the {self._max_bytes} byte limit")
            chunks.append(chunk)
        return b"".join(chunks)


# Module-level singleton
url_fetcher = UrlFetcher()
