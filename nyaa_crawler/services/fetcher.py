# nyaa_crawler/services/fetcher.py

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from ..config import DEFAULT_MAX_ATTEMPTS, DEFAULT_TIMEOUT, logger, validate_proxy_url
from ..exceptions import ConfigError, FetchError, StatusError

_BROWSER_HEADERS = {
    # Listing sites tend to answer 403 to bare HTTP clients; mimic a desktop browser.
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/115.0 Safari/537.36"
    ),
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def client_options(
    proxy_url: str | None, timeout: float, **extra: object
) -> dict[str, object]:
    """Keyword arguments for an ``httpx.AsyncClient`` honouring the proxy setting.

    httpx picks the transport from the proxy scheme: ``socks5://`` tunnels the
    TCP connection (needs the ``socks`` extra), ``http(s)://`` uses CONNECT.
    """
    options: dict[str, object] = {"timeout": timeout, **extra}
    if proxy_url:
        options["proxy"] = proxy_url
    return options


class PageFetcher:
    """Fetches a single listing page with a bounded, linearly backing-off retry."""

    def __init__(
        self,
        proxy_url: str | None = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = DEFAULT_TIMEOUT,
        backoff_unit: float = 1.0,
    ) -> None:
        if max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        self.proxy_url = validate_proxy_url(proxy_url)
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.backoff_unit = backoff_unit

    async def fetch(self, url: str) -> bytes:
        """
        GETs ``url`` and returns the body of the first 200 response.

        Transport errors and non-200 statuses are retried after sleeping
        ``attempt * backoff_unit`` seconds. Once ``max_attempts`` attempts have
        failed, the last error is raised wrapped in a ``FetchError``.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.backoff_unit, increment=self.backoff_unit),
            retry=retry_if_exception_type((httpx.HTTPError, StatusError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=_sleep,
            reraise=True,
        )

        async with httpx.AsyncClient(
            **client_options(self.proxy_url, self.timeout, follow_redirects=True)
        ) as client:
            try:
                return await retrying(self._get, client, url)
            except (httpx.HTTPError, StatusError) as exc:
                logger.error(
                    f"[FETCH] Giving up on {url} after {self.max_attempts} attempts: {exc}"
                )
                raise FetchError(url, self.max_attempts, exc) from exc

    async def _get(self, client: httpx.AsyncClient, url: str) -> bytes:
        """One attempt. Non-200 responses raise ``StatusError`` so they are retried."""
        logger.debug(f"[FETCH] GET {url}")
        response = await client.get(url, headers=_BROWSER_HEADERS)
        if response.status_code != 200:
            raise StatusError(response.status_code, response.reason_phrase)
        return response.content

    def read_file(self, path: str | Path) -> bytes:
        """Loads a listing page saved to disk."""
        try:
            return Path(path).read_bytes()
        except OSError as exc:
            raise FetchError(str(path), 1, exc) from exc
