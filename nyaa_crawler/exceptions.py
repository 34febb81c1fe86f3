# nyaa_crawler/exceptions.py

from __future__ import annotations

from typing import Any


class CrawlerError(Exception):
    """Base class for every error raised by the crawler."""


class ConfigError(CrawlerError):
    """Invalid configuration value (proxy URL, destination URL, layout file...)."""


class StatusError(CrawlerError):
    """An HTTP response arrived but its status was not the expected one."""

    def __init__(self, code: int, reason: str = "") -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"status code error: {code} {reason}".rstrip())


class FetchError(CrawlerError):
    """A page could not be retrieved after all attempts were used."""

    def __init__(self, url: str, attempts: int, last_error: BaseException | None):
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"failed to fetch {url} after {attempts} attempt(s): {last_error}"
        )


class ParseError(CrawlerError):
    """The listing document could not be parsed at all."""


class StorageInitError(CrawlerError):
    """The backing database could not be opened or its schema created."""


class StorageReadError(CrawlerError):
    """A query against the backing database failed."""


class StorageWriteError(CrawlerError):
    """A write against the backing database failed."""


class DispatchSendError(CrawlerError):
    """A magnet link could not be handed to a download daemon."""

    def __init__(
        self,
        torrent_id: int,
        destination: Any,
        reason: str,
        status: int | None = None,
    ) -> None:
        self.torrent_id = torrent_id
        self.destination = destination
        self.reason = reason
        self.status = status
        label = getattr(destination, "value", destination)
        detail = f" (status {status})" if status is not None else ""
        super().__init__(f"torrent {torrent_id} -> {label}: {reason}{detail}")
