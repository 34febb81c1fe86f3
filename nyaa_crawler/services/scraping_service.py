# nyaa_crawler/services/scraping_service.py

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..config import logger
from ..exceptions import StorageWriteError
from ..models import Torrent
from .extractor import ListingExtractor
from .fetcher import PageFetcher
from .storage import TorrentStore


@dataclass
class ScrapeReport:
    """What a single scrape produced."""

    source: str
    extracted: int = 0
    inserted: list[Torrent] = field(default_factory=list)


class ScrapeService:
    """Fetch -> extract -> store, for one listing page at a time."""

    def __init__(
        self,
        store: TorrentStore,
        fetcher: PageFetcher,
        extractor: ListingExtractor | None = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.extractor = extractor or ListingExtractor()

    async def scrape_url(self, url: str) -> ScrapeReport:
        """Scrape a listing page from the web. ``FetchError``/``ParseError`` propagate."""
        logger.info(f"[SCRAPE] Starting to scrape from web: {url}")
        document = await self.fetcher.fetch(url)
        return self._ingest(url, document)

    def scrape_file(self, path: str | Path) -> ScrapeReport:
        """Scrape a listing page previously saved to disk."""
        logger.info(f"[SCRAPE] Starting to scrape from file: {path}")
        document = self.fetcher.read_file(path)
        return self._ingest(str(path), document)

    def _ingest(self, source: str, document: bytes) -> ScrapeReport:
        torrents = self.extractor.extract(document)
        report = ScrapeReport(source=source, extracted=len(torrents))
        logger.info(f"[SCRAPE] Extracted {len(torrents)} torrents from {source}")

        try:
            report.inserted = self.store.insert_new(torrents)
        except StorageWriteError as exc:
            logger.error(f"[SCRAPE] Could not store torrents from {source}: {exc}")
            raise

        for torrent in report.inserted:
            logger.debug(f"[SCRAPE] Inserted torrent: {torrent.name}")
        return report
