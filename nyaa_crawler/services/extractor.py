# nyaa_crawler/services/extractor.py

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from bs4 import BeautifulSoup, Tag
from bs4.builder import ParserRejectedMarkup

from ..config import logger
from ..exceptions import ConfigError, ParseError
from ..models import Torrent


@dataclass(frozen=True)
class ListingLayout:
    """CSS selectors and markers describing where each field lives in a listing row.

    All column positions of the source site are confined to this object, so a
    change in the site's markup only needs a new layout.
    """

    row: str = "tbody tr"
    title_links: str = "td:nth-of-type(2) a"
    category_link: str = "td:nth-of-type(1) a"
    action_links: str = "td:nth-of-type(3) a"
    size: str = "td:nth-of-type(4)"
    date: str = "td:nth-of-type(5)"
    comments_marker: str = "#comments"
    id_pattern: str = r"/view/(\d+)"
    magnet_prefix: str = "magnet:"


NYAA_LAYOUT = ListingLayout()

# Cache for layout files to avoid repeated disk reads.
_layout_cache: dict[Path, ListingLayout] = {}


def load_layout(layout_path: Path | str) -> ListingLayout:
    """Load a listing layout override from YAML.

    Keys missing from the file keep the nyaa defaults; unknown keys are
    rejected. Layouts are cached per resolved path.
    """
    resolved_path = Path(layout_path).resolve()
    cached = _layout_cache.get(resolved_path)
    if cached is not None:
        return cached

    if not resolved_path.exists():
        raise ConfigError(f"Listing layout not found: {resolved_path}")

    try:
        with resolved_path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Listing layout {resolved_path} must be a mapping")

    known = {f.name for f in fields(ListingLayout)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Layout has unknown keys: {', '.join(sorted(unknown))}")
    if any(not isinstance(value, str) for value in data.values()):
        raise ConfigError(f"Layout values in {resolved_path} must be strings")

    layout = replace(NYAA_LAYOUT, **data)
    try:
        re.compile(layout.id_pattern)
    except re.error as exc:
        raise ConfigError(f"Invalid id_pattern '{layout.id_pattern}': {exc}") from exc

    _layout_cache[resolved_path] = layout
    logger.info(f"[EXTRACT] Loaded listing layout from {resolved_path}")
    return layout


class ListingExtractor:
    """Turns a listing page into ``Torrent`` records. Never touches storage."""

    def __init__(self, layout: ListingLayout = NYAA_LAYOUT) -> None:
        self.layout = layout
        self._id_re = re.compile(layout.id_pattern)

    def extract(self, document: str | bytes) -> list[Torrent]:
        return list(self.iter_torrents(document))

    def iter_torrents(self, document: str | bytes) -> Iterator[Torrent]:
        """Lazily yield one ``Torrent`` per listing row that carries a positive id.

        The document is parsed up front so a ``ParseError`` is raised by this
        call rather than on the first iteration.
        """
        return self._iter_rows(self._parse(document))

    def _iter_rows(self, soup: BeautifulSoup) -> Iterator[Torrent]:
        rows = [r for r in soup.select(self.layout.row) if isinstance(r, Tag)]
        logger.debug(
            f"[EXTRACT] Found {len(rows)} rows using selector '{self.layout.row}'"
        )

        for index, row in enumerate(rows):
            try:
                torrent = self.parse_row(row)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"[EXTRACT] Failed to parse row {index}: {exc}")
                continue
            if not torrent.is_valid:
                logger.debug(f"[EXTRACT] Dropping row {index}: no listing id")
                continue
            yield torrent

    def parse_row(self, row: Tag) -> Torrent:
        """Extract every field of a single row. The id is 0 when none is found."""
        title_link = self._title_link(row)

        torrent_id = 0
        name = ""
        if title_link is not None:
            href = title_link.get("href")
            if isinstance(href, str):
                match = self._id_re.search(href)
                if match:
                    torrent_id = int(match.group(1))
            name = title_link.get_text().strip()

        category = ""
        category_link = row.select_one(self.layout.category_link)
        if isinstance(category_link, Tag):
            title_attr = category_link.get("title")
            if isinstance(title_attr, str):
                category = title_attr

        return Torrent(
            id=torrent_id,
            name=name,
            magnet=self._magnet(row),
            category=category,
            size=self._extract_text(row, self.layout.size),
            date=self._extract_text(row, self.layout.date),
        )

    def _parse(self, document: str | bytes) -> BeautifulSoup:
        if not isinstance(document, (str, bytes)):
            raise ParseError(
                f"Expected HTML text or bytes, got {type(document).__name__}"
            )
        try:
            return BeautifulSoup(document, "lxml")
        except ParserRejectedMarkup as exc:
            raise ParseError(f"Listing document rejected by parser: {exc}") from exc

    def _title_link(self, row: Tag) -> Tag | None:
        links = [a for a in row.select(self.layout.title_links) if isinstance(a, Tag)]
        if not links:
            return None
        first = links[0]
        first_href = first.get("href")
        # A leading comment-count link points at the comments fragment; the
        # actual title link follows it.
        if (
            isinstance(first_href, str)
            and self.layout.comments_marker in first_href
            and len(links) > 1
        ):
            return links[1]
        return first

    def _magnet(self, row: Tag) -> str:
        for link in row.select(self.layout.action_links):
            if not isinstance(link, Tag):
                continue
            href = link.get("href")
            if isinstance(href, str) and href.startswith(self.layout.magnet_prefix):
                return href
        return ""

    def _extract_text(self, root: Tag, selector: Any) -> str:
        tag = root.select_one(selector) if isinstance(selector, str) else None
        return tag.get_text().strip() if isinstance(tag, Tag) else ""
