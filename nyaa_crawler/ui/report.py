# nyaa_crawler/ui/report.py

from __future__ import annotations

from collections.abc import Sequence

from ..models import DestinationKind, Torrent
from ..services.dispatch import DispatchReport
from ..services.scraping_service import ScrapeReport

_NAME_WIDTH = 49


def truncate(text: str, max_len: int) -> str:
    """Cuts ``text`` down to ``max_len`` characters."""
    return text if len(text) <= max_len else text[:max_len]


def format_torrent_table(torrents: Sequence[Torrent]) -> str:
    """Fixed-width table of torrents with one delivery column per destination."""
    status_headers = [f"To {kind.label}" for kind in DestinationKind]
    header = (
        f"{'ID':<10} {'Name':<50} {'Category':<25} {'Size':<10} {'Date':<16} "
        + " ".join(f"{h:<14}" for h in status_headers)
    ).rstrip()
    lines = [header, "-" * len(header)]

    for t in torrents:
        statuses = " ".join(
            f"{'Yes' if t.is_delivered(kind) else 'No':<14}" for kind in DestinationKind
        )
        line = (
            f"{t.id:<10} {truncate(t.name, _NAME_WIDTH):<50} {t.category:<25} "
            f"{t.size:<10} {t.date:<16} {statuses}"
        )
        lines.append(line.rstrip())
    return "\n".join(lines)


def format_statistics(
    total: int, with_magnet: int, matching: int | None = None
) -> str:
    lines = []
    if matching is not None:
        lines.append(f"Found {matching} matching torrents")
    lines.append(f"Total torrents in database: {total}")
    lines.append(f"Torrents with magnet links: {with_magnet}")
    return "\n".join(lines)


def format_scrape_summary(report: ScrapeReport, preview: int = 5) -> str:
    """Inserted count plus the first few newly stored torrents."""
    lines = [
        f"Scraped {report.extracted} torrents from {report.source}, "
        f"{len(report.inserted)} new"
    ]
    for t in report.inserted[:preview]:
        category = f" ({t.category})" if t.category else ""
        lines.append(f"Torrent {t.id}: {t.name}{category}")
    return "\n".join(lines)


def format_dispatch_report(report: DispatchReport) -> str:
    label = report.kind.label
    if report.error and not report.attempted:
        return f"Dispatch to {label} aborted: {report.error}"
    if not report.pending:
        return f"No unsent magnet links for {label}"

    if report.dry_run:
        lines = [
            f"Dry run mode - would send {len(report.pending)} magnet links to {label}:"
        ]
        lines.extend(f"{i}. {t.magnet}" for i, t in enumerate(report.pending, start=1))
        return "\n".join(lines)

    lines = [
        f"Successfully sent {len(report.succeeded)} out of "
        f"{len(report.pending)} magnet links to {label}"
    ]
    if report.failed:
        lines.append(
            f"Failed torrent ids: {', '.join(str(i) for i in report.failed)}"
        )
    lines.append(f"Marked {len(report.marked)} torrent records as sent to {label}")
    if report.mark_failed:
        lines.append(
            "Sent but not recorded: "
            + ", ".join(str(i) for i in report.mark_failed)
        )
    if report.error:
        lines.append(f"Dispatch to {label} aborted: {report.error}")
    return "\n".join(lines)
