import sys
from collections.abc import Callable
from pathlib import Path

import pytest

# Ensure root path is available for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from nyaa_crawler.models import Torrent  # noqa: E402
from nyaa_crawler.services.storage import TorrentStore  # noqa: E402


@pytest.fixture(autouse=True)
def _no_proxy_env(monkeypatch):
    monkeypatch.delenv("PROXY_URL", raising=False)


@pytest.fixture
def store(tmp_path: Path) -> TorrentStore:
    return TorrentStore(str(tmp_path / "nyaa.db"))


@pytest.fixture
def make_torrent() -> Callable[..., Torrent]:
    def _make(torrent_id: int, **fields) -> Torrent:
        fields.setdefault("name", f"Torrent {torrent_id}")
        fields.setdefault("magnet", f"magnet:?xt=urn:btih:{torrent_id:040d}")
        fields.setdefault("category", "Anime - English-translated")
        fields.setdefault("size", "1.4 GiB")
        fields.setdefault("date", "2026-01-13 12:00")
        return Torrent(id=torrent_id, **fields)

    return _make


@pytest.fixture
def make_row() -> Callable[..., str]:
    """Builds one listing row shaped like the nyaa.si torrent table."""

    def _make(
        torrent_id: int | None,
        name: str,
        *,
        magnet: str | None = None,
        category: str = "Anime - English-translated",
        comments: int = 0,
        size: str = "1.4 GiB",
        date: str = "2026-01-13 12:00",
    ) -> str:
        view = f"/view/{torrent_id}" if torrent_id is not None else "/user/someone"
        comment_link = (
            f'<a href="{view}#comments" class="comments" title="{comments} comments">'
            f'<i class="fa fa-comments-o"></i>{comments}</a>'
            if comments
            else ""
        )
        magnet_link = (
            f'<a href="{magnet}"><i class="fa fa-fw fa-magnet"></i></a>' if magnet else ""
        )
        download = torrent_id if torrent_id is not None else 0
        return (
            '<tr class="default">'
            f'<td><a href="/?c=1_2" title="{category}">'
            f'<img src="/static/img/icons/nyaa/1_2.png" alt="{category}"></a></td>'
            f'<td colspan="2">{comment_link}'
            f'<a href="{view}" title="{name}">  {name}  </a></td>'
            '<td class="text-center">'
            f'<a href="/download/{download}.torrent"><i class="fa fa-fw fa-download"></i></a>'
            f"{magnet_link}</td>"
            f'<td class="text-center">  {size} </td>'
            f'<td class="text-center" data-timestamp="1768305600">{date}</td>'
            '<td class="text-center">120</td>'
            '<td class="text-center">8</td>'
            '<td class="text-center">2300</td>'
            "</tr>"
        )

    return _make


@pytest.fixture
def make_listing() -> Callable[[list[str]], str]:
    def _make(rows: list[str]) -> str:
        return (
            "<html><body>"
            '<table class="table torrent-list"><thead><tr>'
            "<th>Category</th><th>Name</th><th>Link</th><th>Size</th><th>Date</th>"
            "<th>S</th><th>L</th><th>C</th>"
            "</tr></thead><tbody>" + "".join(rows) + "</tbody></table>"
            "</body></html>"
        )

    return _make


@pytest.fixture
def sample_listing(make_row, make_listing) -> str:
    """Two valid rows and one row without a /view/<id> link."""
    return make_listing(
        [
            make_row(
                2041474,
                "[SubsPlease] Example Show - 01 (1080p) [ABCD1234].mkv",
                magnet="magnet:?xt=urn:btih:aaaa&amp;dn=Example+Show+01",
                comments=3,
            ),
            make_row(
                2041480,
                "[Erai-raws] Another Show - 12 [1080p].mkv",
                magnet="magnet:?xt=urn:btih:bbbb&amp;dn=Another+Show+12",
                category="Anime - Raw",
                size="700.2 MiB",
            ),
            make_row(None, "Broken row without a view link"),
        ]
    )
