import httpx
import pytest

from nyaa_crawler.__main__ import build_destinations, build_parser, main
from nyaa_crawler.config import AppConfig
from nyaa_crawler.exceptions import ConfigError, StorageReadError
from nyaa_crawler.models import DestinationKind
from nyaa_crawler.services.storage import TorrentStore


@pytest.fixture
def cli(tmp_path):
    db_path = tmp_path / "nyaa.db"
    absent_config = tmp_path / "absent.ini"

    def _run(*args: str) -> int:
        return main(["--config", str(absent_config), "--db", str(db_path), *args])

    _run.db_path = db_path
    return _run


@pytest.fixture
def listing_file(tmp_path, sample_listing):
    page = tmp_path / "listing.html"
    page.write_text(sample_listing, encoding="utf-8")
    return page


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_parser_url_and_file_are_exclusive():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["scrape", "--url", "https://nyaa.si/", "--file", "x.html"])


def test_parser_regex_alias():
    args = build_parser().parse_args(["query", "--regex", "Frieren"])
    assert args.pattern == "Frieren"
    assert args.limit == 10


def test_scrape_from_file(cli, listing_file, capsys):
    assert cli("scrape", "--file", str(listing_file)) == 0

    out = capsys.readouterr().out
    assert "Scraped 2 torrents" in out
    assert "Total torrents in database: 2" in out
    assert TorrentStore(str(cli.db_path)).count_all() == 2


def test_scrape_fetch_failure_exits_non_zero(cli, mocker):
    mocker.patch("asyncio.sleep", mocker.AsyncMock())
    client = mocker.MagicMock()
    client.__aenter__ = mocker.AsyncMock(return_value=client)
    client.__aexit__ = mocker.AsyncMock(return_value=False)
    client.get = mocker.AsyncMock(side_effect=httpx.ConnectError("refused"))
    mocker.patch("httpx.AsyncClient", return_value=client)

    assert cli("scrape", "--url", "https://nyaa.si/") == 1
    assert client.get.await_count == 3


def test_scrape_rejects_bad_proxy(cli, listing_file):
    assert cli("scrape", "--file", str(listing_file), "--proxy", "ftp://proxy:21") == 1


def test_query_without_database_fails(cli):
    assert cli("query") == 1
    assert not cli.db_path.exists()


def test_query_lists_matching_rows(cli, listing_file, capsys):
    cli("scrape", "--file", str(listing_file))
    capsys.readouterr()

    assert cli("query", "--pattern", "another show") == 0

    out = capsys.readouterr().out
    assert "Torrents matching pattern 'another show' (limit 10):" in out
    assert "2041480" in out
    assert "2041474" not in out
    assert "Found 1 matching torrents" in out


def test_query_dry_run_reports_without_sending(cli, listing_file, capsys, mocker):
    cli("scrape", "--file", str(listing_file))
    capsys.readouterr()
    factory = mocker.patch("httpx.AsyncClient")

    code = cli(
        "query", "--limit", "1", "--aria2", "tok@http://localhost:6800/jsonrpc", "--dry-run"
    )

    assert code == 0
    factory.assert_not_called()
    out = capsys.readouterr().out
    assert "Latest 1 torrents:" in out
    assert "Dry run mode - would send 1 magnet links to aria2:" in out
    store = TorrentStore(str(cli.db_path))
    assert len(store.select_undelivered(DestinationKind.ARIA2)) == 2


def test_query_rejects_malformed_destination(cli, listing_file):
    cli("scrape", "--file", str(listing_file))
    assert cli("query", "--transmission", "user@http://localhost:9091/rpc") == 1


def test_build_destinations():
    config = AppConfig(
        transmission_url="http://localhost:9091/transmission/rpc",
        aria2_url="tok@http://localhost:6800/jsonrpc",
    )

    kinds = [d.kind for d in build_destinations(config)]

    assert kinds == [DestinationKind.TRANSMISSION, DestinationKind.ARIA2]
    assert build_destinations(AppConfig()) == []


def test_build_destinations_propagates_config_errors():
    with pytest.raises(ConfigError):
        build_destinations(AppConfig(aria2_url="ftp://nowhere"))


def test_parser_accepts_db_before_or_after_command():
    parser = build_parser()

    assert parser.parse_args(["scrape", "--db", "after.db"]).db_path == "after.db"
    assert parser.parse_args(["--db", "before.db", "query"]).db_path == "before.db"
    assert parser.parse_args(["query"]).db_path is None


def test_scrape_with_db_after_command(tmp_path, listing_file):
    db_path = tmp_path / "other.db"

    code = main(
        [
            "--config", str(tmp_path / "absent.ini"),
            "scrape", "--file", str(listing_file), "--db", str(db_path),
        ]
    )

    assert code == 0
    assert TorrentStore(str(db_path)).count_all() == 2


def test_query_read_failure_exits_non_zero(cli, listing_file, mocker):
    cli("scrape", "--file", str(listing_file))
    mocker.patch.object(
        TorrentStore, "_select", side_effect=StorageReadError("database is locked")
    )

    assert cli("query") == 1
