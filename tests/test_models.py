from nyaa_crawler.models import DestinationKind, Torrent


def test_destination_columns_are_derived_from_kind():
    assert DestinationKind.TRANSMISSION.column == "delivered_transmission"
    assert DestinationKind.ARIA2.column == "delivered_aria2"
    assert DestinationKind("aria2") is DestinationKind.ARIA2


def test_new_torrent_is_undelivered_everywhere():
    torrent = Torrent(id=1, magnet="magnet:?xt=urn:btih:x")

    assert torrent.is_valid
    assert torrent.has_magnet
    assert not any(torrent.is_delivered(kind) for kind in DestinationKind)


def test_delivery_state_is_not_shared_between_instances():
    first, second = Torrent(id=1), Torrent(id=2)
    first.delivered[DestinationKind.ARIA2] = True

    assert not second.is_delivered(DestinationKind.ARIA2)


def test_invalid_and_magnetless_torrents():
    assert not Torrent(id=0).is_valid
    assert not Torrent(id=-3).is_valid
    assert not Torrent(id=4).has_magnet
