# nyaa_crawler/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class DestinationKind(str, Enum):
    """Download daemons a magnet link can be delivered to."""

    TRANSMISSION = "transmission"
    ARIA2 = "aria2"

    @property
    def column(self) -> str:
        """Name of the delivery-state column tracking this destination."""
        return f"delivered_{self.value}"

    @property
    def label(self) -> str:
        return "Transmission" if self is DestinationKind.TRANSMISSION else "aria2"


def _undelivered() -> dict[DestinationKind, bool]:
    return {kind: False for kind in DestinationKind}


@dataclass
class Torrent:
    """One entry of a torrent listing page."""

    id: int
    name: str = ""
    magnet: str = ""
    category: str = ""
    size: str = ""
    date: str = ""
    # Only flipped to True after a confirmed send to that destination.
    delivered: dict[DestinationKind, bool] = field(default_factory=_undelivered)

    @property
    def is_valid(self) -> bool:
        return self.id > 0

    @property
    def has_magnet(self) -> bool:
        return bool(self.magnet)

    def is_delivered(self, kind: DestinationKind) -> bool:
        return self.delivered.get(kind, False)
