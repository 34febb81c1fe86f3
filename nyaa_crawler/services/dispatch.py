# nyaa_crawler/services/dispatch.py

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import httpx

from ..config import DEFAULT_TIMEOUT, logger, validate_proxy_url
from ..exceptions import ConfigError, DispatchSendError, StorageWriteError
from ..models import DestinationKind, Torrent
from .fetcher import client_options
from .storage import TorrentStore

SESSION_HEADER = "X-Transmission-Session-Id"
ARIA2_REQUEST_ID = "nyaa-crawler"


@dataclass
class Destination:
    """A download daemon endpoint plus the secret needed to talk to it."""

    kind: DestinationKind
    endpoint: str
    username: str = ""
    password: str = field(default="", repr=False)
    token: str = field(default="", repr=False)


def split_secret_prefix(raw_url: str) -> tuple[str, str]:
    """
    Splits ``secret@scheme://host/...`` into ``(endpoint, secret)``.

    The string is only split when its first ``@`` comes before the first
    ``://``; otherwise (including ``http://user@host`` forms) the whole string
    is returned as the endpoint with an empty secret.
    """
    at_index = raw_url.find("@")
    proto_index = raw_url.find("://")
    if at_index != -1 and proto_index != -1 and at_index < proto_index:
        return raw_url[at_index + 1 :], raw_url[:at_index]
    return raw_url, ""


def parse_destination(kind: DestinationKind | str, raw_url: str) -> Destination:
    """Builds a ``Destination`` from a ``user:pass@url`` or ``token@url`` string."""
    kind = DestinationKind(kind)
    endpoint, secret = split_secret_prefix(raw_url.strip())

    try:
        parts = urlsplit(endpoint)
        port = parts.port
    except ValueError as exc:
        raise ConfigError(f"Malformed {kind.label} URL '{endpoint}': {exc}") from exc
    if (
        parts.scheme.lower() not in ("http", "https")
        or not parts.hostname
        or port == 0
    ):
        raise ConfigError(
            f"{kind.label} RPC URL must look like http://host:port/path, got '{endpoint}'"
        )

    if kind is DestinationKind.TRANSMISSION:
        if not secret:
            return Destination(kind, endpoint)
        username, sep, password = secret.partition(":")
        if not sep:
            raise ConfigError(
                f"{kind.label} credentials must be given as user:pass@{endpoint}"
            )
        return Destination(kind, endpoint, username=username, password=password)

    return Destination(kind, endpoint, token=secret)


class RpcClient(ABC):
    """Hands magnet links to one download daemon over a shared HTTP client."""

    def __init__(self, destination: Destination, http: httpx.AsyncClient) -> None:
        self.destination = destination
        self.http = http

    @property
    def kind(self) -> DestinationKind:
        return self.destination.kind

    @abstractmethod
    async def add_magnet(self, torrent: Torrent) -> None:
        """
        Submit ``torrent.magnet`` to the daemon.

        Raises:
            DispatchSendError: if the daemon did not confirm the addition.
        """

    async def _post(
        self,
        torrent: Torrent,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> httpx.Response:
        request_headers = {"Content-Type": "application/json"}
        if headers:
            request_headers.update(headers)
        try:
            return await self.http.post(
                self.destination.endpoint,
                json=payload,
                headers=request_headers,
                auth=auth,
            )
        except httpx.HTTPError as exc:
            raise DispatchSendError(
                torrent.id, self.kind, f"request failed: {exc}"
            ) from exc

    def _json(self, torrent: Torrent, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise DispatchSendError(
                torrent.id,
                self.kind,
                f"failed to parse response JSON: {exc}",
                response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise DispatchSendError(
                torrent.id,
                self.kind,
                f"unexpected response payload {data!r}",
                response.status_code,
            )
        return data


class TransmissionClient(RpcClient):
    """Transmission RPC with its 409 session-id handshake."""

    def __init__(self, destination: Destination, http: httpx.AsyncClient) -> None:
        super().__init__(destination, http)
        # Remembered across records so only the first add of a pass pays for
        # the handshake.
        self.session_id: str | None = None

    async def add_magnet(self, torrent: Torrent) -> None:
        payload = {"method": "torrent-add", "arguments": {"filename": torrent.magnet}}

        response = await self._send(torrent, payload)
        if response.status_code == 409:
            session_id = response.headers.get(SESSION_HEADER)
            if not session_id:
                raise DispatchSendError(
                    torrent.id,
                    self.kind,
                    "409 Conflict without a session id header",
                    409,
                )
            self.session_id = session_id
            logger.debug(f"[DISPATCH] Transmission session id refreshed for {torrent.id}")
            response = await self._send(torrent, payload)

        if response.status_code != 200:
            raise DispatchSendError(
                torrent.id,
                self.kind,
                f"unexpected response: {response.text[:200]!r}",
                response.status_code,
            )

        data = self._json(torrent, response)
        if data.get("result") != "success":
            raise DispatchSendError(
                torrent.id,
                self.kind,
                f"Transmission returned result: {data.get('result')!r}",
                response.status_code,
            )

    async def _send(self, torrent: Torrent, payload: dict[str, Any]) -> httpx.Response:
        headers = {SESSION_HEADER: self.session_id} if self.session_id else None
        auth = None
        if self.destination.username:
            auth = (self.destination.username, self.destination.password)
        return await self._post(torrent, payload, headers=headers, auth=auth)


class Aria2Client(RpcClient):
    """aria2 JSON-RPC 2.0 with secret-token authorization."""

    async def add_magnet(self, torrent: Torrent) -> None:
        payload = {
            "jsonrpc": "2.0",
            "id": ARIA2_REQUEST_ID,
            "method": "aria2.addUri",
            "params": [f"token:{self.destination.token}", [torrent.magnet]],
        }
        response = await self._post(torrent, payload)

        if not response.is_success:
            raise DispatchSendError(
                torrent.id,
                self.kind,
                f"unexpected response: {response.text[:200]!r}",
                response.status_code,
            )

        data = self._json(torrent, response)
        if data.get("error") is not None:
            raise DispatchSendError(
                torrent.id,
                self.kind,
                f"aria2 returned error: {data['error']}",
                response.status_code,
            )


_CLIENTS: dict[DestinationKind, type[RpcClient]] = {
    DestinationKind.TRANSMISSION: TransmissionClient,
    DestinationKind.ARIA2: Aria2Client,
}


@dataclass
class DispatchReport:
    """Outcome of one pass over one destination."""

    kind: DestinationKind
    dry_run: bool = False
    pending: list[Torrent] = field(default_factory=list)
    succeeded: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    marked: list[int] = field(default_factory=list)
    mark_failed: list[int] = field(default_factory=list)
    error: str | None = None

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)


def select_eligible(
    records: Iterable[Torrent], kind: DestinationKind
) -> list[Torrent]:
    """Records with a magnet that were not yet delivered to ``kind``."""
    return [t for t in records if t.has_magnet and not t.is_delivered(kind)]


class DispatchService:
    """
    Pushes undelivered magnet links to every configured destination.

    Destinations are handled one after another and independently: a failing
    send, an unreachable daemon or a failed state update only affects the
    record or destination it belongs to.
    """

    def __init__(
        self,
        store: TorrentStore,
        destinations: Sequence[Destination],
        *,
        proxy_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.store = store
        self.destinations = list(destinations)
        self.proxy_url = validate_proxy_url(proxy_url)
        self.timeout = timeout

    async def dispatch(
        self,
        records: Sequence[Torrent] | None = None,
        *,
        dry_run: bool = False,
    ) -> list[DispatchReport]:
        """
        Runs one pass per destination.

        When ``records`` is given only those are considered (e.g. the rows an
        operator just listed); otherwise every undelivered record in the store
        is. With ``dry_run`` nothing is sent and nothing is written.
        """
        reports: list[DispatchReport] = []
        for destination in self.destinations:
            try:
                report = await self.dispatch_to(destination, records, dry_run=dry_run)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    f"[DISPATCH] Pass for {destination.kind.label} aborted: {exc}"
                )
                report = DispatchReport(destination.kind, dry_run=dry_run, error=str(exc))
            reports.append(report)
        return reports

    async def dispatch_to(
        self,
        destination: Destination,
        records: Sequence[Torrent] | None = None,
        *,
        dry_run: bool = False,
    ) -> DispatchReport:
        kind = destination.kind
        if records is None:
            eligible = await asyncio.to_thread(self.store.select_undelivered, kind)
        else:
            eligible = select_eligible(records, kind)
        report = DispatchReport(kind, dry_run=dry_run, pending=eligible)

        if not eligible:
            logger.info(f"[DISPATCH] Nothing to send to {kind.label}")
            return report
        if dry_run:
            logger.info(
                f"[DISPATCH] Dry run: would send {len(eligible)} magnet links to {kind.label}"
            )
            return report

        logger.info(f"[DISPATCH] Sending {len(eligible)} magnet links to {kind.label}...")
        try:
            await self._send_all(destination, eligible, report)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"[DISPATCH] Pass for {kind.label} aborted: {exc}")
            report.error = str(exc)
        finally:
            # Confirmed sends are recorded even when the pass stops early.
            await asyncio.to_thread(self._record_deliveries, report, eligible)

        logger.info(
            f"[DISPATCH] Successfully sent {len(report.succeeded)} out of "
            f"{len(eligible)} magnet links to {kind.label}"
        )
        return report

    async def _send_all(
        self,
        destination: Destination,
        eligible: Sequence[Torrent],
        report: DispatchReport,
    ) -> None:
        kind = destination.kind
        async with httpx.AsyncClient(
            **client_options(self.proxy_url, self.timeout)
        ) as http:
            client = _CLIENTS[kind](destination, http)
            for torrent in eligible:
                try:
                    await client.add_magnet(torrent)
                except DispatchSendError as exc:
                    logger.error(f"[DISPATCH] Failed to send: {exc}")
                    report.failed.append(torrent.id)
                    continue
                except Exception as exc:  # noqa: BLE001
                    logger.exception(
                        f"[DISPATCH] Unexpected error sending torrent {torrent.id} "
                        f"to {kind.label}: {exc}"
                    )
                    report.failed.append(torrent.id)
                    continue
                logger.info(f"[DISPATCH] Sent torrent {torrent.id} to {kind.label}")
                report.succeeded.append(torrent.id)

    def _record_deliveries(
        self, report: DispatchReport, eligible: Sequence[Torrent]
    ) -> None:
        by_id = {t.id: t for t in eligible}
        for torrent_id in report.succeeded:
            try:
                updated = self.store.mark_delivered(torrent_id, report.kind)
            except StorageWriteError as exc:
                # Sent but not recorded: the record stays eligible and will be
                # offered again on the next pass.
                logger.error(f"[DISPATCH] {exc}")
                report.mark_failed.append(torrent_id)
                continue
            if not updated:
                logger.warning(
                    f"[DISPATCH] Torrent {torrent_id} is not stored; "
                    f"delivery to {report.kind.label} not recorded"
                )
                report.mark_failed.append(torrent_id)
                continue
            report.marked.append(torrent_id)
            by_id[torrent_id].delivered[report.kind] = True
