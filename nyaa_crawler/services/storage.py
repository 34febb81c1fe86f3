# nyaa_crawler/services/storage.py

from __future__ import annotations

import os
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from ..config import logger
from ..exceptions import StorageInitError, StorageReadError, StorageWriteError
from ..models import DestinationKind, Torrent

_INSERT_SQL = (
    "INSERT OR IGNORE INTO torrents(id, name, magnet, category, size, date) "
    "VALUES (?, ?, ?, ?, ?, ?)"
)
_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_torrents_name ON torrents(name)",
    "CREATE INDEX IF NOT EXISTS idx_torrents_category ON torrents(category)",
    "CREATE INDEX IF NOT EXISTS idx_torrents_date ON torrents(date)",
)


def _like_pattern(substring: str) -> str:
    """Builds an unanchored LIKE pattern in which wildcards match literally."""
    escaped = (
        substring.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )
    return f"%{escaped}%"


def _row_to_torrent(row: sqlite3.Row) -> Torrent:
    keys = row.keys()
    return Torrent(
        id=row["id"],
        name=row["name"] or "",
        magnet=row["magnet"] or "",
        category=row["category"] or "",
        size=row["size"] or "",
        date=row["date"] or "",
        delivered={
            kind: bool(row[kind.column]) if kind.column in keys else False
            for kind in DestinationKind
        },
    )


class TorrentStore:
    """
    SQLite-backed storage for scraped torrents.

    Every operation opens its own short-lived connection, so a store can be
    shared between tasks without sharing a cursor. Inserts never overwrite an
    existing row: the first write of an id wins.
    """

    def __init__(self, db_path: str, *, timeout: float = 5.0) -> None:
        self.db_path = db_path
        self.timeout = timeout
        self.initialize()

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for safe connection handling."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the torrents table and its indexes if they don't exist."""
        parent = os.path.dirname(os.path.abspath(self.db_path))
        if not os.path.isdir(parent):
            raise StorageInitError(
                f"Directory for database '{self.db_path}' does not exist"
            )

        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(self._sql_torrents())

                # Destinations added after the database was created get their
                # delivery column here.
                cursor.execute("PRAGMA table_info(torrents)")
                columns = {col[1] for col in cursor.fetchall()}
                for kind in DestinationKind:
                    if kind.column not in columns:
                        cursor.execute(
                            f"ALTER TABLE torrents ADD COLUMN {kind.column} "
                            "BOOLEAN DEFAULT 0"
                        )
                        logger.info(
                            f"[STORAGE] Added {kind.column} column to torrents table"
                        )

                for index_sql in _INDEXES:
                    try:
                        cursor.execute(index_sql)
                    except sqlite3.Error as e:
                        logger.warning(f"[STORAGE] Failed to create index: {e}")

                conn.commit()
        except sqlite3.Error as e:
            raise StorageInitError(
                f"Could not open database '{self.db_path}': {e}"
            ) from e

    @staticmethod
    def _sql_torrents() -> str:
        delivered = ",\n".join(
            f"    {kind.column} BOOLEAN DEFAULT 0" for kind in DestinationKind
        )
        return (
            "CREATE TABLE IF NOT EXISTS torrents (\n"
            "    id INTEGER PRIMARY KEY,\n"
            "    name TEXT,\n"
            "    magnet TEXT,\n"
            "    category TEXT,\n"
            "    size TEXT,\n"
            "    date TEXT,\n"
            f"{delivered}\n"
            ")"
        )

    # === Inserts ===

    def insert_one(self, torrent: Torrent) -> bool:
        """Insert a torrent unless its id is already stored. Returns True if written."""
        if not torrent.is_valid:
            logger.warning(f"[STORAGE] Refusing to store torrent with id {torrent.id}")
            return False
        try:
            with self.get_connection() as conn:
                cursor = conn.execute(_INSERT_SQL, _insert_params(torrent))
                conn.commit()
                return cursor.rowcount == 1
        except sqlite3.Error as e:
            raise StorageWriteError(f"Failed to insert torrent {torrent.id}: {e}") from e

    def insert_new(self, torrents: Iterable[Torrent]) -> list[Torrent]:
        """
        Inserts a batch in a single transaction and returns the rows that were new.

        Duplicates and invalid records are skipped without affecting the rest of
        the batch. Any database error rolls the whole batch back.
        """
        inserted: list[Torrent] = []
        try:
            with self.get_connection() as conn:
                try:
                    for torrent in torrents:
                        if not torrent.is_valid:
                            logger.debug(
                                f"[STORAGE] Skipping invalid torrent id {torrent.id}"
                            )
                            continue
                        cursor = conn.execute(_INSERT_SQL, _insert_params(torrent))
                        if cursor.rowcount == 1:
                            inserted.append(torrent)
                    conn.commit()
                except sqlite3.Error:
                    conn.rollback()
                    raise
        except sqlite3.Error as e:
            raise StorageWriteError(f"Batch insert rolled back: {e}") from e

        logger.info(f"[STORAGE] Batch inserted {len(inserted)} new torrents")
        return inserted

    def insert_batch(self, torrents: Iterable[Torrent]) -> int:
        """Atomic batch insert. Returns the number of newly stored torrents."""
        return len(self.insert_new(torrents))

    # === Queries ===

    def get(self, torrent_id: int) -> Torrent | None:
        rows = self._select("WHERE id = ?", (torrent_id,))
        return rows[0] if rows else None

    def all_torrents(self) -> list[Torrent]:
        return self._select("ORDER BY id DESC")

    def query_by_name(self, substring: str, limit: int) -> list[Torrent]:
        """Torrents whose name contains ``substring``, newest id first."""
        return self._select(
            "WHERE name LIKE ? ESCAPE '\\' ORDER BY id DESC LIMIT ?",
            (_like_pattern(substring), limit),
        )

    def query_latest(self, limit: int) -> list[Torrent]:
        return self._select("ORDER BY id DESC LIMIT ?", (limit,))

    def select_undelivered(
        self, kind: DestinationKind, limit: int | None = None
    ) -> list[Torrent]:
        """Torrents with a magnet link that were not yet delivered to ``kind``."""
        clause = f"WHERE magnet != '' AND {kind.column} = 0 ORDER BY id DESC"
        if limit is None:
            return self._select(clause)
        return self._select(clause + " LIMIT ?", (limit,))

    def count_all(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM torrents")

    def count_with_magnet(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM torrents WHERE magnet != ''")

    def count_matching(self, substring: str) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM torrents WHERE name LIKE ? ESCAPE '\\'",
            (_like_pattern(substring),),
        )

    def statistics(self) -> tuple[int, int]:
        """Returns ``(total, with_magnet)`` in one query."""
        try:
            with self.get_connection() as conn:
                row = conn.execute(
                    "SELECT COUNT(*), COUNT(CASE WHEN magnet != '' THEN 1 END) "
                    "FROM torrents"
                ).fetchone()
                return int(row[0]), int(row[1])
        except sqlite3.Error as e:
            raise StorageReadError(f"Failed to read statistics: {e}") from e

    # === Delivery state ===

    def mark_delivered(self, torrent_id: int, kind: DestinationKind) -> bool:
        """Flag a torrent as delivered to ``kind``. Returns False if the id is unknown."""
        # ``kind`` is an enum member, so the column name never comes from user input.
        kind = DestinationKind(kind)
        try:
            with self.get_connection() as conn:
                cursor = conn.execute(
                    f"UPDATE torrents SET {kind.column} = 1 WHERE id = ?",
                    (torrent_id,),
                )
                conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageWriteError(
                f"Failed to mark torrent {torrent_id} as delivered to {kind.value}: {e}"
            ) from e

    # === Helpers ===

    def _select(self, clause: str, params: tuple = ()) -> list[Torrent]:
        delivered = ", ".join(kind.column for kind in DestinationKind)
        sql = (
            f"SELECT id, name, magnet, category, size, date, {delivered} "
            f"FROM torrents {clause}"
        )
        try:
            with self.get_connection() as conn:
                return [_row_to_torrent(row) for row in conn.execute(sql, params)]
        except sqlite3.Error as e:
            raise StorageReadError(f"Failed to query torrents: {e}") from e

    def _scalar(self, sql: str, params: tuple = ()) -> int:
        try:
            with self.get_connection() as conn:
                row = conn.execute(sql, params).fetchone()
                return int(row[0]) if row else 0
        except sqlite3.Error as e:
            raise StorageReadError(f"Failed to count torrents: {e}") from e


def _insert_params(torrent: Torrent) -> tuple:
    return (
        torrent.id,
        torrent.name,
        torrent.magnet,
        torrent.category,
        torrent.size,
        torrent.date,
    )
