"""
Packet store access.

The engine only reads from the store. ``PostgresPacketStore`` reads the
relay's PostgreSQL ``sessions`` / ``packets`` tables, ``SqlitePacketStore``
reads a SQLite copy of the same tables and ``MemoryPacketStore`` holds
records in memory and evaluates predicates directly.
"""

import asyncio
import concurrent.futures
import json
import logging
import os
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import psycopg
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row

from .filters import StorePredicate
from .models import Direction, PacketRecord, SessionSummary

logger = logging.getLogger(__name__)


class StoreQueryError(Exception):
    """Raised when the packet store cannot answer a query."""


class PacketStore(ABC):
    """Read interface of the packet store."""

    @abstractmethod
    async def list_sessions(self) -> List[SessionSummary]:
        """List recorded sessions, most recent first."""

    @abstractmethod
    async def query_packets(
        self,
        session_id: int,
        predicate: Optional[StorePredicate] = None,
    ) -> List[PacketRecord]:
        """
        Query packets of a session ordered by packet number ascending.

        Raises:
            StoreQueryError: If the query fails
        """

    def close(self) -> None:
        """Release any resources held by the store."""


class MemoryPacketStore(PacketStore):
    """Packet store over in-memory records."""

    def __init__(
        self,
        records: Iterable[PacketRecord] = (),
        sessions: Optional[Iterable[SessionSummary]] = None,
    ):
        self._records: Dict[int, List[PacketRecord]] = {}
        for record in records:
            self._records.setdefault(record.session_id, []).append(record)
        self._sessions = list(sessions) if sessions is not None else None

    async def list_sessions(self) -> List[SessionSummary]:
        if self._sessions is not None:
            return list(self._sessions)
        return [
            SessionSummary(session_id=session_id, packet_count=len(records))
            for session_id, records in sorted(self._records.items(), reverse=True)
        ]

    async def query_packets(
        self,
        session_id: int,
        predicate: Optional[StorePredicate] = None,
    ) -> List[PacketRecord]:
        records = self._records.get(session_id, [])
        if predicate is not None:
            records = [r for r in records if predicate.matches(r.direction, r.name)]
        return sorted(records, key=lambda r: r.packet_number)


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.debug(f"Unparseable timestamp {value!r}")
        return None


def _record_from_row(row: Mapping[str, Any], decoded_value: Any) -> PacketRecord:
    raw = row["raw"]
    return PacketRecord(
        session_id=row["session_id"],
        packet_number=row["packet_number"],
        timestamp_offset_ms=row["session_time_ms"],
        direction=Direction.from_str(row["direction"]),
        decoded_value=decoded_value,
        raw_bytes=bytes(raw) if raw is not None else None,
        server_version=row["server_version"],
    )


def _summary_from_row(row: Mapping[str, Any]) -> SessionSummary:
    return SessionSummary(
        session_id=row["id"],
        started_at=_parse_timestamp(row["started_at"]),
        ended_at=_parse_timestamp(row["ended_at"]),
        packet_count=row["packet_count"],
    )


_SELECT_SESSIONS = (
    "SELECT s.id, s.started_at, s.ended_at, COUNT(p.id) AS packet_count "
    "FROM sessions s LEFT JOIN packets p ON p.session_id = s.id "
    "GROUP BY s.id ORDER BY s.started_at DESC"
)

_SELECT_PACKETS = (
    "SELECT session_id, packet_number, session_time_ms, direction, packet, "
    "server_version, raw FROM packets WHERE session_id = ?"
)

_SELECT_PACKETS_POSTGRES = (
    "SELECT session_id, packet_number, session_time_ms, direction, packet, "
    "server_version, NULL::bytea AS raw FROM packets WHERE session_id = %s"
)


def conninfo_from_env(environ: Optional[Mapping[str, str]] = None) -> str:
    """Build a libpq connection string from the relay's ``DB_*`` variables."""
    env = os.environ if environ is None else environ
    return make_conninfo(
        host=env.get("DB_HOST", "localhost"),
        port=env.get("DB_PORT", "5432"),
        user=env.get("DB_USER", "postgres"),
        password=env.get("DB_PASSWORD", "postgres"),
        dbname=env.get("DB_NAME", "postgres"),
    )


class PostgresPacketStore(PacketStore):
    """
    Read-only packet store over the relay's PostgreSQL database.

    Each query runs on its own read-only connection. The ``packet`` JSONB
    column arrives already decoded.
    """

    def __init__(self, conninfo: str):
        self.conninfo = conninfo

    async def _fetch(self, query: str, params: list) -> List[Dict[str, Any]]:
        try:
            conn = await psycopg.AsyncConnection.connect(self.conninfo, row_factory=dict_row)
            async with conn:
                await conn.set_read_only(True)
                cursor = await conn.execute(query, params)
                return await cursor.fetchall()
        except psycopg.Error as e:
            logger.error(f"Packet store query failed: {e}")
            raise StoreQueryError(f"Packet store query failed: {e}") from e

    async def list_sessions(self) -> List[SessionSummary]:
        rows = await self._fetch(_SELECT_SESSIONS, [])
        return [_summary_from_row(row) for row in rows]

    async def query_packets(
        self,
        session_id: int,
        predicate: Optional[StorePredicate] = None,
    ) -> List[PacketRecord]:
        query = _SELECT_PACKETS_POSTGRES
        params: list = [session_id]
        if predicate is not None:
            where, where_params = predicate.to_postgres()
            query += f" AND ({where})"
            params.extend(where_params)
        query += " ORDER BY packet_number ASC"

        records = []
        for row in await self._fetch(query, params):
            try:
                records.append(_record_from_row(row, row["packet"]))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed packet row #{row['packet_number']}: {e}")
        logger.debug(f"Loaded {len(records)} packets for session {session_id}")
        return records


def _fold_case(value):
    return value.lower() if isinstance(value, str) else value


class SqlitePacketStore(PacketStore):
    """
    Read-only packet store over a SQLite copy of the relay's tables.

    Blocking sqlite calls run in a thread pool so the event loop stays free.
    Wildcard matches fold case with Python's ``str.lower`` so non-ASCII names
    match the same way they do in memory.
    """

    FOLD_FUNCTION = "lens_fold_case"

    def __init__(self, database: Union[str, Path]):
        self.database = str(database)
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        self._has_raw: Optional[bool] = None

    def _connect(self) -> sqlite3.Connection:
        uri = f"file:{self.database}?mode=ro"
        conn = sqlite3.connect(uri, uri=True)
        conn.row_factory = sqlite3.Row
        conn.create_function(self.FOLD_FUNCTION, 1, _fold_case, deterministic=True)
        return conn

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, fn, *args)
        except sqlite3.Error as e:
            logger.error(f"Packet store query failed: {e}")
            raise StoreQueryError(f"Packet store query failed: {e}") from e

    def _list_sessions_sync(self) -> List[SessionSummary]:
        with closing(self._connect()) as conn:
            rows = conn.execute(_SELECT_SESSIONS).fetchall()
        return [_summary_from_row(row) for row in rows]

    def _query_packets_sync(self, session_id: int, predicate: Optional[StorePredicate]) -> List[PacketRecord]:
        with closing(self._connect()) as conn:
            if self._has_raw is None:
                columns = {row["name"] for row in conn.execute("PRAGMA table_info(packets)")}
                self._has_raw = "raw" in columns

            query = _SELECT_PACKETS if self._has_raw else _SELECT_PACKETS.replace(", raw FROM", ", NULL AS raw FROM")
            params: list = [session_id]
            if predicate is not None:
                where, where_params = predicate.to_sql(fold_function=self.FOLD_FUNCTION)
                query += f" AND ({where})"
                params.extend(where_params)
            query += " ORDER BY packet_number ASC"

            rows = conn.execute(query, params).fetchall()

        records = []
        for row in rows:
            try:
                records.append(_record_from_row(row, json.loads(row["packet"])))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed packet row #{row['packet_number']}: {e}")
        return records

    async def list_sessions(self) -> List[SessionSummary]:
        return await self._run(self._list_sessions_sync)

    async def query_packets(
        self,
        session_id: int,
        predicate: Optional[StorePredicate] = None,
    ) -> List[PacketRecord]:
        records = await self._run(self._query_packets_sync, session_id, predicate)
        logger.debug(f"Loaded {len(records)} packets for session {session_id}")
        return records

    def close(self) -> None:
        self._executor.shutdown(wait=False)


def open_store(dsn: Optional[str] = None, sqlite_path: Optional[Union[str, Path]] = None) -> PacketStore:
    """
    Open the packet store the CLI should read.

    A SQLite path wins; otherwise PostgreSQL is used with ``dsn``, or with a
    connection string built from the ``DB_*`` variables when ``dsn`` is empty.
    """
    if sqlite_path is not None:
        logger.info(f"Reading packets from SQLite file {sqlite_path}")
        return SqlitePacketStore(sqlite_path)
    logger.info("Reading packets from PostgreSQL")
    return PostgresPacketStore(dsn or conninfo_from_env())
