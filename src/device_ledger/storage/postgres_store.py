from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, List, Optional, TypeVar

import psycopg

from device_ledger.config.logging import get_logger, log_json
from device_ledger.core.exceptions import PersistenceError
from device_ledger.core.models import (
    Coordinates,
    DeviceRecord,
    LocationRecord,
    ParsedUserAgent,
)
from device_ledger.storage.db import connect, execute, fetchall, fetchone

logger = get_logger(__name__)

T = TypeVar("T")

SQL_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS device_records (
  fingerprint TEXT PRIMARY KEY,
  attributes_version INTEGER NOT NULL,
  attributes_json JSONB NOT NULL,
  origin TEXT NOT NULL,
  referrer TEXT,
  coordinates_json JSONB,
  location_json JSONB NOT NULL,
  user_agent_json JSONB,
  captured_at_utc TIMESTAMPTZ NOT NULL
)
"""

SQL_CREATE_INDEX = """
CREATE INDEX IF NOT EXISTS device_records_captured_at_idx
ON device_records (captured_at_utc DESC)
"""

_COLUMNS = """
fingerprint, attributes_version, attributes_json, origin, referrer,
coordinates_json, location_json, user_agent_json, captured_at_utc
"""

SQL_INSERT = f"""
INSERT INTO device_records ({_COLUMNS})
VALUES (%s, %s, %s::jsonb, %s, %s, %s::jsonb, %s::jsonb, %s::jsonb, %s)
ON CONFLICT (fingerprint) DO NOTHING
RETURNING fingerprint
"""

SQL_EXISTS = "SELECT 1 FROM device_records WHERE fingerprint = %s"

SQL_GET = f"SELECT {_COLUMNS} FROM device_records WHERE fingerprint = %s"

SQL_LIST = f"SELECT {_COLUMNS} FROM device_records ORDER BY captured_at_utc DESC"

SQL_LIST_LIMIT = SQL_LIST + " LIMIT %s"

SQL_COUNT = "SELECT count(*) FROM device_records"

SQL_DELETE_ALL = "DELETE FROM device_records"

SQL_UPDATE_LOCATION = "UPDATE device_records SET location_json = %s::jsonb WHERE fingerprint = %s"

SQL_UPDATE_USER_AGENT = "UPDATE device_records SET user_agent_json = %s::jsonb WHERE fingerprint = %s"


def init_schema(dsn: str) -> None:
    try:
        with connect(dsn) as conn:
            execute(conn, SQL_CREATE_TABLE)
            execute(conn, SQL_CREATE_INDEX)
    except psycopg.Error as e:
        raise PersistenceError(f"schema init failed: {e}") from e


class PostgresRecordStore:
    """RecordStore on PostgreSQL.

    The primary key on `fingerprint` is the dedupe authority:
    `INSERT ... ON CONFLICT DO NOTHING RETURNING` yields a row only for the
    one writer that got there first, across any number of processes.
    One autocommit connection per store, serialized by a lock. A connection
    lost to an operational error is dropped and reopened on the next call;
    the failed statement itself is not retried.
    """

    def __init__(self, dsn: str, *, connect_timeout: int = 10) -> None:
        self._dsn = dsn
        self._connect_timeout = connect_timeout
        self._lock = threading.Lock()
        self._conn: Optional[Any] = self._connect()

    def _connect(self) -> Any:
        try:
            return psycopg.connect(self._dsn, autocommit=True, connect_timeout=self._connect_timeout)
        except psycopg.Error as e:
            raise PersistenceError(f"cannot connect to database: {e}") from e

    def _drop_connection(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None

    def _run(self, op: str, fn: Callable[[Any], T]) -> T:
        with self._lock:
            if self._conn is None or self._conn.closed:
                self._conn = self._connect()
                log_json(logger, logging.INFO, "store_reconnected", op=op)
            try:
                return fn(self._conn)
            except psycopg.errors.UniqueViolation:
                raise
            except psycopg.OperationalError as e:
                log_json(logger, logging.ERROR, "store_error", op=op, error=str(e), reconnect=True)
                self._drop_connection()
                raise PersistenceError(f"{op} failed") from e
            except psycopg.Error as e:
                log_json(logger, logging.ERROR, "store_error", op=op, error=str(e))
                raise PersistenceError(f"{op} failed") from e

    def insert(self, record: DeviceRecord) -> bool:
        params = (
            record.fingerprint,
            record.attributes_version,
            json.dumps(record.attributes, ensure_ascii=False),
            record.origin,
            record.referrer,
            json.dumps(record.coordinates.to_dict()) if record.coordinates else None,
            json.dumps(record.location.to_dict(), ensure_ascii=False),
            json.dumps(record.user_agent.to_dict(), ensure_ascii=False) if record.user_agent else None,
            record.captured_at,
        )
        try:
            row = self._run("insert", lambda conn: fetchone(conn, SQL_INSERT, params))
        except psycopg.errors.UniqueViolation:
            # Another unique index on the table; still a duplicate, not an error.
            return False
        return row is not None

    def exists(self, fingerprint: str) -> bool:
        return self._run("exists", lambda conn: fetchone(conn, SQL_EXISTS, (fingerprint,))) is not None

    def get(self, fingerprint: str) -> Optional[DeviceRecord]:
        row = self._run("get", lambda conn: fetchone(conn, SQL_GET, (fingerprint,)))
        return _row_to_record(row) if row else None

    def list_recent(self, limit: Optional[int] = None) -> List[DeviceRecord]:
        if limit is None:
            rows = self._run("list", lambda conn: fetchall(conn, SQL_LIST))
        else:
            rows = self._run("list", lambda conn: fetchall(conn, SQL_LIST_LIMIT, (limit,)))
        return [_row_to_record(r) for r in rows]

    def count(self) -> int:
        row = self._run("count", lambda conn: fetchone(conn, SQL_COUNT))
        return int(row[0]) if row else 0

    def delete_all(self) -> int:
        return self._run("delete_all", lambda conn: execute(conn, SQL_DELETE_ALL))

    def update(
        self,
        fingerprint: str,
        *,
        location: Optional[LocationRecord] = None,
        user_agent: Optional[ParsedUserAgent] = None,
    ) -> bool:
        updated = 0
        if location is not None:
            payload = json.dumps(location.to_dict(), ensure_ascii=False)
            updated += self._run("update_location", lambda conn: execute(conn, SQL_UPDATE_LOCATION, (payload, fingerprint)))
        if user_agent is not None:
            payload_ua = json.dumps(user_agent.to_dict(), ensure_ascii=False)
            updated += self._run("update_user_agent", lambda conn: execute(conn, SQL_UPDATE_USER_AGENT, (payload_ua, fingerprint)))
        return updated > 0

    def ping(self) -> None:
        self._run("ping", lambda conn: fetchone(conn, "SELECT 1"))

    def close(self) -> None:
        with self._lock:
            self._drop_connection()


def _json_value(value: Any) -> Any:
    # psycopg decodes jsonb to Python objects; plain json columns may come back as text.
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _row_to_record(row: tuple) -> DeviceRecord:
    (
        fingerprint,
        attributes_version,
        attributes_json,
        origin,
        referrer,
        coordinates_json,
        location_json,
        user_agent_json,
        captured_at,
    ) = row
    return DeviceRecord(
        fingerprint=fingerprint,
        attributes_version=int(attributes_version),
        attributes=dict(_json_value(attributes_json) or {}),
        origin=origin,
        referrer=referrer or "Direct",
        coordinates=Coordinates.from_dict(_json_value(coordinates_json)),
        location=LocationRecord.from_dict(_json_value(location_json)),
        user_agent=ParsedUserAgent.from_dict(_json_value(user_agent_json)),
        captured_at=captured_at,
    )
