"""
Time-series store on TimescaleDB / PostgreSQL.

One table holds every point: `(time, measurement, node_id, tags, value)`. Writes
are batched by the caller (see ingest_agent.sink); reads are range queries by
measurement, tag set and time bounds.
"""
import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json, execute_values

from common.errors import StoreError
from common.models import StoredRow, TimeSeriesPoint

logger = logging.getLogger(__name__)


class TimescaleStore:
    """psycopg2-backed store. Connects lazily and reconnects after connection loss."""

    def __init__(self, dsn: str, table: str = "opcua_points", connect_timeout: int = 5):
        self.dsn = dsn
        self.table = table
        self.connect_timeout = connect_timeout
        self._conn = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------
    # connection
    # ------------------------------------------------------------

    def connect(self):
        if self._conn is None or self._conn.closed:
            try:
                self._conn = psycopg2.connect(self.dsn, connect_timeout=self.connect_timeout)
            except psycopg2.Error as e:
                raise StoreError(f"Cannot connect to time-series store: {e}") from e
            logger.info("Connected to time-series store")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None and not self._conn.closed:
                self._conn.close()
                logger.info("Time-series store connection closed")
            self._conn = None

    def _drop_broken_connection(self, error: Exception) -> None:
        if isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError)):
            if self._conn is not None and not self._conn.closed:
                self._conn.close()
            self._conn = None

    def _execute(self, statement, params=None, fetch=False):
        with self._lock:
            conn = self.connect()
            try:
                with conn.cursor() as cursor:
                    cursor.execute(statement, params)
                    rows = cursor.fetchall() if fetch else None
                conn.commit()
                return rows
            except psycopg2.Error as e:
                if not conn.closed:
                    conn.rollback()
                self._drop_broken_connection(e)
                raise StoreError(str(e)) from e

    # ------------------------------------------------------------
    # schema
    # ------------------------------------------------------------

    def ensure_schema(self) -> None:
        table = sql.Identifier(self.table)
        self._execute(
            sql.SQL(
                "CREATE TABLE IF NOT EXISTS {} ("
                " time TIMESTAMPTZ NOT NULL,"
                " measurement TEXT NOT NULL,"
                " node_id TEXT NOT NULL,"
                " tags JSONB NOT NULL DEFAULT '{{}}'::jsonb,"
                " value DOUBLE PRECISION NOT NULL)"
            ).format(table)
        )
        self._execute(
            sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} (measurement, node_id, time DESC)").format(
                sql.Identifier(f"{self.table}_series_idx"), table
            )
        )
        has_timescale = self._execute(
            "SELECT 1 FROM pg_extension WHERE extname = 'timescaledb'", fetch=True
        )
        if has_timescale:
            self._execute("SELECT create_hypertable(%s, 'time', if_not_exists => TRUE)", (self.table,))
            logger.info(f"Hypertable {self.table} ready")
        else:
            logger.info(f"Table {self.table} ready (timescaledb extension not installed)")

    # ------------------------------------------------------------
    # write
    # ------------------------------------------------------------

    def write_points(self, points: Iterable[TimeSeriesPoint]) -> int:
        rows = [
            (p.timestamp, p.measurement, p.tags.get("nodeId", ""), Json(dict(p.tags)), float(p.value))
            for p in points
            if p.value is not None
        ]
        if not rows:
            return 0
        with self._lock:
            conn = self.connect()
            try:
                with conn.cursor() as cursor:
                    statement = sql.SQL(
                        "INSERT INTO {} (time, measurement, node_id, tags, value) VALUES %s"
                    ).format(sql.Identifier(self.table)).as_string(conn)
                    execute_values(cursor, statement, rows, page_size=len(rows))
                conn.commit()
            except psycopg2.Error as e:
                if not conn.closed:
                    conn.rollback()
                self._drop_broken_connection(e)
                raise StoreError(f"Write of {len(rows)} points failed: {e}") from e
        return len(rows)

    # ------------------------------------------------------------
    # query
    # ------------------------------------------------------------

    def query(
        self,
        measurement: str,
        tags: Optional[Dict[str, str]],
        start: datetime,
        stop: datetime,
        limit: Optional[int] = None,
        descending: bool = False,
    ) -> List[StoredRow]:
        """Rows of `measurement` whose tags contain `tags`, with start <= time <= stop."""
        clauses = [sql.SQL("measurement = %s"), sql.SQL("time >= %s"), sql.SQL("time <= %s")]
        params = [measurement, start, stop]
        if tags:
            clauses.append(sql.SQL("tags @> %s::jsonb"))
            params.append(Json(dict(tags)))
        statement = sql.SQL(
            "SELECT time, measurement, node_id, value, tags FROM {} WHERE {} ORDER BY time {}"
        ).format(
            sql.Identifier(self.table),
            sql.SQL(" AND ").join(clauses),
            sql.SQL("DESC" if descending else "ASC"),
        )
        if limit is not None:
            statement = statement + sql.SQL(" LIMIT %s")
            params.append(int(limit))
        rows = self._execute(statement, params, fetch=True)
        return [self._to_row(r) for r in rows]

    def latest(self, measurement: str, since: datetime, node_id: Optional[str] = None) -> List[StoredRow]:
        """Most recent row per node id at or after `since`."""
        clauses = [sql.SQL("measurement = %s"), sql.SQL("time >= %s")]
        params = [measurement, since]
        if node_id is not None:
            clauses.append(sql.SQL("node_id = %s"))
            params.append(node_id)
        statement = sql.SQL(
            "SELECT DISTINCT ON (node_id) time, measurement, node_id, value, tags FROM {} "
            "WHERE {} ORDER BY node_id, time DESC"
        ).format(sql.Identifier(self.table), sql.SQL(" AND ").join(clauses))
        rows = self._execute(statement, params, fetch=True)
        return [self._to_row(r) for r in rows]

    def ping(self) -> bool:
        try:
            self._execute("SELECT 1", fetch=True)
            return True
        except StoreError as e:
            logger.warning(f"Store ping failed: {e}")
            return False

    @staticmethod
    def _to_row(record) -> StoredRow:
        time, measurement, node_id, value, tags = record
        return StoredRow(time=time, measurement=measurement, node_id=node_id, value=value, tags=tags or {})
