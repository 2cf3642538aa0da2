"""Database module for KPI result persistence.

All SQL operations are isolated here. No other module writes SQL.

Two interchangeable backends implement the Database interface: an embedded
SQLite file and a networked PostgreSQL server. Both create the same three
tables (clusters, query_results, query_errors) and behave identically.
"""

import json
import logging
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from config import ConfigError, DatabaseConfig
from thanos_client import Sample

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredResult:
    """A query_results row read back from the store."""
    id: int
    kpi_id: str
    value: Optional[float]
    timestamp: float
    cluster_id: int
    labels: Dict[str, str]
    execution_time: Any


def serialize_labels(labels: Dict[str, str]) -> str:
    """Serialize a label set to JSON text with a stable key order."""
    return json.dumps(labels, sort_keys=True)


def deserialize_labels(raw: Any) -> Dict[str, str]:
    """Turn stored label text (or an already decoded JSONB value) into a dict."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    return json.loads(raw)


class Database(ABC):
    """Storage contract shared by every backend."""

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create tables and indexes if absent. Safe to call on every start."""

    @abstractmethod
    def get_or_create_cluster(self, name: str, cluster_type: Optional[str] = None) -> int:
        """Return the id for a cluster name, creating the row if needed.

        A non-empty cluster_type replaces the stored one; an empty or
        missing cluster_type leaves it untouched.
        """

    @abstractmethod
    def increment_query_error(self, kpi_id: str) -> None:
        """Atomically add one to the error counter of a KPI."""

    @abstractmethod
    def get_query_error_count(self, kpi_id: str) -> int:
        """Return the error counter of a KPI, 0 when it never failed."""

    @abstractmethod
    def store_sample_results(
        self, cluster_id: int, kpi_id: str, samples: Sequence[Sample]
    ) -> None:
        """Insert one query_results row per sample."""

    @abstractmethod
    def get_sample_results(self, cluster_id: int, kpi_id: str) -> List[StoredResult]:
        """Return stored rows for a cluster and KPI, oldest first."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying connection or pool."""


SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS clusters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cluster_name TEXT UNIQUE NOT NULL,
    cluster_type TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS query_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kpi_id TEXT NOT NULL,
    metric_value REAL,
    timestamp_value REAL,
    cluster_id INTEGER NOT NULL REFERENCES clusters(id),
    execution_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    metric_labels TEXT
);

CREATE TABLE IF NOT EXISTS query_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kpi_id TEXT UNIQUE NOT NULL,
    errors INTEGER DEFAULT 0
);
"""

SQLITE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_query_results_cluster_kpi_created
    ON query_results(cluster_id, kpi_id, created_at);
"""


def _create_sqlite_connection(path: str) -> sqlite3.Connection:
    """Create a new SQLite connection with proper settings.

    Args:
        path: Path to the SQLite database file (use ':memory:' for in-memory)

    Returns:
        sqlite3.Connection: Database connection with row factory and PRAGMAs set
    """
    if path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row

    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.commit()

    return conn


class SQLiteDatabase(Database):
    """Embedded single-file backend.

    One connection is shared by all collector threads. Every statement runs
    under an internal lock so transactions from different threads never
    interleave on the connection.
    """

    def __init__(self, path: str) -> None:
        """Open the database file.

        Args:
            path: Path to the SQLite database file; parent directories are
                created if missing
        """
        self._path = path
        self._lock = threading.Lock()
        self._conn = _create_sqlite_connection(path)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def ensure_schema(self) -> None:
        with self._lock:
            self._conn.executescript(SQLITE_SCHEMA)

            # Stores created before cluster categories existed lack the column
            columns = {
                row["name"] for row in self._conn.execute("PRAGMA table_info(clusters)")
            }
            if "cluster_type" not in columns:
                logger.info("Adding cluster_type column to clusters table")
                self._conn.execute("ALTER TABLE clusters ADD COLUMN cluster_type TEXT")

            self._conn.executescript(SQLITE_INDEXES)
            self._conn.commit()

    def get_or_create_cluster(self, name: str, cluster_type: Optional[str] = None) -> int:
        with self._lock, self._conn:
            self._conn.execute(
                """INSERT INTO clusters (cluster_name, cluster_type)
                   VALUES (?, NULLIF(?, ''))
                   ON CONFLICT(cluster_name) DO UPDATE SET
                       cluster_type = COALESCE(excluded.cluster_type, clusters.cluster_type)""",
                (name, cluster_type),
            )
            row = self._conn.execute(
                "SELECT id FROM clusters WHERE cluster_name = ?", (name,)
            ).fetchone()
        return row["id"]

    def increment_query_error(self, kpi_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """INSERT INTO query_errors (kpi_id, errors) VALUES (?, 1)
                   ON CONFLICT(kpi_id) DO UPDATE SET errors = errors + 1""",
                (kpi_id,),
            )

    def get_query_error_count(self, kpi_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT errors FROM query_errors WHERE kpi_id = ?", (kpi_id,)
            ).fetchone()
        if row is None:
            return 0
        return row["errors"]

    def store_sample_results(
        self, cluster_id: int, kpi_id: str, samples: Sequence[Sample]
    ) -> None:
        if not samples:
            return
        rows = [
            (kpi_id, s.value, s.timestamp, cluster_id, serialize_labels(s.labels))
            for s in samples
        ]
        with self._lock, self._conn:
            self._conn.executemany(
                """INSERT INTO query_results
                   (kpi_id, metric_value, timestamp_value, cluster_id, metric_labels)
                   VALUES (?, ?, ?, ?, ?)""",
                rows,
            )

    def get_sample_results(self, cluster_id: int, kpi_id: str) -> List[StoredResult]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT id, kpi_id, metric_value, timestamp_value, cluster_id,
                          metric_labels, execution_time
                   FROM query_results
                   WHERE cluster_id = ? AND kpi_id = ?
                   ORDER BY id""",
                (cluster_id, kpi_id),
            ).fetchall()
        return [_to_stored_result(row) for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


POSTGRES_SCHEMA = [
    """CREATE TABLE IF NOT EXISTS clusters (
        id SERIAL PRIMARY KEY,
        cluster_name TEXT UNIQUE NOT NULL,
        cluster_type TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )""",
    "ALTER TABLE clusters ADD COLUMN IF NOT EXISTS cluster_type TEXT",
    """CREATE TABLE IF NOT EXISTS query_results (
        id SERIAL PRIMARY KEY,
        kpi_id TEXT NOT NULL,
        metric_value DOUBLE PRECISION,
        timestamp_value DOUBLE PRECISION,
        cluster_id INTEGER NOT NULL REFERENCES clusters(id),
        execution_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        metric_labels JSONB
    )""",
    """CREATE TABLE IF NOT EXISTS query_errors (
        id SERIAL PRIMARY KEY,
        kpi_id TEXT UNIQUE NOT NULL,
        errors INTEGER DEFAULT 0
    )""",
    """CREATE INDEX IF NOT EXISTS idx_query_results_cluster_kpi_created
        ON query_results(cluster_id, kpi_id, created_at)""",
    """CREATE INDEX IF NOT EXISTS idx_query_results_labels
        ON query_results USING GIN(metric_labels)""",
]


class PostgresDatabase(Database):
    """Networked PostgreSQL backend.

    Opens one connection pool for the whole run; each operation borrows a
    connection and commits when it is returned.
    """

    def __init__(self, url: str, max_size: int = 4, timeout: float = 30.0) -> None:
        """Open the connection pool.

        Args:
            url: PostgreSQL connection URL
            max_size: Maximum number of pooled connections
            timeout: Seconds to wait for the first connection

        Raises:
            psycopg_pool.PoolTimeout: If the server cannot be reached
        """
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        self._pool = ConnectionPool(
            url,
            min_size=1,
            max_size=max_size,
            kwargs={"row_factory": dict_row},
            open=False,
        )
        try:
            self._pool.open(wait=True, timeout=timeout)
        except Exception:
            self._pool.close()
            raise

    def ensure_schema(self) -> None:
        with self._pool.connection() as conn:
            for statement in POSTGRES_SCHEMA:
                conn.execute(statement)

    def get_or_create_cluster(self, name: str, cluster_type: Optional[str] = None) -> int:
        with self._pool.connection() as conn:
            row = conn.execute(
                """INSERT INTO clusters (cluster_name, cluster_type)
                   VALUES (%s, NULLIF(%s, ''))
                   ON CONFLICT (cluster_name) DO UPDATE SET
                       cluster_type = COALESCE(EXCLUDED.cluster_type, clusters.cluster_type)
                   RETURNING id""",
                (name, cluster_type),
            ).fetchone()
        return row["id"]

    def increment_query_error(self, kpi_id: str) -> None:
        with self._pool.connection() as conn:
            conn.execute(
                """INSERT INTO query_errors (kpi_id, errors) VALUES (%s, 1)
                   ON CONFLICT (kpi_id) DO UPDATE SET errors = query_errors.errors + 1""",
                (kpi_id,),
            )

    def get_query_error_count(self, kpi_id: str) -> int:
        with self._pool.connection() as conn:
            row = conn.execute(
                "SELECT errors FROM query_errors WHERE kpi_id = %s", (kpi_id,)
            ).fetchone()
        if row is None:
            return 0
        return row["errors"]

    def store_sample_results(
        self, cluster_id: int, kpi_id: str, samples: Sequence[Sample]
    ) -> None:
        if not samples:
            return
        rows = [
            (kpi_id, s.value, s.timestamp, cluster_id, Jsonb(s.labels))
            for s in samples
        ]
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    """INSERT INTO query_results
                       (kpi_id, metric_value, timestamp_value, cluster_id, metric_labels)
                       VALUES (%s, %s, %s, %s, %s)""",
                    rows,
                )

    def get_sample_results(self, cluster_id: int, kpi_id: str) -> List[StoredResult]:
        with self._pool.connection() as conn:
            rows = conn.execute(
                """SELECT id, kpi_id, metric_value, timestamp_value, cluster_id,
                          metric_labels, execution_time
                   FROM query_results
                   WHERE cluster_id = %s AND kpi_id = %s
                   ORDER BY id""",
                (cluster_id, kpi_id),
            ).fetchall()
        return [_to_stored_result(row) for row in rows]

    def close(self) -> None:
        self._pool.close()


def _to_stored_result(row: Any) -> StoredResult:
    return StoredResult(
        id=row["id"],
        kpi_id=row["kpi_id"],
        value=row["metric_value"],
        timestamp=row["timestamp_value"],
        cluster_id=row["cluster_id"],
        labels=deserialize_labels(row["metric_labels"]),
        execution_time=row["execution_time"],
    )


def new_database(config: DatabaseConfig) -> Database:
    """Create the backend selected by the configuration.

    Args:
        config: Database configuration

    Returns:
        An open, not yet schema-initialized Database

    Raises:
        ConfigError: If the type is unknown or the postgres URL is missing
    """
    if config.type == "sqlite":
        return SQLiteDatabase(config.path)
    if config.type == "postgres":
        if not config.postgres_url:
            raise ConfigError("postgres_url is required for postgres database type")
        return PostgresDatabase(config.postgres_url)
    raise ConfigError(f"unsupported database type: {config.type}")


def init_database(config: DatabaseConfig) -> Database:
    """Open the configured backend and make sure its schema exists."""
    db = new_database(config)
    try:
        db.ensure_schema()
    except (sqlite3.Error, psycopg.Error):
        db.close()
        raise
    return db
