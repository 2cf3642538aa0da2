"""Pytest configuration and shared fixtures."""

import os
import sys

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import database

# PostgreSQL conformance tests run only when this points at a scratch database
POSTGRES_URL_ENV = "KPI_COLLECTOR_TEST_POSTGRES_URL"


def postgres_url():
    """Return the scratch PostgreSQL URL, or None when not configured."""
    return os.environ.get(POSTGRES_URL_ENV)


def reset_postgres(url):
    """Drop every collector table so each test starts from an empty store."""
    import psycopg

    with psycopg.connect(url) as conn:
        conn.execute("DROP TABLE IF EXISTS query_results, query_errors, clusters CASCADE")


@pytest.fixture
def db_path(tmp_path):
    """Provide a path to a temporary SQLite database file."""
    return str(tmp_path / "kpi_metrics.db")


@pytest.fixture
def sqlite_db(db_path):
    """Provide a SQLiteDatabase with schema initialized."""
    db = database.SQLiteDatabase(db_path)
    db.ensure_schema()
    yield db
    db.close()


@pytest.fixture(params=["sqlite", "postgres"])
def storage(request, db_path):
    """Provide each Database backend with an empty, initialized schema.

    The postgres parameter is skipped unless KPI_COLLECTOR_TEST_POSTGRES_URL
    is set.
    """
    if request.param == "sqlite":
        db = database.SQLiteDatabase(db_path)
    else:
        url = postgres_url()
        if not url:
            pytest.skip(f"{POSTGRES_URL_ENV} not set")
        reset_postgres(url)
        db = database.PostgresDatabase(url)

    db.ensure_schema()
    yield db
    db.close()
