"""
Integration test fixtures — PostgreSQL testcontainer and schema setup.

Provides a real PostgreSQL instance for each test session via testcontainers.
The schema is the one the repository creates at startup, so tests exercise
the production DDL. Each test gets a fresh, clean database via truncation.
"""

from __future__ import annotations

import psycopg
import pytest
from testcontainers.postgres import PostgresContainer

from domain_tracker.adapters.repository import SCHEMA

DDL = SCHEMA

TRUNCATE_ALL = """
TRUNCATE sessions, users, crts, domains, clients RESTART IDENTITY CASCADE;
"""


@pytest.fixture(scope="session")
def postgres_container() -> PostgresContainer:
    """Start a PostgreSQL container for the entire test session."""
    with PostgresContainer("postgres:16-alpine") as pg:
        dsn = pg.get_connection_url().replace("postgresql+psycopg2", "postgresql")
        with psycopg.connect(dsn) as conn:
            conn.execute(DDL)
            conn.commit()
        yield pg


@pytest.fixture()
def dsn(postgres_container: PostgresContainer) -> str:
    """Return a psycopg-compatible DSN and truncate all tables before each test."""
    connection_url = postgres_container.get_connection_url().replace(
        "postgresql+psycopg2", "postgresql"
    )
    with psycopg.connect(connection_url) as conn:
        conn.execute(TRUNCATE_ALL)
        conn.commit()
    return connection_url
