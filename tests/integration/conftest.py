"""Integration test fixtures.

Applies the registrant store migration against an ephemeral PostgreSQL
database provided by pytest-postgresql, and seeds an external-style
registration source (quoted mixed-case tables) in a separate schema.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from psycopg.conninfo import make_conninfo
from pytest_postgresql import factories

from registrant_sync.shared import open_source_connection

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_registrant.sql",
]

EXTERNAL_SCHEMA = "external"

# createdAt ties between 101 and 104 are intentional (id breaks the tie).
EXTERNAL_SEED = f"""
CREATE SCHEMA {EXTERNAL_SCHEMA};
SET search_path TO {EXTERNAL_SCHEMA};

CREATE TABLE "District" (id INTEGER PRIMARY KEY, name TEXT NOT NULL);
CREATE TABLE "Church"   (id INTEGER PRIMARY KEY, name TEXT NOT NULL);
CREATE TABLE "Eventos"  (id INTEGER PRIMARY KEY, titulo TEXT NOT NULL);
CREATE TABLE "Lote" (
    id          INTEGER PRIMARY KEY,
    nome        TEXT,
    "startsAt"  DATE,
    "endsAt"    DATE,
    "eventId"   INTEGER
);
CREATE TABLE "Registration" (
    id           INTEGER PRIMARY KEY,
    "fullName"   TEXT,
    "birthDate"  DATE,
    "districtId" INTEGER,
    "churchId"   INTEGER,
    "photoUrl"   TEXT,
    status       TEXT NOT NULL,
    "createdAt"  TIMESTAMP NOT NULL,
    "eventId"    INTEGER
);

INSERT INTO "District" VALUES (1, 'Distrito Norte'), (2, 'Distrito Sul');
INSERT INTO "Church"   VALUES (1, 'Igreja Central'), (2, 'Igreja Betel');
INSERT INTO "Eventos"  VALUES (10, 'Acampamento 2024'), (20, 'Retiro de Carnaval');
INSERT INTO "Lote" VALUES
    (1, 'Lote 1',     '2024-01-01', '2024-01-31', 10),
    (2, 'Lote 2',     '2024-02-01', '2024-02-29', 10),
    (3, 'Lote Único', '2024-01-01', '2024-03-31', 20);
INSERT INTO "Registration" VALUES
    (101, 'Ana Souza',   '2008-03-09', 1, 1,    'https://old-host/uploads/sub/ana.jpg', 'approved',  '2024-01-10 09:00', 10),
    (102, 'Bruno Costa', '2007-11-20', 2, 2,    NULL,                                   'PENDING',   '2024-02-05 12:00', 10),
    (103, 'Carla Dias',  NULL,         NULL, 99, 'null',                                'CANCELADO', '2024-01-15 08:00', 20),
    (104, 'Davi Lima',   '2009-01-01', 1, 2,    'davi.png',                             'Pago',      '2024-01-10 09:00', 10),
    (105, NULL,          NULL,         1, 1,    NULL,                                   'refunded',  '2024-03-01 10:00', 10);

SET search_path TO public;
"""

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (connection, dsn) for the local store with migrations applied.

    Each test gets a fresh database via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture(scope="function")
def source_dsn(db_conn):
    """DSN of the seeded external source; current_schema() is the external schema."""
    conn, dsn = db_conn
    conn.execute(EXTERNAL_SEED)
    conn.commit()
    return make_conninfo(dsn, options=f"-c search_path={EXTERNAL_SCHEMA}")


@pytest.fixture(scope="function")
def source_conn(source_dsn):
    conn = open_source_connection(source_dsn)
    try:
        yield conn
    finally:
        conn.close()
