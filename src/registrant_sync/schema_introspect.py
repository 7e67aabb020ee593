"""registrant_sync.schema_introspect

Heuristic discovery of tables and columns in the external source.

The external schema is not owned by this system and drifts per deployment,
so names are found by matching ordered candidate lists case-insensitively
against what the database actually reports. A miss is a normal outcome
(None), never an exception.

SHOW TABLES / DESCRIBE equivalents come from information_schema, scoped to
the connection's current_schema().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

import psycopg
from psycopg import sql

from registrant_sync.shared import query_all

log = logging.getLogger(__name__)

EVENT_TABLE_CANDIDATES = ("event", "events", "evento", "eventos")
EVENT_ID_CANDIDATES = ("id", "event_id", "evento_id")
EVENT_NAME_CANDIDATES = ("name", "nome", "title", "titulo", "descricao", "description")


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    data_type: str
    nullable: bool
    default: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.data_type,
            "nullable": self.nullable,
            "default": self.default,
        }


@dataclass(frozen=True)
class EventsTable:
    table_name: str
    id_column: str
    name_column: str


# ---------------------------------------------------------------------------
# Raw listing
# ---------------------------------------------------------------------------

def list_tables(conn: psycopg.Connection) -> list[str]:
    rows = query_all(
        conn,
        """
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = current_schema()
          AND table_type = 'BASE TABLE'
        ORDER BY table_name
        """,
    )
    return [r["table_name"] for r in rows]


def describe_table(conn: psycopg.Connection, table_name: str) -> list[ColumnInfo]:
    """Return the table's columns in ordinal order ([] for an unknown table)."""
    rows = query_all(
        conn,
        """
        SELECT column_name, data_type, is_nullable, column_default
        FROM information_schema.columns
        WHERE table_schema = current_schema()
          AND table_name = %s
        ORDER BY ordinal_position
        """,
        (table_name,),
    )
    return [
        ColumnInfo(
            name=r["column_name"],
            data_type=r["data_type"],
            nullable=r["is_nullable"] == "YES",
            default=r["column_default"],
        )
        for r in rows
    ]


# ---------------------------------------------------------------------------
# Candidate matching
# ---------------------------------------------------------------------------

def match_name(available: Iterable[str], candidates: Iterable[str]) -> str | None:
    """Return the actual name for the first candidate present (case-insensitive).

    Candidate order wins over the order of `available`.
    """
    by_lower: dict[str, str] = {}
    for name in available:
        by_lower.setdefault(name.lower(), name)
    for candidate in candidates:
        hit = by_lower.get(candidate.lower())
        if hit is not None:
            return hit
    return None


def find_table(conn: psycopg.Connection, candidates: Iterable[str]) -> str | None:
    return match_name(list_tables(conn), candidates)


def find_column(columns: Iterable[ColumnInfo], candidates: Iterable[str]) -> str | None:
    return match_name((c.name for c in columns), candidates)


# ---------------------------------------------------------------------------
# Events table
# ---------------------------------------------------------------------------

def discover_events_table(conn: psycopg.Connection) -> EventsTable | None:
    """Locate the events table plus its id and display-name columns.

    Returns None when no candidate table exists or it has no recognizable
    id column. When no display-name candidate matches, the first column of
    the table is used.
    """
    table = find_table(conn, EVENT_TABLE_CANDIDATES)
    if table is None:
        log.info("No events table found among candidates %s", EVENT_TABLE_CANDIDATES)
        return None

    columns = describe_table(conn, table)
    if not columns:
        return None
    id_column = find_column(columns, EVENT_ID_CANDIDATES)
    if id_column is None:
        log.warning("Events table %s has no id column among %s", table, EVENT_ID_CANDIDATES)
        return None
    name_column = find_column(columns, EVENT_NAME_CANDIDATES) or columns[0].name
    return EventsTable(table_name=table, id_column=id_column, name_column=name_column)


def list_events(conn: psycopg.Connection) -> list[dict[str, Any]]:
    """Return [{id, name}] ordered by name; [] when there is no events table."""
    events_table = discover_events_table(conn)
    if events_table is None:
        return []
    query = sql.SQL("SELECT {id} AS id, {name} AS name FROM {table} ORDER BY {name} ASC").format(
        id=sql.Identifier(events_table.id_column),
        name=sql.Identifier(events_table.name_column),
        table=sql.Identifier(events_table.table_name),
    )
    rows = query_all(conn, query)
    return [
        {"id": str(r["id"]) if r["id"] is not None else None,
         "name": str(r["name"]) if r["name"] is not None else None}
        for r in rows
    ]
