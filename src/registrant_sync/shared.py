"""registrant_sync.shared

Shared utilities used by the fetch, reconcile, gateway and CLI layers.
Includes the exception hierarchy, SyncCounters, connection helpers for the
external source and the local store, and run-report writing.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import psycopg
from psycopg.conninfo import conninfo_to_dict
from psycopg.rows import dict_row

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SyncError(Exception):
    """Base class for fetch/reconcile failures surfaced to callers."""


class SourceConnectionError(SyncError):
    """Raised when the external source cannot be reached or authenticated."""


class QueryError(SyncError):
    """Raised when an external query fails; no partial data is returned."""


class PersistenceError(SyncError):
    """Raised when writing the local registrant store fails."""


class GatewayError(SyncError):
    """Raised when the proxy gateway cannot produce a successful response."""


class RequestValidationError(SyncError):
    """Raised when request parameters have the wrong shape."""


class InvalidTransitionError(SyncError):
    """Raised on an illegal sync-flow state transition."""


class DrawBlockedError(SyncError):
    """Raised when a registrant's payment status blocks team assignment."""


# ---------------------------------------------------------------------------
# SyncCounters
# ---------------------------------------------------------------------------

@dataclass
class SyncCounters:
    external_fetched: int = 0
    manual_preserved: int = 0
    registrants_written: int = 0
    districts_loaded: int = 0
    churches_loaded: int = 0
    lots_loaded: int = 0
    event_filter_ignored: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

def describe_target(dsn: str) -> str:
    """Return 'host:port/dbname' for logging; never includes credentials."""
    try:
        info = conninfo_to_dict(dsn)
    except psycopg.ProgrammingError:
        return "<unparseable dsn>"
    host = info.get("host") or "localhost"
    port = info.get("port") or "5432"
    return f"{host}:{port}/{info.get('dbname') or ''}"


def open_source_connection(dsn: str) -> psycopg.Connection:
    """Connect to the external registration source (dict rows, autocommit).

    Raises:
        SourceConnectionError: on any connect/authentication failure.
    """
    target = describe_target(dsn)
    log.info("Connecting to external source %s", target)
    try:
        conn = psycopg.connect(dsn, autocommit=True, row_factory=dict_row)
    except psycopg.Error as exc:
        raise SourceConnectionError(f"cannot connect to {target}: {exc}") from exc
    log.info("Connected to external source %s", target)
    return conn


def open_store_connection(dsn: str) -> psycopg.Connection:
    """Connect to the local registrant store (tuple rows, explicit commits)."""
    try:
        return psycopg.connect(dsn, autocommit=False)
    except psycopg.Error as exc:
        raise PersistenceError(f"cannot connect to registrant store: {exc}") from exc


def close_quietly(conn: psycopg.Connection | None) -> None:
    """Close a connection on an exit path; a failing close is logged only."""
    if conn is None:
        return
    try:
        conn.close()
    except psycopg.Error as exc:
        log.error("Error closing connection: %s", exc)


def query_all(
    conn: psycopg.Connection,
    query: Any,
    params: tuple | list | None = None,
) -> list[dict[str, Any]]:
    """Run a query on a dict_row connection; psycopg errors become QueryError."""
    try:
        return list(conn.execute(query, params).fetchall())
    except psycopg.Error as exc:
        raise QueryError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    parameters: dict[str, Any],
    counters: SyncCounters,
    outcome: dict[str, Any] | None = None,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        **parameters,
        "outcome": outcome or {},
        "counters": counters.to_dict(),
    }
    report_path = Path(f"./artifacts/reports/{run_id}.json")
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
