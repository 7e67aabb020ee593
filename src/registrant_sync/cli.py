"""registrant_sync.cli

Unified CLI entrypoint for registration ingestion.

Modes (--mode):
  sync           -- fetch external registrations and reconcile into the local store (default)
  fetch          -- print the normalized external snapshot as JSON
  list_tables    -- list tables in the external source
  describe       -- describe one external table (--table)
  events         -- list events discovered in the external source
  list           -- print the owner's local registrants (--search, --sort)
  gateway_check  -- test the proxy gateway connection

Usage (sync):
    python -m registrant_sync.cli \\
        --mode sync \\
        --source-dsn "$DATABASE_URL" \\
        --db-dsn "$REGISTRANT_DB_DSN" \\
        --owner-id "3f2c..." \\
        --event-id 12 \\
        --statuses PAID,PENDING
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

import click

from registrant_sync.config import ConfigValidationError, SyncConfig, load_config
from registrant_sync.fetch_registrations import RegistrationFilter, fetch_registrations
from registrant_sync.gateway import ACTION_DESCRIBE, ACTION_EVENTS, ACTION_LIST_TABLES, ProxyGateway, handle_request
from registrant_sync.registrants import SORT_NUMBER_ASC, SORT_OPTIONS, filter_registrants
from registrant_sync.shared import (
    SyncCounters,
    SyncError,
    close_quietly,
    open_source_connection,
    open_store_connection,
    write_run_report,
)
from registrant_sync.store import load_registrants
from registrant_sync.sync import run_sync

MODES = ("sync", "fetch", "list_tables", "describe", "events", "list", "gateway_check")

_PROXY_ACTIONS = {
    "list_tables": ACTION_LIST_TABLES,
    "describe": ACTION_DESCRIBE,
    "events": ACTION_EVENTS,
}


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


@click.command()
@click.option(
    "--mode",
    default="sync",
    type=click.Choice(MODES),
    show_default=True,
    help="Operation to run",
)
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False), help="YAML config file")
@click.option("--source-dsn", default=None, help="External source DSN (overrides DATABASE_URL)")
@click.option("--db-dsn", default=None, help="Local registrant store DSN (overrides REGISTRANT_DB_DSN)")
@click.option("--owner-id", default=None, help="[sync|list] Owner whose collection is reconciled/listed")
@click.option("--event-id", default=None, help="[sync|fetch] Restrict to one external event")
@click.option("--statuses", default=None, help="[sync|fetch] Comma-separated statuses, e.g. PAID,PENDING or ALL")
@click.option("--table", default=None, help="[describe] Table to describe (default: registration table)")
@click.option("--via-gateway/--direct", default=False, show_default=True, help="[sync|list_tables|describe|events] Go through the proxy gateway")
@click.option("--search", default=None, help="[list] Free-text search over name/number/church/district")
@click.option("--sort", default=SORT_NUMBER_ASC, type=click.Choice(SORT_OPTIONS), show_default=True, help="[list] Ordering")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verbose", is_flag=True, default=False, help="Enable INFO logging")
def main(
    mode: str,
    config_path: str | None,
    source_dsn: str | None,
    db_dsn: str | None,
    owner_id: str | None,
    event_id: str | None,
    statuses: str | None,
    table: str | None,
    via_gateway: bool,
    search: str | None,
    sort: str,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Registration ingestion and reconciliation CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    try:
        config = load_config(Path(config_path) if config_path else None)
        config = config.with_overrides(source_dsn=source_dsn, db_dsn=db_dsn)
    except ConfigValidationError as exc:
        _fatal(run_id, str(exc))
        return

    click.echo(f"[{run_id}] Starting {mode} run (via_gateway={via_gateway})", err=True)

    if mode == "sync":
        _run_sync_mode(run_id, started_at, config, owner_id, event_id, statuses, via_gateway)
    elif mode == "fetch":
        _run_fetch_mode(run_id, config, event_id, statuses)
    elif mode in _PROXY_ACTIONS:
        _run_proxy_mode(run_id, config, _PROXY_ACTIONS[mode], table, via_gateway)
    elif mode == "list":
        _run_list_mode(run_id, config, owner_id, search, sort)
    elif mode == "gateway_check":
        result = ProxyGateway(config).test_connection()
        _echo_json(result)
        if not result["success"]:
            sys.exit(1)


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_sync_mode(
    run_id: str,
    started_at: str,
    config: SyncConfig,
    owner_id: str | None,
    event_id: str | None,
    statuses: str | None,
    via_gateway: bool,
) -> None:
    if not owner_id:
        _fatal(run_id, "--owner-id is required for sync")
        return

    result = run_sync(
        config, owner_id,
        event_id=event_id, statuses=statuses, via_gateway=via_gateway,
    )
    for warning in result.counters.warnings:
        click.echo(f"[{run_id}] WARNING: {warning}", err=True)

    report_path = write_run_report(
        run_id, started_at, "sync",
        {"owner_id": owner_id, "event_id": event_id, "statuses": statuses, "via_gateway": via_gateway},
        result.counters,
        outcome=result.to_dict(),
    )
    click.echo(f"[{run_id}] Run report: {report_path}", err=True)

    if not result.success:
        _fatal(run_id, f"sync failed in state {result.state}: {result.error}")
        return
    click.echo(f"[{run_id}] {result.count} registrants synchronized", err=True)
    _echo_json(result.to_dict())


def _run_fetch_mode(
    run_id: str,
    config: SyncConfig,
    event_id: str | None,
    statuses: str | None,
) -> None:
    conn = None
    try:
        conn = open_source_connection(config.require("source_dsn"))
        counters = SyncCounters()
        records = fetch_registrations(
            conn,
            RegistrationFilter.from_params({"eventId": event_id, "statuses": statuses}),
            config,
            counters=counters,
        )
    except (SyncError, ConfigValidationError) as exc:
        _fatal(run_id, str(exc))
        return
    finally:
        close_quietly(conn)
    for warning in counters.warnings:
        click.echo(f"[{run_id}] WARNING: {warning}", err=True)
    _echo_json([r.to_dict() for r in records])


def _run_proxy_mode(
    run_id: str,
    config: SyncConfig,
    action: str,
    table: str | None,
    via_gateway: bool,
) -> None:
    body = {"table": table} if table else {}
    if via_gateway:
        try:
            payload = ProxyGateway(config).invoke(action, body)
        except SyncError as exc:
            _fatal(run_id, str(exc))
            return
        _echo_json(payload)
        return

    status, payload = handle_request(action, body, config)
    _echo_json(payload)
    if status != 200:
        sys.exit(1)


def _run_list_mode(
    run_id: str,
    config: SyncConfig,
    owner_id: str | None,
    search: str | None,
    sort: str,
) -> None:
    if not owner_id:
        _fatal(run_id, "--owner-id is required for list")
        return
    conn = None
    try:
        conn = open_store_connection(config.require("db_dsn"))
        registrants = load_registrants(conn, owner_id)
    except (SyncError, ConfigValidationError) as exc:
        _fatal(run_id, str(exc))
        return
    finally:
        close_quietly(conn)
    _echo_json([r.to_dict() for r in filter_registrants(registrants, search, sort)])


if __name__ == "__main__":
    main()
