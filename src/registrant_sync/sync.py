"""registrant_sync.sync

Fetch-and-reconcile flow for one owner.

States:
    IDLE -> CONNECTING -> [INTROSPECTING] -> FETCHING -> MERGING -> DONE
    CONNECTING | INTROSPECTING | FETCHING | MERGING -> FAILED

Transitions only move forward; DONE and FAILED are terminal. A failed run
is retried by starting a new flow from IDLE, never automatically.

Two fetch paths:
    direct       -- open the external source, introspect, fetch
    via_gateway  -- invoke the proxy's default action and decode the payload
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

import psycopg

from registrant_sync.config import SyncConfig
from registrant_sync.fetch_registrations import (
    ExternalRegistrationRecord,
    RegistrationFilter,
    describe_registration_schema,
    fetch_registrations,
)
from registrant_sync.gateway import ProxyGateway, records_from_payload
from registrant_sync.reconcile import reconcile
from registrant_sync.shared import (
    InvalidTransitionError,
    SyncCounters,
    SyncError,
    close_quietly,
    open_source_connection,
    open_store_connection,
)
from registrant_sync.store import load_registrants, replace_registrants

log = logging.getLogger(__name__)

IDLE = "IDLE"
CONNECTING = "CONNECTING"
INTROSPECTING = "INTROSPECTING"
FETCHING = "FETCHING"
MERGING = "MERGING"
DONE = "DONE"
FAILED = "FAILED"

_TRANSITIONS: dict[str, frozenset[str]] = {
    IDLE: frozenset({CONNECTING}),
    CONNECTING: frozenset({INTROSPECTING, FETCHING, FAILED}),
    INTROSPECTING: frozenset({FETCHING, FAILED}),
    FETCHING: frozenset({MERGING, FAILED}),
    MERGING: frozenset({DONE, FAILED}),
    DONE: frozenset(),
    FAILED: frozenset(),
}


# ---------------------------------------------------------------------------
# State tracker
# ---------------------------------------------------------------------------

class SyncFlow:
    """Forward-only state tracker for a single fetch-and-reconcile run."""

    def __init__(self) -> None:
        self.state = IDLE
        self.history: list[str] = [IDLE]
        self.error: str | None = None

    def advance(self, target: str) -> None:
        if target not in _TRANSITIONS.get(self.state, frozenset()):
            raise InvalidTransitionError(f"illegal transition {self.state} -> {target}")
        log.debug("Sync flow %s -> %s", self.state, target)
        self.state = target
        self.history.append(target)

    def fail(self, error: str) -> None:
        self.error = error
        self.advance(FAILED)

    @property
    def finished(self) -> bool:
        return self.state in (DONE, FAILED)


@dataclass
class SyncResult:
    success: bool
    count: int
    error: str | None = None
    state: str = IDLE
    synced_at: str | None = None
    counters: SyncCounters = field(default_factory=SyncCounters)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success, "count": self.count}
        if self.error is not None:
            d["error"] = self.error
        d["state"] = self.state
        d["syncedAt"] = self.synced_at
        return d


# ---------------------------------------------------------------------------
# Merge phase
# ---------------------------------------------------------------------------

def merge_into_store(
    store_conn: psycopg.Connection,
    owner_id: str,
    external_records: Iterable[ExternalRegistrationRecord],
    counters: SyncCounters,
) -> int:
    manual = load_registrants(store_conn, owner_id, manual_only=True)
    merged = reconcile(external_records, manual)
    written = replace_registrants(store_conn, owner_id, merged)
    counters.manual_preserved = len(manual)
    counters.registrants_written = written
    return written


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run_sync(
    config: SyncConfig,
    owner_id: str,
    event_id: str | None = None,
    statuses: Iterable[str] | str | None = None,
    via_gateway: bool = False,
    gateway: Any = None,
    flow: SyncFlow | None = None,
) -> SyncResult:
    """Fetch the external snapshot and reconcile it into the owner's store.

    Never raises for SyncError/psycopg.Error: failures come back as
    SyncResult(success=False, count=0, error=...).
    """
    flow = flow or SyncFlow()
    counters = SyncCounters()
    source_conn = None
    store_conn = None
    try:
        flow.advance(CONNECTING)
        filt = RegistrationFilter.from_params({"eventId": event_id, "statuses": statuses})
        if via_gateway:
            if gateway is None:
                gateway = ProxyGateway(config)
            flow.advance(FETCHING)
            external = _fetch_via_gateway(gateway, filt)
            counters.external_fetched = len(external)
        else:
            source_conn = open_source_connection(config.require("source_dsn"))
            flow.advance(INTROSPECTING)
            schema = describe_registration_schema(source_conn, config)
            flow.advance(FETCHING)
            external = fetch_registrations(source_conn, filt, config, schema=schema, counters=counters)
            close_quietly(source_conn)
            source_conn = None

        flow.advance(MERGING)
        store_conn = open_store_connection(config.require("db_dsn"))
        written = merge_into_store(store_conn, owner_id, external, counters)
        flow.advance(DONE)
    except (SyncError, psycopg.Error, ValueError) as exc:
        log.error("Sync failed in state %s: %s", flow.state, exc)
        if not flow.finished:
            flow.fail(str(exc))
        return SyncResult(
            success=False, count=0, error=str(exc), state=flow.state, counters=counters,
        )
    finally:
        close_quietly(source_conn)
        close_quietly(store_conn)

    synced_at = datetime.now(timezone.utc).isoformat()
    log.info("Sync complete for owner %s: %d registrants", owner_id, written)
    return SyncResult(
        success=True, count=written, state=flow.state, synced_at=synced_at, counters=counters,
    )


def _fetch_via_gateway(gateway: Any, filt: RegistrationFilter) -> list[ExternalRegistrationRecord]:
    params: dict[str, Any] = {}
    if filt.event_id:
        params["eventId"] = filt.event_id
    if filt.statuses:
        params["statuses"] = sorted(filt.statuses)
    payload = gateway.invoke(None, params)
    return records_from_payload(payload)
