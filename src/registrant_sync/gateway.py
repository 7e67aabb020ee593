"""registrant_sync.gateway

Proxy gateway around the external registration source.

Server side -- handle_request(action, body, config):
    list-tables  -> {"tables": [...]}
    describe     -> {"columns": [...]}        (body "table", default registration table)
    events       -> {"events": [{id, name}]}
    (no action)  -> {"page", "limit", "total", "totalPages", "registrations"}
    Failures come back as {"success": false, "error": ..., "details": ...};
    the handler never raises for source errors.

Client side -- ProxyGateway.invoke(action, params):
    1.  Primary managed invocation (session-authenticated, pluggable invoker)
    2.  On failure, exactly one direct POST with the stored API key
    3.  If both fail, GatewayError carrying the primary error
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

import psycopg
import requests

from registrant_sync.config import ConfigValidationError, SyncConfig
from registrant_sync.fetch_registrations import (
    ExternalRegistrationRecord,
    RegistrationFilter,
    fetch_registrations,
)
from registrant_sync.normalize import trim
from registrant_sync.schema_introspect import describe_table, list_events, list_tables
from registrant_sync.shared import (
    GatewayError,
    RequestValidationError,
    SyncCounters,
    SyncError,
    close_quietly,
    open_source_connection,
)

log = logging.getLogger(__name__)

ACTION_LIST_TABLES = "list-tables"
ACTION_DESCRIBE = "describe"
ACTION_EVENTS = "events"
ACTIONS = (ACTION_LIST_TABLES, ACTION_DESCRIBE, ACTION_EVENTS)

FAILURE_DETAILS = "Failed to fetch from external database"

Invoker = Callable[..., Mapping[str, Any]]


# ---------------------------------------------------------------------------
# Server side
# ---------------------------------------------------------------------------

def _failure(message: str, details: str | None = FAILURE_DETAILS) -> dict[str, Any]:
    payload: dict[str, Any] = {"success": False, "error": message}
    if details:
        payload["details"] = details
    return payload


def handle_request(
    action: str | None,
    body: Mapping[str, Any] | None,
    config: SyncConfig,
    connect: Callable[[str], psycopg.Connection] = open_source_connection,
) -> tuple[int, dict[str, Any]]:
    """Run one proxy action; returns (http_status, json_payload)."""
    action = trim(action) if action else None
    body = dict(body or {})
    if action is not None and action not in ACTIONS:
        return 400, _failure(f"unknown action {action!r}", details=None)
    filt = None
    if action is None:
        try:
            filt = RegistrationFilter.from_params(body)
        except RequestValidationError as exc:
            return 400, _failure(str(exc), details=None)

    log.info("Action requested: %s", action or "registrations")
    conn = None
    try:
        conn = connect(config.require("source_dsn"))

        if action == ACTION_LIST_TABLES:
            tables = list_tables(conn)
            log.info("Tables found: %d", len(tables))
            return 200, {"tables": tables}

        if action == ACTION_DESCRIBE:
            table = trim(str(body.get("table") or "")) or config.registration_table
            columns = describe_table(conn, table)
            return 200, {"columns": [c.to_dict() for c in columns]}

        if action == ACTION_EVENTS:
            return 200, {"events": list_events(conn)}

        counters = SyncCounters()
        records = fetch_registrations(conn, filt, config, counters=counters)
        log.info("Successfully fetched %d registrations", len(records))
        return 200, {
            "page": 1,
            "limit": config.max_rows,
            "total": len(records),
            "totalPages": 1,
            "eventFilterIgnored": counters.event_filter_ignored,
            "registrations": [r.to_dict() for r in records],
        }
    except (SyncError, ConfigValidationError, psycopg.Error) as exc:
        log.error("Proxy action %s failed: %s", action or "registrations", exc)
        return 500, _failure(str(exc))
    finally:
        close_quietly(conn)


def records_from_payload(payload: Mapping[str, Any]) -> list[ExternalRegistrationRecord]:
    """Decode the default action's payload, preserving fetch order."""
    if payload.get("success") is False:
        raise GatewayError(str(payload.get("error") or "proxy reported failure"))
    try:
        return [ExternalRegistrationRecord.from_dict(item) for item in payload.get("registrations") or []]
    except (KeyError, TypeError, ValueError) as exc:
        raise GatewayError(f"malformed registration payload: {exc}") from exc


# ---------------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------------

def _decode_response(resp: requests.Response) -> dict[str, Any]:
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if resp.status_code >= 400:
        message = None
        if isinstance(payload, dict):
            message = payload.get("error")
        raise GatewayError(message or f"proxy returned HTTP {resp.status_code}")
    if not isinstance(payload, dict):
        raise GatewayError("proxy returned a non-JSON-object body")
    if payload.get("success") is False:
        raise GatewayError(str(payload.get("error") or "proxy reported failure"))
    return payload


class ProxyGateway:
    """Client for the proxy function with a single direct-POST fallback."""

    def __init__(
        self,
        config: SyncConfig,
        session: requests.Session | None = None,
        invoker: Invoker | None = None,
    ) -> None:
        self._config = config
        self._session = session or requests.Session()
        self._invoker = invoker or self._invoke_function

    @property
    def endpoint(self) -> str:
        base = self._config.require("functions_url").rstrip("/")
        return f"{base}/{self._config.function_name}"

    def _headers(self, token: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["apikey"] = self._config.api_key
        bearer = token or self._config.api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    @staticmethod
    def _query(action: str | None) -> dict[str, str]:
        return {"action": action} if action else {}

    def _invoke_function(self, name: str, action: str | None, body: dict) -> dict[str, Any]:
        resp = self._session.post(
            self.endpoint,
            params=self._query(action),
            json=body,
            headers=self._headers(self._config.access_token),
            timeout=self._config.request_timeout,
        )
        return _decode_response(resp)

    def _post_direct(self, action: str | None, body: dict) -> dict[str, Any]:
        api_key = self._config.require("api_key")
        resp = requests.post(
            self.endpoint,
            params=self._query(action),
            json=body,
            headers={
                "Content-Type": "application/json",
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
            },
            timeout=self._config.request_timeout,
        )
        return _decode_response(resp)

    def invoke(self, action: str | None = None, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        body = dict(params or {})
        try:
            result = self._invoker(self._config.function_name, action, body)
            if not isinstance(result, Mapping):
                raise GatewayError("function returned a non-object payload")
            return dict(result)
        except (requests.RequestException, SyncError, ConfigValidationError) as primary_exc:
            log.warning("Function invocation failed (%s); trying direct POST", primary_exc)
            try:
                return self._post_direct(action, body)
            except (requests.RequestException, SyncError, ConfigValidationError) as fallback_exc:
                log.error("Direct POST fallback failed: %s", fallback_exc)
                raise GatewayError(str(primary_exc)) from primary_exc

    def test_connection(self) -> dict[str, Any]:
        try:
            self.invoke(ACTION_LIST_TABLES)
        except GatewayError as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True}
