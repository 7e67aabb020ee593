"""registrant_sync.fetch_registrations

Bounded, filtered fetch of registrations from the external source.

Processing order per fetch:
  1.  Resolve the registration table and map logical -> physical columns
  2.  Load district + church lookup maps (id -> name) fully into memory
  3.  Load lots (pricing/time-window tiers) when a lot table exists
  4.  SELECT registrations, optional event + status clauses,
      ORDER BY createdAt ASC, id ASC LIMIT max_rows
  5.  Reshape each row into an ExternalRegistrationRecord

The creation-time ordering is what the reconciliation step numbers by, so
it must not change. Any query failure aborts the whole fetch (QueryError);
partial results are never returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Mapping

import psycopg
from psycopg import sql

from registrant_sync.config import SyncConfig
from registrant_sync.normalize import (
    as_date_str,
    as_timestamp_str,
    compute_age,
    expand_status_filter,
    normalize_space,
    parse_status_filter,
    rewrite_photo_url,
    trim,
)
from registrant_sync.schema_introspect import (
    describe_table,
    find_column,
    list_tables,
    match_name,
)
from registrant_sync.shared import QueryError, RequestValidationError, SyncCounters, query_all

log = logging.getLogger(__name__)

NOT_INFORMED = "Não informado"
UNNAMED = "Sem nome"

REGISTRATION_TABLE_FALLBACKS = ("registration", "registrations", "inscricao", "inscricoes")
DISTRICT_TABLE_FALLBACKS = ("district", "districts", "distrito", "distritos")
CHURCH_TABLE_FALLBACKS = ("church", "churches", "igreja", "igrejas")
LOT_TABLE_CANDIDATES = ("lot", "lots", "lote", "lotes")

EVENT_LINK_CANDIDATES = ("eventId", "event_id", "eventoId", "evento_id")

REGISTRATION_COLUMN_CANDIDATES: dict[str, tuple[str, ...]] = {
    "id": ("id", "registration_id", "inscricao_id"),
    "full_name": ("fullName", "full_name", "nome", "name"),
    "birth_date": ("birthDate", "birth_date", "nascimento", "data_nascimento"),
    "age_years": ("ageYears", "age_years", "idade", "age"),
    "district_id": ("districtId", "district_id", "distrito_id"),
    "church_id": ("churchId", "church_id", "igreja_id"),
    "photo_url": ("photoUrl", "photo_url", "foto_url"),
    "status": ("status", "paymentStatus", "payment_status", "status_pagamento"),
    "created_at": ("createdAt", "created_at"),
    "lot_id": ("lotId", "lot_id", "loteId", "lote_id"),
    "event_id": EVENT_LINK_CANDIDATES,
}
REQUIRED_REGISTRATION_COLUMNS = ("id", "status", "created_at")

LOT_COLUMN_CANDIDATES: dict[str, tuple[str, ...]] = {
    "id": ("id",),
    "name": ("name", "nome", "title", "titulo", "descricao"),
    "starts_at": ("startsAt", "starts_at", "inicio", "start_date", "data_inicio"),
    "ends_at": ("endsAt", "ends_at", "fim", "end_date", "data_fim"),
    "event_id": EVENT_LINK_CANDIDATES,
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Lot:
    id: str
    name: str | None
    starts_at: str | None
    ends_at: str | None
    event_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "startsAt": self.starts_at,
            "endsAt": self.ends_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Lot:
        return cls(
            id=str(data["id"]),
            name=data.get("name"),
            starts_at=data.get("startsAt"),
            ends_at=data.get("endsAt"),
        )

    def contains(self, day: str) -> bool:
        if not self.starts_at or not self.ends_at:
            return False
        return self.starts_at <= day <= self.ends_at


@dataclass(frozen=True)
class ExternalRegistrationRecord:
    external_id: str
    full_name: str
    birth_date: str | None
    computed_age: int
    district_name: str
    church_name: str
    photo_url: str | None
    raw_status: str | None
    created_at: str | None
    lot: Lot | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "externalId": self.external_id,
            "fullName": self.full_name,
            "birthDate": self.birth_date,
            "computedAge": self.computed_age,
            "districtName": self.district_name,
            "churchName": self.church_name,
            "photoUrl": self.photo_url,
            "rawStatus": self.raw_status,
            "lot": self.lot.to_dict() if self.lot else None,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExternalRegistrationRecord:
        lot = data.get("lot")
        if data["externalId"] is None:
            raise ValueError("externalId is null")
        return cls(
            external_id=str(data["externalId"]),
            full_name=data.get("fullName") or UNNAMED,
            birth_date=as_date_str(data.get("birthDate")),
            computed_age=_as_int(data.get("computedAge")),
            district_name=data.get("districtName") or NOT_INFORMED,
            church_name=data.get("churchName") or NOT_INFORMED,
            photo_url=data.get("photoUrl"),
            raw_status=data.get("rawStatus"),
            created_at=data.get("createdAt"),
            lot=Lot.from_dict(lot) if lot else None,
        )


@dataclass(frozen=True)
class RegistrationFilter:
    event_id: str | None = None
    statuses: frozenset[str] = frozenset()

    @classmethod
    def from_params(cls, params: Mapping[str, Any] | None) -> RegistrationFilter:
        """Build from a request body: optional eventId, statuses as list or 'A,B'."""
        params = params or {}
        event_id = params.get("eventId")
        event_id = trim(str(event_id)) if event_id is not None else None
        statuses = params.get("statuses")
        if statuses is not None and not isinstance(statuses, (str, list, tuple, set, frozenset)):
            raise RequestValidationError(
                f"statuses must be a list or a comma-separated string, got {type(statuses).__name__}"
            )
        return cls(
            event_id=event_id,
            statuses=frozenset(parse_status_filter(statuses)),
        )


@dataclass(frozen=True)
class RegistrationSchema:
    table_name: str
    columns: dict[str, str | None]
    tables: tuple[str, ...] = field(default=(), repr=False)

    @property
    def event_column(self) -> str | None:
        return self.columns.get("event_id")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _as_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, Decimal, float)):
        return int(value)
    try:
        return int(str(value).strip())
    except ValueError:
        return 0


def _as_key(value: Any) -> str | None:
    return str(value) if value is not None else None


def _map_columns(
    columns: Iterable[Any],
    candidates: Mapping[str, tuple[str, ...]],
) -> dict[str, str | None]:
    columns = list(columns)
    return {logical: find_column(columns, cands) for logical, cands in candidates.items()}


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

def describe_registration_schema(
    conn: psycopg.Connection,
    config: SyncConfig,
) -> RegistrationSchema:
    """Resolve the registration table and its logical columns.

    Raises:
        QueryError: table absent, or id/status/created_at column absent.
    """
    tables = list_tables(conn)
    table = match_name(tables, (config.registration_table, *REGISTRATION_TABLE_FALLBACKS))
    if table is None:
        raise QueryError(f"registration table {config.registration_table!r} not found")

    mapped = _map_columns(describe_table(conn, table), REGISTRATION_COLUMN_CANDIDATES)
    missing = [name for name in REQUIRED_REGISTRATION_COLUMNS if mapped[name] is None]
    if missing:
        raise QueryError(f"registration table {table!r} lacks required columns: {missing}")
    return RegistrationSchema(table_name=table, columns=mapped, tables=tuple(tables))


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def load_lookup(
    conn: psycopg.Connection,
    tables: Iterable[str],
    candidates: Iterable[str],
) -> dict[str, str]:
    """Load an id -> name reference table; {} (with a warning) if absent."""
    candidates = tuple(candidates)
    table = match_name(tables, candidates)
    if table is None:
        log.warning("Lookup table not found among %s; names default to %r", candidates, NOT_INFORMED)
        return {}
    columns = describe_table(conn, table)
    id_col = find_column(columns, ("id",))
    name_col = find_column(columns, ("name", "nome"))
    if id_col is None or name_col is None:
        log.warning("Lookup table %s lacks id/name columns", table)
        return {}
    rows = query_all(
        conn,
        sql.SQL("SELECT {} AS id, {} AS name FROM {}").format(
            sql.Identifier(id_col), sql.Identifier(name_col), sql.Identifier(table),
        ),
    )
    return {
        str(r["id"]): str(r["name"])
        for r in rows
        if r["id"] is not None and r["name"] is not None
    }


def load_lots(conn: psycopg.Connection, tables: Iterable[str]) -> list[Lot]:
    """Load lots ordered by start date; [] when the source has no lot table."""
    table = match_name(tables, LOT_TABLE_CANDIDATES)
    if table is None:
        return []
    mapped = _map_columns(describe_table(conn, table), LOT_COLUMN_CANDIDATES)
    if mapped["id"] is None:
        log.warning("Lot table %s has no id column; lots ignored", table)
        return []

    items = []
    for logical in LOT_COLUMN_CANDIDATES:
        actual = mapped[logical]
        if actual:
            items.append(sql.SQL("{} AS {}").format(sql.Identifier(actual), sql.Identifier(logical)))
        else:
            items.append(sql.SQL("NULL AS {}").format(sql.Identifier(logical)))
    rows = query_all(
        conn,
        sql.SQL("SELECT {} FROM {}").format(sql.SQL(", ").join(items), sql.Identifier(table)),
    )
    lots = [
        Lot(
            id=str(r["id"]),
            name=_as_key(r["name"]),
            starts_at=as_date_str(r["starts_at"]),
            ends_at=as_date_str(r["ends_at"]),
            event_id=_as_key(r["event_id"]),
        )
        for r in rows
        if r["id"] is not None
    ]
    lots.sort(key=lambda lot: (lot.starts_at is None, lot.starts_at or "", lot.id))
    return lots


def resolve_lot(
    lots: Iterable[Lot],
    lot_id: Any = None,
    created_at: Any = None,
    event_id: str | None = None,
) -> Lot | None:
    """Pick a registration's lot.

    An explicit lot id wins. Otherwise the first lot (by start date) whose
    inclusive date window holds the creation date, skipping lots that
    belong to a different event.
    """
    lots = list(lots)
    if lot_id is not None:
        wanted = str(lot_id)
        return next((lot for lot in lots if lot.id == wanted), None)
    day = as_date_str(created_at)
    if day is None:
        return None
    for lot in lots:
        if event_id is not None and lot.event_id is not None and lot.event_id != event_id:
            continue
        if lot.contains(day):
            return lot
    return None


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------

def build_registration_query(
    schema: RegistrationSchema,
    filt: RegistrationFilter,
    max_rows: int,
) -> tuple[sql.Composed, list[Any], bool]:
    """Return (query, params, event_filter_applied)."""
    items = []
    for logical in REGISTRATION_COLUMN_CANDIDATES:
        actual = schema.columns.get(logical)
        if actual:
            items.append(sql.SQL("{} AS {}").format(sql.Identifier(actual), sql.Identifier(logical)))
        else:
            items.append(sql.SQL("NULL AS {}").format(sql.Identifier(logical)))

    clauses: list[sql.Composable] = []
    params: list[Any] = []

    event_applied = False
    if filt.event_id:
        if schema.event_column:
            clauses.append(
                sql.SQL("CAST({} AS TEXT) = %s").format(sql.Identifier(schema.event_column))
            )
            params.append(filt.event_id)
            event_applied = True
        else:
            log.warning(
                "Event filter %r ignored: no event column on %s",
                filt.event_id, schema.table_name,
            )

    statuses = expand_status_filter(filt.statuses)
    if statuses:
        clauses.append(
            sql.SQL("UPPER(CAST({} AS TEXT)) = ANY(%s)").format(
                sql.Identifier(schema.columns["status"])
            )
        )
        params.append(statuses)

    where = sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses) if clauses else sql.SQL("")
    query = sql.SQL(
        "SELECT {items} FROM {table}{where} ORDER BY {created} ASC, {id} ASC LIMIT {limit}"
    ).format(
        items=sql.SQL(", ").join(items),
        table=sql.Identifier(schema.table_name),
        where=where,
        created=sql.Identifier(schema.columns["created_at"]),
        id=sql.Identifier(schema.columns["id"]),
        limit=sql.Literal(max_rows),
    )
    return query, params, event_applied


# ---------------------------------------------------------------------------
# Row reshaping
# ---------------------------------------------------------------------------

def build_record(
    row: Mapping[str, Any],
    districts: Mapping[str, str],
    churches: Mapping[str, str],
    lots: Iterable[Lot],
    media_base_url: str,
    event_id: str | None = None,
    today: date | None = None,
) -> ExternalRegistrationRecord:
    if row.get("id") is None:
        raise QueryError("registration row has a null id")
    birth_date = as_date_str(row.get("birth_date"))
    age = _as_int(row.get("age_years"))
    if age <= 0:
        age = compute_age(birth_date, today)

    raw_name = row.get("full_name")
    full_name = normalize_space(str(raw_name)) if raw_name is not None else None

    raw_status = row.get("status")
    row_event = _as_key(row.get("event_id")) or event_id
    return ExternalRegistrationRecord(
        external_id=str(row["id"]),
        full_name=full_name or UNNAMED,
        birth_date=birth_date,
        computed_age=age,
        district_name=districts.get(_as_key(row.get("district_id")) or "") or NOT_INFORMED,
        church_name=churches.get(_as_key(row.get("church_id")) or "") or NOT_INFORMED,
        photo_url=rewrite_photo_url(row.get("photo_url"), media_base_url),
        raw_status=str(raw_status) if raw_status is not None else None,
        created_at=as_timestamp_str(row.get("created_at")),
        lot=resolve_lot(lots, row.get("lot_id"), row.get("created_at"), row_event),
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def fetch_registrations(
    conn: psycopg.Connection,
    filt: RegistrationFilter,
    config: SyncConfig,
    schema: RegistrationSchema | None = None,
    counters: SyncCounters | None = None,
    today: date | None = None,
) -> list[ExternalRegistrationRecord]:
    """Fetch registrations ordered by creation time (ascending).

    Args:
        conn: dict_row connection to the external source.
        filt: Optional event id and requested statuses.
        config: Table names, media base URL, row cap.
        schema: Pre-resolved registration schema (introspected if None).
        counters: Receives lookup sizes, row counts, ignored-filter warnings.

    Raises:
        QueryError: On any failing query or missing required schema.
    """
    counters = counters if counters is not None else SyncCounters()
    if schema is None:
        schema = describe_registration_schema(conn, config)

    districts = load_lookup(conn, schema.tables, (config.district_table, *DISTRICT_TABLE_FALLBACKS))
    churches = load_lookup(conn, schema.tables, (config.church_table, *CHURCH_TABLE_FALLBACKS))
    lots = load_lots(conn, schema.tables)
    counters.districts_loaded = len(districts)
    counters.churches_loaded = len(churches)
    counters.lots_loaded = len(lots)
    log.info(
        "Loaded %d districts, %d churches, %d lots",
        len(districts), len(churches), len(lots),
    )

    query, params, event_applied = build_registration_query(schema, filt, config.max_rows)
    if filt.event_id and not event_applied:
        counters.event_filter_ignored = True
        counters.warnings.append(
            f"event filter {filt.event_id!r} ignored: no event column on {schema.table_name}"
        )

    rows = query_all(conn, query, params)
    log.info("Registration query returned %d rows", len(rows))

    records = [
        build_record(
            row, districts, churches, lots, config.media_base_url,
            event_id=filt.event_id, today=today,
        )
        for row in rows
    ]
    counters.external_fetched = len(records)
    return records
