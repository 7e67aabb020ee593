"""Integration tests for introspection + fetch against a seeded external source.

Tests:
  - information_schema listing scoped to current_schema()
  - case-insensitive events table discovery ("Eventos")
  - fetch ordering (createdAt ASC, id ASC), lookups, lots, photo rewrite
  - event and status filters, ignored event filter when no event column
  - gateway handler over a real connection
"""

from __future__ import annotations

from datetime import date

import pytest

from registrant_sync.config import SyncConfig
from registrant_sync.fetch_registrations import (
    RegistrationFilter,
    describe_registration_schema,
    fetch_registrations,
    load_lots,
)
from registrant_sync.gateway import handle_request
from registrant_sync.schema_introspect import (
    describe_table,
    discover_events_table,
    list_events,
    list_tables,
)
from registrant_sync.shared import QueryError, SourceConnectionError, SyncCounters, open_source_connection

BASE = "https://media.example.test/uploads"
TODAY = date(2024, 6, 1)


def _config(source_dsn: str, **kw) -> SyncConfig:
    return SyncConfig(source_dsn=source_dsn, media_base_url=BASE, **kw)


def _fetch(source_conn, source_dsn, filt=None, counters=None, **kw):
    return fetch_registrations(
        source_conn, filt or RegistrationFilter(), _config(source_dsn, **kw),
        counters=counters, today=TODAY,
    )


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------

class TestIntrospection:
    def test_list_tables_scoped_to_current_schema(self, source_conn):
        assert list_tables(source_conn) == ["Church", "District", "Eventos", "Lote", "Registration"]

    def test_describe_table_in_ordinal_order(self, source_conn):
        columns = describe_table(source_conn, "Registration")
        assert [c.name for c in columns][:3] == ["id", "fullName", "birthDate"]
        assert columns[0].nullable is False
        assert columns[0].data_type == "integer"

    def test_describe_unknown_table_is_empty(self, source_conn):
        assert describe_table(source_conn, "nope") == []

    def test_events_table_matched_case_insensitively(self, source_conn):
        found = discover_events_table(source_conn)
        assert found.table_name == "Eventos"
        assert found.id_column == "id"
        assert found.name_column == "titulo"

    def test_list_events_ordered_by_name(self, source_conn):
        assert list_events(source_conn) == [
            {"id": "10", "name": "Acampamento 2024"},
            {"id": "20", "name": "Retiro de Carnaval"},
        ]

    def test_registration_schema(self, source_conn, source_dsn):
        schema = describe_registration_schema(source_conn, _config(source_dsn))
        assert schema.table_name == "Registration"
        assert schema.event_column == "eventId"
        assert schema.columns["age_years"] is None
        assert schema.columns["lot_id"] is None

    def test_configured_table_name_case_folded(self, source_conn, source_dsn):
        schema = describe_registration_schema(
            source_conn, _config(source_dsn, registration_table="registration"),
        )
        assert schema.table_name == "Registration"

    def test_unreachable_source(self):
        with pytest.raises(SourceConnectionError):
            open_source_connection("host=127.0.0.1 port=1 dbname=none connect_timeout=1")


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------

class TestFetchRegistrations:
    def test_ordered_by_created_at_then_id(self, source_conn, source_dsn):
        records = _fetch(source_conn, source_dsn)
        assert [r.external_id for r in records] == ["101", "104", "103", "102", "105"]

    def test_record_shape(self, source_conn, source_dsn):
        ana = _fetch(source_conn, source_dsn)[0]
        assert ana.full_name == "Ana Souza"
        assert ana.birth_date == "2008-03-09"
        assert ana.computed_age == 16
        assert ana.district_name == "Distrito Norte"
        assert ana.church_name == "Igreja Central"
        assert ana.photo_url == f"{BASE}/ana.jpg"
        assert ana.raw_status == "approved"
        assert ana.created_at == "2024-01-10T09:00:00"
        assert ana.lot.name == "Lote 1"

    def test_defaults_for_missing_values(self, source_conn, source_dsn):
        by_id = {r.external_id: r for r in _fetch(source_conn, source_dsn)}
        carla = by_id["103"]
        assert carla.district_name == "Não informado"
        assert carla.church_name == "Não informado"
        assert carla.photo_url is None
        assert carla.computed_age == 0
        assert by_id["105"].full_name == "Sem nome"

    def test_lots_linked_by_window_and_event(self, source_conn, source_dsn):
        by_id = {r.external_id: r for r in _fetch(source_conn, source_dsn)}
        assert by_id["103"].lot.id == "3"
        assert by_id["102"].lot.id == "2"
        assert by_id["105"].lot is None

    def test_counters(self, source_conn, source_dsn):
        counters = SyncCounters()
        _fetch(source_conn, source_dsn, counters=counters)
        assert counters.external_fetched == 5
        assert counters.districts_loaded == 2
        assert counters.churches_loaded == 2
        assert counters.lots_loaded == 3
        assert counters.event_filter_ignored is False

    def test_lots_ordered_by_start(self, source_conn):
        lots = load_lots(source_conn, list_tables(source_conn))
        assert [lot.id for lot in lots] == ["1", "3", "2"]

    def test_paid_filter_matches_synonyms(self, source_conn, source_dsn):
        filt = RegistrationFilter.from_params({"statuses": ["PAID"]})
        assert [r.external_id for r in _fetch(source_conn, source_dsn, filt)] == ["101", "104"]

    def test_cancelled_filter(self, source_conn, source_dsn):
        filt = RegistrationFilter.from_params({"statuses": "cancelled"})
        assert [r.external_id for r in _fetch(source_conn, source_dsn, filt)] == ["103", "105"]

    def test_all_statuses(self, source_conn, source_dsn):
        filt = RegistrationFilter.from_params({"statuses": "ALL"})
        assert len(_fetch(source_conn, source_dsn, filt)) == 5

    def test_event_filter(self, source_conn, source_dsn):
        filt = RegistrationFilter.from_params({"eventId": "20"})
        assert [r.external_id for r in _fetch(source_conn, source_dsn, filt)] == ["103"]

    def test_event_and_status_filter(self, source_conn, source_dsn):
        filt = RegistrationFilter.from_params({"eventId": 10, "statuses": "PENDING"})
        assert [r.external_id for r in _fetch(source_conn, source_dsn, filt)] == ["102"]

    def test_max_rows(self, source_conn, source_dsn):
        assert [r.external_id for r in _fetch(source_conn, source_dsn, max_rows=2)] == ["101", "104"]

    def test_event_filter_ignored_without_event_column(self, source_conn, source_dsn):
        source_conn.execute('ALTER TABLE "Registration" DROP COLUMN "eventId"')
        counters = SyncCounters()
        filt = RegistrationFilter.from_params({"eventId": "20"})
        records = _fetch(source_conn, source_dsn, filt, counters=counters)
        assert len(records) == 5
        assert counters.event_filter_ignored is True
        assert any("ignored" in w for w in counters.warnings)

    def test_missing_lookup_table_defaults_names(self, source_conn, source_dsn):
        source_conn.execute('DROP TABLE "Church"')
        records = _fetch(source_conn, source_dsn)
        assert {r.church_name for r in records} == {"Não informado"}
        assert records[0].district_name == "Distrito Norte"

    def test_missing_registration_table(self, source_conn, source_dsn):
        source_conn.execute('ALTER TABLE "Registration" RENAME TO "Arquivo2023"')
        with pytest.raises(QueryError, match="not found"):
            _fetch(source_conn, source_dsn)


# ---------------------------------------------------------------------------
# Gateway handler
# ---------------------------------------------------------------------------

class TestGatewayHandler:
    def test_default_action(self, source_dsn):
        status, payload = handle_request(None, {"statuses": "PAID"}, _config(source_dsn))
        assert status == 200
        assert payload["total"] == 2
        assert [r["externalId"] for r in payload["registrations"]] == ["101", "104"]
        assert payload["registrations"][0]["lot"]["name"] == "Lote 1"

    def test_events_action(self, source_dsn):
        status, payload = handle_request("events", {}, _config(source_dsn))
        assert status == 200
        assert [e["name"] for e in payload["events"]] == ["Acampamento 2024", "Retiro de Carnaval"]

    def test_describe_action(self, source_dsn):
        status, payload = handle_request("describe", {"table": "Lote"}, _config(source_dsn))
        assert status == 200
        assert [c["name"] for c in payload["columns"]] == ["id", "nome", "startsAt", "endsAt", "eventId"]

    def test_query_failure_is_structured(self, source_conn, source_dsn):
        source_conn.execute('ALTER TABLE "Registration" RENAME TO "Arquivo2023"')
        status, payload = handle_request(None, {}, _config(source_dsn))
        assert status == 500
        assert payload["success"] is False
        assert payload["details"] == "Failed to fetch from external database"
