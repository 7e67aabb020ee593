"""registrant_sync.store

Local canonical registrant store (table `registrant`, migration 0001).

replace_registrants() performs the delete-then-insert replacement of an
owner's whole collection inside one transaction. Two concurrent
replacements for the same owner are last-writer-wins; nothing detects the
race.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import psycopg

from registrant_sync.fetch_registrations import NOT_INFORMED
from registrant_sync.normalize import (
    PAYMENT_STATUSES,
    STATUS_MANUAL,
    as_date_str,
    normalize_space,
    normalize_status,
)
from registrant_sync.reconcile import CanonicalRegistrant
from registrant_sync.shared import PersistenceError

log = logging.getLogger(__name__)

_COLUMNS = (
    "number, name, birth_date, age, church, district, photo_url, "
    "payment_status, is_manual, external_id, walkband_number, lot_id"
)

_EDITABLE_FIELDS = frozenset({
    "name", "birth_date", "age", "church", "district", "photo_url", "payment_status",
})


def _from_row(row: tuple) -> CanonicalRegistrant:
    (number, name, birth_date, age, church, district, photo_url,
     payment_status, is_manual, external_id, walkband_number, lot_id) = row
    return CanonicalRegistrant(
        number=number,
        name=name,
        birth_date=as_date_str(birth_date),
        age=age or 0,
        church=church,
        district=district,
        photo_url=photo_url,
        payment_status=payment_status,
        is_manual=is_manual,
        external_id=external_id,
        walkband_number=walkband_number,
        lot_id=lot_id,
    )


def _insert_params(owner_id: str, r: CanonicalRegistrant) -> tuple:
    return (
        owner_id, r.number, r.name, r.birth_date, r.age, r.church, r.district,
        r.photo_url, r.payment_status, r.is_manual, r.external_id,
        r.walkband_number, r.lot_id,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def load_registrants(
    conn: psycopg.Connection,
    owner_id: str,
    manual_only: bool = False,
) -> list[CanonicalRegistrant]:
    """Return the owner's registrants ordered by number."""
    query = f"SELECT {_COLUMNS} FROM registrant WHERE owner_id = %s"
    if manual_only:
        query += " AND is_manual"
    query += " ORDER BY number ASC"
    try:
        rows = conn.execute(query, (owner_id,)).fetchall()
    except psycopg.Error as exc:
        conn.rollback()
        raise PersistenceError(f"cannot load registrants: {exc}") from exc
    return [_from_row(row) for row in rows]


# ---------------------------------------------------------------------------
# Bulk replacement
# ---------------------------------------------------------------------------

def replace_registrants(
    conn: psycopg.Connection,
    owner_id: str,
    records: Iterable[CanonicalRegistrant],
) -> int:
    """Replace the owner's collection with `records`; returns rows written.

    Deletes the non-manual subset, then the manual subset, then bulk
    inserts. Commits on success; rolls back and raises PersistenceError
    on any failure.
    """
    records = list(records)
    try:
        deleted_external = conn.execute(
            "DELETE FROM registrant WHERE owner_id = %s AND NOT is_manual",
            (owner_id,),
        ).rowcount
        deleted_manual = conn.execute(
            "DELETE FROM registrant WHERE owner_id = %s AND is_manual",
            (owner_id,),
        ).rowcount
        if records:
            with conn.cursor() as cur:
                cur.executemany(
                    f"""
                    INSERT INTO registrant (owner_id, {_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    [_insert_params(owner_id, r) for r in records],
                )
        conn.commit()
    except psycopg.Error as exc:
        conn.rollback()
        raise PersistenceError(f"cannot save registrants: {exc}") from exc

    log.info(
        "Replaced registrants for owner %s: deleted %d external + %d manual, inserted %d",
        owner_id, deleted_external, deleted_manual, len(records),
    )
    return len(records)


# ---------------------------------------------------------------------------
# Manual entries
# ---------------------------------------------------------------------------

def insert_manual_registrant(
    conn: psycopg.Connection,
    owner_id: str,
    name: str,
    birth_date: Any = None,
    age: int = 0,
    church: str | None = None,
    district: str | None = None,
    photo_url: str | None = None,
    payment_status: str | None = None,
) -> CanonicalRegistrant:
    """Append a manual registrant after the owner's current highest number."""
    clean_name = normalize_space(name)
    if not clean_name:
        raise ValueError("manual registrant requires a name")
    status = normalize_status(payment_status) if payment_status else STATUS_MANUAL
    try:
        row = conn.execute(
            "SELECT COALESCE(MAX(number), 0) FROM registrant WHERE owner_id = %s",
            (owner_id,),
        ).fetchone()
        number = row[0] + 1
        registrant = CanonicalRegistrant(
            number=number,
            name=clean_name,
            birth_date=as_date_str(birth_date),
            age=age or 0,
            church=normalize_space(church) or NOT_INFORMED,
            district=normalize_space(district) or NOT_INFORMED,
            photo_url=photo_url,
            payment_status=status,
            is_manual=True,
            external_id=None,
            walkband_number=str(number),
        )
        conn.execute(
            f"""
            INSERT INTO registrant (owner_id, {_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            _insert_params(owner_id, registrant),
        )
        conn.commit()
    except psycopg.Error as exc:
        conn.rollback()
        raise PersistenceError(f"cannot insert manual registrant: {exc}") from exc
    return registrant


def update_manual_registrant(
    conn: psycopg.Connection,
    owner_id: str,
    number: int,
    **changes: Any,
) -> bool:
    """Edit a manual registrant; externally-synced rows are never touched.

    Returns False when no manual registrant has that number.
    """
    unknown = set(changes) - _EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"fields not editable: {sorted(unknown)}")
    if not changes:
        return False
    if "payment_status" in changes and changes["payment_status"] not in PAYMENT_STATUSES:
        changes["payment_status"] = normalize_status(changes["payment_status"])
    if "birth_date" in changes:
        changes["birth_date"] = as_date_str(changes["birth_date"])
    for name in ("church", "district"):
        if name in changes:
            changes[name] = normalize_space(changes[name]) or NOT_INFORMED

    assignments = ", ".join(f"{name} = %s" for name in sorted(changes))
    params = [changes[name] for name in sorted(changes)] + [owner_id, number]
    try:
        updated = conn.execute(
            f"UPDATE registrant SET {assignments} "
            "WHERE owner_id = %s AND number = %s AND is_manual",
            params,
        ).rowcount
        conn.commit()
    except psycopg.Error as exc:
        conn.rollback()
        raise PersistenceError(f"cannot update registrant {number}: {exc}") from exc
    return updated == 1


def delete_registrant(conn: psycopg.Connection, owner_id: str, number: int) -> bool:
    """Delete one registrant; numbering stays sparse until the next reconcile."""
    try:
        deleted = conn.execute(
            "DELETE FROM registrant WHERE owner_id = %s AND number = %s",
            (owner_id, number),
        ).rowcount
        conn.commit()
    except psycopg.Error as exc:
        conn.rollback()
        raise PersistenceError(f"cannot delete registrant {number}: {exc}") from exc
    return deleted == 1
