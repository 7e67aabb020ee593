"""registrant_sync.reconcile

Merge a fresh external snapshot with the owner's manual registrants.

Numbering rules:
  - external records take 1..E in fetch order (createdAt ascending)
  - manual records keep their relative order and take E+1..E+M
  - walkband_number mirrors number after every pass

reconcile() is a pure function of its two ordered inputs, so rerunning it
with the same snapshot and manual set yields identical output.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping

from registrant_sync.fetch_registrations import NOT_INFORMED, UNNAMED, ExternalRegistrationRecord
from registrant_sync.normalize import (
    PAYMENT_STATUSES,
    STATUS_MANUAL,
    as_date_str,
    collapse_external_status,
    normalize_status,
    trim,
)


@dataclass(frozen=True)
class CanonicalRegistrant:
    number: int
    name: str
    birth_date: str | None
    age: int
    church: str
    district: str
    photo_url: str | None
    payment_status: str
    is_manual: bool
    external_id: str | None
    walkband_number: str
    lot_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "birthDate": self.birth_date,
            "age": self.age,
            "church": self.church,
            "district": self.district,
            "photoUrl": self.photo_url,
            "paymentStatus": self.payment_status,
            "isManual": self.is_manual,
            "externalId": self.external_id,
            "walkbandNumber": self.walkband_number,
            "lotId": self.lot_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CanonicalRegistrant:
        number = int(data["number"])
        return cls(
            number=number,
            name=data.get("name") or UNNAMED,
            birth_date=as_date_str(data.get("birthDate")),
            age=int(data.get("age") or 0),
            church=data.get("church") or NOT_INFORMED,
            district=data.get("district") or NOT_INFORMED,
            photo_url=data.get("photoUrl"),
            payment_status=normalize_status(data.get("paymentStatus")),
            is_manual=bool(data.get("isManual")),
            external_id=data.get("externalId"),
            walkband_number=str(data.get("walkbandNumber") or number),
            lot_id=data.get("lotId"),
        )


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------

def map_external_record(record: ExternalRegistrationRecord, number: int) -> CanonicalRegistrant:
    return CanonicalRegistrant(
        number=number,
        name=record.full_name or f"Participante {number}",
        birth_date=record.birth_date,
        age=record.computed_age or 0,
        church=record.church_name or NOT_INFORMED,
        district=record.district_name or NOT_INFORMED,
        photo_url=record.photo_url,
        payment_status=collapse_external_status(record.raw_status),
        is_manual=False,
        external_id=record.external_id,
        walkband_number=str(number),
        lot_id=record.lot.id if record.lot else None,
    )


def renumber_manual(record: CanonicalRegistrant, number: int) -> CanonicalRegistrant:
    """Same manual registrant under a new number; status defaults to MANUAL."""
    status = record.payment_status
    if status not in PAYMENT_STATUSES:
        status = normalize_status(status) if trim(status or "") else STATUS_MANUAL
    return replace(
        record,
        number=number,
        walkband_number=str(number),
        church=record.church or NOT_INFORMED,
        district=record.district or NOT_INFORMED,
        payment_status=status,
        is_manual=True,
        external_id=None,
    )


# ---------------------------------------------------------------------------
# Reconcile
# ---------------------------------------------------------------------------

def reconcile(
    external_records: Iterable[ExternalRegistrationRecord],
    current_manual_records: Iterable[CanonicalRegistrant],
) -> list[CanonicalRegistrant]:
    """Return the full numbered collection: external first, then manual.

    Non-manual entries in current_manual_records are ignored; the external
    subset is always rebuilt from the snapshot.
    """
    merged = [
        map_external_record(record, index)
        for index, record in enumerate(external_records, start=1)
    ]
    start = len(merged) + 1
    manual = [r for r in current_manual_records if r.is_manual]
    merged.extend(renumber_manual(record, start + offset) for offset, record in enumerate(manual))
    return merged
