"""Normalization functions for external registration ingestion.

All functions accept untyped source values (str, date, None, ...) and return
the canonical representation or None. None of them raise.
"""

from __future__ import annotations

import re
import unicodedata
import urllib.parse
from datetime import date, datetime
from typing import Any, Iterable

STATUS_PAID = "PAID"
STATUS_PENDING = "PENDING"
STATUS_CANCELLED = "CANCELLED"
STATUS_MANUAL = "MANUAL"

PAYMENT_STATUSES = (STATUS_PAID, STATUS_PENDING, STATUS_CANCELLED, STATUS_MANUAL)

STATUS_ALL = "ALL"

# Upstream encodings seen for each canonical status, compared upper-cased.
STATUS_SYNONYMS: dict[str, tuple[str, ...]] = {
    STATUS_PAID: ("PAID", "APPROVED", "PAGO", "CONFIRMED", "CONFIRMADO"),
    STATUS_PENDING: ("PENDING", "PENDENTE", "AWAITING_PAYMENT", "WAITING_PAYMENT"),
    STATUS_CANCELLED: ("CANCELLED", "CANCELED", "CANCELADO", "CANCELADA", "REFUNDED"),
}

_FETCHABLE_STATUSES = frozenset({STATUS_PAID, STATUS_PENDING, STATUS_CANCELLED})

_NON_PRINTABLE_ASCII = re.compile(r"[^\x20-\x7E]")
_EMPTY_SENTINELS = frozenset({"null", "undefined"})
_SENTINEL_DATE = "0000-00-00"


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: payment status
# ---------------------------------------------------------------------------

def _clean_status(value: Any) -> str | None:
    if not value or not isinstance(value, str):
        return None
    return _NON_PRINTABLE_ASCII.sub("", value).upper().strip()


def normalize_status(value: Any) -> str:
    """Map any status string onto PAID | PENDING | CANCELLED | MANUAL.

    Non-printable characters are dropped before matching. Substring tests
    run in a fixed order (PAID/PAGO, CANCEL, MANUAL, PEND) so that tokens
    wrapped in localized text still resolve. Anything else is PENDING.
    """
    clean = _clean_status(value)
    if not clean:
        return STATUS_PENDING

    if "PAID" in clean or "PAGO" in clean:
        return STATUS_PAID
    if "CANCEL" in clean:
        return STATUS_CANCELLED
    if "MANUAL" in clean:
        return STATUS_MANUAL
    if "PENDING" in clean or "PEND" in clean:
        return STATUS_PENDING

    if clean in PAYMENT_STATUSES:
        return clean
    return STATUS_PENDING


def collapse_external_status(value: Any) -> str:
    """Status for an externally-synced registrant.

    Exact synonyms collapse first (APPROVED -> PAID, CANCELED -> CANCELLED),
    then normalize_status. MANUAL is reserved for in-app records.
    """
    clean = _clean_status(value)
    if clean:
        for canonical, synonyms in STATUS_SYNONYMS.items():
            if clean in synonyms:
                return canonical
    status = normalize_status(value)
    if status == STATUS_MANUAL:
        return STATUS_PENDING
    return status


def parse_status_filter(value: str | Iterable[str] | None) -> set[str]:
    """Accept a list or a comma-separated string; return upper-cased tokens."""
    if value is None:
        return set()
    if isinstance(value, str):
        raw = value.split(",")
    else:
        raw = [str(v) for v in value if v is not None]
    tokens = set()
    for item in raw:
        token = trim(item)
        if token:
            tokens.add(token.upper())
    return tokens


def expand_status_filter(statuses: Iterable[str] | None) -> list[str] | None:
    """Return the upstream status values to match, or None for no filter.

    No clause is applied for an empty request, for ALL, or when every
    fetchable status is requested.
    """
    requested = parse_status_filter(statuses)
    if not requested or STATUS_ALL in requested:
        return None
    canonical = set()
    for token in requested:
        for name, synonyms in STATUS_SYNONYMS.items():
            if token in synonyms:
                canonical.add(name)
                break
        else:
            canonical.add(normalize_status(token))
    if canonical >= _FETCHABLE_STATUSES:
        return None

    expanded: list[str] = []
    for name in PAYMENT_STATUSES:
        if name in canonical:
            for synonym in STATUS_SYNONYMS.get(name, (name,)):
                if synonym not in expanded:
                    expanded.append(synonym)
    return expanded


# ---------------------------------------------------------------------------
# Rule 4: photo URL
# ---------------------------------------------------------------------------

def rewrite_photo_url(value: Any, base_url: str) -> str | None:
    """Reduce a stored photo reference to its filename under base_url.

    'https://old-host/uploads/sub/photo.jpg' -> '<base_url>/photo.jpg'.
    Blank, 'null' and 'undefined' become None.
    """
    if value is None:
        return None
    v = trim(str(value))
    if v is None or v.lower() in _EMPTY_SENTINELS:
        return None
    path = urllib.parse.urlparse(v).path if "://" in v else v.split("?", 1)[0]
    filename = path.rstrip("/").rsplit("/", 1)[-1]
    if not filename:
        return None
    return f"{base_url.rstrip('/')}/{filename}"


# ---------------------------------------------------------------------------
# Rule 5: dates
# ---------------------------------------------------------------------------

def as_date_str(value: Any) -> str | None:
    """Return 'YYYY-MM-DD' for a driver date/datetime or an ISO-ish string.

    The zero-date sentinel and anything that is not a real calendar date
    become None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    v = trim(str(value))
    if v is None or v.lower() in _EMPTY_SENTINELS:
        return None
    day = re.split(r"[T ]", v, maxsplit=1)[0]
    if day == _SENTINEL_DATE:
        return None
    try:
        return date.fromisoformat(day).isoformat()
    except ValueError:
        return None


def as_timestamp_str(value: Any) -> str | None:
    """Return a full ISO-8601 timestamp string, or the trimmed input if unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day).isoformat()
    v = trim(str(value))
    if v is None:
        return None
    try:
        return datetime.fromisoformat(v.replace("Z", "+00:00")).isoformat()
    except ValueError:
        return v


def parse_iso_date(value: Any) -> date | None:
    v = as_date_str(value)
    if v is None:
        return None
    try:
        return date.fromisoformat(v)
    except ValueError:
        return None


def compute_age(birth_date: Any, today: date | None = None) -> int:
    """Whole years since birth_date; 0 when unknown or unparseable."""
    born = parse_iso_date(birth_date)
    if born is None:
        return 0
    today = today or date.today()
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return max(age, 0)


# ---------------------------------------------------------------------------
# Rule 6: fold_text (search + locale-aware ordering)
# ---------------------------------------------------------------------------

def fold_text(value: str | None) -> str:
    """Accent-stripped, case-folded text. 'Ângela' and 'angela' fold equal."""
    v = normalize_space(value)
    if v is None:
        return ""
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    return v.casefold()
