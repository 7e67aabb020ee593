"""registrant_sync.registrants

Read-side helpers over the canonical collection used by the list view,
the check-in lookup, and the team draw.
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from registrant_sync.normalize import (
    STATUS_CANCELLED,
    STATUS_PENDING,
    fold_text,
    normalize_status,
)
from registrant_sync.reconcile import CanonicalRegistrant
from registrant_sync.shared import DrawBlockedError

SORT_NUMBER_ASC = "number-asc"
SORT_NUMBER_DESC = "number-desc"
SORT_NAME_ASC = "name-asc"
SORT_NAME_DESC = "name-desc"
SORT_OPTIONS = (SORT_NUMBER_ASC, SORT_NUMBER_DESC, SORT_NAME_ASC, SORT_NAME_DESC)

NAME_STOPWORDS = frozenset({"de", "da", "do", "das", "dos", "e"})

_BLOCKED_FOR_TEAM_DRAW = {
    STATUS_PENDING: "Payment pending. This registrant cannot be drawn into a team.",
    STATUS_CANCELLED: "Payment cancelled. This registrant cannot be drawn into a team.",
}


# ---------------------------------------------------------------------------
# List view
# ---------------------------------------------------------------------------

def filter_registrants(
    registrants: Iterable[CanonicalRegistrant],
    search: str | None = None,
    sort: str = SORT_NUMBER_ASC,
) -> list[CanonicalRegistrant]:
    """Free-text filter over name/number/church/district, then sort."""
    if sort not in SORT_OPTIONS:
        raise ValueError(f"unknown sort {sort!r}; expected one of {SORT_OPTIONS}")
    result = list(registrants)

    term = fold_text(search)
    if term:
        result = [
            r for r in result
            if term in fold_text(r.name)
            or term in str(r.number)
            or term in fold_text(r.church)
            or term in fold_text(r.district)
        ]

    if sort == SORT_NUMBER_ASC:
        result.sort(key=lambda r: r.number)
    elif sort == SORT_NUMBER_DESC:
        result.sort(key=lambda r: r.number, reverse=True)
    elif sort == SORT_NAME_ASC:
        result.sort(key=lambda r: (fold_text(r.name), r.number))
    else:
        result.sort(key=lambda r: (fold_text(r.name), -r.number), reverse=True)
    return result


# ---------------------------------------------------------------------------
# Lookup by number or name
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LookupResult:
    registrant: CanonicalRegistrant | None = None
    error: str | None = None

    @property
    def found(self) -> bool:
        return self.registrant is not None


def _tokens(value: str) -> list[str]:
    return [t for t in re.sub(r"[^a-z0-9\s]", " ", fold_text(value)).split() if t]


def find_registrant(
    registrants: Mapping[int, CanonicalRegistrant] | Iterable[CanonicalRegistrant],
    query: str | None,
) -> LookupResult:
    """Resolve a typed number or (partial) name to exactly one registrant.

    Digits match the number exactly. Otherwise an exact folded-name match
    wins, then a substring or token-prefix match ignoring stopwords.
    Ambiguity is reported, never guessed.
    """
    if isinstance(registrants, Mapping):
        by_number = dict(registrants)
    else:
        by_number = {r.number: r for r in registrants}

    q = (query or "").strip()
    if not q:
        return LookupResult(error="Type the registrant's number or name.")

    if q.isdigit():
        hit = by_number.get(int(q))
        if hit is not None:
            return LookupResult(registrant=hit)
        return LookupResult(error="Registrant not found.")

    folded = fold_text(q)
    everyone = list(by_number.values())

    exact = [r for r in everyone if fold_text(r.name) == folded]
    if len(exact) == 1:
        return LookupResult(registrant=exact[0])
    if len(exact) > 1:
        return LookupResult(error="More than one registrant has this name. Type the number.")

    query_tokens = [t for t in _tokens(q) if t not in NAME_STOPWORDS]
    if not query_tokens:
        return LookupResult(error="Type the registrant's number or name.")

    def _matches(r: CanonicalRegistrant) -> bool:
        if folded in fold_text(r.name):
            return True
        name_tokens = _tokens(r.name)
        return all(any(nt.startswith(qt) for nt in name_tokens) for qt in query_tokens)

    partial = [r for r in everyone if _matches(r)]
    if len(partial) == 1:
        return LookupResult(registrant=partial[0])
    if len(partial) > 1:
        return LookupResult(
            error="More than one registrant matches. Type more of the name or the number."
        )
    return LookupResult(error="Registrant not found.")


# ---------------------------------------------------------------------------
# Team draw
# ---------------------------------------------------------------------------

def is_blocked_for_team_draw(status: str | None) -> bool:
    return normalize_status(status) in _BLOCKED_FOR_TEAM_DRAW


def team_draw_block_message(status: str | None) -> str | None:
    return _BLOCKED_FOR_TEAM_DRAW.get(normalize_status(status))


def eligible_for_team_draw(registrants: Iterable[CanonicalRegistrant]) -> list[CanonicalRegistrant]:
    return [r for r in registrants if not is_blocked_for_team_draw(r.payment_status)]


def draw_team(
    registrant: CanonicalRegistrant,
    teams: Sequence[str],
    rng: random.Random | None = None,
) -> str:
    """Pick a random team for an eligible registrant.

    Raises:
        DrawBlockedError: payment status is PENDING or CANCELLED.
        ValueError: no teams to draw from.
    """
    message = team_draw_block_message(registrant.payment_status)
    if message:
        raise DrawBlockedError(f"#{registrant.number} {registrant.name}: {message}")
    if not teams:
        raise ValueError("no teams available for the draw")
    return (rng or random).choice(list(teams))
