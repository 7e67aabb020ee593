"""Unit tests for registrant_sync.registrants (list view, lookup, team draw)."""

from __future__ import annotations

import random

import pytest

from registrant_sync.reconcile import CanonicalRegistrant
from registrant_sync.registrants import (
    draw_team,
    eligible_for_team_draw,
    filter_registrants,
    find_registrant,
    is_blocked_for_team_draw,
    team_draw_block_message,
)
from registrant_sync.shared import DrawBlockedError


def _reg(number: int, name: str, status: str = "PAID", church: str = "Igreja Central",
         district: str = "Distrito Norte") -> CanonicalRegistrant:
    return CanonicalRegistrant(
        number=number, name=name, birth_date=None, age=0, church=church, district=district,
        photo_url=None, payment_status=status, is_manual=False, external_id=f"e{number}",
        walkband_number=str(number),
    )


PEOPLE = [
    _reg(1, "Ângela Maria"),
    _reg(2, "Bruno Costa", church="Igreja Betel"),
    _reg(3, "angela souza", district="Distrito Sul"),
    _reg(4, "Carlos da Silva", status="PENDING"),
    _reg(12, "Bruno Costa", status="CANCELLED"),
]


class TestFilterRegistrants:
    def test_default_number_ascending(self):
        assert [r.number for r in filter_registrants(reversed(PEOPLE))] == [1, 2, 3, 4, 12]

    def test_number_descending(self):
        got = filter_registrants(PEOPLE, sort="number-desc")
        assert [r.number for r in got] == [12, 4, 3, 2, 1]

    def test_name_ascending_is_accent_insensitive(self):
        got = filter_registrants(PEOPLE, sort="name-asc")
        assert [r.number for r in got] == [1, 3, 2, 12, 4]

    def test_name_descending_ties_by_number(self):
        got = filter_registrants(PEOPLE, sort="name-desc")
        assert [r.number for r in got] == [4, 2, 12, 3, 1]

    def test_search_name_without_accent(self):
        got = filter_registrants(PEOPLE, search="ANGELA")
        assert [r.number for r in got] == [1, 3]

    def test_search_number(self):
        assert [r.number for r in filter_registrants(PEOPLE, search="12")] == [12]

    def test_search_church_and_district(self):
        assert [r.number for r in filter_registrants(PEOPLE, search="betel")] == [2]
        assert [r.number for r in filter_registrants(PEOPLE, search="sul")] == [3]

    def test_unknown_sort(self):
        with pytest.raises(ValueError):
            filter_registrants(PEOPLE, sort="age-asc")


class TestFindRegistrant:
    def test_by_number(self):
        result = find_registrant(PEOPLE, "4")
        assert result.found
        assert result.registrant.name == "Carlos da Silva"

    def test_number_miss(self):
        result = find_registrant(PEOPLE, "99")
        assert not result.found
        assert result.error == "Registrant not found."

    def test_mapping_input(self):
        assert find_registrant({r.number: r for r in PEOPLE}, "3").registrant.number == 3

    def test_exact_name_accent_insensitive(self):
        assert find_registrant(PEOPLE, "angela maria").registrant.number == 1

    def test_duplicate_exact_name_is_ambiguous(self):
        result = find_registrant(PEOPLE, "Bruno Costa")
        assert not result.found
        assert "Type the number" in result.error

    def test_token_prefix_ignores_stopwords(self):
        assert find_registrant(PEOPLE, "carl da silv").registrant.number == 4

    def test_partial_ambiguous(self):
        result = find_registrant(PEOPLE, "angela")
        assert not result.found
        assert "More than one registrant matches" in result.error

    def test_blank_query(self):
        assert find_registrant(PEOPLE, "  ").error == "Type the registrant's number or name."

    def test_stopwords_only(self):
        assert find_registrant(PEOPLE, "da").error == "Type the registrant's number or name."

    def test_no_match(self):
        assert find_registrant(PEOPLE, "Zé").error == "Registrant not found."


class TestTeamDrawGate:
    @pytest.mark.parametrize("status", ["PENDING", "CANCELLED", "cancelado", None])
    def test_blocked(self, status):
        assert is_blocked_for_team_draw(status)
        assert team_draw_block_message(status)

    @pytest.mark.parametrize("status", ["PAID", "MANUAL"])
    def test_allowed(self, status):
        assert not is_blocked_for_team_draw(status)
        assert team_draw_block_message(status) is None

    def test_eligible_subset(self):
        assert [r.number for r in eligible_for_team_draw(PEOPLE)] == [1, 2, 3]

    def test_draw_blocked_raises(self):
        with pytest.raises(DrawBlockedError, match="Payment pending"):
            draw_team(PEOPLE[3], ["Azul", "Verde"])

    def test_draw_without_teams(self):
        with pytest.raises(ValueError):
            draw_team(PEOPLE[0], [])

    def test_draw_is_seedable(self):
        teams = ["Azul", "Verde", "Vermelho"]
        first = draw_team(PEOPLE[0], teams, rng=random.Random(7))
        second = draw_team(PEOPLE[0], teams, rng=random.Random(7))
        assert first == second
        assert first in teams
