from conftest import CANDIDATES, SLOTS, make_row
from tabulation.utils.calc import compute_summary, empty_totals, percent, slot_candidates, sum_rows
from tabulation.utils.ledger import LedgerRow


def _rows(*raws):
    return [LedgerRow.from_dict(r, SLOTS) for r in raws]


def test_percent_rounds_half_up_at_two_places():
    assert percent(111, 333) == 33.33
    assert percent(2, 3) == 66.67
    assert percent(1, 800) == 0.13
    assert percent(5, 5) == 100.0


def test_percent_zero_denominator():
    assert percent(0, 0) == 0.0
    assert percent(12, 0) == 0.0


def test_slot_candidates_sorted_by_order():
    slots = slot_candidates(CANDIDATES, SLOTS)
    assert [c["name"] for c in slots] == ["Jean Kouassi", "Awa Koné", "Marie Yao"]
    assert [c["slot"] for c in slots] == [0, 1, 2]
    assert slots[0]["party"] == "Indépendant"
    assert slots[0]["party_acronym"] == "IND"
    assert slots[1]["party_acronym"] == "RAS"


def test_sum_rows_is_integer_arithmetic():
    totals = sum_rows(_rows(make_row(registered=100, scores=(30, 20, 0)), make_row(registered=80, scores=(5, 5, 10), null=2)), SLOTS)
    assert totals["registered"] == 180
    assert totals["voters"] == 72
    assert totals["null_ballots"] == 2
    assert totals["scores"] == [35, 25, 10]


def test_summary_rates_and_candidate_order():
    totals = sum_rows(_rows(make_row(registered=333, scores=(40, 71, 0), null=0, blank=0)), SLOTS)
    summary = compute_summary(totals, slot_candidates(CANDIDATES, SLOTS))

    assert summary["turnout_rate"] == 33.33
    names = [c["name"] for c in summary["candidate_totals"]]
    # Marie Yao has no vote in this scope and is left out.
    assert names == ["Awa Koné", "Jean Kouassi"]
    assert summary["candidate_totals"][0]["percent"] == 63.96
    assert summary["candidate_totals"][0]["is_winner"]
    assert not summary["candidate_totals"][1]["is_winner"]


def test_tie_is_flagged():
    totals = sum_rows(_rows(make_row(scores=(25, 25, 0))), SLOTS)
    candidates = compute_summary(totals, slot_candidates(CANDIDATES, SLOTS))["candidate_totals"]
    assert [c["is_tied"] for c in candidates] == [True, True]
    assert not any(c["is_winner"] for c in candidates)
    # Equal votes keep ballot order.
    assert candidates[0]["name"] == "Jean Kouassi"


def test_empty_totals_are_safe():
    summary = compute_summary(empty_totals(SLOTS), slot_candidates(CANDIDATES, SLOTS))
    assert summary["turnout_rate"] == 0.0
    assert summary["null_rate"] == 0.0
    assert summary["blank_rate"] == 0.0
    assert summary["candidate_totals"] == []
