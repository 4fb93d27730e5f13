import pytest

from conftest import SLOTS, make_row
from tabulation.utils.errors import InconsistentImport
from tabulation.utils.ledger import InvalidRow, Ledger, LedgerRow, parse_stored_rows, validate_rows


def test_row_defaults_and_padding():
    row = LedgerRow.from_dict({"registered": "1 200", "voters": "10", "expressed": 10, "scores": [5, 5]}, SLOTS)
    assert row.registered == 1200
    assert row.null_ballots == 0
    assert row.scores == (5, 5, 0)
    assert row.place_ref == ""


def test_consistent_row_parses():
    row = LedgerRow.from_dict(make_row(registered=100, scores=(30, 20), null=5, blank=5), SLOTS)
    assert row.voters == 60
    assert row.expressed == 50
    assert row.scores == (30, 20, 0)
    assert row.import_status == "COMPLETED"


@pytest.mark.parametrize(
    "raw, message",
    [
        (make_row(registered=10, scores=(30, 20)), "votants"),
        ({**make_row(), "null_ballots": 3}, "nuls"),
        ({**make_row(), "expressed": 49, "voters": 49}, "somme des voix"),
        ({**make_row(), "registered": -1}, "négatif"),
        ({**make_row(), "registered": "abc"}, "entier"),
        ({**make_row(), "registered_men": 40, "registered_women": 50}, "inscrits hommes"),
        ({**make_row(), "voters_men": 10}, "votants hommes"),
        ({**make_row(), "scores": [10, 10, 10, 20]}, "4 scores"),
    ],
)
def test_inconsistent_rows_are_rejected(raw, message):
    with pytest.raises(InvalidRow, match=message):
        LedgerRow.from_dict(raw, SLOTS)


def test_sex_split_is_optional():
    row = LedgerRow.from_dict({**make_row(), "registered_men": 55, "registered_women": 45}, SLOTS)
    assert row.registered_men + row.registered_women == row.registered


def test_validate_rows_reports_every_faulty_line():
    rows = [make_row(), {**make_row(), "null_ballots": 1}, make_row(), {**make_row(), "registered": -5}]
    with pytest.raises(InconsistentImport) as exc:
        validate_rows(rows, SLOTS)
    assert len(exc.value.errors) == 2
    assert exc.value.errors[0].startswith("Ligne 2 :")
    assert exc.value.errors[1].startswith("Ligne 4 :")


def test_validate_rows_refuses_empty_batch():
    with pytest.raises(InconsistentImport, match="Aucune ligne"):
        validate_rows([], SLOTS)


def test_replace_overwrites_previous_generation(store):
    ledger = Ledger(store, SLOTS)
    ledger.replace("C1", validate_rows([make_row(), make_row()], SLOTS), 1, "agent")
    ledger.replace("C1", validate_rows([make_row(scores=(1, 1))], SLOTS), 2, "agent", "pv.xlsx")

    entry = ledger.entry("C1")
    assert entry["generation"] == 2
    assert entry["file_name"] == "pv.xlsx"
    assert len(entry["rows"]) == 1
    assert parse_stored_rows(entry, SLOTS)[0].expressed == 2


def test_parse_stored_rows_flags_corruption():
    with pytest.raises(InvalidRow, match="ligne 1"):
        parse_stored_rows({"rows": [{**make_row(), "expressed": 7}]}, SLOTS)
    with pytest.raises(InvalidRow):
        parse_stored_rows({"rows": None}, SLOTS)
