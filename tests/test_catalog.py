import copy

import pytest

from conftest import CATALOG
from tabulation.utils.catalog import (
    COMMUNE,
    DEPARTMENT,
    NATIONAL,
    POLLING_STATION,
    REGION,
    SUB_PREFECTURE,
    VOTING_PLACE,
    Ambiguous,
    Catalog,
    Resolved,
    Unresolved,
)


@pytest.fixture
def catalog():
    return Catalog.from_dict(CATALOG)


def test_full_keys_resolve_by_segment_count(catalog):
    expected = {
        "D1": DEPARTMENT,
        "D1-SP2": SUB_PREFECTURE,
        "D1-SP2-01": COMMUNE,
        "D1-SP2-01-001": VOTING_PLACE,
        "D1-SP2-01-001-01": POLLING_STATION,
        "region:R1": REGION,
        "national": NATIONAL,
    }
    for key, level in expected.items():
        res = catalog.resolve(key)
        assert isinstance(res, Resolved), key
        assert res.unit.level == level
        assert res.exact


def test_shared_commune_code_resolves_to_the_right_sub_prefecture(catalog):
    abobo = catalog.resolve("D1-SP1-01").unit
    songon = catalog.resolve("D1-SP2-01").unit
    assert abobo.label == "ABOBO"
    assert songon.label == "SONGON"
    assert catalog.descendant_cells(abobo) == {"C1"}
    assert catalog.descendant_cells(songon) == {"C2"}


def test_unknown_keys_are_unresolved(catalog):
    for key in ("", "D9", "D1-SP3", "D1-SP1-02", "D1--01", "region:R9", "a-b-c-d-e-f"):
        assert isinstance(catalog.resolve(key), Unresolved), key


def test_partial_key_needs_an_explicit_level(catalog):
    # Without a level, "01" is read as a department code.
    assert isinstance(catalog.resolve("01"), Unresolved)

    res = catalog.resolve("01", level=COMMUNE)
    assert isinstance(res, Ambiguous)
    assert [u.key for u in res.matches] == ["D1-SP1-01", "D1-SP2-01", "D2-SP1-01"]

    res = catalog.resolve("SP2-01", level=COMMUNE)
    assert isinstance(res, Resolved)
    assert res.unit.key == "D1-SP2-01"
    assert not res.exact


def test_level_shallower_than_the_key_is_unresolved(catalog):
    assert isinstance(catalog.resolve("D1-SP1-01", level=DEPARTMENT), Unresolved)


def test_descendant_cells(catalog):
    assert catalog.descendant_cells(catalog.national()) == {"C1", "C2", "C3"}
    assert catalog.descendant_cells(catalog.unit("region:R1")) == {"C1", "C2"}
    assert catalog.descendant_cells(catalog.unit("D1")) == {"C1", "C2"}
    assert catalog.descendant_cells(catalog.unit("D1-SP1-01-002")) == {"C1"}
    assert catalog.descendant_cells(catalog.unit("D2-SP1-01-001-01")) == {"C3"}


def test_children_and_ancestors(catalog):
    d1 = catalog.unit("D1")
    assert [u.key for u in catalog.children(d1)] == ["D1-SP1", "D1-SP2"]
    station = catalog.unit("D1-SP1-01-001-02")
    assert [u.key for u in catalog.ancestors(station)] == [
        "D1-SP1-01-001", "D1-SP1-01", "D1-SP1", "D1", "region:R1", "national",
    ]
    assert catalog.department_of(station).key == "D1"
    assert [u.key for u in catalog.cell_path("C2")][:2] == ["D1-SP2-01", "D1-SP2"]


def test_publication_units_follow_publish_by_commune(catalog):
    assert [u.key for u in catalog.publication_units()] == ["D1-SP1-01", "D1-SP2-01", "D2"]
    assert catalog.publication_unit_for_cell("C1").key == "D1-SP1-01"
    assert catalog.publication_unit_for_cell("C3").key == "D2"


def test_cell_spanning_two_communes_is_rejected():
    data = copy.deepcopy(CATALOG)
    data["voting_places"][2]["cell"] = "C1"
    with pytest.raises(ValueError, match="plusieurs communes"):
        Catalog.from_dict(data)


def test_link_without_full_key_is_rejected():
    data = copy.deepcopy(CATALOG)
    del data["voting_places"][0]["sub_prefecture"]
    with pytest.raises(ValueError, match="clé incomplète"):
        Catalog.from_dict(data)


def test_unknown_parent_is_rejected():
    data = copy.deepcopy(CATALOG)
    data["communes"].append({"department": "D1", "sub_prefecture": "SP9", "code": "02"})
    with pytest.raises(ValueError, match="Parent inconnu"):
        Catalog.from_dict(data)
