import pytest

from conftest import ADMIN_D2_ID, ADMIN_ID, PUBLIC_ID, SADMIN_ID, USER_C1_ID, USER_D2_ID, CATALOG
from tabulation.utils.catalog import COMMUNE, Catalog
from tabulation.utils.errors import Forbidden
from tabulation.utils.visibility import assigned_cells, can_see, is_unrestricted, narrow, visible_units


@pytest.fixture
def catalog():
    return Catalog.from_dict(CATALOG)


def test_unrestricted_callers(catalog):
    assert is_unrestricted(SADMIN_ID)
    assert is_unrestricted(ADMIN_ID)
    assert is_unrestricted(PUBLIC_ID)
    assert not is_unrestricted(ADMIN_D2_ID)
    assert not is_unrestricted(USER_C1_ID)


def test_user_outside_assignment_is_forbidden(catalog):
    with pytest.raises(Forbidden):
        narrow(catalog.unit("D2"), USER_C1_ID, catalog)


def test_user_is_narrowed_to_assigned_cells(catalog):
    scope = narrow(catalog.unit("D1"), USER_C1_ID, catalog)
    assert scope.cells == {"C1"}
    assert scope.narrowed

    scope = narrow(catalog.unit("D1-SP1-01"), USER_C1_ID, catalog)
    assert scope.cells == {"C1"}
    assert not scope.narrowed


def test_department_assignment_covers_its_cells(catalog):
    assert assigned_cells(USER_D2_ID, catalog) == {"C3"}
    scope = narrow(catalog.national(), USER_D2_ID, catalog)
    assert scope.cells == {"C3"}
    assert scope.narrowed


def test_admin_with_assignment_is_scoped(catalog):
    assert not can_see(catalog.unit("D1"), ADMIN_D2_ID, catalog)
    assert can_see(catalog.unit("D2"), ADMIN_D2_ID, catalog)


def test_visible_units(catalog):
    communes = catalog.units_at(COMMUNE)
    assert [u.key for u in visible_units(USER_C1_ID, catalog, communes)] == ["D1-SP1-01"]
    assert len(visible_units(SADMIN_ID, catalog, communes)) == 3
