from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import FrozenSet, List

from .auth import ADMIN, PUBLIC, SADMIN, CallerIdentity
from .catalog import DEPARTMENT, Catalog, GeoUnit
from .errors import Forbidden

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllowedScope:
    unit: GeoUnit
    cells: FrozenSet[str]
    narrowed: bool = False


def is_unrestricted(identity: CallerIdentity) -> bool:
    """SADMIN, ADMIN without assignments and the public see every unit.

    The public is still subject to the publication gate.
    """
    if identity.role in (SADMIN, PUBLIC):
        return True
    return identity.role == ADMIN and not identity.has_assignments


def assigned_cells(identity: CallerIdentity, catalog: Catalog) -> FrozenSet[str]:
    """Cells of the assigned departments plus the explicitly assigned cells."""
    out = set()
    for code in identity.departments:
        dept = catalog.unit(code)
        if dept is not None and dept.level == DEPARTMENT:
            out |= catalog.descendant_cells(dept)
    out |= {c for c in identity.cells if catalog.cell(c) is not None}
    return frozenset(out)


def narrow(unit: GeoUnit, identity: CallerIdentity, catalog: Catalog) -> AllowedScope:
    cells = catalog.descendant_cells(unit)
    if is_unrestricted(identity):
        return AllowedScope(unit, cells)

    visible = cells & assigned_cells(identity, catalog)
    if not visible:
        logger.info("Accès refusé: %s (%s) sur %s", identity.username, identity.role, unit.key)
        raise Forbidden(f"Vous n'avez pas accès à {unit.label}.")
    return AllowedScope(unit, visible, narrowed=visible != cells)


def can_see(unit: GeoUnit, identity: CallerIdentity, catalog: Catalog) -> bool:
    try:
        narrow(unit, identity, catalog)
    except Forbidden:
        return False
    return True


def visible_units(identity: CallerIdentity, catalog: Catalog, units: List[GeoUnit]) -> List[GeoUnit]:
    if is_unrestricted(identity):
        return list(units)
    mine = assigned_cells(identity, catalog)
    return [u for u in units if catalog.descendant_cells(u) & mine]
