"""Geographic reference data: regions down to polling stations, and the cells.

A local code is only unique inside its parent, so every unit is identified by
its composite key (the local codes of the whole ancestor chain joined with
``-``). Lookups always match the complete chain; a bare local code is only
accepted when the caller names the level explicitly, and then every match is
returned.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .storage import JsonStore

logger = logging.getLogger(__name__)

NATIONAL = "NATIONAL"
REGION = "REGION"
DEPARTMENT = "DEPARTMENT"
SUB_PREFECTURE = "SUB_PREFECTURE"
COMMUNE = "COMMUNE"
VOTING_PLACE = "VOTING_PLACE"
POLLING_STATION = "POLLING_STATION"

# Levels addressed by hyphen-delimited keys, by number of segments.
KEYED_LEVELS = (DEPARTMENT, SUB_PREFECTURE, COMMUNE, VOTING_PLACE, POLLING_STATION)

NATIONAL_KEY = "national"
REGION_PREFIX = "region:"
SEPARATOR = "-"


@dataclass(frozen=True)
class GeoUnit:
    level: str
    code: str
    key: str
    label: str
    parent_key: Optional[str] = None
    publish_by_commune: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"level": self.level, "code": self.code, "key": self.key, "label": self.label}


@dataclass(frozen=True)
class Cell:
    code: str
    label: str
    declared_station_count: int
    place_keys: Tuple[str, ...]
    commune_key: str


@dataclass(frozen=True)
class Resolved:
    unit: GeoUnit
    exact: bool = True


@dataclass(frozen=True)
class Ambiguous:
    scope_key: str
    matches: Tuple[GeoUnit, ...]


@dataclass(frozen=True)
class Unresolved:
    scope_key: str


def join_key(*codes: str) -> str:
    return SEPARATOR.join(codes)


def _code(raw: Any) -> str:
    return str(raw if raw is not None else "").strip()


def _required(item: Dict[str, Any], names: Iterable[str], what: str) -> List[str]:
    values = [_code(item.get(n)) for n in names]
    missing = [n for n, v in zip(names, values) if not v]
    if missing:
        raise ValueError(f"{what}: clé incomplète, champs manquants {missing} dans {item!r}")
    for n, v in zip(names, values):
        if SEPARATOR in v:
            raise ValueError(f"{what}: le code '{n}' ne peut pas contenir '{SEPARATOR}' ({v!r})")
    return values


@dataclass(frozen=True)
class Catalog:
    units: Dict[str, GeoUnit]
    cells: Dict[str, Cell]
    _children: Dict[str, Tuple[str, ...]] = field(repr=False)

    # -------------------------
    # Construction
    # -------------------------
    @classmethod
    def load(cls, store: JsonStore) -> "Catalog":
        return cls.from_dict(store.load_json("catalog.json", default={}))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Catalog":
        units: Dict[str, GeoUnit] = {
            NATIONAL_KEY: GeoUnit(NATIONAL, "", NATIONAL_KEY, "National"),
        }

        def add(unit: GeoUnit) -> None:
            if unit.key in units:
                raise ValueError(f"Unité en double: {unit.key}")
            if unit.parent_key not in units:
                raise ValueError(f"Parent inconnu '{unit.parent_key}' pour {unit.key}")
            units[unit.key] = unit

        for r in data.get("regions") or []:
            (code,) = _required(r, ("code",), "Région")
            add(GeoUnit(REGION, code, REGION_PREFIX + code, r.get("label") or code, NATIONAL_KEY))

        for d in data.get("departments") or []:
            code, region = _required(d, ("code", "region"), "Département")
            add(GeoUnit(
                DEPARTMENT, code, code, d.get("label") or code, REGION_PREFIX + region,
                publish_by_commune=bool(d.get("publish_by_commune")),
            ))

        for s in data.get("sub_prefectures") or []:
            dept, code = _required(s, ("department", "code"), "Sous-préfecture")
            add(GeoUnit(SUB_PREFECTURE, code, join_key(dept, code), s.get("label") or code, dept))

        for c in data.get("communes") or []:
            dept, sp, code = _required(c, ("department", "sub_prefecture", "code"), "Commune")
            add(GeoUnit(COMMUNE, code, join_key(dept, sp, code), c.get("label") or code, join_key(dept, sp)))

        place_cells: Dict[str, str] = {}
        for p in data.get("voting_places") or []:
            dept, sp, com, code = _required(
                p, ("department", "sub_prefecture", "commune", "code"), "Lieu de vote"
            )
            parent = join_key(dept, sp, com)
            add(GeoUnit(VOTING_PLACE, code, join_key(parent, code), p.get("label") or code, parent))
            cell_code = _code(p.get("cell"))
            if cell_code:
                place_cells[join_key(parent, code)] = cell_code

        for b in data.get("polling_stations") or []:
            dept, sp, com, place, code = _required(
                b, ("department", "sub_prefecture", "commune", "place", "code"), "Bureau de vote"
            )
            parent = join_key(dept, sp, com, place)
            add(GeoUnit(POLLING_STATION, code, join_key(parent, code), b.get("label") or f"BV {code}", parent))

        declared = {_code(c.get("code")): c for c in data.get("cells") or [] if _code(c.get("code"))}
        linked: Dict[str, List[str]] = {}
        for place_key, cell_code in place_cells.items():
            if cell_code not in declared:
                raise ValueError(f"Lieu de vote {place_key} lié à une CEL inconnue: {cell_code}")
            linked.setdefault(cell_code, []).append(place_key)

        cells: Dict[str, Cell] = {}
        for code, raw in declared.items():
            place_keys = tuple(sorted(linked.get(code, [])))
            communes = {units[k].parent_key for k in place_keys}
            if len(communes) > 1:
                raise ValueError(f"CEL {code} liée à plusieurs communes: {sorted(communes)}")
            try:
                station_count = int(raw.get("station_count") or 0)
            except (TypeError, ValueError):
                raise ValueError(f"CEL {code}: nombre de bureaux invalide {raw.get('station_count')!r}")
            cells[code] = Cell(
                code=code,
                label=raw.get("label") or code,
                declared_station_count=station_count,
                place_keys=place_keys,
                commune_key=next(iter(communes)) if communes else "",
            )
            if not place_keys:
                logger.warning("CEL %s sans lieu de vote rattaché", code)

        children: Dict[str, List[str]] = {}
        for unit in units.values():
            if unit.parent_key is not None:
                children.setdefault(unit.parent_key, []).append(unit.key)
        frozen_children = {k: tuple(sorted(v)) for k, v in children.items()}

        return cls(units=units, cells=cells, _children=frozen_children)

    # -------------------------
    # Lookups
    # -------------------------
    def unit(self, key: str) -> Optional[GeoUnit]:
        return self.units.get(key)

    def national(self) -> GeoUnit:
        return self.units[NATIONAL_KEY]

    def cell(self, code: str) -> Optional[Cell]:
        return self.cells.get(code)

    def children(self, unit: GeoUnit) -> List[GeoUnit]:
        return [self.units[k] for k in self._children.get(unit.key, ())]

    def units_at(self, level: str) -> List[GeoUnit]:
        return sorted((u for u in self.units.values() if u.level == level), key=lambda u: u.key)

    def ancestors(self, unit: GeoUnit) -> List[GeoUnit]:
        """Parent first, national last."""
        out = []
        key = unit.parent_key
        while key is not None:
            parent = self.units[key]
            out.append(parent)
            key = parent.parent_key
        return out

    def department_of(self, unit: GeoUnit) -> Optional[GeoUnit]:
        if unit.level == DEPARTMENT:
            return unit
        for a in self.ancestors(unit):
            if a.level == DEPARTMENT:
                return a
        return None

    def cell_path(self, code: str) -> List[GeoUnit]:
        """The commune of a cell and its ancestors, commune first."""
        c = self.cells.get(code)
        if not c or not c.commune_key:
            return []
        commune = self.units[c.commune_key]
        return [commune] + self.ancestors(commune)

    # -------------------------
    # Resolution
    # -------------------------
    def resolve(self, scope_key: str, level: Optional[str] = None) -> Resolved | Ambiguous | Unresolved:
        key = _code(scope_key)
        if not key:
            return Unresolved(scope_key)

        if key.lower() == NATIONAL_KEY:
            return Resolved(self.units[NATIONAL_KEY])

        if key.startswith(REGION_PREFIX):
            unit = self.units.get(key)
            return Resolved(unit) if unit else Unresolved(scope_key)

        segments = key.split(SEPARATOR)
        if any(not s for s in segments) or len(segments) > len(KEYED_LEVELS):
            return Unresolved(scope_key)

        natural = KEYED_LEVELS[len(segments) - 1]
        if level is None or level == natural:
            unit = self.units.get(key)
            if unit is None or unit.level != natural:
                return Unresolved(scope_key)
            return Resolved(unit)

        if level not in KEYED_LEVELS or KEYED_LEVELS.index(level) < KEYED_LEVELS.index(natural):
            return Unresolved(scope_key)

        # Partial key: trailing local codes of `level`, ancestors missing.
        n = len(segments)
        matches = tuple(
            u for u in self.units_at(level) if u.key.split(SEPARATOR)[-n:] == segments
        )
        if not matches:
            return Unresolved(scope_key)
        if len(matches) > 1:
            logger.warning(
                "Clé partielle ambiguë '%s' (%s): %s", key, level, [u.key for u in matches]
            )
            return Ambiguous(scope_key, matches)
        return Resolved(matches[0], exact=False)

    # -------------------------
    # Descendants
    # -------------------------
    def descendant_cells(self, unit: GeoUnit) -> FrozenSet[str]:
        if unit.level == NATIONAL:
            return frozenset(self.cells)

        if unit.level == REGION:
            departments = {k for k in self._children.get(unit.key, ())}
            return frozenset(
                c.code for c in self.cells.values()
                if c.commune_key and c.commune_key.split(SEPARATOR)[0] in departments
            )

        if unit.level == POLLING_STATION:
            unit = self.units[unit.parent_key]

        prefix = unit.key + SEPARATOR
        return frozenset(
            c.code for c in self.cells.values()
            if any(k == unit.key or k.startswith(prefix) for k in c.place_keys)
        )

    def publication_units(self) -> List[GeoUnit]:
        """Departments, or their communes when the department publishes commune by commune."""
        out: List[GeoUnit] = []
        for d in self.units_at(DEPARTMENT):
            if d.publish_by_commune:
                out.extend(u for u in self.units_at(COMMUNE) if u.key.startswith(d.key + SEPARATOR))
            else:
                out.append(d)
        return out

    def publication_unit_for_cell(self, code: str) -> Optional[GeoUnit]:
        path = self.cell_path(code)
        if not path:
            return None
        commune = path[0]
        department = self.department_of(commune)
        return commune if department is not None and department.publish_by_commune else department
