"""Results for any geographic scope.

An aggregation reads cell states, ledger rows and publication flags in one
locked snapshot, keeps the cells the caller may see, sums the rows of the
eligible ones and derives the rates. Nothing is cached: a published scope is a
live view of the current imports.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .auth import CallerIdentity
from .calc import compute_summary, empty_totals, sum_rows
from .catalog import POLLING_STATION, VOTING_PLACE, Ambiguous, Catalog, GeoUnit, Unresolved
from .cells import CellRegistry, is_eligible, status_of
from .errors import AmbiguousScope, NotFound
from .ledger import IMPORT_COMPLETED, InvalidRow, Ledger, LedgerRow, parse_stored_rows
from .publication import PublicationGate
from .storage import JsonStore
from .visibility import AllowedScope, can_see, narrow

logger = logging.getLogger(__name__)

RESULT_OK = "OK"
RESULT_PENDING_PUBLICATION = "PENDING_PUBLICATION"


@dataclass(frozen=True)
class AggregateResult:
    scope: GeoUnit
    summary: Dict[str, Any]
    total_cells: int
    eligible_cells: int
    pending_cells: int
    inconsistent_cells: int
    pending_cell_codes: Tuple[str, ...] = ()
    narrowed: bool = False
    exact_key: bool = True
    published: bool = False
    as_of: Optional[str] = None
    revision: int = 0

    @property
    def no_data(self) -> bool:
        return self.eligible_cells == 0

    def to_dict(self) -> Dict[str, Any]:
        totals = {k: v for k, v in self.summary.items() if k != "candidate_totals"}
        return {
            "success": True,
            "status": RESULT_OK,
            "scope": self.scope.to_dict(),
            "exact_key": self.exact_key,
            "narrowed": self.narrowed,
            "published": self.published,
            "no_data": self.no_data,
            "cells": {
                "total": self.total_cells,
                "eligible": self.eligible_cells,
                "pending": self.pending_cells,
                "inconsistent": self.inconsistent_cells,
                "pending_codes": list(self.pending_cell_codes),
            },
            "totals": totals,
            "candidates": self.summary["candidate_totals"],
            "as_of": self.as_of,
            "revision": self.revision,
        }


@dataclass(frozen=True)
class PendingPublication:
    """Not an error: the scope exists and is visible, but is not released yet."""

    scope: GeoUnit
    as_of: Optional[str] = None
    revision: int = 0
    message: str = "Résultats en attente de publication."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "status": RESULT_PENDING_PUBLICATION,
            "scope": self.scope.to_dict(),
            "message": self.message,
            "as_of": self.as_of,
            "revision": self.revision,
        }


@dataclass
class _Snapshot:
    states: Dict[str, Any]
    ledger: Dict[str, Any]
    flags: Dict[str, Any]
    revision: Dict[str, Any]
    rows: Dict[str, Any] = field(default_factory=dict)


class Aggregator:
    def __init__(
        self,
        store: JsonStore,
        catalog: Catalog,
        registry: CellRegistry,
        ledger: Ledger,
        gate: PublicationGate,
        candidates: List[Dict[str, Any]],
    ):
        self.store = store
        self.catalog = catalog
        self.registry = registry
        self.ledger = ledger
        self.gate = gate
        self.candidates = candidates

    @property
    def slots(self) -> int:
        return self.ledger.slots

    def resolve(self, scope_key: str, level: Optional[str] = None) -> Tuple[GeoUnit, bool]:
        res = self.catalog.resolve(scope_key, level)
        if isinstance(res, Unresolved):
            raise NotFound(f"Unité '{scope_key}' introuvable.")
        if isinstance(res, Ambiguous):
            raise AmbiguousScope(scope_key, res.matches)
        return res.unit, res.exact

    def _snapshot(self) -> _Snapshot:
        # One bulk read under the store lock: never a mix of two generations.
        with self.store.snapshot():
            return _Snapshot(
                states=self.registry.load_states(),
                ledger=self.ledger.load_all(),
                flags=self.gate.load_flags(),
                revision=self.store.revision(),
            )

    def aggregate(
        self, scope_key: str, identity: CallerIdentity, level: Optional[str] = None
    ) -> AggregateResult | PendingPublication:
        unit, exact = self.resolve(scope_key, level)
        scope = narrow(unit, identity, self.catalog)
        return self._evaluate(scope, identity, self._snapshot(), exact)

    def breakdown(
        self, scope_key: str, identity: CallerIdentity, level: Optional[str] = None
    ) -> Dict[str, Any]:
        """The scope itself plus one result per child unit the caller can see."""
        unit, exact = self.resolve(scope_key, level)
        scope = narrow(unit, identity, self.catalog)
        snap = self._snapshot()
        children = [c for c in self.catalog.children(unit) if can_see(c, identity, self.catalog)]
        return {
            "scope": self._evaluate(scope, identity, snap, exact),
            "children": [
                self._evaluate(narrow(c, identity, self.catalog), identity, snap, True) for c in children
            ],
        }

    def _evaluate(
        self, scope: AllowedScope, identity: CallerIdentity, snap: _Snapshot, exact: bool
    ) -> AggregateResult | PendingPublication:
        unit = scope.unit
        published = self.gate.is_published(unit, snap.flags)
        if not published and not identity.is_admin:
            return PendingPublication(
                unit,
                as_of=snap.revision["last_update_utc"],
                revision=snap.revision["revision"],
            )

        keep = self._row_filter(unit)
        totals = empty_totals(self.slots)
        eligible = inconsistent = 0
        pending: List[str] = []

        for code in sorted(scope.cells):
            if not is_eligible(status_of(snap.states, code)):
                pending.append(code)
                continue
            rows = self._cell_rows(code, snap)
            if rows is None:
                inconsistent += 1
                continue
            sum_rows((r for r in rows if keep(r)), self.slots, totals)
            eligible += 1

        return AggregateResult(
            scope=unit,
            summary=compute_summary(totals, self.candidates),
            total_cells=len(scope.cells),
            eligible_cells=eligible,
            pending_cells=len(pending),
            inconsistent_cells=inconsistent,
            pending_cell_codes=tuple(pending),
            narrowed=scope.narrowed,
            exact_key=exact,
            published=published,
            as_of=snap.revision["last_update_utc"],
            revision=snap.revision["revision"],
        )

    def _cell_rows(self, code: str, snap: _Snapshot) -> Optional[List[LedgerRow]]:
        """Rows of the current generation, or None when the import is inconsistent."""
        if code in snap.rows:
            return snap.rows[code]
        entry = snap.ledger.get(code)
        generation = int((snap.states.get(code) or {}).get("generation") or 0)
        try:
            if not entry:
                raise InvalidRow("aucune ligne importée")
            if int(entry.get("generation") or 0) != generation:
                raise InvalidRow(
                    f"génération des lignes ({entry.get('generation')}) ≠ génération de la CEL ({generation})"
                )
            rows = parse_stored_rows(entry, self.slots)
            incomplete = [r for r in rows if r.import_status != IMPORT_COMPLETED]
            if incomplete:
                raise InvalidRow(f"{len(incomplete)} ligne(s) non finalisée(s)")
        except InvalidRow as e:
            logger.warning("CEL %s ignorée, import incohérent: %s", code, e)
            rows = None
        snap.rows[code] = rows
        return rows

    def _row_filter(self, unit: GeoUnit) -> Callable[[LedgerRow], bool]:
        if unit.level == VOTING_PLACE:
            return lambda r: r.place_ref == unit.code
        if unit.level == POLLING_STATION:
            place = self.catalog.unit(unit.parent_key)
            return lambda r: r.place_ref == place.code and r.station_number == unit.code
        return lambda r: True
