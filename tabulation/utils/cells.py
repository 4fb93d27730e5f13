from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .catalog import Catalog
from .errors import IllegalTransition, NotFound, ReimportRefused
from .ledger import Ledger, validate_rows
from .storage import JsonStore

logger = logging.getLogger(__name__)

CELLS_FILE = "cells.json"
HISTORY_FILE = "publication_history.json"

PENDING = "PENDING"
IMPORTED = "IMPORTED"
PUBLISHED = "PUBLISHED"

ELIGIBLE_STATUSES = (IMPORTED, PUBLISHED)

# (from, to) pairs. Re-import keeps the current state.
ALLOWED_TRANSITIONS = {
    (PENDING, IMPORTED),
    (IMPORTED, IMPORTED),
    (IMPORTED, PUBLISHED),
    (PUBLISHED, PUBLISHED),
}


def is_eligible(status: Optional[str]) -> bool:
    return (status or PENDING) in ELIGIBLE_STATUSES


def check_transition(cell_code: str, current: str, target: str) -> None:
    if (current, target) not in ALLOWED_TRANSITIONS:
        logger.error("Transition refusée pour la CEL %s: %s -> %s", cell_code, current, target)
        raise IllegalTransition(f"CEL {cell_code}: transition {current} -> {target} interdite.")


def status_of(states: Dict[str, Any], cell_code: str) -> str:
    st = (states.get(cell_code) or {}).get("status") or PENDING
    return str(st).upper()


def append_history(store: JsonStore, action: str, unit_key: str, actor: str, details: str = "") -> None:
    """Append one event to the publication history. Call inside a transaction."""
    history = store.load_json(HISTORY_FILE, default=[])
    if not isinstance(history, list):
        history = []
    history.append({
        "seq": len(history) + 1,
        "action": action,
        "unit_key": unit_key,
        "user": actor,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
    })
    store.save_json(HISTORY_FILE, history)


class CellRegistry:
    """Cell lifecycle: PENDING -> IMPORTED -> PUBLISHED.

    Status, ledger rows and the history event of one import are written under a
    single store transaction, so an aggregation never sees a status without its
    rows (or the other way round).
    """

    def __init__(self, store: JsonStore, catalog: Catalog, ledger: Ledger):
        self.store = store
        self.catalog = catalog
        self.ledger = ledger

    def load_states(self) -> Dict[str, Any]:
        data = self.store.load_json(CELLS_FILE, default={})
        return data if isinstance(data, dict) else {}

    def status(self, cell_code: str) -> str:
        self._require(cell_code)
        return status_of(self.load_states(), cell_code)

    def _require(self, cell_code: str):
        cell = self.catalog.cell(cell_code)
        if cell is None:
            raise NotFound(f"CEL {cell_code} introuvable.")
        return cell

    def record_import(
        self,
        cell_code: str,
        raw_rows: List[Dict[str, Any]],
        imported_by: str,
        file_name: str = "",
        is_unit_published=None,
    ) -> Dict[str, Any]:
        """Validate and store a completed import for one cell.

        ``is_unit_published(unit) -> bool`` tells whether the publication unit
        covering the cell is currently published; a published cell can only be
        re-imported once that unit has been unpublished.
        """
        self._require(cell_code)
        # Validation first: a failing batch changes nothing.
        rows = validate_rows(raw_rows, self.ledger.slots)

        with self.store.transaction():
            states = self.load_states()
            current = status_of(states, cell_code)
            target = PUBLISHED if current == PUBLISHED else IMPORTED
            check_transition(cell_code, current, target)

            if current == PUBLISHED:
                unit = self.catalog.publication_unit_for_cell(cell_code)
                if unit is not None and is_unit_published is not None and is_unit_published(unit):
                    logger.warning("Réimport refusé pour la CEL %s: %s est publié", cell_code, unit.key)
                    raise ReimportRefused(
                        f"CEL {cell_code} déjà publiée ({unit.label}). Annulez la publication avant de réimporter."
                    )

            previous = states.get(cell_code) or {}
            generation = int(previous.get("generation") or 0) + 1
            self.ledger.replace(cell_code, rows, generation, imported_by, file_name)

            states[cell_code] = {
                "status": target,
                "generation": generation,
                "imported_at_utc": datetime.now(timezone.utc).isoformat(),
                "imported_by": imported_by,
                "file_name": file_name,
                "row_count": len(rows),
            }
            self.store.save_json(CELLS_FILE, states)

            unit = self.catalog.publication_unit_for_cell(cell_code)
            append_history(
                self.store, "IMPORT", unit.key if unit else "", imported_by,
                f"CEL {cell_code}: {len(rows)} ligne(s), génération {generation}",
            )
            self.store.touch_last_update()

        logger.info("CEL %s importée: %d ligne(s), génération %d, statut %s", cell_code, len(rows), generation, target)
        return {"cell_code": cell_code, "status": target, "generation": generation, "rows": len(rows)}

    def mark_published(self, cell_codes: Iterable[str], states: Dict[str, Any]) -> List[str]:
        """IMPORTED -> PUBLISHED for the given cells. Caller holds the transaction and saves."""
        flipped = []
        for code in sorted(cell_codes):
            current = status_of(states, code)
            if current == PUBLISHED:
                continue
            check_transition(code, current, PUBLISHED)
            entry = dict(states.get(code) or {})
            entry["status"] = PUBLISHED
            entry["published_at_utc"] = datetime.now(timezone.utc).isoformat()
            states[code] = entry
            flipped.append(code)
        return flipped

