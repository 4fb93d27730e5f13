from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .errors import InconsistentImport
from .storage import JsonStore

logger = logging.getLogger(__name__)

LEDGER_FILE = "ledger.json"
IMPORT_COMPLETED = "COMPLETED"

COUNT_FIELDS = (
    "registered_men",
    "registered_women",
    "registered",
    "voters_men",
    "voters_women",
    "voters",
    "null_ballots",
    "blank_ballots",
    "expressed",
)


class InvalidRow(ValueError):
    pass


def _count(raw: Dict[str, Any], name: str) -> int:
    """Numeric fields default to zero when absent. Accepts spaces as thousand separators."""
    val = raw.get(name)
    if val is None:
        return 0
    if isinstance(val, bool):
        raise InvalidRow(f"'{name}' doit être un entier (reçu {val!r})")
    if isinstance(val, int):
        iv = val
    elif isinstance(val, float):
        if not val.is_integer():
            raise InvalidRow(f"'{name}' doit être un entier (reçu {val!r})")
        iv = int(val)
    else:
        s = str(val).strip().replace(" ", "")
        if s == "":
            return 0
        try:
            iv = int(s)
        except ValueError:
            raise InvalidRow(f"'{name}' doit être un entier (reçu {val!r})")
    if iv < 0:
        raise InvalidRow(f"'{name}' ne peut pas être négatif ({iv})")
    return iv


def _rate(raw: Dict[str, Any]) -> float:
    val = raw.get("turnout_rate")
    if val is None or str(val).strip() == "":
        return 0.0
    s = str(val).strip().replace("%", "").replace(",", ".").replace(" ", "")
    try:
        return float(s)
    except ValueError:
        raise InvalidRow(f"'turnout_rate' invalide ({val!r})")


@dataclass(frozen=True)
class LedgerRow:
    place_ref: str = ""
    station_number: str = ""
    registered_men: int = 0
    registered_women: int = 0
    registered: int = 0
    voters_men: int = 0
    voters_women: int = 0
    voters: int = 0
    turnout_rate: float = 0.0
    null_ballots: int = 0
    blank_ballots: int = 0
    expressed: int = 0
    scores: Tuple[int, ...] = field(default_factory=tuple)
    import_status: str = IMPORT_COMPLETED

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], slots: int) -> "LedgerRow":
        """Build and validate one row. Raises InvalidRow on the first problem.

        Enforces:
          men + women == total (registered, voters) when a split is given
          voters <= registered
          null + blank + expressed == voters
          sum(scores) == expressed
        """
        if not isinstance(raw, dict):
            raise InvalidRow(f"ligne illisible: {raw!r}")
        counts = {name: _count(raw, name) for name in COUNT_FIELDS}

        raw_scores = raw.get("scores") or []
        if not isinstance(raw_scores, (list, tuple)):
            raise InvalidRow("'scores' doit être une liste")
        if len(raw_scores) > slots:
            raise InvalidRow(f"{len(raw_scores)} scores pour {slots} candidats")
        scores = [_count({"score": v}, "score") for v in raw_scores]
        scores += [0] * (slots - len(scores))

        row = cls(
            place_ref=str(raw.get("place_ref") or "").strip(),
            station_number=str(raw.get("station_number") or "").strip(),
            turnout_rate=_rate(raw),
            scores=tuple(scores),
            import_status=str(raw.get("import_status") or IMPORT_COMPLETED).upper(),
            **counts,
        )
        row.check()
        return row

    def check(self) -> None:
        if (self.registered_men or self.registered_women) and (
            self.registered_men + self.registered_women != self.registered
        ):
            raise InvalidRow(
                f"inscrits hommes ({self.registered_men}) + femmes ({self.registered_women}) "
                f"≠ inscrits ({self.registered})"
            )
        if (self.voters_men or self.voters_women) and (self.voters_men + self.voters_women != self.voters):
            raise InvalidRow(
                f"votants hommes ({self.voters_men}) + femmes ({self.voters_women}) ≠ votants ({self.voters})"
            )
        if self.voters > self.registered:
            raise InvalidRow(f"votants ({self.voters}) > inscrits ({self.registered})")
        if self.null_ballots + self.blank_ballots + self.expressed != self.voters:
            raise InvalidRow(
                f"nuls ({self.null_ballots}) + blancs ({self.blank_ballots}) + exprimés ({self.expressed}) "
                f"≠ votants ({self.voters})"
            )
        if sum(self.scores) != self.expressed:
            raise InvalidRow(f"somme des voix candidats ({sum(self.scores)}) ≠ exprimés ({self.expressed})")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"place_ref": self.place_ref, "station_number": self.station_number}
        for name in COUNT_FIELDS:
            out[name] = getattr(self, name)
        out["turnout_rate"] = self.turnout_rate
        out["scores"] = list(self.scores)
        out["import_status"] = self.import_status
        return out


def validate_rows(raw_rows: List[Dict[str, Any]], slots: int) -> List[LedgerRow]:
    """Validate a whole batch; report every faulty line, accept nothing on error."""
    if not raw_rows:
        raise InconsistentImport("Aucune ligne à importer.")
    rows: List[LedgerRow] = []
    errors: List[str] = []
    for i, raw in enumerate(raw_rows, start=1):
        try:
            rows.append(LedgerRow.from_dict(raw, slots))
        except InvalidRow as e:
            errors.append(f"Ligne {i} : {e}")
    if errors:
        raise InconsistentImport(
            f"Validation échouée - {len(errors)} ligne(s) en erreur. Corrigez le fichier avant de réessayer.",
            errors,
        )
    return rows


class Ledger:
    """Imported rows per cell, one generation at a time.

    ``ledger.json`` maps cell code -> {"generation", "rows", ...}. A re-import
    overwrites the whole entry: rows of an older generation never survive.
    """

    def __init__(self, store: JsonStore, slots: int):
        self.store = store
        self.slots = slots

    def load_all(self) -> Dict[str, Any]:
        data = self.store.load_json(LEDGER_FILE, default={})
        return data if isinstance(data, dict) else {}

    def entry(self, cell_code: str) -> Optional[Dict[str, Any]]:
        return self.load_all().get(cell_code)

    def replace(
        self,
        cell_code: str,
        rows: List[LedgerRow],
        generation: int,
        imported_by: str,
        file_name: str = "",
    ) -> Dict[str, Any]:
        """Must run inside ``store.transaction()`` together with the status change."""
        data = self.load_all()
        previous = data.get(cell_code) or {}
        entry = {
            "generation": generation,
            "imported_at_utc": datetime.now(timezone.utc).isoformat(),
            "imported_by": imported_by,
            "file_name": file_name,
            "rows": [r.to_dict() for r in rows],
        }
        data[cell_code] = entry
        self.store.save_json(LEDGER_FILE, data)
        if previous:
            logger.info(
                "CEL %s: %d ligne(s) de la génération %s remplacées par %d ligne(s) (génération %d)",
                cell_code, len(previous.get("rows") or []), previous.get("generation"), len(rows), generation,
            )
        return entry


def parse_stored_rows(entry: Dict[str, Any], slots: int) -> List[LedgerRow]:
    """Re-read rows persisted for a cell. Raises InvalidRow if any row is malformed."""
    rows = entry.get("rows")
    if not isinstance(rows, list):
        raise InvalidRow("lignes absentes ou illisibles")
    out = []
    for i, raw in enumerate(rows, start=1):
        try:
            out.append(LedgerRow.from_dict(raw, slots))
        except InvalidRow as e:
            raise InvalidRow(f"ligne {i}: {e}")
    return out
