from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List

from .ledger import COUNT_FIELDS, LedgerRow

TWO_PLACES = Decimal("0.01")


def percent(numerator: int, denominator: int) -> float:
    """numerator / denominator as a percentage, round-half-up to 2 places; 0 if denominator is 0."""
    if not denominator:
        return 0.0
    value = Decimal(numerator) * 100 / Decimal(denominator)
    return float(value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def empty_totals(slots: int) -> Dict[str, Any]:
    totals: Dict[str, Any] = {name: 0 for name in COUNT_FIELDS}
    totals["scores"] = [0] * slots
    return totals


def sum_rows(rows: Iterable[LedgerRow], slots: int, totals: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Integer sums of every count and of scores, slot by slot."""
    if totals is None:
        totals = empty_totals(slots)
    scores = totals["scores"]
    for r in rows:
        for name in COUNT_FIELDS:
            totals[name] += getattr(r, name)
        for i, v in enumerate(r.scores):
            scores[i] += v
    return totals


def slot_candidates(candidates: List[Dict[str, Any]], slots: int) -> List[Dict[str, Any]]:
    """Candidates sorted by ballot order; the position is the score slot."""
    def _order(c):
        try:
            return int(c.get("order") or 0)
        except (TypeError, ValueError):
            return 0

    out = []
    for slot, c in enumerate(sorted(candidates, key=_order)[:slots]):
        sponsor = c.get("sponsor") or {}
        first = (c.get("first_name") or "").strip()
        last = (c.get("last_name") or "").strip()
        out.append({
            "slot": slot,
            "order": _order(c),
            "name": f"{first} {last}".strip() or c.get("name") or f"Candidat {slot + 1}",
            "party": sponsor.get("label") or "Indépendant",
            "party_acronym": sponsor.get("acronym") or "IND",
            "photo": c.get("photo", ""),
            "symbol": c.get("symbol", ""),
        })
    return out


def compute_summary(totals: Dict[str, Any], candidates: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Returns the presentation of a scope's totals:
    - counts as summed (registered/voters with their sex split, null, blank, expressed)
    - turnout_rate = voters / registered
    - null_rate = null / voters
    - blank_rate = blank / expressed
    - candidate_totals: candidates with at least one vote in this scope, sorted by
      votes desc then ballot order, each with percent = votes / expressed

    Rounding happens here and only here.
    """
    expressed = totals["expressed"]
    scores = totals["scores"]

    out = []
    for c in candidates:
        v = scores[c["slot"]] if c["slot"] < len(scores) else 0
        if v == 0:
            continue
        item = dict(c)
        item["votes"] = v
        item["percent"] = percent(v, expressed)
        out.append(item)

    out.sort(key=lambda x: (-x["votes"], x["order"]))
    top = out[0]["votes"] if out else 0
    leaders = sum(1 for x in out if x["votes"] == top)
    for x in out:
        x["is_winner"] = x["votes"] == top and leaders == 1
        x["is_tied"] = x["votes"] == top and leaders > 1

    return {
        "registered": totals["registered"],
        "registered_men": totals["registered_men"],
        "registered_women": totals["registered_women"],
        "voters": totals["voters"],
        "voters_men": totals["voters_men"],
        "voters_women": totals["voters_women"],
        "null_ballots": totals["null_ballots"],
        "blank_ballots": totals["blank_ballots"],
        "expressed": expressed,
        "turnout_rate": percent(totals["voters"], totals["registered"]),
        "null_rate": percent(totals["null_ballots"], totals["voters"]),
        "blank_rate": percent(totals["blank_ballots"], expressed),
        "candidate_totals": out,
    }
