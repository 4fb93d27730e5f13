import csv
import io
import logging
import os
from typing import Any, Dict, List

from flask import Flask, Response, jsonify, request, send_file, session

from werkzeug.security import generate_password_hash

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import mm
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle

from .utils.aggregator import AggregateResult
from .utils.auth import ADMIN, SADMIN, authenticate, current_identity, login_required, role_required
from .utils.catalog import COMMUNE, DEPARTMENT, NATIONAL, POLLING_STATION, REGION, SUB_PREFECTURE, VOTING_PLACE
from .utils.engine import Tabulation
from .utils.errors import TabulationError
from .utils.storage import DEFAULT_DATA_DIR, JsonStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

LEVEL_LABELS = {
    NATIONAL: "National",
    REGION: "Région",
    DEPARTMENT: "Département",
    SUB_PREFECTURE: "Sous-préfecture",
    COMMUNE: "Commune",
    VOTING_PLACE: "Lieu de vote",
    POLLING_STATION: "Bureau de vote",
}


def create_app(config: Dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev-secret-change-me"),
        TABULATION_DATA_DIR=os.environ.get("TABULATION_DATA_DIR") or str(DEFAULT_DATA_DIR),
        TABULATION_CANDIDATE_SLOTS=_safe_int(os.environ.get("TABULATION_CANDIDATE_SLOTS"), 5),
        TABULATION_LOG_LEVEL=os.environ.get("TABULATION_LOG_LEVEL", "INFO"),
        TABULATION_PAGE_SIZE=_safe_int(os.environ.get("TABULATION_PAGE_SIZE"), 10),
    )
    if config:
        app.config.update(config)
    app.secret_key = app.config["SECRET_KEY"]

    _configure_logging(app.config["TABULATION_LOG_LEVEL"])

    store = JsonStore(app.config["TABULATION_DATA_DIR"])
    _ensure_seed_data(store)
    engine = Tabulation(store, int(app.config["TABULATION_CANDIDATE_SLOTS"]))
    app.extensions["tabulation"] = engine

    @app.errorhandler(TabulationError)
    def _tabulation_error(e: TabulationError):
        return jsonify(e.to_dict()), e.status_code

    def _level_arg():
        level = (request.args.get("level") or "").strip().upper()
        return level or None

    def _election_label() -> str:
        s = engine.settings()
        parts = [str(s.get("name") or "").strip()]
        if s.get("round"):
            parts.append(f"Tour {s.get('round')}")
        if s.get("date"):
            parts.append(str(s.get("date")))
        return " | ".join(p for p in parts if p)

    # -------------------------
    # Export helpers (CSV / PDF)
    # -------------------------
    def _csv_response(rows: list[dict], fieldnames: list[str], filename: str) -> Response:
        sio = io.StringIO()
        writer = csv.DictWriter(sio, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        for r in rows:
            writer.writerow({k: r.get(k, "") for k in fieldnames})
        data = sio.getvalue().encode("utf-8-sig")  # Excel-friendly
        resp = Response(data, mimetype="text/csv; charset=utf-8")
        resp.headers["Content-Disposition"] = f"attachment; filename={filename}"
        return resp

    EXPORT_FIELDS = [
        "key", "label", "status", "cells", "registered", "voters", "turnout_rate",
        "null_ballots", "blank_ballots", "expressed",
    ]
    EXPORT_HEADERS = ["Clé", "Unité", "Statut", "CEL", "Inscrits", "Votants", "Particip. %", "Nuls", "Blancs", "Exprimés"]
    PENDING_LABEL = "EN ATTENTE DE PUBLICATION"

    def _candidate_column(c: Dict[str, Any]) -> str:
        # Prefixed by ballot position: display names are not unique.
        return f"{c['slot'] + 1}. {c['name']}"

    def _export_fields() -> List[str]:
        return EXPORT_FIELDS + [_candidate_column(c) for c in engine.candidates]

    def _results_pdf_response(top: AggregateResult, rows: List[Dict[str, Any]], filename: str) -> Response:
        """Breakdown table, one line per child unit and the scope total last.

        Rows still waiting for publication are greyed out; the footer carries
        the cell counts behind the total.
        """
        buf = io.BytesIO()

        page_size = landscape(A4)
        width, height = page_size
        doc = SimpleDocTemplate(
            buf,
            pagesize=page_size,
            leftMargin=10 * mm,
            rightMargin=10 * mm,
            topMargin=24 * mm,
            bottomMargin=16 * mm,
        )

        title = f"{LEVEL_LABELS.get(top.scope.level, top.scope.level)} : {top.scope.label}"
        info = " | ".join(p for p in (_election_label(), f"Révision {top.revision} du {top.as_of or '-'}") if p)
        cells_line = (
            f"CEL comptabilisées {top.eligible_cells}/{top.total_cells}, "
            f"en attente {top.pending_cells}, incohérentes {top.inconsistent_cells}"
        )

        def _on_page(c, d):
            c.saveState()
            c.setFillColor(colors.HexColor("#0b3d2e"))
            c.rect(0, height - 16 * mm, width, 16 * mm, stroke=0, fill=1)
            c.setFillColor(colors.white)
            c.setFont("Helvetica-Bold", 12)
            c.drawString(10 * mm, height - 10 * mm, title[:100])
            c.setFont("Helvetica", 8)
            c.drawRightString(width - 10 * mm, height - 10 * mm, info[:160])

            c.setFillColor(colors.HexColor("#444444"))
            c.drawString(10 * mm, 8 * mm, cells_line)
            c.drawRightString(width - 10 * mm, 8 * mm, f"Page {d.page}")
            c.restoreState()

        fixed = [24 * mm, 38 * mm, 30 * mm, 12 * mm] + [15 * mm] * 6
        n = len(engine.candidates)
        if n:
            fixed += [max((width - 20 * mm - sum(fixed)) / n, 14 * mm)] * n

        fields = _export_fields()
        data = [EXPORT_HEADERS + [_candidate_column(c) for c in engine.candidates]]
        data += [[str(r.get(k, "")) for k in fields] for r in rows]

        style = [
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 7),
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#e6efe9")),
            ("ALIGN", (3, 1), (-1, -1), "RIGHT"),
            ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
            ("GRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#c9d3cd")),
            ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
            ("LINEABOVE", (0, -1), (-1, -1), 1, colors.HexColor("#0b3d2e")),
        ]
        for i, r in enumerate(rows, start=1):
            if r.get("status") == PENDING_LABEL:
                style.append(("TEXTCOLOR", (0, i), (-1, i), colors.HexColor("#9ca3af")))
                style.append(("SPAN", (2, i), (-1, i)))

        tbl = Table(data, repeatRows=1, colWidths=fixed)
        tbl.setStyle(TableStyle(style))

        doc.build([tbl], onFirstPage=_on_page, onLaterPages=_on_page)
        buf.seek(0)
        return send_file(buf, mimetype="application/pdf", as_attachment=True, download_name=filename)

    def _breakdown_rows(bd: Dict[str, Any]) -> List[Dict[str, Any]]:
        """One row per child, then the scope total last."""
        out = []
        for r in list(bd["children"]) + [bd["scope"]]:
            row: Dict[str, Any] = {"key": r.scope.key, "label": r.scope.label}
            if not isinstance(r, AggregateResult):
                row["status"] = PENDING_LABEL
                out.append(row)
                continue
            s = r.summary
            row.update({
                "status": "PUBLIÉ" if r.published else "NON PUBLIÉ",
                "cells": f"{r.eligible_cells}/{r.total_cells}",
                "registered": s["registered"],
                "voters": s["voters"],
                "turnout_rate": s["turnout_rate"],
                "null_ballots": s["null_ballots"],
                "blank_ballots": s["blank_ballots"],
                "expressed": s["expressed"],
            })
            votes = {c["slot"]: c["votes"] for c in s["candidate_totals"]}
            for c in engine.candidates:
                row[_candidate_column(c)] = votes.get(c["slot"], 0)
            out.append(row)
        return out

    # -------------------------
    # Auth
    # -------------------------
    @app.post("/api/login")
    def login():
        data = request.get_json(silent=True) or request.form
        username = (data.get("username") or "").strip()
        password = data.get("password") or ""
        u = authenticate(username, password)
        if not u:
            logger.info("Échec de connexion pour %r", username)
            return jsonify({"success": False, "error": "unauthorized", "message": "Identifiants invalides."}), 401
        session["username"] = u["username"]
        ident = current_identity()
        return jsonify({
            "success": True,
            "username": ident.username,
            "role": ident.role,
            "departments": sorted(ident.departments),
            "cells": sorted(ident.cells),
        })

    @app.post("/api/logout")
    def logout():
        session.clear()
        return jsonify({"success": True, "message": "Déconnecté."})

    # -------------------------
    # Results (live)
    # -------------------------
    @app.get("/api/header")
    def api_header():
        ident = current_identity()
        result = engine.aggregator.aggregate("national", ident)
        return jsonify({
            "success": True,
            "election": engine.settings(),
            "results": result.to_dict(),
            "published_units": [{"key": u.key, "label": u.label} for u in engine.gate.published_units()],
        })

    @app.get("/api/results/<scope>")
    def api_results(scope: str):
        result = engine.aggregator.aggregate(scope, current_identity(), level=_level_arg())
        return jsonify(result.to_dict())

    @app.get("/api/results/<scope>/breakdown")
    def api_results_breakdown(scope: str):
        bd = engine.aggregator.breakdown(scope, current_identity(), level=_level_arg())
        return jsonify({
            "success": True,
            "scope": bd["scope"].to_dict(),
            "children": [c.to_dict() for c in bd["children"]],
        })

    @app.get("/api/results/<scope>/export.csv")
    def api_results_export_csv(scope: str):
        bd = engine.aggregator.breakdown(scope, current_identity(), level=_level_arg())
        if not isinstance(bd["scope"], AggregateResult):
            return jsonify(bd["scope"].to_dict())
        return _csv_response(_breakdown_rows(bd), _export_fields(), f"resultats_{bd['scope'].scope.key}.csv")

    @app.get("/api/results/<scope>/export.pdf")
    def api_results_export_pdf(scope: str):
        bd = engine.aggregator.breakdown(scope, current_identity(), level=_level_arg())
        top = bd["scope"]
        if not isinstance(top, AggregateResult):
            return jsonify(top.to_dict())
        return _results_pdf_response(top, _breakdown_rows(bd), f"resultats_{top.scope.key}.pdf")

    # -------------------------
    # Import hand-off
    # -------------------------
    @app.post("/api/cells/<code>/import")
    @login_required
    def api_cell_import(code: str):
        data = request.get_json(silent=True) or {}
        rows = data.get("rows")
        if not isinstance(rows, list):
            return jsonify({"success": False, "error": "error", "message": "Le champ 'rows' doit être une liste."}), 400
        out = engine.import_cell(code, rows, current_identity(), file_name=str(data.get("file_name") or ""))
        out["success"] = True
        return jsonify(out)

    # -------------------------
    # Publication
    # -------------------------
    @app.post("/api/publication/<scope>/publish")
    @role_required(SADMIN, ADMIN)
    def api_publish(scope: str):
        return jsonify(engine.gate.publish(scope, current_identity()))

    @app.post("/api/publication/<scope>/unpublish")
    @role_required(SADMIN, ADMIN)
    def api_unpublish(scope: str):
        return jsonify(engine.gate.unpublish(scope, current_identity()))

    @app.get("/api/publication/stats")
    @login_required
    def api_publication_stats():
        return jsonify(engine.gate.stats(current_identity()))

    @app.get("/api/publication/units")
    @login_required
    def api_publication_units():
        limit = _safe_int(request.args.get("limit"), app.config["TABULATION_PAGE_SIZE"])
        return jsonify(engine.gate.list_units(
            current_identity(),
            search=request.args.get("search", ""),
            status=request.args.get("status", ""),
            page=_safe_int(request.args.get("page"), 1),
            limit=limit,
        ))

    @app.get("/api/publication/units/<scope>")
    @login_required
    def api_publication_unit_details(scope: str):
        return jsonify(engine.gate.unit_details(scope, current_identity()))

    return app


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=str(level).upper(), format=LOG_FORMAT)
    logging.getLogger("tabulation").setLevel(str(level).upper())


def _safe_int(val, default: int = 0) -> int:
    """Parse an int coming from query strings or env. Accepts spaces and commas."""
    if val is None:
        return default
    try:
        s = str(val).strip().replace(" ", "").replace(",", "")
        if s == "":
            return default
        return int(s)
    except ValueError:
        return default


def _ensure_seed_data(store: JsonStore) -> None:
    """Create the files the engine expects when the data directory is new."""
    data_dir = store.data_dir

    if not (data_dir / "meta.json").exists():
        store.save_json("meta.json", {"last_update_utc": None, "revision": 0})

    if not (data_dir / "settings.json").exists():
        store.save_json("settings.json", {"name": "Élection présidentielle", "date": "", "round": 1})

    for name, empty in (
        ("catalog.json", {}),
        ("candidates.json", []),
        ("cells.json", {}),
        ("ledger.json", {}),
        ("publications.json", {}),
        ("publication_history.json", []),
    ):
        if not (data_dir / name).exists():
            store.save_json(name, empty)

    if not (data_dir / "users.json").exists():
        store.save_json("users.json", [
            {
                "username": "admin",
                "password_hash": generate_password_hash("Admin123!"),
                "role": "SADMIN",
                "full_name": "Super administrateur",
                "departments": [],
                "cells": [],
                "is_active": True,
            },
        ])
        logger.warning("users.json absent: compte 'admin' créé avec le mot de passe par défaut")
