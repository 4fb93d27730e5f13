import pytest
from werkzeug.security import generate_password_hash

from tabulation.app import create_app
from tabulation.utils.auth import ADMIN, PUBLIC, SADMIN, USER, CallerIdentity
from tabulation.utils.engine import Tabulation
from tabulation.utils.storage import JsonStore

SLOTS = 3

# D1 (Abidjan) publishes commune by commune. ABOBO and SONGON share the local
# commune code "01" under two different sub-prefectures.
CATALOG = {
    "regions": [
        {"code": "R1", "label": "District d'Abidjan"},
        {"code": "R2", "label": "Agnéby-Tiassa"},
    ],
    "departments": [
        {"code": "D1", "region": "R1", "label": "Abidjan", "publish_by_commune": True},
        {"code": "D2", "region": "R2", "label": "Agboville"},
    ],
    "sub_prefectures": [
        {"department": "D1", "code": "SP1", "label": "Abobo"},
        {"department": "D1", "code": "SP2", "label": "Songon"},
        {"department": "D2", "code": "SP1", "label": "Agboville"},
    ],
    "communes": [
        {"department": "D1", "sub_prefecture": "SP1", "code": "01", "label": "ABOBO"},
        {"department": "D1", "sub_prefecture": "SP2", "code": "01", "label": "SONGON"},
        {"department": "D2", "sub_prefecture": "SP1", "code": "01", "label": "AGBOVILLE"},
    ],
    "voting_places": [
        {"department": "D1", "sub_prefecture": "SP1", "commune": "01", "code": "001", "label": "EPP Abobo 1", "cell": "C1"},
        {"department": "D1", "sub_prefecture": "SP1", "commune": "01", "code": "002", "label": "EPP Abobo 2", "cell": "C1"},
        {"department": "D1", "sub_prefecture": "SP2", "commune": "01", "code": "001", "label": "EPP Songon", "cell": "C2"},
        {"department": "D2", "sub_prefecture": "SP1", "commune": "01", "code": "001", "label": "Lycée moderne", "cell": "C3"},
    ],
    "polling_stations": [
        {"department": "D1", "sub_prefecture": "SP1", "commune": "01", "place": "001", "code": "01"},
        {"department": "D1", "sub_prefecture": "SP1", "commune": "01", "place": "001", "code": "02"},
        {"department": "D1", "sub_prefecture": "SP1", "commune": "01", "place": "002", "code": "01"},
        {"department": "D1", "sub_prefecture": "SP2", "commune": "01", "place": "001", "code": "01"},
        {"department": "D2", "sub_prefecture": "SP1", "commune": "01", "place": "001", "code": "01"},
    ],
    "cells": [
        {"code": "C1", "label": "CEL Abobo", "station_count": 3},
        {"code": "C2", "label": "CEL Songon", "station_count": 1},
        {"code": "C3", "label": "CEL Agboville", "station_count": 1},
    ],
}

CANDIDATES = [
    {"order": 2, "first_name": "Awa", "last_name": "Koné", "sponsor": {"label": "Rassemblement", "acronym": "RAS"}},
    {"order": 1, "first_name": "Jean", "last_name": "Kouassi"},
    {"order": 3, "first_name": "Marie", "last_name": "Yao", "sponsor": {"label": "Union", "acronym": "UN"}},
]

SADMIN_ID = CallerIdentity("root", SADMIN)
ADMIN_ID = CallerIdentity("chef", ADMIN)
ADMIN_D2_ID = CallerIdentity("chef-d2", ADMIN, departments=frozenset({"D2"}))
USER_C1_ID = CallerIdentity("agent", USER, cells=frozenset({"C1"}))
USER_D2_ID = CallerIdentity("agent-d2", USER, departments=frozenset({"D2"}))
PUBLIC_ID = CallerIdentity("", PUBLIC)


def make_row(registered=100, scores=(30, 20, 0), null=0, blank=0, place_ref="001", station_number="01", **extra):
    """A consistent row: voters and expressed follow from the ballots given."""
    expressed = sum(scores)
    row = {
        "place_ref": place_ref,
        "station_number": station_number,
        "registered": registered,
        "voters": null + blank + expressed,
        "null_ballots": null,
        "blank_ballots": blank,
        "expressed": expressed,
        "scores": list(scores),
    }
    row.update(extra)
    return row


@pytest.fixture
def store(tmp_path):
    s = JsonStore(tmp_path / "data")
    s.save_json("catalog.json", CATALOG)
    s.save_json("candidates.json", CANDIDATES)
    return s


@pytest.fixture
def engine(store):
    return Tabulation(store, SLOTS)


@pytest.fixture
def app(tmp_path):
    data_dir = tmp_path / "data"
    s = JsonStore(data_dir)
    s.save_json("catalog.json", CATALOG)
    s.save_json("candidates.json", CANDIDATES)
    s.save_json("settings.json", {"name": "Présidentielle", "date": "2025-10-25", "round": 1})
    s.save_json("users.json", [
        {"username": "root", "password_hash": generate_password_hash("secret"), "role": "SADMIN"},
        {"username": "chef", "password_hash": generate_password_hash("secret"), "role": "ADMIN"},
        {"username": "agent", "password_hash": generate_password_hash("secret"), "role": "USER", "cells": ["C1"]},
        {"username": "agent-d2", "password_hash": generate_password_hash("secret"), "role": "USER", "departments": ["D2"]},
        {"username": "old", "password_hash": generate_password_hash("secret"), "role": "ADMIN", "is_active": False},
    ])
    return create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "TABULATION_DATA_DIR": str(data_dir),
        "TABULATION_CANDIDATE_SLOTS": SLOTS,
        "TABULATION_LOG_LEVEL": "DEBUG",
    })


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, username, password="secret"):
    resp = client.post("/api/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return resp
