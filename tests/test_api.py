"""
test_api.py — HTTP surface: auth, error bodies, timing flow, public API.
"""

from datetime import date
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_EMAIL, ADMIN_PASSWORD
from core.config import get_settings, reset_settings
from server import app

PNG = ("photo.png", b"\x89PNG\r\n\x1a\nfake", "image/png")
PDF = ("form.pdf", b"%PDF-1.4 fake", "application/pdf")


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth(client):
    r = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['token']}"}


def _setup_race(client, auth):
    """ELITE at 08:00, JUNIOR at 08:10, one stage for both, one rider each."""
    elite = client.post("/api/categories", json={"name": " elite ", "start_time": "08:00"},
                        headers=auth).json()["id"]
    junior = client.post("/api/categories", json={"name": "junior", "start_time": "08:10"},
                         headers=auth).json()["id"]
    stage = client.post("/api/stages", json={
        "stage_number": 1, "name": "Prologue", "category_ids": [elite, junior],
        "distance_km": 3.2,
    }, headers=auth).json()["id"]

    def rider(name, national_id, bib, category_id):
        r = client.post("/api/participants", json={
            "first_name": name, "last_name": "Rider", "national_id": national_id,
            "bib": bib, "birth_date": "2012-06-01", "category_id": category_id,
            "payment_method": "transfer",
        }, headers=auth)
        assert r.status_code == 200, r.text
        return r.json()["id"]

    return {
        "elite": elite, "junior": junior, "stage": stage,
        "ana": rider("Ana", "100", "007", elite),
        "cleo": rider("Cleo", "300", "7", junior),
    }


# ======================================================================
# Auth and error bodies
# ======================================================================

def test_status_is_public(client):
    r = client.get("/api/status")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_token_required(client):
    r = client.get("/api/categories")
    assert r.status_code == 401
    assert r.json()["kind"] == "authentication_error"

    r = client.get("/api/categories", headers={"Authorization": "Bearer nope.nope"})
    assert r.status_code == 401


def test_login_rejects_wrong_password(client):
    r = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": "wrong"})
    assert r.status_code == 401


def test_me_and_register(client, auth):
    r = client.get("/api/auth/me", headers=auth)
    assert r.json()["email"] == ADMIN_EMAIL

    # sign-up is open, no bearer token needed
    r = client.post("/api/auth/register", json={
        "name": "Timer", "email": "Timer@Example.com", "password": "stopwatch",
    })
    assert r.status_code == 200
    assert r.json()["email"] == "timer@example.com"

    r = client.post("/api/auth/login", json={"email": "timer@example.com", "password": "stopwatch"})
    assert r.status_code == 200
    token = r.json()["token"]
    r = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert r.json()["name"] == "Timer"

    r = client.post("/api/auth/register", json={
        "name": "Again", "email": "timer@example.com", "password": "stopwatch",
    })
    assert r.status_code == 409


def test_request_validation_is_400(client, auth):
    r = client.post("/api/timings", json={"stage_id": 1}, headers=auth)
    assert r.status_code == 400
    body = r.json()
    assert body["kind"] == "validation_error"
    assert "participant_id" in body["message"]


def test_traceback_hidden_in_production(client, auth, monkeypatch):
    r = client.get("/api/categories/999", headers=auth)
    assert r.status_code == 404
    assert "traceback" in r.json()

    monkeypatch.setenv("RACETIMING_ENV", "production")
    reset_settings()
    r = client.get("/api/categories/999", headers=auth)
    assert r.json() == {"kind": "not_found", "message": "Category not found"}


# ======================================================================
# Categories and stages
# ======================================================================

def test_base_start_time(client, auth):
    r = client.get("/api/categories/base-start-time", headers=auth)
    assert r.status_code == 404
    assert r.json()["kind"] == "no_categories"

    ids = _setup_race(client, auth)
    r = client.get("/api/categories/base-start-time", headers=auth)
    assert r.json() == {"base_start_time": "08:00:00"}

    cats = client.get("/api/categories", headers=auth).json()
    assert [c["name"] for c in cats] == ["ELITE", "JUNIOR"]
    assert cats[1]["id"] == ids["junior"]


def test_invalid_start_time(client, auth):
    r = client.post("/api/categories", json={"name": "X", "start_time": "8 am"}, headers=auth)
    assert r.status_code == 400
    assert r.json()["kind"] == "invalid_time_of_day"


def test_stage_requires_categories(client, auth):
    r = client.post("/api/stages", json={"stage_number": 1, "name": "S", "category_ids": []},
                    headers=auth)
    assert r.status_code == 400
    r = client.post("/api/stages", json={"stage_number": 1, "name": "S", "category_ids": [5]},
                    headers=auth)
    assert r.status_code == 404


def test_stage_edit_cannot_strand_timings(client, auth):
    ids = _setup_race(client, auth)
    client.post("/api/timings", json={
        "participant_id": ids["cleo"], "stage_id": ids["stage"], "raw_time": "01:00.00",
    }, headers=auth)
    r = client.put(f"/api/stages/{ids['stage']}", json={
        "stage_number": 1, "name": "Prologue", "category_ids": [ids["elite"]],
    }, headers=auth)
    assert r.status_code == 409
    assert r.json()["kind"] == "conflict"


# ======================================================================
# Timings
# ======================================================================

def test_timing_flow_with_offset_and_bonus(client, auth):
    ids = _setup_race(client, auth)

    r = client.post("/api/timings", json={
        "participant_id": ids["cleo"], "stage_id": ids["stage"], "raw_time": "01:00:00.00",
    }, headers=auth)
    assert r.status_code == 200, r.text
    assert r.json()["warnings"] == []
    cleo_record = r.json()["id"]

    r = client.post("/api/timings", json={
        "participant_id": ids["ana"], "stage_id": ids["stage"],
        "raw_time": 3700000, "penalty": "00:05.00", "note": "cut a corner",
    }, headers=auth)
    assert r.status_code == 200

    rows = client.get(f"/api/stages/{ids['stage']}/timings", headers=auth).json()
    assert [r["participant_id"] for r in rows] == [ids["ana"], ids["cleo"]]
    ana, cleo = rows
    assert ana["position"] == 1
    assert ana["final_ms"] == 3700000 - 10000 + 5000
    assert cleo["offset_ms"] == 600000
    assert cleo["bonus_ms"] == 6000
    assert cleo["final_ms"] == 3600000 - 6000 + 600000
    assert cleo["final_time"] == "01:09:54.00"

    # Fixing Cleo's time re-ranks the stage
    r = client.put(f"/api/timings/{cleo_record}", json={"raw_time": "00:50:00.00"},
                   headers=auth)
    assert r.status_code == 200
    rows = client.get(f"/api/stages/{ids['stage']}/timings", headers=auth).json()
    assert [r["participant_id"] for r in rows] == [ids["cleo"], ids["ana"]]
    assert [r["bonus_ms"] for r in rows] == [10000, 6000]


def test_duplicate_timing_is_conflict(client, auth):
    ids = _setup_race(client, auth)
    body = {"participant_id": ids["ana"], "stage_id": ids["stage"], "raw_time": "01:00.00"}
    assert client.post("/api/timings", json=body, headers=auth).status_code == 200
    r = client.post("/api/timings", json=body, headers=auth)
    assert r.status_code == 409
    assert r.json()["kind"] == "conflict"
    assert client.get("/api/timings", headers=auth).json()["total"] == 1


def test_bad_time_and_penalty(client, auth):
    ids = _setup_race(client, auth)
    base = {"participant_id": ids["ana"], "stage_id": ids["stage"]}
    r = client.post("/api/timings", json={**base, "raw_time": "1:00"}, headers=auth)
    assert r.json()["kind"] == "format_error"
    r = client.post("/api/timings", json={**base, "raw_time": 60000, "penalty": -1},
                    headers=auth)
    assert r.status_code == 400
    assert r.json()["kind"] == "invalid_penalty"


def test_timing_list_delete_and_export(client, auth):
    ids = _setup_race(client, auth)
    for pid, raw in [(ids["ana"], "01:01.00"), (ids["cleo"], "01:00.00")]:
        client.post("/api/timings", json={
            "participant_id": pid, "stage_id": ids["stage"], "raw_time": raw,
        }, headers=auth)

    page = client.get("/api/timings", params={"limit": 1, "page": 2}, headers=auth).json()
    assert (page["total"], page["pages"], len(page["items"])) == (2, 2, 1)

    r = client.get(f"/api/stages/{ids['stage']}/timings/export", headers=auth)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    lines = r.text.strip().splitlines()
    assert lines[0].startswith("Position;Bib")
    assert len(lines) == 3

    stats = client.get(f"/api/stages/{ids['stage']}/stats", headers=auth).json()
    assert stats["total_participants"] == 2

    first = page["items"][0]["id"]
    r = client.delete(f"/api/timings/{first}", headers=auth)
    assert r.status_code == 200
    rows = client.get(f"/api/stages/{ids['stage']}/timings", headers=auth).json()
    assert len(rows) == 1
    assert rows[0]["position"] == 1


def test_bonuses_and_manual_recalculation(client, auth):
    ids = _setup_race(client, auth)
    tiers = client.get("/api/bonuses", headers=auth).json()
    assert tiers[0]["bonus_ms"] == 10000
    r = client.post(f"/api/stages/{ids['stage']}/bonuses", headers=auth)
    assert r.json() == {"stage_id": ids["stage"], "warnings": []}
    assert client.post("/api/stages/999/bonuses", headers=auth).status_code == 404


def test_category_start_change_reranks(client, auth):
    ids = _setup_race(client, auth)
    client.post("/api/timings", json={
        "participant_id": ids["cleo"], "stage_id": ids["stage"], "raw_time": "01:00.00",
    }, headers=auth)
    r = client.put(f"/api/categories/{ids['junior']}",
                   json={"name": "JUNIOR", "start_time": "08:05"}, headers=auth)
    assert r.status_code == 200
    row = client.get(f"/api/stages/{ids['stage']}/timings", headers=auth).json()[0]
    assert row["offset_ms"] == 300000


# ======================================================================
# Participants and classification
# ======================================================================

def test_bib_lookup_keeps_leading_zeros(client, auth):
    ids = _setup_race(client, auth)
    assert client.get("/api/participants/bib/007", headers=auth).json()["id"] == ids["ana"]
    assert client.get("/api/participants/bib/7", headers=auth).json()["id"] == ids["cleo"]
    check = client.get("/api/participants/check-bib/07", headers=auth).json()
    assert check == {"bib": "07", "available": True, "participant_id": None}
    check = client.get("/api/participants/check-bib/007", headers=auth).json()
    assert check["available"] is False


def test_admin_participant_requires_bib(client, auth):
    ids = _setup_race(client, auth)
    r = client.post("/api/participants", json={
        "first_name": "Dan", "last_name": "Rider", "national_id": "400",
        "birth_date": "2012-06-01", "category_id": ids["elite"], "payment_method": "cash",
    }, headers=auth)
    assert r.status_code == 400


def test_participant_born_too_early(client, auth):
    ids = _setup_race(client, auth)
    r = client.post("/api/participants", json={
        "first_name": "Old", "last_name": "Timer", "national_id": "500", "bib": "50",
        "birth_date": "1980-01-01", "category_id": ids["elite"], "payment_method": "cash",
    }, headers=auth)
    assert r.status_code == 400
    assert "2011" in r.json()["message"]


def test_classification(client, auth):
    ids = _setup_race(client, auth)
    client.post("/api/timings", json={
        "participant_id": ids["ana"], "stage_id": ids["stage"], "raw_time": "01:00.00",
    }, headers=auth)
    standings = client.get(f"/api/classification/{ids['elite']}", headers=auth).json()
    assert len(standings) == 1
    assert standings[0]["position"] == 1
    assert standings[0]["total_ms"] == 50000
    assert standings[0]["stages_completed"] == 1
    assert client.get("/api/classification/999", headers=auth).status_code == 404


# ======================================================================
# Public API
# ======================================================================

def _registration(category_id, birth_date, national_id="700"):
    return {
        "first_name": "Pia", "last_name": "Public", "national_id": national_id,
        "birth_date": birth_date, "category_id": str(category_id),
        "payment_method": "qr", "community": "Valley",
    }


def _minor_birth_date() -> str:
    today = date.today()
    return date(today.year - 12, 1, 1).isoformat()


def test_public_results_need_no_token(client, auth):
    ids = _setup_race(client, auth)
    assert client.get("/api/public/categories").status_code == 200
    assert len(client.get("/api/public/stages").json()) == 1
    assert client.get(f"/api/public/stages/{ids['stage']}/timings").json() == []
    assert client.get("/api/public/has-results").json() == {"has_results": False}
    summary = client.get("/api/public/summary").json()
    assert summary["total_categories"] == 2
    assert client.get(f"/api/public/classification/{ids['elite']}").json() == []


def test_public_registration_minor_needs_authorization(client, auth):
    ids = _setup_race(client, auth)
    files = {"proof_of_payment": PNG, "id_front": PNG, "id_back": PNG}
    r = client.post("/api/public/participants",
                    data=_registration(ids["junior"], _minor_birth_date()), files=files)
    assert r.status_code == 400

    r = client.post("/api/public/participants",
                    data=_registration(ids["junior"], _minor_birth_date()),
                    files={**files, "authorization": PDF})
    assert r.status_code == 200, r.text

    pid = r.json()["id"]
    participant = client.get(f"/api/participants/{pid}", headers=auth).json()
    assert participant["bib"] is None
    assert participant["authorization_path"].endswith(".pdf")

    doc = client.get(f"/api/documents/{participant['id_front_path']}", headers=auth)
    assert doc.status_code == 200
    assert doc.content == PNG[1]


def test_public_registration_adult(client, auth, monkeypatch):
    monkeypatch.setenv("RACETIMING_MIN_BIRTH_YEAR", "1990")
    reset_settings()
    ids = _setup_race(client, auth)
    files = {"proof_of_payment": PNG, "id_front": PNG, "id_back": PNG}
    r = client.post("/api/public/participants",
                    data=_registration(ids["elite"], "1990-05-05"), files=files)
    assert r.status_code == 200, r.text

    r = client.post("/api/public/participants",
                    data=_registration(ids["elite"], "1990-05-05"), files=files)
    assert r.status_code == 409


def test_public_registration_rejects_file_type(client, auth):
    ids = _setup_race(client, auth)
    files = {"proof_of_payment": ("notes.txt", b"hello", "text/plain"),
             "id_front": PNG, "id_back": PNG, "authorization": PDF}
    r = client.post("/api/public/participants",
                    data=_registration(ids["junior"], _minor_birth_date()), files=files)
    assert r.status_code == 400
    assert not (get_settings().upload_dir / "ids").exists()


def test_delete_participant_removes_documents_and_timings(client, auth):
    ids = _setup_race(client, auth)
    r = client.post("/api/public/participants",
                    data=_registration(ids["junior"], _minor_birth_date()),
                    files={"proof_of_payment": PNG, "id_front": PNG, "id_back": PNG,
                           "authorization": PDF})
    pid = r.json()["id"]
    participant = client.get(f"/api/participants/{pid}", headers=auth).json()
    paths = [participant[k] for k in ("proof_of_payment_path", "id_front_path",
                                      "id_back_path", "authorization_path")]
    upload_dir = get_settings().upload_dir
    assert all((upload_dir / p).is_file() for p in paths)

    client.post("/api/timings", json={
        "participant_id": pid, "stage_id": ids["stage"], "raw_time": "01:00.00",
    }, headers=auth)
    r = client.delete(f"/api/participants/{pid}", headers=auth)
    assert r.json()["removed_timings"] == 1
    assert not any(Path(upload_dir / p).exists() for p in paths)
    assert client.get("/api/timings", headers=auth).json()["total"] == 0


def test_document_path_traversal_refused(client, auth):
    r = client.get("/api/documents/../secret_key.txt", headers=auth)
    assert r.status_code == 404
