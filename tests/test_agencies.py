import pytest
from werkzeug.security import generate_password_hash

from app.hbx import create_app
from app.hbx.db import session_scope
from app.hbx.models import Base, Permission, Role, User
from scripts.init_db import PERMISSIONS


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("DATE_OF_RECORD", "2026-07-01")
    monkeypatch.delenv("SHOP_MARKET_SETTINGS_FILE", raising=False)

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = [Permission(key=key, name=name) for key, name in PERMISSIONS]
        r = Role(key="admin", name="Administrator")
        r.permissions.extend(perms)
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([*perms, r, u])

    return app.test_client()


@pytest.fixture()
def h(client):
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    return {"X-CSRF-Token": r.json["csrf_token"]}


def _employer(client, h, fein):
    r = client.post("/admin/employers/", json={"legal_name": f"Employer {fein[-1]}", "fein": fein}, headers=h)
    assert r.status_code == 201
    return r.json["id"]


def _broker(client, h, fein, *, approve=True):
    r = client.post(
        "/admin/agencies/broker-agencies",
        json={"legal_name": f"Broker {fein[-1]}", "fein": fein, "primary_broker_npn": f"npn-{fein[-1]}"},
        headers=h,
    )
    assert r.status_code == 201
    if approve:
        r = client.post(f"/admin/agencies/broker-agencies/{r.json['id']}/events/approve", json={}, headers=h)
        assert r.json["state"] == "is_approved"
    return r.json["id"]


def _general_agency(client, h, fein, *, approve=True):
    r = client.post("/admin/agencies/general-agencies", json={"legal_name": f"GA {fein[-1]}", "fein": fein}, headers=h)
    assert r.status_code == 201
    if approve:
        r = client.post(f"/admin/agencies/general-agencies/{r.json['id']}/events/approve", json={}, headers=h)
        assert r.json["state"] == "is_approved"
    return r.json["id"]


def _notifications(client, tag):
    return client.get(f"/admin/audit?action=notify.{tag}").json["events"]


def test_broker_agency_approval(client, h):
    r = client.post("/admin/agencies/broker-agencies", json={"legal_name": "Best Brokers", "fein": "111111111"}, headers=h)
    assert r.status_code == 201
    broker_id = r.json["id"]
    assert r.json["state"] == "is_applicant"

    r = client.post("/admin/agencies/broker-agencies", json={"legal_name": "Copy", "fein": "111111111"}, headers=h)
    assert r.status_code == 400

    r = client.get("/admin/agencies/broker-agencies?approved=1")
    assert r.json["broker_agencies"] == []

    r = client.post(f"/admin/agencies/broker-agencies/{broker_id}/events/approve", json={}, headers=h)
    assert r.status_code == 200
    r = client.post(f"/admin/agencies/broker-agencies/{broker_id}/events/approve", json={}, headers=h)
    assert r.status_code == 409
    r = client.post(f"/admin/agencies/broker-agencies/{broker_id}/events/explode", json={}, headers=h)
    assert r.status_code == 404

    r = client.get("/admin/agencies/broker-agencies?approved=1&q=best")
    assert [b["id"] for b in r.json["broker_agencies"]] == [broker_id]


def test_hiring_requires_approved_broker(client, h):
    employer_id = _employer(client, h, "100000001")
    broker_id = _broker(client, h, "200000001", approve=False)
    r = client.post(f"/admin/agencies/employers/{employer_id}/broker", json={"broker_agency_profile_id": broker_id}, headers=h)
    assert r.status_code == 400
    assert "not an approved broker agency" in r.json["error"]


def test_hire_assigns_default_general_agency(client, h):
    employer_id = _employer(client, h, "100000001")
    broker_id = _broker(client, h, "200000001")
    ga_id = _general_agency(client, h, "300000001")

    r = client.put(
        f"/admin/agencies/broker-agencies/{broker_id}/default-general-agency",
        json={"general_agency_profile_id": ga_id},
        headers=h,
    )
    assert r.status_code == 200
    assert r.json["default_general_agency_profile_id"] == ga_id

    r = client.post(f"/admin/agencies/employers/{employer_id}/broker", json={"broker_agency_profile_id": broker_id}, headers=h)
    assert r.status_code == 201
    account_id = r.json["id"]
    assert r.json["writing_agent_npn"] == "npn-1"
    assert r.json["start_on"] == "2026-07-01"

    r = client.get(f"/admin/agencies/employers/{employer_id}")
    assert r.json["broker_agency_account"]["broker_agency_profile_id"] == broker_id
    assert [a["general_agency_profile_id"] for a in r.json["general_agency_accounts"]] == [ga_id]
    assert len(_notifications(client, "broker_added")) == 1
    assert len(_notifications(client, "general_agent_hired")) == 1

    # Hiring the same broker again is a no-op.
    r = client.post(f"/admin/agencies/employers/{employer_id}/broker", json={"broker_agency_profile_id": broker_id}, headers=h)
    assert r.json["id"] == account_id
    assert len(_notifications(client, "broker_added")) == 1


def test_new_broker_replaces_old_one(client, h):
    employer_id = _employer(client, h, "100000001")
    first = _broker(client, h, "200000001")
    second = _broker(client, h, "200000002")
    ga_id = _general_agency(client, h, "300000001")
    client.put(
        f"/admin/agencies/broker-agencies/{first}/default-general-agency",
        json={"general_agency_profile_id": ga_id},
        headers=h,
    )
    client.post(f"/admin/agencies/employers/{employer_id}/broker", json={"broker_agency_profile_id": first}, headers=h)

    r = client.post(
        f"/admin/agencies/employers/{employer_id}/broker",
        json={"broker_agency_profile_id": second, "start_on": "2026-08-01"},
        headers=h,
    )
    assert r.status_code == 201

    r = client.get(f"/admin/agencies/employers/{employer_id}")
    assert r.json["broker_agency_account"]["broker_agency_profile_id"] == second
    assert r.json["general_agency_accounts"] == []
    history = r.json["general_agency_history"]
    assert len(history) == 1
    assert history[0]["state"] == "inactive"
    assert history[0]["end_on"] == "2026-08-01"
    assert len(_notifications(client, "broker_terminated")) == 1
    assert len(_notifications(client, "general_agent_terminated")) == 1


def test_terminate_broker(client, h):
    employer_id = _employer(client, h, "100000001")
    broker_id = _broker(client, h, "200000001")

    r = client.delete(f"/admin/agencies/employers/{employer_id}/broker", json={}, headers=h)
    assert r.status_code == 404

    client.post(f"/admin/agencies/employers/{employer_id}/broker", json={"broker_agency_profile_id": broker_id}, headers=h)
    r = client.delete(f"/admin/agencies/employers/{employer_id}/broker", json={"end_on": "2026-06-01"}, headers=h)
    assert r.status_code == 400

    r = client.delete(f"/admin/agencies/employers/{employer_id}/broker", json={"end_on": "2026-09-30"}, headers=h)
    assert r.status_code == 200
    assert r.json["is_active"] is False
    assert r.json["end_on"] == "2026-09-30"
    assert client.get(f"/admin/agencies/employers/{employer_id}").json["broker_agency_account"] is None


def test_assign_and_clear_general_agency(client, h):
    represented = _employer(client, h, "100000001")
    unrepresented = _employer(client, h, "100000002")
    broker_id = _broker(client, h, "200000001")
    ga_id = _general_agency(client, h, "300000001")
    pending_ga = _general_agency(client, h, "300000002", approve=False)
    client.post(f"/admin/agencies/employers/{represented}/broker", json={"broker_agency_profile_id": broker_id}, headers=h)

    body = {
        "general_agency_profile_id": ga_id,
        "broker_agency_profile_id": broker_id,
        "employer_profile_ids": [represented, unrepresented],
    }
    r = client.post("/admin/agencies/general-agency-assignments", json=body, headers=h)
    assert r.status_code == 200
    assert r.json["assigned"] == [represented]
    assert r.json["failures"] == [
        {"employer_profile_id": unrepresented, "error": "Assignment Failed for Employer 2"}
    ]

    r = client.post(
        "/admin/agencies/general-agency-assignments",
        json={**body, "general_agency_profile_id": pending_ga},
        headers=h,
    )
    assert r.status_code == 400

    r = client.post("/admin/agencies/general-agency-assignments", json={**body, "employer_profile_ids": []}, headers=h)
    assert r.status_code == 400

    r = client.post(
        "/admin/agencies/general-agency-assignments/clear",
        json={"employer_profile_ids": [represented, unrepresented]},
        headers=h,
    )
    assert r.status_code == 200
    assert r.json["fired"] == 1
    assert client.get(f"/admin/agencies/employers/{represented}").json["general_agency_accounts"] == []


def test_default_general_agency(client, h):
    broker_id = _broker(client, h, "200000001")
    ga_id = _general_agency(client, h, "300000001")
    pending_ga = _general_agency(client, h, "300000002", approve=False)

    url = f"/admin/agencies/broker-agencies/{broker_id}/default-general-agency"
    r = client.put(url, json={"general_agency_profile_id": pending_ga}, headers=h)
    assert r.status_code == 400

    client.put(url, json={"general_agency_profile_id": ga_id}, headers=h)
    r = client.delete(url, headers=h)
    assert r.status_code == 200
    assert r.json["default_general_agency_profile_id"] is None

    events = _notifications(client, "default_ga_changed")
    assert len(events) == 2
    assert events[0]["metadata"]["pre_default_ga_id"] == ga_id

    r = client.get("/admin/agencies/general-agencies")
    assert [g["state"] for g in r.json["general_agencies"]] == ["is_approved", "is_applicant"]
