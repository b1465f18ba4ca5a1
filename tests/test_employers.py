import io

import pytest
from werkzeug.security import generate_password_hash

from app.hbx import create_app
from app.hbx.db import session_scope
from app.hbx.models import Base, Permission, Role, User
from app.hbx.modules.employers.parsers.csv import parse_census_csv
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


def _employer(client, h, fein="123456789", name="Acme Widgets"):
    r = client.post("/admin/employers/", json={"legal_name": name, "fein": fein}, headers=h)
    assert r.status_code == 201
    return r.json


def _census_employee(client, h, employer_id, first_name="Ann", **extra):
    payload = {"first_name": first_name, "last_name": "Lee", "dob": "1985-02-03", "hired_on": "2019-05-01", **extra}
    return client.post(f"/admin/employers/{employer_id}/census-employees", json=payload, headers=h)


def _benefit_group(client, h, employer_id):
    r = client.post("/admin/plan-years/", json={"employer_profile_id": employer_id, "start_on": "2026-09-01"}, headers=h)
    assert r.status_code == 201
    r = client.post(
        f"/admin/plan-years/{r.json['id']}/benefit-groups",
        json={"title": "Staff", "reference_plan_id": "plan-1", "relationship_benefits": [{"relationship": "employee", "premium_pct": 60}]},
        headers=h,
    )
    assert r.status_code == 201
    return r.json["id"]


# ─────────────────────────────────────────────────────────────────────────────
# Employer profiles
# ─────────────────────────────────────────────────────────────────────────────


def test_create_employer(client, h):
    r = client.post("/admin/employers/", json={"legal_name": " Acme Widgets ", "fein": "12-3456789"}, headers=h)
    assert r.status_code == 201
    assert r.json["legal_name"] == "Acme Widgets"
    assert r.json["fein"] == "123456789"
    assert r.json["state"] == "applicant"
    assert r.json["registered_on"] == "2026-07-01"
    assert r.json["hbx_id"]

    r = client.post("/admin/employers/", json={"legal_name": "Other", "fein": "123456789"}, headers=h)
    assert r.status_code == 400
    assert "already exists" in r.json["error"]

    r = client.get("/admin/employers/?q=acme")
    assert [e["fein"] for e in r.json["employers"]] == ["123456789"]


@pytest.mark.parametrize(
    "payload,message",
    [
        ({"legal_name": "Acme", "fein": "1234"}, "FEIN must be 9 digits."),
        ({"legal_name": "", "fein": "123456789"}, "Legal name is required."),
    ],
)
def test_create_employer_validation(client, h, payload, message):
    r = client.post("/admin/employers/", json=payload, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == message


def test_update_employer(client, h):
    employer = _employer(client, h)
    r = client.patch(f"/admin/employers/{employer['id']}", json={"legal_name": "Acme Inc", "is_primary_office_local": False}, headers=h)
    assert r.status_code == 200
    assert r.json["legal_name"] == "Acme Inc"
    assert r.json["is_primary_office_local"] is False

    r = client.patch(f"/admin/employers/{employer['id']}", json={"legal_name": " "}, headers=h)
    assert r.status_code == 400

    r = client.get("/admin/audit?action=employer.update")
    assert len(r.json["events"]) == 1


def test_employer_events(client, h):
    employer_id = _employer(client, h)["id"]

    r = client.post(f"/admin/employers/{employer_id}/events/binder_credited", json={}, headers=h)
    assert r.status_code == 409

    for event, state in (
        ("application_accepted", "eligible"),
        ("binder_credited", "binder_paid"),
        ("benefit_enrolled", "enrolled"),
    ):
        r = client.post(f"/admin/employers/{employer_id}/events/{event}", json={}, headers=h)
        assert r.status_code == 200
        assert r.json["state"] == state

    r = client.post(f"/admin/employers/{employer_id}/events/explode", json={}, headers=h)
    assert r.status_code == 404

    r = client.get("/admin/")
    assert r.json["employers_by_state"] == {"enrolled": 1}


def test_unknown_employer(client, h):
    assert client.get("/admin/employers/999").status_code == 404


# ─────────────────────────────────────────────────────────────────────────────
# Census roster
# ─────────────────────────────────────────────────────────────────────────────


def test_census_employee_create(client, h):
    employer_id = _employer(client, h)["id"]

    r = _census_employee(client, h, employer_id, ssn_last4="6789", is_business_owner=True)
    assert r.status_code == 201
    assert r.json["state"] == "eligible"
    assert r.json["is_business_owner"] is True

    r = _census_employee(client, h, employer_id)
    assert r.status_code == 400
    assert r.json["error"] == "Ann Lee is already on the roster."


@pytest.mark.parametrize(
    "extra,message",
    [
        ({"hired_on": "1980-01-01"}, "Hire date must be after date of birth."),
        ({"ssn_last4": "12"}, "SSN last 4 must be 4 digits."),
        ({"dob": ""}, "dob is required (YYYY-MM-DD)."),
        ({"first_name": ""}, "First name is required."),
    ],
)
def test_census_employee_validation(client, h, extra, message):
    employer_id = _employer(client, h)["id"]
    r = _census_employee(client, h, employer_id, **extra)
    assert r.status_code == 400
    assert message in r.json["error"]


def test_census_import(client, h):
    employer_id = _employer(client, h)["id"]
    client.post(
        f"/admin/employers/{employer_id}/census-employees",
        json={"first_name": "Bob", "last_name": "Ray", "dob": "1990-03-04", "hired_on": "2021-06-01"},
        headers=h,
    )

    csv_bytes = (
        "First Name,Last Name,Date of Birth,Hire Date,SSN,Business Owner\n"
        "Ann,Lee,1985-02-03,2019-05-01,123-45-6789,yes\n"
        "Bob,Ray,03/04/1990,06/01/2021,,\n"
        "Cal,,1990-01-01,2021-01-01,,\n"
        "Dee,Fox,not-a-date,2021-01-01,,\n"
    ).encode("utf-8")
    r = client.post(
        f"/admin/employers/{employer_id}/census-employees/import",
        data={"file": (io.BytesIO(csv_bytes), "roster.csv")},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 200
    assert r.json["created"] == 1
    assert r.json["skipped_duplicates"] == 1
    assert [e["row"] for e in r.json["errors"]] == [4, 5]
    assert r.json["errors"][0]["message"] == "First Name and Last Name are required."

    roster = client.get(f"/admin/employers/{employer_id}").json["census_employees"]
    ann = next(ce for ce in roster if ce["first_name"] == "Ann")
    assert ann["is_business_owner"] is True
    assert ann["dob"] == "1985-02-03"


def test_census_import_requires_file(client, h):
    employer_id = _employer(client, h)["id"]
    r = client.post(
        f"/admin/employers/{employer_id}/census-employees/import",
        data={},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 400
    assert r.json["error"] == "No file uploaded"


def test_parse_census_csv():
    rows, errors = parse_census_csv(
        b"\xef\xbb\xbfFirstName,LastName,DOB,Date of Hire,SSN\n"
        b"Ann,Lee,1985-02-03,2019-05-01,6789\n"
        b",,,,\n"
        b"Bob,Ray,1990-01-01,1989-01-01,\n"
        b"Cal,Poe,1990-01-01,2020-01-01,12345\n"
    )
    assert len(rows) == 1
    assert rows[0]["ssn_last4"] == "6789"
    assert rows[0]["is_business_owner"] is False
    assert [(e.row_number, e.message) for e in errors] == [
        (4, "Hire Date must be after Date of Birth."),
        (5, "Invalid SSN. Expected 9 digits (or the last 4)."),
    ]


def test_parse_census_csv_without_header():
    with pytest.raises(ValueError, match="no header"):
        parse_census_csv(b"")


def test_terminate_employment(client, h):
    employer_id = _employer(client, h)["id"]
    ce_id = _census_employee(client, h, employer_id).json["id"]
    bg_id = _benefit_group(client, h, employer_id)
    client.post(f"/admin/employers/census-employees/{ce_id}/benefit-group-assignments", json={"benefit_group_id": bg_id}, headers=h)

    r = client.post(f"/admin/employers/census-employees/{ce_id}/terminate", json={"terminated_on": "2018-01-01"}, headers=h)
    assert r.status_code == 400

    r = client.post(f"/admin/employers/census-employees/{ce_id}/terminate", json={"terminated_on": "2026-06-30"}, headers=h)
    assert r.status_code == 200
    assert r.json["state"] == "employment_terminated"
    assert r.json["employment_terminated_on"] == "2026-06-30"
    assignment = r.json["benefit_group_assignments"][0]
    assert assignment["state"] == "coverage_terminated"
    assert assignment["end_on"] == "2026-06-30"

    r = client.post(f"/admin/employers/census-employees/{ce_id}/terminate", json={"terminated_on": "2026-07-01"}, headers=h)
    assert r.status_code == 400
    assert "not actively employed" in r.json["error"]


# ─────────────────────────────────────────────────────────────────────────────
# Benefit group assignments
# ─────────────────────────────────────────────────────────────────────────────


def test_assignment_and_coverage_events(client, h):
    employer_id = _employer(client, h)["id"]
    ce_id = _census_employee(client, h, employer_id).json["id"]
    bg_id = _benefit_group(client, h, employer_id)

    url = f"/admin/employers/census-employees/{ce_id}/benefit-group-assignments"
    r = client.post(url, json={"benefit_group_id": bg_id}, headers=h)
    assert r.status_code == 201
    bga = r.json
    assert bga["state"] == "initialized"
    assert bga["is_renewal"] is False

    # Assigning the same group again keeps the existing assignment.
    assert client.post(url, json={"benefit_group_id": bg_id}, headers=h).json["id"] == bga["id"]

    base = f"/admin/employers/benefit-group-assignments/{bga['id']}"
    r = client.post(f"{base}/waive_coverage", json={"waiver_reason": "covered by spouse"}, headers=h)
    assert r.status_code == 200
    assert r.json["state"] == "coverage_waived"
    assert r.json["waiver_reason"] == "covered by spouse"

    r = client.post(f"{base}/select_coverage", json={}, headers=h)
    assert r.json["state"] == "coverage_selected"

    r = client.post(f"{base}/cancel_coverage", json={}, headers=h)
    assert r.json["state"] == "coverage_canceled"

    r = client.post(f"{base}/select_coverage", json={}, headers=h)
    assert r.status_code == 409

    r = client.post(f"{base}/explode", json={}, headers=h)
    assert r.status_code == 404


def test_assignment_to_another_employers_group(client, h):
    employer_id = _employer(client, h)["id"]
    other_id = _employer(client, h, fein="987654321", name="Other Co")["id"]
    ce_id = _census_employee(client, h, employer_id).json["id"]
    bg_id = _benefit_group(client, h, other_id)

    r = client.post(
        f"/admin/employers/census-employees/{ce_id}/benefit-group-assignments", json={"benefit_group_id": bg_id}, headers=h
    )
    assert r.status_code == 404
