import pytest

import onboarding
from conftest import make_user
from database import oid
from errors import IllegalTransition

PROFILE = {
    "name": "Uhuru Chemists",
    "license_number": "PPB-001",
    "address": {"address": "Moi Avenue 12", "city": "Nairobi"},
    "contact": {"phone": "0711000000", "email": "uhuru@example.com"},
    "operating_hours": {"open": "08:00", "close": "21:00", "days": ["mon", "tue"]},
    "services": ["dispensing", "delivery"],
}


@pytest.fixture
def pharmacist(db):
    return make_user(db, "pharmacist")


@pytest.fixture
def admin_headers(db):
    return make_user(db, "admin")[1]


def submit_profile(client, headers, **overrides):
    resp = client.post("/onboarding/complete-profile", json={**PROFILE, **overrides}, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()["pharmacy"]


@pytest.mark.parametrize("current,target,allowed", [
    ("draft", "pending_approval", True),
    ("pending_approval", "approved", True),
    ("pending_approval", "rejected", True),
    ("rejected", "pending_approval", True),
    ("rejected", "approved", False),
    ("draft", "approved", False),
    ("approved", "pending_approval", False),
    ("approved", "rejected", False),
])
def test_transition_table(current, target, allowed):
    assert onboarding.can_transition(current, target) is allowed
    if not allowed:
        with pytest.raises(IllegalTransition):
            onboarding.assert_transition(current, target)


def test_status_without_pharmacy(client, pharmacist):
    resp = client.get("/onboarding/status", headers=pharmacist[1])
    assert resp.json() == {"has_pharmacy": False, "status": "no_pharmacy"}


def test_draft_then_submit(client, db, pharmacist):
    owner_id, headers = pharmacist
    resp = client.post("/onboarding/profile", json={"name": "Draft Pharmacy", "license_number": "D-1"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "draft"

    resp = client.post("/onboarding/submit", headers=headers)
    assert resp.status_code == 422
    details = resp.json()["error"]["details"]
    assert set(details) == {"address", "operating_hours", "services"}

    client.post("/onboarding/profile", json=PROFILE, headers=headers)
    resp = client.post("/onboarding/submit", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "pending_approval"
    assert db["pharmacy"].find_one({"owner_id": owner_id})["is_verified"] is False


def test_approve(client, db, pharmacist, admin_headers):
    pharmacy = submit_profile(client, pharmacist[1])
    resp = client.put(f"/pharmacies/{pharmacy['id']}/approve", headers=admin_headers)
    assert resp.status_code == 200
    stored = db["pharmacy"].find_one({"_id": oid(pharmacy["id"])})
    assert stored["status"] == "approved"
    assert stored["is_verified"] is True
    assert stored["approved_by"] and stored["approved_at"]


def test_non_admin_cannot_approve(client, pharmacist):
    pharmacy = submit_profile(client, pharmacist[1])
    resp = client.put(f"/pharmacies/{pharmacy['id']}/approve", headers=pharmacist[1])
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_reject_requires_reason(client, pharmacist, admin_headers):
    pharmacy = submit_profile(client, pharmacist[1])
    resp = client.put(f"/pharmacies/{pharmacy['id']}/reject", json={"rejection_reason": "  "}, headers=admin_headers)
    assert resp.status_code == 422
    assert "rejection_reason" in resp.json()["error"]["details"]


def test_reject_then_resubmit(client, db, pharmacist, admin_headers):
    owner_id, headers = pharmacist
    pharmacy = submit_profile(client, headers)
    resp = client.put(
        f"/pharmacies/{pharmacy['id']}/reject", json={"rejection_reason": "License scan unreadable"}, headers=admin_headers,
    )
    assert resp.status_code == 200
    status = client.get("/onboarding/status", headers=headers).json()
    assert status["status"] == "rejected"
    assert status["rejection_reason"] == "License scan unreadable"

    # rejected pharmacies cannot jump straight to approved
    resp = client.put(f"/pharmacies/{pharmacy['id']}/approve", headers=admin_headers)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "illegal_transition"

    resubmitted = submit_profile(client, headers, name="Uhuru Chemists Ltd")
    assert resubmitted["status"] == "pending_approval"
    assert resubmitted["rejection_reason"] is None


def test_approved_profile_is_locked(client, pharmacist, admin_headers):
    pharmacy = submit_profile(client, pharmacist[1])
    client.put(f"/pharmacies/{pharmacy['id']}/approve", headers=admin_headers)

    resp = client.post("/onboarding/complete-profile", json=PROFILE, headers=pharmacist[1])
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"

    resp = client.put(f"/pharmacies/{pharmacy['id']}/approve", headers=admin_headers)
    assert resp.status_code == 409


def test_duplicate_license(client, db):
    submit_profile(client, make_user(db, "pharmacist")[1])
    resp = client.post("/onboarding/complete-profile", json=PROFILE, headers=make_user(db, "pharmacist")[1])
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "duplicate_entry"


def test_concurrent_decision_loses(db, pharmacist):
    owner_id, _ = pharmacist
    onboarding.complete_profile(db, owner_id, PROFILE)
    stale = onboarding.get_owned_pharmacy(db, owner_id)
    onboarding.approve(db, str(stale["_id"]), "admin-1")
    with pytest.raises(IllegalTransition):
        onboarding.reject(db, str(stale["_id"]), "admin-2", "too late")


def test_set_location(client, db, pharmacist):
    owner_id, headers = pharmacist
    submit_profile(client, headers)
    resp = client.post("/onboarding/location", json={"lat": -1.2921, "lng": 36.8219, "address": "CBD"}, headers=headers)
    assert resp.status_code == 200
    stored = db["pharmacy"].find_one({"owner_id": owner_id})
    assert stored["location"]["coordinates"] == [36.8219, -1.2921]
    assert stored["location_set"] is True
    assert stored["address"]["address"] == "CBD"

    resp = client.post("/onboarding/location", json={"lat": 100, "lng": 0}, headers=headers)
    assert resp.status_code == 400


def test_upload_certificates(client, db, pharmacist):
    owner_id, headers = pharmacist
    submit_profile(client, headers)
    resp = client.post(
        "/onboarding/certificates",
        files=[("files", ("license.pdf", b"%PDF-1.4 test", "application/pdf"))],
        headers=headers,
    )
    assert resp.status_code == 200
    cert = resp.json()["certificates"][0]
    assert cert["name"] == "license.pdf"
    assert cert["file_url"].startswith("/static/uploads/certificates/")
    assert len(db["pharmacy"].find_one({"owner_id": owner_id})["certificates"]) == 1
