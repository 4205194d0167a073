import pytest

from conftest import make_drug, make_inventory, make_pharmacy, make_user
from database import oid


@pytest.fixture
def shop(db):
    owner_id, headers = make_user(db, "pharmacist")
    pharmacy_id = make_pharmacy(db, owner_id=owner_id, lat=-1.29, lng=36.82)
    drug_id = make_drug(db, pharmacy_id, "Cetirizine", category="Antihistamines")
    return {"owner_id": owner_id, "headers": headers, "pharmacy_id": pharmacy_id, "drug_id": drug_id}


def test_add_inventory(client, db, shop):
    resp = client.post("/inventory", json={"drug_id": shop["drug_id"], "price": 120, "quantity": 30}, headers=shop["headers"])
    assert resp.status_code == 201
    body = resp.json()
    assert body["pharmacy_id"] == shop["pharmacy_id"]
    assert body["price_unit"] == "dose"
    assert body["is_available"] is True


def test_duplicate_inventory_is_rejected(client, db, shop):
    inv_id = make_inventory(db, shop["pharmacy_id"], shop["drug_id"], price=80, quantity=5)
    resp = client.post("/inventory", json={"drug_id": shop["drug_id"], "price": 1, "quantity": 999}, headers=shop["headers"])
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "duplicate_entry"

    assert db["inventory"].count_documents({"pharmacy_id": shop["pharmacy_id"]}) == 1
    original = db["inventory"].find_one({"_id": oid(inv_id)})
    assert (original["price"], original["quantity"]) == (80, 5)


def test_cannot_stock_another_pharmacys_drug(client, db, shop):
    other = make_pharmacy(db)
    foreign = make_drug(db, other, "Foreign")
    resp = client.post("/inventory", json={"drug_id": foreign, "price": 10}, headers=shop["headers"])
    assert resp.status_code == 403


def test_patient_cannot_manage_inventory(client, db, shop):
    _, headers = make_user(db, "patient")
    resp = client.post("/inventory", json={"drug_id": shop["drug_id"], "price": 10}, headers=headers)
    assert resp.status_code == 403


def test_update_inventory(client, db, shop):
    inv_id = make_inventory(db, shop["pharmacy_id"], shop["drug_id"], quantity=2)
    resp = client.put(f"/inventory/{inv_id}", json={"quantity": 20, "price": 95.5}, headers=shop["headers"])
    assert resp.status_code == 200
    body = resp.json()
    assert body["quantity"] == 20
    assert body["price"] == 95.5
    assert body["restocked_at"] is not None

    resp = client.put(f"/inventory/{inv_id}", json={"pharmacy_id": "x"}, headers=shop["headers"])
    assert resp.status_code == 400
    assert resp.json()["error"]["details"] == {"invalid_fields": ["pharmacy_id"]}

    resp = client.put(f"/inventory/{inv_id}", json={"price": -1}, headers=shop["headers"])
    assert resp.status_code == 422


def test_other_pharmacist_cannot_update(client, db, shop):
    inv_id = make_inventory(db, shop["pharmacy_id"], shop["drug_id"])
    intruder_id, headers = make_user(db, "pharmacist")
    make_pharmacy(db, owner_id=intruder_id)
    resp = client.put(f"/inventory/{inv_id}", json={"price": 1}, headers=headers)
    assert resp.status_code == 403


def test_list_pharmacy_inventory(client, db, shop):
    make_inventory(db, shop["pharmacy_id"], shop["drug_id"], quantity=0)
    other = make_drug(db, shop["pharmacy_id"], "Amoxicillin", category="Antibiotics")
    make_inventory(db, shop["pharmacy_id"], other, quantity=4)

    resp = client.get(f"/pharmacies/{shop['pharmacy_id']}/inventory")
    assert [row["drug"]["name"] for row in resp.json()["items"]] == ["Amoxicillin", "Cetirizine"]

    resp = client.get(f"/pharmacies/{shop['pharmacy_id']}/inventory", params={"in_stock": True})
    assert [row["drug"]["name"] for row in resp.json()["items"]] == ["Amoxicillin"]

    resp = client.get(f"/pharmacies/{shop['pharmacy_id']}/inventory", params={"search": "cetir"})
    assert resp.json()["total"] == 1


def test_update_stores_coerced_values(client, db, shop):
    inv_id = make_inventory(db, shop["pharmacy_id"], shop["drug_id"], price=100, quantity=2)
    resp = client.put(f"/inventory/{inv_id}", json={"quantity": "50", "price": "12"}, headers=shop["headers"])
    assert resp.status_code == 200

    stored = db["inventory"].find_one({"_id": oid(inv_id)})
    assert stored["quantity"] == 50 and isinstance(stored["quantity"], int)
    assert stored["price"] == 12.0 and isinstance(stored["price"], float)
    assert stored["restocked_at"] is not None

    found = client.post("/search", json={"search_term": "cetirizine", "filters": {"max_price": 15}}).json()
    assert [row["inventory_id"] for row in found["items"]] == [inv_id]

    resp = client.put(f"/inventory/{inv_id}", json={"quantity": "lots"}, headers=shop["headers"])
    assert resp.status_code == 422
