import re

import pytest
from pymongo.errors import AutoReconnect

import orders
from conftest import make_drug, make_inventory, make_pharmacy, make_user
from database import oid
from errors import InsufficientStock


@pytest.fixture
def shop(db):
    owner_id, owner_headers = make_user(db, "pharmacist")
    pharmacy_id = make_pharmacy(db, owner_id=owner_id, lat=-1.29, lng=36.82)
    para = make_drug(db, pharmacy_id, "Paracetamol")
    amox = make_drug(db, pharmacy_id, "Amoxicillin", prescription_required=True)
    return {
        "owner_headers": owner_headers,
        "pharmacy_id": pharmacy_id,
        "para": make_inventory(db, pharmacy_id, para, price=100, quantity=5, discount=10),
        "amox": make_inventory(db, pharmacy_id, amox, price=50, quantity=1),
    }


@pytest.fixture
def patient(db):
    return make_user(db, "patient")


def quantity(db, inventory_id):
    return db["inventory"].find_one({"_id": oid(inventory_id)})["quantity"]


def order_body(shop, *items, **extra):
    return {
        "pharmacy_id": shop["pharmacy_id"],
        "items": [{"inventory_id": inv, "quantity": qty} for inv, qty in items],
        "delivery_option": "pickup",
        **extra,
    }


def test_totals():
    items = [{"price": 100, "quantity": 2, "discount": 10}, {"price": 50, "quantity": 1, "discount": 0}]
    assert orders.calculate_totals(items) == (230.0, 230.0)
    assert orders.calculate_totals(items, discount_amount=30) == (230.0, 200.0)
    assert orders.calculate_totals(items, discount_amount=500) == (230.0, 0.0)


def test_order_number_format():
    assert re.fullmatch(r"ORD-\d{9}", orders.generate_order_number())


def test_create_order(client, db, shop, patient):
    body = order_body(shop, (shop["para"], 2), (shop["amox"], 1), prescription={"notes": "Dr. Otieno, 3 days"})
    resp = client.post("/orders", json=body, headers=patient[1])
    assert resp.status_code == 201, resp.text
    order = resp.json()
    assert order["total_amount"] == 230
    assert order["final_amount"] == 230
    assert order["status"] == "pending"
    assert order["item_count"] == 3
    assert quantity(db, shop["para"]) == 3
    assert quantity(db, shop["amox"]) == 0


def test_insufficient_stock_leaves_inventory_unchanged(client, db, shop, patient):
    resp = client.post("/orders", json=order_body(shop, (shop["amox"], 2), prescription={"notes": "rx"}), headers=patient[1])
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "insufficient_stock"
    assert error["details"]["available"] == 1
    assert quantity(db, shop["amox"]) == 1
    assert db["order"].count_documents({}) == 0


def test_failed_item_releases_earlier_reservations(db, shop, patient):
    body = order_body(shop, (shop["para"], 2), (shop["amox"], 5), prescription={"notes": "rx"})
    with pytest.raises(InsufficientStock):
        orders.create_order(db, patient[0], body)
    assert quantity(db, shop["para"]) == 5
    assert quantity(db, shop["amox"]) == 1


def test_prescription_required(client, db, shop, patient):
    resp = client.post("/orders", json=order_body(shop, (shop["amox"], 1)), headers=patient[1])
    assert resp.status_code == 422
    assert "prescription" in resp.json()["error"]["details"]
    assert quantity(db, shop["amox"]) == 1


def test_delivery_needs_address(client, shop, patient):
    resp = client.post("/orders", json=order_body(shop, (shop["para"], 1), delivery_option="delivery"), headers=patient[1])
    assert resp.status_code == 422


def test_sequential_orders_cannot_oversell(db, shop, patient):
    orders.create_order(db, patient[0], order_body(shop, (shop["para"], 3)))
    with pytest.raises(InsufficientStock):
        orders.create_order(db, patient[0], order_body(shop, (shop["para"], 3)))
    assert quantity(db, shop["para"]) == 2


def test_order_number_collision_is_retried(db, shop, patient, monkeypatch):
    numbers = iter(["ORD-000000001", "ORD-000000001", "ORD-000000002"])
    monkeypatch.setattr(orders, "generate_order_number", lambda: next(numbers))
    first = orders.create_order(db, patient[0], order_body(shop, (shop["para"], 1)))
    second = orders.create_order(db, patient[0], order_body(shop, (shop["para"], 1)))
    assert (first["order_number"], second["order_number"]) == ("ORD-000000001", "ORD-000000002")
    assert quantity(db, shop["para"]) == 3


def test_orders_can_be_disabled(client, shop, patient, monkeypatch):
    monkeypatch.setattr(orders.settings, "ORDERS_ENABLED", False)
    resp = client.post("/orders", json=order_body(shop, (shop["para"], 1)), headers=patient[1])
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "feature_disabled"


def test_only_patients_place_orders(client, shop):
    resp = client.post("/orders", json=order_body(shop, (shop["para"], 1)), headers=shop["owner_headers"])
    assert resp.status_code == 403


def test_order_access_and_status(client, db, shop, patient):
    order = client.post("/orders", json=order_body(shop, (shop["para"], 1)), headers=patient[1]).json()

    assert client.get(f"/orders/{order['id']}", headers=patient[1]).status_code == 200
    assert client.get(f"/orders/{order['id']}", headers=make_user(db, "patient")[1]).status_code == 403

    resp = client.put(f"/orders/{order['id']}/status", json={"status": "delivered"}, headers=shop["owner_headers"])
    assert resp.status_code == 200
    assert resp.json()["status"] == "delivered"
    assert resp.json()["actual_delivery"] is not None

    mine = client.get("/orders/mine", headers=patient[1]).json()
    assert mine["total"] == 1
    incoming = client.get("/orders/pharmacy", headers=shop["owner_headers"]).json()
    assert [o["id"] for o in incoming["items"]] == [order["id"]]


def test_patient_cancel_returns_stock(client, db, shop, patient):
    order = client.post("/orders", json=order_body(shop, (shop["para"], 2)), headers=patient[1]).json()
    assert quantity(db, shop["para"]) == 3

    url = f"/orders/{order['id']}/status"
    assert client.put(url, json={"status": "delivered"}, headers=patient[1]).status_code == 403

    resp = client.put(url, json={"status": "cancelled"}, headers=patient[1])
    assert resp.status_code == 200
    assert quantity(db, shop["para"]) == 5

    resp = client.put(url, json={"status": "confirmed"}, headers=shop["owner_headers"])
    assert resp.status_code == 409


def test_store_failure_returns_reserved_stock(client, db, shop, patient, monkeypatch):
    def unreachable(*args, **kwargs):
        raise AutoReconnect("connection reset")

    monkeypatch.setattr(orders, "create_document", unreachable)
    resp = client.post("/orders", json=order_body(shop, (shop["para"], 3)), headers=patient[1])
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "store_unavailable"
    assert quantity(db, shop["para"]) == 5
    assert db["order"].count_documents({}) == 0
