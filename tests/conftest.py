import os
import tempfile

os.environ["DATABASE_URL"] = ""
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.setdefault("STATIC_DIR", tempfile.mkdtemp(prefix="pharmapin-static-"))

import mongomock  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from database import create_document, ensure_indexes, get_db, oid  # noqa: E402
from geo import to_point, unset_point  # noqa: E402
from main import app  # noqa: E402
from security import hash_password, token_for  # noqa: E402

NAIROBI = (-1.2921, 36.8219)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["pharmapin_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, role="patient", email=None, password="secret123"):
    email = email or f"{role}-{os.urandom(4).hex()}@example.com"
    user_id = create_document(db, "user", {
        "email": email,
        "password_hash": hash_password(password),
        "role": role,
        "first_name": role.title(),
        "last_name": "Tester",
        "is_active": True,
    })
    user = db["user"].find_one({"_id": oid(user_id)})
    return user_id, {"Authorization": f"Bearer {token_for(user)}"}


def make_pharmacy(db, owner_id=None, name="Pharmacy", lat=None, lng=None, status="approved", **extra):
    owner_id = owner_id or make_user(db, "pharmacist")[0]
    located = lat is not None and lng is not None
    doc = {
        "name": name,
        "owner_id": owner_id,
        "license_number": f"LIC-{os.urandom(4).hex()}",
        "address": {"address": f"{name} street", "city": "Nairobi"},
        "location": to_point(lat, lng) if located else unset_point(),
        "location_set": located,
        "contact": {"phone": "0700000000"},
        "operating_hours": {"open": "08:00", "close": "20:00", "days": ["mon"]},
        "services": ["dispensing"],
        "status": status,
        "is_verified": status == "approved",
        "is_active": True,
        "certificates": [],
    }
    doc.update(extra)
    return create_document(db, "pharmacy", doc)


def make_drug(db, pharmacy_id, name="Paracetamol", **extra):
    doc = {
        "name": name,
        "generic_name": extra.pop("generic_name", None),
        "description": extra.pop("description", f"{name} tablets"),
        "category": extra.pop("category", "Analgesics"),
        "form": "tablet",
        "prescription_required": False,
        "pharmacy_id": pharmacy_id,
        "is_active": True,
    }
    doc.update(extra)
    return create_document(db, "drug", doc)


def make_inventory(db, pharmacy_id, drug_id, price=100.0, quantity=10, **extra):
    doc = {
        "pharmacy_id": pharmacy_id,
        "drug_id": drug_id,
        "price": price,
        "price_unit": "dose",
        "quantity": quantity,
        "discount": 0,
        "is_available": True,
    }
    doc.update(extra)
    return create_document(db, "inventory", doc)
