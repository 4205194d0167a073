"""Accounts, login and the patient profile (addresses and favourite pharmacies)."""
import logging
import uuid
from typing import Any, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, now, oid, serialize
from errors import DuplicateEntry, InvalidInput, NotFound, Unauthorized
from geo import to_point
from onboarding import get_pharmacy
from pharmacies import favorites_detail
from schemas import Address, Patient, User
from security import hash_password, token_for, verify_password

logger = logging.getLogger(__name__)


def register(db: Database, data: Dict[str, Any]) -> Dict[str, Any]:
    email = data["email"].lower()
    if db["user"].find_one({"email": email}):
        raise DuplicateEntry("User with this email already exists", {"field": "email"})
    user = User(
        email=email,
        password_hash=hash_password(data["password"]),
        role=data.get("role") or "patient",
        first_name=data["first_name"],
        last_name=data["last_name"],
        phone=data.get("phone"),
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise DuplicateEntry("User with this email already exists", {"field": "email"})
    doc = db["user"].find_one({"_id": oid(user_id)})
    if doc["role"] == "patient":
        ensure_patient(db, user_id)
    logger.info("Registered %s account %s", doc["role"], user_id)
    return {"access_token": token_for(doc), "token_type": "bearer", "user": serialize(doc)}


def login(db: Database, email: str, password: str) -> Dict[str, Any]:
    acc = db["user"].find_one({"email": email.lower()})
    if not acc or not acc.get("is_active", True) or not verify_password(password, acc.get("password_hash", "")):
        raise Unauthorized("Invalid credentials")
    return {"access_token": token_for(acc), "token_type": "bearer", "user": serialize(acc)}


def email_available(db: Database, email: Optional[str]) -> bool:
    if not (email or "").strip():
        raise InvalidInput("Email is required")
    return db["user"].find_one({"email": email.strip().lower()}, {"_id": 1}) is None


def get_user(db: Database, user_id: str) -> dict:
    user = db["user"].find_one({"_id": oid(user_id)})
    if not user:
        raise NotFound("User not found")
    return user


# Patient profile

def ensure_patient(db: Database, user_id: str) -> dict:
    patient = db["patient"].find_one({"user_id": user_id})
    if patient:
        return patient
    try:
        create_document(db, "patient", Patient(user_id=user_id))
    except DuplicateKeyError:
        pass  # created by a concurrent request
    return db["patient"].find_one({"user_id": user_id})


def profile(db: Database, user_id: str) -> Dict[str, Any]:
    patient = serialize(ensure_patient(db, user_id))
    patient["user"] = serialize(get_user(db, user_id))
    return patient


def _address_doc(data: Dict[str, Any], address_id: str) -> Dict[str, Any]:
    location = data.get("location")
    point = to_point(location["lat"], location["lng"]) if location else None
    return Address(
        id=address_id,
        label=data["label"],
        address=data["address"],
        city=data["city"],
        location=point,
        is_default=bool(data.get("is_default")),
    ).model_dump()


def _save_addresses(db: Database, patient: dict, addresses: List[dict]) -> None:
    db["patient"].update_one({"_id": patient["_id"]}, {"$set": {"addresses": addresses, "updated_at": now()}})


def _with_single_default(addresses: List[dict], default_id: Optional[str]) -> List[dict]:
    if default_id is None:
        return addresses
    for addr in addresses:
        addr["is_default"] = addr["id"] == default_id
    return addresses


def list_addresses(db: Database, user_id: str) -> List[dict]:
    return ensure_patient(db, user_id).get("addresses", [])


def add_address(db: Database, user_id: str, data: Dict[str, Any]) -> dict:
    patient = ensure_patient(db, user_id)
    new = _address_doc(data, uuid.uuid4().hex)
    addresses = patient.get("addresses", []) + [new]
    _save_addresses(db, patient, _with_single_default(addresses, new["id"] if new["is_default"] else None))
    return new


def _find_address(patient: dict, address_id: str) -> dict:
    for addr in patient.get("addresses", []):
        if addr["id"] == address_id:
            return addr
    raise NotFound("Address not found")


def update_address(db: Database, user_id: str, address_id: str, data: Dict[str, Any]) -> dict:
    patient = ensure_patient(db, user_id)
    current = _find_address(patient, address_id)
    merged = {
        "label": data.get("label") or current["label"],
        "address": data.get("address") or current["address"],
        "city": data.get("city") or current["city"],
        "is_default": current["is_default"] if data.get("is_default") is None else data["is_default"],
    }
    updated = _address_doc({**merged, "location": data.get("location")}, address_id)
    if not data.get("location"):
        updated["location"] = current.get("location")
    addresses = [updated if a["id"] == address_id else a for a in patient["addresses"]]
    _save_addresses(db, patient, _with_single_default(addresses, address_id if updated["is_default"] else None))
    return updated


def delete_address(db: Database, user_id: str, address_id: str) -> None:
    patient = ensure_patient(db, user_id)
    _find_address(patient, address_id)
    _save_addresses(db, patient, [a for a in patient["addresses"] if a["id"] != address_id])


def set_default_address(db: Database, user_id: str, address_id: str) -> dict:
    patient = ensure_patient(db, user_id)
    _find_address(patient, address_id)
    addresses = _with_single_default(patient["addresses"], address_id)
    _save_addresses(db, patient, addresses)
    return _find_address({"addresses": addresses}, address_id)


def toggle_favorite(db: Database, user_id: str, pharmacy_id: str) -> Dict[str, Any]:
    get_pharmacy(db, pharmacy_id)
    patient = ensure_patient(db, user_id)
    favorites = list(patient.get("favorite_pharmacy_ids", []))
    if pharmacy_id in favorites:
        favorites.remove(pharmacy_id)
        is_favorite = False
    else:
        favorites.append(pharmacy_id)
        is_favorite = True
    db["patient"].update_one({"_id": patient["_id"]}, {"$set": {"favorite_pharmacy_ids": favorites, "updated_at": now()}})
    return {"is_favorite": is_favorite, "favorite_pharmacy_ids": favorites}


def list_favorites(db: Database, user_id: str) -> list:
    patient = ensure_patient(db, user_id)
    return favorites_detail(db, patient.get("favorite_pharmacy_ids", []))
