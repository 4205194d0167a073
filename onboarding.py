"""
Pharmacy onboarding and the admin approval workflow.

    draft -> pending_approval -> approved
                              -> rejected -> pending_approval

Every status change is a compare-and-set on the current status, so two
concurrent decisions on the same pharmacy cannot both succeed.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import UploadFile
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import settings
from database import create_document, now, oid, serialize
from errors import Conflict, DuplicateEntry, IllegalTransition, InvalidInput, NotFound, ValidationError
from geo import to_point, valid_lat_lng
from schemas import Pharmacy

logger = logging.getLogger(__name__)

DRAFT = "draft"
PENDING = "pending_approval"
APPROVED = "approved"
REJECTED = "rejected"

TRANSITIONS = {
    DRAFT: {PENDING},
    PENDING: {APPROVED, REJECTED},
    REJECTED: {PENDING},
    APPROVED: set(),
}

PROFILE_FIELDS = (
    "name", "license_number", "address", "contact", "operating_hours",
    "services", "description", "certificates",
)

CERTIFICATES_SUBDIR = os.path.join("uploads", "certificates")


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def assert_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise IllegalTransition(f"Cannot move pharmacy from {current} to {target}")


def missing_profile_fields(pharmacy: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    if not (pharmacy.get("name") or "").strip():
        errors["name"] = "Pharmacy name is required"
    if not (pharmacy.get("license_number") or "").strip():
        errors["license_number"] = "License number is required"
    address = pharmacy.get("address") or {}
    if not (address.get("address") or "").strip():
        errors["address"] = "Address is required"
    hours = pharmacy.get("operating_hours") or {}
    if not (hours.get("open") and hours.get("close")):
        errors["operating_hours"] = "Opening and closing hours are required"
    if not pharmacy.get("services"):
        errors["services"] = "At least one service is required"
    return errors


def find_owned_pharmacy(db: Database, owner_id: str) -> Optional[dict]:
    return db["pharmacy"].find_one({"owner_id": owner_id})


def get_owned_pharmacy(db: Database, owner_id: str) -> dict:
    pharmacy = find_owned_pharmacy(db, owner_id)
    if not pharmacy:
        raise NotFound("Pharmacy profile not found for this user")
    return pharmacy


def get_pharmacy(db: Database, pharmacy_id: str) -> dict:
    pharmacy = db["pharmacy"].find_one({"_id": oid(pharmacy_id)})
    if not pharmacy:
        raise NotFound("Pharmacy not found")
    return pharmacy


def get_status(db: Database, owner_id: str) -> Dict[str, Any]:
    pharmacy = find_owned_pharmacy(db, owner_id)
    if not pharmacy:
        return {"has_pharmacy": False, "status": "no_pharmacy"}
    return {
        "has_pharmacy": True,
        "status": pharmacy["status"],
        "rejection_reason": pharmacy.get("rejection_reason"),
        "pharmacy": serialize(pharmacy),
    }


def _transition(db: Database, pharmacy: dict, target: str, changes: Dict[str, Any]) -> dict:
    current = pharmacy["status"]
    assert_transition(current, target)
    updates = {**changes, "status": target, "updated_at": now()}
    res = db["pharmacy"].update_one({"_id": pharmacy["_id"], "status": current}, {"$set": updates})
    if res.matched_count == 0:
        raise Conflict("Pharmacy status changed concurrently, reload and retry")
    logger.info("Pharmacy %s moved %s -> %s", pharmacy["_id"], current, target)
    return db["pharmacy"].find_one({"_id": pharmacy["_id"]})


def save_profile(db: Database, owner_id: str, data: Dict[str, Any]) -> dict:
    """Create the owner's pharmacy in draft, or update its onboarding fields."""
    fields = {k: v for k, v in data.items() if k in PROFILE_FIELDS and v is not None}
    pharmacy = find_owned_pharmacy(db, owner_id)
    try:
        if pharmacy is None:
            doc = Pharmacy(owner_id=owner_id).model_dump(exclude_none=True)
            doc.update(fields)
            new_id = create_document(db, "pharmacy", doc)
            logger.info("Pharmacy draft %s created for owner %s", new_id, owner_id)
            return db["pharmacy"].find_one({"_id": oid(new_id)})

        if pharmacy["status"] == APPROVED:
            raise Conflict("Pharmacy profile already approved and cannot be modified")
        fields["updated_at"] = now()
        db["pharmacy"].update_one({"_id": pharmacy["_id"]}, {"$set": fields})
    except DuplicateKeyError:
        raise DuplicateEntry("Pharmacy with this license number already exists")
    return db["pharmacy"].find_one({"_id": pharmacy["_id"]})


def submit(db: Database, owner_id: str) -> dict:
    pharmacy = get_owned_pharmacy(db, owner_id)
    if pharmacy["status"] == APPROVED:
        raise Conflict("Pharmacy profile already approved")
    assert_transition(pharmacy["status"], PENDING)
    errors = missing_profile_fields(pharmacy)
    if errors:
        raise ValidationError("Pharmacy profile is incomplete", errors)
    return _transition(db, pharmacy, PENDING, {
        "rejection_reason": None,
        "is_verified": False,
        "submitted_at": now(),
    })


def complete_profile(db: Database, owner_id: str, data: Dict[str, Any]) -> dict:
    save_profile(db, owner_id, data)
    return submit(db, owner_id)


def approve(db: Database, pharmacy_id: str, admin_id: str) -> dict:
    pharmacy = get_pharmacy(db, pharmacy_id)
    return _transition(db, pharmacy, APPROVED, {
        "is_verified": True,
        "approved_by": admin_id,
        "approved_at": now(),
        "rejection_reason": None,
    })


def reject(db: Database, pharmacy_id: str, admin_id: str, reason: Optional[str]) -> dict:
    if not (reason or "").strip():
        raise ValidationError("Rejection reason is required", {"rejection_reason": "Rejection reason is required"})
    pharmacy = get_pharmacy(db, pharmacy_id)
    return _transition(db, pharmacy, REJECTED, {
        "is_verified": False,
        "rejection_reason": reason.strip(),
        "rejected_by": admin_id,
    })


def set_location(db: Database, owner_id: str, lat: float, lng: float, address: Optional[str] = None) -> dict:
    if not valid_lat_lng(lat, lng):
        raise InvalidInput("Latitude and longitude are out of range")
    pharmacy = get_owned_pharmacy(db, owner_id)
    updates = {"location": to_point(lat, lng), "location_set": True, "updated_at": now()}
    if address:
        updates["address.address"] = address
    db["pharmacy"].update_one({"_id": pharmacy["_id"]}, {"$set": updates})
    return db["pharmacy"].find_one({"_id": pharmacy["_id"]})


def location_status(db: Database, owner_id: str) -> Dict[str, Any]:
    pharmacy = get_owned_pharmacy(db, owner_id)
    return {
        "location_set": pharmacy.get("location_set", False),
        "location": pharmacy.get("location"),
        "address": pharmacy.get("address"),
    }


def store_certificates(files: List[UploadFile]) -> List[Dict[str, Any]]:
    """Write uploads under STATIC_DIR and return their certificate references."""
    if not files:
        raise InvalidInput("No files uploaded")
    if len(files) > settings.MAX_CERTIFICATES:
        raise InvalidInput(f"At most {settings.MAX_CERTIFICATES} certificates can be uploaded at once")
    upload_dir = os.path.join(settings.STATIC_DIR, CERTIFICATES_SUBDIR)
    os.makedirs(upload_dir, exist_ok=True)
    stored = []
    for f in files:
        safe_name = os.path.basename(f.filename or "certificate")
        filename = f"{datetime.now(timezone.utc).timestamp()}_{safe_name}"
        with open(os.path.join(upload_dir, filename), "wb") as out:
            out.write(f.file.read())
        stored.append({
            "name": safe_name,
            "file_url": f"/static/uploads/certificates/{filename}",
            "uploaded_at": now(),
        })
    return stored


def add_certificates(db: Database, owner_id: str, files: List[UploadFile]) -> List[Dict[str, Any]]:
    pharmacy = get_owned_pharmacy(db, owner_id)
    if pharmacy["status"] == APPROVED:
        raise Conflict("Pharmacy profile already approved and cannot be modified")
    certificates = store_certificates(files)
    db["pharmacy"].update_one(
        {"_id": pharmacy["_id"]},
        {"$push": {"certificates": {"$each": certificates}}, "$set": {"updated_at": now()}},
    )
    return certificates
