import logging
import re
from typing import Any, Dict, Optional

from pymongo.database import Database

from catalog import deactivate_drugs
from database import now, oid, serialize
from errors import Forbidden, InvalidInput, NotFound
from geo import distance_to, valid_lat_lng, within_radius
from onboarding import get_pharmacy
from schemas import PharmacyUpdate
from search import contains, pharmacy_query, sort_by_distance

logger = logging.getLogger(__name__)

# name and license_number are fixed once submitted
PHARMACY_UPDATABLE = set(PharmacyUpdate.model_fields)


def list_public(
    db: Database,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    max_distance_km: float = 10,
    search: Optional[str] = None,
    city: Optional[str] = None,
    service: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict[str, Any]:
    """Searchable pharmacies; nearest first and radius-bounded when an origin is given."""
    has_origin = lat is not None and lng is not None
    if has_origin and not valid_lat_lng(lat, lng):
        raise InvalidInput("Location must be a valid latitude/longitude pair")
    if max_distance_km <= 0:
        raise InvalidInput("Distance must be positive")

    query = pharmacy_query(with_location=True)
    if search:
        query["$or"] = [{"name": contains(search)}, {"description": contains(search)}]
    if city:
        query["address.city"] = {"$regex": f"^{re.escape(city)}$", "$options": "i"}
    if service:
        query["services"] = service

    rows = []
    for ph in db["pharmacy"].find(query).sort("name", 1):
        if has_origin and not within_radius(ph, lat, lng, max_distance_km):
            continue
        distance = distance_to(ph, lat, lng) if has_origin else None
        out = serialize(ph)
        out["distance_km"] = round(distance, 2) if distance is not None else None
        rows.append(out)
    if has_origin:
        rows = sort_by_distance(rows, distance=lambda r: r["distance_km"])

    page, limit = max(page, 1), max(limit, 1)
    total = len(rows)
    return {
        "items": rows[(page - 1) * limit: page * limit],
        "total": total,
        "page": page,
        "total_pages": (total + limit - 1) // limit,
    }


def get_public(db: Database, pharmacy_id: str) -> dict:
    """Only approved, verified and active pharmacies are publicly visible."""
    pharmacy = db["pharmacy"].find_one({"_id": oid(pharmacy_id), **pharmacy_query(with_location=False)})
    if not pharmacy:
        raise NotFound("Pharmacy not found")
    return pharmacy


def _check_owner(pharmacy: dict, me: Dict[str, str]) -> None:
    if pharmacy["owner_id"] != me["id"] and me["role"] != "admin":
        raise Forbidden("Access denied")


def update_profile(db: Database, pharmacy_id: str, me: Dict[str, str], changes: Dict[str, Any]) -> dict:
    invalid = sorted(set(changes) - PHARMACY_UPDATABLE)
    if invalid:
        raise InvalidInput("Invalid updates", {"invalid_fields": invalid})
    pharmacy = get_pharmacy(db, pharmacy_id)
    _check_owner(pharmacy, me)
    updates = PharmacyUpdate.model_validate(changes).model_dump(include=set(changes))
    updates["updated_at"] = now()
    db["pharmacy"].update_one({"_id": pharmacy["_id"]}, {"$set": updates})
    return db["pharmacy"].find_one({"_id": pharmacy["_id"]})


def deactivate(db: Database, pharmacy_id: str, me: Dict[str, str]) -> None:
    pharmacy = get_pharmacy(db, pharmacy_id)
    _check_owner(pharmacy, me)
    deactivate_pharmacies(db, {"_id": pharmacy["_id"]})


def deactivate_pharmacies(db: Database, query: dict) -> int:
    ids = [p["_id"] for p in db["pharmacy"].find(query, {"_id": 1})]
    if not ids:
        return 0
    db["pharmacy"].update_many({"_id": {"$in": ids}}, {"$set": {"is_active": False, "updated_at": now()}})
    deactivate_drugs(db, {"pharmacy_id": {"$in": [str(i) for i in ids]}})
    logger.info("Deactivated pharmacies %s", [str(i) for i in ids])
    return len(ids)


def favorites_detail(db: Database, pharmacy_ids) -> list:
    if not pharmacy_ids:
        return []
    found = db["pharmacy"].find({"_id": {"$in": [oid(i) for i in pharmacy_ids]}, "is_active": True})
    return [serialize(p) for p in found]
