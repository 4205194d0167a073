"""
Location-aware drug availability search.

A search runs as three independent store reads joined in application code:
matching drugs, eligible pharmacies, then the inventory rows linking the two.
Text matching and radius filtering are never expressed in the same query.
"""
import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel
from pymongo.database import Database

from config import settings
from errors import InvalidInput
from geo import distance_to, valid_lat_lng, within_radius

logger = logging.getLogger(__name__)

DRUG_TEXT_FIELDS = ("name", "generic_name", "description", "category")


class SearchFilters(BaseModel):
    distance_km: Optional[float] = None
    in_stock_only: bool = True
    max_price: Optional[float] = None


class Origin(BaseModel):
    lat: float
    lng: float


class SearchResult(BaseModel):
    inventory_id: str
    drug: Dict[str, Any]
    pharmacy: Dict[str, Any]
    price: float
    price_unit: Optional[str] = None
    discount: float = 0
    quantity: int = 0
    in_stock: bool
    distance_km: Optional[float] = None  # None means "N/A"


def contains(term: str) -> Dict[str, str]:
    return {"$regex": re.escape(term), "$options": "i"}


def drug_query(search_term: Optional[str] = None, category: Optional[str] = None) -> dict:
    query: Dict[str, Any] = {"is_active": True}
    if search_term:
        query["$or"] = [{field: contains(search_term)} for field in DRUG_TEXT_FIELDS]
    if category and category.lower() != "all":
        query["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
    return query


def pharmacy_query(with_location: bool) -> dict:
    query: Dict[str, Any] = {"is_active": True, "is_verified": True, "status": "approved"}
    if with_location:
        query["location_set"] = True
    return query


def inventory_query(drug_ids: Iterable[str], pharmacy_ids: Iterable[str], filters: SearchFilters) -> dict:
    query: Dict[str, Any] = {
        "drug_id": {"$in": list(drug_ids)},
        "pharmacy_id": {"$in": list(pharmacy_ids)},
    }
    if filters.in_stock_only:
        query["is_available"] = True
    if filters.max_price is not None:
        query["price"] = {"$lte": filters.max_price}
    return query


def sort_by_distance(rows: List[Any], distance: Callable[[Any], Optional[float]]) -> List[Any]:
    """Nearest first; rows without a distance go last in their original order."""
    return sorted(rows, key=lambda r: (distance(r) is None, distance(r) or 0.0))


def validate_request(
    search_term: Optional[str],
    filters: SearchFilters,
    origin: Optional[Origin],
    require_term: bool,
) -> None:
    if require_term and not (search_term or "").strip():
        raise InvalidInput("Search term is required")
    if origin is not None and not valid_lat_lng(origin.lat, origin.lng):
        raise InvalidInput("Location must be a valid latitude/longitude pair")
    if filters.distance_km is not None and not 0 < filters.distance_km <= settings.MAX_SEARCH_RADIUS_KM:
        raise InvalidInput(f"Distance must be between 0 and {settings.MAX_SEARCH_RADIUS_KM:g} km")
    if filters.max_price is not None and filters.max_price < 0:
        raise InvalidInput("Maximum price cannot be negative")


def find_candidate_drugs(db: Database, search_term: Optional[str], category: Optional[str]) -> Dict[str, dict]:
    return {str(d["_id"]): d for d in db["drug"].find(drug_query(search_term, category))}


def find_eligible_pharmacies(
    db: Database,
    origin: Optional[Origin],
    radius_km: float,
) -> Dict[str, tuple]:
    """Map pharmacy id -> (pharmacy, distance_km or None)."""
    eligible = {}
    for ph in db["pharmacy"].find(pharmacy_query(with_location=origin is not None)):
        distance = None
        if origin is not None:
            if not within_radius(ph, origin.lat, origin.lng, radius_km):
                continue
            distance = distance_to(ph, origin.lat, origin.lng)
        eligible[str(ph["_id"])] = (ph, distance)
    return eligible


def drug_summary(drug: dict) -> Dict[str, Any]:
    return {
        "id": str(drug["_id"]),
        "name": drug.get("name"),
        "generic_name": drug.get("generic_name"),
        "description": drug.get("description"),
        "category": drug.get("category"),
        "form": drug.get("form"),
        "strength": drug.get("strength"),
        "manufacturer": drug.get("manufacturer"),
        "prescription_required": drug.get("prescription_required", False),
    }


def pharmacy_summary(ph: dict) -> Dict[str, Any]:
    contact = ph.get("contact") or {}
    return {
        "id": str(ph["_id"]),
        "name": ph.get("name"),
        "address": ph.get("address"),
        "location": ph.get("location") if ph.get("location_set") else None,
        "phone": contact.get("phone"),
        "email": contact.get("email"),
        "operating_hours": ph.get("operating_hours"),
    }


def search_availability(
    db: Database,
    search_term: Optional[str] = None,
    category: Optional[str] = None,
    filters: Optional[SearchFilters] = None,
    origin: Optional[Origin] = None,
    require_term: bool = False,
) -> List[SearchResult]:
    filters = filters or SearchFilters()
    validate_request(search_term, filters, origin, require_term)
    search_term = (search_term or "").strip() or None

    drugs = find_candidate_drugs(db, search_term, category)
    if not drugs:
        return []

    radius_km = filters.distance_km or settings.DEFAULT_SEARCH_RADIUS_KM
    pharmacies = find_eligible_pharmacies(db, origin, radius_km)
    if not pharmacies:
        return []

    rows = []
    for inv in db["inventory"].find(inventory_query(drugs.keys(), pharmacies.keys(), filters)):
        ph, distance = pharmacies[inv["pharmacy_id"]]
        rows.append((inv, drugs[inv["drug_id"]], ph, distance))

    rows = sort_by_distance(rows, distance=lambda r: r[3])
    logger.debug("Search %r near %s matched %d rows", search_term, origin, len(rows))

    return [
        SearchResult(
            inventory_id=str(inv["_id"]),
            drug=drug_summary(drug),
            pharmacy=pharmacy_summary(ph),
            price=float(inv.get("price", 0)),
            price_unit=inv.get("price_unit"),
            discount=float(inv.get("discount", 0)),
            quantity=int(inv.get("quantity", 0)),
            in_stock=bool(inv.get("is_available", False)),
            distance_km=round(distance, 2) if distance is not None else None,
        )
        for inv, drug, ph, distance in rows
    ]
