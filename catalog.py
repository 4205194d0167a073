import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import create_document, get_documents, now, oid, paginate, serialize
from errors import InvalidInput, NotFound
from onboarding import get_owned_pharmacy
from schemas import Drug
from search import contains

logger = logging.getLogger(__name__)

DRUG_UPDATABLE = {
    "name", "generic_name", "brand", "description", "category", "form", "strength",
    "prescription_required", "manufacturer", "barcode", "dosage_instructions",
}


def catalog_query(
    search: Optional[str] = None,
    category: Optional[str] = None,
    form: Optional[str] = None,
    prescription_required: Optional[bool] = None,
) -> dict:
    query: Dict[str, Any] = {"is_active": True}
    if search:
        query["$or"] = [
            {"name": contains(search)},
            {"generic_name": contains(search)},
            {"description": contains(search)},
        ]
    if category:
        query["category"] = category
    if form:
        query["form"] = form
    if prescription_required is not None:
        query["prescription_required"] = prescription_required
    return query


def create_drug(db: Database, owner_id: str, data: Dict[str, Any]) -> dict:
    pharmacy = get_owned_pharmacy(db, owner_id)
    drug = Drug(**{**data, "pharmacy_id": str(pharmacy["_id"]), "is_active": True})
    drug_id = create_document(db, "drug", drug)
    return db["drug"].find_one({"_id": oid(drug_id)})


def list_public(db: Database, page: int = 1, limit: int = 20, **filters) -> Dict[str, Any]:
    return paginate(db, "drug", catalog_query(**filters), page, limit, sort=[("name", 1)])


def list_for_owner(db: Database, owner_id: str, page: int = 1, limit: int = 20, **filters) -> Dict[str, Any]:
    pharmacy = get_owned_pharmacy(db, owner_id)
    query = catalog_query(**filters)
    query["pharmacy_id"] = str(pharmacy["_id"])
    return paginate(db, "drug", query, page, limit, sort=[("category", 1), ("name", 1)])


def list_not_in_inventory(db: Database, owner_id: str) -> List[Dict[str, Any]]:
    pharmacy_id = str(get_owned_pharmacy(db, owner_id)["_id"])
    stocked = db["inventory"].distinct("drug_id", {"pharmacy_id": pharmacy_id})
    drugs = get_documents(db, "drug", {"pharmacy_id": pharmacy_id, "is_active": True}, sort=[("name", 1)])
    return [d for d in drugs if d["id"] not in set(stocked)]


def get_active_drug(db: Database, drug_id: str) -> dict:
    drug = db["drug"].find_one({"_id": oid(drug_id)})
    if not drug or not drug.get("is_active"):
        raise NotFound("Drug not found")
    return drug


def _owned_drug(db: Database, owner_id: str, drug_id: str) -> dict:
    pharmacy = get_owned_pharmacy(db, owner_id)
    drug = db["drug"].find_one({"_id": oid(drug_id), "pharmacy_id": str(pharmacy["_id"]), "is_active": True})
    if not drug:
        raise NotFound("Drug not found")
    return drug


def update_drug(db: Database, owner_id: str, drug_id: str, changes: Dict[str, Any]) -> dict:
    invalid = sorted(set(changes) - DRUG_UPDATABLE)
    if invalid:
        raise InvalidInput("Invalid updates", {"invalid_fields": invalid})
    drug = _owned_drug(db, owner_id, drug_id)
    merged = {**drug, **changes}
    merged.pop("_id")
    # write the coerced values, never the raw request body
    updates = Drug(**merged).model_dump(include=set(changes))
    updates["updated_at"] = now()
    db["drug"].update_one({"_id": drug["_id"]}, {"$set": updates})
    return db["drug"].find_one({"_id": drug["_id"]})


def deactivate_drugs(db: Database, query: dict) -> int:
    """Soft-delete matching drugs and drop their inventory rows.

    This is the single cascade rule used for drug deletion, pharmacy
    deactivation and pharmacist removal.
    """
    drug_ids = [str(d["_id"]) for d in db["drug"].find({**query, "is_active": True}, {"_id": 1})]
    if not drug_ids:
        return 0
    db["drug"].update_many(
        {"_id": {"$in": [oid(i) for i in drug_ids]}},
        {"$set": {"is_active": False, "updated_at": now()}},
    )
    removed = db["inventory"].delete_many({"drug_id": {"$in": drug_ids}}).deleted_count
    logger.info("Deactivated %d drugs, removed %d inventory rows", len(drug_ids), removed)
    return len(drug_ids)


def delete_drug(db: Database, owner_id: str, drug_id: str) -> None:
    drug = _owned_drug(db, owner_id, drug_id)
    deactivate_drugs(db, {"_id": drug["_id"]})


def drug_detail(db: Database, drug_id: str) -> Dict[str, Any]:
    drug = serialize(get_active_drug(db, drug_id))
    pharmacy = db["pharmacy"].find_one({"_id": oid(drug["pharmacy_id"])}, {"name": 1, "address": 1, "contact": 1})
    drug["pharmacy"] = serialize(pharmacy)
    return drug
