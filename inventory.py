import logging
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import get_active_drug
from database import create_document, now, oid, serialize
from errors import DuplicateEntry, Forbidden, InvalidInput, NotFound
from onboarding import get_owned_pharmacy
from schemas import Inventory
from search import contains

logger = logging.getLogger(__name__)

INVENTORY_UPDATABLE = {"quantity", "price", "price_unit", "discount", "is_available"}


def add_item(db: Database, owner_id: str, data: Dict[str, Any]) -> dict:
    pharmacy = get_owned_pharmacy(db, owner_id)
    pharmacy_id = str(pharmacy["_id"])
    drug = get_active_drug(db, data["drug_id"])
    if drug["pharmacy_id"] != pharmacy_id:
        raise Forbidden("Drug belongs to another pharmacy")
    item = Inventory(**{**data, "pharmacy_id": pharmacy_id})
    try:
        inv_id = create_document(db, "inventory", item)
    except DuplicateKeyError:
        raise DuplicateEntry("This drug already exists in your inventory")
    return db["inventory"].find_one({"_id": oid(inv_id)})


def list_for_pharmacy(
    db: Database,
    pharmacy_id: str,
    page: int = 1,
    limit: int = 20,
    in_stock: Optional[bool] = None,
    search: Optional[str] = None,
    category: Optional[str] = None,
) -> Dict[str, Any]:
    """Inventory rows of one pharmacy with their drug embedded, sorted by drug name."""
    query: Dict[str, Any] = {"pharmacy_id": pharmacy_id}
    if in_stock is True:
        query["is_available"] = True
        query["quantity"] = {"$gt": 0}
    elif in_stock is False:
        query["$or"] = [{"quantity": 0}, {"is_available": False}]

    drug_query: Dict[str, Any] = {"pharmacy_id": pharmacy_id, "is_active": True}
    if search:
        drug_query["$or"] = [{"name": contains(search)}, {"generic_name": contains(search)}]
    if category:
        drug_query["category"] = category
    drugs = {str(d["_id"]): d for d in db["drug"].find(drug_query)}
    query["drug_id"] = {"$in": list(drugs)}

    rows = []
    for inv in db["inventory"].find(query):
        row = serialize(inv)
        row["drug"] = serialize(drugs[inv["drug_id"]])
        rows.append(row)
    rows.sort(key=lambda r: (r["drug"].get("name") or "").lower())

    page, limit = max(page, 1), max(limit, 1)
    total = len(rows)
    return {
        "items": rows[(page - 1) * limit: page * limit],
        "total": total,
        "page": page,
        "total_pages": (total + limit - 1) // limit,
    }


def get_owned_item(db: Database, owner_id: str, inventory_id: str) -> dict:
    inv = db["inventory"].find_one({"_id": oid(inventory_id)})
    if not inv:
        raise NotFound("Inventory item not found")
    pharmacy = get_owned_pharmacy(db, owner_id)
    if inv["pharmacy_id"] != str(pharmacy["_id"]):
        raise Forbidden("Access denied")
    return inv


def update_item(db: Database, owner_id: str, inventory_id: str, changes: Dict[str, Any]) -> dict:
    invalid = sorted(set(changes) - INVENTORY_UPDATABLE)
    if invalid:
        raise InvalidInput("Invalid updates", {"invalid_fields": invalid})
    inv = get_owned_item(db, owner_id, inventory_id)
    merged = {**inv, **changes}
    merged.pop("_id")
    updates = Inventory(**merged).model_dump(include=set(changes))
    if "quantity" in updates and updates["quantity"] > inv.get("quantity", 0):
        updates["restocked_at"] = now()
    updates["updated_at"] = now()
    db["inventory"].update_one({"_id": inv["_id"]}, {"$set": updates})
    return db["inventory"].find_one({"_id": inv["_id"]})


def reserve_stock(db: Database, inventory_id: str, pharmacy_id: str, quantity: int) -> Optional[dict]:
    """Atomically take ``quantity`` units if that many are on hand.

    Returns the updated row, or None when the row is missing, unavailable or
    short. The check and the decrement are one store operation.
    """
    return db["inventory"].find_one_and_update(
        {
            "_id": oid(inventory_id),
            "pharmacy_id": pharmacy_id,
            "is_available": True,
            "quantity": {"$gte": quantity},
        },
        {"$inc": {"quantity": -quantity}, "$set": {"updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )


def release_stock(db: Database, inventory_id: str, quantity: int) -> None:
    db["inventory"].update_one(
        {"_id": oid(inventory_id)},
        {"$inc": {"quantity": quantity}, "$set": {"updated_at": now()}},
    )
    logger.info("Released %d units back to inventory %s", quantity, inventory_id)
