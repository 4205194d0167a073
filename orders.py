"""
Order placement.

Stock is taken item by item with an atomic conditional decrement. If any item
cannot be reserved, or the order itself cannot be written, everything reserved
so far in the same request is put back before the error is raised.
"""
import logging
import random
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import settings
from database import create_document, now, oid, paginate, serialize
from errors import Conflict, FeatureDisabled, Forbidden, InsufficientStock, InvalidInput, NotFound, ValidationError
from inventory import release_stock, reserve_stock
from schemas import Order, OrderItem

logger = logging.getLogger(__name__)

# no further status changes once an order reaches one of these
FINAL_STATUSES = {"delivered", "cancelled", "refunded"}


def line_total(price: float, quantity: int, discount: float = 0) -> float:
    return price * quantity * (1 - discount / 100)


def calculate_totals(items: Iterable[Dict[str, Any]], discount_amount: float = 0) -> Tuple[float, float]:
    """Return ``(total_amount, final_amount)``; the final amount never goes below zero."""
    total = sum(line_total(it["price"], it["quantity"], it.get("discount", 0)) for it in items)
    total = round(total, 2)
    return total, round(max(total - discount_amount, 0.0), 2)


def generate_order_number() -> str:
    timestamp = str(int(time.time() * 1000))[-6:]
    return f"ORD-{timestamp}{random.randint(0, 999):03d}"


def _release_all(db: Database, reserved: List[Tuple[str, int]]) -> None:
    for inventory_id, quantity in reserved:
        release_stock(db, inventory_id, quantity)


def _reserve_items(db: Database, pharmacy_id: str, requested: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    reserved: List[Tuple[str, int]] = []
    lines: List[Dict[str, Any]] = []
    for item in requested:
        inventory_id, quantity = item["inventory_id"], item["quantity"]
        inv = reserve_stock(db, inventory_id, pharmacy_id, quantity)
        if inv is None:
            _release_all(db, reserved)
            current = db["inventory"].find_one({"_id": oid(inventory_id), "pharmacy_id": pharmacy_id})
            if current is None:
                raise NotFound(f"Inventory not found: {inventory_id}")
            drug = db["drug"].find_one({"_id": oid(current["drug_id"])}) or {}
            raise InsufficientStock(
                f"Insufficient stock for {drug.get('name', 'selected drug')}",
                {"inventory_id": inventory_id, "requested": quantity, "available": current.get("quantity", 0)},
            )
        reserved.append((inventory_id, quantity))
        drug = db["drug"].find_one({"_id": oid(inv["drug_id"])}) or {}
        lines.append({
            "drug_id": inv["drug_id"],
            "inventory_id": inventory_id,
            "name": drug.get("name"),
            "quantity": quantity,
            "price": float(inv["price"]),
            "discount": float(inv.get("discount", 0)),
            "_prescription_required": drug.get("prescription_required", False),
        })
    return lines


def _validate_request(data: Dict[str, Any]) -> None:
    if not data.get("items"):
        raise ValidationError("Order must contain at least one item", {"items": "At least one item is required"})
    seen = set()
    for item in data["items"]:
        if item["inventory_id"] in seen:
            raise InvalidInput("Each inventory item may appear only once per order")
        seen.add(item["inventory_id"])
    if data.get("delivery_option") == "delivery" and not data.get("delivery_address"):
        raise ValidationError("Delivery address is required", {"delivery_address": "Delivery address is required"})


def create_order(db: Database, patient_id: str, data: Dict[str, Any]) -> dict:
    if not settings.ORDERS_ENABLED:
        raise FeatureDisabled("Ordering is currently disabled")
    _validate_request(data)
    pharmacy_id = data["pharmacy_id"]
    pharmacy = db["pharmacy"].find_one({"_id": oid(pharmacy_id)})
    if not pharmacy or not pharmacy.get("is_active") or not pharmacy.get("is_verified"):
        raise NotFound("Pharmacy not found")

    lines = _reserve_items(db, pharmacy_id, data["items"])
    reserved = [(line["inventory_id"], line["quantity"]) for line in lines]
    try:
        return _insert_order(db, patient_id, pharmacy_id, data, lines)
    except BaseException:
        _release_all(db, reserved)
        raise


def _insert_order(db: Database, patient_id: str, pharmacy_id: str, data: Dict[str, Any], lines: List[Dict[str, Any]]) -> dict:
    """Write the order for already reserved lines. The caller releases stock on any failure."""
    prescription = data.get("prescription") or {}
    needs_rx = any([line.pop("_prescription_required") for line in lines])
    if needs_rx and not (prescription.get("images") or prescription.get("notes")):
        raise ValidationError("Prescription required for selected items", {"prescription": "Prescription is required"})

    total, final = calculate_totals(lines)
    base = dict(
        patient_id=patient_id,
        pharmacy_id=pharmacy_id,
        items=[OrderItem(**line) for line in lines],
        total_amount=total,
        discount_amount=0.0,
        final_amount=final,
        delivery_option=data["delivery_option"],
        delivery_address=data.get("delivery_address") if data["delivery_option"] == "delivery" else None,
        payment_method=data.get("payment_method") or "cash",
        prescription=prescription or None,
        patient_notes=data.get("patient_notes"),
        created_at=now(),
    )

    for _ in range(settings.ORDER_NUMBER_RETRIES):
        order = Order(order_number=generate_order_number(), **base)
        try:
            order_id = create_document(db, "order", order)
        except DuplicateKeyError:
            logger.warning("Order number %s already taken, retrying", order.order_number)
            continue
        logger.info("Order %s (%s) created for patient %s, total %.2f", order.order_number, order_id, patient_id, final)
        return db["order"].find_one({"_id": oid(order_id)})

    raise Conflict("Could not allocate an order number, please retry")


def can_access(db: Database, order: dict, me: Dict[str, str]) -> bool:
    if me["role"] == "admin":
        return True
    if me["role"] == "patient":
        return order["patient_id"] == me["id"]
    if me["role"] == "pharmacist":
        pharmacy = db["pharmacy"].find_one({"_id": oid(order["pharmacy_id"])}, {"owner_id": 1})
        return bool(pharmacy) and pharmacy["owner_id"] == me["id"]
    return False


def get_order(db: Database, order_id: str, me: Dict[str, str]) -> dict:
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise NotFound("Order not found")
    if not can_access(db, order, me):
        raise Forbidden("Access denied")
    return order


def update_status(db: Database, order_id: str, me: Dict[str, str], status: str, pharmacy_notes: Optional[str] = None) -> dict:
    order = get_order(db, order_id, me)
    if order["status"] == status:
        return order
    if me["role"] == "patient" and not (status == "cancelled" and order["status"] == "pending"):
        raise Forbidden("Patients can only cancel pending orders")
    if order["status"] in FINAL_STATUSES:
        raise Conflict(f"Order is already {order['status']}")
    updates: Dict[str, Any] = {"status": status, "updated_at": now()}
    if pharmacy_notes:
        updates["pharmacy_notes"] = pharmacy_notes
    if status == "delivered":
        updates["actual_delivery"] = now()
    res = db["order"].update_one({"_id": order["_id"], "status": order["status"]}, {"$set": updates})
    if res.matched_count == 0:
        raise Conflict("Order status changed concurrently, reload and retry")
    if status == "cancelled":
        _release_all(db, [(it["inventory_id"], it["quantity"]) for it in order["items"]])
    logger.info("Order %s status %s -> %s by %s", order["order_number"], order["status"], status, me["id"])
    return db["order"].find_one({"_id": order["_id"]})


def list_for_patient(db: Database, patient_id: str, page: int = 1, limit: int = 10, status: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {"patient_id": patient_id}
    if status:
        query["status"] = status
    return paginate(db, "order", query, page, limit, sort=[("created_at", -1)])


def list_for_pharmacist(db: Database, owner_id: str, page: int = 1, limit: int = 10, status: Optional[str] = None) -> Dict[str, Any]:
    pharmacy_ids = [str(p["_id"]) for p in db["pharmacy"].find({"owner_id": owner_id}, {"_id": 1})]
    query: Dict[str, Any] = {"pharmacy_id": {"$in": pharmacy_ids}}
    if status:
        query["status"] = status
    return paginate(db, "order", query, page, limit, sort=[("created_at", -1)])


def order_out(order: dict) -> Dict[str, Any]:
    out = serialize(order)
    out["item_count"] = sum(it["quantity"] for it in order.get("items", []))
    return out
