import logging
from typing import Any, Dict, Optional

from pymongo.database import Database

from accounts import ensure_patient, get_user
from database import now, paginate, serialize
from errors import InvalidInput
from pharmacies import deactivate_pharmacies
from schemas import UserUpdate
from search import contains

logger = logging.getLogger(__name__)

USER_UPDATABLE = set(UserUpdate.model_fields)


def list_pharmacies(
    db: Database,
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if search:
        query["$or"] = [
            {"name": contains(search)},
            {"license_number": contains(search)},
            {"contact.email": contains(search)},
        ]
    return paginate(db, "pharmacy", query, page, limit, sort=[("created_at", -1)])


def list_users(
    db: Database,
    role: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if role:
        query["role"] = role
    if search:
        query["$or"] = [
            {"first_name": contains(search)},
            {"last_name": contains(search)},
            {"email": contains(search)},
        ]
    return paginate(db, "user", query, page, limit, sort=[("created_at", -1)])


def get_user_detail(db: Database, user_id: str) -> Dict[str, Any]:
    user = get_user(db, user_id)
    pharmacy = None
    if user["role"] == "pharmacist":
        pharmacy = db["pharmacy"].find_one({"owner_id": user_id})
    return {"user": serialize(user), "pharmacy": serialize(pharmacy) if pharmacy else None}


def update_user(db: Database, user_id: str, admin_id: str, changes: Dict[str, Any]) -> dict:
    """Activate, deactivate or re-role an account.

    Taking a pharmacist out of service deactivates their pharmacies with the
    usual cascade. Reactivating an account does not bring those back.
    """
    invalid = sorted(set(changes) - USER_UPDATABLE)
    if invalid:
        raise InvalidInput("Invalid updates", {"invalid_fields": invalid})
    if user_id == admin_id:
        raise InvalidInput("Cannot change your own account")
    updates = UserUpdate.model_validate(changes).model_dump(include=set(changes), exclude_none=True)
    user = get_user(db, user_id)
    if not updates:
        return user
    updates["updated_at"] = now()
    db["user"].update_one({"_id": user["_id"]}, {"$set": updates})

    role = updates.get("role", user["role"])
    if user["role"] == "pharmacist" and (updates.get("is_active") is False or role != "pharmacist"):
        deactivate_pharmacies(db, {"owner_id": user_id})
    if role == "patient":
        ensure_patient(db, user_id)
    logger.info("Admin %s updated user %s: %s", admin_id, user_id, sorted(changes))
    return db["user"].find_one({"_id": user["_id"]})


def deactivate_user(db: Database, user_id: str, admin_id: str) -> None:
    if user_id == admin_id:
        raise InvalidInput("Cannot delete your own account")
    user = get_user(db, user_id)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_active": False, "updated_at": now()}})
    if user["role"] == "pharmacist":
        deactivate_pharmacies(db, {"owner_id": user_id})
    logger.info("Admin %s deactivated user %s (%s)", admin_id, user_id, user["role"])


def stats(db: Database) -> Dict[str, Any]:
    users = db["user"]
    pharmacies = db["pharmacy"]
    return {
        "users": {
            "total": users.count_documents({}),
            "patients": users.count_documents({"role": "patient"}),
            "pharmacists": users.count_documents({"role": "pharmacist"}),
            "admins": users.count_documents({"role": "admin"}),
        },
        "pharmacies": {
            "total": pharmacies.count_documents({}),
            "draft": pharmacies.count_documents({"status": "draft"}),
            "pending": pharmacies.count_documents({"status": "pending_approval"}),
            "approved": pharmacies.count_documents({"status": "approved"}),
            "rejected": pharmacies.count_documents({"status": "rejected"}),
        },
        "drugs": db["drug"].count_documents({"is_active": True}),
        "orders": db["order"].count_documents({}),
    }
