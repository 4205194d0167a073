import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

from fastapi import Body, Depends, FastAPI, File, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

import accounts
import admin
import catalog
import database
import inventory
import onboarding
import orders
import pharmacies
from config import settings
from database import get_db, serialize
from errors import register_exception_handlers
from schemas import (
    Contact, DeliveryAddress, DrugForm, LatLng, OperatingHours, OrderStatus,
    PaymentMethod, PharmacyAddress, Prescription, PriceUnit, Strength, collection_names,
)
from search import Origin, SearchFilters, search_availability
from security import get_current_account, require_role

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
        except PyMongoError:
            logger.exception("Could not create MongoDB indexes")
    yield


# FastAPI app
app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Static files for uploaded certificates
os.makedirs(os.path.join(settings.STATIC_DIR, onboarding.CERTIFICATES_SUBDIR), exist_ok=True)
app.mount("/static", StaticFiles(directory=settings.STATIC_DIR), name="static")

Pharmacist = Depends(require_role("pharmacist"))
Patient = Depends(require_role("patient"))
Admin = Depends(require_role("admin"))


@app.get("/")
def read_root():
    return {"app": settings.PROJECT_NAME, "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["collections"] = database.db.list_collection_names()
            response["connection_status"] = "Connected"
            response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️  Error: {str(e)[:80]}"
    return response


@app.get("/schema")
def get_schema_info():
    return collection_names()


# Auth
class RegisterBody(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    role: Literal["patient", "pharmacist"] = "patient"


class LoginBody(BaseModel):
    email: EmailStr
    password: str


@app.post("/auth/register", status_code=201)
def register(body: RegisterBody, db: Database = Depends(get_db)):
    return accounts.register(db, body.model_dump())


@app.post("/auth/login")
def login(body: LoginBody, db: Database = Depends(get_db)):
    return accounts.login(db, body.email, body.password)


@app.get("/auth/check-email")
def check_email(email: Optional[str] = None, db: Database = Depends(get_db)):
    return {"available": accounts.email_available(db, email)}


@app.get("/auth/me")
def me(account: dict = Depends(get_current_account), db: Database = Depends(get_db)):
    return serialize(accounts.get_user(db, account["id"]))


# Drug availability search
class SearchBody(BaseModel):
    search_term: Optional[str] = None
    category: Optional[str] = None
    filters: SearchFilters = Field(default_factory=SearchFilters)
    user_location: Optional[Origin] = None


@app.post("/search")
def search(body: SearchBody, db: Database = Depends(get_db)):
    results = search_availability(db, body.search_term, body.category, body.filters, body.user_location)
    return {"items": [r.model_dump() for r in results], "total": len(results)}


@app.get("/drugs/availability")
def drug_availability(
    q: Optional[str] = None,
    category: Optional[str] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    distance_km: Optional[float] = None,
    in_stock_only: bool = True,
    max_price: Optional[float] = None,
    db: Database = Depends(get_db),
):
    origin = Origin(lat=lat, lng=lng) if lat is not None and lng is not None else None
    filters = SearchFilters(distance_km=distance_km, in_stock_only=in_stock_only, max_price=max_price)
    results = search_availability(db, q, category, filters, origin, require_term=True)
    return {"items": [r.model_dump() for r in results], "total": len(results)}


# Pharmacy onboarding
class PharmacyProfileBody(BaseModel):
    name: Optional[str] = None
    license_number: Optional[str] = None
    address: Optional[PharmacyAddress] = None
    contact: Optional[Contact] = None
    operating_hours: Optional[OperatingHours] = None
    services: Optional[List[str]] = None
    description: Optional[str] = None
    location: Optional[LatLng] = None


class LocationBody(BaseModel):
    lat: float
    lng: float
    address: Optional[str] = None


def _save_profile(db: Database, owner_id: str, body: PharmacyProfileBody) -> None:
    onboarding.save_profile(db, owner_id, body.model_dump(exclude={"location"}, exclude_none=True))
    if body.location is not None:
        onboarding.set_location(db, owner_id, body.location.lat, body.location.lng)


@app.get("/onboarding/status")
def onboarding_status(me: dict = Pharmacist, db: Database = Depends(get_db)):
    return onboarding.get_status(db, me["id"])


@app.get("/onboarding/profile")
def onboarding_profile(me: dict = Pharmacist, db: Database = Depends(get_db)):
    return serialize(onboarding.get_owned_pharmacy(db, me["id"]))


@app.post("/onboarding/profile")
def save_pharmacy_profile(body: PharmacyProfileBody, me: dict = Pharmacist, db: Database = Depends(get_db)):
    _save_profile(db, me["id"], body)
    return serialize(onboarding.get_owned_pharmacy(db, me["id"]))


@app.post("/onboarding/submit")
def submit_pharmacy(me: dict = Pharmacist, db: Database = Depends(get_db)):
    return serialize(onboarding.submit(db, me["id"]))


@app.post("/onboarding/complete-profile")
def complete_pharmacy_profile(body: PharmacyProfileBody, me: dict = Pharmacist, db: Database = Depends(get_db)):
    _save_profile(db, me["id"], body)
    return {"message": "Pharmacy profile submitted for approval", "pharmacy": serialize(onboarding.submit(db, me["id"]))}


@app.post("/onboarding/certificates")
def upload_certificates(files: List[UploadFile] = File(...), me: dict = Pharmacist, db: Database = Depends(get_db)):
    return {"certificates": onboarding.add_certificates(db, me["id"], files)}


@app.post("/onboarding/location")
def set_pharmacy_location(body: LocationBody, me: dict = Pharmacist, db: Database = Depends(get_db)):
    return serialize(onboarding.set_location(db, me["id"], body.lat, body.lng, body.address))


@app.get("/onboarding/location")
def pharmacy_location_status(me: dict = Pharmacist, db: Database = Depends(get_db)):
    return onboarding.location_status(db, me["id"])


# Pharmacies
@app.get("/pharmacies")
def list_pharmacies(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    max_distance_km: float = settings.DEFAULT_SEARCH_RADIUS_KM,
    search: Optional[str] = None,
    city: Optional[str] = None,
    service: Optional[str] = None,
    page: int = 1,
    limit: int = Query(10, ge=1, le=100),
    db: Database = Depends(get_db),
):
    return pharmacies.list_public(db, lat, lng, max_distance_km, search, city, service, page, limit)


@app.get("/pharmacies/{pharmacy_id}")
def get_pharmacy(pharmacy_id: str, db: Database = Depends(get_db)):
    return serialize(pharmacies.get_public(db, pharmacy_id))


@app.put("/pharmacies/{pharmacy_id}")
def update_pharmacy(
    pharmacy_id: str,
    changes: Dict[str, Any] = Body(...),
    me: dict = Depends(get_current_account),
    db: Database = Depends(get_db),
):
    return serialize(pharmacies.update_profile(db, pharmacy_id, me, changes))


@app.delete("/pharmacies/{pharmacy_id}")
def delete_pharmacy(pharmacy_id: str, me: dict = Depends(get_current_account), db: Database = Depends(get_db)):
    pharmacies.deactivate(db, pharmacy_id, me)
    return {"message": "Pharmacy deactivated"}


class RejectBody(BaseModel):
    rejection_reason: Optional[str] = None


@app.put("/pharmacies/{pharmacy_id}/approve")
def approve_pharmacy(pharmacy_id: str, me: dict = Admin, db: Database = Depends(get_db)):
    return {"message": "Pharmacy approved", "pharmacy": serialize(onboarding.approve(db, pharmacy_id, me["id"]))}


@app.put("/pharmacies/{pharmacy_id}/reject")
def reject_pharmacy(pharmacy_id: str, body: RejectBody, me: dict = Admin, db: Database = Depends(get_db)):
    pharmacy = onboarding.reject(db, pharmacy_id, me["id"], body.rejection_reason)
    return {"message": "Pharmacy rejected", "pharmacy": serialize(pharmacy)}


@app.get("/pharmacies/{pharmacy_id}/inventory")
def pharmacy_inventory(
    pharmacy_id: str,
    in_stock: Optional[bool] = None,
    search: Optional[str] = None,
    category: Optional[str] = None,
    page: int = 1,
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
):
    pharmacies.get_public(db, pharmacy_id)
    return inventory.list_for_pharmacy(db, pharmacy_id, page, limit, in_stock, search, category)


# Drug catalog
class DrugBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    generic_name: Optional[str] = None
    brand: Optional[str] = None
    description: Optional[str] = None
    category: str = Field(..., min_length=1, max_length=50)
    form: DrugForm
    strength: Optional[Strength] = None
    prescription_required: bool = False
    manufacturer: Optional[str] = None
    barcode: Optional[str] = None
    dosage_instructions: Optional[str] = None


@app.post("/drugs", status_code=201)
def create_drug(body: DrugBody, me: dict = Pharmacist, db: Database = Depends(get_db)):
    return serialize(catalog.create_drug(db, me["id"], body.model_dump()))


@app.get("/drugs")
def list_drugs(
    search: Optional[str] = None,
    category: Optional[str] = None,
    form: Optional[str] = None,
    prescription_required: Optional[bool] = None,
    page: int = 1,
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
):
    return catalog.list_public(
        db, page, limit, search=search, category=category, form=form, prescription_required=prescription_required,
    )


@app.get("/drugs/mine")
def list_my_drugs(
    search: Optional[str] = None,
    category: Optional[str] = None,
    form: Optional[str] = None,
    prescription_required: Optional[bool] = None,
    page: int = 1,
    limit: int = Query(20, ge=1, le=100),
    me: dict = Pharmacist,
    db: Database = Depends(get_db),
):
    return catalog.list_for_owner(
        db, me["id"], page, limit,
        search=search, category=category, form=form, prescription_required=prescription_required,
    )


@app.get("/drugs/not-in-inventory")
def drugs_not_in_inventory(me: dict = Pharmacist, db: Database = Depends(get_db)):
    items = catalog.list_not_in_inventory(db, me["id"])
    return {"items": items, "total": len(items)}


@app.get("/drugs/{drug_id}")
def get_drug(drug_id: str, db: Database = Depends(get_db)):
    return catalog.drug_detail(db, drug_id)


@app.put("/drugs/{drug_id}")
def update_drug(drug_id: str, changes: Dict[str, Any] = Body(...), me: dict = Pharmacist, db: Database = Depends(get_db)):
    return serialize(catalog.update_drug(db, me["id"], drug_id, changes))


@app.delete("/drugs/{drug_id}")
def delete_drug(drug_id: str, me: dict = Pharmacist, db: Database = Depends(get_db)):
    catalog.delete_drug(db, me["id"], drug_id)
    return {"message": "Drug deleted"}


# Inventory
class InventoryBody(BaseModel):
    drug_id: str
    price: float = Field(..., ge=0)
    price_unit: PriceUnit = "dose"
    quantity: int = Field(0, ge=0)
    discount: float = Field(0, ge=0, le=100)
    is_available: bool = True


@app.post("/inventory", status_code=201)
def add_inventory(body: InventoryBody, me: dict = Pharmacist, db: Database = Depends(get_db)):
    return serialize(inventory.add_item(db, me["id"], body.model_dump()))


@app.put("/inventory/{inventory_id}")
def update_inventory(
    inventory_id: str,
    changes: Dict[str, Any] = Body(...),
    me: dict = Pharmacist,
    db: Database = Depends(get_db),
):
    return serialize(inventory.update_item(db, me["id"], inventory_id, changes))


# Orders
class OrderLine(BaseModel):
    inventory_id: str
    quantity: int = Field(..., ge=1)


class CreateOrderBody(BaseModel):
    pharmacy_id: str
    items: List[OrderLine]
    delivery_option: Literal["pickup", "delivery"]
    delivery_address: Optional[DeliveryAddress] = None
    payment_method: PaymentMethod = "cash"
    prescription: Optional[Prescription] = None
    patient_notes: Optional[str] = None


class OrderStatusBody(BaseModel):
    status: OrderStatus
    pharmacy_notes: Optional[str] = None


@app.post("/orders", status_code=201)
def create_order(body: CreateOrderBody, me: dict = Patient, db: Database = Depends(get_db)):
    return orders.order_out(orders.create_order(db, me["id"], body.model_dump()))


@app.get("/orders/mine")
def my_orders(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = Query(10, ge=1, le=100),
    me: dict = Patient,
    db: Database = Depends(get_db),
):
    return orders.list_for_patient(db, me["id"], page, limit, status)


@app.get("/orders/pharmacy")
def pharmacy_orders(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = Query(10, ge=1, le=100),
    me: dict = Pharmacist,
    db: Database = Depends(get_db),
):
    return orders.list_for_pharmacist(db, me["id"], page, limit, status)


@app.get("/orders/{order_id}")
def get_order(order_id: str, me: dict = Depends(get_current_account), db: Database = Depends(get_db)):
    return orders.order_out(orders.get_order(db, order_id, me))


@app.put("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    body: OrderStatusBody,
    me: dict = Depends(get_current_account),
    db: Database = Depends(get_db),
):
    return orders.order_out(orders.update_status(db, order_id, me, body.status, body.pharmacy_notes))


# Patients
class AddressBody(BaseModel):
    label: Literal["home", "work", "other"]
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    location: Optional[LatLng] = None
    is_default: bool = False


class AddressUpdateBody(BaseModel):
    label: Optional[Literal["home", "work", "other"]] = None
    address: Optional[str] = None
    city: Optional[str] = None
    location: Optional[LatLng] = None
    is_default: Optional[bool] = None


@app.get("/patients/profile")
def patient_profile(me: dict = Patient, db: Database = Depends(get_db)):
    return accounts.profile(db, me["id"])


@app.get("/patients/addresses")
def list_addresses(me: dict = Patient, db: Database = Depends(get_db)):
    return {"items": accounts.list_addresses(db, me["id"])}


@app.post("/patients/addresses", status_code=201)
def add_address(body: AddressBody, me: dict = Patient, db: Database = Depends(get_db)):
    return accounts.add_address(db, me["id"], body.model_dump())


@app.put("/patients/addresses/{address_id}")
def update_address(address_id: str, body: AddressUpdateBody, me: dict = Patient, db: Database = Depends(get_db)):
    return accounts.update_address(db, me["id"], address_id, body.model_dump())


@app.delete("/patients/addresses/{address_id}")
def delete_address(address_id: str, me: dict = Patient, db: Database = Depends(get_db)):
    accounts.delete_address(db, me["id"], address_id)
    return {"message": "Address deleted"}


@app.patch("/patients/addresses/{address_id}/default")
def set_default_address(address_id: str, me: dict = Patient, db: Database = Depends(get_db)):
    return accounts.set_default_address(db, me["id"], address_id)


@app.get("/patients/favorites")
def list_favorites(me: dict = Patient, db: Database = Depends(get_db)):
    return {"items": accounts.list_favorites(db, me["id"])}


@app.post("/patients/favorites/{pharmacy_id}/toggle")
def toggle_favorite(pharmacy_id: str, me: dict = Patient, db: Database = Depends(get_db)):
    return accounts.toggle_favorite(db, me["id"], pharmacy_id)


# Admin
@app.get("/admin/pharmacies")
def admin_pharmacies(
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = Query(10, ge=1, le=100),
    _: dict = Admin,
    db: Database = Depends(get_db),
):
    return admin.list_pharmacies(db, status, search, page, limit)


@app.get("/admin/pharmacies/pending")
def admin_pending_pharmacies(
    page: int = 1,
    limit: int = Query(10, ge=1, le=100),
    _: dict = Admin,
    db: Database = Depends(get_db),
):
    return admin.list_pharmacies(db, onboarding.PENDING, None, page, limit)


@app.get("/admin/users")
def admin_users(
    role: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = Query(10, ge=1, le=100),
    _: dict = Admin,
    db: Database = Depends(get_db),
):
    return admin.list_users(db, role, search, page, limit)


@app.get("/admin/users/{user_id}")
def admin_user_detail(user_id: str, _: dict = Admin, db: Database = Depends(get_db)):
    return admin.get_user_detail(db, user_id)


@app.put("/admin/users/{user_id}")
def admin_update_user(
    user_id: str,
    changes: Dict[str, Any] = Body(...),
    me: dict = Admin,
    db: Database = Depends(get_db),
):
    return serialize(admin.update_user(db, user_id, me["id"], changes))


@app.delete("/admin/users/{user_id}")
def admin_delete_user(user_id: str, me: dict = Admin, db: Database = Depends(get_db)):
    admin.deactivate_user(db, user_id, me["id"])
    return {"message": "User deactivated"}


@app.get("/admin/stats")
def admin_stats(_: dict = Admin, db: Database = Depends(get_db)):
    return admin.stats(db)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
