"""
Database Schemas for PharmaPin

Each Pydantic model maps to a MongoDB collection (lowercased class name).
References to other documents are stored as hex id strings.
"""
from __future__ import annotations
from typing import Optional, List, Literal, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field, EmailStr

from geo import unset_point

Role = Literal["patient", "pharmacist", "admin"]
PharmacyStatus = Literal["draft", "pending_approval", "approved", "rejected"]
DrugForm = Literal["tablet", "capsule", "syrup", "injection", "ointment", "cream", "drops", "inhaler", "other"]
PriceUnit = Literal["tablet", "capsule", "bottle", "syrup", "injection", "tube", "pack", "dose", "piece", "other"]
OrderStatus = Literal[
    "pending", "confirmed", "processing", "ready_for_pickup",
    "out_for_delivery", "delivered", "cancelled", "refunded",
]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentMethod = Literal["cash", "mpesa", "card", "insurance"]
DeliveryOption = Literal["pickup", "delivery"]


# Shared value objects
class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(default_factory=lambda: unset_point()["coordinates"], min_length=2, max_length=2)


# Accounts
class User(BaseModel):
    email: EmailStr
    password_hash: str
    role: Role = "patient"
    first_name: str
    last_name: str
    phone: Optional[str] = None
    is_active: bool = True


class Address(BaseModel):
    id: str
    label: Literal["home", "work", "other"]
    address: str
    city: str
    location: Optional[GeoPoint] = None
    is_default: bool = False


class Patient(BaseModel):
    user_id: str
    addresses: List[Address] = Field(default_factory=list)
    favorite_pharmacy_ids: List[str] = Field(default_factory=list)


# Pharmacies
class PharmacyAddress(BaseModel):
    address: Optional[str] = None
    city: Optional[str] = None


class Contact(BaseModel):
    phone: Optional[str] = None
    email: Optional[EmailStr] = None


class OperatingHours(BaseModel):
    open: Optional[str] = None
    close: Optional[str] = None
    days: List[str] = Field(default_factory=list)


class Certificate(BaseModel):
    name: str
    file_url: str
    uploaded_at: Optional[datetime] = None


class Pharmacy(BaseModel):
    name: Optional[str] = None
    owner_id: str
    license_number: Optional[str] = None
    address: PharmacyAddress = Field(default_factory=PharmacyAddress)
    location: GeoPoint = Field(default_factory=GeoPoint)
    location_set: bool = False
    contact: Contact = Field(default_factory=Contact)
    operating_hours: Optional[OperatingHours] = None
    services: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    status: PharmacyStatus = "draft"
    is_verified: bool = False
    is_active: bool = True
    rejection_reason: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    certificates: List[Certificate] = Field(default_factory=list)


class PharmacyUpdate(BaseModel):
    """Fields an owner or admin may change after onboarding."""
    address: Optional[PharmacyAddress] = None
    contact: Optional[Contact] = None
    operating_hours: Optional[OperatingHours] = None
    services: Optional[List[str]] = None
    description: Optional[str] = None


class UserUpdate(BaseModel):
    is_active: Optional[bool] = None
    role: Optional[Role] = None


# Catalog
class Strength(BaseModel):
    value: Optional[float] = None
    unit: Optional[str] = None


class Drug(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    generic_name: Optional[str] = Field(None, max_length=100)
    brand: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    category: str = Field(..., min_length=1, max_length=50)
    form: DrugForm
    strength: Optional[Strength] = None
    prescription_required: bool = False
    manufacturer: Optional[str] = None
    barcode: Optional[str] = None
    dosage_instructions: Optional[str] = None
    pharmacy_id: str
    is_active: bool = True


# Stock record per pharmacy for a drug; (pharmacy_id, drug_id) is unique
class Inventory(BaseModel):
    pharmacy_id: str
    drug_id: str
    price: float = Field(..., ge=0)
    price_unit: PriceUnit = "dose"
    quantity: int = Field(0, ge=0)
    discount: float = Field(0, ge=0, le=100)
    is_available: bool = True
    restocked_at: Optional[datetime] = None


# Orders
class OrderItem(BaseModel):
    drug_id: str
    inventory_id: str
    name: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100)  # percent


class DeliveryAddress(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class Prescription(BaseModel):
    images: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class Order(BaseModel):
    order_number: str
    patient_id: str
    pharmacy_id: str
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    discount_amount: float = 0.0
    final_amount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    payment_method: PaymentMethod = "cash"
    delivery_option: DeliveryOption
    delivery_address: Optional[DeliveryAddress] = None
    prescription: Optional[Prescription] = None
    patient_notes: Optional[str] = None
    pharmacy_notes: Optional[str] = None
    actual_delivery: Optional[datetime] = None
    created_at: Optional[datetime] = None


def collection_names() -> Dict[str, Any]:
    return {
        "collections": ["user", "patient", "pharmacy", "drug", "inventory", "order"],
        "description": "Schemas defined in backend for PharmaPin",
    }
