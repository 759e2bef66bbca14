"""
Database Schemas for StyleDecor

Each Pydantic model represents a MongoDB collection. Collection name is the lowercase class name.
Request bodies sit below the collection models; update bodies list the only fields a caller may change.
"""
from __future__ import annotations
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, Literal
from datetime import date

Role = Literal["user", "decorator", "admin"]
WorkStatus = Literal["available", "in_service"]
PaymentStatus = Literal["unpaid", "paid"]
ServiceStatus = Literal[
    "pending",
    "assigned",
    "planning",
    "materials_prepared",
    "on_the_way",
    "setup_in_progress",
    "completed",
    "cancelled",
]
# Statuses a decorator may move their own booking into
DecoratorStatus = Literal[
    "planning",
    "materials_prepared",
    "on_the_way",
    "setup_in_progress",
    "completed",
]
SortOrder = Literal["asc", "desc"]
ServiceSortField = Literal["name", "price", "category", "created_at"]
BookingSortField = Literal["created_at", "booking_date", "price", "service_name", "service_status"]


class User(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    image: Optional[str] = None
    role: Role = "user"
    work_status: Optional[WorkStatus] = None

class Service(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    price: float = Field(..., ge=0)
    unit: Optional[str] = Field(None, description="e.g. per sq-ft, per room")
    image: Optional[str] = None

class Booking(BaseModel):
    service_id: str
    service_name: str
    price: Optional[float] = Field(None, ge=0)
    customer_email: EmailStr
    customer_name: Optional[str] = None
    booking_date: Optional[date] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    payment_status: PaymentStatus = "unpaid"
    service_status: ServiceStatus = "pending"
    decorator_id: Optional[str] = None
    decorator_name: Optional[str] = None
    decorator_email: Optional[EmailStr] = None

class Payment(BaseModel):
    booking_id: str
    customer_email: EmailStr
    amount: float
    currency: str = "usd"
    transaction_id: str
    status: Literal["succeeded", "failed"] = "succeeded"


# ------------------ Request bodies ------------------

class SignInBody(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    image: Optional[str] = None

class RoleBody(BaseModel):
    role: Role

class ServiceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    unit: Optional[str] = None
    image: Optional[str] = None

class BookingCreate(BaseModel):
    service_id: str
    service_name: str
    price: Optional[float] = Field(None, ge=0)
    customer_name: Optional[str] = None
    booking_date: Optional[date] = None
    location: Optional[str] = None
    notes: Optional[str] = None

class BookingUpdate(BaseModel):
    customer_name: Optional[str] = None
    booking_date: Optional[date] = None
    location: Optional[str] = None
    notes: Optional[str] = None

class AssignBody(BaseModel):
    decorator_id: str
    decorator_name: str
    decorator_email: EmailStr

class DecoratorStatusBody(BaseModel):
    service_status: DecoratorStatus

class CheckoutBody(BaseModel):
    booking_id: str

class PaymentSuccessBody(BaseModel):
    session_id: str = Field(..., min_length=1)
