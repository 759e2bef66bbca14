import os
import re
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any

import stripe
from bson import ObjectId
from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

import database
from database import get_db, create_document, get_documents, oid, serialize, inserted, updated, deleted, now
from logger import logger, setup_logging
from schemas import (
    User, Service, Booking, Payment,
    Role, WorkStatus, ServiceStatus, SortOrder, ServiceSortField, BookingSortField,
    SignInBody, RoleBody, ServiceUpdate, BookingCreate, BookingUpdate, AssignBody,
    DecoratorStatusBody, CheckoutBody, PaymentSuccessBody,
)
from security import get_current_email, require_admin, require_decorator

CLIENT_DOMAIN = os.getenv("CLIENT_DOMAIN", "http://localhost:5173")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
stripe.api_key = os.getenv("STRIPE_SECRET", "")

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting StyleDecor API")
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
        except PyMongoError as e:
            logger.error("Could not ensure indexes: {}", e)
    else:
        logger.warning("DATABASE_URL not set, store-backed routes will answer 503")
    yield
    logger.info("Shutting down StyleDecor API")


app = FastAPI(title="StyleDecor API", version="0.1.0", lifespan=lifespan)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        start = time.perf_counter()
        with logger.contextualize(request_id=request_id):
            try:
                response = await call_next(request)
            except Exception:
                duration_ms = (time.perf_counter() - start) * 1000
                logger.info("{} {} -> 500 ({:.1f} ms)", request.method, request.url.path, duration_ms)
                raise
            duration_ms = (time.perf_counter() - start) * 1000
            logger.info("{} {} -> {} ({:.1f} ms)", request.method, request.url.path, response.status_code, duration_ms)
        response.headers["X-Request-Id"] = request_id
        return response


app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[CLIENT_DOMAIN, "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------ Errors ------------------

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"message": "Validation error", "detail": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.opt(exception=exc).error("Unhandled error on {} {}", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal Server Error"})


def _find(db: Database, collection: str, doc_id: str, label: str) -> Dict[str, Any]:
    doc = db[collection].find_one({"_id": oid(doc_id)})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def _direction(order: str) -> int:
    return ASCENDING if order == "asc" else DESCENDING


# ------------------ Users ------------------

@app.get("/users")
def list_users(
    admin: Dict[str, Any] = Depends(require_admin),
    limit: int = Query(10, ge=1, le=100),
    skip: int = Query(0, ge=0),
    role: Optional[Role] = None,
    work_status: Optional[WorkStatus] = None,
    db: Database = Depends(get_db),
):
    q: Dict[str, Any] = {"email": {"$ne": admin["email"]}}
    if role:
        q["role"] = role
    if work_status:
        q["work_status"] = work_status
    results = get_documents(db, "user", q, sort=[("_id", ASCENDING)], skip=skip, limit=limit)
    return {"results": results, "total": db["user"].count_documents(q)}


@app.get("/user/role")
def get_role(email: str = Depends(get_current_email), db: Database = Depends(get_db)):
    u = db["user"].find_one({"email": email}, {"role": 1})
    return {"role": u.get("role") if u else None}


@app.post("/users")
def sign_in(body: SignInBody, db: Database = Depends(get_db)):
    email = body.email.lower()
    stamp = now()
    touch = {"$set": {"last_loggedIn": stamp}}
    if db["user"].find_one({"email": email}):
        return updated(db["user"].update_one({"email": email}, touch))

    user = User(email=email, name=body.name, image=body.image)
    data = {**user.model_dump(mode="json", exclude_none=True), "created_at": stamp, "last_loggedIn": stamp}
    try:
        user_id = create_document(db, "user", data)
    except DuplicateKeyError:
        # Lost a race with a concurrent first sign-in
        return updated(db["user"].update_one({"email": email}, touch))
    logger.info("Registered {}", email)
    return inserted(user_id)


@app.patch("/user/{user_id}/role")
def update_role(user_id: str, body: RoleBody, admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    # Any role change also puts the account back to available
    result = db["user"].update_one({"_id": oid(user_id)}, {"$set": {"role": body.role, "work_status": "available"}})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("{} set role of user {} to {}", admin["email"], user_id, body.role)
    return updated(result)


# ------------------ Catalog ------------------

@app.get("/decorators")
def list_decorators(db: Database = Depends(get_db)):
    return get_documents(db, "user", {"role": "decorator"})


@app.get("/services")
def list_services(
    searchText: Optional[str] = None,
    sort: ServiceSortField = "name",
    order: SortOrder = "asc",
    db: Database = Depends(get_db),
):
    q: Dict[str, Any] = {}
    if searchText:
        q["name"] = {"$regex": re.escape(searchText), "$options": "i"}
    return get_documents(db, "service", q, sort=[(sort, _direction(order))])


@app.get("/services/booked")
def booked_services(db: Database = Depends(get_db)):
    pipeline = [
        {"$group": {"_id": "$service_name", "count": {"$sum": 1}}},
        {"$sort": {"count": -1, "_id": 1}},
    ]
    return [{"service_name": r["_id"], "count": r["count"]} for r in db["booking"].aggregate(pipeline)]


@app.get("/service/{service_id}")
def get_service(service_id: str, db: Database = Depends(get_db)):
    return serialize(_find(db, "service", service_id, "Service"))


@app.post("/services")
def create_service(body: Service, admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    service_id = create_document(db, "service", body)
    logger.info("{} created service {} ({})", admin["email"], service_id, body.name)
    return inserted(service_id)


@app.patch("/services/{service_id}")
def update_service(service_id: str, body: ServiceUpdate, admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    fields = body.model_dump(mode="json", exclude_none=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    return updated(db["service"].update_one({"_id": oid(service_id)}, {"$set": fields}))


@app.delete("/services/{service_id}")
def delete_service(service_id: str, admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    result = db["service"].delete_one({"_id": oid(service_id)})
    logger.info("{} deleted service {}", admin["email"], service_id)
    return deleted(result)


# ------------------ Bookings ------------------

@app.get("/bookings")
def list_bookings(
    email: str = Depends(get_current_email),
    status: Optional[ServiceStatus] = None,
    sort: BookingSortField = "created_at",
    order: SortOrder = "desc",
    limit: int = Query(10, ge=1, le=100),
    skip: int = Query(0, ge=0),
    db: Database = Depends(get_db),
):
    q: Dict[str, Any] = {}
    if status:
        q["service_status"] = status
    results = get_documents(db, "booking", q, sort=[(sort, _direction(order)), ("_id", ASCENDING)], skip=skip, limit=limit)
    return {"results": results, "total": db["booking"].count_documents(q)}


@app.get("/user-bookings")
def my_bookings(email: str = Depends(get_current_email), db: Database = Depends(get_db)):
    return get_documents(db, "booking", {"customer_email": email}, sort=[("created_at", DESCENDING)])


@app.post("/booking")
def create_booking(body: BookingCreate, email: str = Depends(get_current_email), db: Database = Depends(get_db)):
    # Status fields always start from their defaults
    booking = Booking(**body.model_dump(), customer_email=email)
    booking_id = create_document(db, "booking", booking)
    logger.info("{} booked {} ({})", email, body.service_name, booking_id)
    return inserted(booking_id)


@app.patch("/booking/{booking_id}")
def update_booking(booking_id: str, body: BookingUpdate, email: str = Depends(get_current_email), db: Database = Depends(get_db)):
    booking = _find(db, "booking", booking_id, "Booking")
    if booking.get("customer_email") != email:
        caller = db["user"].find_one({"email": email}, {"role": 1})
        if not caller or caller.get("role") != "admin":
            raise HTTPException(status_code=403, detail="Not your booking")
    fields = body.model_dump(mode="json", exclude_none=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    return updated(db["booking"].update_one({"_id": booking["_id"]}, {"$set": fields}))


ASSIGNMENT_FIELDS = ("service_status", "decorator_id", "decorator_name", "decorator_email")
CLOSED_STATUSES = ("completed", "cancelled")
# Statuses from which the assigned decorator may move the booking on
OPEN_STATUSES = ("assigned", "planning", "materials_prepared", "on_the_way", "setup_in_progress")


def _restore_assignment(db: Database, booking: Dict[str, Any], decorator: Optional[Dict[str, Any]] = None) -> None:
    update: Dict[str, Any] = {}
    kept = {k: booking[k] for k in ASSIGNMENT_FIELDS if k in booking}
    dropped = {k: "" for k in ASSIGNMENT_FIELDS if k not in booking}
    if kept:
        update["$set"] = kept
    if dropped:
        update["$unset"] = dropped
    db["booking"].update_one({"_id": booking["_id"]}, update)
    if decorator is not None:
        if "work_status" in decorator:
            db["user"].update_one({"_id": decorator["_id"]}, {"$set": {"work_status": decorator["work_status"]}})
        else:
            db["user"].update_one({"_id": decorator["_id"]}, {"$unset": {"work_status": ""}})


@app.patch("/booking/{booking_id}/assigned")
def assign_decorator(booking_id: str, body: AssignBody, admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    booking = _find(db, "booking", booking_id, "Booking")
    if booking.get("service_status") in CLOSED_STATUSES:
        raise HTTPException(status_code=409, detail=f"Booking is already {booking['service_status']}")
    decorator_oid = oid(body.decorator_id)
    decorator = db["user"].find_one({"_id": decorator_oid, "role": "decorator"})
    if not decorator:
        raise HTTPException(status_code=404, detail="Decorator not found")
    previous_id = booking.get("decorator_id")
    previous_oid = oid(previous_id) if previous_id and previous_id != body.decorator_id else None

    booking_result = db["booking"].update_one(
        {"_id": booking["_id"]},
        {"$set": {"service_status": "assigned", **body.model_dump(mode="json")}},
    )
    # Later writes; undo everything if one does not land
    marked = False
    released = None
    try:
        decorator_result = db["user"].update_one({"_id": decorator_oid}, {"$set": {"work_status": "in_service"}})
        marked = True
        if previous_oid is not None:
            released = updated(db["user"].update_one({"_id": previous_oid}, {"$set": {"work_status": "available"}}))
    except PyMongoError:
        logger.exception("Decorator update for booking {} failed, restoring previous assignment", booking_id)
        _restore_assignment(db, booking, decorator if marked else None)
        raise
    if previous_oid is not None:
        logger.info("Released decorator {} from booking {}", previous_id, booking_id)
    logger.info("{} assigned booking {} to {}", admin["email"], booking_id, body.decorator_email)
    return {"booking": updated(booking_result), "decorator": updated(decorator_result), "released": released}


@app.patch("/services/decorators/{booking_id}")
def update_status_by_decorator(
    booking_id: str,
    body: DecoratorStatusBody,
    decorator: Dict[str, Any] = Depends(require_decorator),
    db: Database = Depends(get_db),
):
    booking = _find(db, "booking", booking_id, "Booking")
    if (booking.get("decorator_email") or "").lower() != decorator["email"]:
        raise HTTPException(status_code=403, detail="Booking is not assigned to you")
    current = booking.get("service_status")
    if current in CLOSED_STATUSES:
        raise HTTPException(status_code=409, detail=f"Booking is already {current}")
    if current not in OPEN_STATUSES:
        raise HTTPException(status_code=409, detail="Booking has not been assigned yet")

    booking_result = db["booking"].update_one({"_id": booking["_id"]}, {"$set": {"service_status": body.service_status}})
    decorator_result = None
    if body.service_status == "completed":
        decorator_result = updated(db["user"].update_one({"_id": decorator["_id"]}, {"$set": {"work_status": "available"}}))
        logger.info("{} completed booking {}", decorator["email"], booking_id)
    return {"booking": updated(booking_result), "decorator": decorator_result}


@app.delete("/booking/{booking_id}")
def delete_booking(booking_id: str, email: str = Depends(get_current_email), db: Database = Depends(get_db)):
    result = db["booking"].delete_one({"_id": oid(booking_id)})
    logger.info("{} deleted booking {}", email, booking_id)
    return deleted(result)


# ------------------ Payments ------------------

@app.post("/create-checkout-session")
def create_checkout_session(body: CheckoutBody, email: str = Depends(get_current_email), db: Database = Depends(get_db)):
    booking = _find(db, "booking", body.booking_id, "Booking")
    if booking.get("customer_email") != email:
        raise HTTPException(status_code=403, detail="Not your booking")
    if booking.get("payment_status") == "paid":
        raise HTTPException(status_code=409, detail="Booking already paid")
    if not booking.get("price"):
        raise HTTPException(status_code=400, detail="Booking has no price")

    try:
        session = stripe.checkout.Session.create(
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": PAYMENT_CURRENCY,
                    "unit_amount": int(round(booking["price"] * 100)),
                    "product_data": {"name": booking.get("service_name", "Decoration service")},
                },
                "quantity": 1,
            }],
            customer_email=email,
            metadata={"booking_id": body.booking_id},
            success_url=f"{CLIENT_DOMAIN}/dashboard/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{CLIENT_DOMAIN}/dashboard/my-bookings",
        )
    except stripe.StripeError as e:
        logger.error("Stripe checkout failed for booking {}: {}", body.booking_id, e)
        raise HTTPException(status_code=502, detail="Payment gateway error")
    return {"url": session["url"]}


def _record_payment(db: Database, session: Dict[str, Any]) -> bool:
    """Mark the booking behind a paid checkout session as paid. Returns False when nothing was recorded."""
    transaction_id = session.get("id")
    booking_id = (session.get("metadata") or {}).get("booking_id")
    if not transaction_id or not booking_id:
        logger.warning("Checkout session {} carries no booking reference, skipped", transaction_id)
        return False
    if db["payment"].find_one({"transaction_id": transaction_id}):
        return False
    booking = db["booking"].find_one({"_id": oid(booking_id)}) if ObjectId.is_valid(booking_id) else None
    if not booking:
        logger.warning("Checkout session {} references unknown booking {}", transaction_id, booking_id)
        return False

    payment = Payment(
        booking_id=booking_id,
        customer_email=booking["customer_email"],
        amount=(session.get("amount_total") or 0) / 100,
        currency=session.get("currency") or PAYMENT_CURRENCY,
        transaction_id=transaction_id,
    )
    try:
        create_document(db, "payment", payment)
    except DuplicateKeyError:
        # A concurrent delivery of the same session got there first
        return False
    db["booking"].update_one({"_id": booking["_id"]}, {"$set": {"payment_status": "paid"}})
    logger.info("Booking {} paid ({})", booking_id, transaction_id)
    return True


@app.patch("/payment-success")
def confirm_payment(body: PaymentSuccessBody, email: str = Depends(get_current_email), db: Database = Depends(get_db)):
    try:
        session = stripe.checkout.Session.retrieve(body.session_id)
    except stripe.StripeError as e:
        logger.error("Stripe lookup failed for session {}: {}", body.session_id, e)
        raise HTTPException(status_code=502, detail="Payment gateway error")
    if session.get("payment_status") != "paid":
        raise HTTPException(status_code=400, detail="Payment not completed")

    booking_id = (session.get("metadata") or {}).get("booking_id")
    if not booking_id:
        raise HTTPException(status_code=404, detail="Booking not found")
    booking = _find(db, "booking", booking_id, "Booking")
    if booking.get("customer_email") != email:
        raise HTTPException(status_code=403, detail="Not your booking")
    recorded = _record_payment(db, session)
    return {"recorded": recorded, "transaction_id": session["id"], "booking_id": booking_id}


@app.post("/payments/webhook/stripe")
async def stripe_webhook(request: Request, db: Database = Depends(get_db)):
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    try:
        event = stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Rejected Stripe webhook: {}", e)
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    if event["type"] != "checkout.session.completed":
        return {"received": True}
    recorded = _record_payment(db, event["data"]["object"])
    return {"received": True, "recorded": recorded}


@app.get("/payments")
def my_payments(email: str = Depends(get_current_email), db: Database = Depends(get_db)):
    return get_documents(db, "payment", {"customer_email": email}, sort=[("created_at", DESCENDING)])


# ------------------ Diagnostics ------------------
@app.get("/")
def read_root():
    return {"message": "StyleDecor API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": "Set" if os.getenv("DATABASE_URL") else "Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    if database.db is None:
        return response
    try:
        response["collections"] = database.db.list_collection_names()[:20]
        response["database"] = "Connected & Working"
        response["database_name"] = database.db.name
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
