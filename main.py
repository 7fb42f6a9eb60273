import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Header, Request, BackgroundTasks
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import BaseModel, EmailStr, Field
from passlib.context import CryptContext
from bson import ObjectId
from pymongo import ReturnDocument
import jwt

import order_records
from database import db, create_document, get_documents
from errors import ERROR_STATUS_CODES, TidyHomeError
from notifications import send_order_confirmation, send_payment_receipt
from pricing import PRIMARY_CURRENCY, TAX_RATE, effective_options, normalize_id
from order_records import (
    OrderSubmission,
    PaymentUpdate,
    PayPalVerification,
    to_object_id,
)
from schemas import User, Service, ServiceOption, Provider, ORDER_STATUSES

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("tidyhome")

# Security
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret_change_me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "60"))

# Configuration
STORE_NAME = os.getenv("STORE_NAME", "TidyHome")
PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

app = FastAPI(title="TidyHome API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in ALLOWED_ORIGINS] if ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Utilities
class TokenData(BaseModel):
    user_id: str
    email: EmailStr
    role: str


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_token(user_doc: Dict[str, Any]) -> str:
    payload = {
        "sub": str(user_doc.get("_id")),
        "email": user_doc.get("email"),
        "role": user_doc.get("role", "customer"),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=JWT_EXP_MIN),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
        return TokenData(user_id=payload["sub"], email=payload["email"], role=payload.get("role", "customer"))
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")


def serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    for k, v in list(d.items()):
        if isinstance(v, datetime):
            d[k] = v.astimezone(timezone.utc).isoformat() if v.tzinfo else v.replace(tzinfo=timezone.utc).isoformat()
        elif isinstance(v, ObjectId):
            d[k] = str(v)
    return d


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> Optional[Dict[str, Any]]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    token_data = decode_token(token)
    user = db["user"].find_one({"_id": to_object_id(token_data.user_id)})
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def require_user(user: Optional[Dict[str, Any]] = Depends(get_current_user)) -> Dict[str, Any]:
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_role(user: Dict[str, Any], roles: List[str]):
    if user.get("role") not in roles:
        raise HTTPException(status_code=403, detail="Forbidden")


def order_response(order: Dict[str, Any], message: Optional[str] = None) -> Dict[str, Any]:
    body = {"success": True, "order": serialize(order)}
    if message:
        body["message"] = message
    return body


# Error handlers
@app.exception_handler(TidyHomeError)
async def tidyhome_error_handler(request: Request, exc: TidyHomeError):
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        logger.exception("Unhandled domain error: %s", exc)
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": str(exc), "error_type": type(exc).__name__},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail), "error_type": "HTTPException"},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ())[1:])
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "Invalid request"))
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": message, "error_type": "ValidationError"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# Health and config
@app.get("/")
def root():
    return {"name": STORE_NAME, "status": "ok", "database": db is not None}


@app.get("/config")
def get_config():
    return {
        "storeName": STORE_NAME,
        "currency": PRIMARY_CURRENCY,
        "taxRate": TAX_RATE,
        "payments": {"card": True, "paypal": bool(PAYPAL_CLIENT_ID), "paypalClientId": PAYPAL_CLIENT_ID},
    }


# Auth
class RegisterDTO(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginDTO(BaseModel):
    email: EmailStr
    password: str


def _public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": str(doc["_id"]), "name": doc["name"], "email": doc["email"], "role": doc.get("role", "customer")}


@app.post("/auth/register")
def register(data: RegisterDTO):
    existing = db["user"].find_one({"email": data.email.lower()})
    if existing:
        raise HTTPException(status_code=400, detail="Email already in use")
    user = User(name=data.name, email=data.email.lower(), password_hash=hash_password(data.password), role="customer")
    user_id = create_document("user", user)
    doc = db["user"].find_one({"_id": ObjectId(user_id)})
    logger.info("Registered user %s", user_id)
    return {"success": True, "token": create_token(doc), "user": _public_user(doc)}


@app.post("/auth/login")
def login(data: LoginDTO):
    user = db["user"].find_one({"email": data.email.lower()})
    if not user or not verify_password(data.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"success": True, "token": create_token(user), "user": _public_user(user)}


@app.get("/auth/me")
def me(user: Dict[str, Any] = Depends(require_user)):
    return {"success": True, "user": _public_user(user)}


# Services
class OptionDTO(BaseModel):
    id: Optional[str] = None
    name: str
    icon: str
    price: str
    description: Optional[str] = None


class ServiceDTO(BaseModel):
    name: str
    description: str
    type: str
    price: str = "FREE"
    options: List[OptionDTO] = []
    isActive: bool = True


def _service_from_dto(data: ServiceDTO) -> Service:
    options = [
        ServiceOption(id=o.id or str(ObjectId()), name=o.name, icon=o.icon, price=o.price, description=o.description)
        for o in data.options
    ]
    return Service(name=data.name, description=data.description, type=data.type, price=data.price,
                   options=options, isActive=data.isActive)


@app.get("/services")
def list_services(q: Optional[str] = None, type: Optional[str] = None, limit: int = 50):
    query: Dict[str, Any] = {"isActive": {"$ne": False}}
    if type:
        query["type"] = type
    if q:
        query["$or"] = [
            {"name": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
        ]
    services = get_documents("service", query, limit=min(limit, 100))
    return {"success": True, "services": [serialize(s) for s in services]}


@app.get("/services/{service_id}")
def get_service(service_id: str):
    svc = db["service"].find_one({"_id": to_object_id(service_id)})
    if not svc:
        raise HTTPException(status_code=404, detail="Service not found")
    return {"success": True, "service": serialize(svc)}


@app.post("/admin/services", status_code=201)
def create_service(data: ServiceDTO, user: Dict[str, Any] = Depends(require_user)):
    require_role(user, ["admin"])
    service_id = create_document("service", _service_from_dto(data))
    return {"success": True, "service": serialize(db["service"].find_one({"_id": ObjectId(service_id)}))}


@app.put("/admin/services/{service_id}")
def update_service(service_id: str, data: ServiceDTO, user: Dict[str, Any] = Depends(require_user)):
    require_role(user, ["admin"])
    update = _service_from_dto(data).model_dump() | {"updated_at": datetime.now(timezone.utc)}
    svc = db["service"].find_one_and_update({"_id": to_object_id(service_id)}, {"$set": update}, return_document=ReturnDocument.AFTER)
    if not svc:
        raise HTTPException(status_code=404, detail="Service not found")
    return {"success": True, "service": serialize(svc)}


@app.delete("/admin/services/{service_id}")
def delete_service(service_id: str, user: Dict[str, Any] = Depends(require_user)):
    require_role(user, ["admin"])
    result = db["service"].delete_one({"_id": to_object_id(service_id)})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Service not found")
    return {"success": True, "id": service_id, "deleted": True}


# Providers
@app.get("/providers")
def list_providers(service_id: Optional[str] = None):
    query: Dict[str, Any] = {"isActive": {"$ne": False}}
    if service_id:
        query["services"] = service_id
    providers = get_documents("provider", query)
    return {"success": True, "providers": [serialize(p) for p in providers]}


@app.get("/providers/{provider_id}")
def get_provider(provider_id: str):
    provider = db["provider"].find_one({"_id": to_object_id(provider_id)})
    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found")
    return {"success": True, "provider": serialize(provider)}


@app.get("/providers/{provider_id}/services/{service_id}")
def get_provider_service(provider_id: str, service_id: str):
    """The service as this provider sells it: options carry the provider's prices."""
    provider = db["provider"].find_one({"_id": to_object_id(provider_id)})
    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found")
    svc = db["service"].find_one({"_id": to_object_id(service_id)})
    if not svc:
        raise HTTPException(status_code=404, detail="Service not found")
    offered = [normalize_id(s) for s in provider.get("services", [])]
    if offered and service_id not in offered:
        raise HTTPException(status_code=404, detail="Provider does not offer this service")
    svc["options"] = effective_options(svc, provider)
    svc["providerId"] = provider_id
    return {"success": True, "service": serialize(svc)}


@app.post("/admin/providers", status_code=201)
def create_provider(data: Provider, user: Dict[str, Any] = Depends(require_user)):
    require_role(user, ["admin"])
    if db["provider"].find_one({"email": data.email}):
        raise HTTPException(status_code=400, detail="Provider email already in use")
    provider_id = create_document("provider", data)
    return {"success": True, "provider": serialize(db["provider"].find_one({"_id": ObjectId(provider_id)}))}


# Orders
class OrderStatusDTO(BaseModel):
    status: str


@app.post("/orders", status_code=201)
def create_order(data: OrderSubmission, background_tasks: BackgroundTasks, user: Dict[str, Any] = Depends(require_user)):
    order = order_records.create_order(db, str(user["_id"]), data)
    background_tasks.add_task(send_order_confirmation, user.get("email"), order)
    if order["paymentStatus"] == "completed":
        background_tasks.add_task(send_payment_receipt, user.get("email"), order)
    return order_response(order, "Order created successfully")


@app.get("/orders/my-orders")
def list_my_orders(status: Optional[str] = None, page: int = 1, limit: int = 10, user: Dict[str, Any] = Depends(require_user)):
    query: Dict[str, Any] = {"user": str(user["_id"])}
    if status:
        query["status"] = status
    orders, pagination = order_records.list_orders(db, query, page, limit)
    return {"success": True, "orders": [serialize(o) for o in orders], "pagination": pagination}


@app.get("/orders/admin/all")
def list_all_orders(status: Optional[str] = None, page: int = 1, limit: int = 10, user: Dict[str, Any] = Depends(require_user)):
    require_role(user, ["admin"])
    query: Dict[str, Any] = {}
    if status and status != "all":
        if status not in ORDER_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid status")
        query["status"] = status
    orders, pagination = order_records.list_orders(db, query, page, limit)
    return {"success": True, "orders": [serialize(o) for o in orders], "pagination": pagination}


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: Dict[str, Any] = Depends(require_user)):
    return order_response(order_records.get_order_for(db, order_id, user))


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, data: OrderStatusDTO, user: Dict[str, Any] = Depends(require_user)):
    order = order_records.update_status(db, order_id, data.status, user)
    return order_response(order, "Order status updated successfully")


@app.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: Dict[str, Any] = Depends(require_user)):
    order = order_records.cancel_order(db, order_id, user)
    return order_response(order, "Order cancelled successfully")


@app.put("/orders/{order_id}/payment")
def update_payment_status(order_id: str, data: PaymentUpdate, background_tasks: BackgroundTasks, user: Dict[str, Any] = Depends(require_user)):
    order, previous = order_records.update_payment(db, order_id, data, user)
    if order["paymentStatus"] == "completed" and previous != "completed":
        background_tasks.add_task(send_payment_receipt, user.get("email"), order)
    return order_response(order, "Payment status updated successfully")


@app.post("/orders/{order_id}/verify-paypal")
def verify_paypal_payment(order_id: str, data: PayPalVerification, background_tasks: BackgroundTasks, user: Dict[str, Any] = Depends(require_user)):
    order, previous = order_records.verify_paypal_payment(db, order_id, data, user)
    if order["paymentStatus"] == "completed" and previous != "completed":
        background_tasks.add_task(send_payment_receipt, user.get("email"), order)
    return order_response(order, "PayPal payment verification processed")


@app.delete("/orders/{order_id}")
def delete_order(order_id: str, user: Dict[str, Any] = Depends(require_user)):
    require_role(user, ["admin"])
    order_records.delete_order(db, order_id)
    return {"success": True, "message": "Order deleted successfully"}


# Sample seed endpoint (dev only)
@app.post("/dev/seed")
def seed():
    if not db["user"].find_one({"email": "admin@tidyhome.local"}):
        admin = User(name="Admin", email="admin@tidyhome.local", password_hash=hash_password("admin123"), role="admin")
        create_document("user", admin)
    if db["service"].count_documents({}) == 0:
        service = Service(
            name="Home Cleaning",
            description="Regular cleaning for apartments and houses",
            type="home",
            options=[
                ServiceOption(id=str(ObjectId()), name="Bedroom", icon="🛏️", price="€25"),
                ServiceOption(id=str(ObjectId()), name="Bathroom", icon="🛁", price="€20"),
                ServiceOption(id=str(ObjectId()), name="Kitchen", icon="🍳", price="€30"),
            ],
        )
        service_id = create_document("service", service)
        bedroom = service.options[0].id
        create_document("provider", Provider(
            name="Sparkle Co",
            title="Professional cleaners",
            description="Fully insured cleaning company",
            email="hello@sparkle.example",
            type="company",
            services=[service_id],
            optionPrices={service_id: {bedroom: 22}},
            rating=4.8,
            isVerified=True,
        ))
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
