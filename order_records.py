"""
Order Record: creation and the two order state machines.

``status`` tracks fulfilment and is moved by customers (cancel) and admins.
``paymentStatus`` tracks money and is moved by the payment reconciler. The two
are independent except that a cancelled order accepts no payment change other
than a refund.

Every transition is written with a compare-and-set filter on the value that was
read, so a concurrent writer gets a ConflictError instead of being overwritten.
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel, ConfigDict, Field
from pymongo import ReturnDocument
from pymongo.database import Database

from errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from pricing import PRIMARY_CURRENCY, compute_totals, effective_options, normalize_id, option_id, options_total
from schemas import Address, Order, PaymentDetails, PaymentHistoryEntry, SelectedOption, TimeSlot

logger = logging.getLogger("tidyhome.orders")

STATUS_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"in-progress", "cancelled"},
    "in-progress": {"completed"},
    "completed": set(),
    "cancelled": set(),
}
CANCELLABLE_STATUSES = ("pending", "confirmed")

PAYMENT_TRANSITIONS = {
    "pending": {"processing", "completed", "failed"},
    "processing": {"completed", "failed", "pending"},
    "failed": {"pending", "processing"},
    "completed": {"refunded"},
    "refunded": set(),
}

PAYPAL_CAPTURE_STATUSES = {"COMPLETED": "completed", "DECLINED": "failed"}

_PAYMENT_DETAIL_FIELDS = ("paypalOrderId", "paypalPayerId", "paypalCapture", "cardLast4", "cardBrand")


# Requests


class OptionSelection(BaseModel):
    optionId: str
    quantity: int = Field(..., ge=1)


class CardPayment(BaseModel):
    """Authorization produced by the client's card processor."""
    transactionId: str
    cardLast4: str = Field(..., pattern=r"^\d{4}$")
    cardBrand: Optional[str] = None


class OrderSubmission(BaseModel):
    serviceId: str
    providerId: Optional[str] = None
    selectedOptions: List[OptionSelection] = []
    totalAmount: Optional[float] = None
    tax: Optional[float] = None
    grandTotal: Optional[float] = None
    address: Address
    scheduledDate: date
    timeSlot: TimeSlot = TimeSlot()
    paymentMethod: str = Field("card", pattern="^(card|paypal)$")
    paypalOrderId: Optional[str] = None
    cardPayment: Optional[CardPayment] = None


class PaymentUpdate(BaseModel):
    model_config = ConfigDict(extra="allow")

    paymentStatus: str = Field(..., pattern="^(pending|processing|completed|failed|refunded)$")
    transactionId: Optional[str] = None
    paypalOrderId: Optional[str] = None
    paypalPayerId: Optional[str] = None
    paypalCapture: Optional[Dict[str, Any]] = None
    cardLast4: Optional[str] = None
    cardBrand: Optional[str] = None

    def transaction_id(self) -> Optional[str]:
        if self.transactionId:
            return self.transactionId
        if self.paypalCapture and self.paypalCapture.get("id"):
            return str(self.paypalCapture["id"])
        return None


class PayPalVerification(BaseModel):
    paypalOrderId: str
    paypalPayerId: Optional[str] = None
    captureId: str
    captureStatus: str


# Helpers


def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid ID format")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin"


def is_owner(order: Dict[str, Any], user: Dict[str, Any]) -> bool:
    return normalize_id(order.get("user", "")) == normalize_id(user.get("_id", user.get("id", "")))


def get_order(db: Database, order_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": to_object_id(order_id)})
    if not order:
        raise NotFoundError("Order", order_id)
    return order


def get_order_for(db: Database, order_id: str, user: Dict[str, Any], allow_admin: bool = True) -> Dict[str, Any]:
    order = get_order(db, order_id)
    if is_owner(order, user) or (allow_admin and is_admin(user)):
        return order
    raise PermissionDeniedError("Unauthorized: This order does not belong to you")


def check_status_transition(current: str, requested: str) -> None:
    if requested not in STATUS_TRANSITIONS:
        raise ValidationError("Invalid status")
    if requested not in STATUS_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError("status", current, requested)


def check_payment_transition(order: Dict[str, Any], requested: str) -> None:
    current = order.get("paymentStatus", "pending")
    if requested not in PAYMENT_TRANSITIONS:
        raise ValidationError("Invalid payment status")
    if order.get("status") == "cancelled" and requested != "refunded":
        raise InvalidTransitionError("paymentStatus", current, requested, "order is cancelled")
    if requested != current and requested not in PAYMENT_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError("paymentStatus", current, requested)


def _history_entry(payment_status: str, transaction_id: Optional[str], metadata: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "paymentStatus": payment_status,
        "transactionId": transaction_id,
        "timestamp": _now().isoformat(),
        "metadata": metadata,
    }


def _is_duplicate(order: Dict[str, Any], payment_status: str, transaction_id: Optional[str]) -> bool:
    if order.get("paymentStatus") != payment_status:
        return False
    history = (order.get("paymentDetails") or {}).get("history", [])
    return any(
        h.get("paymentStatus") == payment_status and h.get("transactionId") == transaction_id
        for h in history
    )


# Operations


def create_order(db: Database, user_id: str, submission: OrderSubmission) -> Dict[str, Any]:
    """Validate a submission against the stored catalogue and persist the order.

    Totals are recomputed from stored prices; client totals are only compared.
    """
    service = db["service"].find_one({"_id": to_object_id(submission.serviceId)})
    if not service or service.get("isActive") is False:
        raise NotFoundError("Service", submission.serviceId)

    provider = None
    if submission.providerId:
        provider = db["provider"].find_one({"_id": to_object_id(submission.providerId)})
        if not provider or provider.get("isActive") is False:
            raise NotFoundError("Provider", submission.providerId)
        offered = [normalize_id(s) for s in provider.get("services", [])]
        if offered and normalize_id(service["_id"]) not in offered:
            raise ValidationError("Provider does not offer this service")

    if not submission.selectedOptions:
        raise ValidationError("Please select at least one service option")

    options = {option_id(o): o for o in effective_options(service, provider)}
    quantities: Dict[str, int] = {}
    snapshots: List[SelectedOption] = []
    for selection in submission.selectedOptions:
        key = normalize_id(selection.optionId)
        option = options.get(key)
        if option is None:
            raise ValidationError(f"Option with ID {key} not found in this service")
        if key in quantities:
            raise ValidationError(f"Option with ID {key} selected more than once")
        quantities[key] = selection.quantity
        snapshots.append(SelectedOption(optionId=key, name=option["name"], price=option["price"], quantity=selection.quantity))

    totals = compute_totals(options_total(list(options.values()), quantities))
    for field in ("totalAmount", "tax", "grandTotal"):
        submitted = getattr(submission, field)
        if submitted is not None and abs(submitted - totals[field]) > 0.005:
            logger.warning("Rejected order for user %s: %s %s != %s", user_id, field, submitted, totals[field])
            raise ValidationError("Order total does not match current prices")

    if submission.timeSlot.start >= submission.timeSlot.end:
        raise ValidationError("Time slot must end after it starts")

    details = PaymentDetails()
    payment_status = "pending"
    if submission.paymentMethod == "paypal":
        payment_status = "processing"
        details.paypalOrderId = submission.paypalOrderId
    elif submission.cardPayment:
        payment_status = "completed"
        details.transactionId = submission.cardPayment.transactionId
        details.cardLast4 = submission.cardPayment.cardLast4
        details.cardBrand = submission.cardPayment.cardBrand
    if payment_status != "pending":
        entry = _history_entry(payment_status, details.transactionId, {})
        details.timestamp = entry["timestamp"]
        details.history = [PaymentHistoryEntry(**entry)]

    order = Order(
        user=user_id,
        service=normalize_id(service["_id"]),
        provider=normalize_id(provider["_id"]) if provider else None,
        selectedOptions=snapshots,
        totalAmount=totals["totalAmount"],
        tax=totals["tax"],
        grandTotal=totals["grandTotal"],
        currency=PRIMARY_CURRENCY,
        address=submission.address,
        scheduledDate=submission.scheduledDate.isoformat(),
        timeSlot=submission.timeSlot,
        paymentMethod=submission.paymentMethod,
        paymentStatus=payment_status,
        paymentDetails=details,
    )
    doc = order.model_dump()
    doc["created_at"] = doc["updated_at"] = _now()
    inserted_id = db["order"].insert_one(doc).inserted_id
    logger.info("Order %s created for user %s (%s, paymentStatus=%s)", inserted_id, user_id, submission.paymentMethod, payment_status)
    return db["order"].find_one({"_id": inserted_id})


def update_status(db: Database, order_id: str, requested: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = get_order_for(db, order_id, user)
    if not is_admin(user) and requested != "cancelled":
        raise PermissionDeniedError("Only administrators can move an order forward")
    current = order.get("status", "pending")
    check_status_transition(current, requested)
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": {"status": requested, "updated_at": _now()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError("Order was modified concurrently, reload and retry")
    logger.info("Order %s status %s -> %s", order_id, current, requested)
    return updated


def cancel_order(db: Database, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = get_order_for(db, order_id, user)
    if order.get("status") not in CANCELLABLE_STATUSES:
        raise InvalidTransitionError("status", order.get("status"), "cancelled", f"Cannot cancel order with status: {order.get('status')}")
    return update_status(db, order_id, "cancelled", user)


def update_payment(db: Database, order_id: str, update: PaymentUpdate, user: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
    """Apply a paymentStatus change and record it in paymentDetails.history.

    Returns the order and the paymentStatus it had before this update.
    Repeating an update with the same status and transaction id returns the
    order unchanged. Earlier transaction ids stay in the history.
    """
    return _apply_payment_update(db, get_order_for(db, order_id, user, allow_admin=False), update)


def _apply_payment_update(db: Database, order: Dict[str, Any], update: PaymentUpdate) -> Tuple[Dict[str, Any], str]:
    order_id = str(order["_id"])
    requested = update.paymentStatus
    transaction_id = update.transaction_id()
    if _is_duplicate(order, requested, transaction_id):
        logger.debug("Duplicate payment update for order %s ignored", order_id)
        return order, requested
    check_payment_transition(order, requested)

    current = order.get("paymentStatus", "pending")
    history = (order.get("paymentDetails") or {}).get("history", [])
    metadata = update.model_dump(exclude_none=True, exclude={"paymentStatus"})
    entry = _history_entry(requested, transaction_id, metadata)

    fields: Dict[str, Any] = {
        "paymentStatus": requested,
        "paymentDetails.timestamp": entry["timestamp"],
        "updated_at": _now(),
    }
    if transaction_id:
        fields["paymentDetails.transactionId"] = transaction_id
    for name in _PAYMENT_DETAIL_FIELDS:
        value = getattr(update, name)
        if value is not None:
            fields[f"paymentDetails.{name}"] = value

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "paymentStatus": current, "paymentDetails.history": {"$size": len(history)}},
        {"$set": fields, "$push": {"paymentDetails.history": entry}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        latest = get_order(db, order_id)
        if _is_duplicate(latest, requested, transaction_id):
            return latest, requested
        raise ConflictError("Payment was updated concurrently, reload and retry")
    logger.info("Order %s paymentStatus %s -> %s (txn=%s)", order_id, current, requested, transaction_id)
    return updated, current


def verify_paypal_payment(db: Database, order_id: str, verification: PayPalVerification, user: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
    order = get_order_for(db, order_id, user, allow_admin=False)
    if order.get("paymentMethod") != "paypal":
        raise ValidationError("This order is not using PayPal payment")
    payment_status = PAYPAL_CAPTURE_STATUSES.get(verification.captureStatus.upper(), "processing")
    update = PaymentUpdate(
        paymentStatus=payment_status,
        transactionId=verification.captureId,
        paypalOrderId=verification.paypalOrderId,
        paypalPayerId=verification.paypalPayerId,
        paypalCapture={"id": verification.captureId, "status": verification.captureStatus},
    )
    return _apply_payment_update(db, order, update)


def list_orders(db: Database, filt: Dict[str, Any], page: int = 1, limit: int = 10) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    total = db["order"].count_documents(filt)
    cursor = db["order"].find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    pagination = {"total": total, "page": page, "limit": limit, "pages": (total + limit - 1) // limit}
    return list(cursor), pagination


def delete_order(db: Database, order_id: str) -> None:
    result = db["order"].delete_one({"_id": to_object_id(order_id)})
    if result.deleted_count == 0:
        raise NotFoundError("Order", order_id)
    logger.info("Order %s deleted", order_id)
