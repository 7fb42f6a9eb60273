"""
Payment reconciliation for a checkout session.

Two payment paths end in the same Order Record:

* Card: validated locally, authorized through a ``CardProcessor`` and sent as a
  single create-order request that records ``paymentStatus=completed``. The
  bundled ``OfflineCardProcessor`` does not talk to a real processor.
* PayPal: driven by the provider button's four callbacks. The order is created
  first (``processing``), its id becomes the PayPal ``reference_id`` and is kept
  in durable storage so a reload between callbacks can still find it.

Known gap: when PayPal has captured the money but the payment update cannot be
written, the order stays ``processing``. Captures are kept in storage under
their own key until their order is updated. ``resume_unreconciled_payment``
replays those updates, and every new PayPal attempt tries them first. The
capture itself is never retried.
"""
import hashlib
import json
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from cart import CardDetails, CartModel, Storage
from errors import CheckoutStateError, CheckoutValidationError, OrderApiError, PaymentProviderError
from order_assembler import require_selected_options
from orders_client import OrdersClient
from pricing import PRIMARY_CURRENCY

logger = logging.getLogger("tidyhome.checkout")

PENDING_ORDER_KEY = "pending-paypal-order"
UNRECONCILED_KEY = "unreconciled-paypal-captures"


class PayPalState(str, Enum):
    IDLE = "idle"
    CREATING = "creating"
    AWAITING_APPROVAL = "awaiting-approval"
    CAPTURING = "capturing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


PAYPAL_TRANSITIONS = {
    PayPalState.IDLE: {PayPalState.CREATING, PayPalState.CAPTURING, PayPalState.FAILED},
    PayPalState.CREATING: {PayPalState.AWAITING_APPROVAL, PayPalState.IDLE, PayPalState.FAILED},
    PayPalState.AWAITING_APPROVAL: {PayPalState.CAPTURING, PayPalState.FAILED, PayPalState.CANCELLED},
    PayPalState.CAPTURING: {PayPalState.COMPLETED, PayPalState.FAILED},
    PayPalState.COMPLETED: {PayPalState.IDLE},
    PayPalState.FAILED: {PayPalState.CREATING, PayPalState.IDLE},
    PayPalState.CANCELLED: {PayPalState.CREATING, PayPalState.IDLE, PayPalState.FAILED},
}


# Collaborators


class CardProcessor(Protocol):
    def authorize(self, card: CardDetails, amount: float, currency: str) -> Dict[str, Any]:
        """Return ``{transactionId, cardLast4, cardBrand}`` or raise PaymentProviderError."""
        ...


class OfflineCardProcessor:
    """Accepts any well-formed card. Stand-in until a real processor is wired in."""

    BRANDS = {"4": "visa", "5": "mastercard", "3": "amex", "6": "discover"}

    def authorize(self, card: CardDetails, amount: float, currency: str) -> Dict[str, Any]:
        digits = card.digits()
        return {
            "transactionId": f"card_{uuid.uuid4().hex}",
            "cardLast4": digits[-4:],
            "cardBrand": self.BRANDS.get(digits[:1], "card"),
        }


class PopupCheck(Protocol):
    def popups_allowed(self) -> bool: ...


class AlwaysAllowPopups:
    def popups_allowed(self) -> bool:
        return True


class PayPalActions(Protocol):
    """The ``actions`` object PayPal hands to createOrder / onApprove.

    Implementations may raise any exception; the session treats every failure
    of these calls as a provider failure.
    """

    def create_order(self, params: Dict[str, Any]) -> str: ...

    def capture_order(self) -> Dict[str, Any]: ...


class PayPalButton(Protocol):
    def close(self) -> None: ...


class PayPalSdk(Protocol):
    def render_buttons(self, create_order: Callable, on_approve: Callable,
                       on_error: Callable, on_cancel: Callable) -> PayPalButton: ...


def _fingerprint(submission: Dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(submission, sort_keys=True, default=str).encode()).hexdigest()


def _first_capture(capture: Dict[str, Any]) -> Dict[str, Any]:
    for unit in capture.get("purchase_units") or []:
        for item in (unit.get("payments") or {}).get("captures") or []:
            return item
    return {}


class CheckoutSession:
    """One customer's checkout: cart, payment method and the payment flows."""

    def __init__(self, cart: CartModel, orders: OrdersClient, storage: Storage,
                 card_processor: Optional[CardProcessor] = None,
                 popup_check: Optional[PopupCheck] = None,
                 paypal_sdk: Optional[PayPalSdk] = None,
                 currency: str = PRIMARY_CURRENCY):
        self.cart = cart
        self.orders = orders
        self.storage = storage
        self.card_processor = card_processor or OfflineCardProcessor()
        self.popup_check = popup_check or AlwaysAllowPopups()
        self.paypal_sdk = paypal_sdk
        self.currency = currency

        self.payment_status = "pending"
        self.paypal_state = PayPalState.IDLE
        self.feedback: List[Tuple[str, str]] = []
        self.completed_order: Optional[Dict[str, Any]] = None
        self.unreconciled = False

        self._pending_order_id: Optional[str] = None
        self._button: Optional[PayPalButton] = None
        self._button_rendered = False

    # Feedback and state

    def notify(self, level: str, message: str) -> None:
        self.feedback.append((level, message))
        logger.log(logging.ERROR if level == "error" else logging.INFO, "checkout %s: %s", level, message)

    def _reject(self, message: str):
        self.notify("error", message)
        raise CheckoutValidationError(message)

    def _move(self, state: PayPalState) -> None:
        if state == self.paypal_state:
            return
        if state not in PAYPAL_TRANSITIONS[self.paypal_state]:
            raise CheckoutStateError(self.paypal_state.value, state.value)
        logger.debug("paypal %s -> %s", self.paypal_state.value, state.value)
        self.paypal_state = state

    # Durable correlation of the in-flight PayPal order

    def _load_pending(self) -> Dict[str, Any]:
        raw = self.storage.get(PENDING_ORDER_KEY)
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable pending PayPal record")
            return {}

    def _remember(self, order_id: str, **fields: Any) -> None:
        self._pending_order_id = order_id
        record = self._load_pending()
        if record.get("orderId") != order_id:
            record = {}
        record.update(fields, orderId=order_id)
        self.storage.set(PENDING_ORDER_KEY, json.dumps(record))

    def _forget(self) -> None:
        self._pending_order_id = None
        self.storage.delete(PENDING_ORDER_KEY)

    # Captures whose order update has not been written yet

    def _load_captures(self) -> List[Dict[str, Any]]:
        raw = self.storage.get(UNRECONCILED_KEY)
        if not raw:
            return []
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Unreadable unreconciled capture record: %s", raw)
            return []

    def _save_captures(self, captures: List[Dict[str, Any]]) -> None:
        if captures:
            self.storage.set(UNRECONCILED_KEY, json.dumps(captures))
        else:
            self.storage.delete(UNRECONCILED_KEY)

    def _keep_capture(self, order_id: str, details: Dict[str, Any]) -> None:
        captures = [c for c in self._load_captures() if c["orderId"] != order_id]
        captures.append({"orderId": order_id, "details": details})
        self._save_captures(captures)

    def _drop_capture(self, order_id: str) -> None:
        self._save_captures([c for c in self._load_captures() if c["orderId"] != order_id])

    def _replay_captures(self) -> List[Dict[str, Any]]:
        """Write every stored capture to its order. Returns the updated orders."""
        reconciled = []
        remaining = []
        for entry in self._load_captures():
            try:
                reconciled.append(self.orders.update_payment(entry["orderId"], "completed", **entry["details"]))
            except OrderApiError as e:
                logger.warning("Order %s is still unreconciled: %s", entry["orderId"], e)
                remaining.append(entry)
                continue
            logger.info("Reconciled PayPal capture for order %s", entry["orderId"])
        self._save_captures(remaining)
        self.unreconciled = bool(remaining)
        return reconciled

    def _resolve_order_id(self, capture: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Order id from memory, then durable storage, then the capture's reference_id."""
        if self._pending_order_id:
            return self._pending_order_id
        stored = self._load_pending().get("orderId")
        if stored:
            return stored
        for unit in (capture or {}).get("purchase_units") or []:
            if unit.get("reference_id"):
                return unit["reference_id"]
        return None

    def _reconcile(self, order_id: Optional[str], payment_status: str) -> None:
        """Best-effort payment update; failures are logged, never raised."""
        if not order_id:
            return
        try:
            self.orders.update_payment(order_id, payment_status)
        except OrderApiError as e:
            logger.warning("Could not set order %s to %s: %s", order_id, payment_status, e)

    # Validation and payment method

    def validate_checkout(self) -> Dict[str, Any]:
        """Local checks before any network call. Returns the order submission."""
        if not self.cart.address_complete():
            self._reject("Please complete all address fields")
        if not self.cart.scheduledDate:
            self._reject("Please choose a date for the cleaning")
        try:
            return require_selected_options(self.cart.prepare_order_submission())
        except CheckoutValidationError as e:
            self._reject(str(e))

    def select_payment_method(self, method: str) -> str:
        """Switch payment method. PayPal needs popups; when they are blocked the
        method falls back to card before any order exists."""
        if method == "paypal" and not self.popup_check.popups_allowed():
            self.cart.set_payment_method("card")
            self.notify("warning", "Popups are blocked in your browser. Allow popups to pay with PayPal, or pay by card.")
        else:
            self.cart.set_payment_method(method)
        self.sync_paypal_button()
        return self.cart.paymentMethod

    def sync_paypal_button(self) -> bool:
        """Mount the PayPal button once per activation. Returns True when it mounted."""
        active = self.cart.paymentMethod == "paypal" and self.cart.address_complete()
        if not active:
            if self._button is not None:
                self._button.close()
            self._button = None
            self._button_rendered = False
            return False
        if self._button_rendered:
            return False
        if self.paypal_sdk is None:
            self.notify("error", "PayPal is not available right now")
            return False
        self._button = self.paypal_sdk.render_buttons(
            create_order=self.on_create_order,
            on_approve=self.on_approve,
            on_error=self.on_error,
            on_cancel=self.on_cancel,
        )
        self._button_rendered = True
        return True

    def _finish(self, order: Dict[str, Any]) -> None:
        self.completed_order = order
        self.cart.clear()
        self.cart.save(self.storage)
        self.notify("success", "Order placed successfully!")

    # Card

    def pay_with_card(self) -> Dict[str, Any]:
        if self.cart.paymentMethod != "card":
            self._reject("Select card payment first")
        if not self.cart.validate_card_details():
            self._reject("Please complete all payment fields correctly")
        submission = self.validate_checkout()

        self.payment_status = "processing"
        try:
            authorization = self.card_processor.authorize(self.cart.cardDetails, submission["grandTotal"], self.currency)
            order = self.orders.create_order(dict(submission, paymentMethod="card", cardPayment=authorization))
        except (OrderApiError, PaymentProviderError) as e:
            self.payment_status = "pending"
            self.notify("error", str(e) or "Failed to create order. Please try again.")
            raise
        self.payment_status = order["paymentStatus"]
        self._finish(order)
        return order

    # PayPal callbacks

    def _create_or_resume(self, submission: Dict[str, Any]) -> Dict[str, Any]:
        """Reuse the order of an earlier cancelled or failed attempt when the cart
        is unchanged; otherwise cancel that order and create a new one."""
        fingerprint = _fingerprint(submission)
        pending = self._load_pending()
        previous = pending.get("orderId")
        if previous:
            if pending.get("fingerprint") == fingerprint:
                try:
                    order = self.orders.update_payment(previous, "processing")
                    logger.info("Resuming PayPal payment for order %s", previous)
                    return order
                except OrderApiError as e:
                    logger.warning("Order %s cannot be resumed, creating a new one: %s", previous, e)
            else:
                try:
                    self.orders.cancel_order(previous)
                except OrderApiError as e:
                    logger.warning("Could not cancel abandoned order %s: %s", previous, e)
            self._forget()
        order = self.orders.create_order(dict(submission, paymentMethod="paypal"))
        self._remember(order["id"], fingerprint=fingerprint)
        return order

    def on_create_order(self, actions: PayPalActions) -> str:
        if self.paypal_state not in (PayPalState.IDLE, PayPalState.FAILED, PayPalState.CANCELLED):
            raise CheckoutStateError(self.paypal_state.value, PayPalState.CREATING.value)
        submission = self.validate_checkout()
        if self._load_captures():
            self._replay_captures()
        self._move(PayPalState.CREATING)
        try:
            order = self._create_or_resume(submission)
        except OrderApiError as e:
            self._move(PayPalState.IDLE)
            self.payment_status = "pending"
            self.notify("error", str(e))
            raise
        order_id = order["id"]
        self._pending_order_id = order_id
        self.payment_status = "processing"

        params = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": order_id,
                "amount": {"currency_code": self.currency, "value": f"{float(order['grandTotal']):.2f}"},
            }],
        }
        try:
            provider_order_id = actions.create_order(params)
        except Exception as e:
            self._move(PayPalState.FAILED)
            self.payment_status = "failed"
            self._reconcile(order_id, "failed")
            self.notify("error", f"PayPal could not start the payment: {e}")
            raise
        self._remember(order_id, providerOrderId=provider_order_id)
        self._move(PayPalState.AWAITING_APPROVAL)
        return provider_order_id

    def on_approve(self, data: Dict[str, Any], actions: PayPalActions) -> Optional[Dict[str, Any]]:
        self._move(PayPalState.CAPTURING)
        try:
            capture = actions.capture_order()
        except Exception as e:
            logger.exception("PayPal capture failed")
            self._fail(self._resolve_order_id(), f"Payment could not be completed: {e}")
            return None

        order_id = self._resolve_order_id(capture)
        item = _first_capture(capture)
        capture_status = item.get("status") or capture.get("status")
        if capture.get("status") != "COMPLETED" or (item and item.get("status") not in (None, "COMPLETED")):
            self._fail(order_id, f"PayPal reported the payment as {capture_status}")
            return None
        if not order_id:
            self._move(PayPalState.COMPLETED)
            self.unreconciled = True
            logger.error("PayPal capture %s has no order reference", item.get("id"))
            self.notify("warning", "Payment received. Your order will be confirmed shortly.")
            return None

        details = {
            "transactionId": item.get("id"),
            "paypalOrderId": capture.get("id") or data.get("orderID"),
            "paypalPayerId": data.get("payerID") or (capture.get("payer") or {}).get("payer_id"),
            "paypalCapture": {"id": item.get("id"), "status": capture_status},
        }
        self._keep_capture(order_id, details)
        self._move(PayPalState.COMPLETED)
        try:
            order = self.orders.update_payment(order_id, "completed", **details)
        except OrderApiError as e:
            logger.error("PayPal captured %s for order %s but the order was not updated: %s",
                         item.get("id"), order_id, e)
            self.unreconciled = True
            self.payment_status = "processing"
            self._forget()
            self.cart.clear()
            self.cart.save(self.storage)
            self.notify("warning", "Payment received. Your order will be confirmed shortly.")
            return None
        self.payment_status = "completed"
        self._drop_capture(order_id)
        self._forget()
        self._finish(order)
        return order

    def _fail(self, order_id: Optional[str], message: str) -> None:
        self._move(PayPalState.FAILED)
        self.payment_status = "failed"
        self._reconcile(order_id, "failed")
        self.notify("error", message)

    def on_error(self, error: Any) -> None:
        logger.error("PayPal error: %s", error)
        self._fail(self._resolve_order_id(), "PayPal payment failed. Please try again.")

    def on_cancel(self, data: Optional[Dict[str, Any]] = None) -> None:
        order_id = self._resolve_order_id()
        self._move(PayPalState.CANCELLED)
        self.payment_status = "pending"
        self._reconcile(order_id, "pending")
        self.notify("info", "PayPal payment cancelled")

    def resume_unreconciled_payment(self) -> Optional[Dict[str, Any]]:
        """Replay payment updates for captures that never reached their order.

        Returns the last order brought to ``completed``, or None when nothing
        was reconciled.
        """
        reconciled = self._replay_captures()
        if not reconciled:
            return None
        self.payment_status = "completed"
        self.completed_order = reconciled[-1]
        return reconciled[-1]

    def reset(self) -> None:
        """Start a new checkout after a completed payment."""
        self._move(PayPalState.IDLE)
        self.payment_status = "pending"
        self.completed_order = None
