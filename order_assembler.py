"""Turns cart state into the payload accepted by ``POST /orders``."""
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from errors import CheckoutValidationError
from pricing import compute_totals, normalize_id, option_id, options_total

if TYPE_CHECKING:
    from cart import CartModel

logger = logging.getLogger("tidyhome.checkout")

EMPTY_SELECTION_MESSAGE = "Please select at least one service option"


def build_order_submission(cart: "CartModel") -> Optional[Dict[str, Any]]:
    """Build the order payload, or None when no service is selected.

    Selections whose option id is not part of the selected service are dropped
    with a warning. The result may carry an empty ``selectedOptions`` list; use
    ``require_selected_options`` before sending it.
    """
    service = cart.selectedService
    if not service:
        return None

    options = service.get("options") or []
    valid_ids = {option_id(o) for o in options}
    selected = []
    quantities = {}
    for key, quantity in cart.selectedOptions.items():
        key = normalize_id(key)
        if key not in valid_ids:
            logger.warning("Dropping option %s: not part of service %s", key, service.get("name"))
            continue
        if quantity <= 0:
            continue
        selected.append({"optionId": key, "quantity": int(quantity)})
        quantities[key] = int(quantity)

    payload = {
        "serviceId": normalize_id(service.get("id", service.get("_id", ""))),
        "selectedOptions": selected,
        **compute_totals(options_total(options, quantities)),
        "address": dict(cart.address),
        "scheduledDate": cart.scheduledDate,
        "timeSlot": dict(cart.timeSlot),
        "paymentMethod": cart.paymentMethod,
    }
    if service.get("providerId"):
        payload["providerId"] = normalize_id(service["providerId"])
    return payload


def require_selected_options(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if payload is None:
        raise CheckoutValidationError("Please choose a service first")
    if not payload["selectedOptions"]:
        raise CheckoutValidationError(EMPTY_SELECTION_MESSAGE)
    return payload
