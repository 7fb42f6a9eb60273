"""
Checkout cart for a single customer session.

The cart is plain state plus derived totals. It survives reloads only through
an explicit ``save``/``load`` against a Storage adapter; card details are never
written out.
"""
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, Field

from errors import CheckoutValidationError
from order_assembler import build_order_submission
from pricing import calculate_tax, normalize_id, options_total

logger = logging.getLogger("tidyhome.cart")

STORAGE_KEY = "cleaning-checkout-storage"
ADDRESS_FIELDS = ("street", "city", "zipCode", "country")

_EXPIRY = re.compile(r"^\d{2}/\d{2}$")
_CVV = re.compile(r"^\d{3,4}$")


class Storage(Protocol):
    """Key-value persistence the browser would provide as localStorage."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStorage:
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage:
    """Storage backed by one JSON object on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text())
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable storage file %s", self.path)
            return {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        tmp.replace(self.path)

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


class CardDetails(BaseModel):
    name: str = ""
    cardNumber: str = ""
    expiryDate: str = ""
    cvv: str = ""

    def digits(self) -> str:
        return re.sub(r"[\s-]", "", self.cardNumber)

    def errors(self) -> Dict[str, str]:
        problems = {}
        if not self.name.strip():
            problems["name"] = "Cardholder name is required"
        if not re.fullmatch(r"\d{16}", self.digits()):
            problems["cardNumber"] = "Card number must be 16 digits"
        if not _EXPIRY.match(self.expiryDate):
            problems["expiryDate"] = "Expiry date must be MM/YY"
        if not _CVV.match(self.cvv):
            problems["cvv"] = "CVV must be 3 or 4 digits"
        return problems


def _empty_address() -> Dict[str, str]:
    return {field: "" for field in ADDRESS_FIELDS}


class CartModel(BaseModel):
    selectedService: Optional[Dict[str, Any]] = None
    selectedOptions: Dict[str, int] = Field(default_factory=dict)
    address: Dict[str, str] = Field(default_factory=_empty_address)
    scheduledDate: Optional[str] = None
    timeSlot: Dict[str, str] = Field(default_factory=lambda: {"start": "09:00", "end": "12:00"})
    paymentMethod: str = "card"
    cardDetails: CardDetails = Field(default_factory=CardDetails, exclude=True)

    # Service and options

    def set_selected_service(self, service: Optional[Dict[str, Any]]) -> None:
        """Replace the service; selections never carry over to another service."""
        self.selectedService = service
        self.selectedOptions = {}

    def update_selected_option(self, option_id: Any, quantity: int) -> None:
        key = normalize_id(option_id)
        if quantity <= 0:
            self.selectedOptions.pop(key, None)
        else:
            self.selectedOptions[key] = int(quantity)

    def quantity_of(self, option_id: Any) -> int:
        return self.selectedOptions.get(normalize_id(option_id), 0)

    def service_options(self):
        if not self.selectedService:
            return []
        return self.selectedService.get("options") or []

    def calculate_total(self) -> float:
        return options_total(self.service_options(), self.selectedOptions)

    def calculate_tax(self) -> int:
        return calculate_tax(self.calculate_total())

    def calculate_grand_total(self) -> float:
        return round(self.calculate_total() + self.calculate_tax(), 2)

    def has_selected_options(self) -> bool:
        return any(q > 0 for q in self.selectedOptions.values())

    # Address, schedule, payment

    def set_address(self, **fields: str) -> None:
        self.address = {**self.address, **{k: v for k, v in fields.items() if v is not None}}

    def address_complete(self) -> bool:
        return all(str(self.address.get(field, "")).strip() for field in ADDRESS_FIELDS)

    def set_schedule(self, scheduled_date: Optional[str], time_slot: Optional[Dict[str, str]] = None) -> None:
        self.scheduledDate = scheduled_date
        if time_slot:
            self.timeSlot = dict(time_slot)

    def set_payment_method(self, method: str) -> None:
        if method not in ("card", "paypal"):
            raise CheckoutValidationError(f"Unsupported payment method: {method}")
        self.paymentMethod = method

    def update_card_details(self, **fields: str) -> None:
        self.cardDetails = self.cardDetails.model_copy(update=fields)

    def validate_card_details(self) -> bool:
        return not self.cardDetails.errors()

    def prepare_order_submission(self) -> Optional[Dict[str, Any]]:
        return build_order_submission(self)

    def clear(self) -> None:
        self.selectedService = None
        self.selectedOptions = {}
        self.address = _empty_address()
        self.scheduledDate = None
        self.timeSlot = {"start": "09:00", "end": "12:00"}
        self.cardDetails = CardDetails()

    # Persistence

    def save(self, storage: Storage) -> None:
        storage.set(STORAGE_KEY, self.model_dump_json())

    @classmethod
    def load(cls, storage: Storage) -> "CartModel":
        raw = storage.get(STORAGE_KEY)
        if not raw:
            return cls()
        try:
            return cls.model_validate_json(raw)
        except ValueError as e:
            logger.warning("Discarding unreadable saved cart: %s", e)
            return cls()
