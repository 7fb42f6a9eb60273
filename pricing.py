"""
Pricing rules shared by the checkout client and the order API.

Option prices are stored the way they are displayed (e.g. "€10"), so every
calculation starts by stripping the currency symbol. Tax is a flat rate on the
option total, rounded half-up to a whole currency unit.
"""
import os
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

TAX_RATE = float(os.getenv("TAX_RATE", "0.20"))
PRIMARY_CURRENCY = os.getenv("PRIMARY_CURRENCY", "EUR")
CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "€")

_NON_NUMERIC = re.compile(r"[^0-9.,]")
_COMMA_DECIMAL = re.compile(r"\d*,\d{1,2}")


def normalize_id(value: Any) -> str:
    """Canonical string form of a document or option id.

    Ids reach us as bson ObjectIds, extended-JSON dicts ({"$oid": ...}),
    embedded documents carrying their own id, or plain strings.
    """
    if isinstance(value, dict):
        for key in ("$oid", "_id", "id"):
            if key in value:
                return normalize_id(value[key])
    return str(value).strip()


def option_id(option: Dict[str, Any]) -> str:
    return normalize_id(option.get("_id", option.get("id", "")))


def parse_price(price: Any) -> float:
    if price is None:
        return 0.0
    if isinstance(price, (int, float)):
        return float(price)
    cleaned = _NON_NUMERIC.sub("", str(price))
    # "12,50" uses a decimal comma; "1,000" groups thousands
    if _COMMA_DECIMAL.fullmatch(cleaned):
        cleaned = cleaned.replace(",", ".")
    cleaned = cleaned.replace(",", "")
    try:
        return float(cleaned) if cleaned else 0.0
    except ValueError:
        return 0.0


def format_price(amount: Any) -> str:
    value = parse_price(amount)
    if value == int(value):
        return f"{CURRENCY_SYMBOL}{int(value)}"
    return f"{CURRENCY_SYMBOL}{value:.2f}"


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_tax(total: float) -> int:
    return round_half_up(total * TAX_RATE)


def compute_totals(total: float) -> Dict[str, float]:
    total = round(total, 2)
    tax = calculate_tax(total)
    return {"totalAmount": total, "tax": tax, "grandTotal": round(total + tax, 2)}


def options_total(options: List[Dict[str, Any]], quantities: Dict[str, int]) -> float:
    """Sum price x quantity over ``options``; quantities for unknown ids are ignored."""
    total = 0.0
    for option in options:
        quantity = quantities.get(option_id(option), 0)
        if quantity > 0:
            total += parse_price(option.get("price")) * quantity
    return round(total, 2)


def effective_options(service: Dict[str, Any], provider: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Service options with the provider's price overrides applied.

    Overrides live on the provider under ``optionPrices[serviceId][optionId]``.
    Options without an override keep the service default.
    """
    options = [dict(o) for o in service.get("options", [])]
    if not provider:
        return options
    service_key = normalize_id(service.get("_id", service.get("id", "")))
    overrides = {
        normalize_id(k): v
        for k, v in (provider.get("optionPrices") or {}).get(service_key, {}).items()
    }
    for option in options:
        override = overrides.get(option_id(option))
        if override is not None:
            option["price"] = format_price(override)
    return options
