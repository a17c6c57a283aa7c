import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from fulfillment.common.utils import now
from fulfillment.config.settings import config_settings
from fulfillment.schema.full_schema import OrderStatus, PaymentMethod


class ShippingValidationError(ValueError):
    pass


def normalize_phone(phone: Optional[str]) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 12 and digits.startswith("91"):
        digits = digits[2:]
    elif len(digits) == 11 and digits.startswith("0"):
        digits = digits[1:]
    if len(digits) != 10:
        raise ShippingValidationError(f"invalid phone number {phone!r}: need 10 digits")
    return digits


def normalize_pincode(pincode: Optional[str]) -> str:
    digits = re.sub(r"\D", "", str(pincode or ""))
    if len(digits) != 6:
        raise ShippingValidationError(f"invalid pincode {pincode!r}: need 6 digits")
    return digits


def split_name(full_name: Optional[str]) -> Tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        raise ShippingValidationError("customer name missing")
    return parts[0], " ".join(parts[1:])


def normalize_email(email: Optional[str]) -> str:
    email = (email or "").strip()
    if not email or "@" not in email:
        return config_settings.FALLBACK_CUSTOMER_EMAIL
    return email


def package_dimensions(total_units: int) -> Dict[str, float]:
    """Base box 30x25x5 cm / 0.5 kg; every 2 extra units adds 5 cm height and 0.5 kg, capped at 20 cm / 5 kg."""
    extra_steps = max(0, int(total_units) - 1) // 2
    height = min(5 + 5 * extra_steps, 20)
    weight = min(0.5 + 0.5 * extra_steps, 5.0)
    return {"length": 30, "breadth": 25, "height": height, "weight": weight}


def _rupees(paise: int) -> float:
    return round(int(paise) / 100, 2)


def build_shipment_payload(order: Dict[str, Any], pickup_location: Optional[str] = None,
                           order_date: Optional[datetime] = None) -> Dict[str, Any]:
    """`order` is a serialized order (see orders.repository.serialize_order). Raises ShippingValidationError."""
    addr = order.get("shipping_address") or {}
    first, last = split_name(addr.get("full_name"))
    items: List[Dict[str, Any]] = order.get("items") or []
    if not items:
        raise ShippingValidationError("order has no items")

    total_units = sum(int(it["quantity"]) for it in items)
    prepaid = order.get("payment_method") == PaymentMethod.RAZORPAY.value

    payload = {
        "order_id": order["order_id"],
        "order_date": (order_date or now()).strftime("%Y-%m-%d %H:%M"),
        "pickup_location": pickup_location or config_settings.SHIPROCKET_PICKUP_LOCATION,
        "billing_customer_name": first,
        "billing_last_name": last,
        "billing_address": addr.get("address"),
        "billing_address_2": addr.get("landmark") or "",
        "billing_city": addr.get("city"),
        "billing_pincode": normalize_pincode(addr.get("pincode")),
        "billing_state": addr.get("state"),
        "billing_country": addr.get("country") or "India",
        "billing_email": normalize_email(addr.get("email")),
        "billing_phone": normalize_phone(addr.get("phone")),
        "shipping_is_billing": True,
        "order_items": [
            {
                "name": f"{it.get('product_name') or it['product_id']} ({it['size']})",
                "sku": f"{it['product_id']}-{it['size']}",
                "units": int(it["quantity"]),
                "selling_price": _rupees(it["price"]),
            }
            for it in items
        ],
        "payment_method": "Prepaid" if prepaid else "COD",
        "sub_total": _rupees(order["amount"]),
        "total_discount": _rupees(order.get("discount") or 0),
    }
    payload.update(package_dimensions(total_units))
    return payload


def failure_hint(error_text: str) -> Optional[str]:
    text = (error_text or "").lower()
    if "pickup" in text:
        return "check pickup location"
    if "phone" in text or "mobile" in text:
        return "verify customer phone"
    if "pincode" in text or "postcode" in text:
        return "verify pincode serviceability"
    if "email" in text:
        return "verify customer email"
    return None


VENDOR_STATUS_MAP = {
    "PICKUP SCHEDULED": OrderStatus.PROCESSING.value,
    "PICKUP QUEUED": OrderStatus.PROCESSING.value,
    "SHIPPED": OrderStatus.SHIPPED.value,
    "IN TRANSIT": OrderStatus.SHIPPED.value,
    "OUT FOR DELIVERY": OrderStatus.SHIPPED.value,
    "DELIVERED": OrderStatus.DELIVERED.value,
    "CANCELED": OrderStatus.CANCELLED.value,
    "RTO INITIATED": OrderStatus.CANCELLED.value,
    "RTO DELIVERED": OrderStatus.CANCELLED.value,
}

CAPTURES_AWB = {OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value}


def map_vendor_status(current_status: Optional[str]) -> Optional[str]:
    return VENDOR_STATUS_MAP.get((current_status or "").strip().upper())


def tracking_url_for(awb_code: Optional[str]) -> Optional[str]:
    if not awb_code:
        return None
    return f"{config_settings.SHIPROCKET_TRACKING_URL.rstrip('/')}/{awb_code}"
