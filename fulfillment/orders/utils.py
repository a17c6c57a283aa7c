from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from fastapi import HTTPException, status
from fulfillment.common.utils import epoch_ms, now
from fulfillment.config.settings import config_settings
from fulfillment.orders.models import ShippingAddress

REQUIRED_ADDRESS_FIELDS = ("full_name", "phone", "address", "city", "state", "pincode")

RECONCILIATION_PREFIX = "recon_"
RECONCILIATION_NOTE = "MANUAL RECONCILIATION REQUIRED"


def _user_suffix(user_id) -> str:
    return str(user_id)[-6:]


def cod_order_id(user_id) -> str:
    return f"COD_{epoch_ms()}_{_user_suffix(user_id)}"


def online_order_id(user_id) -> str:
    return f"order_{epoch_ms()}_{_user_suffix(user_id)}"


def cod_token_receipt(user_id) -> str:
    return f"COD_TOKEN_{epoch_ms()}_{_user_suffix(user_id)}"


def reconciliation_order_id(user_id) -> str:
    return f"{RECONCILIATION_PREFIX}{epoch_ms()}_{_user_suffix(user_id)}"


def is_reconciliation_order(order) -> bool:
    """Recon orders carry a captured payment but never took stock out of the ledger."""
    return str(order.order_id).startswith(RECONCILIATION_PREFIX)


def cancellation_deadline(created_at: Optional[datetime] = None) -> datetime:
    return (created_at or now()) + timedelta(hours=config_settings.CANCELLATION_WINDOW_HOURS)


def validate_shipping_address(address: Optional[ShippingAddress], user_email: Optional[str] = None) -> Dict[str, Any]:
    """Returns the address as a plain dict with the email filled in, or 400s."""
    if address is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Please provide a complete shipping address")

    data = address.model_dump()
    for field in REQUIRED_ADDRESS_FIELDS:
        value = data.get(field)
        if value is None or not str(value).strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Please provide a complete shipping address")

    if not data.get("email"):
        data["email"] = user_email or config_settings.FALLBACK_CUSTOMER_EMAIL
    return {k: (v.strip() if isinstance(v, str) else v) for k, v in data.items()}


def cart_subtotal(items: List[Dict[str, Any]]) -> int:
    return sum(int(it["price"]) * int(it["quantity"]) for it in items)


def compact_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # what is carried on the intent; image urls stay out to keep notes small
    return [
        {"product_id": it["product_id"], "product_name": it.get("product_name"), "size": it["size"],
         "quantity": int(it["quantity"]), "price": int(it["price"])}
        for it in items
    ]
