from typing import Any, Dict, Optional
import httpx
from fulfillment.common.logging_setup import get_logger
from fulfillment.config.settings import config_settings

logger = get_logger("fulfillment.notifications")


async def send_cancellation_notice(order: Dict[str, Any], refund: Optional[Dict[str, Any]] = None):
    """POST a cancellation notice to the configured hook. Never raises."""
    url = config_settings.NOTIFY_WEBHOOK_URL
    if not url:
        logger.debug("notify.cancellation.disabled", extra={"order_id": order.get("order_id")})
        return

    payload = {
        "type": "order.cancelled",
        "order_id": order.get("order_id"),
        "user_id": order.get("user_id"),
        "email": (order.get("shipping_address") or {}).get("email"),
        "amount": order.get("amount"),
        "reason": order.get("cancellation_reason"),
        "refund": refund,
    }
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("notify.cancellation.failed", extra={"order_id": order.get("order_id"), "error": str(e)})
        return
    logger.info("notify.cancellation.sent", extra={"order_id": order.get("order_id")})
