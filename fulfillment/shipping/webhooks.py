from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from fulfillment.common.logging_setup import get_logger
from fulfillment.common.utils import json_ok
from fulfillment.db.dependencies import get_session
from fulfillment.orders.repository import get_order_by_vendor_order_id
from fulfillment.shipping.services import apply_vendor_status

logger = get_logger("fulfillment.shipping.webhooks")

shipping_webhooks_router = APIRouter()


@shipping_webhooks_router.post("/shiprocket")
async def shiprocket_webhook(request: Request, session: AsyncSession = Depends(get_session)):
    # the vendor does not sign its pushes; every branch answers 200 so it stops redelivering
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("shipping.webhook.invalid_body")
        return json_ok({"status": "ok", "note": "ignored: invalid body"})
    if not isinstance(payload, dict):
        return json_ok({"status": "ok", "note": "ignored: invalid body"})

    vendor_order_id = payload.get("sr_order_id") or payload.get("order_id")
    current_status = payload.get("current_status")
    if not vendor_order_id:
        return json_ok({"status": "ok", "note": "ignored: missing order id"})

    order = await get_order_by_vendor_order_id(session, str(vendor_order_id))
    if order is None and payload.get("order_id"):
        order = await get_order_by_vendor_order_id(session, str(payload["order_id"]))
    if order is None:
        logger.info("shipping.webhook.unknown_order", extra={"vendor_order_id": vendor_order_id})
        return json_ok({"status": "ok", "note": "order not found"})

    changed = await apply_vendor_status(
        session, order, current_status,
        awb_code=payload.get("awb_code") or payload.get("awb"),
        courier_name=payload.get("courier_name"),
    )
    await session.commit()

    logger.info("shipping.webhook.processed",
                extra={"order_id": order.order_id, "vendor_status": current_status, "changed": changed})
    return json_ok({"status": "ok", "changed": changed})
