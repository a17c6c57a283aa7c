from typing import Any, Dict, Optional
import httpx
from fulfillment.common.circuit_breaker import CircuitOpenError
from fulfillment.common.logging_setup import get_logger
from fulfillment.common.retries import is_recoverable_exception, supervise
from fulfillment.common.utils import now
from fulfillment.config.settings import config_settings
from fulfillment.db.connection import async_session
from fulfillment.orders.repository import append_note, get_order_by_order_id, get_order_items, serialize_order, set_shipment_linkage, transition_status, update_order_fields
from fulfillment.schema.full_schema import HistoryActor, Orders, OrderStatus
from fulfillment.shipping import vendor
from fulfillment.shipping.utils import CAPTURES_AWB, build_shipment_payload, failure_hint, map_vendor_status, tracking_url_for
from fulfillment.shipping.vendor import VendorError
from metrics.custom_instrumentator import SHIPMENT_FAILURES_TOTAL

logger = get_logger("fulfillment.shipping")

SHIPMENT_EVENT = "shipment.create"

# statuses a vendor push may move an order out of
ALLOWED_PREDECESSORS = {
    OrderStatus.PROCESSING.value: {OrderStatus.PAID.value, OrderStatus.CONFIRMED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.PAID.value, OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value},
    OrderStatus.DELIVERED.value: {OrderStatus.PAID.value, OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value,
                                  OrderStatus.SHIPPED.value},
    OrderStatus.CANCELLED.value: {OrderStatus.PAID.value, OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value,
                                  OrderStatus.SHIPPED.value},
}


def error_text(exc: BaseException) -> str:
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        message = None
        try:
            body = exc.response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = body.get("message")
            if body.get("errors"):
                message = f"{message} {body['errors']}"
        return f"HTTP {exc.response.status_code}: {message or exc.response.text}"
    return str(exc) or type(exc).__name__


async def create_shipment_for_order(order_id: str) -> Optional[Dict[str, Any]]:
    """One attempt at handing an order to the vendor. Uses its own sessions, never the request's."""
    async with async_session() as session:
        order = await get_order_by_order_id(session, order_id)
        if order is None:
            logger.warning("shipping.create.order_missing", extra={"order_id": order_id})
            return None
        if order.vendor_order_id:
            logger.info("shipping.create.already_linked", extra={"order_id": order_id, "vendor_order_id": order.vendor_order_id})
            return {"vendor_order_id": order.vendor_order_id, "vendor_shipment_id": order.vendor_shipment_id}
        view = serialize_order(order, items=await get_order_items(session, order.id))
        order_pk = order.id

    payload = build_shipment_payload(view)
    result = await vendor.get_vendor_client().create_shipment(payload)

    async with async_session() as session:
        await set_shipment_linkage(
            session, order_pk,
            vendor_order_id=result["vendor_order_id"],
            vendor_shipment_id=result.get("vendor_shipment_id"),
            awb_code=result.get("awb_code"),
            courier_name=result.get("courier_name"),
            tracking_url=tracking_url_for(result.get("awb_code")),
        )
        await transition_status(
            session, order_pk, OrderStatus.PROCESSING.value,
            actor=HistoryActor.SYSTEM.value,
            reason=f"Shipment created with vendor (order {result['vendor_order_id']})",
            from_statuses=(OrderStatus.PAID.value, OrderStatus.CONFIRMED.value),
        )
        await session.commit()

    logger.info("shipping.create.success", extra={"order_id": order_id, "vendor_order_id": result["vendor_order_id"]})
    return result


async def record_shipment_failure(order_id: str, exc: BaseException):
    detail = error_text(exc)
    note = f"Shipment creation failed: {detail}. Manual shipment creation required."
    hint = failure_hint(detail)
    if hint:
        note = f"{note} Hint: {hint}."

    async with async_session() as session:
        order = await get_order_by_order_id(session, order_id)
        if order is None:
            logger.error("shipping.failure_note.order_missing", extra={"order_id": order_id, "error": detail})
            return
        await append_note(session, order.id, note)
        await session.commit()
    logger.error("shipping.create.exhausted", extra={"order_id": order_id, "error": detail, "hint": hint})


async def run_shipment_creation(order_id: str):
    async def on_exhausted(exc: BaseException):
        SHIPMENT_FAILURES_TOTAL.inc()
        await record_shipment_failure(order_id, exc)

    return await supervise(
        lambda: create_shipment_for_order(order_id),
        on_exhausted=on_exhausted,
        op_name=SHIPMENT_EVENT,
        attempts=config_settings.SHIPMENT_RETRY_ATTEMPTS,
        base_delay=config_settings.SHIPMENT_RETRY_BASE_DELAY,
        if_retryable=is_recoverable_exception,
    )


def schedule_shipment(app, order_id: str) -> bool:
    """Queue shipment creation for after the response. Returns False when nothing was queued."""
    if not config_settings.SHIPROCKET_ENABLED:
        return False
    worker = getattr(app.state, "shipment_worker", None)
    if worker is None:
        logger.warning("shipping.schedule.no_worker", extra={"order_id": order_id})
        return False
    return worker.enqueue({"event": SHIPMENT_EVENT, "data": {"order_id": order_id}})


async def cancel_vendor_shipment(order: Orders) -> Optional[str]:
    """
    Best-effort vendor side cancellation. Returns an operator note when the vendor
    shipment was left alone or could not be cancelled, None otherwise.
    """
    if not order.vendor_order_id:
        return None
    if order.awb_code:
        return (f"Vendor cancellation skipped: shipment {order.vendor_order_id} already has AWB "
                f"{order.awb_code}. Cancel with the courier manually.")

    client = vendor.get_vendor_client()
    try:
        if not await client.is_cancellable(order.vendor_order_id):
            return (f"Vendor cancellation skipped: shipment {order.vendor_order_id} is past the vendor's "
                    f"cancellable state.")
        await client.cancel_shipment(order.vendor_order_id)
    except (httpx.HTTPError, VendorError, CircuitOpenError) as e:
        logger.warning("shipping.cancel.failed", extra={"order_id": order.order_id, "error": error_text(e)})
        return f"Vendor cancellation failed: {error_text(e)}. Cancel with the vendor manually."

    logger.info("shipping.cancel.success", extra={"order_id": order.order_id, "vendor_order_id": order.vendor_order_id})
    return None


async def apply_vendor_status(session, order: Orders, current_status: Optional[str],
                              awb_code: Optional[str] = None, courier_name: Optional[str] = None) -> bool:
    """Apply a vendor status push. Returns True when the order changed. Caller commits."""
    new_status = map_vendor_status(current_status)
    if new_status is None:
        logger.info("shipping.webhook.unmapped_status", extra={"order_id": order.order_id, "vendor_status": current_status})
        return False

    values: Dict[str, Any] = {}
    if new_status in CAPTURES_AWB:
        if awb_code:
            values["awb_code"] = str(awb_code)
        if courier_name:
            values["courier_name"] = courier_name
    if awb_code:
        values["tracking_url"] = tracking_url_for(str(awb_code))

    if order.status == new_status:
        changed = {k: v for k, v in values.items() if getattr(order, k) != v}
        if changed:
            await update_order_fields(session, order.id, **changed)
        return bool(changed)

    if new_status == OrderStatus.DELIVERED.value:
        values["delivered_at"] = now()
    if new_status == OrderStatus.CANCELLED.value:
        values["cancelled_at"] = now()

    moved = await transition_status(
        session, order.id, new_status,
        actor=HistoryActor.SYSTEM.value,
        reason=f"Vendor status: {current_status}",
        from_statuses=ALLOWED_PREDECESSORS.get(new_status),
        **values,
    )
    if not moved:
        logger.warning("shipping.webhook.out_of_order",
                       extra={"order_id": order.order_id, "status": order.status, "vendor_status": current_status})
    return moved


async def get_tracking(order: Orders) -> Dict[str, Any]:
    stored = {
        "order_id": order.order_id,
        "status": order.status,
        "awb_code": order.awb_code,
        "courier_name": order.courier_name,
        "tracking_url": order.tracking_url,
    }
    if not order.vendor_shipment_id or not config_settings.SHIPROCKET_ENABLED:
        return {**stored, "tracking_available": False}

    try:
        live = await vendor.get_vendor_client().track_shipment(order.vendor_shipment_id)
    except (httpx.HTTPError, VendorError, CircuitOpenError) as e:
        logger.warning("shipping.tracking.failed", extra={"order_id": order.order_id, "error": error_text(e)})
        return {**stored, "tracking_available": False, "tracking_error": "Unable to fetch live tracking"}
    return {**stored, "tracking_available": True, "tracking": live}
