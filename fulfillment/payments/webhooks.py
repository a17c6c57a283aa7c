import json
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from fulfillment.common.constants import request_id_ctx
from fulfillment.common.logging_setup import get_logger
from fulfillment.common.utils import json_ok, now
from fulfillment.db.dependencies import get_session
from fulfillment.orders.repository import append_note, get_order_by_intent, transition_status, update_order_fields
from fulfillment.payments import gateway
from fulfillment.schema.full_schema import HistoryActor, OrderStatus, PaymentEventStatus, PaymentStatus, PaymentWebhookEvent

logger = get_logger("fulfillment.payments.webhooks")

payments_webhooks_router = APIRouter()

PROVIDER = "razorpay"
HANDLED_EVENTS = ("payment.captured", "payment.failed")


def payment_entity(payload: Dict[str, Any]) -> Dict[str, Any]:
    return ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}


async def mark_webhook_received(session, provider_event_id: Optional[str], payload: Dict[str, Any],
                                entity: Dict[str, Any]) -> Optional[int]:
    """Insert the audit row. Returns None when this event id was already recorded."""
    ev = PaymentWebhookEvent(
        provider=PROVIDER,
        provider_event_id=provider_event_id,
        event=payload.get("event"),
        intent_id=entity.get("order_id"),
        payment_id=entity.get("id"),
        payload=payload,
    )
    session.add(ev)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        return None
    return ev.id


async def mark_webhook_done(session, ev_id: int, ev_status: str, last_error: Optional[str] = None):
    stmt = (
        update(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.id == ev_id)
        .values(status=ev_status, last_error=last_error, processed_at=now())
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def apply_payment_event(session, event: str, entity: Dict[str, Any]):
    """Returns (event status, note) after mutating the matching order, if any."""
    intent_id = entity.get("order_id")
    payment_id = entity.get("id")
    order = await get_order_by_intent(session, intent_id) if intent_id else None

    if order is None:
        # money may have moved without an order; leave it for the reconciliation sweep
        return PaymentEventStatus.INCONSISTENT.value, "no order for intent"

    if event == "payment.captured":
        if order.payment_status == PaymentStatus.COMPLETED.value:
            return PaymentEventStatus.PROCESSED.value, "already completed"
        await update_order_fields(session, order.id, payment_status=PaymentStatus.COMPLETED.value,
                                  payment_id=order.payment_id or payment_id)
        await append_note(session, order.id, f"Payment {payment_id} marked completed by gateway webhook")
        return PaymentEventStatus.PROCESSED.value, "payment completed"

    if order.payment_status == PaymentStatus.COMPLETED.value:
        # a later failed attempt on an intent that already captured
        return PaymentEventStatus.IGNORED.value, "order already paid"
    await update_order_fields(session, order.id, payment_status=PaymentStatus.FAILED.value)
    await transition_status(
        session, order.id, OrderStatus.FAILED.value,
        actor=HistoryActor.SYSTEM.value, reason=f"Payment {payment_id} failed",
        from_statuses=(OrderStatus.CREATED.value, OrderStatus.PENDING.value),
    )
    return PaymentEventStatus.PROCESSED.value, "payment failed"


@payments_webhooks_router.post("/razorpay")
async def razorpay_webhook(request: Request, session: AsyncSession = Depends(get_session)):
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")

    # no secret configured means nothing is trusted
    if not gateway.verify_webhook_signature(body, signature):
        logger.warning("payments.webhook.signature_rejected", extra={"has_signature": bool(signature)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError:
        return json_ok({"status": "ok", "note": "ignored: invalid body"})
    if not isinstance(payload, dict):
        return json_ok({"status": "ok", "note": "ignored: invalid body"})

    provider_event_id = request.headers.get("X-Razorpay-Event-Id")
    event = payload.get("event")
    entity = payment_entity(payload)

    ev_id = await mark_webhook_received(session, provider_event_id, payload, entity)
    if ev_id is None:
        logger.info("payments.webhook.duplicate", extra={"provider_event_id": provider_event_id})
        return json_ok({"status": "ok", "note": "already processed"})

    if event not in HANDLED_EVENTS:
        await mark_webhook_done(session, ev_id, PaymentEventStatus.IGNORED.value)
        await session.commit()
        return json_ok({"status": "ok", "note": f"ignored: {event}"})

    try:
        ev_status, note = await apply_payment_event(session, event, entity)
        await mark_webhook_done(session, ev_id, ev_status,
                                last_error=note if ev_status == PaymentEventStatus.INCONSISTENT.value else None)
        await session.commit()
    except Exception:
        await session.rollback()
        logger.error("payments.webhook.processing_failed",
                     extra={"request_id": request_id_ctx.get(None), "provider_event_id": provider_event_id},
                     exc_info=True)
        # non-200 so the gateway redelivers
        raise

    logger.info("payments.webhook.processed",
                extra={"provider_event_id": provider_event_id, "event": event, "outcome": ev_status, "note": note})
    return json_ok({"status": "ok", "note": note})
