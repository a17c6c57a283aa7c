from datetime import timedelta
from typing import Any, Dict, Optional
from fastapi import BackgroundTasks, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from fulfillment.common.logging_setup import get_logger
from fulfillment.common.utils import as_utc, format_rupees, now
from fulfillment.config.settings import config_settings
from fulfillment.db.connection import async_session
from fulfillment.inventory.repository import restore_stock_for_items
from fulfillment.notifications.services import send_cancellation_notice
from fulfillment.orders.repository import append_note, claim_refund, get_order_by_order_id, get_order_items, is_terminal_for_cancel, load_order_view, record_refund, release_refund_claim, serialize_order, transition_status
from fulfillment.orders.utils import RECONCILIATION_NOTE, is_reconciliation_order
from fulfillment.payments import gateway
from fulfillment.payments.gateway import GatewayError
from fulfillment.schema.full_schema import HistoryActor, Orders, OrderStatus, PaymentMethod, PaymentStatus, RefundStatus
from fulfillment.shipping.services import cancel_vendor_shipment
from metrics.custom_instrumentator import REFUNDS_TOTAL

logger = get_logger("fulfillment.refunds")

CANCELLABLE_STATUSES = tuple(s.value for s in OrderStatus if not is_terminal_for_cancel(s.value))

GATEWAY_REFUND_STATUS = {
    "processed": RefundStatus.PROCESSED.value,
    "pending": RefundStatus.PENDING.value,
    "failed": RefundStatus.FAILED.value,
}


def cancellation_deadline_for(order: Orders):
    deadline = as_utc(order.cancellation_window_ends_at)
    if deadline is None:
        deadline = as_utc(order.created_at) + timedelta(hours=config_settings.CANCELLATION_WINDOW_HOURS)
    return deadline


def refundable_amount(order: Orders, payment: Dict[str, Any]) -> int:
    """What can still go back to the customer. Token orders only ever collected the token electronically."""
    captured = int(payment.get("amount") or 0) - int(payment.get("amount_refunded") or 0)
    if order.payment_method == PaymentMethod.COD_TOKEN.value:
        token = order.cod_token_amount or int(config_settings.COD_TOKEN_AMOUNT) * 100
        return max(0, min(captured, int(token)))
    return max(0, captured)


async def _get_owned_order(session, order_id: str, user_id) -> Orders:
    order = await get_order_by_order_id(session, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    if order.user_id != str(user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You are not allowed to modify this order")
    return order


async def _note_in_fresh_session(order_pk: int, note: str):
    try:
        async with async_session() as session:
            await append_note(session, order_pk, note)
            await session.commit()
    except Exception:
        logger.critical("refund.note.write_failed", extra={"order_pk": order_pk, "note": note}, exc_info=True)


async def cancel_order(session, background_tasks: Optional[BackgroundTasks], user_id, order_id: str,
                       reason: Optional[str]) -> Dict[str, Any]:
    """
    Customer cancellation. Gates run in order: ownership, reconciliation, status, window, prior refund.
    Captured payments are refunded before anything changes locally.
    """
    order = await _get_owned_order(session, order_id, user_id)

    if is_reconciliation_order(order):
        # stock was never committed for these, support settles them through the admin refund
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail="This order is under manual review. Please contact support to cancel it.")

    if is_terminal_for_cancel(order.status):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Order cannot be cancelled. Current status: {order.status}")

    deadline = cancellation_deadline_for(order)
    if now() > deadline:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=(f"Cancellation window has expired. Orders can only be cancelled within "
                    f"{config_settings.CANCELLATION_WINDOW_HOURS} hours of placing them."),
        )

    if order.refund_id or order.refund_status:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Refund already processed for this order")

    reason = (reason or "").strip() or "Cancelled by customer"
    if order.payment_status == PaymentStatus.COMPLETED.value and order.payment_id:
        result = await _cancel_with_refund(session, order, reason)
    else:
        result = await _cancel_locally(session, order, reason)

    if background_tasks is not None and result.get("cancelled"):
        background_tasks.add_task(send_cancellation_notice, result["order"], result.get("refund"))
    return result


async def _cancel_locally(session, order: Orders, reason: str) -> Dict[str, Any]:
    moved = await transition_status(
        session, order.id, OrderStatus.CANCELLED.value,
        actor=HistoryActor.USER.value, reason=reason,
        from_statuses=CANCELLABLE_STATUSES,
        cancelled_at=now(), cancellation_reason=reason,
    )
    if not moved:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order cannot be cancelled. It was already cancelled")

    items = await get_order_items(session, order.id)
    await restore_stock_for_items(session, items)
    await session.commit()

    vendor_note = await cancel_vendor_shipment(order)
    if vendor_note:
        await append_note(session, order.id, vendor_note)
        await session.commit()

    logger.info("refund.cancel.local", extra={"order_id": order.order_id, "vendor_note": bool(vendor_note)})
    return {"order": await load_order_view(session, order), "refund": None, "cancelled": True}


async def _issue_refund(session, order: Orders, reason: str, requested: Optional[int] = None,
                        source: str = "cancellation") -> Dict[str, Any]:
    """
    Claim, check the live payment, refund. On any failure before the gateway accepts the refund
    the claim is released so the customer can retry. Returns the gateway refund.
    """
    if not await claim_refund(session, order.id):
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Refund already processed for this order")
    await session.commit()

    async def release(code: int, detail: str):
        await release_refund_claim(session, order.id)
        await session.commit()
        raise HTTPException(status_code=code, detail=detail)

    try:
        payment = await gateway.fetch_payment(order.payment_id)
    except GatewayError as e:
        logger.error("refund.fetch_payment_failed", extra={"order_id": order.order_id, "error": str(e)})
        await release(status.HTTP_502_BAD_GATEWAY, "Unable to reach the payment provider. Please try again later.")

    if payment.get("status") != "captured":
        logger.warning("refund.payment_not_captured", extra={"order_id": order.order_id, "psp_status": payment.get("status")})
        await release(status.HTTP_400_BAD_REQUEST, f"Payment is not in a refundable state ({payment.get('status')})")

    amount = refundable_amount(order, payment)
    if requested is not None:
        amount = min(amount, int(requested))
    if amount <= 0:
        await release(status.HTTP_400_BAD_REQUEST, "Nothing left to refund for this order")

    try:
        refund = await gateway.refund(order.payment_id, amount, reason=reason, receipt=f"refund_{order.order_id}")
    except GatewayError as e:
        logger.error("refund.gateway_failed", extra={"order_id": order.order_id, "amount": amount, "error": str(e)})
        await release(status.HTTP_502_BAD_GATEWAY, "Refund could not be initiated. Please try again later.")

    refund["amount"] = int(refund.get("amount") or amount)
    REFUNDS_TOTAL.labels(source=source).inc()
    logger.info("refund.issued", extra={"order_id": order.order_id, "refund_id": refund["id"], "amount": refund["amount"]})
    return refund


def _refund_view(refund: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "refund_id": refund["id"],
        "amount": refund["amount"],
        "display_amount": format_rupees(refund["amount"]),
        "status": GATEWAY_REFUND_STATUS.get(refund.get("status"), RefundStatus.PENDING.value),
    }


async def _cancel_with_refund(session, order: Orders, reason: str) -> Dict[str, Any]:
    refund = await _issue_refund(session, order, reason)
    view = _refund_view(refund)

    # money has moved; local failures from here on are recorded, not undone
    try:
        await record_refund(session, order.id, view["refund_id"], view["amount"], view["status"], reason)
        moved = await transition_status(
            session, order.id, OrderStatus.CANCELLED.value,
            actor=HistoryActor.USER.value, reason=reason,
            from_statuses=CANCELLABLE_STATUSES,
            cancelled_at=now(), cancellation_reason=reason,
        )
        if moved:
            items = await get_order_items(session, order.id)
            await restore_stock_for_items(session, items)
        else:
            await append_note(session, order.id,
                              f"Refund {view['refund_id']} issued but the order was no longer cancellable; review status")
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.critical("refund.local_update_failed", extra={"order_id": order.order_id, "refund_id": view["refund_id"]},
                        exc_info=True)
        await _note_in_fresh_session(
            order.id,
            f"{RECONCILIATION_NOTE}: refund {view['refund_id']} of {view['display_amount']} issued but local "
            f"cancellation failed",
        )
        async with async_session() as fresh:
            return {"order": await load_order_view(fresh, order), "refund": view, "cancelled": False, "degraded": True}

    vendor_note = await cancel_vendor_shipment(order)
    if vendor_note:
        await append_note(session, order.id, vendor_note)
        await session.commit()

    return {"order": await load_order_view(session, order), "refund": view, "cancelled": True}


async def manual_refund(session, order_id: str, amount: Optional[int], reason: str, admin_id) -> Dict[str, Any]:
    """Admin refund for cancelled or delivered orders that never got one, and for paid reconciliation orders."""
    order = await get_order_by_order_id(session, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    refundable_statuses = (OrderStatus.CANCELLED.value, OrderStatus.DELIVERED.value)
    if is_reconciliation_order(order):
        refundable_statuses += (OrderStatus.PAID.value, OrderStatus.CONFIRMED.value)
    if order.status not in refundable_statuses:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Order cannot be refunded. Current status: {order.status}")
    if order.refund_id or order.refund_status:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order has already been refunded")
    if order.payment_status != PaymentStatus.COMPLETED.value or not order.payment_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order has no captured payment to refund")

    refund = await _issue_refund(session, order, reason, requested=amount, source="manual")
    view = _refund_view(refund)

    try:
        await record_refund(session, order.id, view["refund_id"], view["amount"], view["status"], reason,
                            notes=f"Manual refund by admin {admin_id}")
        if order.status != OrderStatus.CANCELLED.value:
            await transition_status(
                session, order.id, OrderStatus.CANCELLED.value,
                actor=HistoryActor.ADMIN.value, reason=f"Admin refund: {reason}",
                cancelled_at=now(),
            )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.critical("refund.manual.local_update_failed", extra={"order_id": order.order_id}, exc_info=True)
        await _note_in_fresh_session(
            order.id, f"{RECONCILIATION_NOTE}: manual refund {view['refund_id']} issued but not recorded locally")

    logger.info("refund.manual.issued", extra={"order_id": order.order_id, "admin_id": admin_id, "amount": view["amount"]})
    return {"order": await load_order_view(session, order), "refund": view}


async def get_refund_status(session, user_id, order_id: str) -> Dict[str, Any]:
    order = await get_order_by_order_id(session, order_id)
    if order is None or order.user_id != str(user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    view = serialize_order(order)
    return {"order_id": order.order_id, "order_status": order.status, "refund": view["refund"]}
