import json
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
from fastapi import BackgroundTasks, HTTPException, status
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from fulfillment.cart.repository import clear_cart, get_cart_items
from fulfillment.common.logging_setup import get_logger
from fulfillment.common.utils import as_utc, format_rupees, now
from fulfillment.config.settings import config_settings
from fulfillment.coupons.services import CouponRejected, price_coupon, record_coupon_usage
from fulfillment.db.connection import async_session
from fulfillment.inventory.repository import check_items_availability, commit_stock_for_items
from fulfillment.orders.models import CreateOrderIn, VerifyPaymentIn
from fulfillment.orders.repository import append_note, create_order_with_items, get_order_by_intent, get_order_by_order_id, load_order_view, set_shipment_linkage, transition_status
from fulfillment.orders.utils import RECONCILIATION_NOTE, cancellation_deadline, cart_subtotal, cod_order_id, cod_token_receipt, compact_items, online_order_id, reconciliation_order_id, validate_shipping_address
from fulfillment.payments import gateway
from fulfillment.payments.gateway import GatewayError
from fulfillment.schema.full_schema import HistoryActor, Orders, OrderStatus, PaymentMethod, PaymentStatus
from fulfillment.shipping.services import schedule_shipment
from fulfillment.shipping.utils import tracking_url_for
from metrics.custom_instrumentator import CHECKOUT_ORDERS_TOTAL

logger = get_logger("fulfillment.checkout")

MIN_CHARGEABLE_PAISE = 100


def cod_token_paise() -> int:
    return int(config_settings.COD_TOKEN_AMOUNT) * 100


# shared steps --------------------------------------------------------------------------------------

async def load_checkout_items(session, user_id) -> List[Dict[str, Any]]:
    items = await get_cart_items(session, user_id)
    if not items:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cart is empty")

    unavailable = await check_items_availability(session, items)
    if unavailable:
        logger.info("checkout.stock.unavailable", extra={"user_id": user_id, "lines": len(unavailable)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Some items in your cart are not available", "unavailable_items": unavailable},
        )
    return items


async def price_checkout(session, items, coupon_code: Optional[str], user_id) -> Dict[str, Any]:
    subtotal = cart_subtotal(items)
    pricing = {"subtotal": subtotal, "discount": 0, "amount": subtotal, "coupon": None}
    if not coupon_code or not coupon_code.strip():
        return pricing

    try:
        priced = await price_coupon(session, coupon_code, subtotal, user_id)
    except CouponRejected as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.reason)

    pricing.update(discount=priced.discount_amount, amount=priced.final_amount, coupon=priced.snapshot())
    return pricing


def after_order_created(app, background_tasks: Optional[BackgroundTasks], order: Orders):
    """Side effects that must never fail the checkout: coupon accounting and shipment hand-off."""
    if order.coupon and order.coupon.get("code"):
        if background_tasks is not None:
            background_tasks.add_task(record_coupon_usage, order.coupon["code"], order.user_id, order.order_id)
        else:
            logger.warning("checkout.coupon_usage.not_scheduled", extra={"order_id": order.order_id})
    schedule_shipment(app, order.order_id)


# cash on delivery ----------------------------------------------------------------------------------

async def place_cod_order(session, app, background_tasks, user_id, user_email, payload: CreateOrderIn) -> Dict[str, Any]:
    address = validate_shipping_address(payload.shipping_address, user_email)
    items = await load_checkout_items(session, user_id)
    pricing = await price_checkout(session, items, payload.coupon_code, user_id)

    created = now()
    fields = {
        "order_id": cod_order_id(user_id),
        "user_id": str(user_id),
        "subtotal": pricing["subtotal"],
        "discount": pricing["discount"],
        "amount": pricing["amount"],
        "currency": config_settings.CURRENCY,
        "coupon": pricing["coupon"],
        "shipping_address": address,
        "payment_method": PaymentMethod.COD.value,
        "payment_status": PaymentStatus.PENDING.value,
        "status": OrderStatus.CONFIRMED.value,
        "cancellation_window_ends_at": cancellation_deadline(created),
        "created_at": created,
    }

    # order, stock and cart move together; nothing external has happened yet so a failure just rolls back
    order = await create_order_with_items(session, fields, items, actor=HistoryActor.USER.value,
                                          reason="Cash on delivery order placed")
    await commit_stock_for_items(session, items)
    await clear_cart(session, user_id)
    await session.commit()

    CHECKOUT_ORDERS_TOTAL.labels(payment_method=PaymentMethod.COD.value, outcome="created").inc()
    logger.info("checkout.cod.created", extra={"order_id": order.order_id, "user_id": user_id, "amount": order.amount})
    after_order_created(app, background_tasks, order)
    return await load_order_view(session, order)


# gateway intents -----------------------------------------------------------------------------------

def build_intent_notes(user_id, payment_type: str, order_id: str, items, address, pricing) -> Dict[str, str]:
    # gateway notes are flat strings, structured parts are json encoded
    return {
        "userId": str(user_id),
        "paymentType": payment_type,
        "orderId": order_id,
        "items": json.dumps(compact_items(items), separators=(",", ":")),
        "shippingAddress": json.dumps(address, separators=(",", ":")),
        "coupon": json.dumps(pricing["coupon"], separators=(",", ":")) if pricing["coupon"] else "",
        "subtotal": str(pricing["subtotal"]),
        "discount": str(pricing["discount"]),
        "orderAmount": str(pricing["amount"]),
    }


async def _create_intent(amount: int, receipt: str, notes: Dict[str, str], user_id) -> Dict[str, Any]:
    try:
        return await gateway.create_intent(amount, config_settings.CURRENCY, receipt, notes)
    except GatewayError as e:
        logger.error("checkout.intent.gateway_failed", extra={"user_id": user_id, "receipt": receipt, "error": str(e)})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY,
                            detail="Unable to initiate payment right now. Please try again.")


async def create_online_intent(session, user_id, user_email, payload: CreateOrderIn) -> Dict[str, Any]:
    address = validate_shipping_address(payload.shipping_address, user_email)
    items = await load_checkout_items(session, user_id)
    pricing = await price_checkout(session, items, payload.coupon_code, user_id)

    if pricing["amount"] < MIN_CHARGEABLE_PAISE:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Order amount must be at least {format_rupees(MIN_CHARGEABLE_PAISE)} for online payment")

    receipt = online_order_id(user_id)
    notes = build_intent_notes(user_id, PaymentMethod.RAZORPAY.value, receipt, items, address, pricing)
    intent = await _create_intent(pricing["amount"], receipt, notes, user_id)

    logger.info("checkout.intent.created", extra={"intent_id": intent["id"], "user_id": user_id, "amount": pricing["amount"]})
    return {
        "intentId": intent["id"],
        "amount": pricing["amount"],
        "currency": config_settings.CURRENCY,
        "receipt": receipt,
        "key": config_settings.RZPAY_KEY,
        "pricing": {"subtotal": pricing["subtotal"], "discount": pricing["discount"], "coupon": pricing["coupon"]},
    }


async def create_cod_token_intent(session, user_id, user_email, payload: CreateOrderIn) -> Dict[str, Any]:
    address = validate_shipping_address(payload.shipping_address, user_email)
    items = await load_checkout_items(session, user_id)
    pricing = await price_checkout(session, items, payload.coupon_code, user_id)

    token = cod_token_paise()
    receipt = cod_token_receipt(user_id)
    notes = build_intent_notes(user_id, PaymentMethod.COD_TOKEN.value, cod_order_id(user_id), items, address, pricing)
    notes["codTokenAmount"] = str(token)
    intent = await _create_intent(token, receipt, notes, user_id)

    logger.info("checkout.cod_token.intent_created", extra={"intent_id": intent["id"], "user_id": user_id})
    return {
        "intentId": intent["id"],
        "amount": token,
        "currency": config_settings.CURRENCY,
        "receipt": receipt,
        "key": config_settings.RZPAY_KEY,
        "orderAmount": pricing["amount"],
        "balanceDue": max(0, pricing["amount"] - token),
    }


# verification --------------------------------------------------------------------------------------

def _support_detail(payment_id: str) -> str:
    return (f"Payment could not be confirmed right now. If you were charged, please contact support "
            f"with payment id {payment_id}")


async def _confirm_with_gateway(body: VerifyPaymentIn) -> Dict[str, Any]:
    """Signature check, then the authoritative remote fetch. Returns the decoded intent notes."""
    if not gateway.verify_signature(body.intent_id, body.payment_id, body.signature):
        logger.warning("checkout.verify.signature_mismatch", extra={"intent_id": body.intent_id, "payment_id": body.payment_id})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment verification failed")

    try:
        payment = await gateway.fetch_payment(body.payment_id)
    except GatewayError as e:
        logger.error("checkout.verify.fetch_payment_failed", extra={"payment_id": body.payment_id, "error": str(e)})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=_support_detail(body.payment_id))

    if not gateway.payment_is_captured_for(payment, body.intent_id):
        logger.warning("checkout.verify.not_captured",
                       extra={"payment_id": body.payment_id, "intent_id": body.intent_id, "psp_status": payment.get("status")})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment has not been captured")

    try:
        intent = await gateway.fetch_intent(body.intent_id)
    except GatewayError as e:
        logger.error("checkout.verify.fetch_intent_failed", extra={"intent_id": body.intent_id, "error": str(e)})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=_support_detail(body.payment_id))

    notes = gateway.parse_intent_notes(intent)
    notes["_captured_amount"] = int(payment.get("amount") or 0)
    return notes


def choose_items(snapshot: List[Dict[str, Any]], live: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # the intent snapshot is authoritative unless the live cart carries more lines
    if len(live) > len(snapshot):
        return live
    return snapshot


def _int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def order_fields_from_notes(notes: Dict[str, Any], body: VerifyPaymentIn, user_id, payment_type: str,
                            order_id: Optional[str] = None) -> Dict[str, Any]:
    created = now()
    token = payment_type == PaymentMethod.COD_TOKEN.value
    amount = _int(notes.get("orderAmount"), notes.get("_captured_amount", 0))
    fields = {
        "order_id": order_id or notes.get("orderId") or (cod_order_id(user_id) if token else online_order_id(user_id)),
        "user_id": str(user_id),
        "intent_id": body.intent_id,
        "payment_id": body.payment_id,
        "payment_signature": body.signature,
        "subtotal": _int(notes.get("subtotal"), amount),
        "discount": _int(notes.get("discount")),
        "amount": amount,
        "currency": config_settings.CURRENCY,
        "coupon": notes.get("coupon") or None,
        "shipping_address": notes.get("shippingAddress") or {},
        "payment_method": payment_type,
        "payment_status": PaymentStatus.COMPLETED.value,
        "status": OrderStatus.CONFIRMED.value if token else OrderStatus.PAID.value,
        "cancellation_window_ends_at": cancellation_deadline(created),
        "created_at": created,
    }
    if token:
        fields["cod_token_amount"] = _int(notes.get("codTokenAmount"), cod_token_paise())
    return fields


async def write_reconciliation_order(fields: Dict[str, Any], items: List[Dict[str, Any]], reason: str) -> Optional[Orders]:
    """Best-effort record of money that moved without a proper order. Own session, never raises."""
    recon_fields = dict(fields, order_id=reconciliation_order_id(fields["user_id"]))
    note = f"{RECONCILIATION_NOTE}: {reason} (payment {fields.get('payment_id')}, intent {fields.get('intent_id')})"
    try:
        async with async_session() as session:
            try:
                order = await create_order_with_items(session, recon_fields, items, reason="Reconciliation record")
                await append_note(session, order.id, note)
                await session.commit()
                return order
            except IntegrityError:
                # the original order made it in after all
                await session.rollback()
                return await get_order_by_intent(session, fields["intent_id"])
    except Exception:
        logger.critical("checkout.reconciliation.write_failed",
                        extra={"payment_id": fields.get("payment_id"), "intent_id": fields.get("intent_id")}, exc_info=True)
        return None


async def materialize_paid_order(session, fields, items, user_id) -> Tuple[Optional[Orders], str]:
    """
    Insert order + items + history, decrement stock and clear the cart in one transaction.
    Returns (order, outcome) with outcome one of "created", "existing" (a concurrent verify
    won the race) or "degraded" (a reconciliation record was written instead).
    """
    try:
        order = await create_order_with_items(session, fields, items, reason="Payment verified")
        await commit_stock_for_items(session, items)
        await clear_cart(session, user_id)
        await session.commit()
        return order, "created"
    except IntegrityError:
        await session.rollback()
        existing = await get_order_by_intent(session, fields["intent_id"])
        if existing is not None:
            logger.info("checkout.verify.concurrent_duplicate", extra={"intent_id": fields["intent_id"], "order_id": existing.order_id})
            return existing, "existing"
        logger.exception("checkout.verify.materialize_integrity_error", extra={"intent_id": fields["intent_id"]})
        reason = "order insert violated a constraint after payment capture"
    except SQLAlchemyError as e:
        await session.rollback()
        logger.exception("checkout.verify.materialize_failed", extra={"intent_id": fields["intent_id"]})
        reason = f"order materialization failed after payment capture: {type(e).__name__}"

    recon = await write_reconciliation_order(fields, items, reason)
    return recon, "degraded"


async def verify_and_materialize(session, app, background_tasks, user_id, body: VerifyPaymentIn,
                                 payment_type: str) -> Dict[str, Any]:
    """
    Shared verification for the online and token flows. Returns {"order": ..., "degraded": bool, ...}.
    Nothing is written before the gateway confirms the capture.
    """
    notes = await _confirm_with_gateway(body)

    if str(notes.get("userId")) != str(user_id):
        logger.warning("checkout.verify.owner_mismatch", extra={"intent_id": body.intent_id, "user_id": user_id})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This payment does not belong to your account")

    if notes.get("paymentType") != payment_type:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment type does not match this checkout")

    existing = await get_order_by_intent(session, body.intent_id)
    if existing is not None:
        logger.info("checkout.verify.already_materialized", extra={"intent_id": body.intent_id, "order_id": existing.order_id})
        return {"order": await load_order_view(session, existing), "degraded": False}

    snapshot = notes.get("items") if isinstance(notes.get("items"), list) else []
    live = await get_cart_items(session, user_id)
    items = choose_items(snapshot, live)
    fields = order_fields_from_notes(notes, body, user_id, payment_type)

    if not items:
        order = await write_reconciliation_order(fields, [], "no line items on intent or cart")
        outcome = "degraded"
    else:
        order, outcome = await materialize_paid_order(session, fields, items, user_id)

    CHECKOUT_ORDERS_TOTAL.labels(payment_method=payment_type, outcome=outcome).inc()
    if outcome == "degraded":
        logger.error("checkout.verify.degraded", extra={"intent_id": body.intent_id, "payment_id": body.payment_id,
                                                        "recon_order_id": order.order_id if order else None})
        view = None
        if order is not None:
            async with async_session() as fresh:
                view = await load_order_view(fresh, order)
        return {
            "order": view,
            "degraded": True,
            "paymentId": body.payment_id,
            "detail": ("Payment confirmed, fulfillment pending manual review. Please contact support "
                       f"with payment id {body.payment_id}"),
        }

    if outcome == "created":
        logger.info("checkout.verify.order_created",
                    extra={"order_id": order.order_id, "intent_id": body.intent_id, "payment_method": payment_type})
        after_order_created(app, background_tasks, order)
    return {"order": await load_order_view(session, order), "degraded": False}


# post-purchase -------------------------------------------------------------------------------------

async def get_owned_order(session, user_id, order_id: str) -> Orders:
    order = await get_order_by_order_id(session, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    if order.user_id != str(user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You are not allowed to view this order")
    return order


async def request_return(session, user_id, order_id: str, reason: str, comments: Optional[str]) -> Dict[str, Any]:
    """Delivered orders can be flagged for return within the return window. No refund is triggered here."""
    order = await get_owned_order(session, user_id, order_id)

    if order.status != OrderStatus.DELIVERED.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Only delivered orders can be returned. Current status: {order.status}")

    delivered_at = as_utc(order.delivered_at) or as_utc(order.updated_at)
    if now() > delivered_at + timedelta(days=config_settings.RETURN_WINDOW_DAYS):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Return window has expired. Returns are accepted within {config_settings.RETURN_WINDOW_DAYS} days of delivery.",
        )

    moved = await transition_status(
        session, order.id, OrderStatus.RETURN_REQUESTED.value,
        actor=HistoryActor.USER.value, reason=reason,
        from_statuses=(OrderStatus.DELIVERED.value,),
        return_requested_at=now(), return_reason=reason, return_comments=comments,
    )
    if not moved:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Return already requested for this order")
    await session.commit()

    logger.info("orders.return.requested", extra={"order_id": order.order_id, "user_id": user_id})
    return await load_order_view(session, order)


async def admin_update_status(session, order_id: str, new_status: str, reason: Optional[str], admin_id) -> Dict[str, Any]:
    valid = {s.value for s in OrderStatus}
    if new_status not in valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid status {new_status}")

    order = await get_order_by_order_id(session, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    values: Dict[str, Any] = {}
    if new_status == OrderStatus.DELIVERED.value:
        values["delivered_at"] = now()
    elif new_status == OrderStatus.CANCELLED.value:
        values["cancelled_at"] = now()
        values["cancellation_reason"] = reason

    moved = await transition_status(
        session, order.id, new_status,
        actor=HistoryActor.ADMIN.value, reason=reason or f"Status updated by admin {admin_id}",
        **values,
    )
    await session.commit()
    logger.info("orders.admin.status_updated",
                extra={"order_id": order.order_id, "admin_id": admin_id, "status": new_status, "changed": moved})
    return await load_order_view(session, order)


async def admin_update_shipping(session, order_id: str, admin_id, awb_code: Optional[str] = None,
                                courier_name: Optional[str] = None, vendor_order_id: Optional[str] = None,
                                vendor_shipment_id: Optional[str] = None) -> Dict[str, Any]:
    order = await get_order_by_order_id(session, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    await set_shipment_linkage(
        session, order.id,
        vendor_order_id=vendor_order_id,
        vendor_shipment_id=vendor_shipment_id,
        awb_code=awb_code,
        courier_name=courier_name,
        tracking_url=tracking_url_for(awb_code),
    )
    if awb_code and order.status == OrderStatus.PAID.value:
        await transition_status(
            session, order.id, OrderStatus.PROCESSING.value,
            actor=HistoryActor.ADMIN.value, reason=f"AWB {awb_code} added by admin",
            from_statuses=(OrderStatus.PAID.value,),
        )
    await session.commit()
    logger.info("orders.admin.shipping_updated", extra={"order_id": order.order_id, "admin_id": admin_id})
    return await load_order_view(session, order)
