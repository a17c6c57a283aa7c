from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy import and_, func, insert, select, update
from fulfillment.common.utils import now
from fulfillment.schema.full_schema import HistoryActor, OrderItem, OrderNote, Orders, OrderStatus, OrderStatusHistory, RefundStatus


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def order_item_to_dict(it: OrderItem) -> Dict[str, Any]:
    return {
        "product_id": it.product_id,
        "product_name": it.product_name,
        "size": it.size,
        "quantity": int(it.quantity),
        "price": int(it.price),
        "image": it.image,
    }


def serialize_order(order: Orders, items: Optional[List[Dict[str, Any]]] = None,
                    history: Optional[List[Dict[str, Any]]] = None,
                    notes: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "order_id": order.order_id,
        "public_id": str(order.public_id),
        "user_id": order.user_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "intent_id": order.intent_id,
        "payment_id": order.payment_id,
        "subtotal": int(order.subtotal),
        "discount": int(order.discount),
        "amount": int(order.amount),
        "currency": order.currency,
        "coupon": order.coupon,
        "cod_token_amount": order.cod_token_amount,
        "shipping_address": order.shipping_address,
        "items": items or [],
        "shipment": {
            "vendor_order_id": order.vendor_order_id,
            "vendor_shipment_id": order.vendor_shipment_id,
            "awb_code": order.awb_code,
            "courier_name": order.courier_name,
            "tracking_url": order.tracking_url,
        },
        "refund": {
            "refund_id": order.refund_id,
            "amount": order.refund_amount,
            "status": order.refund_status,
            "reason": order.refund_reason,
            "notes": order.refund_notes,
            "refunded_at": _iso(order.refunded_at),
        },
        "cancellation_window_ends_at": _iso(order.cancellation_window_ends_at),
        "delivered_at": _iso(order.delivered_at),
        "cancelled_at": _iso(order.cancelled_at),
        "cancellation_reason": order.cancellation_reason,
        "return_requested_at": _iso(order.return_requested_at),
        "return_reason": order.return_reason,
        "status_history": history or [],
        "notes": notes or [],
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }


async def get_order_by_order_id(session, order_id: str) -> Optional[Orders]:
    res = await session.execute(select(Orders).where(Orders.order_id == order_id))
    return res.scalar_one_or_none()


async def get_order_by_pk(session, pk: int) -> Optional[Orders]:
    res = await session.execute(select(Orders).where(Orders.id == pk).execution_options(populate_existing=True))
    return res.scalar_one_or_none()


async def get_order_by_intent(session, intent_id: str) -> Optional[Orders]:
    res = await session.execute(select(Orders).where(Orders.intent_id == intent_id))
    return res.scalar_one_or_none()


async def get_order_by_vendor_order_id(session, vendor_order_id: str) -> Optional[Orders]:
    res = await session.execute(select(Orders).where(Orders.vendor_order_id == str(vendor_order_id)))
    return res.scalar_one_or_none()


async def get_order_items(session, order_pk: int) -> List[Dict[str, Any]]:
    res = await session.execute(select(OrderItem).where(OrderItem.order_id == order_pk).order_by(OrderItem.id))
    return [order_item_to_dict(it) for it in res.scalars().all()]


async def get_history(session, order_pk: int) -> List[Dict[str, Any]]:
    stmt = select(OrderStatusHistory).where(OrderStatusHistory.order_id == order_pk).order_by(OrderStatusHistory.id)
    res = await session.execute(stmt)
    return [
        {"status": h.status, "actor": h.actor, "reason": h.reason, "timestamp": _iso(h.created_at)}
        for h in res.scalars().all()
    ]


async def get_notes(session, order_pk: int) -> List[str]:
    res = await session.execute(select(OrderNote.note).where(OrderNote.order_id == order_pk).order_by(OrderNote.id))
    return list(res.scalars().all())


async def load_order_view(session, order: Orders) -> Dict[str, Any]:
    # conditional updates bypass the identity map, re-read the row
    order = await get_order_by_pk(session, order.id) or order
    return serialize_order(
        order,
        items=await get_order_items(session, order.id),
        history=await get_history(session, order.id),
        notes=await get_notes(session, order.id),
    )


async def append_history(session, order_pk: int, status: str, actor: str = HistoryActor.SYSTEM.value,
                         reason: Optional[str] = None):
    await session.execute(insert(OrderStatusHistory).values(
        order_id=order_pk, status=status, actor=actor, reason=reason, created_at=now()))


async def append_note(session, order_pk: int, note: str):
    await session.execute(insert(OrderNote).values(order_id=order_pk, note=note, created_at=now()))


async def create_order_with_items(session, fields: Dict[str, Any], items: List[Dict[str, Any]],
                                  actor: str = HistoryActor.SYSTEM.value, reason: Optional[str] = None) -> Orders:
    """Insert order, line-item snapshot and the first history entry. Caller commits."""
    order = Orders(**fields)
    session.add(order)
    await session.flush()

    for it in items:
        session.add(OrderItem(
            order_id=order.id,
            product_id=it["product_id"],
            product_name=it.get("product_name") or it["product_id"],
            size=it["size"],
            quantity=int(it["quantity"]),
            price=int(it["price"]),
            image=it.get("image"),
        ))
    await append_history(session, order.id, order.status, actor, reason)
    await session.flush()
    return order


async def transition_status(session, order_pk: int, new_status: str, *, actor: str,
                            reason: Optional[str] = None, from_statuses: Optional[Iterable[str]] = None,
                            **values) -> bool:
    """
    Conditional status update plus one history entry. Returns False and writes nothing
    when the order is no longer in one of `from_statuses` or already in `new_status`.
    """
    conds = [Orders.id == order_pk, Orders.status != new_status]
    if from_statuses is not None:
        conds.append(Orders.status.in_(list(from_statuses)))

    stmt = (
        update(Orders)
        .where(and_(*conds))
        .values(status=new_status, updated_at=now(), **values)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount == 0:
        return False
    await append_history(session, order_pk, new_status, actor, reason)
    return True


async def update_order_fields(session, order_pk: int, **values):
    stmt = (
        update(Orders)
        .where(Orders.id == order_pk)
        .values(updated_at=now(), **values)
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def set_shipment_linkage(session, order_pk: int, vendor_order_id: Optional[str] = None,
                               vendor_shipment_id: Optional[str] = None, awb_code: Optional[str] = None,
                               courier_name: Optional[str] = None, tracking_url: Optional[str] = None):
    values = {
        "vendor_order_id": vendor_order_id,
        "vendor_shipment_id": vendor_shipment_id,
        "awb_code": awb_code,
        "courier_name": courier_name,
        "tracking_url": tracking_url,
    }
    values = {k: v for k, v in values.items() if v is not None}
    if values:
        await update_order_fields(session, order_pk, **values)


# refunds ---------------------------------------------------------------------------------------

async def claim_refund(session, order_pk: int) -> bool:
    """Mark the refund as in flight. Only one caller can win the claim for an order."""
    stmt = (
        update(Orders)
        .where(Orders.id == order_pk, Orders.refund_status.is_(None), Orders.refund_id.is_(None))
        .values(refund_status=RefundStatus.PROCESSING.value, updated_at=now())
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def release_refund_claim(session, order_pk: int):
    stmt = (
        update(Orders)
        .where(Orders.id == order_pk, Orders.refund_status == RefundStatus.PROCESSING.value, Orders.refund_id.is_(None))
        .values(refund_status=None, updated_at=now())
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def record_refund(session, order_pk: int, refund_id: str, amount: int, refund_status: str,
                        reason: Optional[str], notes: Optional[str] = None):
    await update_order_fields(
        session, order_pk,
        refund_id=refund_id,
        refund_amount=int(amount),
        refund_status=refund_status,
        refund_reason=reason,
        refund_notes=notes,
        refunded_at=now(),
    )


# listings --------------------------------------------------------------------------------------

async def list_user_orders(session, user_id, limit: int = 20, offset: int = 0) -> List[Orders]:
    stmt = (
        select(Orders)
        .where(Orders.user_id == user_id)
        .order_by(Orders.created_at.desc(), Orders.id.desc())
        .limit(limit)
        .offset(offset)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def list_orders(session, status: Optional[str] = None, limit: int = 50, offset: int = 0):
    stmt = select(Orders)
    count_stmt = select(func.count(Orders.id))
    if status:
        stmt = stmt.where(Orders.status == status)
        count_stmt = count_stmt.where(Orders.status == status)
    stmt = stmt.order_by(Orders.created_at.desc(), Orders.id.desc()).limit(limit).offset(offset)
    rows = (await session.execute(stmt)).scalars().all()
    total = (await session.execute(count_stmt)).scalar_one()
    return list(rows), int(total)


async def list_refunded_orders(session, limit: int = 50, offset: int = 0) -> List[Orders]:
    stmt = (
        select(Orders)
        .where(Orders.refund_status.is_not(None))
        .order_by(Orders.refunded_at.desc(), Orders.id.desc())
        .limit(limit)
        .offset(offset)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


def is_terminal_for_cancel(status: str) -> bool:
    return status in (OrderStatus.CANCELLED.value, OrderStatus.DELIVERED.value, OrderStatus.RETURN_REQUESTED.value,
                      OrderStatus.RETURNED.value)
