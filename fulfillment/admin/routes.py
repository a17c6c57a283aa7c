from typing import Optional
from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from fulfillment.auth.dependencies import require_admin
from fulfillment.common.utils import success_response
from fulfillment.db.dependencies import get_session
from fulfillment.orders.models import AdminShippingIn, AdminStatusIn, ManualRefundIn
from fulfillment.orders.repository import list_orders, list_refunded_orders, serialize_order
from fulfillment.orders.services import admin_update_shipping, admin_update_status
from fulfillment.refunds.services import manual_refund

admin_orders_router = APIRouter(dependencies=[Depends(require_admin)])
admin_refunds_router = APIRouter(dependencies=[Depends(require_admin)])


@admin_orders_router.get("")
async def all_orders(status_filter: Optional[str] = Query(None, alias="status"),
                     limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
                     session: AsyncSession = Depends(get_session)):
    orders, total = await list_orders(session, status=status_filter, limit=limit, offset=offset)
    return success_response({"orders": [serialize_order(o) for o in orders], "total": total,
                             "limit": limit, "offset": offset})


@admin_orders_router.patch("/{order_id}/status")
async def update_status(request: Request, order_id: str, payload: AdminStatusIn,
                        session: AsyncSession = Depends(get_session)):
    admin_id = request.state.user_identifier
    order = await admin_update_status(session, order_id, payload.status, payload.reason, admin_id)
    return success_response({"order": order})


@admin_orders_router.patch("/{order_id}/shipping")
async def update_shipping(request: Request, order_id: str, payload: AdminShippingIn,
                          session: AsyncSession = Depends(get_session)):
    admin_id = request.state.user_identifier
    order = await admin_update_shipping(
        session, order_id, admin_id,
        awb_code=payload.awb_code,
        courier_name=payload.courier_name,
        vendor_order_id=payload.vendor_order_id,
        vendor_shipment_id=payload.vendor_shipment_id,
    )
    return success_response({"order": order})


@admin_refunds_router.post("/manual")
async def create_manual_refund(request: Request, payload: ManualRefundIn, session: AsyncSession = Depends(get_session)):
    admin_id = request.state.user_identifier
    result = await manual_refund(session, payload.order_id, payload.amount, payload.reason, admin_id)
    return success_response(result, status_code=status.HTTP_201_CREATED)


@admin_refunds_router.get("")
async def refunded_orders(limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
                          session: AsyncSession = Depends(get_session)):
    orders = await list_refunded_orders(session, limit=limit, offset=offset)
    refunds = [
        {"order_id": o.order_id, "order_status": o.status, "user_id": o.user_id, "refund": serialize_order(o)["refund"]}
        for o in orders
    ]
    return success_response({"refunds": refunds, "limit": limit, "offset": offset})
