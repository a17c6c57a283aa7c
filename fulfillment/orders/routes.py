from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from fulfillment.common.utils import success_response
from fulfillment.db.dependencies import get_session
from fulfillment.orders.models import CancelIn, CreateOrderIn, ReturnIn, VerifyPaymentIn
from fulfillment.orders.repository import get_order_items, list_user_orders, load_order_view, serialize_order
from fulfillment.orders.services import create_cod_token_intent, create_online_intent, get_owned_order, place_cod_order, request_return, verify_and_materialize
from fulfillment.refunds.services import cancel_order
from fulfillment.schema.full_schema import PaymentMethod
from fulfillment.shipping.services import get_tracking

payment_router = APIRouter()
cod_router = APIRouter()
cod_token_router = APIRouter()
orders_router = APIRouter()


def _verification_response(result):
    if result.get("degraded"):
        # payment cleared; the customer gets a qualified success with a reference for support
        return success_response({
            "order": result["order"],
            "degraded": True,
            "paymentId": result["paymentId"],
            "message": result["detail"],
        })
    return success_response({"order": result["order"]})


# online payment ---------------------------------------------------------------------------------------

@payment_router.post("/create-order")
async def create_payment_order(request: Request, payload: CreateOrderIn, session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier
    user_email = getattr(request.state, "user_email", None)

    intent = await create_online_intent(session, user_identifier, user_email, payload)
    return success_response(intent, status_code=status.HTTP_201_CREATED)


@payment_router.post("/verify-payment")
async def verify_payment(request: Request, body: VerifyPaymentIn, background_tasks: BackgroundTasks,
                         session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier

    result = await verify_and_materialize(session, request.app, background_tasks, user_identifier, body,
                                          PaymentMethod.RAZORPAY.value)
    return _verification_response(result)


# cash on delivery -------------------------------------------------------------------------------------

@cod_router.post("/create-order")
async def create_cod_order(request: Request, payload: CreateOrderIn, background_tasks: BackgroundTasks,
                           session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier
    user_email = getattr(request.state, "user_email", None)

    order = await place_cod_order(session, request.app, background_tasks, user_identifier, user_email, payload)
    return success_response({"order": order}, status_code=status.HTTP_201_CREATED)


@cod_token_router.post("/create-order")
async def create_cod_token_order(request: Request, payload: CreateOrderIn, session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier
    user_email = getattr(request.state, "user_email", None)

    intent = await create_cod_token_intent(session, user_identifier, user_email, payload)
    return success_response(intent, status_code=status.HTTP_201_CREATED)


@cod_token_router.post("/verify-payment")
async def verify_cod_token_payment(request: Request, body: VerifyPaymentIn, background_tasks: BackgroundTasks,
                                   session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier

    result = await verify_and_materialize(session, request.app, background_tasks, user_identifier, body,
                                          PaymentMethod.COD_TOKEN.value)
    return _verification_response(result)


# post purchase ----------------------------------------------------------------------------------------

@orders_router.get("")
async def my_orders(request: Request, limit: int = Query(20, ge=1, le=100), offset: int = Query(0, ge=0),
                    session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier

    orders = await list_user_orders(session, user_identifier, limit=limit, offset=offset)
    data = [serialize_order(o, items=await get_order_items(session, o.id)) for o in orders]
    return success_response({"orders": data, "limit": limit, "offset": offset})


@orders_router.get("/{order_id}")
async def get_order(request: Request, order_id: str, session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier

    order = await get_owned_order(session, user_identifier, order_id)
    return success_response({"order": await load_order_view(session, order)})


@orders_router.put("/{order_id}/cancel")
async def cancel(request: Request, order_id: str, background_tasks: BackgroundTasks,
                 payload: CancelIn = CancelIn(), session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier

    result = await cancel_order(session, background_tasks, user_identifier, order_id, payload.reason)
    data = {"order": result["order"], "refund": result["refund"]}
    if result.get("degraded"):
        data["degraded"] = True
        data["message"] = "Refund issued, cancellation pending manual review"
    elif result["refund"]:
        data["message"] = "Order cancelled and refund initiated"
    else:
        data["message"] = "Order cancelled"
    return success_response(data)


@orders_router.post("/{order_id}/return")
async def return_order(request: Request, order_id: str, payload: ReturnIn, session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier

    order = await request_return(session, user_identifier, order_id, payload.reason, payload.comments)
    return success_response({"order": order, "message": "Return request submitted"})


@orders_router.get("/{order_id}/tracking")
async def track_order(request: Request, order_id: str, session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier

    order = await get_owned_order(session, user_identifier, order_id)
    return success_response({"tracking": await get_tracking(order)})
