from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from fulfillment.cart.repository import get_cart_items
from fulfillment.common.utils import success_response
from fulfillment.db.dependencies import get_session
from fulfillment.inventory.repository import check_items_availability

stock_router = APIRouter()


@stock_router.post("/validate")
async def validate_cart_stock(request: Request, session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier

    items = await get_cart_items(session, user_identifier)
    if not items:
        return success_response({"valid": False, "message": "Cart is empty", "unavailable_items": []})

    unavailable = await check_items_availability(session, items)
    resp = {
        "valid": not unavailable,
        "message": "All items are available" if not unavailable else "Some items in your cart are no longer available",
        "unavailable_items": unavailable,
    }
    return success_response(resp)
