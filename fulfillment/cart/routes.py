from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.cart.models import CartItemInput, CartQuantityInput
from fulfillment.cart.repository import add_item_to_cart, clear_cart, get_cart_id, get_cart_view, get_or_create_cart, move_item, remove_item, update_item_quantity
from fulfillment.common.constants import SIZES
from fulfillment.common.utils import success_response
from fulfillment.db.dependencies import get_session
from fulfillment.inventory.repository import get_products

carts_router=APIRouter()


async def _require_cart(session, user_id):
    cart_id = await get_cart_id(session, user_id)
    if not cart_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cart not found")
    return cart_id


@carts_router.get("")
async def get_cart(request:Request,session:AsyncSession=Depends(get_session)):
    user_id = request.state.user_identifier
    return success_response({"cart": await get_cart_view(session, user_id)})


@carts_router.post("/items")
async def add_to_cart(request:Request,payload:CartItemInput,session:AsyncSession=Depends(get_session)):
    user_id = request.state.user_identifier

    if payload.size not in SIZES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid size {payload.size}")

    products = await get_products(session, [payload.product_id])
    product = products.get(payload.product_id)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    product["product_id"] = payload.product_id

    cart_id = await get_or_create_cart(session,user_id)
    if not cart_id:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Cart could not be created")

    item, created = await add_item_to_cart(session, cart_id, product, payload.size, payload.quantity)

    resp = {"cart_id": cart_id, "item": item, "created": created}
    return success_response(resp, 200)


@carts_router.patch("/items/{item_id}")
async def change_quantity(request:Request,item_id:int,payload:CartQuantityInput,session:AsyncSession=Depends(get_session)):
    cart_id = await _require_cart(session, request.state.user_identifier)
    item = await update_item_quantity(session, cart_id, item_id, payload.quantity)
    return success_response({"item": item})


@carts_router.delete("/items/{item_id}")
async def delete_item(request:Request,item_id:int,session:AsyncSession=Depends(get_session)):
    cart_id = await _require_cart(session, request.state.user_identifier)
    await remove_item(session, cart_id, item_id)
    return success_response({"removed": item_id})


@carts_router.post("/items/{item_id}/save-for-later")
async def save_for_later(request:Request,item_id:int,session:AsyncSession=Depends(get_session)):
    cart_id = await _require_cart(session, request.state.user_identifier)
    item = await move_item(session, cart_id, item_id, to_saved=True)
    return success_response({"item": item})


@carts_router.post("/items/{item_id}/move-to-cart")
async def move_to_cart(request:Request,item_id:int,session:AsyncSession=Depends(get_session)):
    cart_id = await _require_cart(session, request.state.user_identifier)
    item = await move_item(session, cart_id, item_id, to_saved=False)
    return success_response({"item": item})


@carts_router.delete("")
async def empty_cart(request:Request,session:AsyncSession=Depends(get_session)):
    await clear_cart(session, request.state.user_identifier)
    await session.commit()
    return success_response({"cleared": True})
