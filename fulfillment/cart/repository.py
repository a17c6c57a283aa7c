from typing import Any, Dict, List, Optional
from fastapi import HTTPException,status
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from fulfillment.schema.full_schema import Cart, CartItem


def cart_item_to_dict(ci: CartItem) -> Dict[str, Any]:
    return {
        "id": ci.id,
        "product_id": ci.product_id,
        "product_name": ci.product_name,
        "size": ci.size,
        "quantity": int(ci.quantity),
        "price": int(ci.price),
        "image": ci.image,
    }


async def get_cart_id(session, user_id) -> Optional[int]:
    res = await session.execute(select(Cart.id).where(Cart.user_id == user_id))
    return res.scalar_one_or_none()


async def get_or_create_cart(session, user_id) -> int:
    cart_id = await get_cart_id(session, user_id)
    if cart_id:
        return cart_id

    cart = Cart(user_id=user_id)
    session.add(cart)
    try:
        await session.commit()
        await session.refresh(cart)
        return cart.id
    except IntegrityError:
        # concurrent first add created it
        await session.rollback()
        return await get_cart_id(session, user_id)


async def get_cart_items(session, user_id, saved_for_later: bool = False) -> List[Dict[str, Any]]:
    stmt = (
        select(CartItem)
        .join(Cart, Cart.id == CartItem.cart_id)
        .where(Cart.user_id == user_id, CartItem.saved_for_later.is_(saved_for_later))
        .order_by(CartItem.id)
    )
    res = await session.execute(stmt)
    return [cart_item_to_dict(ci) for ci in res.scalars().all()]


async def get_cart_view(session, user_id) -> Dict[str, Any]:
    res = await session.execute(select(Cart).where(Cart.user_id == user_id))
    cart = res.scalar_one_or_none()
    if cart is None:
        return {"items": [], "saved_for_later": [], "total_items": 0, "total_price": 0}
    return {
        "items": await get_cart_items(session, user_id),
        "saved_for_later": await get_cart_items(session, user_id, saved_for_later=True),
        "total_items": int(cart.total_items),
        "total_price": int(cart.total_price),
    }


async def _adjust_totals(session, cart_id, qty_delta: int, price_delta: int):
    stmt = (
        update(Cart)
        .where(Cart.id == cart_id)
        .values(total_items=Cart.total_items + qty_delta, total_price=Cart.total_price + price_delta)
    )
    await session.execute(stmt)


async def _get_item(session, cart_id, item_id) -> CartItem:
    res = await session.execute(select(CartItem).where(CartItem.id == item_id, CartItem.cart_id == cart_id))
    item = res.scalar_one_or_none()
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found in cart")
    return item


async def add_item_to_cart(session, cart_id, product: Dict[str, Any], size: str, quantity: int):
    stmt = select(CartItem).where(
        CartItem.cart_id == cart_id,
        CartItem.product_id == product["product_id"],
        CartItem.size == size,
        CartItem.saved_for_later.is_(False),
    )
    res = await session.execute(stmt)
    existing = res.scalar_one_or_none()

    if existing is not None:
        existing.quantity = int(existing.quantity) + quantity
        item = existing
        created = False
    else:
        item = CartItem(
            cart_id=cart_id,
            product_id=product["product_id"],
            product_name=product["name"],
            size=size,
            quantity=quantity,
            price=product["price"],
            image=product.get("image"),
        )
        session.add(item)
        created = True

    await _adjust_totals(session, cart_id, quantity, quantity * int(item.price))
    await session.commit()
    await session.refresh(item)
    return cart_item_to_dict(item), created


async def update_item_quantity(session, cart_id, item_id, quantity: int):
    item = await _get_item(session, cart_id, item_id)
    delta = quantity - int(item.quantity)
    item.quantity = quantity
    if not item.saved_for_later:
        await _adjust_totals(session, cart_id, delta, delta * int(item.price))
    await session.commit()
    return cart_item_to_dict(item)


async def remove_item(session, cart_id, item_id):
    item = await _get_item(session, cart_id, item_id)
    if not item.saved_for_later:
        await _adjust_totals(session, cart_id, -int(item.quantity), -int(item.quantity) * int(item.price))
    await session.delete(item)
    await session.commit()


async def move_item(session, cart_id, item_id, to_saved: bool):
    """Move a line between the cart and the saved-for-later list, merging with an existing line."""
    item = await _get_item(session, cart_id, item_id)
    if bool(item.saved_for_later) == to_saved:
        return cart_item_to_dict(item)

    qty, price = int(item.quantity), int(item.price)
    sign = -1 if to_saved else 1

    stmt = select(CartItem).where(
        CartItem.cart_id == cart_id,
        CartItem.product_id == item.product_id,
        CartItem.size == item.size,
        CartItem.saved_for_later.is_(to_saved),
    )
    res = await session.execute(stmt)
    target = res.scalar_one_or_none()
    if target is not None:
        target.quantity = int(target.quantity) + qty
        await session.delete(item)
        moved = target
        if not to_saved:
            # merged units are priced at the cart line they join
            price = int(target.price)
    else:
        item.saved_for_later = to_saved
        moved = item

    await _adjust_totals(session, cart_id, sign * qty, sign * qty * price)
    await session.commit()
    return cart_item_to_dict(moved)


async def clear_cart(session, user_id):
    """Empties the active lines and zeroes the totals. Saved-for-later lines survive. Does not commit."""
    cart_id = await get_cart_id(session, user_id)
    if cart_id is None:
        return
    await session.execute(
        delete(CartItem).where(CartItem.cart_id == cart_id, CartItem.saved_for_later.is_(False)))
    await session.execute(update(Cart).where(Cart.id == cart_id).values(total_items=0, total_price=0))
