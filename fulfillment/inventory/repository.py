from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy import select, update
from fulfillment.common.logging_setup import get_logger
from fulfillment.schema.full_schema import Product, ProductStock

logger = get_logger("fulfillment.inventory")


async def get_available(session, product_id: str, size: str) -> int:
    stmt = select(ProductStock.quantity).where(ProductStock.product_id == product_id, ProductStock.size == size)
    res = await session.execute(stmt)
    qty = res.scalar_one_or_none()
    return int(qty) if qty is not None else 0


async def get_stock_map(session, product_ids: Iterable[str]) -> Dict[str, Dict[str, int]]:
    product_ids = list(set(product_ids))
    if not product_ids:
        return {}
    stmt = select(ProductStock.product_id, ProductStock.size, ProductStock.quantity).where(
        ProductStock.product_id.in_(product_ids))
    res = await session.execute(stmt)
    stock: Dict[str, Dict[str, int]] = {}
    for pid, size, qty in res.all():
        stock.setdefault(pid, {})[size] = int(qty)
    return stock


async def get_products(session, product_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    product_ids = list(set(product_ids))
    if not product_ids:
        return {}
    stmt = select(Product.product_id, Product.name, Product.price, Product.image).where(
        Product.product_id.in_(product_ids), Product.is_active.is_(True))
    res = await session.execute(stmt)
    return {r.product_id: {"name": r.name, "price": int(r.price), "image": r.image} for r in res.all()}


async def check_items_availability(session, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Optimistic availability check. Returns one entry per line that cannot be fulfilled."""

    product_ids = [it["product_id"] for it in items]
    products = await get_products(session, product_ids)
    stock = await get_stock_map(session, product_ids)

    unavailable = []
    for it in items:
        pid = it["product_id"]
        if pid not in products:
            unavailable.append({
                "product_id": pid,
                "product_name": it.get("product_name"),
                "size": it["size"],
                "reason": "Product no longer available",
            })
            continue

        available = stock.get(pid, {}).get(it["size"], 0)
        if available < int(it["quantity"]):
            unavailable.append({
                "product_id": pid,
                "product_name": it.get("product_name"),
                "size": it["size"],
                "requested_quantity": int(it["quantity"]),
                "available_quantity": max(available, 0),
                "reason": "Out of stock" if available <= 0 else f"Only {available} available",
            })
    return unavailable


async def apply_stock_delta(session, product_id: str, size: str, delta: int) -> Optional[int]:
    """quantity = quantity + delta as a single UPDATE; returns the new quantity or None when no such row."""
    stmt = (
        update(ProductStock)
        .where(ProductStock.product_id == product_id, ProductStock.size == size)
        .values(quantity=ProductStock.quantity + delta)
    )
    res = await session.execute(stmt)
    if res.rowcount == 0:
        return None
    return await get_available(session, product_id, size)


async def decrement(session, product_id: str, size: str, qty: int) -> Optional[int]:
    new_qty = await apply_stock_delta(session, product_id, size, -int(qty))
    if new_qty is None:
        logger.warning("inventory.decrement.missing_stock_row",
                       extra={"product_id": product_id, "size": size, "quantity": qty})
        return None
    if new_qty < 0:
        # no hard reservation; oversell is accepted and surfaced for follow up
        logger.warning("inventory.decrement.oversold",
                       extra={"product_id": product_id, "size": size, "quantity": qty, "stock_after": new_qty})
    return new_qty


async def increment(session, product_id: str, size: str, qty: int) -> Optional[int]:
    new_qty = await apply_stock_delta(session, product_id, size, int(qty))
    if new_qty is None:
        logger.warning("inventory.increment.missing_stock_row",
                       extra={"product_id": product_id, "size": size, "quantity": qty})
    return new_qty


async def commit_stock_for_items(session, items: List[Dict[str, Any]]):
    for it in items:
        await decrement(session, it["product_id"], it["size"], int(it["quantity"]))


async def restore_stock_for_items(session, items: List[Dict[str, Any]]):
    for it in items:
        await increment(session, it["product_id"], it["size"], int(it["quantity"]))
