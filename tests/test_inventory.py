import asyncio
from factories import auth_headers, seed_cart, seed_product, stock_of, url_prefix
from fulfillment.db.connection import async_session
from fulfillment.inventory.repository import check_items_availability, decrement, increment, restore_stock_for_items


async def test_concurrent_decrements_are_not_lost():
    await seed_product("TEE-1", stock={"M": 20})

    async def buy(qty):
        async with async_session() as session:
            await decrement(session, "TEE-1", "M", qty)
            await session.commit()

    quantities = [1, 2, 3, 4, 5]
    await asyncio.gather(*(buy(q) for q in quantities))

    assert await stock_of("TEE-1", "M") == 20 - sum(quantities)


async def test_decrement_past_zero_is_accepted():
    await seed_product("TEE-1", stock={"M": 1})

    async with async_session() as session:
        assert await decrement(session, "TEE-1", "M", 3) == -2
        await session.commit()
    assert await stock_of("TEE-1", "M") == -2


async def test_missing_stock_row_is_tolerated():
    await seed_product("TEE-1", stock={"M": 1})

    async with async_session() as session:
        assert await decrement(session, "TEE-1", "XL", 1) is None
        assert await increment(session, "GONE", "M", 1) is None
        await restore_stock_for_items(session, [
            {"product_id": "GONE", "size": "M", "quantity": 2},
            {"product_id": "TEE-1", "size": "M", "quantity": 2},
        ])
        await session.commit()
    assert await stock_of("TEE-1", "M") == 3


async def test_availability_reasons():
    await seed_product("TEE-1", stock={"M": 0, "L": 2})

    items = [
        {"product_id": "TEE-1", "product_name": "Tee", "size": "M", "quantity": 1},
        {"product_id": "TEE-1", "product_name": "Tee", "size": "L", "quantity": 3},
        {"product_id": "TEE-1", "product_name": "Tee", "size": "L", "quantity": 2},
        {"product_id": "RETIRED", "product_name": "Old", "size": "M", "quantity": 1},
    ]
    async with async_session() as session:
        unavailable = await check_items_availability(session, items)

    reasons = [u["reason"] for u in unavailable]
    assert reasons == ["Out of stock", "Only 2 available", "Product no longer available"]


async def test_stock_validate_route(ac_client):
    await seed_product("TEE-1", price=50000, stock={"M": 1})
    await seed_cart("user01", [("TEE-1", "Tee", 50000, "M", 2)])

    r = await ac_client.post(f"{url_prefix}/stock/validate", headers=auth_headers("user01"))
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["valid"] is False
    assert data["unavailable_items"][0]["reason"] == "Only 1 available"
