from sqlalchemy import update
from factories import auth_headers, seed_product, url_prefix
from fulfillment.db.connection import async_session
from fulfillment.schema.full_schema import Product


async def add(ac_client, headers, product_id="TEE-1", size="M", quantity=1):
    return await ac_client.post(f"{url_prefix}/cart/items",
                                json={"productId": product_id, "size": size, "quantity": quantity}, headers=headers)


async def test_add_to_cart_merges_lines(ac_client):
    await seed_product("TEE-1", price=49900)
    headers = auth_headers("user01")

    r = await add(ac_client, headers, quantity=1)
    assert r.status_code == 200, r.text
    assert r.json()["data"]["created"] is True

    r = await add(ac_client, headers, quantity=2)
    assert r.json()["data"]["created"] is False
    assert r.json()["data"]["item"]["quantity"] == 3

    cart = (await ac_client.get(f"{url_prefix}/cart", headers=headers)).json()["data"]["cart"]
    assert cart["total_items"] == 3
    assert cart["total_price"] == 3 * 49900


async def test_add_unknown_product_or_size(ac_client):
    await seed_product("TEE-1")
    headers = auth_headers("user01")

    assert (await add(ac_client, headers, product_id="NOPE")).status_code == 404
    assert (await add(ac_client, headers, size="XXXL")).status_code == 400


async def test_save_for_later_keeps_totals_in_sync(ac_client):
    await seed_product("TEE-1", price=10000)
    headers = auth_headers("user01")
    item_id = (await add(ac_client, headers, quantity=2)).json()["data"]["item"]["id"]

    r = await ac_client.post(f"{url_prefix}/cart/items/{item_id}/save-for-later", headers=headers)
    assert r.status_code == 200
    cart = (await ac_client.get(f"{url_prefix}/cart", headers=headers)).json()["data"]["cart"]
    assert cart["items"] == []
    assert len(cart["saved_for_later"]) == 1
    assert cart["total_price"] == 0

    await ac_client.post(f"{url_prefix}/cart/items/{item_id}/move-to-cart", headers=headers)
    cart = (await ac_client.get(f"{url_prefix}/cart", headers=headers)).json()["data"]["cart"]
    assert cart["total_price"] == 20000


async def test_moving_back_into_a_repriced_line_keeps_totals_exact(ac_client):
    await seed_product("TEE-1", price=10000)
    headers = auth_headers("user01")
    saved_id = (await add(ac_client, headers)).json()["data"]["item"]["id"]
    await ac_client.post(f"{url_prefix}/cart/items/{saved_id}/save-for-later", headers=headers)

    async with async_session() as session:
        await session.execute(update(Product).where(Product.product_id == "TEE-1").values(price=15000))
        await session.commit()
    await add(ac_client, headers)

    r = await ac_client.post(f"{url_prefix}/cart/items/{saved_id}/move-to-cart", headers=headers)
    assert r.status_code == 200
    cart = (await ac_client.get(f"{url_prefix}/cart", headers=headers)).json()["data"]["cart"]
    assert [(i["quantity"], i["price"]) for i in cart["items"]] == [(2, 15000)]
    assert cart["saved_for_later"] == []
    assert cart["total_items"] == 2
    assert cart["total_price"] == 30000


async def test_clear_cart(ac_client):
    await seed_product("TEE-1", price=10000)
    headers = auth_headers("user01")
    await add(ac_client, headers, quantity=2)

    r = await ac_client.delete(f"{url_prefix}/cart", headers=headers)
    assert r.status_code == 200
    cart = (await ac_client.get(f"{url_prefix}/cart", headers=headers)).json()["data"]["cart"]
    assert cart["items"] == []
    assert cart["total_items"] == 0


async def test_cart_requires_auth(ac_client):
    r = await ac_client.get(f"{url_prefix}/cart")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "INVALID_AUTH"
