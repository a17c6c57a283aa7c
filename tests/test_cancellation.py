import asyncio
from datetime import datetime, timedelta, timezone
import httpx
import pytest
from sqlalchemy import update
from factories import ADDRESS, FakeGateway, auth_headers, history_of, notes_of, seed_cart, seed_order, seed_product, stock_of, url_prefix
from fulfillment.db.connection import async_session
from fulfillment.orders.repository import get_order_by_order_id
from fulfillment.refunds import services as refund_services
from fulfillment.schema.full_schema import Orders
from fulfillment.shipping import vendor
from fulfillment.shipping.token_cache import LocalTokenCache
from fulfillment.shipping.vendor import ShiprocketClient

PAID = {
    "order_id": "order_1700000000000_user01",
    "payment_method": "razorpay",
    "payment_status": "completed",
    "status": "paid",
    "intent_id": "order_intent1",
    "payment_id": "pay_paid1",
}


@pytest.fixture
def fake_gateway(monkeypatch):
    return FakeGateway(monkeypatch)


def captured(fake_gateway, payment_id, amount, refunded=0):
    fake_gateway.payments[payment_id] = {"id": payment_id, "status": "captured", "amount": amount,
                                         "amount_refunded": refunded}


async def load(order_id):
    async with async_session() as session:
        return await get_order_by_order_id(session, order_id)


async def test_cod_cancel_restores_stock(ac_client):
    await seed_product("TEE-1", stock={"M": 3})
    await seed_cart("user01", [("TEE-1", "Orange Tee", 99900, "M", 2)])
    headers = auth_headers("user01")

    r = await ac_client.post(f"{url_prefix}/cod/create-order", json={"shippingAddress": ADDRESS}, headers=headers)
    order_id = r.json()["data"]["order"]["order_id"]
    assert await stock_of("TEE-1", "M") == 1

    r = await ac_client.put(f"{url_prefix}/orders/{order_id}/cancel", json={"reason": "ordered by mistake"}, headers=headers)
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["message"] == "Order cancelled"
    assert data["refund"] is None
    assert data["order"]["status"] == "cancelled"
    assert data["order"]["cancellation_reason"] == "ordered by mistake"
    assert [h["status"] for h in data["order"]["status_history"]] == ["confirmed", "cancelled"]
    assert await stock_of("TEE-1", "M") == 3


async def test_cancel_gates(ac_client):
    await seed_order()
    await seed_order(order_id="COD_1700000000001_user01", status="delivered")
    order_id = "COD_1700000000000_user01"

    r = await ac_client.put(f"{url_prefix}/orders/COD_missing/cancel", headers=auth_headers("user01"))
    assert r.status_code == 404

    r = await ac_client.put(f"{url_prefix}/orders/{order_id}/cancel", headers=auth_headers("user02"))
    assert r.status_code == 403

    r = await ac_client.put(f"{url_prefix}/orders/COD_1700000000001_user01/cancel", headers=auth_headers("user01"))
    assert r.status_code == 400
    assert r.json()["error"]["details"]["message"] == "Order cannot be cancelled. Current status: delivered"

    r = await ac_client.put(f"{url_prefix}/orders/{order_id}/cancel", headers=auth_headers("user01"))
    assert r.status_code == 200
    r = await ac_client.put(f"{url_prefix}/orders/{order_id}/cancel", headers=auth_headers("user01"))
    assert r.status_code == 400
    assert r.json()["error"]["details"]["message"] == "Order cannot be cancelled. Current status: cancelled"


@pytest.mark.parametrize("offset, expected", [(timedelta(0), 200), (timedelta(microseconds=1), 400)])
async def test_cancellation_window_boundary(ac_client, monkeypatch, offset, expected):
    created = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
    deadline = created + timedelta(hours=24)
    await seed_order(created_at=created, cancellation_window_ends_at=deadline)
    monkeypatch.setattr(refund_services, "now", lambda: deadline + offset)

    r = await ac_client.put(f"{url_prefix}/orders/COD_1700000000000_user01/cancel", headers=auth_headers("user01"))
    assert r.status_code == expected
    if expected == 400:
        assert "Cancellation window has expired" in r.json()["error"]["details"]["message"]


async def test_paid_cancel_refunds_in_full(ac_client, fake_gateway):
    await seed_order(**PAID)
    captured(fake_gateway, "pay_paid1", 99900)

    r = await ac_client.put(f"{url_prefix}/orders/{PAID['order_id']}/cancel", headers=auth_headers("user01"))
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["message"] == "Order cancelled and refund initiated"
    assert data["refund"]["amount"] == 99900
    assert data["refund"]["status"] == "processed"
    assert data["order"]["status"] == "cancelled"
    assert data["order"]["refund"]["refund_id"] == data["refund"]["refund_id"]
    assert fake_gateway.refunds == [{"payment_id": "pay_paid1", "amount": 99900, "reason": "Cancelled by customer"}]

    r = await ac_client.get(f"{url_prefix}/refunds/{PAID['order_id']}", headers=auth_headers("user01"))
    assert r.status_code == 200
    assert r.json()["data"]["refund"]["amount"] == 99900
    assert r.json()["data"]["order_status"] == "cancelled"


async def test_concurrent_cancels_refund_once(ac_client, fake_gateway):
    await seed_order(**PAID)
    captured(fake_gateway, "pay_paid1", 99900)
    url = f"{url_prefix}/orders/{PAID['order_id']}/cancel"

    r1, r2 = await asyncio.gather(
        ac_client.put(url, headers=auth_headers("user01")),
        ac_client.put(url, headers=auth_headers("user01")),
    )
    assert sorted([r1.status_code, r2.status_code]) == [200, 400]
    assert len(fake_gateway.refunds) == 1

    order = await load(PAID["order_id"])
    assert order.status == "cancelled"
    assert order.refund_amount == 99900
    statuses = [h["status"] for h in await history_of(order.id)]
    assert statuses.count("cancelled") == 1


async def test_token_order_refunds_only_the_token(ac_client, fake_gateway):
    await seed_order(**dict(PAID, payment_method="cod_token", status="confirmed", cod_token_amount=10000))
    captured(fake_gateway, "pay_paid1", 15000)

    r = await ac_client.put(f"{url_prefix}/orders/{PAID['order_id']}/cancel", headers=auth_headers("user01"))
    assert r.status_code == 200, r.text
    assert r.json()["data"]["refund"]["amount"] == 10000


def test_refundable_amount_accounts_for_prior_refunds():
    from fulfillment.schema.full_schema import Orders

    online = Orders(**dict(PAID, user_id="user01", subtotal=99900, discount=0, amount=99900))
    assert refund_services.refundable_amount(online, {"amount": 99900, "amount_refunded": 20000}) == 79900
    assert refund_services.refundable_amount(online, {"amount": 99900, "amount_refunded": 99900}) == 0

    token = Orders(**dict(PAID, user_id="user01", subtotal=99900, discount=0, amount=99900,
                          payment_method="cod_token", cod_token_amount=10000))
    assert refund_services.refundable_amount(token, {"amount": 10000, "amount_refunded": 4000}) == 6000


async def test_refund_failure_releases_the_claim(ac_client, fake_gateway):
    await seed_order(**PAID)
    captured(fake_gateway, "pay_paid1", 99900)
    fake_gateway.fail_refund = True
    url = f"{url_prefix}/orders/{PAID['order_id']}/cancel"

    r = await ac_client.put(url, headers=auth_headers("user01"))
    assert r.status_code == 502
    assert r.json()["error"]["details"]["message"] == "Refund could not be initiated. Please try again later."

    order = await load(PAID["order_id"])
    assert order.status == "paid"
    assert order.refund_status is None
    assert order.refund_id is None

    fake_gateway.fail_refund = False
    r = await ac_client.put(url, headers=auth_headers("user01"))
    assert r.status_code == 200
    assert len(fake_gateway.refunds) == 1


async def test_uncaptured_payment_is_not_refunded(ac_client, fake_gateway):
    await seed_order(**PAID)
    fake_gateway.payments["pay_paid1"] = {"id": "pay_paid1", "status": "refunded", "amount": 99900,
                                          "amount_refunded": 99900}

    r = await ac_client.put(f"{url_prefix}/orders/{PAID['order_id']}/cancel", headers=auth_headers("user01"))
    assert r.status_code == 400
    assert fake_gateway.refunds == []
    assert (await load(PAID["order_id"])).refund_status is None


async def test_refund_status_is_private(ac_client):
    await seed_order()
    r = await ac_client.get(f"{url_prefix}/refunds/COD_1700000000000_user01", headers=auth_headers("user02"))
    assert r.status_code == 404


# vendor side of a cancellation ---------------------------------------------------------------------------

class VendorCancelStub:
    """MockTransport routes for the vendor's order lookup and cancel endpoints."""

    def __init__(self, vendor_status="NEW", cancel_code=200):
        self.vendor_status = vendor_status
        self.cancel_code = cancel_code
        self.lookups = 0
        self.cancels = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/auth/login"):
            return httpx.Response(200, json={"token": "t1"})
        if "/orders/show/" in path:
            self.lookups += 1
            return httpx.Response(200, json={"data": {"id": 5551234, "status": self.vendor_status}})
        if path.endswith("/orders/cancel"):
            self.cancels += 1
            if self.cancel_code >= 400:
                return httpx.Response(self.cancel_code, json={"message": "cancellation service unavailable"})
            return httpx.Response(200, json={"message": "Order cancelled"})
        return httpx.Response(404, json={"message": "no route"})


def use_vendor(stub):
    vendor.set_vendor_client(ShiprocketClient(
        token_cache=LocalTokenCache(), base_url="https://vendor.test/v1/external",
        email="ops@example.com", password="secret", transport=httpx.MockTransport(stub)))


async def place_shipped_cod(ac_client, **linkage):
    await seed_product("TEE-1", stock={"M": 3})
    await seed_cart("user01", [("TEE-1", "Orange Tee", 99900, "M", 2)])
    r = await ac_client.post(f"{url_prefix}/cod/create-order", json={"shippingAddress": ADDRESS},
                             headers=auth_headers("user01"))
    order_id = r.json()["data"]["order"]["order_id"]
    async with async_session() as session:
        await session.execute(update(Orders).where(Orders.order_id == order_id).values(**linkage))
        await session.commit()
    assert await stock_of("TEE-1", "M") == 1
    return order_id


async def cancel_and_check(ac_client, order_id):
    r = await ac_client.put(f"{url_prefix}/orders/{order_id}/cancel", headers=auth_headers("user01"))
    assert r.status_code == 200, r.text
    assert r.json()["data"]["order"]["status"] == "cancelled"
    assert await stock_of("TEE-1", "M") == 3
    order = await load(order_id)
    return await notes_of(order.id)


async def test_vendor_cancel_skipped_once_awb_assigned(ac_client):
    stub = VendorCancelStub()
    use_vendor(stub)
    order_id = await place_shipped_cod(ac_client, vendor_order_id="5551234", awb_code="AWB777", status="processing")

    notes = await cancel_and_check(ac_client, order_id)
    assert notes[-1] == ("Vendor cancellation skipped: shipment 5551234 already has AWB AWB777. "
                         "Cancel with the courier manually.")
    assert stub.lookups == 0 and stub.cancels == 0


async def test_vendor_cancel_skipped_when_vendor_says_too_late(ac_client):
    stub = VendorCancelStub(vendor_status="PICKED UP")
    use_vendor(stub)
    order_id = await place_shipped_cod(ac_client, vendor_order_id="5551234", status="processing")

    notes = await cancel_and_check(ac_client, order_id)
    assert notes[-1] == "Vendor cancellation skipped: shipment 5551234 is past the vendor's cancellable state."
    assert stub.lookups == 1 and stub.cancels == 0


async def test_vendor_cancel_failure_leaves_note(ac_client):
    stub = VendorCancelStub(cancel_code=422)
    use_vendor(stub)
    order_id = await place_shipped_cod(ac_client, vendor_order_id="5551234", status="processing")

    notes = await cancel_and_check(ac_client, order_id)
    assert notes[-1] == ("Vendor cancellation failed: HTTP 422: cancellation service unavailable. "
                         "Cancel with the vendor manually.")
    assert stub.cancels == 1


async def test_vendor_cancel_success_adds_no_note(ac_client):
    stub = VendorCancelStub()
    use_vendor(stub)
    order_id = await place_shipped_cod(ac_client, vendor_order_id="5551234", status="processing")

    notes = await cancel_and_check(ac_client, order_id)
    assert not any(n.startswith("Vendor cancellation") for n in notes)
    assert stub.lookups == 1 and stub.cancels == 1
