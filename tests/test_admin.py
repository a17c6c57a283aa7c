from datetime import timedelta
import pytest
from factories import FakeGateway, auth_headers, history_of, seed_order, url_prefix
from fulfillment.common.utils import now
from fulfillment.db.connection import async_session
from fulfillment.orders.repository import get_order_by_order_id

ADMIN = auth_headers("admin01", roles=["admin"])
ORDER_ID = "COD_1700000000000_user01"


@pytest.fixture
def fake_gateway(monkeypatch):
    return FakeGateway(monkeypatch)


async def load(order_id=ORDER_ID):
    async with async_session() as session:
        return await get_order_by_order_id(session, order_id)


async def test_admin_routes_need_admin_role(ac_client):
    await seed_order()
    r = await ac_client.get(f"{url_prefix}/admin/orders", headers=auth_headers("user01"))
    assert r.status_code == 403
    assert r.json()["error"]["details"]["message"] == "Admin access required"

    r = await ac_client.patch(f"{url_prefix}/admin/orders/{ORDER_ID}/status", json={"status": "delivered"},
                              headers=auth_headers("user01"))
    assert r.status_code == 403
    assert (await load()).status == "confirmed"


async def test_list_orders_with_status_filter(ac_client):
    await seed_order()
    await seed_order(order_id="COD_1700000000001_user02", user_id="user02", status="delivered")

    r = await ac_client.get(f"{url_prefix}/admin/orders", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["data"]["total"] == 2

    r = await ac_client.get(f"{url_prefix}/admin/orders", params={"status": "delivered"}, headers=ADMIN)
    data = r.json()["data"]
    assert data["total"] == 1
    assert [o["order_id"] for o in data["orders"]] == ["COD_1700000000001_user02"]


async def test_status_update_records_history(ac_client):
    seeded = await seed_order()

    r = await ac_client.patch(f"{url_prefix}/admin/orders/{ORDER_ID}/status",
                              json={"status": "delivered", "reason": "courier confirmed by phone"}, headers=ADMIN)
    assert r.status_code == 200, r.text
    order = r.json()["data"]["order"]
    assert order["status"] == "delivered"
    assert order["delivered_at"] is not None

    history = await history_of(seeded.id)
    assert history[-1]["status"] == "delivered"
    assert history[-1]["actor"] == "admin"
    assert history[-1]["reason"] == "courier confirmed by phone"

    r = await ac_client.patch(f"{url_prefix}/admin/orders/{ORDER_ID}/status", json={"status": "teleported"}, headers=ADMIN)
    assert r.status_code == 400
    assert r.json()["error"]["details"]["message"] == "Invalid status teleported"


async def test_adding_awb_moves_paid_order_to_processing(ac_client):
    await seed_order(payment_method="razorpay", payment_status="completed", status="paid")

    r = await ac_client.patch(f"{url_prefix}/admin/orders/{ORDER_ID}/shipping",
                              json={"awbCode": "AWB777", "courierName": "Blue Dart"}, headers=ADMIN)
    assert r.status_code == 200, r.text
    order = r.json()["data"]["order"]
    assert order["status"] == "processing"
    assert order["shipment"]["awb_code"] == "AWB777"
    assert order["shipment"]["tracking_url"] == "https://shiprocket.co/tracking/AWB777"


async def test_return_request_window(ac_client):
    await seed_order(status="delivered", delivered_at=now() - timedelta(days=2))
    await seed_order(order_id="COD_1700000000001_user01", status="delivered", delivered_at=now() - timedelta(days=8))
    headers = auth_headers("user01")

    r = await ac_client.post(f"{url_prefix}/orders/{ORDER_ID}/return", json={"reason": "size too small"}, headers=headers)
    assert r.status_code == 200, r.text
    assert r.json()["data"]["message"] == "Return request submitted"
    assert r.json()["data"]["order"]["status"] == "return_requested"
    assert r.json()["data"]["order"]["return_reason"] == "size too small"

    r = await ac_client.post(f"{url_prefix}/orders/{ORDER_ID}/return", json={"reason": "again"}, headers=headers)
    assert r.status_code == 400

    r = await ac_client.post(f"{url_prefix}/orders/COD_1700000000001_user01/return", json={"reason": "late"},
                             headers=headers)
    assert r.status_code == 400
    assert "Return window has expired" in r.json()["error"]["details"]["message"]


async def test_manual_refund_of_delivered_order(ac_client, fake_gateway):
    await seed_order(order_id="order_1700000000000_user01", payment_method="razorpay", payment_status="completed",
                     status="delivered", intent_id="order_intent1", payment_id="pay_paid1")
    fake_gateway.payments["pay_paid1"] = {"id": "pay_paid1", "status": "captured", "amount": 99900, "amount_refunded": 0}

    r = await ac_client.post(f"{url_prefix}/admin/refunds/manual",
                             json={"orderId": "order_1700000000000_user01", "amount": 50000, "reason": "damaged item"},
                             headers=ADMIN)
    assert r.status_code == 201, r.text
    data = r.json()["data"]
    assert data["refund"]["amount"] == 50000
    assert data["order"]["status"] == "cancelled"
    assert data["order"]["refund"]["notes"] == "Manual refund by admin admin01"

    r = await ac_client.post(f"{url_prefix}/admin/refunds/manual",
                             json={"orderId": "order_1700000000000_user01", "reason": "again"}, headers=ADMIN)
    assert r.status_code == 400
    assert len(fake_gateway.refunds) == 1

    r = await ac_client.get(f"{url_prefix}/admin/refunds", headers=ADMIN)
    refunds = r.json()["data"]["refunds"]
    assert [x["order_id"] for x in refunds] == ["order_1700000000000_user01"]


async def test_manual_refund_needs_a_finished_order(ac_client, fake_gateway):
    await seed_order(payment_method="razorpay", payment_status="completed", status="paid", payment_id="pay_paid1")

    r = await ac_client.post(f"{url_prefix}/admin/refunds/manual",
                             json={"orderId": ORDER_ID, "reason": "goodwill"}, headers=ADMIN)
    assert r.status_code == 400
    assert r.json()["error"]["details"]["message"] == "Order cannot be refunded. Current status: paid"
    assert fake_gateway.refunds == []
