import json
from datetime import datetime
import httpx
import pytest
from factories import ADDRESS, auth_headers, history_of, notes_of, seed_cart, seed_order, seed_product, url_prefix
from fulfillment.background_workers.shipment_worker import ShipmentWorker
from fulfillment.config.settings import config_settings
from fulfillment.db.connection import async_session
from fulfillment.orders.repository import get_order_by_order_id
from fulfillment.shipping import services as shipping_services
from fulfillment.shipping import vendor
from fulfillment.shipping.token_cache import LocalTokenCache
from fulfillment.shipping.utils import (ShippingValidationError, build_shipment_payload, failure_hint, map_vendor_status,
                                        normalize_email, normalize_phone, normalize_pincode, package_dimensions, split_name)
from fulfillment.shipping.vendor import ShiprocketClient

ORDER_VIEW = {
    "order_id": "order_1700000000000_user01",
    "payment_method": "razorpay",
    "amount": 184800,
    "discount": 15000,
    "shipping_address": {"full_name": "Asha  Rao Kumar", "phone": "+91 98765-43210", "address": "12 MG Road",
                         "city": "Bengaluru", "state": "Karnataka", "pincode": "560 001", "email": ""},
    "items": [
        {"product_id": "TEE-1", "product_name": "Orange Tee", "size": "M", "quantity": 2, "price": 99900},
        {"product_id": "CAP-1", "product_name": "Cap", "size": "L", "quantity": 1, "price": 0},
    ],
}


# payload shaping ---------------------------------------------------------------------------------------

@pytest.mark.parametrize("raw, expected", [
    ("9876543210", "9876543210"),
    ("+91 98765 43210", "9876543210"),
    ("09876543210", "9876543210"),
    ("(987) 654-3210", "9876543210"),
])
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "12345", "+1 415 555 01234"])
def test_normalize_phone_rejects(raw):
    with pytest.raises(ShippingValidationError):
        normalize_phone(raw)


def test_pincode_name_and_email():
    assert normalize_pincode("560 001") == "560001"
    with pytest.raises(ShippingValidationError):
        normalize_pincode("5600")
    assert split_name("  Asha  ") == ("Asha", "")
    assert split_name("Asha Rao Kumar") == ("Asha", "Rao Kumar")
    with pytest.raises(ShippingValidationError):
        split_name("   ")
    assert normalize_email("not-an-email") == config_settings.FALLBACK_CUSTOMER_EMAIL
    assert normalize_email(" asha@example.com ") == "asha@example.com"


@pytest.mark.parametrize("units, height, weight", [(1, 5, 0.5), (2, 5, 0.5), (3, 10, 1.0), (5, 15, 1.5), (40, 20, 5.0)])
def test_package_dimensions(units, height, weight):
    dims = package_dimensions(units)
    assert (dims["length"], dims["breadth"]) == (30, 25)
    assert dims["height"] == height
    assert dims["weight"] == weight


def test_prepaid_payload():
    payload = build_shipment_payload(ORDER_VIEW, order_date=datetime(2026, 5, 2, 14, 5))
    assert payload["payment_method"] == "Prepaid"
    assert payload["order_date"] == "2026-05-02 14:05"
    assert payload["billing_customer_name"] == "Asha"
    assert payload["billing_last_name"] == "Rao Kumar"
    assert payload["billing_phone"] == "9876543210"
    assert payload["billing_pincode"] == "560001"
    assert payload["billing_email"] == config_settings.FALLBACK_CUSTOMER_EMAIL
    assert payload["sub_total"] == 1848.0
    assert payload["total_discount"] == 150.0
    assert payload["order_items"][0] == {"name": "Orange Tee (M)", "sku": "TEE-1-M", "units": 2, "selling_price": 999.0}
    assert payload["height"] == 10


def test_cod_payload_for_token_orders():
    payload = build_shipment_payload(dict(ORDER_VIEW, payment_method="cod_token"))
    assert payload["payment_method"] == "COD"


def test_payload_needs_items():
    with pytest.raises(ShippingValidationError):
        build_shipment_payload(dict(ORDER_VIEW, items=[]))


@pytest.mark.parametrize("error, hint", [
    ("HTTP 422: Wrong Pickup location entered", "check pickup location"),
    ("HTTP 422: Please enter a valid mobile number", "verify customer phone"),
    ("HTTP 422: Delivery pincode not serviceable", "verify pincode serviceability"),
    ("HTTP 422: billing_email is invalid", "verify customer email"),
    ("HTTP 500: upstream timeout", None),
])
def test_failure_hint(error, hint):
    assert failure_hint(error) == hint


def test_vendor_status_mapping():
    assert map_vendor_status("in transit") == "shipped"
    assert map_vendor_status("DELIVERED") == "delivered"
    assert map_vendor_status("RTO INITIATED") == "cancelled"
    assert map_vendor_status("LOST IN SPACE") is None
    assert map_vendor_status(None) is None


# token cache and vendor client -------------------------------------------------------------------------

class FakeClock:
    def __init__(self):
        self.t = 1000

    def __call__(self):
        return self.t


async def test_local_token_cache_expiry():
    clock = FakeClock()
    cache = LocalTokenCache(clock=clock)
    await cache.set("k", "tok", ttl_seconds=60)
    assert await cache.get("k") == "tok"
    clock.t += 59
    assert await cache.get("k") == "tok"
    clock.t += 1
    assert await cache.get("k") is None

    await cache.set("k", "tok2", ttl_seconds=60)
    await cache.invalidate("k")
    assert await cache.get("k") is None


class VendorStub:
    """Routes for httpx.MockTransport. Tokens are issued as t1, t2, ..."""

    def __init__(self, create_responses=None):
        self.logins = 0
        self.valid_token = None
        self.create_calls = []
        self.create_responses = list(create_responses or [])

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/auth/login"):
            self.logins += 1
            self.valid_token = f"t{self.logins}"
            return httpx.Response(200, json={"token": self.valid_token})

        if request.headers.get("Authorization") != f"Bearer {self.valid_token}":
            return httpx.Response(401, json={"message": "Token has expired"})

        if request.url.path.endswith("/orders/create/adhoc"):
            self.create_calls.append(json.loads(request.content))
            if self.create_responses:
                code, body = self.create_responses.pop(0)
                return httpx.Response(code, json=body)
            return httpx.Response(200, json={"order_id": 5551234, "shipment_id": 7771234, "status": "NEW"})
        return httpx.Response(404, json={"message": "no route"})


def stub_client(stub, cache=None):
    return ShiprocketClient(token_cache=cache or LocalTokenCache(), base_url="https://vendor.test/v1/external",
                            email="ops@example.com", password="secret", transport=httpx.MockTransport(stub))


async def test_rejected_token_is_refreshed_once():
    stub = VendorStub()
    cache = LocalTokenCache()
    await cache.set(vendor.VENDOR_TOKEN_KEY, "stale", ttl_seconds=3600)
    client = stub_client(stub, cache)

    result = await client.create_shipment({"order_id": "COD_1"})

    assert result["vendor_order_id"] == "5551234"
    assert result["vendor_shipment_id"] == "7771234"
    assert stub.logins == 1
    assert await cache.get(vendor.VENDOR_TOKEN_KEY) == "t1"


async def test_cached_token_is_reused():
    stub = VendorStub()
    client = stub_client(stub)
    await client.create_shipment({"order_id": "COD_1"})
    await client.create_shipment({"order_id": "COD_2"})
    assert stub.logins == 1
    assert len(stub.create_calls) == 2


# supervisor --------------------------------------------------------------------------------------------

async def place_cod(ac_client, user_id="user01"):
    await seed_product("TEE-1", stock={"M": 5})
    await seed_cart(user_id, [("TEE-1", "Orange Tee", 99900, "M", 1)])
    r = await ac_client.post(f"{url_prefix}/cod/create-order", json={"shippingAddress": ADDRESS},
                             headers=auth_headers(user_id))
    assert r.status_code == 201, r.text
    return r.json()["data"]["order"]["order_id"]


async def load(order_id):
    async with async_session() as session:
        return await get_order_by_order_id(session, order_id)


@pytest.fixture
def fast_retries(monkeypatch):
    monkeypatch.setattr(config_settings, "SHIPMENT_RETRY_BASE_DELAY", 0.0)
    monkeypatch.setattr(config_settings, "SHIPMENT_RETRY_ATTEMPTS", 3)


async def test_shipment_created_after_transient_failures(ac_client, fast_retries):
    order_id = await place_cod(ac_client)
    stub = VendorStub(create_responses=[(502, {"message": "bad gateway"}), (503, {"message": "busy"})])
    vendor.set_vendor_client(stub_client(stub))

    result = await shipping_services.run_shipment_creation(order_id)
    assert result["vendor_order_id"] == "5551234"
    assert len(stub.create_calls) == 3
    assert stub.create_calls[0]["payment_method"] == "COD"

    order = await load(order_id)
    assert order.status == "processing"
    assert order.vendor_order_id == "5551234"
    assert [h["status"] for h in await history_of(order.id)] == ["confirmed", "processing"]


async def test_exhausted_shipment_leaves_operator_note(ac_client, fast_retries):
    order_id = await place_cod(ac_client)
    stub = VendorStub(create_responses=[(422, {"message": "Please enter a valid mobile number"})])
    vendor.set_vendor_client(stub_client(stub))

    assert await shipping_services.run_shipment_creation(order_id) is None
    # validation errors are not retried
    assert len(stub.create_calls) == 1

    order = await load(order_id)
    assert order.status == "confirmed"
    assert order.vendor_order_id is None
    assert await notes_of(order.id) == [
        "Shipment creation failed: HTTP 422: Please enter a valid mobile number. "
        "Manual shipment creation required. Hint: verify customer phone."
    ]


async def test_already_linked_order_is_not_resent(ac_client, fast_retries):
    await seed_order(vendor_order_id="999", status="processing")
    stub = VendorStub()
    vendor.set_vendor_client(stub_client(stub))

    result = await shipping_services.run_shipment_creation("COD_1700000000000_user01")
    assert result["vendor_order_id"] == "999"
    assert stub.create_calls == []


async def test_worker_runs_queued_shipments(ac_client, fast_retries):
    order_id = await place_cod(ac_client)
    stub = VendorStub()
    vendor.set_vendor_client(stub_client(stub))

    worker = ShipmentWorker(workers_count=1)
    await worker()
    assert worker.enqueue({"event": shipping_services.SHIPMENT_EVENT, "data": {"order_id": order_id}})
    await worker.shutdown(drain_timeout=5.0, wait_timeout=5.0)

    assert (await load(order_id)).vendor_order_id == "5551234"


def test_schedule_is_a_noop_when_vendor_disabled(monkeypatch):
    class App:
        class state:
            shipment_worker = None

    monkeypatch.setattr(config_settings, "SHIPROCKET_ENABLED", False)
    assert shipping_services.schedule_shipment(App, "COD_1") is False


# vendor webhook ----------------------------------------------------------------------------------------

async def test_vendor_webhook_moves_order_forward(ac_client):
    seeded = await seed_order(vendor_order_id="5551234", status="processing")
    push = {"order_id": "5551234", "current_status": "IN TRANSIT", "awb_code": "AWB123", "courier_name": "Delhivery"}

    r = await ac_client.post(f"{url_prefix}/webhooks/shiprocket", json=push)
    assert r.status_code == 200
    assert r.json()["changed"] is True

    r = await ac_client.post(f"{url_prefix}/webhooks/shiprocket", json=push)
    assert r.json()["changed"] is False

    order = await load(seeded.order_id)
    assert order.status == "shipped"
    assert order.awb_code == "AWB123"
    assert order.courier_name == "Delhivery"
    assert order.tracking_url == "https://shiprocket.co/tracking/AWB123"
    assert [h["status"] for h in await history_of(order.id)] == ["shipped"]

    r = await ac_client.post(f"{url_prefix}/webhooks/shiprocket", json=dict(push, current_status="Delivered"))
    assert r.json()["changed"] is True
    order = await load(seeded.order_id)
    assert order.status == "delivered"
    assert order.delivered_at is not None


async def test_vendor_webhook_does_not_move_backwards(ac_client):
    await seed_order(vendor_order_id="5551234", status="delivered")
    r = await ac_client.post(f"{url_prefix}/webhooks/shiprocket", json={"order_id": "5551234", "current_status": "SHIPPED"})
    assert r.status_code == 200
    assert r.json()["changed"] is False
    assert (await load("COD_1700000000000_user01")).status == "delivered"


async def test_vendor_webhook_unknown_order(ac_client):
    r = await ac_client.post(f"{url_prefix}/webhooks/shiprocket", json={"order_id": "404404", "current_status": "SHIPPED"})
    assert r.status_code == 200
    assert r.json()["note"] == "order not found"
