from typing import Any, Dict, Optional
import httpx
from fulfillment.common.circuit_breaker import CircuitBreaker
from fulfillment.common.logging_setup import get_logger
from fulfillment.config.settings import config_settings
from fulfillment.shipping.token_cache import VENDOR_TOKEN_KEY, TokenCache, build_token_cache

logger = get_logger("fulfillment.shipping.vendor")

# vendor statuses after which a shipment can no longer be cancelled through the api
NON_CANCELLABLE_STATUSES = {
    "PICKED UP", "SHIPPED", "IN TRANSIT", "OUT FOR DELIVERY", "DELIVERED",
    "RTO INITIATED", "RTO DELIVERED", "CANCELED", "CANCELLED",
}


class VendorError(Exception):
    """Vendor accepted the request but refused it, or answered with something unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ShiprocketClient:
    """
    Thin async client for the logistics vendor.
    The bearer token lives in an injected TokenCache; a 401 invalidates it and the call is retried once.
    """

    def __init__(self, token_cache: TokenCache, base_url: Optional[str] = None, email: Optional[str] = None,
                 password: Optional[str] = None, token_ttl: Optional[int] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 15.0,
                 breaker: Optional[CircuitBreaker] = None):
        self.token_cache = token_cache
        self.base_url = (base_url or config_settings.SHIPROCKET_BASE_URL).rstrip("/")
        self.email = email or config_settings.SHIPROCKET_EMAIL
        self.password = password or config_settings.SHIPROCKET_PASSWORD
        self.token_ttl = token_ttl or config_settings.SHIPROCKET_TOKEN_TTL_SECONDS
        self.transport = transport
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(name="shiprocket", failure_threshold=5, recovery_timeout=60.0)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def authenticate(self, force: bool = False) -> str:
        if not force:
            cached = await self.token_cache.get(VENDOR_TOKEN_KEY)
            if cached:
                return cached

        if not self.email or not self.password:
            raise VendorError("shipping vendor credentials are not configured")

        async with self._client() as client:
            resp = await client.post("/auth/login", json={"email": self.email, "password": self.password})
            resp.raise_for_status()
            token = resp.json().get("token")
        if not token:
            raise VendorError("vendor login returned no token")

        await self.token_cache.set(VENDOR_TOKEN_KEY, token, self.token_ttl)
        logger.info("shipping.vendor.authenticated", extra={"ttl": self.token_ttl})
        return token

    async def _send(self, method: str, path: str, token: str, **kwargs) -> httpx.Response:
        async with self._client() as client:
            return await client.request(method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs)

    async def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        await self.breaker.before_call()
        ok = False
        try:
            token = await self.authenticate()
            resp = await self._send(method, path, token, **kwargs)
            if resp.status_code == 401:
                logger.info("shipping.vendor.token_rejected", extra={"path": path})
                await self.token_cache.invalidate(VENDOR_TOKEN_KEY)
                token = await self.authenticate(force=True)
                resp = await self._send(method, path, token, **kwargs)
            resp.raise_for_status()
            ok = True
            return resp.json() if resp.content else {}
        except httpx.HTTPStatusError as e:
            # a 4xx means the vendor is up, only server side failures count against the breaker
            ok = e.response is not None and e.response.status_code < 500
            raise
        finally:
            await self.breaker.after_call(success=ok)

    async def create_shipment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._call("POST", "/orders/create/adhoc", json=payload)
        if not data.get("order_id"):
            raise VendorError(str(data.get("message") or "vendor did not return an order id"), body=data)
        return {
            "vendor_order_id": str(data["order_id"]),
            "vendor_shipment_id": str(data["shipment_id"]) if data.get("shipment_id") else None,
            "awb_code": data.get("awb_code") or None,
            "courier_name": data.get("courier_name") or None,
            "status": data.get("status"),
        }

    async def get_order(self, vendor_order_id: str) -> Dict[str, Any]:
        data = await self._call("GET", f"/orders/show/{vendor_order_id}")
        return data.get("data") or data

    async def is_cancellable(self, vendor_order_id: str) -> bool:
        info = await self.get_order(vendor_order_id)
        status = str(info.get("status") or "").upper()
        if info.get("awb_code") or info.get("awb"):
            return False
        return status not in NON_CANCELLABLE_STATUSES

    async def cancel_shipment(self, vendor_order_id: str) -> Dict[str, Any]:
        vid = str(vendor_order_id)
        return await self._call("POST", "/orders/cancel", json={"ids": [int(vid) if vid.isdigit() else vid]})

    async def track_shipment(self, vendor_shipment_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/courier/track/shipment/{vendor_shipment_id}")


_client: Optional[ShiprocketClient] = None


def get_vendor_client() -> ShiprocketClient:
    global _client
    if _client is None:
        _client = ShiprocketClient(token_cache=build_token_cache())
    return _client


def set_vendor_client(client: Optional[ShiprocketClient]):
    global _client
    _client = client
