import hashlib
import hmac
import json
from typing import Any, Dict, Optional
import httpx
from fulfillment.common.logging_setup import get_logger
from fulfillment.config.settings import config_settings

logger = get_logger("fulfillment.payments.gateway")

PSP_API_BASE = config_settings.RZPAY_GATEWAY_URL
PSP_KEY_ID = config_settings.RZPAY_KEY
PSP_KEY_SECRET = config_settings.RZPAY_SECRET
PSP_TIMEOUT = config_settings.PSP_TIMEOUT_SECONDS


class GatewayError(Exception):
    """Gateway call failed or returned something unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


async def _request(method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    url = f"{PSP_API_BASE}{path}"
    try:
        async with httpx.AsyncClient(timeout=PSP_TIMEOUT, auth=(PSP_KEY_ID, PSP_KEY_SECRET)) as client:
            resp = await client.request(method, url, json=payload)
            resp.raise_for_status()
            return resp.json()
    except httpx.HTTPStatusError as e:
        code = e.response.status_code if e.response is not None else None
        logger.warning("gateway.http_error", extra={"path": path, "status_code": code})
        raise GatewayError(f"gateway returned {code}", status_code=code) from e
    except httpx.HTTPError as e:
        logger.warning("gateway.transport_error", extra={"path": path, "error": str(e)})
        raise GatewayError(f"gateway unreachable: {e}") from e


async def create_intent(amount_paise: int, currency: str, receipt: str, notes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create a gateway order (intent). `notes` carries the checkout snapshot; the gateway
    only accepts flat string values so structured parts are json encoded by the caller.
    """
    payload = {
        "amount": int(amount_paise),
        "currency": currency,
        "receipt": receipt,
        "notes": notes or {},
    }
    if config_settings.RZPAY_PAYMENT_CONFIG_ID:
        payload["checkout_config_id"] = config_settings.RZPAY_PAYMENT_CONFIG_ID
    data = await _request("POST", "/orders", payload)
    if not data.get("id"):
        raise GatewayError("no intent id in gateway response")
    return data


async def fetch_intent(intent_id: str) -> Dict[str, Any]:
    return await _request("GET", f"/orders/{intent_id}")


async def fetch_payment(payment_id: str) -> Dict[str, Any]:
    return await _request("GET", f"/payments/{payment_id}")


async def refund(payment_id: str, amount_paise: int, reason: Optional[str] = None,
                 receipt: Optional[str] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"amount": int(amount_paise), "speed": "normal"}
    if receipt:
        payload["receipt"] = receipt
    if reason:
        payload["notes"] = {"reason": reason[:250]}
    data = await _request("POST", f"/payments/{payment_id}/refund", payload)
    if not data.get("id"):
        raise GatewayError("no refund id in gateway response")
    return data


def compute_signature(intent_id: str, payment_id: str, secret: Optional[str] = None) -> str:
    message = f"{intent_id}|{payment_id}".encode()
    return hmac.new((secret or PSP_KEY_SECRET).encode(), message, hashlib.sha256).hexdigest()


def verify_signature(intent_id: str, payment_id: str, signature: Optional[str]) -> bool:
    if not intent_id or not payment_id or not signature:
        return False
    expected = compute_signature(intent_id, payment_id)
    # compare_digest handles unequal lengths without short-circuiting on content
    return hmac.compare_digest(expected.encode(), signature.encode())


def verify_webhook_signature(body: bytes, signature: Optional[str]) -> bool:
    secret = config_settings.RAZORPAY_WEBHOOK_SECRET
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), signature.encode())


def payment_is_captured_for(payment: Dict[str, Any], intent_id: str) -> bool:
    return payment.get("status") == "captured" and payment.get("order_id") == intent_id


def parse_intent_notes(intent: Dict[str, Any]) -> Dict[str, Any]:
    """Decode the snapshot stored on the intent. Structured values were json encoded on the way in."""
    raw = intent.get("notes") or {}
    if isinstance(raw, list):
        # gateway returns [] for empty notes
        raw = {}
    notes: Dict[str, Any] = {}
    for key, value in raw.items():
        if isinstance(value, str) and value[:1] in ("[", "{"):
            try:
                notes[key] = json.loads(value)
                continue
            except ValueError:
                pass
        notes[key] = value
    return notes
