from dataclasses import dataclass
from typing import Any, Dict, Optional
from fulfillment.common.logging_setup import get_logger
from fulfillment.common.utils import as_utc, format_rupees, now
from fulfillment.coupons.repository import count_completed_orders, get_active_coupon, has_used_coupon, normalize_code, record_usage
from fulfillment.db.connection import async_session
from fulfillment.schema.full_schema import Coupon, DiscountType

logger = get_logger("fulfillment.coupons")


class CouponRejected(Exception):
    def __init__(self, reason: str, not_found: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.not_found = not_found


@dataclass
class CouponPrice:
    code: str
    name: str
    discount_type: str
    discount_value: int
    discount_amount: int
    cart_total: int
    final_amount: int

    def snapshot(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "discountType": self.discount_type,
            "discountValue": self.discount_value,
            "discountAmount": self.discount_amount,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {**self.snapshot(), "cartTotal": self.cart_total, "finalAmount": self.final_amount, "valid": True}


def compute_discount(discount_type: str, discount_value: int, cart_total: int,
                     max_discount_amount: Optional[int] = None) -> int:
    """Discount in paise. Never exceeds the amount being discounted."""
    if discount_type == DiscountType.PERCENTAGE.value:
        discount = round(cart_total * discount_value / 100)
        if max_discount_amount is not None and discount > max_discount_amount:
            discount = max_discount_amount
    else:
        discount = discount_value
    return max(0, min(int(discount), cart_total))


async def price_coupon(session, code: str, cart_total: int, user_id) -> CouponPrice:
    """
    Validate `code` for this user and cart total and price it.
    Checks short-circuit in order: exists/active, expiry, start date, usage limit,
    minimum purchase, first-time-purchase rule, once-per-account rule.
    Raises CouponRejected with the customer-facing reason.
    """
    coupon: Optional[Coupon] = await get_active_coupon(session, code)
    if coupon is None:
        raise CouponRejected("Invalid coupon code", not_found=True)

    current = now()
    if coupon.valid_until is not None and current > as_utc(coupon.valid_until):
        raise CouponRejected("This coupon has expired")

    if coupon.valid_from is not None and current < as_utc(coupon.valid_from):
        raise CouponRejected("This coupon is not yet valid")

    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise CouponRejected("This coupon has reached its usage limit")

    if cart_total < (coupon.min_purchase_amount or 0):
        raise CouponRejected(
            f"Minimum purchase amount of {format_rupees(coupon.min_purchase_amount)} is required for this coupon")

    if coupon.first_time_purchase_only:
        if await count_completed_orders(session, user_id) > 0:
            raise CouponRejected("This coupon is valid only for first-time purchases")

    if coupon.once_per_account:
        if await has_used_coupon(session, coupon.id, user_id):
            raise CouponRejected("You have already used this coupon")

    discount = compute_discount(coupon.discount_type, int(coupon.discount_value), cart_total, coupon.max_discount_amount)
    return CouponPrice(
        code=coupon.code,
        name=coupon.name,
        discount_type=coupon.discount_type,
        discount_value=int(coupon.discount_value),
        discount_amount=discount,
        cart_total=cart_total,
        final_amount=max(0, cart_total - discount),
    )


async def record_coupon_usage(code: str, user_id, order_id: Optional[str]):
    """Best-effort usage accounting after the order is durable; runs in its own session."""
    try:
        async with async_session() as session:
            recorded = await record_usage(session, code, user_id, order_id)
            await session.commit()
        if not recorded:
            logger.warning("coupon.usage.coupon_missing", extra={"code": normalize_code(code), "order_id": order_id})
    except Exception:
        logger.exception("coupon.usage.record_failed", extra={"code": normalize_code(code), "order_id": order_id})
