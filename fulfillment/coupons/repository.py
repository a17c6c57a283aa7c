from typing import Optional
from sqlalchemy import func, insert, select, update
from fulfillment.common.utils import now
from fulfillment.schema.full_schema import Coupon, CouponUsage, Orders, PaymentStatus


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


async def get_active_coupon(session, code: str) -> Optional[Coupon]:
    stmt = select(Coupon).where(Coupon.code == normalize_code(code), Coupon.is_active.is_(True))
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def count_completed_orders(session, user_id) -> int:
    stmt = select(func.count(Orders.id)).where(
        Orders.user_id == user_id, Orders.payment_status == PaymentStatus.COMPLETED.value)
    res = await session.execute(stmt)
    return int(res.scalar_one())


async def has_used_coupon(session, coupon_id: int, user_id) -> bool:
    stmt = select(CouponUsage.id).where(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id).limit(1)
    res = await session.execute(stmt)
    return res.scalar_one_or_none() is not None


async def record_usage(session, code: str, user_id, order_id: Optional[str]) -> bool:
    """used_count += 1 and append to the usage log. Returns False when the coupon is gone."""
    stmt = (
        update(Coupon)
        .where(Coupon.code == normalize_code(code))
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount == 0:
        return False

    coupon_id = (await session.execute(select(Coupon.id).where(Coupon.code == normalize_code(code)))).scalar_one()
    await session.execute(
        insert(CouponUsage).values(coupon_id=coupon_id, user_id=user_id, order_id=order_id, used_at=now()))
    return True
