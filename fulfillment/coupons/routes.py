from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from fulfillment.common.utils import success_response
from fulfillment.coupons.services import CouponRejected, price_coupon
from fulfillment.db.dependencies import get_session

coupons_router = APIRouter()


class CouponValidateInput(BaseModel):
    code: str
    cart_total: int = Field(alias="cartTotal")   # paise

    model_config = {"populate_by_name": True}


@coupons_router.post("/validate")
async def validate_coupon(request: Request, payload: CouponValidateInput, session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier

    if not payload.code or not payload.code.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Coupon code is required")
    if payload.cart_total <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid cart total")

    try:
        priced = await price_coupon(session, payload.code, payload.cart_total, user_identifier)
    except CouponRejected as e:
        code = status.HTTP_404_NOT_FOUND if e.not_found else status.HTTP_400_BAD_REQUEST
        raise HTTPException(status_code=code, detail=e.reason)

    return success_response({"coupon": priced.to_dict()})
