from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from fulfillment.common.utils import success_response
from fulfillment.db.dependencies import get_session
from fulfillment.refunds.services import get_refund_status

refunds_router = APIRouter()


@refunds_router.get("/{order_id}")
async def refund_status(request: Request, order_id: str, session: AsyncSession = Depends(get_session)):
    user_identifier = request.state.user_identifier
    return success_response(await get_refund_status(session, user_identifier, order_id))
