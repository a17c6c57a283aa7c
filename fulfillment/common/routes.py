from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from fulfillment.common.logging_setup import get_logger
from fulfillment.db.dependencies import get_session

logger = get_logger("fulfillment.health")

home_router = APIRouter()


@home_router.get("/health")
async def health_check(session:AsyncSession=Depends(get_session)):
    stmt=select(1)

    try:
        await session.execute(stmt)
    except SQLAlchemyError:
        logger.error("health.db_unreachable", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Database connection error")

    return {"status": "healthy"}
