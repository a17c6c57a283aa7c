from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import  AsyncSession
from fulfillment.db.connection import async_session

async def get_session() -> AsyncGenerator[AsyncSession,None]:
    async with async_session() as session:  # closes the session at the end of the request
        yield session


