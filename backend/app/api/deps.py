from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.core.database import async_session
from backend.app.services.khalti import KhaltiClient, PaymentGateway


# One database session per request
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


# Payment gateway client, overridable in tests
def get_payment_gateway() -> PaymentGateway:
    return KhaltiClient()
