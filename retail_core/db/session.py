from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from motor.motor_asyncio import AsyncIOMotorClientSession, AsyncIOMotorDatabase

from retail_core.db.mongo import detect_transaction_support


class Storage:
    """
    Database handle plus an explicit statement of what the server can do.

    supports_atomic_transactions decides whether compound operations run in
    one session transaction or fall back to compensating actions.
    """

    def __init__(self, db: AsyncIOMotorDatabase, supports_atomic_transactions: bool = False):
        self.db = db
        self.client = getattr(db, "client", None)
        self.supports_atomic_transactions = supports_atomic_transactions

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Optional[AsyncIOMotorClientSession]]:
        """Yield a session inside a started transaction, or None without support."""
        if not self.supports_atomic_transactions:
            yield None
            return

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session


async def open_storage(db: AsyncIOMotorDatabase, transactions: Optional[bool] = None) -> Storage:
    """Build a Storage, probing the server when transaction support is not configured."""
    if transactions is None:
        transactions = await detect_transaction_support(db.client)
    return Storage(db, supports_atomic_transactions=transactions)
