from typing import List

from motor.motor_asyncio import AsyncIOMotorDatabase

from retail_core.models.audit import LogEntry


class LogRepository:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["logs"]

    async def insert(self, entry: LogEntry) -> LogEntry:
        await self.collection.insert_one(entry.to_mongo())
        return entry

    async def find_for_entity(self, entity: str, entity_id: str, limit: int = 50) -> List[LogEntry]:
        cursor = self.collection.find({"entity": entity, "entity_id": entity_id}).sort("date", -1).limit(limit)
        docs = await cursor.to_list(None)
        return [LogEntry(**doc) for doc in docs]
