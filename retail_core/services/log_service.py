import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId

from retail_core.models.audit import LogEntry
from retail_core.repositories.log_repo import LogRepository

logger = logging.getLogger("retail_core.audit")


class LogService:
    """Audit sink. A failure here must never abort a financial operation."""

    def __init__(self, logs: LogRepository):
        self.logs = logs

    async def log_action(
        self,
        user_id: Optional[ObjectId],
        action: str,
        entity: str,
        entity_id: Any = None,
        diff: Optional[Dict[str, Any]] = None,
        note: str = "",
    ) -> Optional[LogEntry]:
        try:
            entry = LogEntry(
                user_id=user_id,
                action=action,
                entity=entity,
                entity_id=str(entity_id) if entity_id is not None else None,
                diff=diff or {},
                note=note,
            )
            return await self.logs.insert(entry)
        except Exception:
            logger.warning("Audit log write failed for %s %s %s", action, entity, entity_id, exc_info=True)
            return None

    async def get_entity_history(self, entity: str, entity_id: Any, limit: int = 50) -> List[LogEntry]:
        return await self.logs.find_for_entity(entity, str(entity_id), limit)
