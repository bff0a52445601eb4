from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict


class OperationResult(BaseModel):
    """
    Outcome of a compound operation.

    atomic is False when the writes were applied step by step without a
    transaction; completed_steps then tells a caller what was written.
    """
    operation: str
    atomic: bool
    completed_steps: List[str] = []
    payload: Dict[str, Any] = {}

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __getitem__(self, key: str) -> Any:
        return self.payload[key]
