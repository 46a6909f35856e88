from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


class OperationKind(str, Enum):
    INITIALIZED = "Initialized"
    INCREMENTED = "Incremented"
    DECREMENTED = "Decremented"
    UNKNOWN = "Unknown"


class Instruction(BaseModel):
    programId: str = ""
    accounts: List[str] = Field(default_factory=list)
    data: str = ""


class Transaction(BaseModel):
    """One transaction record as pushed by the indexing provider."""

    signature: Optional[str] = None
    slot: int = 0
    timestamp: int = 0
    instructions: List[Instruction] = Field(default_factory=list)
    transactionError: Any = None

    model_config = {"extra": "ignore"}


class CounterEvent(BaseModel):
    signature: str = Field(min_length=1)
    block_time: int
    slot: int
    event_type: OperationKind
    authority: str = Field(min_length=1)
    old_count: Optional[int] = None
    new_count: int = Field(ge=0)

    @field_validator("event_type")
    @classmethod
    def _known_kind(cls, v: OperationKind) -> OperationKind:
        if v is OperationKind.UNKNOWN:
            raise ValueError("events are only built for recognized operations")
        return v


# mapping form {key: record} or the provider's array form
WebhookBody = Union[Dict[str, Any], List[Any]]
