from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class QueryParameters(BaseModel):
    """
    Body of POST /queries/run. Clients send the same body on every poll,
    only adding `continuation`; unknown fields are tolerated.
    """

    model_config = ConfigDict(extra="allow")

    statement: str = Field(..., min_length=1)
    data_source: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    continuation: Optional[str] = None


class QueryResultPayload(BaseModel):
    columns: List[str]
    rows: List[List[Any]]
    row_count: int
    truncated: bool = False
    duration_ms: int = 0


class PendingEnvelope(BaseModel):
    status: Literal["pending"] = "pending"
    continuation: str


class DoneEnvelope(BaseModel):
    status: Literal["done"] = "done"
    result: QueryResultPayload


class FailedEnvelope(BaseModel):
    status: Literal["failed"] = "failed"
    error: str


ExecutionEnvelope = Annotated[
    Union[PendingEnvelope, DoneEnvelope, FailedEnvelope],
    Field(discriminator="status"),
]


class CancelRequest(BaseModel):
    continuation: str
