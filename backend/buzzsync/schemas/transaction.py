"""
BuzzSync Backend — Transaction Gateway Schemas
================================================

What:  Request/response contracts for POST /transaction and POST /query.

Parameters:
    Positional, JSON scalars only. `$1` in the statement refers to params[0].
    Values are bound, never spliced into the statement text. Drivers with
    strict typing (asyncpg) may need explicit casts for text that should be
    read as another type, e.g. `$1::text::timestamptz`.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, StrictBool, StrictFloat, StrictInt, StrictStr

# bool first so true/false are never coerced to 1/0
ParamValue = Optional[Union[StrictBool, StrictInt, StrictFloat, StrictStr]]


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class TransactionOperation(BaseModel):
    sql: str = Field(min_length=1, description="One SELECT, INSERT or UPDATE statement")
    params: List[ParamValue] = Field(default_factory=list, description="Positional parameters")


class TransactionRequest(BaseModel):
    """
    Example:
        {
            "operations": [
                {"sql": "UPDATE venues SET name = $1 WHERE id = $2", "params": ["Aurora", "..."]},
                {"sql": "SELECT name FROM venues WHERE id = $1", "params": ["..."]}
            ],
            "timeout_ms": 5000
        }
    """
    operations: List[TransactionOperation] = Field(min_length=1)
    timeout_ms: Optional[int] = Field(default=None, gt=0, description="Batch deadline")


class QueryRequest(BaseModel):
    sql: str = Field(min_length=1, description="A single SELECT statement")
    params: List[ParamValue] = Field(default_factory=list)
    timeout_ms: Optional[int] = Field(default=None, gt=0)


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class OperationResultResponse(BaseModel):
    index: int
    kind: str = Field(description="select, insert or update")
    row_count: int = Field(description="Rows returned, or rows affected for writes")
    rows: List[Dict[str, Any]] = Field(default_factory=list)


class TransactionResponse(BaseModel):
    results: List[OperationResultResponse]
    committed: bool
    timestamp: datetime = Field(description="Commit time (UTC)")


class QueryResponse(BaseModel):
    rows: List[Dict[str, Any]]
    row_count: int
    timestamp: datetime
