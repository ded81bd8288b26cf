"""
Base Schema Classes for Pydantic Models

RULE: every response schema that is built from an ORM row or a service
dataclass MUST inherit from BaseResponseSchema.
"""

from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for response schemas read from ORM models and dataclasses.

    - from_attributes, so DistributionRequest rows, SettlementResult and
      ProfitabilityAnalysis can be passed to model_validate directly
    - UUIDs serialized as strings, datetimes as ISO-8601

    Usage:
        class DistributionHistoryEntryResponse(BaseResponseSchema):
            id: UUID
            action: str
            performed_by: Optional[UUID] = None
    """
    model_config = ConfigDict(
        from_attributes=True,
        json_encoders={
            UUID: str,
            datetime: lambda v: v.isoformat() if v else None,
        },
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for request bodies.

    Unknown fields are ignored so older clients keep working when the
    proposal grows new optional fields.
    """
    model_config = ConfigDict(
        extra='ignore',
    )
