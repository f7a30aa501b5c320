from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, Literal, TypeVar
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


DataT = TypeVar("DataT")
LeadType = Literal["buyer", "seller"]


class Envelope(BaseModel, Generic[DataT]):
    success: bool = True
    message: str | None = None
    data: DataT | None = None


class CallLeadRequest(BaseModel):
    # Required fields are checked by the service so the error carries a single message.
    name: str | None = None
    email: str | None = None
    phone_number: str | None = None
    subject: str | None = None
    agent_id: UUID | None = None


class BatchLeadInput(BaseModel):
    name: str | None = None
    email: str | None = None
    phone_number: str | None = None


class BatchCallRequest(BaseModel):
    leads: list[BatchLeadInput] | None = None
    trigger_timestamp: int | None = None
    name: str | None = None
    agent_id: UUID | None = None


class LeadInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    email: str | None = None
    phone_number: str | None = None
    address: str | None = None
    lead_type: LeadType | None = Field(default=None, alias="type")


class BulkLeadsRequest(BaseModel):
    leads: list[LeadInput] | None = None


class LeadUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    email: str | None = None
    address: str | None = None
    phone_number: str | None = None
    lead_type: LeadType | None = Field(default=None, alias="type")


class CallRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_call_id: str
    lead_id: UUID
    status: str
    analysis: dict[str, Any] | None
    transcript: str | None
    recording_url: str | None
    duration_ms: int | None
    cost: float | None
    from_number: str | None
    to_number: str | None
    created_at: datetime


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    name: str
    email: str | None
    phone_number: str
    owner_user_id: str
    address: str | None
    lead_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("lead_type", "type"),
        serialization_alias="type",
    )
    created_at: datetime
    updated_at: datetime


class LeadWithCallsRead(LeadRead):
    calls: list[CallRead] = Field(default_factory=list)


class BulkUpsertResult(BaseModel):
    inserted_count: int = 0
    modified_count: int = 0
    matched_count: int = 0
    skipped_count: int = 0
    inserted_ids: list[UUID] = Field(default_factory=list)

    @property
    def saved_count(self) -> int:
        return self.inserted_count + self.modified_count


class AgentCreate(BaseModel):
    name: str = Field(min_length=1)
    phone_number: str = Field(min_length=1)
    provider_agent_id: str = Field(min_length=1)


class AgentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    phone_number: str
    provider_agent_id: str
    created_at: datetime


class BatchCallRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_user_id: str
    agent_id: UUID | None
    provider_batch_call_id: str | None
    name: str | None
    expected_calls: int
    status: str
    lead_ids: list[str]
    created_at: datetime


class BatchCallCreated(BaseModel):
    batch_call: BatchCallRead | None = None
    provider: dict[str, Any]
