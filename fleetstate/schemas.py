from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from fleetstate.enums import LabelMembershipType, LabelType


class ScheduledQueryResultRow(BaseModel):
    query_id: int
    host_id: int
    last_fetched: datetime
    data: bytes | None = None  # None = host answered without a usable payload

    model_config = ConfigDict(from_attributes=True)

    @property
    def has_data(self) -> bool:
        return self.data is not None


class LabelSpec(BaseModel):
    """Declarative label definition used by bulk import."""
    name: str
    description: str = ""
    query: str = ""
    platform: str = ""
    label_type: LabelType = LabelType.REGULAR
    label_membership_type: LabelMembershipType = LabelMembershipType.DYNAMIC
    hosts: list[str] = Field(default_factory=list)  # hostnames, manual labels only

    model_config = ConfigDict(from_attributes=True)


class LabelOut(BaseModel):
    id: int
    name: str
    description: str = ""
    query: str = ""
    platform: str = ""
    label_type: LabelType
    label_membership_type: LabelMembershipType
    created_at: datetime | None = None
    updated_at: datetime | None = None
    host_count: int | None = None

    model_config = ConfigDict(from_attributes=True)


class HostOut(BaseModel):
    id: int
    hostname: str
    platform: str = ""
    os_version: str = ""
    label_updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)
