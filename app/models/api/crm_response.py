"""CRM API response models."""

from datetime import datetime

from pydantic import BaseModel, Field

from app.models.domain.crm_domain import ContactRecord, FieldUpdate, Provider


class CrmConnectionStatus(BaseModel):
    provider: Provider
    label: str
    connected: bool = Field(..., description="Whether a credential is stored")
    expires_at: datetime | None = None
    expired: bool = False
    needs_refresh: bool = Field(default=False, description="Expires within the refresh margin")
    has_refresh_token: bool = False
    instance_url: str | None = None


class CrmStatusResponse(BaseModel):
    connections: list[CrmConnectionStatus]
    connected_count: int


class ContactUpdatesPreviewResponse(BaseModel):
    contact: ContactRecord
    updates: list[FieldUpdate] = Field(
        default_factory=list, description="Suggestions that differ from the stored record"
    )


class ContactUpdatesResponse(BaseModel):
    applied: bool
    contact: ContactRecord | None = None
