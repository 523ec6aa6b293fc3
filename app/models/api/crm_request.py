"""CRM API request models."""

from pydantic import BaseModel, Field

from app.models.domain.crm_domain import FieldUpdate


class ContactUpdatesRequest(BaseModel):
    """Suggested field changes for one contact; only items with apply=True are written."""

    updates: list[FieldUpdate] = Field(default_factory=list)
