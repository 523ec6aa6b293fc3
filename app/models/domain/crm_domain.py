# app/models/domain/crm_domain.py
"""
CRM domain models shared by provider clients, the contact orchestrator
and the chat session.

One canonical schema per entity; provider payloads are mapped into these
records at the client boundary.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Provider(str, Enum):
    """Supported CRM providers. Declaration order is the canonical merge order."""

    HUBSPOT = "hubspot"
    SALESFORCE = "salesforce"

    @property
    def label(self) -> str:
        return {"hubspot": "HubSpot", "salesforce": "Salesforce"}[self.value]


PROVIDER_ORDER: tuple[Provider, ...] = tuple(Provider)

ContactIdentity = tuple[str, Provider]


class Credential(BaseModel):
    """Decrypted OAuth credential for one (user, provider) pair."""

    user_id: str
    provider: Provider
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    instance_url: str | None = None  # Salesforce only
    updated_at: datetime | None = None

    def is_expired(self) -> bool:
        """Check if access token is expired."""
        if not self.expires_at:
            return False
        return datetime.now(UTC) >= self.expires_at

    def needs_refresh(self, buffer_minutes: int = 5) -> bool:
        """Check if token expires within the buffer (or already has)."""
        if not self.expires_at:
            return False
        buffer_time = datetime.now(UTC) + timedelta(minutes=buffer_minutes)
        return buffer_time >= self.expires_at

    def with_refreshed_token(
        self,
        access_token: str,
        expires_in_seconds: int,
        refresh_token: str | None = None,
        instance_url: str | None = None,
    ) -> "Credential":
        """Return a copy carrying a new access token and expiry pair."""
        now = datetime.now(UTC)
        return self.model_copy(
            update={
                "access_token": access_token,
                "expires_at": now + timedelta(seconds=expires_in_seconds),
                "refresh_token": refresh_token or self.refresh_token,
                "instance_url": instance_url or self.instance_url,
                "updated_at": now,
            }
        )


class ContactSummary(BaseModel):
    """Contact as returned by a search; held only in session state."""

    id: str
    provider: Provider
    firstname: str | None = None
    lastname: str | None = None
    email: str | None = None
    company: str | None = None
    display_name: str = ""

    @property
    def identity(self) -> ContactIdentity:
        return (self.id, self.provider)

    @property
    def mention_name(self) -> str:
        """Name used for the `@name` token inserted into the message."""
        return self.firstname or self.display_name

    def matches_name(self, name: str) -> bool:
        """Case-insensitive match against firstname or display name."""
        wanted = name.lower()
        return wanted in {(self.firstname or "").lower(), (self.display_name or "").lower()}


# A contact admitted into a session's tagged set
TaggedContact = ContactSummary


class ContactRecord(ContactSummary):
    """Full contact record; only used to build completion context."""

    phone: str | None = None
    mobilephone: str | None = None
    jobtitle: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    country: str | None = None
    website: str | None = None
    linkedin_url: str | None = None
    twitter_handle: str | None = None

    def summary(self) -> ContactSummary:
        return ContactSummary(
            id=self.id,
            provider=self.provider,
            firstname=self.firstname,
            lastname=self.lastname,
            email=self.email,
            company=self.company,
            display_name=self.display_name,
        )

    def to_resolved(self) -> "ResolvedContact":
        name = self.display_name or " ".join(
            part for part in (self.firstname, self.lastname) if part
        )
        return ResolvedContact(
            source=self.provider.label,
            id=self.id,
            name=name,
            email=self.email,
            phone=self.phone,
            mobile=self.mobilephone,
            company=self.company,
            job_title=self.jobtitle,
            address=self.address,
            city=self.city,
            state=self.state,
            zip=self.zip,
            country=self.country,
            website=self.website,
            linkedin=self.linkedin_url,
            twitter=self.twitter_handle,
        )


class ResolvedContact(BaseModel):
    """Contact as presented to the completion service."""

    source: str
    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    mobile: str | None = None
    company: str | None = None
    job_title: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    country: str | None = None
    website: str | None = None
    linkedin: str | None = None
    twitter: str | None = None

    def present_fields(self) -> dict[str, Any]:
        """Fields with a value, excluding the source label."""
        return {
            key: value
            for key, value in self.model_dump(exclude={"source"}).items()
            if value not in (None, "")
        }


class FieldUpdate(BaseModel):
    """A suggested CRM field change the user may choose to apply."""

    field: str
    new_value: Any
    apply: bool = False
    label: str | None = None
    current_value: Any = None


class MeetingTranscript(BaseModel):
    """Meeting with a formatted transcript, used as completion context."""

    title: str
    date: datetime | None = None
    duration_seconds: int = 0
    transcript: str = ""


class CompletionContext(BaseModel):
    """Structured context handed to the completion service for one question."""

    contacts: list[ResolvedContact]
    conversation_history: list[dict[str, str]] = Field(default_factory=list)
    meetings: list[MeetingTranscript] = Field(default_factory=list)
