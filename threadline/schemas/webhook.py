from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from threadline.services.conversation_service import normalize_channel


class InboundEventRequest(BaseModel):
    provider: str
    provider_message_id: str = Field(validation_alias=AliasChoices("provider_message_id", "providerMessageId"))
    contact_id: int = Field(validation_alias=AliasChoices("contact_id", "contactId"))
    channel: str
    text: Optional[str] = None
    external_thread_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("external_thread_id", "externalThreadId"),
    )
    lead_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("lead_id", "leadId"))
    sender: Optional[str] = None
    timestamp: Optional[datetime] = None

    @field_validator("provider", "provider_message_id")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("channel")
    @classmethod
    def known_channel(cls, value: str) -> str:
        return normalize_channel(value)


class InboundEventResponse(BaseModel):
    success: bool
    duplicate: bool
    conversation_id: Optional[int] = None
