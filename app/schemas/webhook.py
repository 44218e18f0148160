from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class WebhookMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "messageId", "message_id"))
    from_phone: str = Field(validation_alias=AliasChoices("from", "phone", "sender"))
    body: Optional[str] = Field(default="", validation_alias=AliasChoices("body", "text", "message"))
    type: str = Field(default="text", validation_alias=AliasChoices("type", "messageType"))
    timestamp: Optional[int] = None
    from_me: bool = Field(default=False, validation_alias=AliasChoices("fromMe", "from_me"))


class WhatsAppWebhookPayload(BaseModel):
    event: Optional[str] = "message"
    message: Optional[WebhookMessage] = None
    metadata: Optional[dict[str, Any]] = None


class WebhookResponse(BaseModel):
    success: bool
    message: str
    chatbot_response_id: Optional[int] = None
    greeting_id: Optional[int] = None
