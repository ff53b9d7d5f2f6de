from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

MESSAGES_UPSERT_EVENT = "messages.upsert"

FLAT_KEY_FIELDS = ("id", "messageId", "remoteJid", "remoteConversationId", "fromMe", "participant", "participantId")


class MessageKey(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(validation_alias=AliasChoices("id", "messageId"))
    remoteJid: str = Field(validation_alias=AliasChoices("remoteJid", "remoteConversationId"))
    fromMe: bool = False
    participant: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("participant", "participantId"),
    )


class MessageData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: MessageKey
    pushName: Optional[str] = None
    messageTimestamp: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("messageTimestamp", "timestamp"),
    )
    message: Optional[dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("message", "messageBody"),
    )

    @model_validator(mode="before")
    @classmethod
    def lift_flat_key(cls, data: Any) -> Any:
        """Accept the flat form where id, conversation and sender sit beside the body."""
        if isinstance(data, dict) and "key" not in data:
            key = {name: data[name] for name in FLAT_KEY_FIELDS if name in data}
            if key:
                return {**data, "key": key}
        return data


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    instance: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("instance", "instanceId", "instance_id"),
    )
    data: Optional[dict[str, Any]] = None

    def is_message_upsert(self) -> bool:
        return self.event == MESSAGES_UPSERT_EVENT and bool(self.data)


class WebhookResponse(BaseModel):
    success: bool
    status: str
    message: str
    message_id: Optional[str] = None
