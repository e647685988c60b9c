from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class ChannelMessageKey(BaseModel):
    remoteJid: Optional[str] = None
    fromMe: bool = False
    id: Optional[str] = None


class ExtendedTextMessage(BaseModel):
    text: Optional[str] = None


class ChannelMessageContent(BaseModel):
    conversation: Optional[str] = None
    extendedTextMessage: Optional[ExtendedTextMessage] = None


class ChannelMessageData(BaseModel):
    key: Optional[ChannelMessageKey] = None
    message: Optional[ChannelMessageContent] = None


class ChannelWebhook(BaseModel):
    """Messaging channel notification for one inbound or outbound chat message."""

    instance: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("instance", "instanceName", "instance_name"),
    )
    event: Optional[str] = None
    data: Optional[ChannelMessageData] = None

    @property
    def remote_jid(self) -> Optional[str]:
        if self.data and self.data.key:
            return self.data.key.remoteJid
        return None

    @property
    def from_me(self) -> bool:
        return bool(self.data and self.data.key and self.data.key.fromMe)

    @property
    def text(self) -> str:
        message = self.data.message if self.data else None
        if message is None:
            return ""
        if message.conversation:
            return message.conversation
        if message.extendedTextMessage and message.extendedTextMessage.text:
            return message.extendedTextMessage.text
        return ""


class ChannelWebhookResponse(BaseModel):
    success: bool
    message: str
    phone: Optional[str] = None
    from_me: Optional[bool] = None
