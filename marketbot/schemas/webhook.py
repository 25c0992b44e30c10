from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class WhatsAppText(BaseModel):
    body: str = ""


class WhatsAppImage(BaseModel):
    id: str
    caption: Optional[str] = None
    mime_type: Optional[str] = None


class WhatsAppMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    from_: str = Field(alias="from")
    id: str
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[WhatsAppText] = None
    image: Optional[WhatsAppImage] = None

    @property
    def body(self) -> str:
        if self.text:
            return self.text.body
        if self.image and self.image.caption:
            return self.image.caption
        return ""

    @property
    def media_id(self) -> Optional[str]:
        return self.image.id if self.type == "image" and self.image else None


class WhatsAppValue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messaging_product: Optional[str] = None
    messages: list[WhatsAppMessage] = Field(default_factory=list)


class WhatsAppChange(BaseModel):
    model_config = ConfigDict(extra="ignore")

    field: Optional[str] = None
    value: WhatsAppValue = Field(default_factory=WhatsAppValue)


class WhatsAppEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    changes: list[WhatsAppChange] = Field(default_factory=list)


class WhatsAppWebhook(BaseModel):
    """Cloud API notification: entry[].changes[].value.messages[]."""

    model_config = ConfigDict(extra="ignore")

    object: Optional[str] = None
    entry: list[WhatsAppEntry] = Field(default_factory=list)

    def iter_messages(self):
        for entry in self.entry:
            for change in entry.changes:
                yield from change.value.messages


class WebhookResponse(BaseModel):
    success: bool
    message: str
    received: int = 0
