from typing import Optional

from pydantic import BaseModel, Field


class MessageRequest(BaseModel):
    address: str = Field(min_length=1)
    content: str = ""
    image_url: Optional[str] = None
    message_id: Optional[str] = None


class MessageResponse(BaseModel):
    success: bool
    state: Optional[str] = None
    bot_response: Optional[str] = None
    duplicate: bool = False
    notifications_sent: int = 0
