from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

MAX_LISTING_IMAGES = 5


class Intent(str, Enum):
    BUYING = "BUYING"
    SELLING = "SELLING"


class ConversationData(BaseModel):
    """Fields accumulated while a user walks through a buying or selling flow."""

    intent: Optional[Intent] = None
    item_name: Optional[str] = None
    price: Optional[float] = None
    price_range: Optional[str] = None
    images: list[str] = Field(default_factory=list)
    category: Optional[str] = None
    condition: Optional[str] = None
    confidence: Optional[int] = None
    meeting_spot: Optional[str] = None
    external_link: Optional[str] = None

    def is_empty(self) -> bool:
        return self == ConversationData()

    def merged(self, updates: dict[str, Any]) -> "ConversationData":
        """Apply updates additively: None never clears a field, images are appended."""
        values = self.model_dump()
        for key, value in updates.items():
            if key not in ConversationData.model_fields:
                raise KeyError(f"Unknown conversation field: {key}")
            if value is None:
                continue
            if key == "images":
                images = list(values["images"])
                for url in value:
                    if url and url not in images and len(images) < MAX_LISTING_IMAGES:
                        images.append(url)
                values["images"] = images
            else:
                values[key] = value
        return ConversationData.model_validate(values)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True, exclude_defaults=True)
