import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, Text, Uuid
from sqlalchemy.orm import relationship

from marketbot.database import Base
from marketbot.models.column_types import JSONType


class Listing(Base):
    __tablename__ = "listings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text)
    price = Column(Numeric(10, 2, asdecimal=False))
    category = Column(Text, nullable=False, default="Other")
    condition = Column(Text, nullable=False, default="Good")
    meeting_spot = Column(Text)
    external_link = Column(Text)
    images = Column(JSONType, nullable=False, default=list)
    status = Column(Text, nullable=False, default="DRAFT")  # DRAFT, READY, PUBLISHED
    created_at = Column(DateTime(timezone=True), nullable=False)
    published_at = Column(DateTime(timezone=True))
    expires_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))

    user = relationship("User", back_populates="listings")
