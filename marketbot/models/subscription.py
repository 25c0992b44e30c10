import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from marketbot.database import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(Text, nullable=False)  # ALERT, BUY_REQUEST
    keywords = Column(Text, nullable=False)
    price_range = Column(Text)
    category = Column(Text)
    status = Column(Text, nullable=False, default="ACTIVE")
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_notified_at = Column(DateTime(timezone=True))

    user = relationship("User", back_populates="subscriptions")
