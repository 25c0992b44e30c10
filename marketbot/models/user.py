import uuid

from sqlalchemy import Column, DateTime, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from marketbot.database import Base
from marketbot.models.column_types import JSONType


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    address = Column(Text, nullable=False, unique=True)  # channel address, e.g. WhatsApp "from"
    name = Column(Text)
    trust_level = Column(Text, nullable=False, default="BASIC")  # BASIC, TRUSTED, SHADOW_BANNED
    daily_listing_count = Column(Integer, nullable=False, default=0)
    last_listing_date = Column(DateTime(timezone=True))
    spam_attempts = Column(Integer, nullable=False, default=0)
    conversation_state = Column(Text, nullable=False, default="INITIAL")
    conversation_data = Column(JSONType, nullable=False, default=dict)
    state_version = Column(Integer, nullable=False)
    consented_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_active_at = Column(DateTime(timezone=True))

    listings = relationship("Listing", back_populates="user")
    subscriptions = relationship("Subscription", back_populates="user")

    # UPDATE ... WHERE state_version = :old; a concurrent writer raises StaleDataError.
    __mapper_args__ = {"version_id_col": state_version}
