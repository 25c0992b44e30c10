from sqlalchemy import Column, DateTime, Text

from marketbot.database import Base


class ProcessedMessage(Base):
    __tablename__ = "processed_messages"

    message_id = Column(Text, primary_key=True)  # channel-assigned inbound id
    address = Column(Text, nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False)
