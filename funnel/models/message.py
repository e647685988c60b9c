from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from funnel.database import Base


class Message(Base):
    """Append-only log of inbound replies, outbound deliveries and system notes.

    Outbound rows carrying a ``step_number`` are the step records the funnel
    derives its position from.
    """

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    direction = Column(Text, nullable=False)  # inbound, outbound, system
    content = Column(Text)
    event_type = Column(Text)
    step_number = Column(Integer)
    status = Column(Text, nullable=False)  # received, ignored, delivered, failed, recorded
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")
