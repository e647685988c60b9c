from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from funnel.database import Base


class ScheduledEvent(Base):
    __tablename__ = "scheduled_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(Text, nullable=False, index=True)  # payment_timeout, delivery_retry
    order_code = Column(Text, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"))
    payload = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    dedupe_key = Column(Text, unique=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=False, index=True)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_attempt_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
