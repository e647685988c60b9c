from sqlalchemy import Column, DateTime, Integer, Numeric, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from funnel.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(Text, nullable=False, index=True)
    order_code = Column(Text, nullable=False, unique=True)
    product = Column(Text)
    status = Column(Text, nullable=False, index=True)  # pending_payment, approved, converted, timed_out, completed
    steps_completed = Column(Integer, nullable=False, default=0)
    channel = Column(Text)
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    payment_link_ref = Column(Text)
    customer_name = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    messages = relationship("Message", back_populates="conversation")
