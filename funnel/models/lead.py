from sqlalchemy import Column, DateTime, Text
from sqlalchemy.sql import func

from funnel.database import Base


class Lead(Base):
    __tablename__ = "leads"

    phone = Column(Text, primary_key=True)  # normalized digits-only
    channel = Column(Text, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
