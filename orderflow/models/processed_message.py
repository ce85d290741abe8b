from sqlalchemy import Column, DateTime, Integer, String, func

from orderflow.core.database import Base


class ProcessedMessage(Base):
    __tablename__ = "processed_messages"

    message_id = Column(String, primary_key=True)
    tenant_id = Column(Integer, nullable=True, index=True)
    processed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
