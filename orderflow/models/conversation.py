import sqlalchemy as sa
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB

from orderflow.core.database import Base


class ConversationSession(Base):
    __tablename__ = "conversation_sessions"
    __table_args__ = (UniqueConstraint("tenant_id", "phone", name="uq_conversation_sessions_tenant_phone"),)

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), index=True, nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    phone = Column(String(30), nullable=False)

    current_step = Column(String(32), nullable=False, default="welcome")
    previous_step = Column(String(32), nullable=True)

    # Lists of CartLine dicts / tagged StepContext dict; always reassigned, never mutated in place.
    cart = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=False, default=list)
    context = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)

    last_message_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version}
