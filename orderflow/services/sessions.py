from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from orderflow.core.config import SESSION_TTL_HOURS
from orderflow.fsm.context import CompletedContext, load_context
from orderflow.fsm.states import Step
from orderflow.models.conversation import ConversationSession
from orderflow.models.order import Order

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """Loads and persists conversation sessions for one (tenant, phone) key.

    Concurrent writers are detected by the ``version`` column; the engine retries
    the whole turn when SQLAlchemy raises ``StaleDataError`` on flush.
    """

    def __init__(self, ttl_hours: int = SESSION_TTL_HOURS) -> None:
        self.ttl = timedelta(hours=ttl_hours)

    def find_live(self, db: Session, *, tenant_id: int, phone: str, now: datetime | None = None) -> ConversationSession | None:
        now = now or _utcnow()
        return (
            db.query(ConversationSession)
            .filter(
                ConversationSession.tenant_id == tenant_id,
                ConversationSession.phone == phone,
                ConversationSession.expires_at > now,
            )
            .first()
        )

    def load_or_create(
        self,
        db: Session,
        *,
        tenant_id: int,
        phone: str,
        customer_id: int | None,
        now: datetime | None = None,
    ) -> tuple[ConversationSession, bool]:
        now = now or _utcnow()
        session = self.find_live(db, tenant_id=tenant_id, phone=phone, now=now)
        if session:
            return session, False

        # An expired row still holds the (tenant, phone) unique key.
        removed = (
            db.query(ConversationSession)
            .filter(ConversationSession.tenant_id == tenant_id, ConversationSession.phone == phone)
            .delete(synchronize_session="fetch")
        )
        if removed:
            logger.info("expired session replaced", extra={"tenant_id": tenant_id})

        session = ConversationSession(
            tenant_id=tenant_id,
            customer_id=customer_id,
            phone=phone,
            current_step=Step.WELCOME.value,
            cart=[],
            context=None,
            last_message_at=now,
            expires_at=now + self.ttl,
        )
        db.add(session)
        db.flush()
        return session, True

    def touch(self, session: ConversationSession, now: datetime | None = None) -> None:
        now = now or _utcnow()
        session.last_message_at = now
        session.expires_at = now + self.ttl

    def end_for_order(self, db: Session, order: Order) -> bool:
        """Close the conversation that checked out ``order``.

        Manual orders and older chat orders leave the customer's current
        conversation alone.
        """
        if order.source != "chat":
            return False
        session = (
            db.query(ConversationSession)
            .filter(ConversationSession.tenant_id == order.tenant_id, ConversationSession.phone == order.customer_phone)
            .first()
        )
        if session is None:
            return False
        context = load_context(session.context)
        if not isinstance(context, CompletedContext) or context.order_id != order.id:
            return False
        db.delete(session)
        return True

    def purge_expired(self, db: Session, now: datetime | None = None) -> int:
        now = now or _utcnow()
        removed = (
            db.query(ConversationSession)
            .filter(ConversationSession.expires_at <= now)
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info("expired sessions purged count=%s", removed)
        return removed
