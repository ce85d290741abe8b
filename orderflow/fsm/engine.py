from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from orderflow.core.config import PRODUCT_LIST_LIMIT, SESSION_MAX_RETRIES, WHATSAPP_FALLBACK_TEMPLATE
from orderflow.core.errors import AuthError, NotFoundError, OrderFlowError, ProviderError, ValidationError, WindowExpiredError
from orderflow.core.request_context import conversation_context
from orderflow.fsm import messages
from orderflow.fsm.context import (
    CartContext,
    CategoryContext,
    CompletedContext,
    ProductContext,
    StepContext,
    VariantContext,
    WelcomeContext,
    dump_cart,
    dump_context,
    load_cart,
    load_context,
)
from orderflow.fsm.states import AWAITING_PAYMENT, Step, can_transition
from orderflow.models.conversation import ConversationSession
from orderflow.models.order import Order
from orderflow.models.processed_message import ProcessedMessage
from orderflow.models.tenant import Tenant
from orderflow.payments.broker import PaymentLinkBroker
from orderflow.services.catalog import Catalog, SqlCatalog
from orderflow.services.customers import get_or_create_customer
from orderflow.services.order_events import emit_order_created
from orderflow.services.orders import materialize
from orderflow.services.pricing import build_cart_line
from orderflow.services.sessions import SessionStore
from orderflow.whatsapp.gateway import OutboundMessage, TenantMessagingGateway

logger = logging.getLogger(__name__)


class InvalidTransition(RuntimeError):
    pass


@dataclass
class TurnOutcome:
    status: str
    step: str | None = None
    replies: list[str] = field(default_factory=list)
    order_id: int | None = None


@dataclass
class _Turn:
    db: Session
    tenant: Tenant
    session: ConversationSession
    catalog: Catalog
    message_id: str
    replies: list[str] = field(default_factory=list)
    order: Order | None = None


def parse_index(text: str, size: int) -> int | None:
    """1-based numeric reply to a 0-based index, or None when out of range."""
    value = (text or "").strip().rstrip(".")
    if not value.isdigit():
        return None
    index = int(value) - 1
    if 0 <= index < size:
        return index
    return None


def match_category(categories: list[str], text: str) -> str | None:
    index = parse_index(text, len(categories))
    if index is not None:
        return categories[index]
    needle = (text or "").strip().lower()
    if not needle:
        return None
    for name in categories:
        if needle in name.lower():
            return name
    return None


def _selectable_groups(product) -> list:
    return [group for group in product.variant_groups if group.options]


class ConversationEngine:
    """Deterministic ordering dialogue for one (tenant, phone) session.

    A turn runs inside one database transaction: the dedup marker, session
    mutation and any order created at checkout commit together. The payment
    link for a new order is requested only after that commit, in its own short
    transaction. Replies are sent last, so a retried turn never messages twice.
    """

    def __init__(
        self,
        *,
        gateway: TenantMessagingGateway,
        broker: PaymentLinkBroker,
        sessions: SessionStore | None = None,
        catalog_factory: Callable[[Session], Catalog] = SqlCatalog,
        product_limit: int = PRODUCT_LIST_LIMIT,
        max_retries: int = SESSION_MAX_RETRIES,
        fallback_template: str = WHATSAPP_FALLBACK_TEMPLATE,
    ) -> None:
        self.gateway = gateway
        self.broker = broker
        self.sessions = sessions or SessionStore()
        self.catalog_factory = catalog_factory
        self.product_limit = product_limit
        self.max_retries = max(max_retries, 1)
        self.fallback_template = fallback_template

    def handle_message(
        self,
        db: Session,
        *,
        tenant: Tenant,
        phone: str,
        text: str,
        message_id: str,
        contact_name: str | None = None,
    ) -> TurnOutcome:
        outcome: TurnOutcome | None = None
        order: Order | None = None
        for attempt in range(1, self.max_retries + 1):
            if db.get(ProcessedMessage, message_id) is not None:
                logger.info("duplicate message ignored", extra={"tenant_id": tenant.id, "message_id": message_id})
                return TurnOutcome(status="duplicate")
            try:
                outcome, order = self._run_turn(db, tenant, phone, text, message_id, contact_name)
                db.commit()
                break
            except (StaleDataError, IntegrityError):
                db.rollback()
                logger.warning(
                    "session write conflict",
                    extra={"tenant_id": tenant.id, "message_id": message_id, "attempt": attempt},
                )
                if attempt >= self.max_retries:
                    raise

        assert outcome is not None
        if order is not None:
            outcome.replies.append(self._issue_payment_link(db, order, phone))
            emit_order_created(order)
        self._deliver(db, tenant.id, phone, outcome.replies)
        return outcome

    def _run_turn(
        self,
        db: Session,
        tenant: Tenant,
        phone: str,
        text: str,
        message_id: str,
        contact_name: str | None,
    ) -> tuple[TurnOutcome, Order | None]:
        customer = get_or_create_customer(db, tenant_id=tenant.id, phone=phone, name=contact_name)
        session, created = self.sessions.load_or_create(
            db,
            tenant_id=tenant.id,
            phone=phone,
            customer_id=customer.id,
        )
        db.add(ProcessedMessage(message_id=message_id, tenant_id=tenant.id))

        turn = _Turn(db=db, tenant=tenant, session=session, catalog=self.catalog_factory(db), message_id=message_id)
        with conversation_context(tenant_id=tenant.id, session_id=session.id, step=session.current_step):
            step = Step.parse(session.current_step)
            if step in AWAITING_PAYMENT:
                turn.replies.append(messages.PAYMENT_PENDING)
            else:
                if step.value != session.current_step:
                    logger.warning("unknown step %r reset to welcome", session.current_step)
                    self._reset(session)
                self.sessions.touch(session)
                self._dispatch(turn, step, text)
            db.flush()
            logger.info(
                "turn handled",
                extra={"step": session.current_step, "message_id": message_id},
            )

        outcome = TurnOutcome(
            status="processed",
            step=session.current_step,
            replies=turn.replies,
            order_id=turn.order.id if turn.order else None,
        )
        return outcome, turn.order

    def _dispatch(self, turn: _Turn, step: Step, text: str) -> None:
        context = load_context(turn.session.context)
        match step, context:
            case Step.WELCOME, _:
                self._welcome(turn)
            case Step.CATEGORY_SELECTION, CategoryContext():
                self._category_selection(turn, context, text)
            case Step.PRODUCT_SELECTION, ProductContext():
                self._product_selection(turn, context, text)
            case Step.VARIANT_SELECTION, VariantContext():
                self._variant_selection(turn, context, text)
            case Step.CART, _:
                self._cart(turn, text)
            case _:
                logger.warning("context does not match step %s, restarting", step.value)
                self._reset(turn.session)
                self._welcome(turn)

    def _transition(self, turn: _Turn, target: Step, context: StepContext | None) -> None:
        session = turn.session
        current = Step.parse(session.current_step)
        if not can_transition(current, target):
            raise InvalidTransition(f"{current.value} -> {target.value}")
        if current != target:
            session.previous_step = current.value
        session.current_step = target.value
        session.context = dump_context(context) if context is not None else None

    def _reset(self, session: ConversationSession) -> None:
        session.previous_step = session.current_step
        session.current_step = Step.WELCOME.value
        session.context = None

    def _welcome(self, turn: _Turn) -> None:
        categories = turn.catalog.list_categories(turn.tenant.id)
        if not categories:
            turn.replies.append(messages.CATALOG_UNAVAILABLE)
            self._transition(turn, Step.WELCOME, WelcomeContext())
            return
        turn.replies.append(turn.tenant.welcome_message or messages.DEFAULT_GREETING)
        self._show_categories(turn, categories)

    def _show_categories(self, turn: _Turn, categories: list[str]) -> None:
        self._transition(turn, Step.CATEGORY_SELECTION, CategoryContext(categories=categories))
        turn.replies.append(messages.render_categories(categories))

    def _category_selection(self, turn: _Turn, context: CategoryContext, text: str) -> None:
        category = match_category(context.categories, text)
        if category is None:
            turn.replies.append(messages.render_invalid_choice(len(context.categories)))
            turn.replies.append(messages.render_categories(context.categories))
            return

        products = turn.catalog.list_products(turn.tenant.id, category, self.product_limit)
        if not products:
            turn.replies.append(messages.CATEGORY_EMPTY.format(category=category))
            turn.replies.append(messages.render_categories(context.categories))
            return

        self._transition(
            turn,
            Step.PRODUCT_SELECTION,
            ProductContext(selected_category=category, product_ids=[product.id for product in products]),
        )
        turn.replies.append(messages.render_products(category, products))

    def _product_selection(self, turn: _Turn, context: ProductContext, text: str) -> None:
        index = parse_index(text, len(context.product_ids))
        product = None
        if index is not None:
            product = turn.catalog.get_product(turn.tenant.id, context.product_ids[index])
        if product is None or not product.is_available:
            if index is not None:
                turn.replies.append(messages.PRODUCT_UNAVAILABLE)
            turn.replies.append(messages.render_invalid_choice(len(context.product_ids)))
            return

        groups = _selectable_groups(product)
        if groups:
            self._transition(
                turn,
                Step.VARIANT_SELECTION,
                VariantContext(selected_category=context.selected_category, product_id=product.id, group_index=0),
            )
            turn.replies.append(messages.render_variant_group(groups[0], product.currency))
            return
        self._add_to_cart(turn, product, [])

    def _variant_selection(self, turn: _Turn, context: VariantContext, text: str) -> None:
        product = turn.catalog.get_product(turn.tenant.id, context.product_id)
        groups = _selectable_groups(product) if product else []
        if product is None or context.group_index >= len(groups):
            logger.warning("variant context no longer matches catalog, restarting")
            turn.replies.append(messages.PRODUCT_UNAVAILABLE)
            self._reset(turn.session)
            self._welcome(turn)
            return

        group = groups[context.group_index]
        index = parse_index(text, len(group.options))
        if index is None:
            turn.replies.append(messages.render_invalid_choice(len(group.options)))
            turn.replies.append(messages.render_variant_group(group, product.currency))
            return

        labels = [*context.selected_labels, group.options[index].label]
        next_index = context.group_index + 1
        if next_index < len(groups):
            self._transition(
                turn,
                Step.VARIANT_SELECTION,
                context.model_copy(update={"group_index": next_index, "selected_labels": labels}),
            )
            turn.replies.append(messages.render_variant_group(groups[next_index], product.currency))
            return
        self._add_to_cart(turn, product, labels)

    def _add_to_cart(self, turn: _Turn, product, labels: list[str]) -> None:
        cart = load_cart(turn.session.cart)
        line = build_cart_line(product, labels)
        cart.append(line)
        turn.session.cart = dump_cart(cart)
        self._transition(turn, Step.CART, CartContext())
        turn.replies.append(messages.render_item_added(line))
        turn.replies.append(messages.render_cart(cart))

    def _cart(self, turn: _Turn, text: str) -> None:
        choice = (text or "").strip()
        if choice == "1":
            categories = turn.catalog.list_categories(turn.tenant.id)
            if not categories:
                turn.replies.append(messages.CATALOG_UNAVAILABLE)
                return
            self._show_categories(turn, categories)
        elif choice == "2":
            self._checkout(turn)
        elif choice == "3":
            turn.session.cart = []
            self._transition(turn, Step.WELCOME, None)
            turn.replies.append(messages.CART_CLEARED)
        else:
            cart = load_cart(turn.session.cart)
            if cart:
                turn.replies.append(messages.render_cart(cart))
            else:
                turn.replies.append(messages.CART_EMPTY)

    def _checkout(self, turn: _Turn) -> None:
        session = turn.session
        try:
            order = materialize(turn.db, session, source_message_id=turn.message_id)
        except ValidationError:
            turn.replies.append(messages.CART_EMPTY)
            return
        self._transition(turn, Step.CHECKOUT, None)
        session.cart = []
        self._transition(turn, Step.COMPLETED, CompletedContext(order_id=order.id, order_number=order.order_number))
        # Payment instructions are appended once the order has committed.
        turn.order = order

    def _issue_payment_link(self, db: Session, order: Order, phone: str) -> str:
        link = self.broker.create_link_or_fallback(db, order, customer_contact=phone)
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("payment link not persisted", extra={"tenant_id": order.tenant_id, "order_id": order.id})
        return messages.render_checkout(order.order_number, order.total_cents, order.currency, link.url)

    def _deliver(self, db: Session, tenant_id: int, phone: str, replies: list[str]) -> None:
        for body in replies:
            try:
                self.gateway.send(db, tenant_id, OutboundMessage(to=phone, body=body))
            except WindowExpiredError:
                self._send_fallback_template(db, tenant_id, phone)
                return
            except AuthError as exc:
                # Account already marked as error for the operator.
                logger.warning("reply not sent, credential rejected: %s", exc, extra={"tenant_id": tenant_id})
                return
            except (ProviderError, NotFoundError) as exc:
                logger.error("reply not sent: %s", exc, extra={"tenant_id": tenant_id})

    def _send_fallback_template(self, db: Session, tenant_id: int, phone: str) -> None:
        if not self.fallback_template:
            return
        try:
            self.gateway.send_template(db, tenant_id, to=phone, template_name=self.fallback_template)
        except OrderFlowError as exc:
            logger.error("fallback template not sent: %s", exc, extra={"tenant_id": tenant_id})
