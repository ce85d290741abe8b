import itertools
import re
from types import SimpleNamespace

import pytest
from sqlalchemy.orm.exc import StaleDataError

from orderflow.fsm import messages
from orderflow.fsm.engine import ConversationEngine, InvalidTransition, match_category, parse_index
from orderflow.fsm.states import Step, can_transition
from orderflow.models.conversation import ConversationSession
from orderflow.models.order import Order
from orderflow.models.processed_message import ProcessedMessage
from orderflow.payments.broker import PaymentLinkBroker
from orderflow.payments.registry import PaymentAdapterRegistry
from tests.fixtures_data import (
    CUSTOMER_PHONE,
    RecordingGateway,
    build_encryption,
    build_session_factory,
    seed_menu,
    seed_tenant,
)


ALLOWED_STEPS = {
    (Step.WELCOME, Step.WELCOME),
    (Step.WELCOME, Step.CATEGORY_SELECTION),
    (Step.CATEGORY_SELECTION, Step.CATEGORY_SELECTION),
    (Step.CATEGORY_SELECTION, Step.PRODUCT_SELECTION),
    (Step.PRODUCT_SELECTION, Step.PRODUCT_SELECTION),
    (Step.PRODUCT_SELECTION, Step.VARIANT_SELECTION),
    (Step.PRODUCT_SELECTION, Step.CART),
    (Step.VARIANT_SELECTION, Step.VARIANT_SELECTION),
    (Step.VARIANT_SELECTION, Step.CART),
    (Step.CART, Step.CART),
    (Step.CART, Step.CATEGORY_SELECTION),
    (Step.CART, Step.CHECKOUT),
    (Step.CART, Step.WELCOME),
    (Step.CHECKOUT, Step.COMPLETED),
    (Step.COMPLETED, Step.COMPLETED),
}


class Conversation:
    def __init__(self, *, gateway=None, welcome_message=None):
        self.db = build_session_factory()()
        self.tenant = seed_tenant(self.db, welcome_message=welcome_message)
        self.products = seed_menu(self.db)
        self.gateway = gateway or RecordingGateway()
        broker = PaymentLinkBroker(
            PaymentAdapterRegistry(),
            build_encryption(),
            fallback_url="https://pay.test/{order_number}",
        )
        self.engine = ConversationEngine(gateway=self.gateway, broker=broker)
        self._counter = 0

    def say(self, text, message_id=None):
        self._counter += 1
        return self.engine.handle_message(
            self.db,
            tenant=self.tenant,
            phone=CUSTOMER_PHONE,
            text=text,
            message_id=message_id or f"wamid.in.{self._counter}",
            contact_name="Dana",
        )

    def session(self):
        return self.db.query(ConversationSession).filter_by(tenant_id=self.tenant.id, phone=CUSTOMER_PHONE).one()

    def replies(self):
        return [body for _tenant, _to, body in self.gateway.sent]


def test_first_message_greets_and_lists_categories_in_menu_order():
    chat = Conversation(welcome_message="Welcome to Pizza Place!")

    outcome = chat.say("hi")

    assert outcome.status == "processed"
    assert outcome.step == "category_selection"
    assert chat.replies()[0] == "Welcome to Pizza Place!"
    assert "1. Pizza" in chat.replies()[1]
    assert "2. Drinks" in chat.replies()[1]
    assert chat.session().context == {"step": "category_selection", "categories": ["Pizza", "Drinks"]}


def test_choosing_first_category_moves_to_product_selection():
    chat = Conversation()
    chat.say("hi")

    outcome = chat.say("1")

    session = chat.session()
    assert outcome.step == "product_selection"
    assert session.previous_step == "category_selection"
    assert session.context["selected_category"] == "Pizza"
    assert "Margherita" in chat.replies()[-1]
    assert "Pepperoni" in chat.replies()[-1]
    assert "Cola" not in chat.replies()[-1]


def test_invalid_category_reprompts_without_leaving_step():
    chat = Conversation()
    chat.say("hi")

    outcome = chat.say("7")

    assert outcome.step == "category_selection"
    assert chat.replies()[-2] == messages.render_invalid_choice(2)


def test_out_of_range_product_reprompts_without_touching_cart():
    chat = Conversation()
    chat.say("hi")
    chat.say("1")
    context_before = chat.session().context

    outcome = chat.say("9")

    session = chat.session()
    assert outcome.step == "product_selection"
    assert session.context == context_before
    assert session.cart == []
    assert chat.replies()[-1] == messages.render_invalid_choice(2)


def test_out_of_range_variant_reprompts_the_same_group():
    chat = Conversation()
    chat.say("hi")
    chat.say("1")
    chat.say("1")  # Margherita
    context_before = chat.session().context

    outcome = chat.say("5")

    session = chat.session()
    assert outcome.step == "variant_selection"
    assert session.context == context_before
    assert session.context["group_index"] == 0
    assert session.cart == []
    assert chat.replies()[-2] == messages.render_invalid_choice(2)
    assert "Choose Size" in chat.replies()[-1]


def test_two_variant_groups_build_one_line_with_both_modifiers():
    chat = Conversation()
    chat.say("hi")
    chat.say("1")
    assert chat.say("1").step == "variant_selection"
    assert "Large (+₪10.00)" in chat.replies()[-1]

    assert chat.say("2").step == "variant_selection"
    assert "Choose Crust" in chat.replies()[-1]

    outcome = chat.say("2")

    cart = chat.session().cart
    assert outcome.step == "cart"
    assert len(cart) == 1
    assert cart[0]["variants"] == ["Large", "Stuffed"]
    assert cart[0]["subtotal_cents"] == 4500 + 1000 + 500
    assert "Total: ₪60.00" in chat.replies()[-1]


def test_repeated_product_selection_adds_separate_lines():
    chat = Conversation()
    chat.say("hi")
    chat.say("1")
    chat.say("2")  # Pepperoni, no variants
    chat.say("1")  # add more
    chat.say("1")
    chat.say("2")

    cart = chat.session().cart
    assert [line["name"] for line in cart] == ["Pepperoni", "Pepperoni"]
    assert all(line["quantity"] == 1 for line in cart)


def test_clear_cart_empties_cart_and_returns_to_welcome():
    chat = Conversation()
    chat.say("hi")
    chat.say("2")
    chat.say("1")  # Cola

    outcome = chat.say("3")

    session = chat.session()
    assert outcome.step == "welcome"
    assert session.cart == []
    assert chat.replies()[-1] == messages.CART_CLEARED


def test_checkout_creates_order_and_sends_payment_link():
    chat = Conversation()
    chat.say("hi")
    chat.say("2")
    chat.say("1")  # Cola

    outcome = chat.say("2", message_id="wamid.checkout")

    order = chat.db.query(Order).one()
    session = chat.session()
    assert outcome.step == "completed"
    assert outcome.order_id == order.id
    assert re.fullmatch(r"ORD-\d{8}-0001", order.order_number)
    assert order.source_message_id == "wamid.checkout"
    assert order.total_cents == 800
    assert order.payment_link_url == f"https://pay.test/{order.order_number}"
    assert session.cart == []
    assert session.context["order_number"] == order.order_number
    assert order.order_number in chat.replies()[-1]
    assert order.payment_link_url in chat.replies()[-1]


def test_payment_link_is_requested_once_after_the_order_commits(monkeypatch):
    chat = Conversation()
    chat.say("hi")
    chat.say("2")
    chat.say("1")  # Cola

    broker = chat.engine.broker
    create_link = broker.create_link_or_fallback
    link_requests = []

    def recording(db, order, **kwargs):
        open_transaction = db.in_transaction()
        link_requests.append({"order_id": order.id, "open_transaction": open_transaction})
        return create_link(db, order, **kwargs)

    run_turn = chat.engine._run_turn
    attempts = {"count": 0}

    def stale_first_commit(*args, **kwargs):
        result = run_turn(*args, **kwargs)
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise StaleDataError("session row changed")
        return result

    monkeypatch.setattr(broker, "create_link_or_fallback", recording)
    monkeypatch.setattr(chat.engine, "_run_turn", stale_first_commit)

    outcome = chat.say("2")

    order = chat.db.query(Order).one()
    assert attempts["count"] == 2
    assert link_requests == [{"order_id": order.id, "open_transaction": False}]
    assert outcome.order_id == order.id
    assert order.payment_link_url == f"https://pay.test/{order.order_number}"
    assert chat.replies()[-1].count("https://pay.test/") == 1


def test_checkout_with_empty_cart_stays_in_cart_without_order():
    chat = Conversation()
    chat.say("hi")
    session = chat.session()
    session.current_step = "cart"
    session.context = {"step": "cart"}
    session.cart = []
    chat.db.commit()

    outcome = chat.say("2")

    assert outcome.step == "cart"
    assert chat.db.query(Order).count() == 0
    assert chat.replies()[-1] == messages.CART_EMPTY


def test_message_after_checkout_reports_pending_payment_without_mutation():
    chat = Conversation()
    chat.say("hi")
    chat.say("2")
    chat.say("1")
    chat.say("2")
    version_before = chat.session().version

    outcome = chat.say("hello again")

    assert outcome.step == "completed"
    assert chat.replies()[-1] == messages.PAYMENT_PENDING
    assert chat.session().version == version_before


def test_unknown_step_resets_to_welcome():
    chat = Conversation()
    chat.say("hi")
    session = chat.session()
    session.current_step = "somewhere_else"
    session.context = {"step": "nope"}
    chat.db.commit()

    outcome = chat.say("hello")

    assert outcome.step == "category_selection"
    assert "1. Pizza" in chat.replies()[-1]


def test_replayed_message_id_is_ignored():
    chat = Conversation()
    chat.say("hi")
    chat.say("2")
    chat.say("1")
    chat.say("2", message_id="wamid.dup")
    sent_before = len(chat.gateway.sent)
    version_before = chat.session().version

    outcome = chat.say("2", message_id="wamid.dup")

    assert outcome.status == "duplicate"
    assert len(chat.gateway.sent) == sent_before
    assert chat.db.query(Order).count() == 1
    assert chat.session().version == version_before


def test_window_expired_falls_back_to_template_once():
    chat = Conversation(gateway=RecordingGateway(window_expired=True))

    chat.say("hi")

    assert chat.gateway.sent == []
    assert chat.gateway.templates == [(1, CUSTOMER_PHONE, "order_update")]


def test_conflicting_write_is_retried(monkeypatch):
    chat = Conversation()
    original = chat.engine._run_turn
    calls = {"count": 0}

    def flaky(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise StaleDataError("session row changed")
        return original(*args, **kwargs)

    monkeypatch.setattr(chat.engine, "_run_turn", flaky)

    outcome = chat.say("hi", message_id="wamid.retry")

    assert calls["count"] == 2
    assert outcome.step == "category_selection"
    assert chat.db.get(ProcessedMessage, "wamid.retry") is not None


def test_conflict_retries_are_bounded(monkeypatch):
    chat = Conversation()

    def always_stale(*_args, **_kwargs):
        raise StaleDataError("session row changed")

    monkeypatch.setattr(chat.engine, "_run_turn", always_stale)

    with pytest.raises(StaleDataError):
        chat.say("hi")
    assert chat.gateway.sent == []


@pytest.mark.parametrize(("current", "target"), list(itertools.product(Step, Step)))
def test_only_documented_transitions_are_allowed(current, target):
    assert can_transition(current, target) is ((current, target) in ALLOWED_STEPS)


def test_undocumented_transition_is_refused_and_leaves_session_alone():
    engine = Conversation().engine
    session = SimpleNamespace(current_step="welcome", previous_step=None, context=None)

    with pytest.raises(InvalidTransition):
        engine._transition(SimpleNamespace(session=session), Step.COMPLETED, None)

    assert (session.current_step, session.previous_step, session.context) == ("welcome", None, None)


def test_reply_index_parsing():
    assert parse_index("2", 3) == 1
    assert parse_index(" 1. ", 3) == 0
    assert parse_index("4", 3) is None
    assert parse_index("two", 3) is None
    assert match_category(["Pizza", "Drinks"], "drink") == "Drinks"
    assert match_category(["Pizza", "Drinks"], "") is None
