import json
import time
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from jose import jwt

from orderflow import deps
from orderflow.container import build_container
from orderflow.core.database import get_db
from orderflow.deps import Identity, get_current_identity
from orderflow.fsm.context import CartLine, CompletedContext, dump_cart, dump_context
from orderflow.models.conversation import ConversationSession
from orderflow.models.message_log import MessageLog
from orderflow.models.order import Order
from orderflow.models.processed_message import ProcessedMessage
from orderflow.payments.base import hmac_sha256_hex
from orderflow.payments.configs import create_provider_config
from orderflow.routers.meta import router as meta_router
from orderflow.routers.orders import router as orders_router
from orderflow.routers.payments import router as payments_router
from orderflow.routers.webhook import router as webhook_router
from orderflow.routers.whatsapp import router as whatsapp_router
from orderflow.services.customers import get_or_create_customer
from orderflow.services.event_bus import event_bus
from orderflow.services.orders import materialize
from tests.fixtures_data import (
    CUSTOMER_PHONE,
    PHONE_NUMBER_ID,
    build_encryption,
    build_session_factory,
    cloud_text_payload,
    seed_account,
    seed_menu,
    seed_tenant,
)


class GraphStub:
    def __init__(self):
        self.messages = []

    def __call__(self, request):
        if request.url.path.endswith("/messages"):
            body = json.loads(request.content)
            self.messages.append(body)
            return httpx.Response(200, json={"messages": [{"id": f"wamid.out.{len(self.messages)}"}]})
        return httpx.Response(404, json={"error": {"message": "Unknown path", "code": 100}})


def _build_client(*, identity=Identity(user_id="owner-1")):
    db = build_session_factory()()
    seed_tenant(db)
    seed_tenant(db, tenant_id=2, owner_id="owner-2")
    products = seed_menu(db)
    encryption = build_encryption()
    seed_account(db, encryption)

    graph = GraphStub()
    container = build_container(http=httpx.Client(transport=httpx.MockTransport(graph)), encryption=encryption)

    app = FastAPI()
    app.include_router(webhook_router)
    app.include_router(meta_router)
    app.include_router(orders_router)
    app.include_router(payments_router)
    app.include_router(whatsapp_router)
    app.state.container = container
    app.dependency_overrides[get_db] = lambda: db
    if identity is not None:
        app.dependency_overrides[get_current_identity] = lambda: identity

    client = TestClient(app)
    client.db = db
    client.graph = graph
    client.container = container
    client.products = products
    return client


def _pending_order(db, *, tenant_id=1, phone=CUSTOMER_PHONE):
    customer = get_or_create_customer(db, tenant_id=tenant_id, phone=phone, name="Dana")
    now = datetime.now(timezone.utc)
    session = ConversationSession(
        tenant_id=tenant_id,
        customer_id=customer.id,
        phone=phone,
        current_step="completed",
        cart=dump_cart([CartLine(product_id=3, name="Cola", quantity=2, unit_base_price_cents=800)]),
        last_message_at=now,
        expires_at=now + timedelta(hours=24),
    )
    db.add(session)
    db.flush()
    order = materialize(db, session)
    session.context = dump_context(CompletedContext(order_id=order.id, order_number=order.order_number))
    db.commit()
    return order


def _stripe_provider(client):
    create_provider_config(
        client.db,
        client.container.encryption,
        tenant_id=1,
        provider="stripe",
        provider_name="Stripe",
        credentials={"test_api_key": "sk_test_123"},
        webhook_secret="whsec_test",
    )


def _signed_stripe_event(event_type, order_id, **fields):
    body = json.dumps(
        {"type": event_type, "data": {"object": {"metadata": {"order_id": str(order_id)}, **fields}}}
    ).encode()
    timestamp = int(time.time())
    signature = hmac_sha256_hex("whsec_test", f"{timestamp}.".encode() + body)
    return body, {"Content-Type": "application/json", "Stripe-Signature": f"t={timestamp},v1={signature}"}


@pytest.fixture
def paid_events():
    captured = []
    event_bus.subscribe("order.paid", captured.append)
    yield captured
    event_bus.clear()


def test_webhook_verification_accepts_global_and_tenant_tokens():
    client = _build_client()
    client.container.inbound.verify_token = "global-token"

    global_ok = client.get(
        "/webhooks/whatsapp",
        params={"hub.mode": "subscribe", "hub.verify_token": "global-token", "hub.challenge": "123"},
    )
    tenant_ok = client.get(
        "/webhooks/whatsapp",
        params={"hub.mode": "subscribe", "hub.verify_token": "tenant-verify-token", "hub.challenge": "456"},
    )
    rejected = client.get(
        "/webhooks/whatsapp",
        params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "789"},
    )

    assert global_ok.status_code == 200
    assert global_ok.text == "123"
    assert tenant_ok.text == "456"
    assert rejected.status_code == 403


def test_inbound_message_runs_a_turn_and_replays_are_skipped():
    client = _build_client()
    payload = cloud_text_payload(message_id="wamid.in.1", text="hi")

    first = client.post("/webhooks/whatsapp", json=payload)
    sent_after_first = len(client.graph.messages)
    replay = client.post("/webhooks/whatsapp", json=payload)

    assert first.status_code == 200
    assert first.json()["processed"] == 1
    assert replay.json()["duplicates"] == 1
    assert sent_after_first >= 1
    assert len(client.graph.messages) == sent_after_first
    assert client.graph.messages[0]["to"] == CUSTOMER_PHONE
    assert client.db.get(ProcessedMessage, "wamid.in.1") is not None
    session = client.db.query(ConversationSession).one()
    assert session.current_step == "category_selection"
    assert client.db.query(MessageLog).filter(MessageLog.direction == "in").count() == 1


def test_webhook_always_acknowledges():
    client = _build_client()

    garbage = client.post("/webhooks/whatsapp", content=b"not json", headers={"Content-Type": "application/json"})
    unknown_line = client.post(
        "/webhooks/whatsapp",
        json=cloud_text_payload(message_id="wamid.in.9", text="hi", phone_number_id="999"),
    )
    other_object = client.post("/webhooks/whatsapp", json={"object": "page", "entry": []})

    assert garbage.status_code == 200
    assert garbage.json() == {"status": "ok"}
    assert unknown_line.status_code == 200
    assert unknown_line.json()["dropped"] == 1
    assert other_object.json()["received"] == 0
    assert client.graph.messages == []


def test_orders_are_scoped_to_the_callers_tenant():
    client = _build_client()
    own = _pending_order(client.db)
    foreign = _pending_order(client.db, tenant_id=2, phone="972509999999")

    listing = client.get("/api/orders")
    detail = client.get(f"/api/orders/{own.id}")
    cross_tenant = client.get(f"/api/orders/{foreign.id}")

    assert listing.status_code == 200
    assert [order["id"] for order in listing.json()["orders"]] == [own.id]
    assert listing.json()["pagination"]["total"] == 1
    assert detail.json()["order_number"] == own.order_number
    assert detail.json()["total_cents"] == 1600
    assert cross_tenant.status_code == 404


def test_manual_order_and_status_update():
    client = _build_client()
    margherita = client.products["margherita"]

    created = client.post(
        "/api/orders",
        json={
            "customer_phone": "972501111111",
            "customer_name": "Avi",
            "items": [{"product_id": margherita.id, "quantity": 2, "variants": ["Large"]}],
            "notes": "Phone order",
        },
    )
    order_id = created.json()["id"]
    updated = client.put(f"/api/orders/{order_id}", json={"status": "preparing", "note": "In the oven"})
    invalid = client.put(f"/api/orders/{order_id}", json={"status": "teleported"})

    assert created.status_code == 201
    assert created.json()["source"] == "manual"
    assert created.json()["total_cents"] == 11000
    assert created.json()["items"][0]["variants"] == ["Large"]
    assert updated.json()["status"] == "preparing"
    assert updated.json()["timeline"][-1]["actor"] == "owner-1"
    assert invalid.status_code == 400


def test_exchange_token_requires_identity_and_ownership():
    anonymous = _build_client(identity=None)
    stranger = _build_client(identity=Identity(user_id="owner-2"))

    missing = anonymous.post("/api/meta/exchange-token", json={"code": "c", "tenant_id": 1})
    forbidden = stranger.post("/api/meta/exchange-token", json={"code": "c", "tenant_id": 1})

    assert missing.status_code == 401
    assert forbidden.status_code == 403


def test_bearer_token_resolves_tenant(monkeypatch):
    monkeypatch.setattr(deps, "JWT_SECRET_KEY", "test-secret")
    client = _build_client(identity=None)
    token = jwt.encode({"sub": "owner-1", "tenant_id": 1}, "test-secret", algorithm="HS256")

    status = client.get("/api/whatsapp/status", headers={"Authorization": f"Bearer {token}"})
    bad = client.get("/api/whatsapp/status", headers={"Authorization": "Bearer not-a-token"})

    assert status.status_code == 200
    assert status.json()["connected"] is True
    assert status.json()["phone_number_id"] == PHONE_NUMBER_ID
    assert bad.status_code == 401


def test_signed_payment_webhook_marks_order_paid(paid_events):
    client = _build_client()
    _stripe_provider(client)
    order = _pending_order(client.db)
    body, headers = _signed_stripe_event(
        "checkout.session.completed", order.id, payment_status="paid", payment_intent="pi_42"
    )
    timestamp = int(time.time())

    forged = client.post(
        "/api/payments/webhook/1/stripe",
        content=body,
        headers={**headers, "Stripe-Signature": f"t={timestamp},v1={'0' * 64}"},
    )
    paid = client.post("/api/payments/webhook/1/stripe", content=body, headers=headers)
    again = client.post("/api/payments/webhook/1/stripe", content=body, headers=headers)

    assert forged.status_code == 401
    assert paid.status_code == 200
    assert paid.json() == {"status": "paid", "order_id": order.id}
    assert again.json() == {"status": "already_paid"}
    client.db.expire_all()
    stored = client.db.get(Order, order.id)
    assert stored.payment_status == "paid"
    assert stored.status == "confirmed"
    assert stored.payment_transaction_id == "pi_42"
    assert client.db.query(ConversationSession).count() == 0
    assert [event["order_id"] for event in paid_events] == [order.id]


def test_paying_a_manual_order_keeps_the_customers_open_cart(paid_events):
    client = _build_client()
    _stripe_provider(client)
    created = client.post(
        "/api/orders",
        json={"customer_phone": CUSTOMER_PHONE, "items": [{"product_id": client.products["cola"].id, "quantity": 1}]},
    )
    now = datetime.now(timezone.utc)
    client.db.add(
        ConversationSession(
            tenant_id=1,
            phone=CUSTOMER_PHONE,
            current_step="cart",
            cart=dump_cart([CartLine(product_id=3, name="Cola", quantity=1, unit_base_price_cents=800)]),
            last_message_at=now,
            expires_at=now + timedelta(hours=24),
        )
    )
    client.db.commit()
    body, headers = _signed_stripe_event(
        "checkout.session.completed", created.json()["id"], payment_status="paid", payment_intent="pi_7"
    )

    paid = client.post("/api/payments/webhook/1/stripe", content=body, headers=headers)

    assert paid.json()["status"] == "paid"
    client.db.expire_all()
    session = client.db.query(ConversationSession).one()
    assert session.current_step == "cart"
    assert len(session.cart) == 1


def test_expired_checkout_is_logged_and_order_stays_pending(paid_events):
    client = _build_client()
    _stripe_provider(client)
    order = _pending_order(client.db)
    body, headers = _signed_stripe_event("checkout.session.expired", order.id, id="cs_expired")

    response = client.post("/api/payments/webhook/1/stripe", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"status": "failed"}
    client.db.expire_all()
    assert client.db.get(Order, order.id).payment_status == "pending"
    assert client.db.query(ConversationSession).count() == 1
    assert paid_events == []


def test_payment_webhook_for_unconfigured_provider_is_404():
    client = _build_client()

    response = client.post("/api/payments/webhook/1/paypal", json={})

    assert response.status_code == 404


def test_provider_config_api_masks_secrets():
    client = _build_client()

    created = client.post(
        "/api/payments/providers",
        json={
            "provider": "tranzila",
            "provider_name": "Tranzila",
            "credentials": {"terminal_name": "pizzaplace"},
            "webhook_secret": "secret-abcd",
        },
    )
    unsupported = client.post(
        "/api/payments/providers",
        json={"provider": "bitcoin", "provider_name": "BTC", "credentials": {"wallet": "x"}},
    )
    listing = client.get("/api/payments/providers")

    assert created.status_code == 201
    assert created.json()["is_primary"] is True
    assert created.json()["webhook_secret"] == "****abcd"
    assert "credentials" not in created.json()
    assert unsupported.status_code == 400
    assert [provider["provider"] for provider in listing.json()["providers"]] == ["tranzila"]
