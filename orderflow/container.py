from __future__ import annotations

from dataclasses import dataclass

import httpx

from orderflow.core.config import (
    HTTP_TIMEOUT_SECONDS,
    META_API_VERSION,
    META_APP_ID,
    META_APP_SECRET,
    META_GRAPH_BASE_URL,
)
from orderflow.fsm.engine import ConversationEngine
from orderflow.payments.broker import PaymentLinkBroker
from orderflow.payments.registry import PaymentAdapterRegistry, build_default_registry
from orderflow.services.encryption import EncryptionService
from orderflow.services.inbound import InboundMessageGateway
from orderflow.services.sessions import SessionStore
from orderflow.whatsapp.gateway import TenantMessagingGateway
from orderflow.whatsapp.graph_client import GraphApiClient


@dataclass
class Container:
    http: httpx.Client
    encryption: EncryptionService
    graph: GraphApiClient
    gateway: TenantMessagingGateway
    payments: PaymentAdapterRegistry
    broker: PaymentLinkBroker
    sessions: SessionStore
    engine: ConversationEngine
    inbound: InboundMessageGateway

    def close(self) -> None:
        self.http.close()


def build_container(
    *,
    http: httpx.Client | None = None,
    encryption: EncryptionService | None = None,
) -> Container:
    """Wires the service graph once per process; tests pass a mocked transport."""
    http = http or httpx.Client(timeout=HTTP_TIMEOUT_SECONDS)
    encryption = encryption or EncryptionService.from_config()
    graph = GraphApiClient(
        http,
        base_url=META_GRAPH_BASE_URL,
        api_version=META_API_VERSION,
        app_id=META_APP_ID,
        app_secret=META_APP_SECRET,
    )
    gateway = TenantMessagingGateway(graph, encryption)
    payments = build_default_registry(http)
    broker = PaymentLinkBroker(payments, encryption)
    sessions = SessionStore()
    engine = ConversationEngine(gateway=gateway, broker=broker, sessions=sessions)
    return Container(
        http=http,
        encryption=encryption,
        graph=graph,
        gateway=gateway,
        payments=payments,
        broker=broker,
        sessions=sessions,
        engine=engine,
        inbound=InboundMessageGateway(engine),
    )
