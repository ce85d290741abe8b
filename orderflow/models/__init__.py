from orderflow.models.catalog import Product, VariantGroup, VariantOption
from orderflow.models.conversation import ConversationSession
from orderflow.models.customer import Customer
from orderflow.models.message_log import MessageLog
from orderflow.models.messaging_account import TenantMessagingAccount
from orderflow.models.order import Order
from orderflow.models.order_item import OrderItem
from orderflow.models.order_sequence import OrderSequence
from orderflow.models.payment_provider import PaymentProviderConfig
from orderflow.models.processed_message import ProcessedMessage
from orderflow.models.tenant import Tenant

__all__ = [
    "ConversationSession",
    "Customer",
    "MessageLog",
    "Order",
    "OrderItem",
    "OrderSequence",
    "PaymentProviderConfig",
    "ProcessedMessage",
    "Product",
    "Tenant",
    "TenantMessagingAccount",
    "VariantGroup",
    "VariantOption",
]
