from campusmarket.models.user import User
from campusmarket.models.product import Product
from campusmarket.models.order import Order, OrderItem
from campusmarket.models.order_transition import OrderTransition
from campusmarket.models.transaction import Transaction
from campusmarket.models.dispute import Dispute, DisputeMessage
from campusmarket.models.penalty import Penalty
from campusmarket.models.notification import Notification
from campusmarket.models.platform_event import PlatformEvent
from campusmarket.models.reconciliation_report import ReconciliationReport

__all__ = [
    "User",
    "Product",
    "Order",
    "OrderItem",
    "OrderTransition",
    "Transaction",
    "Dispute",
    "DisputeMessage",
    "Penalty",
    "Notification",
    "PlatformEvent",
    "ReconciliationReport",
]
