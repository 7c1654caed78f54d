from .subscription import Subscription
from .subscription_item import SubscriptionItem
from .invoice import Invoice
from .payment_method import PaymentMethod
from .webhook_event import WebhookEvent
from .billing_customer import BillingCustomer
from .org_membership import OrgMembership
from .purchase import Purchase

__all__ = [
    "Subscription",
    "SubscriptionItem",
    "Invoice",
    "PaymentMethod",
    "WebhookEvent",
    "BillingCustomer",
    "OrgMembership",
    "Purchase",
]
