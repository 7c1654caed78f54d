"""Domain events published for external consumers (notifications, audit)."""
import logging

from blinker import Namespace

logger = logging.getLogger(__name__)

billing_signals = Namespace()

subscription_created = billing_signals.signal("subscription-created")
subscription_updated = billing_signals.signal("subscription-updated")
subscription_canceled = billing_signals.signal("subscription-canceled")
subscription_past_due = billing_signals.signal("subscription-past-due")
subscription_recovered = billing_signals.signal("subscription-recovered")
proration_recorded = billing_signals.signal("proration-recorded")
invoice_recorded = billing_signals.signal("invoice-recorded")
purchase_recorded = billing_signals.signal("purchase-recorded")
webhook_dead_lettered = billing_signals.signal("webhook-dead-lettered")


def emit(signal, sender, **payload):
    logger.info("billing.%s", signal.name, extra={"domain_event": signal.name, **payload})
    signal.send(sender, **payload)
