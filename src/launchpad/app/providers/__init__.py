"""Notification providers for provisioning sessions."""

from .webhook_notifier import WebhookDeliveryError, WebhookNotifier

__all__ = [
    "WebhookDeliveryError",
    "WebhookNotifier",
]
