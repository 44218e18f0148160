from app.schemas.order import OrderNotification
from app.schemas.webhook import WebhookMessage, WebhookResponse, WhatsAppWebhookPayload

__all__ = ["OrderNotification", "WebhookMessage", "WebhookResponse", "WhatsAppWebhookPayload"]
