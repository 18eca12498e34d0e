"""
Database models - import all models here so Alembic can discover them.
"""
from src.models.order import Order
from src.models.audit_entry import AuditEntry
from src.models.webhook_event import WebhookEvent
from src.models.auth_token import AuthToken

__all__ = [
    "Order",
    "AuditEntry",
    "WebhookEvent",
    "AuthToken",
]
