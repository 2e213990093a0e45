"""
Eventos de auditoría de suscripciones.

Los eventos se construyen dentro de la transacción pero se publican sólo
después del commit; un fallo al publicar se registra y no revierte nada.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.core.config import settings

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = ("password", "token", "secret", "card", "cvv", "api_key")


class SubscriptionAction(str, Enum):
    SUBSCRIPTION_UPGRADE = "SUBSCRIPTION_UPGRADE"
    SUBSCRIPTION_DOWNGRADE = "SUBSCRIPTION_DOWNGRADE"
    SUBSCRIPTION_RENEWAL = "SUBSCRIPTION_RENEWAL"
    SUBSCRIPTION_CANCELLATION = "SUBSCRIPTION_CANCELLATION"


class SubscriptionEvent(BaseModel):
    """Evento de auditoría de una transición confirmada."""
    action: SubscriptionAction
    organization_id: UUID
    actor_id: Optional[UUID] = None
    operation_id: UUID
    occurred_at: datetime
    data: Dict[str, Any] = Field(default_factory=dict)


def sanitize(data: Dict[str, Any]) -> Dict[str, Any]:
    """Enmascara claves sensibles (recursivo)."""
    sanitized = {}
    for key, value in data.items():
        if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
            sanitized[key] = "***"
        elif isinstance(value, dict):
            sanitized[key] = sanitize(value)
        else:
            sanitized[key] = value
    return sanitized


class AuditLogger:
    """Sink de auditoría: escribe el evento en el log de la aplicación."""

    def __init__(self, audit_logger: Optional[logging.Logger] = None):
        self.logger = audit_logger or logger

    def record(self, event: SubscriptionEvent) -> Dict[str, Any]:
        entry = {
            "action": event.action.value,
            "resource_type": "subscription_operation",
            "resource_id": str(event.operation_id),
            "organization_id": str(event.organization_id),
            "user_id": str(event.actor_id) if event.actor_id else None,
            "occurred_at": event.occurred_at.isoformat(),
            "details": sanitize(event.data),
        }
        self.logger.info(
            f"AUDIT: {entry['action']} subscription_operation [{entry['organization_id']}] "
            f"by user {entry['user_id'] or 'system'}",
            extra={"audit": entry}
        )
        return entry


class EventPublisher:
    """Interfaz de publicación; `publish` se llama después del commit."""

    def publish(self, event: SubscriptionEvent) -> None:
        raise NotImplementedError


class InlineEventPublisher(EventPublisher):
    def __init__(self, audit_logger: Optional[AuditLogger] = None):
        self.audit_logger = audit_logger or AuditLogger()

    def publish(self, event: SubscriptionEvent) -> None:
        self.audit_logger.record(event)


class CeleryEventPublisher(EventPublisher):
    """Encola la entrega del evento en Celery."""

    def publish(self, event: SubscriptionEvent) -> None:
        from .tasks import deliver_subscription_event

        deliver_subscription_event.delay(event.model_dump(mode="json"))
        logger.debug(f"Evento {event.action.value} encolado para {event.organization_id}")


def get_event_publisher() -> EventPublisher:
    if settings.SUBSCRIPTION_EVENTS_ASYNC:
        return CeleryEventPublisher()
    return InlineEventPublisher()
