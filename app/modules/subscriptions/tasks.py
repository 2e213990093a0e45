"""
Tareas de Celery para la entrega de eventos de suscripción.
"""
import logging
from typing import Any, Dict

from app.core.celery import celery_app
from .events import AuditLogger, SubscriptionEvent

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def deliver_subscription_event(self, payload: Dict[str, Any]):
    """
    Entrega un evento de suscripción confirmado al sink de auditoría.
    """
    try:
        event = SubscriptionEvent.model_validate(payload)
        entry = AuditLogger().record(event)
        return {"status": "success", "action": entry["action"], "operation_id": entry["resource_id"]}

    except Exception as exc:
        logger.error(f"Subscription event delivery failed: {str(exc)}")

        # Retry with exponential backoff
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))

        return {"status": "failed", "error": str(exc)}
