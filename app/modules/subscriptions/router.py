"""
Router para suscripciones de organizaciones

Endpoints REST sobre el ciclo de vida de la suscripción:
- Upgrade / downgrade con prorrateo
- Renovación
- Cancelación inmediata o al final del período
- Vista previa de prorrateo, resumen del período e historial

Las fechas se reciben y devuelven en ISO-8601; los montos viajan como
strings decimales junto con su moneda.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.dependencies.dbDependecies import db_dependency
from app.dependencies.userDependencies import actor_dependency
from .service import SubscriptionTransitionService
from .schemas import (
    PlanChangeRequest, RenewalRequest, CancellationRequest,
    TransitionResult, CancellationResult, ProrationCalculation,
    SubscriptionPeriod, OperationList
)

router = APIRouter(
    prefix="/organizations/{organization_id}/subscription",
    tags=["Subscriptions"],
    responses={404: {"description": "Not found"}}
)


def get_transition_service(db: db_dependency) -> SubscriptionTransitionService:
    return SubscriptionTransitionService(db)


TransitionService = Depends(get_transition_service)


@router.post("/upgrade", response_model=TransitionResult)
def upgrade_subscription(
    organization_id: UUID,
    request: PlanChangeRequest,
    actor_id: actor_dependency,
    service: SubscriptionTransitionService = TransitionService
):
    """
    Cambiar a un plan superior

    - **new_plan_id**: Plan destino
    - **immediate**: Si es falso, el cambio se programa para el fin del período actual
      y el plan vigente se mantiene hasta entonces
    - **proration_enabled**: Calcular crédito/cargo por los días restantes
    """
    return service.upgrade(organization_id, request, actor_id)


@router.post("/downgrade", response_model=TransitionResult)
def downgrade_subscription(
    organization_id: UUID,
    request: PlanChangeRequest,
    actor_id: actor_dependency,
    service: SubscriptionTransitionService = TransitionService
):
    """
    Cambiar a un plan inferior

    Se rechaza si los gimnasios, clientes o colaboradores actuales exceden
    los límites del nuevo plan; el error lista todas las violaciones.
    """
    return service.downgrade(organization_id, request, actor_id)


@router.post("/renew", response_model=TransitionResult)
def renew_subscription(
    organization_id: UUID,
    request: RenewalRequest,
    actor_id: actor_dependency,
    service: SubscriptionTransitionService = TransitionService
):
    """Renovar la suscripción (por defecto, el mismo plan desde el fin del período)."""
    return service.renew(organization_id, request, actor_id)


@router.post("/cancel", response_model=CancellationResult)
def cancel_subscription(
    organization_id: UUID,
    request: CancellationRequest,
    actor_id: actor_dependency,
    service: SubscriptionTransitionService = TransitionService
):
    """Cancelar la suscripción."""
    return service.cancel(organization_id, request, actor_id)


@router.get("/proration", response_model=ProrationCalculation)
def preview_proration(
    organization_id: UUID,
    new_plan_id: UUID = Query(..., description="Plan destino"),
    change_date: Optional[datetime] = Query(None, description="Fecha del cambio (ISO-8601)"),
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    service: SubscriptionTransitionService = TransitionService
):
    """Calcular el prorrateo de un cambio de plan sin aplicarlo."""
    return service.calculate_proration(organization_id, new_plan_id, change_date, currency)


@router.get("/period", response_model=SubscriptionPeriod)
def get_subscription_period(
    organization_id: UUID,
    service: SubscriptionTransitionService = TransitionService
):
    return service.get_subscription_period(organization_id)


@router.get("/operations", response_model=OperationList, status_code=status.HTTP_200_OK)
def list_subscription_operations(
    organization_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: SubscriptionTransitionService = TransitionService
):
    """Historial de operaciones, más recientes primero."""
    return service.list_operations(organization_id, limit=limit, offset=offset)
