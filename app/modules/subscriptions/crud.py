"""
CRUD operations for subscription billing.

Las funciones de escritura sólo hacen flush; el commit lo decide el servicio
que ejecuta la transición atómica.
"""
from typing import List, Optional
from uuid import UUID
from datetime import datetime
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import select, update, and_, desc, func

from .models import (
    SubscriptionPlan, SubscriptionOrganization, SubscriptionOperation,
    SubscriptionCancellation, SubscriptionStatus
)


# ===== PLAN CRUD =====

def get_plan(db: Session, plan_id: UUID) -> Optional[SubscriptionPlan]:
    """Obtener un plan activo y no eliminado por ID."""
    return db.execute(
        select(SubscriptionPlan).where(
            and_(
                SubscriptionPlan.id == plan_id,
                SubscriptionPlan.is_active == True,
                SubscriptionPlan.deleted_at.is_(None)
            )
        )
    ).scalar_one_or_none()


def get_plan_by_name(db: Session, name: str) -> Optional[SubscriptionPlan]:
    return db.execute(
        select(SubscriptionPlan).where(SubscriptionPlan.name == name)
    ).scalar_one_or_none()


def get_plans(db: Session, public_only: bool = True) -> List[SubscriptionPlan]:
    """Catálogo de planes activos."""
    conditions = [SubscriptionPlan.is_active == True, SubscriptionPlan.deleted_at.is_(None)]
    if public_only:
        conditions.append(SubscriptionPlan.is_public == True)

    return db.execute(
        select(SubscriptionPlan)
        .where(and_(*conditions))
        .order_by(SubscriptionPlan.name)
    ).scalars().all()


# ===== SUBSCRIPTION CRUD =====

def get_active_subscription(
    db: Session,
    organization_id: UUID,
    for_update: bool = False
) -> Optional[SubscriptionOrganization]:
    """
    Instancia activa de la organización con su plan cargado.

    Con `for_update` la fila queda bloqueada hasta el fin de la transacción
    (SELECT ... FOR UPDATE en PostgreSQL; SQLite lo ignora).
    """
    query = (
        select(SubscriptionOrganization)
        .options(joinedload(SubscriptionOrganization.plan))
        .where(
            and_(
                SubscriptionOrganization.organization_id == organization_id,
                SubscriptionOrganization.is_active == True,
                SubscriptionOrganization.deleted_at.is_(None)
            )
        )
    )
    if for_update:
        query = query.with_for_update(of=SubscriptionOrganization).execution_options(populate_existing=True)

    return db.execute(query).unique().scalar_one_or_none()


def get_subscription(db: Session, subscription_id: UUID) -> Optional[SubscriptionOrganization]:
    return db.execute(
        select(SubscriptionOrganization)
        .options(joinedload(SubscriptionOrganization.plan))
        .where(SubscriptionOrganization.id == subscription_id)
    ).unique().scalar_one_or_none()


def create_subscription(
    db: Session,
    organization_id: UUID,
    plan_id: UUID,
    start_date: datetime,
    end_date: datetime,
    user_id: Optional[UUID] = None,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
) -> SubscriptionOrganization:
    """
    Crear una nueva instancia.

    Sólo `ACTIVE` crea la instancia vigente; cualquier otro estado (p. ej. un
    cambio de plan programado) se guarda con `is_active=False`.
    """
    subscription = SubscriptionOrganization(
        organization_id=organization_id,
        subscription_plan_id=plan_id,
        status=status.value,
        start_date=start_date,
        end_date=end_date,
        is_active=status == SubscriptionStatus.ACTIVE,
        created_by_user_id=user_id,
        updated_by_user_id=user_id
    )
    db.add(subscription)
    db.flush()
    return subscription


def deactivate_subscription(
    db: Session,
    subscription_id: UUID,
    status: SubscriptionStatus = SubscriptionStatus.EXPIRED,
    end_date: Optional[datetime] = None,
    user_id: Optional[UUID] = None
) -> int:
    """
    Desactivar una instancia sólo si sigue activa.

    Devuelve el número de filas afectadas: 0 significa que otra transacción
    ya la reemplazó.
    """
    values = {
        "is_active": False,
        "status": status.value,
        "updated_by_user_id": user_id,
    }
    if end_date is not None:
        values["end_date"] = end_date

    result = db.execute(
        update(SubscriptionOrganization)
        .where(
            and_(
                SubscriptionOrganization.id == subscription_id,
                SubscriptionOrganization.is_active == True
            )
        )
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


def touch_active_subscription(db: Session, subscription_id: UUID, user_id: Optional[UUID] = None) -> int:
    """Marca la instancia activa como modificada sin cambiar su período."""
    result = db.execute(
        update(SubscriptionOrganization)
        .where(
            and_(
                SubscriptionOrganization.id == subscription_id,
                SubscriptionOrganization.is_active == True
            )
        )
        .values(updated_by_user_id=user_id)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


def get_pending_subscription(db: Session, organization_id: UUID) -> Optional[SubscriptionOrganization]:
    """Cambio de plan programado para el fin del período actual, si existe."""
    return db.execute(
        select(SubscriptionOrganization)
        .options(joinedload(SubscriptionOrganization.plan))
        .where(
            and_(
                SubscriptionOrganization.organization_id == organization_id,
                SubscriptionOrganization.status == SubscriptionStatus.PENDING_UPGRADE.value,
                SubscriptionOrganization.is_active == False,
                SubscriptionOrganization.deleted_at.is_(None)
            )
        )
        .order_by(desc(SubscriptionOrganization.start_date))
    ).unique().scalars().first()


def discard_pending_subscriptions(db: Session, organization_id: UUID, user_id: Optional[UUID] = None) -> int:
    """Descarta los cambios programados; otra transición los reemplaza."""
    result = db.execute(
        update(SubscriptionOrganization)
        .where(
            and_(
                SubscriptionOrganization.organization_id == organization_id,
                SubscriptionOrganization.status == SubscriptionStatus.PENDING_UPGRADE.value,
                SubscriptionOrganization.is_active == False
            )
        )
        .values(status=SubscriptionStatus.INACTIVE.value, updated_by_user_id=user_id)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


# ===== OPERATION HISTORY =====

def create_operation(db: Session, **fields) -> SubscriptionOperation:
    operation = SubscriptionOperation(**fields)
    db.add(operation)
    db.flush()
    return operation


def create_cancellation(db: Session, **fields) -> SubscriptionCancellation:
    cancellation = SubscriptionCancellation(**fields)
    db.add(cancellation)
    db.flush()
    return cancellation


def get_operation_by_idempotency_key(
    db: Session,
    organization_id: UUID,
    idempotency_key: str
) -> Optional[SubscriptionOperation]:
    return db.execute(
        select(SubscriptionOperation).where(
            and_(
                SubscriptionOperation.organization_id == organization_id,
                SubscriptionOperation.idempotency_key == idempotency_key
            )
        )
    ).scalar_one_or_none()


def get_operations(
    db: Session,
    organization_id: UUID,
    limit: int = 50,
    offset: int = 0
) -> List[SubscriptionOperation]:
    """Historial de operaciones, más recientes primero."""
    return db.execute(
        select(SubscriptionOperation)
        .where(SubscriptionOperation.organization_id == organization_id)
        .order_by(desc(SubscriptionOperation.created_at), desc(SubscriptionOperation.effective_date))
        .offset(offset)
        .limit(limit)
    ).scalars().all()


def count_operations(db: Session, organization_id: UUID) -> int:
    return db.execute(
        select(func.count(SubscriptionOperation.id))
        .where(SubscriptionOperation.organization_id == organization_id)
    ).scalar_one()


def get_cancellation_by_operation(db: Session, operation_id: UUID) -> Optional[SubscriptionCancellation]:
    return db.execute(
        select(SubscriptionCancellation).where(SubscriptionCancellation.operation_id == operation_id)
    ).scalar_one_or_none()
