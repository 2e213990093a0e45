"""
Read operations over organizations used by the billing core.
"""
from typing import Optional
from uuid import UUID
from sqlalchemy.orm import Session
from sqlalchemy import select, and_, func

from .models import Organization, Gym, GymClient, Collaborator, CollaboratorStatus
from .schemas import OrganizationUsage


def get_organization(db: Session, organization_id: UUID, for_update: bool = False) -> Optional[Organization]:
    """
    Obtener una organización no eliminada.

    Con `for_update` la fila de la organización queda bloqueada hasta el fin
    de la transacción; las transiciones de suscripción la usan como cerrojo
    por organización.
    """
    query = select(Organization).where(
        and_(
            Organization.id == organization_id,
            Organization.deleted_at.is_(None)
        )
    )
    if for_update:
        query = query.with_for_update()

    return db.execute(query).scalar_one_or_none()


def count_gyms(db: Session, organization_id: UUID) -> int:
    return db.execute(
        select(func.count(Gym.id)).where(
            and_(
                Gym.organization_id == organization_id,
                Gym.deleted_at.is_(None)
            )
        )
    ).scalar_one()


def count_clients(db: Session, organization_id: UUID) -> int:
    """Clientes vivos en gimnasios vivos de la organización."""
    return db.execute(
        select(func.count(GymClient.id))
        .join(Gym, Gym.id == GymClient.gym_id)
        .where(
            and_(
                Gym.organization_id == organization_id,
                Gym.deleted_at.is_(None),
                GymClient.deleted_at.is_(None)
            )
        )
    ).scalar_one()


def count_active_collaborators(db: Session, organization_id: UUID) -> int:
    """Colaboradores activos en gimnasios vivos de la organización."""
    return db.execute(
        select(func.count(Collaborator.id))
        .join(Gym, Gym.id == Collaborator.gym_id)
        .where(
            and_(
                Gym.organization_id == organization_id,
                Gym.deleted_at.is_(None),
                Collaborator.deleted_at.is_(None),
                Collaborator.status == CollaboratorStatus.ACTIVE.value
            )
        )
    ).scalar_one()


def get_organization_usage(db: Session, organization_id: UUID) -> OrganizationUsage:
    """Uso actual de la organización para validar límites de plan."""
    return OrganizationUsage(
        gyms=count_gyms(db, organization_id),
        clients=count_clients(db, organization_id),
        collaborators=count_active_collaborators(db, organization_id),
    )
