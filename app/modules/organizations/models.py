"""
Models for organizations and their gyms.

El core de facturación sólo lee estas tablas (moneda y uso actual);
su CRUD vive en otros módulos del sistema.
"""
from sqlalchemy import Column, String, Boolean, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from app.database.database import Base
from app.common.mixins import TimestampMixin, SoftDeleteMixin
import uuid
from enum import Enum


class CollaboratorStatus(str, Enum):
    """Estados de colaborador."""
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


class Organization(Base, TimestampMixin, SoftDeleteMixin):
    """Organización (tenant) dueña de uno o más gimnasios."""
    __tablename__ = "organizations"

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    name = Column(String(150), nullable=False)
    currency = Column(String(3), nullable=False, default="PEN")
    is_active = Column(Boolean, default=True, nullable=False)

    gyms = relationship("Gym", back_populates="organization")

    def __str__(self):
        return f"{self.name} ({self.currency})"


class Gym(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "gyms"

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(150), nullable=False)

    organization = relationship("Organization", back_populates="gyms")
    clients = relationship("GymClient", back_populates="gym")
    collaborators = relationship("Collaborator", back_populates="gym")


class GymClient(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "gym_clients"

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    gym_id = Column(Uuid(as_uuid=True), ForeignKey("gyms.id"), nullable=False, index=True)
    name = Column(String(150), nullable=False)

    gym = relationship("Gym", back_populates="clients")


class Collaborator(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "collaborators"

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    gym_id = Column(Uuid(as_uuid=True), ForeignKey("gyms.id"), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=True), nullable=True)
    status = Column(String(20), nullable=False, default=CollaboratorStatus.ACTIVE.value)

    gym = relationship("Gym", back_populates="collaborators")
