"""
Models for subscription billing.
"""
from sqlalchemy import (
    Column, String, Boolean, DateTime, Text, Integer, DECIMAL, ForeignKey, JSON, Uuid,
    Index, UniqueConstraint, text
)
from sqlalchemy.orm import relationship
from app.database.database import Base
from app.common.mixins import TimestampMixin, AuditMixin, SoftDeleteMixin
import uuid
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict


class SubscriptionStatus(str, Enum):
    """Estados de una instancia de suscripción."""
    ACTIVE = "active"
    EXPIRED = "expired"
    PAUSED = "paused"
    PENDING_UPGRADE = "pending_upgrade"
    INACTIVE = "inactive"


class DurationPeriod(str, Enum):
    """Unidad de duración de un plan."""
    DAY = "DAY"
    MONTH = "MONTH"


class BillingFrequency(str, Enum):
    """Frecuencia de facturación del plan."""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


class SubscriptionOperationType(str, Enum):
    """Tipos de transición registrados en el historial."""
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    RENEWAL = "renewal"
    CANCELLATION = "cancellation"


class CancellationReason(str, Enum):
    """Motivos de cancelación."""
    COST_TOO_HIGH = "cost_too_high"
    FEATURE_LIMITATIONS = "feature_limitations"
    SWITCHING_PROVIDERS = "switching_providers"
    BUSINESS_CLOSURE = "business_closure"
    TECHNICAL_ISSUES = "technical_issues"
    POOR_SUPPORT = "poor_support"
    OTHER = "other"


class SubscriptionPlan(Base, TimestampMixin, SoftDeleteMixin):
    """
    Plan del catálogo.
    Los precios se guardan por moneda como strings decimales ({"PEN": "99.00"}).
    """
    __tablename__ = "subscription_plans"

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)

    # Precios por moneda
    price = Column(JSON, nullable=False, default=dict)
    billing_frequency = Column(String(20), nullable=False, default=BillingFrequency.MONTHLY.value)

    # Duración del período
    duration = Column(Integer, nullable=True)
    duration_period = Column(String(10), nullable=True)

    # Límites del plan
    max_gyms = Column(Integer, nullable=False, default=1)
    max_clients_per_gym = Column(Integer, nullable=False, default=100)
    max_users_per_gym = Column(Integer, nullable=False, default=3)

    # Configuración
    is_active = Column(Boolean, default=True, nullable=False)
    is_public = Column(Boolean, default=True, nullable=False)

    subscriptions = relationship("SubscriptionOrganization", back_populates="plan")

    def __str__(self):
        return f"{self.name}"

    @property
    def prices(self) -> Dict[str, Decimal]:
        """
        Mapa tipado moneda → precio.

        Los valores que no son decimales válidos, finitos y no negativos
        se omiten; `price_for` informa el error concreto.
        """
        result = {}
        for currency, raw in (self.price or {}).items():
            try:
                value = Decimal(str(raw))
            except (InvalidOperation, ValueError):
                continue
            if value.is_finite() and value >= 0:
                result[currency.upper()] = value
        return result

    @property
    def is_free(self) -> bool:
        """Plan gratuito: todas las monedas con precio cero."""
        prices = self.prices
        return bool(prices) and all(value == 0 for value in prices.values())


class SubscriptionOrganization(Base, TimestampMixin, AuditMixin, SoftDeleteMixin):
    """
    Instancia de suscripción de una organización (un período de facturación).
    Como máximo una instancia por organización tiene is_active = true.
    """
    __tablename__ = "subscription_organizations"
    __table_args__ = (
        Index(
            "uq_subscription_organizations_one_active",
            "organization_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    subscription_plan_id = Column(Uuid(as_uuid=True), ForeignKey("subscription_plans.id"), nullable=False, index=True)

    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    plan = relationship("SubscriptionPlan", back_populates="subscriptions")

    def __str__(self):
        return f"Subscription {self.organization_id} - {self.status}"


class SubscriptionOperation(Base):
    """
    Registro inmutable de una transición de plan.
    Sólo se inserta; nunca se actualiza ni elimina.
    """
    __tablename__ = "subscription_operations"
    __table_args__ = (
        UniqueConstraint("organization_id", "idempotency_key", name="uq_subscription_operations_idempotency"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    from_subscription_plan_id = Column(Uuid(as_uuid=True), ForeignKey("subscription_plans.id"), nullable=True)
    to_subscription_plan_id = Column(Uuid(as_uuid=True), ForeignKey("subscription_plans.id"), nullable=True)
    previous_subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscription_organizations.id"), nullable=True)
    new_subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscription_organizations.id"), nullable=True)

    operation_type = Column(String(20), nullable=False)
    executed_by_user_id = Column(Uuid(as_uuid=True), nullable=True)
    effective_date = Column(DateTime(timezone=True), nullable=False)
    previous_end_date = Column(DateTime(timezone=True), nullable=True)
    new_end_date = Column(DateTime(timezone=True), nullable=True)

    proration_amount = Column(DECIMAL(10, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    notes = Column(Text, nullable=True)
    subscription_request_id = Column(Uuid(as_uuid=True), nullable=True)
    idempotency_key = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)

    def __str__(self):
        return f"{self.operation_type} {self.organization_id} @ {self.effective_date}"


class SubscriptionCancellation(Base):
    """Detalle de una cancelación. Append-only."""
    __tablename__ = "subscription_cancellations"

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    subscription_organization_id = Column(
        Uuid(as_uuid=True), ForeignKey("subscription_organizations.id"), nullable=False, index=True
    )
    operation_id = Column(Uuid(as_uuid=True), ForeignKey("subscription_operations.id"), nullable=True)

    reason = Column(String(30), nullable=False)
    reason_description = Column(Text, nullable=True)
    effective_date = Column(DateTime(timezone=True), nullable=False)
    immediate = Column(Boolean, nullable=False, default=False)

    refund_amount = Column(DECIMAL(10, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    retention_offered = Column(Boolean, nullable=False, default=False)
    retention_details = Column(Text, nullable=True)

    requested_by_user_id = Column(Uuid(as_uuid=True), nullable=True)
    processed_by_user_id = Column(Uuid(as_uuid=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
