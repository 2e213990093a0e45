"""
Pydantic schemas for subscription billing.

Value objects (BillingCycle, ProrationCalculation...) keep full decimal
precision; money is rounded half-up to two places only when serialized.
"""
from typing import Annotated, List, Optional
from pydantic import BaseModel, Field, PlainSerializer
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from uuid import UUID

from app.core.config import settings
from .models import (
    SubscriptionStatus, DurationPeriod, SubscriptionOperationType, CancellationReason
)


MONEY_QUANTUM = Decimal(1).scaleb(-settings.MONEY_DECIMAL_PLACES)


def quantize_money(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return None
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def _money_to_str(value: Decimal) -> str:
    return str(quantize_money(value))


def _ratio_to_str(value: Decimal) -> str:
    return str(value.quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP))


Money = Annotated[Decimal, PlainSerializer(_money_to_str, return_type=str, when_used="json")]
Ratio = Annotated[Decimal, PlainSerializer(_ratio_to_str, return_type=str, when_used="json")]


# ===== VALUE OBJECTS =====

class BillingCycle(BaseModel):
    """Límites de un ciclo de facturación."""
    start_date: datetime
    end_date: datetime
    duration: int
    duration_period: DurationPeriod
    total_days: int


class BillingPeriod(BaseModel):
    start_date: datetime
    end_date: datetime
    total_days: int


class RenewalWindow(BaseModel):
    """Ventana en la que renovar se considera 'a tiempo'."""
    start_date: datetime
    end_date: datetime
    is_active: bool


class SubscriptionPeriod(BaseModel):
    """Resumen del período actual de una suscripción."""
    current: BillingCycle
    next: Optional[BillingCycle] = None
    is_expiring: bool
    is_expired: bool
    days_until_expiration: int
    renewal_window: RenewalWindow


class DateValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ProrationCalculation(BaseModel):
    """
    Ajuste por cambio de plan a mitad de ciclo.
    net_amount = charge_amount - credit_amount (positivo = cargo, negativo = reembolso).
    """
    remaining_days: int
    total_days: int
    unused_percentage: Ratio
    current_plan_price: Money
    new_plan_price: Money
    credit_amount: Money
    charge_amount: Money
    net_amount: Money
    currency: str
    description: str


class CancellationRefund(BaseModel):
    refund_amount: Money
    remaining_days: int
    total_days: int
    currency: str
    description: str


class RenewalPricing(BaseModel):
    plan_price: Money
    new_end_date: datetime
    billing_period: BillingPeriod
    currency: str
    description: str


# ===== REQUEST SCHEMAS =====

class PlanChangeRequest(BaseModel):
    """Schema para upgrade / downgrade."""
    new_plan_id: UUID = Field(..., description="ID del plan destino")
    effective_date: Optional[datetime] = Field(None, description="Fecha efectiva (ISO-8601)")
    immediate: bool = Field(default=True, description="Aplicar el cambio inmediatamente")
    proration_enabled: bool = Field(default=True, description="Calcular prorrateo")
    idempotency_key: Optional[str] = Field(None, max_length=100, description="Clave de idempotencia del cliente")
    subscription_request_id: Optional[UUID] = Field(None, description="Solicitud que originó el cambio")


class RenewalRequest(BaseModel):
    """Schema para renovación."""
    plan_id: Optional[UUID] = Field(None, description="Plan de renovación (por defecto el actual)")
    duration: Optional[int] = Field(None, ge=1, description="Duración explícita de esta renovación")
    duration_period: Optional[DurationPeriod] = Field(None, description="Unidad de la duración explícita")
    effective_date: Optional[datetime] = Field(None, description="Fecha efectiva (ISO-8601)")
    extend_current: bool = Field(default=True, description="Extender desde el fin del período actual")
    idempotency_key: Optional[str] = Field(None, max_length=100)
    subscription_request_id: Optional[UUID] = None


class CancellationRequest(BaseModel):
    """Schema para cancelar suscripción."""
    reason: CancellationReason = Field(..., description="Motivo de cancelación")
    reason_description: Optional[str] = Field(None, description="Detalle del motivo")
    effective_date: Optional[datetime] = Field(None, description="Fecha efectiva (ISO-8601)")
    immediate: bool = Field(default=False, description="Cancelar inmediatamente o al final del período")
    refund_enabled: bool = Field(default=True, description="Calcular reembolso")
    retention_offered: bool = Field(default=False)
    retention_details: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=100)


# ===== OUTPUT SCHEMAS =====

class SubscriptionOut(BaseModel):
    id: UUID
    organization_id: UUID
    subscription_plan_id: UUID
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    is_active: bool

    class Config:
        from_attributes = True


class OperationOut(BaseModel):
    id: UUID
    organization_id: UUID
    from_subscription_plan_id: Optional[UUID]
    to_subscription_plan_id: Optional[UUID]
    previous_subscription_id: Optional[UUID]
    new_subscription_id: Optional[UUID]
    operation_type: SubscriptionOperationType
    executed_by_user_id: Optional[UUID]
    effective_date: datetime
    previous_end_date: Optional[datetime]
    new_end_date: Optional[datetime]
    proration_amount: Optional[Money]
    currency: Optional[str]
    notes: Optional[str]
    subscription_request_id: Optional[UUID]
    idempotency_key: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class CancellationOut(BaseModel):
    id: UUID
    organization_id: UUID
    subscription_organization_id: UUID
    operation_id: Optional[UUID]
    reason: CancellationReason
    reason_description: Optional[str]
    effective_date: datetime
    immediate: bool
    refund_amount: Optional[Money]
    currency: Optional[str]
    retention_offered: bool
    retention_details: Optional[str]
    requested_by_user_id: Optional[UUID]
    processed_by_user_id: Optional[UUID]
    processed_at: Optional[datetime]

    class Config:
        from_attributes = True


class TransitionResult(BaseModel):
    """Resultado de upgrade / downgrade / renovación."""
    old_subscription: SubscriptionOut
    new_subscription: SubscriptionOut
    operation: OperationOut
    proration: Optional[ProrationCalculation] = None
    renewal_pricing: Optional[RenewalPricing] = None
    effective_date: datetime
    warnings: List[str] = Field(default_factory=list)
    requires_payment: bool = False
    replayed: bool = Field(default=False, description="Resultado recuperado por clave de idempotencia")
    success: bool = True


class CancellationResult(BaseModel):
    """Resultado de una cancelación."""
    subscription: SubscriptionOut
    cancellation: CancellationOut
    operation: OperationOut
    refund: Optional[CancellationRefund] = None
    effective_date: datetime
    warnings: List[str] = Field(default_factory=list)
    replayed: bool = False
    success: bool = True


class OperationList(BaseModel):
    operations: List[OperationOut]
    total: int
    limit: int
    offset: int
