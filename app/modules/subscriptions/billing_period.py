"""
Aritmética de períodos de facturación.

Funciones puras sobre fechas: ciclos, ventana de renovación, vencimiento con
período de gracia y validación de fechas de operación. No hace I/O.

Los días se cuentan con división techo (un día parcial cuenta como completo).
Los meses se suman como meses de calendario (31 ene + 1 mes = 28/29 feb);
la equivalencia "1 mes = 30 días" sólo se usa para textos informativos
(`approximate_days`).
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta

from app.core.config import settings
from .models import DurationPeriod, SubscriptionOperationType
from .schemas import (
    BillingCycle, RenewalWindow, SubscriptionPeriod, DateValidationResult
)

DAY = timedelta(days=1)
APPROXIMATE_DAYS_PER_MONTH = 30

_MICROSECONDS_PER_DAY = DAY // timedelta(microseconds=1)


def as_utc(value: datetime) -> datetime:
    """Normaliza un datetime a UTC; los valores naive se asumen en UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def days_between(start: datetime, end: datetime) -> int:
    """ceil((end - start) / 1 día). Puede ser negativo."""
    delta_us = (as_utc(end) - as_utc(start)) // timedelta(microseconds=1)
    return -(-delta_us // _MICROSECONDS_PER_DAY)


def add_duration(start: datetime, duration: int, period: DurationPeriod) -> datetime:
    """Suma días o meses de calendario a una fecha."""
    if DurationPeriod(period) == DurationPeriod.MONTH:
        return start + relativedelta(months=duration)
    return start + timedelta(days=duration)


def approximate_days(duration: int, period: DurationPeriod) -> int:
    """Días aproximados de una duración (1 mes ≈ 30 días). Sólo para mostrar."""
    if DurationPeriod(period) == DurationPeriod.MONTH:
        return duration * APPROXIMATE_DAYS_PER_MONTH
    return duration


def plan_duration(plan) -> tuple:
    """(duración, unidad) del plan; 1 mes si el plan no la define."""
    if plan is not None and plan.duration and plan.duration_period:
        return plan.duration, DurationPeriod(plan.duration_period)
    return 1, DurationPeriod.MONTH


class BillingPeriodCalculator:
    """Cálculos de ciclo de facturación para una instancia de suscripción."""

    def __init__(
        self,
        renewal_window_days: Optional[int] = None,
        expiring_soon_days: Optional[int] = None,
        grace_period_days: Optional[int] = None
    ):
        self.renewal_window_days = (
            settings.RENEWAL_WINDOW_DAYS if renewal_window_days is None else renewal_window_days
        )
        self.expiring_soon_days = (
            settings.EXPIRING_SOON_DAYS if expiring_soon_days is None else expiring_soon_days
        )
        self.grace_period_days = (
            settings.GRACE_PERIOD_DAYS if grace_period_days is None else grace_period_days
        )

    # ===== CICLOS =====

    def current_billing_cycle(self, subscription, plan=None) -> BillingCycle:
        """Ciclo actual de la suscripción; total_days nunca es negativo."""
        plan = plan if plan is not None else getattr(subscription, "plan", None)
        duration, period = plan_duration(plan)
        start_date = as_utc(subscription.start_date)
        end_date = as_utc(subscription.end_date)

        return BillingCycle(
            start_date=start_date,
            end_date=end_date,
            duration=duration,
            duration_period=period,
            total_days=max(0, days_between(start_date, end_date))
        )

    def next_billing_cycle(self, plan, current_end_date: datetime) -> BillingCycle:
        start_date = as_utc(current_end_date)
        end_date = self.new_end_date(plan, start_date)
        duration, period = plan_duration(plan)

        return BillingCycle(
            start_date=start_date,
            end_date=end_date,
            duration=duration,
            duration_period=period,
            total_days=days_between(start_date, end_date)
        )

    def new_end_date(
        self,
        plan,
        start_date: datetime,
        extend_current: bool = False,
        current_end_date: Optional[datetime] = None,
        duration: Optional[int] = None,
        duration_period: Optional[DurationPeriod] = None
    ) -> datetime:
        """
        Fecha de fin de un nuevo período.

        Si `extend_current`, el período arranca en max(start_date, current_end_date).
        `duration` / `duration_period` sobreescriben la duración del plan.
        """
        effective_start = as_utc(start_date)
        if extend_current and current_end_date is not None:
            effective_start = max(effective_start, as_utc(current_end_date))

        plan_value, plan_period = plan_duration(plan)
        if duration:
            period = DurationPeriod(duration_period) if duration_period else plan_period
            return add_duration(effective_start, duration, period)

        return add_duration(effective_start, plan_value, plan_period)

    # ===== VENCIMIENTO =====

    def days_until_expiration(self, now: datetime, end_date: datetime) -> int:
        return days_between(now, end_date)

    def renewal_window(self, end_date: datetime, now: Optional[datetime] = None) -> RenewalWindow:
        now = as_utc(now or utc_now())
        end_date = as_utc(end_date)
        start_date = end_date - timedelta(days=self.renewal_window_days)

        return RenewalWindow(
            start_date=start_date,
            end_date=end_date,
            is_active=start_date <= now <= end_date
        )

    def is_in_renewal_window(self, subscription, now: Optional[datetime] = None) -> bool:
        return self.renewal_window(subscription.end_date, now).is_active

    def is_expiring_soon(self, days_until_expiration: int) -> bool:
        return 0 <= days_until_expiration <= self.expiring_soon_days

    def is_expired_with_grace(self, now: datetime, end_date: datetime) -> bool:
        return as_utc(now) > as_utc(end_date) + timedelta(days=self.grace_period_days)

    def subscription_period(self, subscription, plan=None, now: Optional[datetime] = None) -> SubscriptionPeriod:
        """Resumen del período: ciclo actual, siguiente ciclo y estado de vencimiento."""
        now = as_utc(now or utc_now())
        plan = plan if plan is not None else getattr(subscription, "plan", None)
        current = self.current_billing_cycle(subscription, plan)

        days_left = self.days_until_expiration(now, current.end_date)
        is_expired = days_left < 0
        window = self.renewal_window(current.end_date, now)

        next_cycle = None
        if window.is_active and not is_expired:
            next_cycle = self.next_billing_cycle(plan, current.end_date)

        return SubscriptionPeriod(
            current=current,
            next=next_cycle,
            is_expiring=not is_expired and self.is_expiring_soon(days_left),
            is_expired=is_expired,
            days_until_expiration=max(0, days_left),
            renewal_window=window
        )

    # ===== VALIDACIÓN =====

    def validate_dates(
        self,
        operation_type: SubscriptionOperationType,
        subscription,
        effective_date: Optional[datetime] = None,
        new_end_date: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> DateValidationResult:
        """
        Valida las fechas de una operación contra la instancia actual.

        Los errores bloquean la operación; las advertencias se devuelven
        junto con el resultado.
        """
        operation_type = SubscriptionOperationType(operation_type)
        now = as_utc(now or utc_now())
        operation_date = as_utc(effective_date or now)
        start_date = as_utc(subscription.start_date)
        end_date = as_utc(subscription.end_date)

        errors = []
        warnings = []

        if operation_date < start_date:
            errors.append("La fecha de la operación no puede ser anterior al inicio de la suscripción")

        if operation_type in (SubscriptionOperationType.UPGRADE, SubscriptionOperationType.DOWNGRADE):
            if operation_date > end_date:
                errors.append("La fecha de la operación no puede ser posterior al fin de la suscripción")
                errors.append("No se puede modificar una suscripción vencida; se requiere renovación")
            else:
                days_left = days_between(operation_date, end_date)
                if days_left <= self.expiring_soon_days:
                    warnings.append(
                        f"La suscripción vence en {days_left} días; considere renovar en su lugar"
                    )

        elif operation_type == SubscriptionOperationType.RENEWAL:
            window = self.renewal_window(end_date, operation_date)
            if not window.is_active:
                days_to_window = days_between(operation_date, window.start_date)
                if days_to_window > 0:
                    warnings.append(f"La ventana de renovación abre en {days_to_window} días")
                else:
                    warnings.append("Renovación fuera de la ventana óptima: la suscripción ya venció")
            if new_end_date is not None and as_utc(new_end_date) <= operation_date:
                errors.append("La nueva fecha de fin debe ser posterior a la fecha de la operación")

        elif operation_type == SubscriptionOperationType.CANCELLATION:
            if operation_date > end_date:
                warnings.append("La suscripción ya está vencida")
            if days_between(operation_date, end_date) <= 0:
                warnings.append("Sin reembolso disponible: el período de la suscripción terminó")

        if self.is_expired_with_grace(now, end_date):
            days_past = -days_between(now, end_date)
            warnings.append(
                f"La suscripción lleva {days_past} días vencida (fuera del período de gracia)"
            )

        return DateValidationResult(
            is_valid=len(errors) == 0,
            errors=errors,
            warnings=warnings
        )

    def optimal_effective_date(
        self,
        operation_type: SubscriptionOperationType,
        subscription,
        requested_date: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> datetime:
        """Fecha efectiva nunca en el pasado; una renovación sin fecha arranca al fin del período."""
        now = as_utc(now or utc_now())

        if SubscriptionOperationType(operation_type) == SubscriptionOperationType.RENEWAL and requested_date is None:
            return max(as_utc(subscription.end_date), now)

        if requested_date is None:
            return now
        return max(now, as_utc(requested_date))
