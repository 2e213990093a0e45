"""
Motor de prorrateo

Convierte un período de facturación, los precios de los planes y una fecha
de cambio en montos de crédito, cargo o reembolso. Sin persistencia.
"""

from datetime import datetime
from decimal import Decimal, Context, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional, Tuple

from app.common.exceptions import ValidationError, BusinessRuleError
from .billing_period import (
    BillingPeriodCalculator, as_utc, utc_now, days_between, plan_duration, approximate_days
)
from .models import DurationPeriod
from .schemas import ProrationCalculation, CancellationRefund, RenewalPricing, BillingPeriod, quantize_money

# Precisión interna: los montos se redondean a MONEY_DECIMAL_PLACES sólo al serializar
MONEY_CONTEXT = Context(prec=28, rounding=ROUND_HALF_UP)
INTERNAL_QUANTUM = Decimal("0.0000000001")
ZERO = Decimal("0")


def _prorate(price: Decimal, remaining_days: int, total_days: int) -> Decimal:
    amount = MONEY_CONTEXT.divide(MONEY_CONTEXT.multiply(price, Decimal(remaining_days)), Decimal(total_days))
    return amount.quantize(INTERNAL_QUANTUM, rounding=ROUND_HALF_UP)


def _unused_ratio(remaining_days: int, total_days: int) -> Decimal:
    ratio = MONEY_CONTEXT.divide(Decimal(remaining_days), Decimal(total_days))
    return min(max(ratio, ZERO), Decimal("1"))


def _price_lookup(plan, currency: str) -> Tuple[Optional[Decimal], Optional[str]]:
    """(precio, error). Nunca asume cero ante un precio faltante o inválido."""
    currency = currency.upper()
    raw_prices = {str(key).upper(): value for key, value in (plan.price or {}).items()}

    if currency not in raw_prices or raw_prices[currency] is None:
        return None, f"El plan {plan.name} no tiene precio en {currency}"

    raw = raw_prices[currency]
    if isinstance(raw, bool):
        return None, f"El precio del plan {plan.name} en {currency} no es numérico"
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None, f"El precio del plan {plan.name} en {currency} no es numérico"

    if not value.is_finite():
        return None, f"El precio del plan {plan.name} en {currency} no es finito"
    if value < 0:
        return None, f"El precio del plan {plan.name} en {currency} no puede ser negativo"
    return value, None


def price_for(plan, currency: str) -> Decimal:
    """Precio del plan en la moneda indicada o ValidationError."""
    value, error = _price_lookup(plan, currency)
    if error:
        raise ValidationError(error)
    return value


class ProrationEngine:
    """Calculadora financiera con precisión decimal."""

    def __init__(self, calculator: Optional[BillingPeriodCalculator] = None):
        self.calculator = calculator or BillingPeriodCalculator()

    def calculate_proration(
        self,
        current_subscription,
        new_plan,
        currency: str,
        change_date: Optional[datetime] = None,
        current_plan=None
    ) -> ProrationCalculation:
        """
        Prorrateo de un cambio de plan a mitad de ciclo.

        Todas las precondiciones (rango de fechas, plan distinto, precios)
        se validan juntas; un cambio al final del período es un error de
        negocio, nunca un prorrateo en cero.
        """
        currency = currency.upper()
        current_plan = current_plan if current_plan is not None else current_subscription.plan
        change_date = as_utc(change_date or utc_now())
        start_date = as_utc(current_subscription.start_date)
        end_date = as_utc(current_subscription.end_date)

        errors: List[str] = []
        if change_date < start_date or change_date > end_date:
            errors.append(
                f"La fecha de cambio debe estar entre {start_date.isoformat()} y {end_date.isoformat()}"
            )
        if new_plan.id == current_subscription.subscription_plan_id:
            errors.append("El nuevo plan debe ser distinto del plan actual")

        current_price, error = _price_lookup(current_plan, currency)
        if error:
            errors.append(error)
        new_price, error = _price_lookup(new_plan, currency)
        if error:
            errors.append(error)

        if errors:
            raise ValidationError.from_errors(errors, prefix="No se puede calcular el prorrateo")

        total_days = self.calculator.current_billing_cycle(current_subscription, current_plan).total_days
        remaining_days = days_between(change_date, end_date)
        if remaining_days <= 0 or total_days <= 0:
            raise BusinessRuleError("No se puede prorratear en o después del fin del período")
        remaining_days = min(remaining_days, total_days)

        credit_amount = _prorate(current_price, remaining_days, total_days)
        charge_amount = _prorate(new_price, remaining_days, total_days)
        net_amount = charge_amount - credit_amount

        if net_amount > 0:
            outcome = f"cargo adicional de {quantize_money(net_amount)} {currency}"
        elif net_amount < 0:
            outcome = f"crédito a favor de {quantize_money(-net_amount)} {currency}"
        else:
            outcome = "sin diferencia"

        return ProrationCalculation(
            remaining_days=remaining_days,
            total_days=total_days,
            unused_percentage=_unused_ratio(remaining_days, total_days),
            current_plan_price=current_price,
            new_plan_price=new_price,
            credit_amount=credit_amount,
            charge_amount=charge_amount,
            net_amount=net_amount,
            currency=currency,
            description=(
                f"Cambio de {current_plan.name} a {new_plan.name} con {remaining_days} de "
                f"{total_days} días restantes: {outcome}"
            )
        )

    def calculate_cancellation_refund(
        self,
        subscription,
        currency: str,
        cancellation_date: Optional[datetime] = None,
        plan=None
    ) -> CancellationRefund:
        """Reembolso por la parte no usada; cero (no error) si el período ya terminó."""
        currency = currency.upper()
        plan = plan if plan is not None else subscription.plan
        plan_price = price_for(plan, currency)
        cancellation_date = as_utc(cancellation_date or utc_now())

        if cancellation_date < as_utc(subscription.start_date):
            raise ValidationError("La fecha de cancelación no puede ser anterior al inicio de la suscripción")

        total_days = self.calculator.current_billing_cycle(subscription, plan).total_days
        remaining_days = days_between(cancellation_date, subscription.end_date)

        if remaining_days <= 0 or total_days <= 0:
            return CancellationRefund(
                refund_amount=ZERO,
                remaining_days=0,
                total_days=total_days,
                currency=currency,
                description="Sin reembolso - el período de la suscripción terminó"
            )

        remaining_days = min(remaining_days, total_days)
        refund_amount = _prorate(plan_price, remaining_days, total_days)

        return CancellationRefund(
            refund_amount=refund_amount,
            remaining_days=remaining_days,
            total_days=total_days,
            currency=currency,
            description=f"Reembolso por {remaining_days} de {total_days} días no usados del plan {plan.name}"
        )

    def calculate_renewal_pricing(
        self,
        current_subscription,
        renewal_plan,
        currency: str,
        renewal_date: Optional[datetime] = None,
        duration: Optional[int] = None,
        duration_period: Optional[DurationPeriod] = None
    ) -> RenewalPricing:
        """Precio y nuevo período de una renovación; por defecto renueva al fin del período actual."""
        currency = currency.upper()
        plan_price = price_for(renewal_plan, currency)
        renewal_date = as_utc(renewal_date or current_subscription.end_date)

        new_end_date = self.calculator.new_end_date(
            renewal_plan,
            renewal_date,
            duration=duration,
            duration_period=duration_period
        )

        if duration:
            period = DurationPeriod(duration_period) if duration_period else plan_duration(renewal_plan)[1]
        else:
            duration, period = plan_duration(renewal_plan)

        unit = "mes(es)" if period == DurationPeriod.MONTH else "día(s)"
        return RenewalPricing(
            plan_price=plan_price,
            new_end_date=new_end_date,
            billing_period=BillingPeriod(
                start_date=renewal_date,
                end_date=new_end_date,
                total_days=days_between(renewal_date, new_end_date)
            ),
            currency=currency,
            description=(
                f"Renovación del plan {renewal_plan.name} por {duration} {unit} "
                f"(~{approximate_days(duration, period)} días) hasta {new_end_date.date().isoformat()}"
            )
        )
