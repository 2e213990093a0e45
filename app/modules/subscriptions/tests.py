"""
Tests para el módulo de Suscripciones

Tests comprehensivos que cubren:
- Períodos de facturación: conteo de días, meses de calendario, ventana de
  renovación, período de gracia y validación de fechas
- Prorrateo, reembolsos de cancelación y precios de renovación
- Upgrade / downgrade inmediatos y programados, con límites de uso
- Renovación y cancelación
- Idempotencia, conflictos concurrentes y atomicidad
- Eventos de auditoría, endpoints HTTP y catálogo de planes

Base de datos SQLite en memoria con los mismos modelos (incluido el índice
único parcial de instancias activas) y un reloj fijo para el servicio.
"""

import logging
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from uuid import uuid4
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.main import app
from app.core.config import Settings, settings
from app.database.database import Base
from app.common.exceptions import (
    NotFoundError, ValidationError, BusinessRuleError, ConflictError, DuplicateOperationError
)
from app.modules.organizations.models import Organization, Gym, GymClient, Collaborator
from app.modules.subscriptions import crud, tasks
from app.modules.subscriptions.billing_period import (
    BillingPeriodCalculator, days_between, approximate_days, as_utc
)
from app.modules.subscriptions.crud import get_plans, get_plan_by_name
from app.modules.subscriptions.events import (
    AuditLogger, EventPublisher, SubscriptionAction, SubscriptionEvent, InlineEventPublisher,
    CeleryEventPublisher, get_event_publisher, sanitize
)
from app.modules.subscriptions.models import (
    SubscriptionPlan, SubscriptionOrganization, SubscriptionOperation, SubscriptionCancellation,
    SubscriptionStatus, SubscriptionOperationType, DurationPeriod, CancellationReason
)
from app.modules.subscriptions.proration import ProrationEngine, price_for
from app.modules.subscriptions.router import get_transition_service
from app.modules.subscriptions.schemas import (
    PlanChangeRequest, RenewalRequest, CancellationRequest, MONEY_QUANTUM, quantize_money
)
from app.modules.subscriptions.seed_plans import seed_plans, DEFAULT_PLANS
from app.modules.subscriptions.service import SubscriptionTransitionService


CENT = Decimal("0.01")


# ===== HELPERS =====

def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class FixedClock:
    """Reloj controlable para el servicio."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)


def make_plan(name="Mensual", price=None, duration=1, period=DurationPeriod.MONTH) -> SubscriptionPlan:
    """Plan en memoria, sin base de datos."""
    return SubscriptionPlan(
        id=uuid4(),
        name=name,
        price=price if price is not None else {"PEN": "100.00"},
        duration=duration,
        duration_period=period.value
    )


def make_subscription(start, end, plan=None) -> SubscriptionOrganization:
    plan = plan or make_plan()
    return SubscriptionOrganization(
        id=uuid4(),
        organization_id=uuid4(),
        subscription_plan_id=plan.id,
        plan=plan,
        start_date=start,
        end_date=end,
        is_active=True
    )


def make_plan_subscription(plan, start=None, end=None) -> SubscriptionOrganization:
    """Instancia en memoria del 1 al 31 de enero de 2025 salvo que se indique."""
    return make_subscription(start or utc(2025, 1, 1), end or utc(2025, 1, 31), plan)


def make_event(**data) -> SubscriptionEvent:
    return SubscriptionEvent(
        action=SubscriptionAction.SUBSCRIPTION_UPGRADE,
        organization_id=uuid4(),
        actor_id=uuid4(),
        operation_id=uuid4(),
        occurred_at=utc(2025, 1, 21),
        data=data
    )


def active_subscriptions(db, organization_id):
    return db.execute(
        select(SubscriptionOrganization).where(
            SubscriptionOrganization.organization_id == organization_id,
            SubscriptionOrganization.is_active == True
        )
    ).scalars().all()


def operation_count(db, organization_id):
    return db.execute(
        select(func.count(SubscriptionOperation.id)).where(
            SubscriptionOperation.organization_id == organization_id
        )
    ).scalar_one()


def base_url(organization_id) -> str:
    return f"/organizations/{organization_id}/subscription"


# ===== FIXTURES =====

@pytest.fixture
def calculator():
    return BillingPeriodCalculator(renewal_window_days=30, expiring_soon_days=7, grace_period_days=3)


@pytest.fixture
def proration_engine():
    return ProrationEngine()


@pytest.fixture
def plan_a():
    return make_plan("Plan A", {"PEN": "100.00", "USD": "30"})


@pytest.fixture
def plan_b():
    return make_plan("Plan B", {"PEN": "200.00", "USD": "60"})


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def plans(db_session):
    """Planes de prueba: basic (100 PEN) y premium (200 PEN), más uno gratuito."""
    basic = SubscriptionPlan(
        name="Basic",
        price={"PEN": "100.00", "USD": "30.00"},
        duration=1,
        duration_period=DurationPeriod.MONTH.value,
        max_gyms=1,
        max_clients_per_gym=10,
        max_users_per_gym=2
    )
    premium = SubscriptionPlan(
        name="Premium",
        price={"PEN": "200.00", "USD": "60.00"},
        duration=1,
        duration_period=DurationPeriod.MONTH.value,
        max_gyms=3,
        max_clients_per_gym=100,
        max_users_per_gym=5
    )
    free = SubscriptionPlan(
        name="Free",
        price={"PEN": "0", "USD": "0"},
        duration=14,
        duration_period=DurationPeriod.DAY.value,
        max_gyms=1,
        max_clients_per_gym=5,
        max_users_per_gym=1
    )
    db_session.add_all([basic, premium, free])
    db_session.commit()
    return {"basic": basic, "premium": premium, "free": free}


@pytest.fixture
def organization(db_session):
    organization = Organization(name="Gimnasio Central", currency="PEN")
    db_session.add(organization)
    db_session.commit()
    return organization


@pytest.fixture
def subscription(db_session, organization, plans):
    """Instancia activa del 1 al 31 de enero de 2025 (30 días) en el plan basic."""
    subscription = SubscriptionOrganization(
        organization_id=organization.id,
        subscription_plan_id=plans["basic"].id,
        start_date=utc(2025, 1, 1),
        end_date=utc(2025, 1, 31),
        is_active=True
    )
    db_session.add(subscription)
    db_session.commit()
    return subscription


@pytest.fixture
def premium_subscription(db_session, organization, plans):
    """Misma ventana que `subscription`, pero en el plan premium."""
    subscription = SubscriptionOrganization(
        organization_id=organization.id,
        subscription_plan_id=plans["premium"].id,
        start_date=utc(2025, 1, 1),
        end_date=utc(2025, 1, 31),
        is_active=True
    )
    db_session.add(subscription)
    db_session.commit()
    return subscription


@pytest.fixture
def add_usage(db_session, organization):
    """Crea gimnasios, clientes y colaboradores activos para la organización."""
    def _add_usage(gyms=1, clients_per_gym=0, collaborators_per_gym=0):
        for index in range(gyms):
            gym = Gym(organization_id=organization.id, name=f"Sede {index + 1}")
            db_session.add(gym)
            db_session.flush()
            for client_index in range(clients_per_gym):
                db_session.add(GymClient(gym_id=gym.id, name=f"Cliente {client_index + 1}"))
            for _ in range(collaborators_per_gym):
                db_session.add(Collaborator(gym_id=gym.id))
        db_session.commit()
    return _add_usage


@pytest.fixture
def clock():
    return FixedClock(utc(2025, 1, 21))


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def service(db_session, publisher, clock):
    return SubscriptionTransitionService(db_session, publisher=publisher, clock=clock)


@pytest.fixture
def client(service):
    app.dependency_overrides[get_transition_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


# ===== TESTS DE PERÍODOS DE FACTURACIÓN =====

class TestDayCounting:
    """Conteo de días"""

    def test_partial_day_counts_as_full_day(self):
        start = utc(2025, 1, 1)
        assert days_between(start, start + timedelta(seconds=1)) == 1
        assert days_between(start, start + timedelta(hours=25)) == 2

    def test_exact_days(self):
        assert days_between(utc(2025, 1, 1), utc(2025, 1, 31)) == 30
        assert days_between(utc(2025, 1, 1), utc(2025, 1, 1)) == 0

    def test_negative_interval_rounds_toward_zero(self):
        assert days_between(utc(2025, 1, 2, 12), utc(2025, 1, 1)) == -1

    def test_naive_datetimes_are_treated_as_utc(self):
        assert days_between(datetime(2025, 1, 1), utc(2025, 1, 11)) == 10
        assert as_utc(datetime(2025, 1, 1)).tzinfo == timezone.utc


class TestNewEndDate:
    """Cálculo de fin de período"""

    def test_month_end_lands_on_last_day_of_february(self, calculator):
        plan = make_plan()
        assert calculator.new_end_date(plan, utc(2025, 1, 31)) == utc(2025, 2, 28)

    def test_month_end_in_leap_year(self, calculator):
        plan = make_plan()
        assert calculator.new_end_date(plan, utc(2024, 1, 31)) == utc(2024, 2, 29)

    def test_day_duration(self, calculator):
        plan = make_plan(duration=14, period=DurationPeriod.DAY)
        assert calculator.new_end_date(plan, utc(2025, 1, 1)) == utc(2025, 1, 15)

    def test_extend_current_starts_at_current_end(self, calculator):
        plan = make_plan()
        end = calculator.new_end_date(
            plan, utc(2025, 2, 20), extend_current=True, current_end_date=utc(2025, 3, 1)
        )
        assert end == utc(2025, 4, 1)

    def test_extend_current_keeps_later_start(self, calculator):
        plan = make_plan()
        end = calculator.new_end_date(
            plan, utc(2025, 3, 10), extend_current=True, current_end_date=utc(2025, 3, 1)
        )
        assert end == utc(2025, 4, 10)

    def test_explicit_duration_overrides_plan(self, calculator):
        plan = make_plan()
        end = calculator.new_end_date(
            plan, utc(2025, 1, 1), duration=10, duration_period=DurationPeriod.DAY
        )
        assert end == utc(2025, 1, 11)

    def test_approximate_days_is_display_only(self):
        assert approximate_days(2, DurationPeriod.MONTH) == 60
        assert approximate_days(14, DurationPeriod.DAY) == 14


class TestBillingCycle:
    """Ciclo actual y resumen del período"""

    def test_current_cycle(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        cycle = calculator.current_billing_cycle(subscription)

        assert cycle.total_days == 30
        assert cycle.duration == 1
        assert cycle.duration_period == DurationPeriod.MONTH

    def test_inverted_cycle_has_zero_days(self, calculator):
        subscription = make_subscription(utc(2025, 1, 31), utc(2025, 1, 1))
        assert calculator.current_billing_cycle(subscription).total_days == 0

    def test_period_inside_renewal_window(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        period = calculator.subscription_period(subscription, now=utc(2025, 1, 21))

        assert period.days_until_expiration == 10
        assert period.is_expiring is False
        assert period.is_expired is False
        assert period.renewal_window.is_active is True
        assert period.next is not None
        assert period.next.start_date == utc(2025, 1, 31)
        assert period.next.end_date == utc(2025, 2, 28)

    def test_period_expiring_soon(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        period = calculator.subscription_period(subscription, now=utc(2025, 1, 25))

        assert period.days_until_expiration == 6
        assert period.is_expiring is True

    def test_expired_period(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        period = calculator.subscription_period(subscription, now=utc(2025, 2, 5))

        assert period.is_expired is True
        assert period.is_expiring is False
        assert period.days_until_expiration == 0
        assert period.next is None


class TestExpiration:
    """Ventana de renovación y período de gracia"""

    def test_renewal_window_bounds(self, calculator):
        window = calculator.renewal_window(utc(2025, 1, 31), now=utc(2025, 1, 15))

        assert window.start_date == utc(2025, 1, 1)
        assert window.end_date == utc(2025, 1, 31)
        assert window.is_active is True

    def test_renewal_window_inactive_outside(self, calculator):
        assert calculator.renewal_window(utc(2025, 1, 31), now=utc(2024, 12, 25)).is_active is False
        assert calculator.renewal_window(utc(2025, 1, 31), now=utc(2025, 2, 1)).is_active is False

    def test_is_in_renewal_window(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        assert calculator.is_in_renewal_window(subscription, now=utc(2025, 1, 31)) is True

    @pytest.mark.parametrize("days,expected", [(0, True), (7, True), (8, False), (-1, False)])
    def test_is_expiring_soon(self, calculator, days, expected):
        assert calculator.is_expiring_soon(days) is expected

    def test_grace_period(self, calculator):
        end = utc(2025, 1, 31)
        assert calculator.is_expired_with_grace(end + timedelta(days=3), end) is False
        assert calculator.is_expired_with_grace(end + timedelta(days=3, seconds=1), end) is True


class TestValidateDates:
    """Validación de fechas de operación"""

    def test_upgrade_within_period_is_valid(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        result = calculator.validate_dates(
            SubscriptionOperationType.UPGRADE, subscription, utc(2025, 1, 10), now=utc(2025, 1, 10)
        )

        assert result.is_valid is True
        assert result.errors == []
        assert result.warnings == []

    def test_upgrade_before_start_fails(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        result = calculator.validate_dates(
            SubscriptionOperationType.UPGRADE, subscription, utc(2024, 12, 31), now=utc(2024, 12, 31)
        )

        assert result.is_valid is False
        assert len(result.errors) == 1

    def test_upgrade_after_end_fails(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        result = calculator.validate_dates(
            SubscriptionOperationType.DOWNGRADE, subscription, utc(2025, 2, 2), now=utc(2025, 2, 2)
        )

        assert result.is_valid is False
        assert len(result.errors) == 2

    def test_upgrade_close_to_expiration_warns(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        result = calculator.validate_dates(
            SubscriptionOperationType.UPGRADE, subscription, utc(2025, 1, 26), now=utc(2025, 1, 26)
        )

        assert result.is_valid is True
        assert len(result.warnings) == 1
        assert "5 días" in result.warnings[0]

    def test_renewal_before_window_warns(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 3, 31))
        result = calculator.validate_dates(
            SubscriptionOperationType.RENEWAL, subscription, utc(2025, 1, 15),
            new_end_date=utc(2025, 2, 15), now=utc(2025, 1, 15)
        )

        assert result.is_valid is True
        assert result.warnings == ["La ventana de renovación abre en 45 días"]

    def test_renewal_window_is_measured_from_effective_date(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 3, 31))

        inside = calculator.validate_dates(
            SubscriptionOperationType.RENEWAL, subscription, utc(2025, 3, 20),
            new_end_date=utc(2025, 4, 30), now=utc(2025, 1, 15)
        )
        before = calculator.validate_dates(
            SubscriptionOperationType.RENEWAL, subscription, utc(2025, 2, 19),
            new_end_date=utc(2025, 4, 30), now=utc(2025, 1, 15)
        )

        assert inside.warnings == []
        assert before.warnings == ["La ventana de renovación abre en 10 días"]

    def test_renewal_end_before_effective_date_fails(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        result = calculator.validate_dates(
            SubscriptionOperationType.RENEWAL, subscription, utc(2025, 1, 31),
            new_end_date=utc(2025, 1, 31), now=utc(2025, 1, 20)
        )

        assert result.is_valid is False

    def test_cancellation_after_end_only_warns(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        result = calculator.validate_dates(
            SubscriptionOperationType.CANCELLATION, subscription, utc(2025, 2, 1), now=utc(2025, 2, 1)
        )

        assert result.is_valid is True
        assert len(result.warnings) == 2

    def test_past_grace_period_warns_for_every_operation(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        result = calculator.validate_dates(
            SubscriptionOperationType.RENEWAL, subscription, utc(2025, 2, 5),
            new_end_date=utc(2025, 3, 5), now=utc(2025, 2, 5)
        )

        assert result.is_valid is True
        assert any("5 días vencida" in warning for warning in result.warnings)


class TestOptimalEffectiveDate:
    """Fecha efectiva por defecto"""

    def test_renewal_defaults_to_period_end(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        date = calculator.optimal_effective_date(
            SubscriptionOperationType.RENEWAL, subscription, now=utc(2025, 1, 20)
        )
        assert date == utc(2025, 1, 31)

    def test_renewal_of_expired_subscription_starts_now(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        date = calculator.optimal_effective_date(
            SubscriptionOperationType.RENEWAL, subscription, now=utc(2025, 2, 10)
        )
        assert date == utc(2025, 2, 10)

    def test_requested_date_is_never_in_the_past(self, calculator):
        subscription = make_subscription(utc(2025, 1, 1), utc(2025, 1, 31))
        now = utc(2025, 1, 20)

        assert calculator.optimal_effective_date(
            SubscriptionOperationType.UPGRADE, subscription, utc(2025, 1, 5), now=now
        ) == now
        assert calculator.optimal_effective_date(
            SubscriptionOperationType.UPGRADE, subscription, utc(2025, 1, 25), now=now
        ) == utc(2025, 1, 25)
        assert calculator.optimal_effective_date(
            SubscriptionOperationType.CANCELLATION, subscription, now=now
        ) == now


# ===== TESTS DE PRORRATEO =====

class TestPlanPrices:
    """Mapa tipado de precios"""

    def test_prices_are_decimals_with_upper_case_currency(self):
        plan = make_plan("Plan", {"pen": "99.90", "USD": 25})
        assert plan.prices == {"PEN": Decimal("99.90"), "USD": Decimal("25")}

    def test_invalid_prices_are_skipped(self):
        plan = make_plan("Plan", {"PEN": "abc", "USD": "-1", "EUR": "NaN", "BRL": "10"})
        assert plan.prices == {"BRL": Decimal("10")}

    def test_free_plan(self):
        assert make_plan("Gratis", {"PEN": "0", "USD": "0.00"}).is_free is True
        assert make_plan("Mixto", {"PEN": "0", "USD": "5"}).is_free is False
        assert make_plan("Vacío", {}).is_free is False

    def test_price_for_reports_the_problem(self):
        plan = make_plan("Plan", {"PEN": "-5", "USD": "Infinity"})

        with pytest.raises(ValidationError) as exc_info:
            price_for(plan, "PEN")
        assert "negativo" in exc_info.value.message

        with pytest.raises(ValidationError) as exc_info:
            price_for(plan, "USD")
        assert "no es finito" in exc_info.value.message

        with pytest.raises(ValidationError) as exc_info:
            price_for(plan, "EUR")
        assert "no tiene precio en EUR" in exc_info.value.message


class TestCalculateProration:
    """Prorrateo de cambio de plan"""

    def test_upgrade_on_january_21(self, proration_engine, plan_a, plan_b):
        subscription = make_plan_subscription(plan_a)
        calculation = proration_engine.calculate_proration(subscription, plan_b, "PEN", utc(2025, 1, 21))

        assert calculation.remaining_days == 10
        assert calculation.total_days == 30
        assert calculation.unused_percentage.quantize(Decimal("0.000001")) == Decimal("0.333333")
        assert calculation.credit_amount.quantize(CENT) == Decimal("33.33")
        assert calculation.charge_amount.quantize(CENT) == Decimal("66.67")
        assert calculation.net_amount.quantize(CENT) == Decimal("33.33")
        assert calculation.net_amount == calculation.charge_amount - calculation.credit_amount
        assert calculation.currency == "PEN"

    def test_amounts_serialize_as_decimal_strings(self, proration_engine, plan_a, plan_b):
        subscription = make_plan_subscription(plan_a)
        data = proration_engine.calculate_proration(subscription, plan_b, "pen", utc(2025, 1, 21)).model_dump(mode="json")

        assert data["credit_amount"] == "33.33"
        assert data["charge_amount"] == "66.67"
        assert data["net_amount"] == "33.33"
        assert data["unused_percentage"] == "0.333333"
        assert data["currency"] == "PEN"

    def test_downgrade_produces_credit(self, proration_engine, plan_a, plan_b):
        subscription = make_plan_subscription(plan_b)
        calculation = proration_engine.calculate_proration(subscription, plan_a, "PEN", utc(2025, 1, 21))

        assert calculation.net_amount < 0
        assert calculation.net_amount.quantize(CENT) == Decimal("-33.33")
        assert "crédito a favor" in calculation.description

    @pytest.mark.parametrize("offset_hours", [0, 1, 23, 24, 100, 359, 500, 719])
    def test_bounds_hold_for_any_date_before_end(self, proration_engine, plan_a, plan_b, offset_hours):
        subscription = make_plan_subscription(plan_a)
        change_date = utc(2025, 1, 1) + timedelta(hours=offset_hours)
        calculation = proration_engine.calculate_proration(subscription, plan_b, "PEN", change_date)

        assert 0 < calculation.remaining_days <= calculation.total_days
        assert Decimal("0") < calculation.unused_percentage <= Decimal("1")
        assert calculation.net_amount == calculation.charge_amount - calculation.credit_amount

    def test_change_at_period_end_fails(self, proration_engine, plan_a, plan_b):
        subscription = make_plan_subscription(plan_a)

        with pytest.raises(BusinessRuleError):
            proration_engine.calculate_proration(subscription, plan_b, "PEN", utc(2025, 1, 31))

    def test_change_after_period_end_fails(self, proration_engine, plan_a, plan_b):
        subscription = make_plan_subscription(plan_a)

        with pytest.raises(ValidationError):
            proration_engine.calculate_proration(subscription, plan_b, "PEN", utc(2025, 2, 1))

    def test_same_plan_fails(self, proration_engine, plan_a):
        subscription = make_plan_subscription(plan_a)

        with pytest.raises(ValidationError) as exc_info:
            proration_engine.calculate_proration(subscription, plan_a, "PEN", utc(2025, 1, 21))
        assert exc_info.value.status_code == 422

    def test_all_violations_are_reported(self, proration_engine):
        current_plan = make_plan("Actual", {"PEN": "abc"})
        new_plan = make_plan("Nuevo", {"PEN": "-10"})
        subscription = make_plan_subscription(current_plan)

        with pytest.raises(ValidationError) as exc_info:
            proration_engine.calculate_proration(subscription, new_plan, "PEN", utc(2025, 3, 1))

        errors = exc_info.value.errors
        assert len(errors) == 3
        assert any("no es numérico" in error for error in errors)
        assert any("negativo" in error for error in errors)

    def test_missing_currency_is_not_treated_as_zero(self, proration_engine, plan_a, plan_b):
        subscription = make_plan_subscription(plan_a)

        with pytest.raises(ValidationError) as exc_info:
            proration_engine.calculate_proration(subscription, plan_b, "EUR", utc(2025, 1, 21))
        assert len(exc_info.value.errors) == 2


class TestCancellationRefund:
    """Reembolso por cancelación"""

    def test_refund_for_unused_days(self, proration_engine, plan_a):
        subscription = make_plan_subscription(plan_a)
        refund = proration_engine.calculate_cancellation_refund(subscription, "PEN", utc(2025, 1, 21))

        assert refund.remaining_days == 10
        assert refund.total_days == 30
        assert refund.refund_amount.quantize(CENT) == Decimal("33.33")

    def test_cancel_day_after_end_has_no_refund(self, proration_engine, plan_a):
        subscription = make_plan_subscription(plan_a)
        refund = proration_engine.calculate_cancellation_refund(subscription, "PEN", utc(2025, 2, 1))

        assert refund.refund_amount == Decimal("0")
        assert refund.remaining_days == 0
        assert refund.description == "Sin reembolso - el período de la suscripción terminó"

    def test_cancel_before_start_fails(self, proration_engine, plan_a):
        subscription = make_plan_subscription(plan_a)

        with pytest.raises(ValidationError):
            proration_engine.calculate_cancellation_refund(subscription, "PEN", utc(2024, 12, 31))

    def test_free_plan_refunds_zero(self, proration_engine):
        subscription = make_plan_subscription(make_plan("Gratis", {"PEN": "0"}))
        refund = proration_engine.calculate_cancellation_refund(subscription, "PEN", utc(2025, 1, 21))

        assert refund.remaining_days == 10
        assert refund.refund_amount == Decimal("0")


class TestRenewalPricing:
    """Precio de renovación"""

    def test_renewal_defaults_to_current_end(self, proration_engine, plan_a):
        subscription = make_plan_subscription(plan_a, utc(2025, 2, 1), utc(2025, 3, 1))
        pricing = proration_engine.calculate_renewal_pricing(subscription, plan_a, "PEN")

        assert pricing.plan_price == Decimal("100.00")
        assert pricing.billing_period.start_date == utc(2025, 3, 1)
        assert pricing.new_end_date == utc(2025, 4, 1)
        assert pricing.billing_period.total_days == 31
        assert "~30 días" in pricing.description

    def test_renewal_with_explicit_duration(self, proration_engine, plan_a):
        subscription = make_plan_subscription(plan_a, utc(2025, 2, 1), utc(2025, 3, 1))
        pricing = proration_engine.calculate_renewal_pricing(
            subscription, plan_a, "PEN", duration=10, duration_period=DurationPeriod.DAY
        )

        assert pricing.new_end_date == utc(2025, 3, 11)
        assert "10 día(s)" in pricing.description

    def test_renewal_requires_price_in_currency(self, proration_engine, plan_a):
        subscription = make_plan_subscription(plan_a)

        with pytest.raises(ValidationError):
            proration_engine.calculate_renewal_pricing(subscription, plan_a, "EUR")


class TestMoneyRounding:
    """Redondeo de montos según MONEY_DECIMAL_PLACES"""

    def test_quantum_follows_settings(self):
        assert MONEY_QUANTUM == Decimal(1).scaleb(-settings.MONEY_DECIMAL_PLACES)
        assert quantize_money(Decimal("33.335")) == Decimal("33.34")
        assert quantize_money(None) is None

    def test_decimal_places_must_fit_money_columns(self):
        with pytest.raises(ValueError):
            Settings(MONEY_DECIMAL_PLACES=3)


# ===== TESTS DEL SERVICIO DE TRANSICIONES =====

class TestUpgrade:
    """Upgrade de plan"""

    def test_upgrade_with_proration(self, service, db_session, organization, plans, subscription, publisher):
        actor_id = uuid4()
        result = service.upgrade(organization.id, PlanChangeRequest(new_plan_id=plans["premium"].id), actor_id)

        assert result.success is True
        assert result.proration.remaining_days == 10
        assert result.proration.total_days == 30
        assert result.proration.net_amount.quantize(Decimal("0.01")) == Decimal("33.33")
        assert result.requires_payment is True

        assert result.new_subscription.subscription_plan_id == plans["premium"].id
        assert as_utc(result.new_subscription.start_date) == utc(2025, 1, 21)
        assert as_utc(result.new_subscription.end_date) == utc(2025, 2, 28)

        assert result.operation.operation_type == SubscriptionOperationType.UPGRADE
        assert result.operation.proration_amount == Decimal("33.33")
        assert result.operation.executed_by_user_id == actor_id
        assert as_utc(result.operation.previous_end_date) == utc(2025, 1, 31)

        actives = active_subscriptions(db_session, organization.id)
        assert len(actives) == 1
        assert actives[0].id == result.new_subscription.id

        db_session.refresh(subscription)
        assert subscription.is_active is False
        assert subscription.status == SubscriptionStatus.EXPIRED.value

        assert len(publisher.events) == 1
        assert publisher.events[0].action == SubscriptionAction.SUBSCRIPTION_UPGRADE
        assert publisher.events[0].operation_id == result.operation.id

    def test_upgrade_at_period_end(self, service, organization, plans, subscription):
        result = service.upgrade(
            organization.id,
            PlanChangeRequest(new_plan_id=plans["premium"].id, immediate=False)
        )

        assert result.proration is None
        assert result.requires_payment is True
        assert as_utc(result.effective_date) == utc(2025, 1, 31)
        assert as_utc(result.new_subscription.start_date) == utc(2025, 1, 31)
        assert as_utc(result.new_subscription.end_date) == utc(2025, 2, 28)

    def test_upgrade_without_proration(self, service, organization, plans, subscription):
        result = service.upgrade(
            organization.id,
            PlanChangeRequest(new_plan_id=plans["premium"].id, proration_enabled=False)
        )

        assert result.proration is None
        assert result.operation.proration_amount is None

    def test_upgrade_without_active_subscription(self, service, organization, plans):
        with pytest.raises(BusinessRuleError) as exc_info:
            service.upgrade(organization.id, PlanChangeRequest(new_plan_id=plans["premium"].id))
        assert exc_info.value.status_code == 400

    def test_upgrade_unknown_organization(self, service, plans):
        with pytest.raises(NotFoundError):
            service.upgrade(uuid4(), PlanChangeRequest(new_plan_id=plans["premium"].id))

    def test_upgrade_unknown_plan(self, service, organization, subscription):
        with pytest.raises(NotFoundError) as exc_info:
            service.upgrade(organization.id, PlanChangeRequest(new_plan_id=uuid4()))
        assert exc_info.value.status_code == 404

    def test_upgrade_inactive_plan(self, service, db_session, organization, plans, subscription):
        plans["premium"].is_active = False
        db_session.commit()

        with pytest.raises(NotFoundError):
            service.upgrade(organization.id, PlanChangeRequest(new_plan_id=plans["premium"].id))

    def test_upgrade_to_same_plan(self, service, organization, plans, subscription):
        with pytest.raises(ValidationError) as exc_info:
            service.upgrade(organization.id, PlanChangeRequest(new_plan_id=plans["basic"].id))
        assert exc_info.value.status_code == 422

    def test_upgrade_after_expiration_leaves_state_untouched(
        self, service, db_session, organization, plans, subscription, clock, publisher
    ):
        clock.now = utc(2025, 2, 5)

        with pytest.raises(ValidationError):
            service.upgrade(organization.id, PlanChangeRequest(new_plan_id=plans["premium"].id))

        actives = active_subscriptions(db_session, organization.id)
        assert [active.id for active in actives] == [subscription.id]
        assert operation_count(db_session, organization.id) == 0
        assert publisher.events == []


class TestDowngrade:
    """Downgrade con validación de límites"""

    def test_downgrade_rejected_lists_every_limit(
        self, service, db_session, organization, plans, premium_subscription, add_usage
    ):
        add_usage(gyms=2, clients_per_gym=15, collaborators_per_gym=3)

        with pytest.raises(ValidationError) as exc_info:
            service.downgrade(organization.id, PlanChangeRequest(new_plan_id=plans["basic"].id))

        errors = exc_info.value.errors
        assert len(errors) == 3
        assert any(error.startswith("Gimnasios") for error in errors)
        assert any(error.startswith("Clientes") for error in errors)
        assert any(error.startswith("Colaboradores") for error in errors)
        assert exc_info.value.retriable is False

        actives = active_subscriptions(db_session, organization.id)
        assert [active.id for active in actives] == [premium_subscription.id]

    def test_downgrade_rejected_on_single_limit(
        self, service, organization, plans, premium_subscription, add_usage
    ):
        add_usage(gyms=1, clients_per_gym=11, collaborators_per_gym=2)

        with pytest.raises(ValidationError) as exc_info:
            service.downgrade(organization.id, PlanChangeRequest(new_plan_id=plans["basic"].id))

        assert len(exc_info.value.errors) == 1
        assert exc_info.value.errors[0].startswith("Clientes")

    def test_downgrade_within_limits(
        self, service, db_session, organization, plans, premium_subscription, add_usage, publisher
    ):
        add_usage(gyms=1, clients_per_gym=10, collaborators_per_gym=2)

        result = service.downgrade(organization.id, PlanChangeRequest(new_plan_id=plans["basic"].id))

        assert result.proration.net_amount < 0
        assert result.operation.proration_amount == Decimal("-33.33")
        assert result.requires_payment is False
        assert len(active_subscriptions(db_session, organization.id)) == 1
        assert publisher.events[0].action == SubscriptionAction.SUBSCRIPTION_DOWNGRADE

    def test_scheduled_downgrade_keeps_current_plan_until_period_end(
        self, service, db_session, organization, plans, premium_subscription, publisher
    ):
        result = service.downgrade(
            organization.id, PlanChangeRequest(new_plan_id=plans["basic"].id, immediate=False)
        )

        active = crud.get_active_subscription(db_session, organization.id)
        assert active.id == premium_subscription.id
        assert active.subscription_plan_id == plans["premium"].id
        assert as_utc(active.end_date) == utc(2025, 1, 31)

        assert result.proration is None
        assert result.old_subscription.is_active is True
        assert result.new_subscription.status == SubscriptionStatus.PENDING_UPGRADE
        assert result.new_subscription.is_active is False
        assert as_utc(result.new_subscription.start_date) == utc(2025, 1, 31)
        assert as_utc(result.new_subscription.end_date) == utc(2025, 2, 28)
        assert as_utc(result.effective_date) == utc(2025, 1, 31)
        assert result.operation.proration_amount is None
        assert publisher.events[0].data["scheduled"] is True

    def test_second_scheduled_change_is_rejected(
        self, service, organization, plans, premium_subscription
    ):
        service.downgrade(organization.id, PlanChangeRequest(new_plan_id=plans["basic"].id, immediate=False))

        with pytest.raises(ValidationError) as exc_info:
            service.downgrade(organization.id, PlanChangeRequest(new_plan_id=plans["free"].id, immediate=False))

        assert any(error.startswith("Ya existe un cambio programado al plan Basic") for error in exc_info.value.errors)

    def test_immediate_change_discards_scheduled_one(
        self, service, db_session, organization, plans, premium_subscription
    ):
        scheduled = service.downgrade(
            organization.id, PlanChangeRequest(new_plan_id=plans["basic"].id, immediate=False)
        )

        result = service.downgrade(organization.id, PlanChangeRequest(new_plan_id=plans["free"].id))

        discarded = crud.get_subscription(db_session, scheduled.new_subscription.id)
        assert discarded.status == SubscriptionStatus.INACTIVE.value
        assert discarded.is_active is False
        assert crud.get_pending_subscription(db_session, organization.id) is None
        assert [active.id for active in active_subscriptions(db_session, organization.id)] == [
            result.new_subscription.id
        ]


class TestRenew:
    """Renovación"""

    @pytest.fixture
    def expiring_subscription(self, db_session, organization, plans):
        subscription = SubscriptionOrganization(
            organization_id=organization.id,
            subscription_plan_id=plans["basic"].id,
            start_date=utc(2025, 2, 1),
            end_date=utc(2025, 3, 1),
            is_active=True
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    def test_renew_same_plan_extends_current(
        self, service, db_session, organization, plans, expiring_subscription, clock, publisher
    ):
        clock.now = utc(2025, 2, 20)

        result = service.renew(organization.id, RenewalRequest())

        assert as_utc(result.new_subscription.start_date) == utc(2025, 3, 1)
        assert as_utc(result.new_subscription.end_date) == utc(2025, 4, 1)
        assert result.new_subscription.subscription_plan_id == plans["basic"].id
        assert result.operation.operation_type == SubscriptionOperationType.RENEWAL
        assert as_utc(result.operation.previous_end_date) == utc(2025, 3, 1)
        assert result.renewal_pricing.plan_price == Decimal("100.00")
        assert result.requires_payment is True
        assert result.warnings == []

        actives = active_subscriptions(db_session, organization.id)
        assert [active.id for active in actives] == [result.new_subscription.id]
        assert publisher.events[0].action == SubscriptionAction.SUBSCRIPTION_RENEWAL

    def test_renew_with_plan_change_and_duration(
        self, service, organization, plans, expiring_subscription, clock
    ):
        clock.now = utc(2025, 2, 20)

        result = service.renew(
            organization.id,
            RenewalRequest(plan_id=plans["premium"].id, duration=3, duration_period="MONTH")
        )

        assert result.new_subscription.subscription_plan_id == plans["premium"].id
        assert as_utc(result.new_subscription.end_date) == utc(2025, 6, 1)
        assert result.operation.notes.startswith("Renovación con cambio de plan")

    def test_renew_free_plan_requires_no_payment(
        self, service, organization, plans, expiring_subscription, clock
    ):
        clock.now = utc(2025, 2, 20)

        result = service.renew(organization.id, RenewalRequest(plan_id=plans["free"].id))

        assert result.requires_payment is False
        assert as_utc(result.new_subscription.end_date) == utc(2025, 3, 15)

    def test_renew_expired_subscription_warns(self, service, organization, subscription, clock):
        clock.now = utc(2025, 2, 10)

        result = service.renew(organization.id, RenewalRequest())

        assert as_utc(result.new_subscription.start_date) == utc(2025, 2, 10)
        assert as_utc(result.new_subscription.end_date) == utc(2025, 3, 10)
        assert len(result.warnings) == 2

    def test_renew_without_extending(self, service, organization, subscription, clock):
        clock.now = utc(2025, 1, 21)

        result = service.renew(
            organization.id,
            RenewalRequest(extend_current=False, effective_date=utc(2025, 1, 21))
        )

        assert as_utc(result.new_subscription.start_date) == utc(2025, 1, 21)
        assert as_utc(result.new_subscription.end_date) == utc(2025, 2, 21)


class TestCancel:
    """Cancelación"""

    def test_immediate_cancellation_truncates_period(
        self, service, db_session, organization, subscription, publisher
    ):
        actor_id = uuid4()
        result = service.cancel(
            organization.id,
            CancellationRequest(
                reason=CancellationReason.COST_TOO_HIGH,
                reason_description="Muy caro",
                immediate=True,
                retention_offered=True,
                retention_details="20% de descuento"
            ),
            actor_id
        )

        assert result.refund.refund_amount.quantize(Decimal("0.01")) == Decimal("33.33")
        assert result.cancellation.refund_amount == Decimal("33.33")
        assert result.cancellation.reason == CancellationReason.COST_TOO_HIGH
        assert result.cancellation.requested_by_user_id == actor_id
        assert result.operation.operation_type == SubscriptionOperationType.CANCELLATION
        assert result.operation.to_subscription_plan_id is None

        db_session.refresh(subscription)
        assert subscription.is_active is False
        assert subscription.status == SubscriptionStatus.INACTIVE.value
        assert as_utc(subscription.end_date) == utc(2025, 1, 21)
        assert active_subscriptions(db_session, organization.id) == []

        cancellation = db_session.execute(select(SubscriptionCancellation)).scalar_one()
        assert cancellation.operation_id == result.operation.id
        assert cancellation.retention_offered is True
        assert publisher.events[0].action == SubscriptionAction.SUBSCRIPTION_CANCELLATION

    def test_end_of_period_cancellation_keeps_subscription(
        self, service, db_session, organization, subscription
    ):
        result = service.cancel(organization.id, CancellationRequest(reason=CancellationReason.OTHER))

        assert result.cancellation.immediate is False
        assert result.refund.refund_amount == Decimal("0")
        assert as_utc(result.operation.new_end_date) == utc(2025, 1, 31)

        db_session.refresh(subscription)
        assert subscription.is_active is True
        assert as_utc(subscription.end_date) == utc(2025, 1, 31)

    def test_cancel_day_after_end(self, service, organization, subscription, clock):
        clock.now = utc(2025, 2, 1)

        result = service.cancel(
            organization.id,
            CancellationRequest(reason=CancellationReason.BUSINESS_CLOSURE, immediate=True)
        )

        assert result.refund.refund_amount == Decimal("0")
        assert result.refund.remaining_days == 0
        assert "La suscripción ya está vencida" in result.warnings

    def test_cancel_without_refund(self, service, organization, subscription):
        result = service.cancel(
            organization.id,
            CancellationRequest(reason=CancellationReason.OTHER, immediate=True, refund_enabled=False)
        )

        assert result.refund is None
        assert result.cancellation.refund_amount is None
        assert result.operation.proration_amount is None

    def test_cancel_without_active_subscription(self, service, organization):
        with pytest.raises(BusinessRuleError):
            service.cancel(organization.id, CancellationRequest(reason=CancellationReason.OTHER))


class TestIdempotency:
    """Claves de idempotencia"""

    def test_repeated_key_replays_result(self, service, db_session, organization, plans, subscription, publisher):
        request = PlanChangeRequest(new_plan_id=plans["premium"].id, idempotency_key="upgrade-001")

        first = service.upgrade(organization.id, request)
        second = service.upgrade(organization.id, request)

        assert second.replayed is True
        assert second.operation.id == first.operation.id
        assert second.new_subscription.id == first.new_subscription.id
        assert second.requires_payment is True
        assert operation_count(db_session, organization.id) == 1
        assert len(active_subscriptions(db_session, organization.id)) == 1
        assert len(publisher.events) == 1

    def test_repeated_cancellation_key_replays_result(self, service, organization, subscription):
        request = CancellationRequest(reason=CancellationReason.OTHER, immediate=True, idempotency_key="cancel-001")

        first = service.cancel(organization.id, request)
        second = service.cancel(organization.id, request)

        assert second.replayed is True
        assert second.cancellation.id == first.cancellation.id

    def test_key_reused_for_other_operation(self, service, organization, plans, subscription):
        service.upgrade(
            organization.id,
            PlanChangeRequest(new_plan_id=plans["premium"].id, idempotency_key="k-1")
        )

        with pytest.raises(DuplicateOperationError) as exc_info:
            service.cancel(
                organization.id,
                CancellationRequest(reason=CancellationReason.OTHER, idempotency_key="k-1")
            )
        assert exc_info.value.status_code == 409
        assert exc_info.value.retriable is False


class TestAtomicity:
    """Conflictos concurrentes y atomicidad"""

    def test_lost_race_raises_retriable_conflict(
        self, service, db_session, organization, plans, subscription, monkeypatch, publisher
    ):
        monkeypatch.setattr(crud, "deactivate_subscription", lambda *args, **kwargs: 0)

        with pytest.raises(ConflictError) as exc_info:
            service.upgrade(organization.id, PlanChangeRequest(new_plan_id=plans["premium"].id))

        assert exc_info.value.retriable is True
        assert exc_info.value.status_code == 409
        assert [active.id for active in active_subscriptions(db_session, organization.id)] == [subscription.id]
        assert operation_count(db_session, organization.id) == 0
        assert publisher.events == []

    def test_instance_replaced_while_waiting_for_lock(
        self, service, db_session, organization, plans, subscription, monkeypatch, publisher
    ):
        lock_organization = service._lock_organization

        def lock_after_concurrent_upgrade(organization_id):
            # La otra transición confirma mientras ésta espera el cerrojo
            crud.deactivate_subscription(db_session, subscription.id)
            crud.create_subscription(
                db_session,
                organization_id=organization.id,
                plan_id=plans["premium"].id,
                start_date=utc(2025, 1, 21),
                end_date=utc(2025, 2, 28)
            )
            return lock_organization(organization_id)

        monkeypatch.setattr(service, "_lock_organization", lock_after_concurrent_upgrade)

        with pytest.raises(ConflictError) as exc_info:
            service.upgrade(organization.id, PlanChangeRequest(new_plan_id=plans["premium"].id))

        assert exc_info.value.retriable is True
        assert exc_info.value.status_code == 409
        assert [active.id for active in active_subscriptions(db_session, organization.id)] == [subscription.id]
        assert operation_count(db_session, organization.id) == 0
        assert publisher.events == []

    def test_instance_cancelled_while_waiting_for_lock(
        self, service, db_session, organization, plans, subscription, monkeypatch
    ):
        lock_organization = service._lock_organization

        def lock_after_concurrent_cancellation(organization_id):
            crud.deactivate_subscription(db_session, subscription.id, status=SubscriptionStatus.INACTIVE)
            return lock_organization(organization_id)

        monkeypatch.setattr(service, "_lock_organization", lock_after_concurrent_cancellation)

        with pytest.raises(ConflictError) as exc_info:
            service.renew(organization.id, RenewalRequest())

        assert exc_info.value.retriable is True

    def test_concurrent_retry_with_same_key_replays(
        self, service, db_session, organization, plans, subscription, monkeypatch, publisher
    ):
        lock_organization = service._lock_organization

        def lock_after_first_attempt(organization_id):
            crud.deactivate_subscription(db_session, subscription.id)
            new_subscription = crud.create_subscription(
                db_session,
                organization_id=organization.id,
                plan_id=plans["premium"].id,
                start_date=utc(2025, 1, 21),
                end_date=utc(2025, 2, 28)
            )
            crud.create_operation(
                db_session,
                organization_id=organization.id,
                from_subscription_plan_id=plans["basic"].id,
                to_subscription_plan_id=plans["premium"].id,
                previous_subscription_id=subscription.id,
                new_subscription_id=new_subscription.id,
                operation_type=SubscriptionOperationType.UPGRADE.value,
                effective_date=utc(2025, 1, 21),
                previous_end_date=utc(2025, 1, 31),
                new_end_date=utc(2025, 2, 28),
                proration_amount=Decimal("33.33"),
                currency="PEN",
                idempotency_key="k-race",
                created_at=utc(2025, 1, 21)
            )
            return lock_organization(organization_id)

        monkeypatch.setattr(service, "_lock_organization", lock_after_first_attempt)

        result = service.upgrade(
            organization.id,
            PlanChangeRequest(new_plan_id=plans["premium"].id, idempotency_key="k-race")
        )

        assert result.replayed is True
        assert result.operation.proration_amount == Decimal("33.33")
        assert result.requires_payment is True
        assert operation_count(db_session, organization.id) == 1
        assert publisher.events == []

    def test_unique_index_violation_becomes_conflict(
        self, service, db_session, organization, plans, subscription, monkeypatch
    ):
        # Simula otra transacción que no desactivó la instancia actual
        monkeypatch.setattr(crud, "deactivate_subscription", lambda *args, **kwargs: 1)

        with pytest.raises(ConflictError):
            service.upgrade(organization.id, PlanChangeRequest(new_plan_id=plans["premium"].id))

        assert [active.id for active in active_subscriptions(db_session, organization.id)] == [subscription.id]
        assert operation_count(db_session, organization.id) == 0

    def test_database_rejects_second_active_instance(self, db_session, organization, plans, subscription):
        db_session.add(SubscriptionOrganization(
            organization_id=organization.id,
            subscription_plan_id=plans["premium"].id,
            start_date=utc(2025, 1, 1),
            end_date=utc(2025, 1, 31),
            is_active=True
        ))

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_publisher_failure_does_not_undo_commit(self, db_session, organization, plans, subscription, clock):
        class FailingPublisher:
            def publish(self, event):
                raise RuntimeError("broker caído")

        service = SubscriptionTransitionService(db_session, publisher=FailingPublisher(), clock=clock)
        result = service.upgrade(organization.id, PlanChangeRequest(new_plan_id=plans["premium"].id))

        actives = active_subscriptions(db_session, organization.id)
        assert [active.id for active in actives] == [result.new_subscription.id]


class TestReadOperations:
    """Operaciones de lectura"""

    def test_calculate_proration_is_read_only(self, service, db_session, organization, plans, subscription):
        calculation = service.calculate_proration(organization.id, plans["premium"].id)

        assert calculation.remaining_days == 10
        assert calculation.currency == "PEN"
        assert operation_count(db_session, organization.id) == 0
        assert [active.id for active in active_subscriptions(db_session, organization.id)] == [subscription.id]

    def test_calculate_proration_in_other_currency(self, service, organization, plans, subscription):
        calculation = service.calculate_proration(organization.id, plans["premium"].id, currency="usd")

        assert calculation.currency == "USD"
        assert calculation.net_amount.quantize(Decimal("0.01")) == Decimal("10.00")

    def test_subscription_period(self, service, organization, subscription):
        period = service.get_subscription_period(organization.id)

        assert period.current.total_days == 30
        assert period.days_until_expiration == 10
        assert period.renewal_window.is_active is True
        assert period.next is not None

    def test_list_operations_newest_first(self, service, organization, plans, subscription):
        service.upgrade(organization.id, PlanChangeRequest(new_plan_id=plans["premium"].id))
        service.cancel(organization.id, CancellationRequest(reason=CancellationReason.OTHER, immediate=True))

        history = service.list_operations(organization.id)

        assert history.total == 2
        assert [operation.operation_type for operation in history.operations] == [
            SubscriptionOperationType.CANCELLATION,
            SubscriptionOperationType.UPGRADE
        ]

    def test_list_operations_unknown_organization(self, service):
        with pytest.raises(NotFoundError):
            service.list_operations(uuid4())


# ===== TESTS DE EVENTOS DE AUDITORÍA =====

class TestSanitize:
    def test_sensitive_keys_are_masked(self):
        data = {
            "plan": "Premium",
            "payment": {"card_number": "4111111111111111", "amount": "33.33"},
            "api_key": "secret-value"
        }

        assert sanitize(data) == {
            "plan": "Premium",
            "payment": {"card_number": "***", "amount": "33.33"},
            "api_key": "***"
        }


class TestAuditLogger:
    def test_record_logs_audit_line(self, caplog):
        event = make_event(to_plan_id="premium", token="abc")

        with caplog.at_level(logging.INFO, logger="app.modules.subscriptions.events"):
            entry = AuditLogger().record(event)

        assert entry["action"] == "SUBSCRIPTION_UPGRADE"
        assert entry["details"]["token"] == "***"
        assert any(
            record.getMessage().startswith("AUDIT: SUBSCRIPTION_UPGRADE subscription_operation")
            for record in caplog.records
        )


class TestPublishers:
    def test_default_publisher_is_inline(self):
        assert settings.SUBSCRIPTION_EVENTS_ASYNC is False
        assert isinstance(get_event_publisher(), InlineEventPublisher)

    def test_inline_publisher_records_event(self):
        recorded = []

        class Sink(AuditLogger):
            def record(self, event):
                recorded.append(event)

        event = make_event()
        InlineEventPublisher(Sink()).publish(event)

        assert recorded == [event]

    def test_celery_publisher_enqueues_json_payload(self, monkeypatch):
        payloads = []
        monkeypatch.setattr(tasks.deliver_subscription_event, "delay", lambda payload: payloads.append(payload))

        event = make_event(currency="PEN")
        CeleryEventPublisher().publish(event)

        assert len(payloads) == 1
        assert payloads[0]["action"] == "SUBSCRIPTION_UPGRADE"
        assert payloads[0]["operation_id"] == str(event.operation_id)

    def test_delivery_task_records_event(self):
        event = make_event()

        result = tasks.deliver_subscription_event.run(event.model_dump(mode="json"))

        assert result["status"] == "success"
        assert result["operation_id"] == str(event.operation_id)


# ===== TESTS DE API =====

class TestSubscriptionEndpoints:
    """Endpoints de transición"""

    def test_upgrade(self, client, organization, plans, subscription):
        actor_id = uuid4()
        response = client.post(
            f"{base_url(organization.id)}/upgrade",
            json={"new_plan_id": str(plans["premium"].id)},
            headers={"X-User-Id": str(actor_id)}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["proration"]["net_amount"] == "33.33"
        assert data["proration"]["credit_amount"] == "33.33"
        assert data["proration"]["charge_amount"] == "66.67"
        assert data["proration"]["currency"] == "PEN"
        assert data["operation"]["proration_amount"] == "33.33"
        assert data["operation"]["executed_by_user_id"] == str(actor_id)
        assert data["requires_payment"] is True

    def test_downgrade_usage_violation(self, client, organization, plans, premium_subscription, add_usage):
        add_usage(gyms=2, clients_per_gym=15, collaborators_per_gym=3)

        response = client.post(
            f"{base_url(organization.id)}/downgrade",
            json={"new_plan_id": str(plans["basic"].id)}
        )

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert len(detail["errors"]) == 3
        assert detail["retriable"] is False

    def test_upgrade_without_subscription(self, client, organization, plans):
        response = client.post(
            f"{base_url(organization.id)}/upgrade",
            json={"new_plan_id": str(plans["premium"].id)}
        )

        assert response.status_code == 400

    def test_unknown_organization(self, client, plans):
        response = client.post(
            f"{base_url(uuid4())}/upgrade",
            json={"new_plan_id": str(plans["premium"].id)}
        )

        assert response.status_code == 404

    def test_renew_accepts_iso_dates(self, client, organization, subscription):
        response = client.post(
            f"{base_url(organization.id)}/renew",
            json={"effective_date": "2025-01-21T00:00:00Z", "extend_current": False}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["operation"]["operation_type"] == "renewal"
        assert data["renewal_pricing"]["plan_price"] == "100.00"
        assert data["new_subscription"]["end_date"].startswith("2025-02-21")

    def test_cancel(self, client, organization, subscription):
        response = client.post(
            f"{base_url(organization.id)}/cancel",
            json={"reason": "switching_providers", "immediate": True}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["cancellation"]["reason"] == "switching_providers"
        assert data["refund"]["refund_amount"] == "33.33"
        assert data["subscription"]["is_active"] is False

    def test_cancel_with_unknown_reason(self, client, organization, subscription):
        response = client.post(
            f"{base_url(organization.id)}/cancel",
            json={"reason": "too_many_emails"}
        )

        assert response.status_code == 422


class TestReadEndpoints:
    """Endpoints de lectura"""

    def test_proration_preview(self, client, organization, plans, subscription):
        response = client.get(
            f"{base_url(organization.id)}/proration",
            params={"new_plan_id": str(plans["premium"].id), "change_date": "2025-01-21T00:00:00+00:00"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["remaining_days"] == 10
        assert data["total_days"] == 30
        assert data["net_amount"] == "33.33"

    def test_proration_at_period_end(self, client, organization, plans, subscription):
        response = client.get(
            f"{base_url(organization.id)}/proration",
            params={"new_plan_id": str(plans["premium"].id), "change_date": "2025-01-31T00:00:00+00:00"}
        )

        assert response.status_code == 400

    def test_period(self, client, organization, subscription):
        response = client.get(f"{base_url(organization.id)}/period")

        assert response.status_code == 200
        data = response.json()
        assert data["days_until_expiration"] == 10
        assert data["current"]["total_days"] == 30

    def test_operations(self, client, organization, plans, subscription):
        client.post(
            f"{base_url(organization.id)}/upgrade",
            json={"new_plan_id": str(plans["premium"].id)}
        )

        response = client.get(f"{base_url(organization.id)}/operations", params={"limit": 10})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["limit"] == 10
        assert data["operations"][0]["operation_type"] == "upgrade"


# ===== TESTS DE CATÁLOGO DE PLANES =====

class TestSeedPlans:
    def test_seed_is_idempotent(self, db_session):
        seed_plans(db_session)
        seed_plans(db_session)

        names = {plan.name for plan in get_plans(db_session)}
        assert names == {plan["name"] for plan in DEFAULT_PLANS}
        assert len(get_plans(db_session)) == len(DEFAULT_PLANS)

    def test_seeded_prices_are_typed(self, db_session):
        seed_plans(db_session)

        assert get_plan_by_name(db_session, "Plan Gratuito").is_free is True
        premium = get_plan_by_name(db_session, "Plan Premium")
        assert premium.is_free is False
        assert premium.prices == {"PEN": Decimal("249.00"), "USD": Decimal("69.00")}

    def test_seed_updates_existing_plan(self, db_session):
        seed_plans(db_session)
        changed = [dict(plan) for plan in DEFAULT_PLANS]
        changed[1]["price"] = {"PEN": "109.00", "USD": "32.00"}

        seed_plans(db_session, changed)

        assert get_plan_by_name(db_session, "Plan Básico").prices["PEN"] == Decimal("109.00")
