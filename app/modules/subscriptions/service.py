"""
Servicio de transiciones de suscripción

Orquesta el ciclo de vida de la suscripción de una organización:
- Upgrade y downgrade de plan (con prorrateo opcional), inmediatos o
  programados para el fin del período
- Renovación (mismo plan o cambio de plan, duración explícita)
- Cancelación inmediata o al final del período (con reembolso opcional)
- Vista previa de prorrateo, resumen del período e historial

Cada escritura es una unidad atómica: desactivar la instancia actual, crear
la nueva y registrar la operación se confirman juntas o no se confirma nada.
Los eventos de auditoría se publican después del commit.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.common.exceptions import (
    NotFoundError, ValidationError, BusinessRuleError, ConflictError, DuplicateOperationError
)
from app.modules.organizations import crud as organization_crud
from . import crud
from .billing_period import BillingPeriodCalculator, as_utc, utc_now
from .events import EventPublisher, SubscriptionAction, SubscriptionEvent, get_event_publisher
from .models import (
    SubscriptionOrganization, SubscriptionPlan, SubscriptionOperation,
    SubscriptionOperationType, SubscriptionStatus
)
from .proration import ProrationEngine
from .schemas import (
    PlanChangeRequest, RenewalRequest, CancellationRequest,
    ProrationCalculation, SubscriptionPeriod,
    SubscriptionOut, OperationOut, CancellationOut,
    TransitionResult, CancellationResult, OperationList, quantize_money
)

logger = logging.getLogger(__name__)

ACTIONS = {
    SubscriptionOperationType.UPGRADE: SubscriptionAction.SUBSCRIPTION_UPGRADE,
    SubscriptionOperationType.DOWNGRADE: SubscriptionAction.SUBSCRIPTION_DOWNGRADE,
    SubscriptionOperationType.RENEWAL: SubscriptionAction.SUBSCRIPTION_RENEWAL,
    SubscriptionOperationType.CANCELLATION: SubscriptionAction.SUBSCRIPTION_CANCELLATION,
}


class SubscriptionTransitionService:
    """Orquestador de transiciones de suscripción para una organización."""

    def __init__(
        self,
        db: Session,
        publisher: Optional[EventPublisher] = None,
        calculator: Optional[BillingPeriodCalculator] = None,
        proration_engine: Optional[ProrationEngine] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.calculator = calculator or BillingPeriodCalculator()
        self.proration_engine = proration_engine or ProrationEngine(self.calculator)
        self.publisher = publisher or get_event_publisher()
        self.clock = clock or utc_now

    def _now(self) -> datetime:
        return as_utc(self.clock())

    # ===== OPERACIONES =====

    def upgrade(
        self,
        organization_id: UUID,
        request: PlanChangeRequest,
        actor_id: Optional[UUID] = None
    ) -> TransitionResult:
        """Cambiar a un plan superior."""
        return self._change_plan(organization_id, request, actor_id, SubscriptionOperationType.UPGRADE)

    def downgrade(
        self,
        organization_id: UUID,
        request: PlanChangeRequest,
        actor_id: Optional[UUID] = None
    ) -> TransitionResult:
        """Cambiar a un plan inferior; el uso actual debe caber en los límites del nuevo plan."""
        return self._change_plan(organization_id, request, actor_id, SubscriptionOperationType.DOWNGRADE)

    def renew(
        self,
        organization_id: UUID,
        request: RenewalRequest,
        actor_id: Optional[UUID] = None
    ) -> TransitionResult:
        """
        Renovar la suscripción.

        Sin `plan_id` se renueva el plan actual. Con `extend_current` el nuevo
        período arranca al fin del período actual (o en la fecha efectiva si es
        posterior).
        """
        operation_type = SubscriptionOperationType.RENEWAL
        logger.info(f"Renovación solicitada para organización {organization_id}")

        def work():
            replay, currency, current = self._begin_transition(
                organization_id, request.idempotency_key, operation_type
            )
            if replay is not None:
                return replay, []

            plan = self.load_plan(request.plan_id or current.subscription_plan_id)
            now = self._now()

            effective_date = self.calculator.optimal_effective_date(
                operation_type, current, request.effective_date, now=now
            )
            current_end_date = as_utc(current.end_date)
            new_start_date = (
                max(effective_date, current_end_date) if request.extend_current else effective_date
            )
            new_end_date = self.calculator.new_end_date(
                plan,
                new_start_date,
                duration=request.duration,
                duration_period=request.duration_period
            )

            validation = self.calculator.validate_dates(
                operation_type, current, effective_date, new_end_date, now=now
            )
            if not validation.is_valid:
                raise ValidationError.from_errors(validation.errors)
            self._log_warnings(organization_id, operation_type, validation.warnings)

            pricing = self.proration_engine.calculate_renewal_pricing(
                current,
                plan,
                currency,
                renewal_date=new_start_date,
                duration=request.duration,
                duration_period=request.duration_period
            )

            notes = "Renovación"
            if plan.id != current.subscription_plan_id:
                notes += " con cambio de plan"

            old_out, new_out, operation = self._transition(
                current=current,
                target_plan=plan,
                operation_type=operation_type,
                actor_id=actor_id,
                effective_date=effective_date,
                new_start_date=new_start_date,
                new_end_date=new_end_date,
                amount=None,
                currency=currency,
                notes=f"{notes}: {pricing.description}",
                subscription_request_id=request.subscription_request_id,
                idempotency_key=request.idempotency_key
            )

            result = TransitionResult(
                old_subscription=old_out,
                new_subscription=new_out,
                operation=OperationOut.model_validate(operation),
                renewal_pricing=pricing,
                effective_date=effective_date,
                warnings=validation.warnings,
                requires_payment=pricing.plan_price > 0
            )
            return result, [self._build_event(operation, {
                "plan_id": str(plan.id),
                "plan_price": str(quantize_money(pricing.plan_price)),
                "currency": currency,
                "new_start_date": new_start_date.isoformat(),
                "new_end_date": new_end_date.isoformat(),
            })]

        return self._run_atomic(work)

    def cancel(
        self,
        organization_id: UUID,
        request: CancellationRequest,
        actor_id: Optional[UUID] = None
    ) -> CancellationResult:
        """
        Cancelar la suscripción.

        Inmediata: la instancia se desactiva y su fin pasa a ser la fecha
        efectiva. Al final del período: la instancia sigue activa hasta su
        `end_date` original y sólo se registra la cancelación.
        """
        operation_type = SubscriptionOperationType.CANCELLATION
        logger.info(
            f"Cancelación solicitada para organización {organization_id} "
            f"(inmediata={request.immediate}, motivo={request.reason.value})"
        )

        def work():
            replay, currency, current = self._begin_transition(
                organization_id, request.idempotency_key, operation_type
            )
            if replay is not None:
                return replay, []

            now = self._now()
            current_end_date = as_utc(current.end_date)

            if request.immediate:
                effective_date = self.calculator.optimal_effective_date(
                    operation_type, current, request.effective_date, now=now
                )
            else:
                effective_date = max(current_end_date, now)

            validation = self.calculator.validate_dates(operation_type, current, effective_date, now=now)
            if not validation.is_valid:
                raise ValidationError.from_errors(validation.errors)
            self._log_warnings(organization_id, operation_type, validation.warnings)

            refund = None
            if request.refund_enabled:
                refund = self.proration_engine.calculate_cancellation_refund(
                    current, currency, effective_date, plan=current.plan
                )
            refund_amount = quantize_money(refund.refund_amount) if refund else None

            if request.immediate:
                new_end_date = min(effective_date, current_end_date)
                rows = crud.deactivate_subscription(
                    self.db,
                    current.id,
                    status=SubscriptionStatus.INACTIVE,
                    end_date=new_end_date,
                    user_id=actor_id
                )
            else:
                new_end_date = current_end_date
                rows = crud.touch_active_subscription(self.db, current.id, user_id=actor_id)
            if rows != 1:
                raise ConflictError("La suscripción fue modificada por otra operación; vuelva a consultar su estado")
            crud.discard_pending_subscriptions(self.db, organization_id, user_id=actor_id)

            recorded_at = utc_now()
            operation = crud.create_operation(
                self.db,
                organization_id=organization_id,
                from_subscription_plan_id=current.subscription_plan_id,
                to_subscription_plan_id=None,
                previous_subscription_id=current.id,
                new_subscription_id=None,
                operation_type=operation_type.value,
                executed_by_user_id=actor_id,
                effective_date=effective_date,
                previous_end_date=current_end_date,
                new_end_date=new_end_date,
                proration_amount=refund_amount,
                currency=currency,
                notes=f"Cancelación ({request.reason.value})"
                      + (f": {request.reason_description}" if request.reason_description else ""),
                idempotency_key=request.idempotency_key,
                created_at=recorded_at
            )
            cancellation = crud.create_cancellation(
                self.db,
                organization_id=organization_id,
                subscription_organization_id=current.id,
                operation_id=operation.id,
                reason=request.reason.value,
                reason_description=request.reason_description,
                effective_date=effective_date,
                immediate=request.immediate,
                refund_amount=refund_amount,
                currency=currency,
                retention_offered=request.retention_offered,
                retention_details=request.retention_details,
                requested_by_user_id=actor_id,
                processed_by_user_id=actor_id,
                processed_at=recorded_at,
                created_at=recorded_at
            )

            result = CancellationResult(
                subscription=SubscriptionOut.model_validate(current),
                cancellation=CancellationOut.model_validate(cancellation),
                operation=OperationOut.model_validate(operation),
                refund=refund,
                effective_date=effective_date,
                warnings=validation.warnings
            )
            return result, [self._build_event(operation, {
                "reason": request.reason.value,
                "immediate": request.immediate,
                "refund_amount": str(refund_amount) if refund_amount is not None else None,
                "currency": currency,
                "effective_date": effective_date.isoformat(),
            })]

        return self._run_atomic(work)

    def calculate_proration(
        self,
        organization_id: UUID,
        new_plan_id: UUID,
        change_date: Optional[datetime] = None,
        currency: Optional[str] = None
    ) -> ProrationCalculation:
        """Vista previa del prorrateo de un cambio de plan. Sólo lectura."""
        currency = (currency or self._get_currency(organization_id)).upper()
        current = self.load_active_subscription(organization_id)
        new_plan = self.load_plan(new_plan_id)

        return self.proration_engine.calculate_proration(
            current, new_plan, currency, change_date or self._now(), current_plan=current.plan
        )

    def get_subscription_period(self, organization_id: UUID) -> SubscriptionPeriod:
        current = self.load_active_subscription(organization_id)
        return self.calculator.subscription_period(current, current.plan, now=self._now())

    def list_operations(self, organization_id: UUID, limit: int = 50, offset: int = 0) -> OperationList:
        """Historial de operaciones de la organización, más recientes primero."""
        self._get_organization(organization_id)
        operations = crud.get_operations(self.db, organization_id, limit=limit, offset=offset)

        return OperationList(
            operations=[OperationOut.model_validate(operation) for operation in operations],
            total=crud.count_operations(self.db, organization_id),
            limit=limit,
            offset=offset
        )

    # ===== CARGA =====

    def load_active_subscription(self, organization_id: UUID) -> SubscriptionOrganization:
        self._get_organization(organization_id)
        subscription = crud.get_active_subscription(self.db, organization_id)
        if not subscription:
            raise BusinessRuleError(f"No se encontró una suscripción activa para la organización {organization_id}")
        return subscription

    def load_plan(self, plan_id: UUID) -> SubscriptionPlan:
        plan = crud.get_plan(self.db, plan_id)
        if not plan:
            raise NotFoundError(f"Plan {plan_id} no encontrado o inactivo")
        return plan

    def _get_organization(self, organization_id: UUID):
        organization = organization_crud.get_organization(self.db, organization_id)
        if not organization:
            raise NotFoundError(f"Organización {organization_id} no encontrada")
        return organization

    def _get_currency(self, organization_id: UUID) -> str:
        organization = self._get_organization(organization_id)
        return (organization.currency or settings.DEFAULT_CURRENCY).upper()

    def _lock_organization(self, organization_id: UUID):
        """Cerrojo por organización: sus transiciones se ejecutan de a una."""
        organization = organization_crud.get_organization(self.db, organization_id, for_update=True)
        if not organization:
            raise NotFoundError(f"Organización {organization_id} no encontrada")
        return organization

    def _begin_transition(
        self,
        organization_id: UUID,
        idempotency_key: Optional[str],
        operation_type: SubscriptionOperationType
    ):
        """
        Abre una transición bajo el cerrojo de la organización.

        Devuelve (replay, moneda, instancia actual). La instancia activa se lee
        antes y después de tomar el cerrojo: si otra transición la reemplazó
        mientras se esperaba, ésta pierde la carrera con un ConflictError.
        La idempotencia se consulta ya con el cerrojo tomado, así un
        reintento concurrente con la misma clave ve la operación confirmada.
        """
        observed = crud.get_active_subscription(self.db, organization_id)
        observed_id = observed.id if observed else None

        organization = self._lock_organization(organization_id)

        replay = self._check_idempotency(organization_id, idempotency_key, operation_type)
        if replay is not None:
            return replay, None, None

        current = crud.get_active_subscription(self.db, organization_id, for_update=True)
        if observed_id is not None and (current is None or current.id != observed_id):
            logger.warning(
                f"{operation_type.value} [{organization_id}]: la instancia {observed_id} "
                f"fue reemplazada por otra transición"
            )
            raise ConflictError("La suscripción fue modificada por otra operación; vuelva a consultar su estado")
        if current is None:
            raise BusinessRuleError(f"No se encontró una suscripción activa para la organización {organization_id}")

        currency = (organization.currency or settings.DEFAULT_CURRENCY).upper()
        return None, currency, current

    # ===== INTERNOS =====

    def _change_plan(
        self,
        organization_id: UUID,
        request: PlanChangeRequest,
        actor_id: Optional[UUID],
        operation_type: SubscriptionOperationType
    ) -> TransitionResult:
        logger.info(
            f"{operation_type.value} solicitado para organización {organization_id} "
            f"hacia plan {request.new_plan_id}"
        )

        def work():
            replay, currency, current = self._begin_transition(
                organization_id, request.idempotency_key, operation_type
            )
            if replay is not None:
                return replay, []

            new_plan = self.load_plan(request.new_plan_id)
            now = self._now()
            current_end_date = as_utc(current.end_date)

            errors: List[str] = []
            if new_plan.id == current.subscription_plan_id:
                errors.append("El nuevo plan debe ser distinto del plan actual")
            if operation_type == SubscriptionOperationType.DOWNGRADE:
                errors.extend(self._validate_downgrade_constraints(organization_id, new_plan))

            scheduled = not request.immediate
            if scheduled:
                effective_date = current_end_date
                if current_end_date <= now:
                    errors.append("La suscripción ya venció; no se puede programar el cambio para el fin del período")
                pending = crud.get_pending_subscription(self.db, organization_id)
                if pending is not None:
                    errors.append(
                        f"Ya existe un cambio programado al plan {pending.plan.name} "
                        f"para el {as_utc(pending.start_date).date().isoformat()}"
                    )
            else:
                effective_date = self.calculator.optimal_effective_date(
                    operation_type, current, request.effective_date, now=now
                )

            new_end_date = self.calculator.new_end_date(
                new_plan,
                effective_date,
                extend_current=True,
                current_end_date=current_end_date
            )

            validation = self.calculator.validate_dates(
                operation_type, current, effective_date, new_end_date, now=now
            )
            errors.extend(validation.errors)
            if errors:
                raise ValidationError.from_errors(errors)
            self._log_warnings(organization_id, operation_type, validation.warnings)

            proration = None
            if request.proration_enabled and not scheduled:
                proration = self.proration_engine.calculate_proration(
                    current, new_plan, currency, effective_date, current_plan=current.plan
                )

            if proration is not None:
                requires_payment = not new_plan.is_free and proration.net_amount > 0
            else:
                requires_payment = new_plan.prices.get(currency, Decimal("0")) > 0

            old_out, new_out, operation = self._transition(
                current=current,
                target_plan=new_plan,
                operation_type=operation_type,
                actor_id=actor_id,
                effective_date=effective_date,
                new_start_date=effective_date,
                new_end_date=new_end_date,
                amount=proration.net_amount if proration else None,
                currency=currency,
                notes=proration.description if proration else "Cambio de plan al final del período",
                subscription_request_id=request.subscription_request_id,
                idempotency_key=request.idempotency_key,
                scheduled=scheduled
            )

            result = TransitionResult(
                old_subscription=old_out,
                new_subscription=new_out,
                operation=OperationOut.model_validate(operation),
                proration=proration,
                effective_date=effective_date,
                warnings=validation.warnings,
                requires_payment=requires_payment
            )
            return result, [self._build_event(operation, {
                "from_plan_id": str(current.subscription_plan_id),
                "to_plan_id": str(new_plan.id),
                "effective_date": effective_date.isoformat(),
                "proration_amount": str(operation.proration_amount) if proration else None,
                "currency": currency,
                "scheduled": scheduled,
            })]

        return self._run_atomic(work)

    def _transition(
        self,
        current: SubscriptionOrganization,
        target_plan: SubscriptionPlan,
        operation_type: SubscriptionOperationType,
        actor_id: Optional[UUID],
        effective_date: datetime,
        new_start_date: datetime,
        new_end_date: datetime,
        amount: Optional[Decimal],
        currency: str,
        notes: str,
        subscription_request_id: Optional[UUID],
        idempotency_key: Optional[str],
        scheduled: bool = False
    ) -> Tuple[SubscriptionOut, SubscriptionOut, SubscriptionOperation]:
        """
        Desactivar la instancia actual, crear la nueva y registrar la operación.

        Con `scheduled` la instancia actual sigue vigente hasta su `end_date` y
        la nueva queda en `pending_upgrade`, inactiva, hasta que el proceso de
        vencimientos la active.
        """
        previous_end_date = as_utc(current.end_date)

        if scheduled:
            rows = crud.touch_active_subscription(self.db, current.id, user_id=actor_id)
        else:
            rows = crud.deactivate_subscription(
                self.db, current.id, status=SubscriptionStatus.EXPIRED, user_id=actor_id
            )
        if rows != 1:
            raise ConflictError("La suscripción fue modificada por otra operación; vuelva a consultar su estado")

        if not scheduled:
            crud.discard_pending_subscriptions(self.db, current.organization_id, user_id=actor_id)

        new_subscription = crud.create_subscription(
            self.db,
            organization_id=current.organization_id,
            plan_id=target_plan.id,
            start_date=new_start_date,
            end_date=new_end_date,
            user_id=actor_id,
            status=SubscriptionStatus.PENDING_UPGRADE if scheduled else SubscriptionStatus.ACTIVE
        )

        operation = crud.create_operation(
            self.db,
            organization_id=current.organization_id,
            from_subscription_plan_id=current.subscription_plan_id,
            to_subscription_plan_id=target_plan.id,
            previous_subscription_id=current.id,
            new_subscription_id=new_subscription.id,
            operation_type=operation_type.value,
            executed_by_user_id=actor_id,
            effective_date=effective_date,
            previous_end_date=previous_end_date,
            new_end_date=new_end_date,
            proration_amount=quantize_money(amount),
            currency=currency,
            notes=notes,
            subscription_request_id=subscription_request_id,
            idempotency_key=idempotency_key,
            created_at=utc_now()
        )

        return (
            SubscriptionOut.model_validate(current),
            SubscriptionOut.model_validate(new_subscription),
            operation
        )

    def _run_atomic(self, work):
        """
        Ejecuta `work` en una sola transacción.

        `work` devuelve (resultado, eventos). Los eventos se publican sólo
        si el commit tuvo éxito.
        """
        try:
            self._apply_statement_timeout()
            result, events = work()
            self.db.commit()
        except (IntegrityError, OperationalError) as e:
            self.db.rollback()
            logger.warning(f"Conflicto en transición de suscripción: {str(e)}")
            raise ConflictError(
                "Transición concurrente o tiempo de espera agotado; vuelva a consultar el estado y reintente"
            )
        except Exception:
            self.db.rollback()
            raise

        for event in events:
            self._publish(event)
        if events:
            logger.info(f"Transición {events[0].action.value} confirmada para organización {events[0].organization_id}")
        return result

    def _apply_statement_timeout(self):
        if self.db.get_bind().dialect.name != "postgresql":
            return
        timeout_ms = int(settings.BILLING_TRANSACTION_TIMEOUT_SECONDS * 1000)
        self.db.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))

    def _publish(self, event: SubscriptionEvent):
        try:
            self.publisher.publish(event)
        except Exception as e:
            logger.error(f"Error publicando evento {event.action.value} de operación {event.operation_id}: {str(e)}")

    def _build_event(self, operation: SubscriptionOperation, data: dict) -> SubscriptionEvent:
        return SubscriptionEvent(
            action=ACTIONS[SubscriptionOperationType(operation.operation_type)],
            organization_id=operation.organization_id,
            actor_id=operation.executed_by_user_id,
            operation_id=operation.id,
            occurred_at=operation.created_at,
            data=data
        )

    def _log_warnings(self, organization_id: UUID, operation_type: SubscriptionOperationType, warnings: List[str]):
        for warning in warnings:
            logger.warning(f"{operation_type.value} [{organization_id}]: {warning}")

    def _validate_downgrade_constraints(self, organization_id: UUID, new_plan: SubscriptionPlan) -> List[str]:
        """Todas las dimensiones de uso que exceden los límites del nuevo plan."""
        usage = organization_crud.get_organization_usage(self.db, organization_id)
        max_clients = new_plan.max_clients_per_gym * new_plan.max_gyms
        max_collaborators = new_plan.max_users_per_gym * new_plan.max_gyms

        violations = []
        if usage.gyms > new_plan.max_gyms:
            violations.append(
                f"Gimnasios: {usage.gyms} en uso, el plan {new_plan.name} permite {new_plan.max_gyms}"
            )
        if usage.clients > max_clients:
            violations.append(
                f"Clientes: {usage.clients} en uso, el plan {new_plan.name} permite {max_clients}"
            )
        if usage.collaborators > max_collaborators:
            violations.append(
                f"Colaboradores: {usage.collaborators} activos, el plan {new_plan.name} permite {max_collaborators}"
            )
        return violations

    def _check_idempotency(
        self,
        organization_id: UUID,
        idempotency_key: Optional[str],
        operation_type: SubscriptionOperationType
    ):
        if not idempotency_key:
            return None

        operation = crud.get_operation_by_idempotency_key(self.db, organization_id, idempotency_key)
        if operation is None:
            return None

        if operation.operation_type != operation_type.value:
            raise DuplicateOperationError(
                f"La clave de idempotencia '{idempotency_key}' ya se usó para una operación "
                f"{operation.operation_type}"
            )

        logger.info(f"Reutilizando resultado de la operación {operation.id} (clave '{idempotency_key}')")
        return self._replay(operation)

    def _replay(self, operation: SubscriptionOperation):
        previous = crud.get_subscription(self.db, operation.previous_subscription_id)

        if operation.operation_type == SubscriptionOperationType.CANCELLATION.value:
            cancellation = crud.get_cancellation_by_operation(self.db, operation.id)
            return CancellationResult(
                subscription=SubscriptionOut.model_validate(previous),
                cancellation=CancellationOut.model_validate(cancellation),
                operation=OperationOut.model_validate(operation),
                effective_date=operation.effective_date,
                replayed=True
            )

        new_subscription = crud.get_subscription(self.db, operation.new_subscription_id)
        if operation.operation_type == SubscriptionOperationType.RENEWAL.value:
            price = new_subscription.plan.prices.get(operation.currency or "", Decimal("0"))
            requires_payment = price > 0
        else:
            requires_payment = bool(operation.proration_amount and operation.proration_amount > 0)

        return TransitionResult(
            old_subscription=SubscriptionOut.model_validate(previous),
            new_subscription=SubscriptionOut.model_validate(new_subscription),
            operation=OperationOut.model_validate(operation),
            effective_date=operation.effective_date,
            requires_payment=requires_payment,
            replayed=True
        )
