"""
Payment Orchestrator - settlement of completed trips

    PENDING -> PROCESSING (redirect issued) -> COMPLETED | FAILED
    COMPLETED -> REFUNDED
    COMPLETED -> CANCELLED (only before confirmation)
    PENDING | PROCESSING -> CANCELLED

Ledger side of a settled payment:
1. gateway method: the payer pays the gateway, verify credits ``net`` to the driver
2. wallet method: withdraw ``gross`` from the payer, deposit ``net`` to the driver

The ledger correlation id is the payment number, so a replayed callback can
never credit twice.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from freight.core.clock import utcnow
from freight.core.config import settings
from freight.core.exceptions import (
    AppException,
    CargoRequestNotFoundError,
    ErrorCode,
    GatewayError,
    InvalidStateTransitionError,
    InvariantViolationError,
    PaymentAmountMismatchError,
    PaymentNotFoundError,
    ValidationException,
)
from freight.core.logging import get_logger, log_async_operation
from freight.core.money import Money
from freight.core.result import service_operation
from freight.db.models.cargo_request import CargoRequest
from freight.db.models.payment import (
    OPEN_PAYMENT_STATUSES,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from freight.db.models.trip import Trip, TripStatus
from freight.domain.services.commission_calculator import apply_rule
from freight.domain.services.commission_rule_service import CommissionRuleService
from freight.domain.services.event_sink import EventSink
from freight.domain.services.gateways.base_gateway import (
    BasePaymentGateway,
    GatewayPaymentState,
    GatewayPaymentStatus,
)
from freight.domain.services.gateways.gateway_factory import get_payment_gateway
from freight.domain.services.trip_service import TripService
from freight.domain.services.wallet_ledger_service import WalletLedgerService

logger = get_logger(__name__)


def generate_payment_number(now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"PAY{now:%Y%m%d}{secrets.randbelow(1_000_000):06d}"


@dataclass(frozen=True)
class CommissionAudit:
    payment_id: int
    rule_id: Optional[int]
    stored_gross: Money
    stored_commission: Money
    expected_commission: Money
    stored_net: Money

    @property
    def consistent(self) -> bool:
        return (
            self.stored_commission == self.expected_commission
            and self.stored_net + self.stored_commission == self.stored_gross
        )


@dataclass(frozen=True)
class PaymentStatusReport:
    payment: Payment
    gateway_status: Optional[GatewayPaymentStatus] = None


@dataclass
class ReconcileSummary:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    unchanged: int = 0
    errors: int = 0


class PaymentOrchestrator:
    ENTITY = "Payment"

    def __init__(self, db: AsyncSession, gateway: BasePaymentGateway | None = None):
        self.db = db
        self.events = EventSink(db)
        self.ledger = WalletLedgerService(db)
        self.commissions = CommissionRuleService(db)
        self._gateway = gateway

    def _gateway_for(self, name: str | None) -> BasePaymentGateway:
        if self._gateway is not None and (name is None or name == self._gateway.name):
            return self._gateway
        return get_payment_gateway(name)

    # ------------------------------------------------------------------
    # loading
    # ------------------------------------------------------------------

    async def _lock(self, payment_id: int) -> Payment:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        return payment

    async def _lock_by_authority(self, authority: str) -> Payment:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.authority == authority)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise PaymentNotFoundError(authority)
        return payment

    async def _open_payment_for(self, trip_id: int) -> Payment | None:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.trip_id == trip_id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
            .order_by(Payment.id.desc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _request_for(self, trip: Trip) -> CargoRequest:
        request = await self.db.get(CargoRequest, trip.cargo_request_id)
        if request is None:
            raise CargoRequestNotFoundError(trip.cargo_request_id)
        return request

    # ------------------------------------------------------------------
    # state changes (flush only)
    # ------------------------------------------------------------------

    async def _emit(self, payment: Payment, name: str, **extra) -> None:
        await self.events.emit(f"payment.{name}", "payment", payment.id, {
            "payment_number": payment.payment_number,
            "trip_id": payment.trip_id,
            "amount": payment.amount,
            "commission_amount": payment.commission_amount,
            "net_amount": payment.net_amount,
            "currency": payment.currency,
            **extra,
        })

    async def _mark_failed(self, payment: Payment, reason: str) -> None:
        payment.status = PaymentStatus.FAILED
        payment.failed_at = utcnow()
        payment.failure_reason = reason[:500]
        await self._emit(payment, "failed", reason=reason[:500])
        logger.warning(
            "Payment failed",
            extra_data={"payment_id": payment.id, "payment_number": payment.payment_number, "reason": reason}
        )

    async def _complete(self, payment: Payment, reference_id: str, paid_at: datetime) -> None:
        """Mark paid and credit the driver; the correlation id keeps the credit single"""
        payment.status = PaymentStatus.COMPLETED
        payment.reference_id = reference_id
        payment.paid_at = paid_at
        if payment.net_money.is_positive:
            await self.ledger._deposit(
                payment.payee_id,
                payment.net_money,
                memo=f"payment {payment.payment_number}",
                correlation_id=payment.payment_number,
            )
        await self._emit(payment, "completed", reference_id=reference_id)
        logger.info(
            "Payment completed",
            extra_data={
                "payment_id": payment.id,
                "payment_number": payment.payment_number,
                "net_amount": str(payment.net_money),
                "commission_amount": str(payment.commission_money),
            }
        )

    async def _new_payment(self, trip: Trip, method: PaymentMethod, gateway_name: str | None) -> Payment:
        request = await self._request_for(trip)
        gross = trip.settlement_money
        calculator = await self.commissions.load_calculator()
        quote = calculator.compute(gross, request.vehicle_type, request.cargo_type, as_of=trip.completed_at)

        payment = Payment(
            payment_number=generate_payment_number(),
            trip_id=trip.id,
            payer_id=request.owner_id,
            payee_id=trip.driver_id,
            amount=gross.amount,
            commission_amount=quote.commission.amount,
            net_amount=quote.net.amount,
            currency=gross.currency,
            commission_rule_id=quote.rule_id,
            method=method,
            gateway=(gateway_name or settings.PAYMENT_GATEWAY) if method == PaymentMethod.GATEWAY else None,
            status=PaymentStatus.PENDING,
            description=f"{settings.PAYMENT_DESCRIPTION_PREFIX} {trip.trip_number}",
            created_at=utcnow(),
        )
        self.db.add(payment)
        await self.db.flush()
        await self._emit(payment, "created", method=method.value, commission_rule_id=quote.rule_id)
        logger.info(
            "Payment created",
            extra_data={
                "payment_id": payment.id,
                "payment_number": payment.payment_number,
                "trip_id": trip.id,
                "gross": str(gross),
                "commission": str(quote.commission),
                "rule_id": quote.rule_id,
            }
        )
        return payment

    async def _open_at_gateway(self, payment: Payment) -> None:
        gateway = self._gateway_for(payment.gateway)
        try:
            init = await gateway.create_payment(
                payment.gross_money, payment.description or payment.payment_number, payment.payment_number
            )
        except GatewayError as e:
            if not e.retryable:
                await self._mark_failed(payment, e.message)
                await self.db.commit()
            else:
                # נשאר PENDING, create_payment הבא ינסה שוב על אותו תשלום
                logger.warning(
                    "Gateway unavailable, payment stays pending",
                    extra_data={"payment_id": payment.id, "gateway": gateway.name, "error": e.message}
                )
            raise

        payment.authority = init.authority
        payment.redirect_url = init.redirect_url
        payment.status = PaymentStatus.PROCESSING
        payment.processing_at = utcnow()
        await self._emit(payment, "processing", gateway=gateway.name, authority=init.authority)

    async def _settle_from_wallets(self, payment: Payment) -> None:
        await self.ledger._withdraw(
            payment.payer_id,
            payment.gross_money,
            memo=f"payment {payment.payment_number}",
            correlation_id=payment.payment_number,
        )
        await self._complete(payment, f"wallet:{payment.payment_number}", utcnow())

    async def _reverse_settlement(self, payment: Payment, tag: str) -> None:
        """Take the driver's credit back and return the gross to the payer"""
        correlation_id = f"{tag}:{payment.payment_number}"
        if payment.net_money.is_positive:
            await self.ledger._withdraw(
                payment.payee_id, payment.net_money, memo=f"{tag} {payment.payment_number}",
                correlation_id=correlation_id,
            )
        if payment.method == PaymentMethod.WALLET:
            await self.ledger._deposit(
                payment.payer_id, payment.gross_money, memo=f"{tag} {payment.payment_number}",
                correlation_id=correlation_id,
            )
            await self.db.flush()
            return

        await self.db.flush()
        # אם הגייטוויי נכשל ה-decorator עושה rollback גם לרישומי הארנק
        await self._gateway_for(payment.gateway).refund(payment.authority, payment.gross_money)

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    @service_operation("payment.create")
    async def create_payment(
        self,
        trip_id: int,
        method: PaymentMethod = PaymentMethod.GATEWAY,
        gateway_name: str | None = None,
    ) -> Payment:
        """
        Start settlement of a completed trip.

        Re-invocation returns the trip's open payment. A Pending gateway
        payment left behind by an outage is re-sent to the gateway.
        """
        trip = await TripService(self.db)._lock(trip_id)
        if trip.status != TripStatus.COMPLETED:
            raise InvariantViolationError(
                f"Trip {trip.trip_number} is {trip.status.value}; payment needs a completed trip",
                error_code=ErrorCode.INVALID_STATE_TRANSITION,
                details={"trip_id": trip.id, "status": trip.status.value},
            )

        payment = await self._open_payment_for(trip.id)
        if payment is not None and payment.status != PaymentStatus.PENDING:
            logger.info(
                "Trip already has an open payment",
                extra_data={"trip_id": trip.id, "payment_id": payment.id, "status": payment.status.value}
            )
            await self.db.commit()
            return payment

        if payment is None:
            payment = await self._new_payment(trip, method, gateway_name)

        if payment.method == PaymentMethod.WALLET:
            await self._settle_from_wallets(payment)
        else:
            # ה-PENDING נשמר לפני הקריאה החיצונית כדי לשרוד timeout
            await self.db.commit()
            await self._open_at_gateway(payment)

        await self.db.commit()
        return payment

    @service_operation("payment.verify")
    async def verify_payment(self, authority: str, amount: Money | None = None) -> Payment:
        """
        Gateway callback. Idempotent on ``authority``: a completed payment is
        returned as is, without a gateway call or a ledger write.
        """
        payment = await self._lock_by_authority(authority)

        if payment.status == PaymentStatus.COMPLETED:
            logger.info(
                "Duplicate verification ignored",
                extra_data={"payment_id": payment.id, "authority": authority}
            )
            await self.db.commit()
            return payment

        if payment.status != PaymentStatus.PROCESSING:
            raise InvalidStateTransitionError(self.ENTITY, payment.id, payment.status.value,
                                              PaymentStatus.COMPLETED.value)

        if amount is not None and amount != payment.gross_money:
            raise PaymentAmountMismatchError(payment.payment_number, payment.gross_money, amount)

        gateway = self._gateway_for(payment.gateway)
        try:
            verification = await gateway.verify_payment(authority, payment.gross_money)
        except GatewayError as e:
            if not e.retryable:
                await self._mark_failed(payment, e.message)
                await self.db.commit()
            raise

        await self._complete(payment, verification.reference_id, verification.paid_at)
        await self.db.commit()
        return payment

    @service_operation("payment.abandon")
    async def abandon_payment(self, authority: str, reason: str = "payer did not complete the payment") -> Payment:
        """Callback with a failure status: Processing -> Failed"""
        payment = await self._lock_by_authority(authority)
        if payment.status == PaymentStatus.FAILED:
            return payment
        if payment.status != PaymentStatus.PROCESSING:
            raise InvalidStateTransitionError(self.ENTITY, payment.id, payment.status.value,
                                              PaymentStatus.FAILED.value)
        await self._mark_failed(payment, reason)
        await self.db.commit()
        return payment

    @service_operation("payment.refund")
    async def refund_payment(self, payment_id: int, reason: str) -> Payment:
        if not (reason or "").strip():
            raise ValidationException("Refund reason is required", field="reason")
        payment = await self._lock(payment_id)
        if payment.status != PaymentStatus.COMPLETED:
            raise InvalidStateTransitionError(self.ENTITY, payment.id, payment.status.value,
                                              PaymentStatus.REFUNDED.value)

        await self._reverse_settlement(payment, "refund")
        payment.status = PaymentStatus.REFUNDED
        payment.refunded_at = utcnow()
        payment.refund_reason = reason.strip()[:500]
        await self._emit(payment, "refunded", reason=payment.refund_reason)
        await self.db.commit()
        logger.info("Payment refunded", extra_data={"payment_id": payment.id, "reason": payment.refund_reason})
        return payment

    @service_operation("payment.cancel")
    async def cancel_payment(self, payment_id: int, reason: str) -> Payment:
        if not (reason or "").strip():
            raise ValidationException("Cancellation reason is required", field="reason")
        payment = await self._lock(payment_id)

        if payment.status == PaymentStatus.COMPLETED:
            if payment.confirmed_at is not None:
                raise InvariantViolationError(
                    f"Payment {payment.payment_number} is confirmed; refund it instead",
                    error_code=ErrorCode.INVALID_STATE_TRANSITION,
                    details={"payment_id": payment.id, "confirmed_at": payment.confirmed_at.isoformat()},
                )
            await self._reverse_settlement(payment, "cancel")
        elif payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            raise InvalidStateTransitionError(self.ENTITY, payment.id, payment.status.value,
                                              PaymentStatus.CANCELLED.value)

        payment.status = PaymentStatus.CANCELLED
        payment.cancelled_at = utcnow()
        payment.cancellation_reason = reason.strip()[:500]
        await self._emit(payment, "cancelled", reason=payment.cancellation_reason)
        await self.db.commit()
        return payment

    @service_operation("payment.confirm")
    async def confirm_payment(self, payment_id: int) -> Payment:
        payment = await self._lock(payment_id)
        if payment.status != PaymentStatus.COMPLETED:
            raise InvalidStateTransitionError(self.ENTITY, payment.id, payment.status.value, "confirmed")
        if payment.confirmed_at is None:
            payment.confirmed_at = utcnow()
            await self._emit(payment, "confirmed")
        await self.db.commit()
        return payment

    @service_operation("payment.get")
    async def get_payment(self, payment_id: int) -> Payment:
        payment = await self.db.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        return payment

    @service_operation("payment.list_for_trip")
    async def list_for_trip(self, trip_id: int) -> list[Payment]:
        result = await self.db.execute(
            select(Payment).where(Payment.trip_id == trip_id).order_by(Payment.id)
        )
        return list(result.scalars().all())

    @service_operation("payment.status")
    async def get_payment_status(self, payment_id: int) -> PaymentStatusReport:
        """Local state plus what the gateway reports, when there is something to ask"""
        payment = (await self.get_payment(payment_id)).unwrap()
        if payment.method != PaymentMethod.GATEWAY or not payment.authority:
            return PaymentStatusReport(payment=payment)
        remote = await self._gateway_for(payment.gateway).status(payment.authority)
        return PaymentStatusReport(payment=payment, gateway_status=remote)

    @service_operation("payment.audit_commission")
    async def audit_commission(self, payment_id: int) -> CommissionAudit:
        """Recompute the commission with the rule stored on the payment"""
        payment = (await self.get_payment(payment_id)).unwrap()
        if payment.commission_rule_id is None:
            expected = Money.zero(payment.currency)
        else:
            snapshot = await self.commissions.load_snapshot(payment.commission_rule_id)
            expected = apply_rule(snapshot, payment.gross_money)

        audit = CommissionAudit(
            payment_id=payment.id,
            rule_id=payment.commission_rule_id,
            stored_gross=payment.gross_money,
            stored_commission=payment.commission_money,
            expected_commission=expected,
            stored_net=payment.net_money,
        )
        if not audit.consistent:
            logger.error(
                "Commission audit mismatch",
                extra_data={
                    "payment_id": payment.id,
                    "stored_commission": str(payment.commission_money),
                    "expected_commission": str(expected),
                    "gross": str(payment.gross_money),
                    "net": str(payment.net_money),
                }
            )
        return audit

    @log_async_operation("payment.reconcile_processing")
    async def reconcile_processing(
        self,
        older_than_minutes: int | None = None,
        limit: int = 50,
        now: datetime | None = None,
    ) -> ReconcileSummary:
        """
        Ask the gateway about payments stuck in Processing.

        Paid -> the normal verify flow; failed -> Failed; anything else is
        left for the next run.
        """
        now = now or utcnow()
        minutes = older_than_minutes if older_than_minutes is not None else settings.PAYMENT_RECONCILE_AFTER_MINUTES
        cutoff = now - timedelta(minutes=minutes)
        result = await self.db.execute(
            select(Payment.id, Payment.authority, Payment.gateway)
            .where(
                Payment.status == PaymentStatus.PROCESSING,
                Payment.processing_at <= cutoff,
                Payment.authority.is_not(None),
            )
            .order_by(Payment.processing_at)
            .limit(limit)
        )
        rows = result.all()

        summary = ReconcileSummary()
        for payment_id, authority, gateway_name in rows:
            summary.checked += 1
            try:
                remote = await self._gateway_for(gateway_name).status(authority)
            except AppException as e:
                summary.errors += 1
                logger.warning(
                    "Reconcile status query failed",
                    extra_data={"payment_id": payment_id, "error_code": e.error_code.value, "error": e.message}
                )
                continue

            if remote.state == GatewayPaymentState.PAID:
                outcome = await self.verify_payment(authority)
                if outcome.success:
                    summary.completed += 1
                else:
                    summary.errors += 1
            elif remote.state == GatewayPaymentState.FAILED:
                outcome = await self.abandon_payment(authority, reason=f"gateway reports {remote.raw_status}")
                if outcome.success:
                    summary.failed += 1
                else:
                    summary.errors += 1
            else:
                summary.unchanged += 1

        logger.info("Processing payments reconciled", extra_data=summary.__dict__)
        return summary

