"""
Payment API Routes

The gateway redirects the payer back to ``/payments/callback``. Each gateway
names the authority differently (Authority / trans_id / token); all are
accepted.
"""
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from freight.api.schemas import MoneyIn, MoneyOut, ReasonIn
from freight.core.exceptions import ValidationException
from freight.core.logging import get_logger
from freight.db.database import get_db
from freight.db.models.payment import Payment, PaymentMethod
from freight.domain.services.payment_orchestrator import PaymentOrchestrator

logger = get_logger(__name__)

router = APIRouter()

AUTHORITY_PARAMS = ("authority", "Authority", "trans_id", "token")
# Zarinpal שולח Status=NOK כשהמשלם ביטל בדף הבנק
FAILED_CALLBACK_STATUSES = frozenset({"NOK", "FAILED", "CANCELED", "CANCELLED"})


class PaymentCreate(BaseModel):
    trip_id: int
    method: PaymentMethod = PaymentMethod.GATEWAY
    gateway: str | None = None


class PaymentVerify(BaseModel):
    authority: str
    amount: MoneyIn | None = None


class PaymentResponse(BaseModel):
    id: int
    payment_number: str
    trip_id: int
    payer_id: int
    payee_id: int
    amount: MoneyOut
    commission: MoneyOut
    net: MoneyOut
    commission_rule_id: int | None
    method: str
    gateway: str | None
    status: str
    authority: str | None
    reference_id: str | None
    redirect_url: str | None
    failure_reason: str | None
    created_at: datetime
    paid_at: datetime | None
    confirmed_at: datetime | None
    refunded_at: datetime | None
    cancelled_at: datetime | None

    @classmethod
    def from_model(cls, payment: Payment) -> "PaymentResponse":
        return cls(
            id=payment.id,
            payment_number=payment.payment_number,
            trip_id=payment.trip_id,
            payer_id=payment.payer_id,
            payee_id=payment.payee_id,
            amount=MoneyOut.from_money(payment.gross_money),
            commission=MoneyOut.from_money(payment.commission_money),
            net=MoneyOut.from_money(payment.net_money),
            commission_rule_id=payment.commission_rule_id,
            method=payment.method.value,
            gateway=payment.gateway,
            status=payment.status.value,
            authority=payment.authority,
            reference_id=payment.reference_id,
            redirect_url=payment.redirect_url,
            failure_reason=payment.failure_reason,
            created_at=payment.created_at,
            paid_at=payment.paid_at,
            confirmed_at=payment.confirmed_at,
            refunded_at=payment.refunded_at,
            cancelled_at=payment.cancelled_at,
        )


class GatewayStatusResponse(BaseModel):
    state: str
    reference_id: str | None
    amount: str | None
    paid_at: datetime | None
    raw_status: str | None


class PaymentStatusResponse(BaseModel):
    payment: PaymentResponse
    gateway: GatewayStatusResponse | None


class CommissionAuditResponse(BaseModel):
    payment_id: int
    rule_id: int | None
    stored_commission: MoneyOut
    expected_commission: MoneyOut
    consistent: bool


@router.post("/", response_model=PaymentResponse, status_code=201, summary="Start settlement of a completed trip")
async def create_payment(body: PaymentCreate, db: AsyncSession = Depends(get_db)):
    payment = (await PaymentOrchestrator(db).create_payment(
        body.trip_id, method=body.method, gateway_name=body.gateway
    )).unwrap()
    return PaymentResponse.from_model(payment)


@router.post("/verify", response_model=PaymentResponse, summary="Verify a payment by authority")
async def verify_payment(body: PaymentVerify, db: AsyncSession = Depends(get_db)):
    amount = body.amount.to_money() if body.amount else None
    payment = (await PaymentOrchestrator(db).verify_payment(body.authority, amount)).unwrap()
    return PaymentResponse.from_model(payment)


@router.get("/callback", response_model=PaymentResponse, summary="Gateway return URL")
async def payment_callback(request: Request, db: AsyncSession = Depends(get_db)):
    params = request.query_params
    authority = next((params[name] for name in AUTHORITY_PARAMS if params.get(name)), None)
    if not authority:
        raise ValidationException("Callback without an authority", field="authority")

    status = (params.get("Status") or params.get("status") or "").upper()
    logger.info(
        "Payment callback received",
        extra_data={"authority": authority, "status": status, "payment": params.get("payment")}
    )
    orchestrator = PaymentOrchestrator(db)
    if status in FAILED_CALLBACK_STATUSES:
        result = await orchestrator.abandon_payment(authority, reason=f"callback status {status}")
    else:
        result = await orchestrator.verify_payment(authority)
    return PaymentResponse.from_model(result.unwrap())


@router.get("/by-trip/{trip_id}", response_model=List[PaymentResponse])
async def list_trip_payments(trip_id: int, db: AsyncSession = Depends(get_db)):
    payments = (await PaymentOrchestrator(db).list_for_trip(trip_id)).unwrap()
    return [PaymentResponse.from_model(p) for p in payments]


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(payment_id: int, db: AsyncSession = Depends(get_db)):
    return PaymentResponse.from_model((await PaymentOrchestrator(db).get_payment(payment_id)).unwrap())


@router.get("/{payment_id}/status", response_model=PaymentStatusResponse, summary="Local and gateway state")
async def get_payment_status(payment_id: int, db: AsyncSession = Depends(get_db)):
    report = (await PaymentOrchestrator(db).get_payment_status(payment_id)).unwrap()
    remote = report.gateway_status
    return PaymentStatusResponse(
        payment=PaymentResponse.from_model(report.payment),
        gateway=GatewayStatusResponse(
            state=remote.state.value,
            reference_id=remote.reference_id,
            amount=str(remote.amount) if remote.amount is not None else None,
            paid_at=remote.paid_at,
            raw_status=remote.raw_status,
        ) if remote else None,
    )


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(payment_id: int, body: ReasonIn, db: AsyncSession = Depends(get_db)):
    payment = (await PaymentOrchestrator(db).refund_payment(payment_id, body.reason)).unwrap()
    return PaymentResponse.from_model(payment)


@router.post("/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(payment_id: int, body: ReasonIn, db: AsyncSession = Depends(get_db)):
    payment = (await PaymentOrchestrator(db).cancel_payment(payment_id, body.reason)).unwrap()
    return PaymentResponse.from_model(payment)


@router.post("/{payment_id}/confirm", response_model=PaymentResponse)
async def confirm_payment(payment_id: int, db: AsyncSession = Depends(get_db)):
    return PaymentResponse.from_model((await PaymentOrchestrator(db).confirm_payment(payment_id)).unwrap())


@router.get("/{payment_id}/commission-audit", response_model=CommissionAuditResponse)
async def audit_commission(payment_id: int, db: AsyncSession = Depends(get_db)):
    audit = (await PaymentOrchestrator(db).audit_commission(payment_id)).unwrap()
    return CommissionAuditResponse(
        payment_id=audit.payment_id,
        rule_id=audit.rule_id,
        stored_commission=MoneyOut.from_money(audit.stored_commission),
        expected_commission=MoneyOut.from_money(audit.expected_commission),
        consistent=audit.consistent,
    )
