"""
Wallet API Routes
"""
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from freight.api.schemas import MoneyIn, MoneyOut
from freight.db.database import get_db
from freight.db.models.wallet import Wallet
from freight.db.models.wallet_transaction import WalletTransaction
from freight.domain.services.wallet_ledger_service import WalletLedgerService

router = APIRouter()


class WalletMutation(BaseModel):
    amount: MoneyIn
    memo: str | None = Field(default=None, max_length=500)
    correlation_id: str | None = Field(default=None, max_length=100)


class WalletResponse(BaseModel):
    id: int
    owner_id: int
    available: MoneyOut
    pending: MoneyOut
    total: MoneyOut
    total_earnings: MoneyOut
    total_spending: MoneyOut
    is_active: bool
    last_transaction_at: datetime | None

    @classmethod
    def from_model(cls, wallet: Wallet) -> "WalletResponse":
        return cls(
            id=wallet.id,
            owner_id=wallet.owner_id,
            available=MoneyOut.from_money(wallet.available),
            pending=MoneyOut.from_money(wallet.pending),
            total=MoneyOut.from_money(wallet.total),
            total_earnings=MoneyOut.of(wallet.total_earnings, wallet.currency),
            total_spending=MoneyOut.of(wallet.total_spending, wallet.currency),
            is_active=wallet.is_active,
            last_transaction_at=wallet.last_transaction_at,
        )


class WalletTransactionResponse(BaseModel):
    id: int
    transaction_type: str
    amount: MoneyOut
    available_after: MoneyOut
    pending_after: MoneyOut
    correlation_id: str | None
    memo: str | None
    created_at: datetime

    @classmethod
    def from_model(cls, entry: WalletTransaction) -> "WalletTransactionResponse":
        return cls(
            id=entry.id,
            transaction_type=entry.transaction_type.value,
            amount=MoneyOut.of(entry.amount, entry.currency),
            available_after=MoneyOut.of(entry.available_after, entry.currency),
            pending_after=MoneyOut.of(entry.pending_after, entry.currency),
            correlation_id=entry.correlation_id,
            memo=entry.memo,
            created_at=entry.created_at,
        )


class WalletAuditResponse(BaseModel):
    wallet_id: int
    entry_count: int
    consistent: bool
    replayed_available: str
    stored_available: str
    replayed_pending: str
    stored_pending: str
    first_mismatch_entry_id: int | None


@router.get(
    "/{owner_id}",
    response_model=WalletResponse,
    summary="Wallet of a user",
    description="Returns the user's wallet, creating an empty one on first access.",
)
async def get_wallet(owner_id: int, db: AsyncSession = Depends(get_db)):
    return WalletResponse.from_model((await WalletLedgerService(db).get_or_create_wallet(owner_id)).unwrap())


@router.post("/{owner_id}/deposit", response_model=WalletTransactionResponse, status_code=201)
async def deposit(owner_id: int, body: WalletMutation, db: AsyncSession = Depends(get_db)):
    entry = (await WalletLedgerService(db).deposit(
        owner_id, body.amount.to_money(), body.memo, body.correlation_id
    )).unwrap()
    return WalletTransactionResponse.from_model(entry)


@router.post("/{owner_id}/withdraw", response_model=WalletTransactionResponse, status_code=201)
async def withdraw(owner_id: int, body: WalletMutation, db: AsyncSession = Depends(get_db)):
    entry = (await WalletLedgerService(db).withdraw(
        owner_id, body.amount.to_money(), body.memo, body.correlation_id
    )).unwrap()
    return WalletTransactionResponse.from_model(entry)


@router.post("/{owner_id}/hold", response_model=WalletTransactionResponse, status_code=201)
async def hold_pending(owner_id: int, body: WalletMutation, db: AsyncSession = Depends(get_db)):
    entry = (await WalletLedgerService(db).hold_pending(
        owner_id, body.amount.to_money(), body.memo, body.correlation_id
    )).unwrap()
    return WalletTransactionResponse.from_model(entry)


@router.post("/{owner_id}/release", response_model=WalletTransactionResponse, status_code=201)
async def release_pending(owner_id: int, body: WalletMutation, db: AsyncSession = Depends(get_db)):
    entry = (await WalletLedgerService(db).release_pending(
        owner_id, body.amount.to_money(), body.memo, body.correlation_id
    )).unwrap()
    return WalletTransactionResponse.from_model(entry)


@router.post("/{owner_id}/activate", response_model=WalletResponse)
async def activate_wallet(owner_id: int, db: AsyncSession = Depends(get_db)):
    return WalletResponse.from_model((await WalletLedgerService(db).activate(owner_id)).unwrap())


@router.post("/{owner_id}/deactivate", response_model=WalletResponse)
async def deactivate_wallet(owner_id: int, db: AsyncSession = Depends(get_db)):
    return WalletResponse.from_model((await WalletLedgerService(db).deactivate(owner_id)).unwrap())


@router.get(
    "/{owner_id}/history",
    response_model=List[WalletTransactionResponse],
    summary="Ledger entries, newest first",
)
async def get_history(owner_id: int, limit: int = 50, db: AsyncSession = Depends(get_db)):
    entries = (await WalletLedgerService(db).get_history(owner_id, limit)).unwrap()
    return [WalletTransactionResponse.from_model(e) for e in entries]


@router.get("/{owner_id}/audit", response_model=WalletAuditResponse, summary="Replay the ledger from zero")
async def audit_wallet(owner_id: int, db: AsyncSession = Depends(get_db)):
    audit = (await WalletLedgerService(db).audit_wallet(owner_id)).unwrap()
    return WalletAuditResponse(
        wallet_id=audit.wallet_id,
        entry_count=audit.entry_count,
        consistent=audit.consistent,
        replayed_available=f"{audit.replayed_available:.2f}",
        stored_available=f"{audit.stored_available:.2f}",
        replayed_pending=f"{audit.replayed_pending:.2f}",
        stored_pending=f"{audit.stored_pending:.2f}",
        first_mismatch_entry_id=audit.first_mismatch_entry_id,
    )
