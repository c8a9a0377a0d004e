"""
Wallet Ledger Service - the only code that mutates wallet balances

Every mutation locks the wallet row, checks the balance rule, updates the
balances and appends exactly one immutable WalletTransaction carrying the
resulting snapshot. Rejected operations append nothing.

Public methods own their transaction (commit / rollback through
``service_operation``). The underscore variants only flush, so that
PaymentOrchestrator can fold ledger writes into its own transaction.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from freight.core.clock import utcnow
from freight.core.config import settings
from freight.core.exceptions import (
    CurrencyMismatchError,
    DuplicateEntryError,
    InsufficientFundsError,
    InvalidAmountError,
    WalletInactiveError,
    WalletNotFoundError,
)
from freight.core.logging import get_logger
from freight.core.money import Money
from freight.core.result import ServiceResult, service_operation
from freight.db.models.wallet import Wallet
from freight.db.models.wallet_transaction import (
    WalletTransaction,
    WalletTransactionType,
    WalletTransactionStatus,
)
from freight.domain.services.event_sink import EventSink

logger = get_logger(__name__)

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class WalletAudit:
    wallet_id: int
    entry_count: int
    replayed_available: Decimal
    replayed_pending: Decimal
    stored_available: Decimal
    stored_pending: Decimal
    first_mismatch_entry_id: int | None = None

    @property
    def consistent(self) -> bool:
        return (
            self.first_mismatch_entry_id is None
            and self.replayed_available == self.stored_available
            and self.replayed_pending == self.stored_pending
        )


def _replay_step(
    available: Decimal, pending: Decimal, tx_type: WalletTransactionType, amount: Decimal
) -> tuple[Decimal, Decimal]:
    if tx_type == WalletTransactionType.DEPOSIT:
        return available + amount, pending
    if tx_type == WalletTransactionType.WITHDRAWAL:
        return available - amount, pending
    if tx_type == WalletTransactionType.PAYMENT_HOLD:
        return available, pending + amount
    # RELEASE: pending -> available
    return available + amount, pending - amount


class WalletLedgerService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventSink(db)

    # ------------------------------------------------------------------
    # loading
    # ------------------------------------------------------------------

    async def _lock_wallet(self, owner_id: int, *, create: bool, currency: str | None = None) -> Wallet:
        """SELECT ... FOR UPDATE on the owner's wallet, creating it if allowed"""
        result = await self.db.execute(
            select(Wallet)
            .where(Wallet.owner_id == owner_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()
        if wallet is not None:
            return wallet
        if not create:
            raise WalletNotFoundError(owner_id)

        wallet = Wallet(
            owner_id=owner_id,
            currency=(currency or settings.DEFAULT_CURRENCY).upper(),
            available_balance=ZERO,
            pending_balance=ZERO,
            total_earnings=ZERO,
            total_spending=ZERO,
            is_active=True,
        )
        self.db.add(wallet)
        # שני יוצרים מקבילים: השני ייפול על unique(owner_id) ויומר ל-conflict
        await self.db.flush()
        logger.info("Wallet created", extra_data={"owner_id": owner_id, "wallet_id": wallet.id})
        return wallet

    async def _find_entry(
        self, wallet_id: int, correlation_id: str, tx_type: WalletTransactionType
    ) -> WalletTransaction | None:
        result = await self.db.execute(
            select(WalletTransaction).where(
                WalletTransaction.wallet_id == wallet_id,
                WalletTransaction.correlation_id == correlation_id,
                WalletTransaction.transaction_type == tx_type,
            )
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # core mutation (flush only)
    # ------------------------------------------------------------------

    async def _apply(
        self,
        owner_id: int,
        tx_type: WalletTransactionType,
        amount: Money,
        memo: str | None = None,
        correlation_id: str | None = None,
    ) -> WalletTransaction:
        if not isinstance(amount, Money) or not amount.is_positive:
            raise InvalidAmountError(getattr(amount, "amount", amount))

        creates_wallet = tx_type in (WalletTransactionType.DEPOSIT, WalletTransactionType.PAYMENT_HOLD)
        wallet = await self._lock_wallet(owner_id, create=creates_wallet, currency=amount.currency)

        if amount.currency != wallet.currency:
            raise CurrencyMismatchError(wallet.currency, amount.currency)

        if correlation_id:
            existing = await self._find_entry(wallet.id, correlation_id, tx_type)
            if existing is not None and existing.amount != amount.amount:
                raise DuplicateEntryError("Ledger entry", {
                    "correlation_id": correlation_id,
                    "transaction_type": tx_type.value,
                    "recorded_amount": str(existing.amount),
                    "requested_amount": str(amount.amount),
                })
            if existing is not None:
                logger.info(
                    "Ledger entry already recorded, skipping",
                    extra_data={
                        "wallet_id": wallet.id,
                        "correlation_id": correlation_id,
                        "transaction_type": tx_type.value,
                        "entry_id": existing.id,
                    }
                )
                return existing

        if not wallet.is_active:
            raise WalletInactiveError(wallet.id)

        available = wallet.available_balance
        pending = wallet.pending_balance

        if tx_type == WalletTransactionType.WITHDRAWAL and available < amount.amount:
            raise InsufficientFundsError(wallet.id, "available", available, amount.amount)
        if tx_type == WalletTransactionType.RELEASE and pending < amount.amount:
            raise InsufficientFundsError(wallet.id, "pending", pending, amount.amount)

        available, pending = _replay_step(available, pending, tx_type, amount.amount)

        wallet.available_balance = available
        wallet.pending_balance = pending
        if tx_type in (WalletTransactionType.DEPOSIT, WalletTransactionType.RELEASE):
            wallet.total_earnings = wallet.total_earnings + amount.amount
        elif tx_type == WalletTransactionType.WITHDRAWAL:
            wallet.total_spending = wallet.total_spending + amount.amount
        wallet.last_transaction_at = utcnow()

        entry = WalletTransaction(
            wallet_id=wallet.id,
            transaction_type=tx_type,
            status=WalletTransactionStatus.COMPLETED,
            amount=amount.amount,
            currency=wallet.currency,
            available_after=available,
            pending_after=pending,
            correlation_id=correlation_id,
            memo=memo,
            created_at=utcnow(),
        )
        self.db.add(entry)
        await self.events.emit(
            f"wallet.{tx_type.value}",
            "wallet",
            wallet.id,
            {
                "owner_id": owner_id,
                "amount": amount.amount,
                "currency": wallet.currency,
                "available_after": available,
                "pending_after": pending,
                "correlation_id": correlation_id,
            },
        )
        await self.db.flush()

        logger.info(
            f"Wallet {tx_type.value}",
            extra_data={
                "wallet_id": wallet.id,
                "owner_id": owner_id,
                "amount": str(amount),
                "available_after": str(available),
                "pending_after": str(pending),
                "correlation_id": correlation_id,
            }
        )
        return entry

    async def _deposit(self, owner_id: int, amount: Money, memo: str | None = None,
                       correlation_id: str | None = None) -> WalletTransaction:
        return await self._apply(owner_id, WalletTransactionType.DEPOSIT, amount, memo, correlation_id)

    async def _withdraw(self, owner_id: int, amount: Money, memo: str | None = None,
                        correlation_id: str | None = None) -> WalletTransaction:
        return await self._apply(owner_id, WalletTransactionType.WITHDRAWAL, amount, memo, correlation_id)

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    @service_operation("wallet.deposit")
    async def deposit(self, owner_id: int, amount: Money, memo: str | None = None,
                      correlation_id: str | None = None) -> WalletTransaction:
        entry = await self._deposit(owner_id, amount, memo, correlation_id)
        await self.db.commit()
        return entry

    @service_operation("wallet.withdraw")
    async def withdraw(self, owner_id: int, amount: Money, memo: str | None = None,
                       correlation_id: str | None = None) -> WalletTransaction:
        entry = await self._withdraw(owner_id, amount, memo, correlation_id)
        await self.db.commit()
        return entry

    @service_operation("wallet.hold_pending")
    async def hold_pending(self, owner_id: int, amount: Money, memo: str | None = None,
                           correlation_id: str | None = None) -> WalletTransaction:
        entry = await self._apply(owner_id, WalletTransactionType.PAYMENT_HOLD, amount, memo, correlation_id)
        await self.db.commit()
        return entry

    @service_operation("wallet.release_pending")
    async def release_pending(self, owner_id: int, amount: Money, memo: str | None = None,
                              correlation_id: str | None = None) -> WalletTransaction:
        entry = await self._apply(owner_id, WalletTransactionType.RELEASE, amount, memo, correlation_id)
        await self.db.commit()
        return entry

    @service_operation("wallet.get_or_create")
    async def get_or_create_wallet(self, owner_id: int, currency: str | None = None) -> Wallet:
        wallet = await self._lock_wallet(owner_id, create=True, currency=currency)
        await self.db.commit()
        return wallet

    @service_operation("wallet.get")
    async def get_wallet(self, owner_id: int) -> Wallet:
        result = await self.db.execute(
            select(Wallet).where(Wallet.owner_id == owner_id).execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()
        if wallet is None:
            raise WalletNotFoundError(owner_id)
        return wallet

    async def _set_active(self, owner_id: int, active: bool) -> Wallet:
        wallet = await self._lock_wallet(owner_id, create=False)
        if wallet.is_active != active:
            wallet.is_active = active
            await self.events.emit(
                "wallet.activated" if active else "wallet.deactivated", "wallet", wallet.id, {"owner_id": owner_id}
            )
        await self.db.commit()
        return wallet

    @service_operation("wallet.activate")
    async def activate(self, owner_id: int) -> Wallet:
        return await self._set_active(owner_id, True)

    @service_operation("wallet.deactivate")
    async def deactivate(self, owner_id: int) -> Wallet:
        return await self._set_active(owner_id, False)

    @service_operation("wallet.history")
    async def get_history(self, owner_id: int, limit: int = 50) -> list[WalletTransaction]:
        """Newest first"""
        wallet = (await self.get_wallet(owner_id)).unwrap()
        result = await self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.wallet_id == wallet.id)
            .order_by(WalletTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @service_operation("wallet.audit")
    async def audit_wallet(self, owner_id: int) -> WalletAudit:
        """Replay the whole log from zero and compare with the stored balances"""
        wallet = (await self.get_wallet(owner_id)).unwrap()
        result = await self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.wallet_id == wallet.id)
            .order_by(WalletTransaction.id)
        )
        entries = list(result.scalars().all())

        available, pending = ZERO, ZERO
        mismatch_id = None
        for entry in entries:
            available, pending = _replay_step(available, pending, entry.transaction_type, entry.amount)
            if mismatch_id is None and (
                available != entry.available_after or pending != entry.pending_after
            ):
                mismatch_id = entry.id

        audit = WalletAudit(
            wallet_id=wallet.id,
            entry_count=len(entries),
            replayed_available=available,
            replayed_pending=pending,
            stored_available=wallet.available_balance,
            stored_pending=wallet.pending_balance,
            first_mismatch_entry_id=mismatch_id,
        )
        if not audit.consistent:
            logger.error(
                "Wallet ledger does not reconstruct stored balances",
                extra_data={
                    "wallet_id": wallet.id,
                    "replayed_available": available,
                    "stored_available": wallet.available_balance,
                    "replayed_pending": pending,
                    "stored_pending": wallet.pending_balance,
                    "first_mismatch_entry_id": mismatch_id,
                }
            )
        return audit

    async def get_balance(self, owner_id: int) -> ServiceResult[Money]:
        result = await self.get_wallet(owner_id)
        if not result.success:
            return ServiceResult.fail(result.error)
        return ServiceResult.ok(result.value.available)
