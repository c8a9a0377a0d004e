"""
Helpers ו-fixtures לבדיקות תרחיש מקצה לקצה.

מספק:
- קידום נסיעה לאורך המסלול התקין
- פונקציות אימות DB (סטטוס בקשה, יתרת ארנק, יומן ארנק)
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from freight.db.models.cargo_request import CargoRequest, CargoRequestStatus
from freight.db.models.trip import Trip
from freight.db.models.wallet import Wallet
from freight.db.models.wallet_transaction import WalletTransaction
from freight.domain.services.trip_service import TripService

# accept ... deliver, בלי complete
HAPPY_PATH = ("accept", "start", "start_loading", "complete_loading", "start_transit", "arrive", "deliver")


async def drive_to_delivered(db: AsyncSession, trip_id: int) -> Trip:
    service = TripService(db)
    trip = None
    for step in HAPPY_PATH:
        trip = (await getattr(service, step)(trip_id)).unwrap()
    return trip


# ============================================================================
# אימות מצב DB
# ============================================================================

async def assert_request_status(db: AsyncSession, request_id: int, expected: CargoRequestStatus) -> None:
    result = await db.execute(
        select(CargoRequest.status).where(CargoRequest.id == request_id).execution_options(populate_existing=True)
    )
    actual = result.scalar_one()
    assert actual == expected, f"request {request_id}: expected {expected.value}, got {actual.value}"


async def assert_available(db: AsyncSession, owner_id: int, expected: str | None) -> None:
    """expected=None - לא אמור להיות ארנק בכלל"""
    result = await db.execute(
        select(Wallet).where(Wallet.owner_id == owner_id).execution_options(populate_existing=True)
    )
    wallet = result.scalar_one_or_none()
    if expected is None:
        assert wallet is None, f"owner {owner_id} should have no wallet"
        return
    assert wallet is not None, f"owner {owner_id} has no wallet"
    assert wallet.available_balance == Decimal(expected), (
        f"owner {owner_id}: expected {expected}, got {wallet.available_balance}"
    )


async def count_ledger_entries(db: AsyncSession, owner_id: int) -> int:
    result = await db.execute(
        select(func.count(WalletTransaction.id))
        .join(Wallet, Wallet.id == WalletTransaction.wallet_id)
        .where(Wallet.owner_id == owner_id)
    )
    return result.scalar_one()


@pytest.fixture
async def second_session(session_maker):
    """session נפרד על אותו מסד - מדמה בקשה מקבילה"""
    async with session_maker() as session:
        yield session
        await session.rollback()
