"""
Typed results for public service operations.

Services raise AppException internally; the ``service_operation`` decorator
is the single place where those exceptions are turned into a failed
ServiceResult and the session is rolled back.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
from typing import Any, Generic, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from freight.core.exceptions import AppException, ConcurrencyConflictError, ErrorKind
from freight.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# deadlock_detected / serialization_failure: PostgreSQL aborted the loser of a race
CONFLICT_SQLSTATES = frozenset({"40P01", "40001"})


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    value: T | None = None
    error: AppException | None = None

    @classmethod
    def ok(cls, value: T) -> "ServiceResult[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, error: AppException) -> "ServiceResult[T]":
        return cls(error=error)

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    def unwrap(self) -> T:
        """Value on success, re-raises the error otherwise"""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def sqlstate_of(exc: DBAPIError) -> str | None:
    """SQLSTATE of the driver error (asyncpg and psycopg expose it differently)"""
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def service_operation(operation_name: str):
    """
    Wrap a public async service method (``self.db`` must be an AsyncSession).

    AppException -> rollback + ServiceResult.fail
    StaleDataError / IntegrityError / deadlock / serialization failure
        -> rollback + ConcurrencyConflictError
    anything else (DB down etc.) propagates.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs) -> ServiceResult[Any]:
            try:
                value = await func(self, *args, **kwargs)
            except AppException as e:
                await self.db.rollback()
                logger.info(
                    f"{operation_name} rejected",
                    extra_data={
                        "operation": operation_name,
                        "error_code": e.error_code.value,
                        "kind": e.kind.value,
                        "error_message": e.message,
                    }
                )
                return ServiceResult.fail(e)
            except (StaleDataError, DBAPIError) as e:
                if isinstance(e, DBAPIError) and not isinstance(e, IntegrityError):
                    if sqlstate_of(e) not in CONFLICT_SQLSTATES:
                        raise
                await self.db.rollback()
                logger.warning(
                    f"{operation_name} lost a concurrent update",
                    extra_data={"operation": operation_name, "error": str(e)[:300]}
                )
                return ServiceResult.fail(ConcurrencyConflictError(
                    f"{operation_name}: concurrent modification, reload and retry",
                    details={"operation": operation_name},
                ))
            return ServiceResult.ok(value)
        return wrapper
    return decorator
