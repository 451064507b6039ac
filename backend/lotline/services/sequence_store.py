"""
Sequence Store

Durable counters keyed by scope. Every increment is a single
INSERT ... ON CONFLICT DO UPDATE ... RETURNING statement, so two concurrent
callers for the same scope can never receive the same value.

Also home to StoreOutcome, the value-or-StoreUnavailable wrapper the lot
services use to make their fallback paths explicit.

Usage:
    store = SqlSequenceStore(db)
    store.increment(lot_scope_key("1606P", "AERO-2025-001"))  # 1, 2, 3, ...
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Generic, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lotline.exceptions import StoreUnavailable
from lotline.models.lot import LotSequenceCounter
from lotline.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StoreOutcome(Generic[T]):
    """Result of a store call: a value, or the StoreUnavailable that prevented it."""
    value: Optional[T] = None
    error: Optional[StoreUnavailable] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value

    def or_else(self, fallback: Callable[[StoreUnavailable], T]) -> T:
        """Return the value, or whatever fallback computes from the error."""
        if self.error is None:
            return self.value
        return fallback(self.error)


def attempt(operation: Callable[..., T], *args, **kwargs) -> StoreOutcome[T]:
    """Run a store operation, capturing StoreUnavailable instead of raising it."""
    try:
        return StoreOutcome(value=operation(*args, **kwargs))
    except StoreUnavailable as e:
        return StoreOutcome(error=e)


def dialect_insert(db: Session, table):
    """INSERT construct with ON CONFLICT support for the session's database."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upserts are not supported on {dialect}")
    return insert(table)


def lot_scope_key(part_number: str, order_id: Optional[str] = None) -> str:
    """Counter key for a part, or for a part within one order."""
    if order_id:
        return f"{part_number}#{order_id}"
    return part_number


class SequenceStore(ABC):
    """Counter interface consumed by the generator and job-id creation."""

    @abstractmethod
    def increment(self, scope_key: str) -> int:
        """Return one more than the last value issued for scope_key (1 when unseen)."""
        raise NotImplementedError


class SqlSequenceStore(SequenceStore):
    """SequenceStore backed by the lot_sequence_counters table."""

    def __init__(self, db: Session):
        self.db = db

    def increment(self, scope_key: str) -> int:
        table = LotSequenceCounter.__table__
        now = datetime.now(timezone.utc)

        # The stored value is the *next* one to hand out, so a fresh row
        # starts at 2 and the caller receives RETURNING - 1.
        stmt = dialect_insert(self.db, table).values(
            scope_key=scope_key, next_value=2, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.scope_key],
            set_={"next_value": table.c.next_value + 1, "updated_at": now},
        ).returning(table.c.next_value)

        try:
            issued = self.db.execute(stmt).scalar_one() - 1
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Sequence increment failed for {scope_key}: {e}",
                extra={"scope_key": scope_key},
            )
            raise StoreUnavailable("lot_sequence_counters", "increment failed") from e

        logger.debug(f"Issued sequence {issued} for {scope_key}")
        return issued
