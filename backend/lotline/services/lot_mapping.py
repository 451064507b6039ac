"""
Canonical Lot Mapping

Single source of truth for a job's lot number. Every consumer (job creation,
traceability task, routing sheet, material approval) calls resolve() with the
job id and gets the same string back.

Lifecycle per job id: Unmapped -> Mapped, exactly once.

1. First call creates the mapping:
   - job id embeds a lot sequence -> deterministic aligned lot number
     ({partCode}-{orderCode}-LOT-{seq:03d}); no counter is touched, so the
     same job id always re-derives the same value
   - otherwise -> fresh code from the LotSequenceGenerator
2. Creation is create-if-absent; a caller that loses the race reads the
   winner's value instead of writing its own.
3. Every call appends one usage entry.
4. If the mapping store is unreachable the caller still gets a lot number:
   the aligned formula when the job id allows it, otherwise
   LOT-YYYYMMDD-NNNN. Such results are flagged degraded and not persisted.

Usage:
    from lotline.services.lot_mapping import resolve_lot_number

    lot = resolve_lot_number(db, job_id, "1606P-AEROSPACE", None, "AERO-2025-001",
                             LotConsumer.ROUTING_SHEET)
"""
import re
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple, Union

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from lotline.exceptions import StoreUnavailable
from lotline.models.lot import JobLotMapping, JobLotUsage
from lotline.schemas.lot import LotConsumer, LotSource
from lotline.services.job_id_codec import JobIdentifier, decode_job_id
from lotline.services.lot_generator import LotSequenceGenerator, SqlLotRecordStore, next_lot_sequence
from lotline.services.sequence_store import SqlSequenceStore, attempt, dialect_insert
from lotline.logging_config import get_logger

logger = get_logger(__name__)

# Used when a job id carries no lot sequence and a code has to be minted
MINT_TASK_ID = "job-task-lot"
MINT_TASK_NAME = "Set Traceability & Lot Number"

_NON_CODE_CHARS = re.compile(r"[^A-Z0-9]")


def aligned_lot_number(part_number: Optional[str], order_id: Optional[str], lot_sequence: int) -> str:
    """
    Deterministic lot number for a job whose id embeds a lot sequence.

    Only [A-Z0-9] survive into the codes (lowercase is dropped too), so
    lot numbers already issued re-derive unchanged.

    >>> aligned_lot_number("1606P-AEROSPACE", "AERO-2025-001", 3)
    '1606PA-025001-LOT-003'
    """
    part_code = _NON_CODE_CHARS.sub("", part_number or "")[:6]
    order_code = _NON_CODE_CHARS.sub("", order_id or "")[-6:]
    return f"{part_code}-{order_code}-LOT-{lot_sequence:03d}"


def fallback_lot_number(now: Optional[datetime] = None) -> str:
    """Last-resort lot number when nothing can be derived or stored."""
    now = now or datetime.now()
    return f"LOT-{now:%Y%m%d}-{secrets.randbelow(10000):04d}"


@dataclass(frozen=True)
class JobLotMetadata:
    """Caller metadata with gaps filled from the decoded job id"""
    part_number: Optional[str]
    part_name: Optional[str]
    order_id: Optional[str]


def resolve_job_metadata(
    job_info: Optional[JobIdentifier],
    part_number: Optional[str],
    part_name: Optional[str],
    order_id: Optional[str],
) -> JobLotMetadata:
    """
    Fill absent (None or empty) metadata from the decoded job id.

    Supplied values always win. Part number falls back to the first token of
    the order id, part name to the part number.
    """
    if not order_id and job_info:
        order_id = job_info.order_id
    if not part_number and job_info:
        part_number = job_info.order_id.split("-")[0]
    if not part_name:
        part_name = part_number
    return JobLotMetadata(part_number=part_number, part_name=part_name, order_id=order_id)


@dataclass(frozen=True)
class LotResolution:
    """Outcome of resolving a job's lot number"""
    job_id: str
    lot_number: str
    source: LotSource
    persisted: bool

    @property
    def degraded(self) -> bool:
        return self.source in (LotSource.DEGRADED_DERIVED, LotSource.DEGRADED_RANDOM)


# ============================================================================
# Mapping store
# ============================================================================

class LotMappingStore(ABC):
    """Persistence for job -> lot mappings and their usage history."""

    @abstractmethod
    def get_lot_number(self, job_id: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def create_if_absent(
        self,
        job_id: str,
        lot_number: str,
        metadata: JobLotMetadata,
        component: str,
        notes: str,
    ) -> Tuple[str, bool]:
        """Store the mapping unless one exists. Returns (stored lot number, created)."""
        raise NotImplementedError

    @abstractmethod
    def append_usage(self, job_id: str, component: str, notes: Optional[str] = None) -> bool:
        """Append a usage entry. Returns False when the job has no mapping."""
        raise NotImplementedError

    @abstractmethod
    def get(self, job_id: str) -> Optional[JobLotMapping]:
        raise NotImplementedError

    @abstractmethod
    def list(self) -> List[JobLotMapping]:
        raise NotImplementedError


class SqlLotMappingStore(LotMappingStore):
    """LotMappingStore backed by job_lot_mappings / job_lot_usage."""

    def __init__(self, db: Session):
        self.db = db

    def _unavailable(self, action: str, error: SQLAlchemyError) -> StoreUnavailable:
        self.db.rollback()
        logger.error(f"Lot mapping store {action} failed: {error}")
        return StoreUnavailable("job_lot_mappings", f"{action} failed")

    def get_lot_number(self, job_id: str) -> Optional[str]:
        try:
            return (
                self.db.query(JobLotMapping.lot_number)
                .filter(JobLotMapping.job_id == job_id)
                .scalar()
            )
        except SQLAlchemyError as e:
            raise self._unavailable("lookup", e) from e

    def create_if_absent(
        self,
        job_id: str,
        lot_number: str,
        metadata: JobLotMetadata,
        component: str,
        notes: str,
    ) -> Tuple[str, bool]:
        table = JobLotMapping.__table__
        now = datetime.now(timezone.utc)

        stmt = dialect_insert(self.db, table).values(
            job_id=job_id,
            lot_number=lot_number,
            part_number=metadata.part_number,
            part_name=metadata.part_name,
            order_id=metadata.order_id,
            created_at=now,
            last_updated=now,
        ).on_conflict_do_nothing(index_elements=[table.c.job_id])

        try:
            created = self.db.execute(stmt).rowcount == 1
            if created:
                self.db.add(JobLotUsage(job_id=job_id, component=component, timestamp=now, notes=notes))
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._unavailable("create", e) from e

        # The row we inserted holds exactly lot_number
        if created:
            return lot_number, True
        return self.get_lot_number(job_id), False

    def append_usage(self, job_id: str, component: str, notes: Optional[str] = None) -> bool:
        now = datetime.now(timezone.utc)
        try:
            touched = self.db.execute(
                update(JobLotMapping.__table__)
                .where(JobLotMapping.__table__.c.job_id == job_id)
                .values(last_updated=now)
            ).rowcount
            if not touched:
                self.db.rollback()
                return False
            self.db.add(JobLotUsage(job_id=job_id, component=component, timestamp=now, notes=notes))
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._unavailable("usage append", e) from e
        return True

    def get(self, job_id: str) -> Optional[JobLotMapping]:
        try:
            return (
                self.db.query(JobLotMapping)
                .options(selectinload(JobLotMapping.usage_history))
                .filter(JobLotMapping.job_id == job_id)
                .first()
            )
        except SQLAlchemyError as e:
            raise self._unavailable("lookup", e) from e

    def list(self) -> List[JobLotMapping]:
        try:
            return (
                self.db.query(JobLotMapping)
                .options(selectinload(JobLotMapping.usage_history))
                .order_by(JobLotMapping.created_at, JobLotMapping.job_id)
                .all()
            )
        except SQLAlchemyError as e:
            raise self._unavailable("list", e) from e


# ============================================================================
# Service
# ============================================================================

class LotMappingService:
    """Resolves and audits the canonical lot number of each job."""

    def __init__(self, store: LotMappingStore, generator: LotSequenceGenerator):
        self.store = store
        self.generator = generator

    def resolve(
        self,
        job_id: str,
        part_number: Optional[str],
        part_name: Optional[str],
        order_id: Optional[str],
        consumer: Union[LotConsumer, str],
    ) -> LotResolution:
        """
        Return the canonical lot number for job_id, creating it on first use.

        Never raises StoreUnavailable; see LotResolution.degraded.
        """
        consumer = LotConsumer(consumer)
        job_info = decode_job_id(job_id)
        metadata = resolve_job_metadata(job_info, part_number, part_name, order_id)

        outcome = attempt(self._resolve_stored, job_id, job_info, metadata, consumer)
        return outcome.or_else(
            lambda err: self._resolve_degraded(job_id, job_info, metadata, consumer, err)
        )

    def _resolve_stored(
        self,
        job_id: str,
        job_info: Optional[JobIdentifier],
        metadata: JobLotMetadata,
        consumer: LotConsumer,
    ) -> LotResolution:
        existing = self.store.get_lot_number(job_id)
        if existing is not None:
            self._record_retrieval(job_id, consumer)
            logger.info(
                f"Retrieved existing lot number {existing} for job {job_id} (used by {consumer.value})"
            )
            return LotResolution(job_id, existing, LotSource.EXISTING, persisted=True)

        if job_info and job_info.has_lot:
            candidate = aligned_lot_number(metadata.part_number, metadata.order_id, job_info.lot_sequence)
            source = LotSource.DERIVED
            notes = (
                f"Initial lot number generation by {consumer.value} "
                f"(aligned with job lot {job_info.lot_sequence})"
            )
        else:
            candidate = self.generator.mint(job_id, MINT_TASK_ID, metadata.part_number, MINT_TASK_NAME)
            source = LotSource.MINTED
            notes = f"Initial lot number generation by {consumer.value}"

        stored, created = self.store.create_if_absent(job_id, candidate, metadata, consumer.value, notes)
        if not created:
            # Another caller created the mapping between our lookup and insert
            logger.info(
                f"Lot mapping for job {job_id} created concurrently, using {stored}",
                extra={"job_id": job_id, "discarded_lot_number": candidate},
            )
            self._record_retrieval(job_id, consumer)
            return LotResolution(job_id, stored, LotSource.EXISTING, persisted=True)

        logger.info(
            f"Created lot mapping: {job_id} -> {stored} (created by {consumer.value})",
            extra={"job_id": job_id, "source": source.value},
        )
        return LotResolution(job_id, stored, source, persisted=True)

    def _record_retrieval(self, job_id: str, consumer: LotConsumer) -> None:
        # The stored value is already known; a failed audit append must not
        # push the caller onto the degraded path.
        outcome = attempt(
            self.store.append_usage, job_id, consumer.value,
            f"Lot number retrieved by {consumer.value}",
        )
        if not outcome.ok:
            logger.warning(
                f"Could not record lot usage by {consumer.value} for job {job_id}",
                extra={"job_id": job_id, "degraded": True},
            )

    def _resolve_degraded(
        self,
        job_id: str,
        job_info: Optional[JobIdentifier],
        metadata: JobLotMetadata,
        consumer: LotConsumer,
        error: StoreUnavailable,
    ) -> LotResolution:
        if job_info and job_info.has_lot:
            lot_number = aligned_lot_number(metadata.part_number, metadata.order_id, job_info.lot_sequence)
            source = LotSource.DEGRADED_DERIVED
        else:
            lot_number = fallback_lot_number()
            source = LotSource.DEGRADED_RANDOM

        logger.warning(
            f"Lot mapping store unavailable, using unpersisted lot number {lot_number} for job {job_id}",
            extra={
                "job_id": job_id,
                "component": consumer.value,
                "source": source.value,
                "degraded": True,
                "error": error.message,
            },
        )
        return LotResolution(job_id, lot_number, source, persisted=False)

    def record_usage(
        self,
        job_id: str,
        consumer: Union[LotConsumer, str],
        notes: Optional[str] = None,
    ) -> bool:
        """
        Note that a component used the job's lot number, without resolving it.

        Returns False when the job is unmapped or the store is unreachable.
        """
        consumer = LotConsumer(consumer)
        outcome = attempt(
            self.store.append_usage, job_id, consumer.value,
            notes or f"Lot number used by {consumer.value}",
        )
        if not outcome.ok:
            logger.warning(
                f"Could not record lot usage by {consumer.value} for job {job_id}",
                extra={"job_id": job_id, "degraded": True},
            )
            return False
        if outcome.value:
            logger.info(f"Recorded lot number usage by {consumer.value} for job {job_id}")
        return outcome.value

    def get_mapping(self, job_id: str) -> Optional[JobLotMapping]:
        return self.store.get(job_id)

    def list_mappings(self) -> List[JobLotMapping]:
        return self.store.list()


# ============================================================================
# Session-level entry points
# ============================================================================

def build_lot_generator(db: Session) -> LotSequenceGenerator:
    return LotSequenceGenerator(SqlSequenceStore(db), SqlLotRecordStore(db))


def build_lot_mapping_service(db: Session) -> LotMappingService:
    return LotMappingService(SqlLotMappingStore(db), build_lot_generator(db))


def resolve_lot_number(
    db: Session,
    job_id: str,
    part_number: Optional[str],
    part_name: Optional[str],
    order_id: Optional[str],
    consumer: Union[LotConsumer, str],
) -> str:
    """Canonical lot number for a job as a plain string."""
    return build_lot_mapping_service(db).resolve(
        job_id, part_number, part_name, order_id, consumer
    ).lot_number


def mint_sequential_lot(db: Session, part_number: str, order_id: Optional[str] = None) -> int:
    """Next raw lot counter for a part, or for a part within one order."""
    return next_lot_sequence(SqlSequenceStore(db), part_number, order_id)
