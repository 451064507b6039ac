"""
Lot Number Generator

Turns a per-task, per-day sequence into a human-readable lot code using a
configurable template, and keeps an audit record of every code it mints.

Template (segments joined by the separator, empty segments dropped):
    [prefix] [date] [shift] [sequence] [suffix]
    RM-20250314-A-007

Key Features:
1. Sequences restart at 1 for every (task name, calendar day)
2. Shift code from local hour: 06-14 A, 14-22 B, otherwise C
3. Timestamp fallback sequence when the counter store is down (logged as
   lot_sequence_fallback, uniqueness is not guaranteed on that path)
4. Pure validate/parse over the same grammar

Usage:
    from lotline.services.lot_generator import LotSequenceGenerator

    generator = LotSequenceGenerator(SqlSequenceStore(db), SqlLotRecordStore(db))
    code = generator.mint(job_id, task_id, "6061-T6", "Set Traceability & Lot Number")
"""
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lotline.core.config import settings
from lotline.core.settings import SUPPORTED_DATE_FORMATS
from lotline.exceptions import InvalidLotConfig, StoreUnavailable
from lotline.models.lot import GeneratedLotNumber
from lotline.schemas.lot import LotNumberConfig
from lotline.services.job_id_codec import encode_job_id
from lotline.services.sequence_store import SequenceStore, attempt, lot_scope_key
from lotline.logging_config import get_logger

logger = get_logger(__name__)

_STRFTIME = {
    "YYYYMMDD": "%Y%m%d",
    "YYMMDD": "%y%m%d",
    "MMDDYY": "%m%d%y",
}

SHIFT_CODES = ("A", "B", "C")


# ============================================================================
# Template
# ============================================================================

@dataclass(frozen=True)
class LotTemplate:
    """Fully resolved lot template"""
    prefix: str
    date_format: str
    sequence_length: int
    separator: str
    include_shift: bool
    custom_suffix: str


@dataclass(frozen=True)
class LotCodeParts:
    """Components of a parsed lot code"""
    date: str
    sequence: int
    prefix: Optional[str] = None
    shift: Optional[str] = None
    suffix: Optional[str] = None


def default_lot_template() -> LotTemplate:
    return LotTemplate(
        prefix=settings.LOT_PREFIX,
        date_format=settings.LOT_DATE_FORMAT,
        sequence_length=settings.LOT_SEQUENCE_LENGTH,
        separator=settings.LOT_SEPARATOR,
        include_shift=settings.LOT_INCLUDE_SHIFT,
        custom_suffix=settings.LOT_CUSTOM_SUFFIX,
    )


def resolve_lot_config(config: Optional[LotNumberConfig] = None) -> LotTemplate:
    """
    Merge a partial config over the defaults and validate the result.

    Raises:
        InvalidLotConfig: unknown date format, non-positive sequence length,
            or empty separator
    """
    base = default_lot_template()
    overrides = config.model_dump(exclude_none=True) if config else {}
    merged = {**asdict(base), **overrides}

    date_format = str(merged["date_format"]).upper()
    if date_format not in _STRFTIME:
        raise InvalidLotConfig(
            f"Unknown date format '{merged['date_format']}', "
            f"expected one of {', '.join(SUPPORTED_DATE_FORMATS)}",
            field="date_format",
            value=merged["date_format"],
        )
    merged["date_format"] = date_format

    if merged["sequence_length"] < 1:
        raise InvalidLotConfig(
            "Sequence length must be at least 1",
            field="sequence_length",
            value=merged["sequence_length"],
        )
    if not merged["separator"]:
        raise InvalidLotConfig("Separator must not be empty", field="separator")

    return LotTemplate(**merged)


def shift_code(hour: int) -> str:
    """Production shift for a local hour of day."""
    if 6 <= hour < 14:
        return "A"  # Day shift
    if 14 <= hour < 22:
        return "B"  # Evening shift
    return "C"  # Night shift


def task_scope_key(task_name: str, date_str: str) -> str:
    return f"task/{task_name}/{date_str}"


def fallback_sequence() -> int:
    """Best-effort sequence when no counter is reachable. Not unique."""
    return int(time.time()) % 1000


# ============================================================================
# Validation / parsing (pure)
# ============================================================================

def parse_lot_code(lot_code: str, config: Optional[LotNumberConfig] = None) -> Optional[LotCodeParts]:
    """Split a lot code into its components, or None if it does not fit the template."""
    template = resolve_lot_config(config)
    parts = lot_code.split(template.separator)

    layout = []
    if template.prefix:
        layout.append("prefix")
    layout.append("date")
    if template.include_shift:
        layout.append("shift")
    layout.append("sequence")
    if template.custom_suffix:
        layout.append("suffix")

    if len(parts) != len(layout):
        return None
    fields = dict(zip(layout, parts))

    if template.prefix and fields["prefix"] != template.prefix:
        return None

    date_str = fields["date"]
    expected_len = 8 if template.date_format == "YYYYMMDD" else 6
    if len(date_str) != expected_len or not date_str.isdigit():
        return None
    try:
        datetime.strptime(date_str, _STRFTIME[template.date_format])
    except ValueError:
        return None

    if template.include_shift and fields["shift"] not in SHIFT_CODES:
        return None

    sequence = fields["sequence"]
    if not sequence.isdigit() or len(sequence) < template.sequence_length:
        return None

    if template.custom_suffix and fields["suffix"] != template.custom_suffix:
        return None

    return LotCodeParts(
        prefix=fields.get("prefix"),
        date=date_str,
        shift=fields.get("shift"),
        sequence=int(sequence),
        suffix=fields.get("suffix"),
    )


def validate_lot_code(lot_code: str, config: Optional[LotNumberConfig] = None) -> bool:
    return parse_lot_code(lot_code, config) is not None


# ============================================================================
# Record store
# ============================================================================

class LotRecordStore(ABC):
    """Persistence for minted lot codes."""

    @abstractmethod
    def add(
        self,
        *,
        lot_code: str,
        generated_at: datetime,
        job_id: str,
        task_id: str,
        task_name: str,
        material_type: Optional[str],
        sequence: int,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def mark_used(self, lot_code: str) -> bool:
        raise NotImplementedError


class SqlLotRecordStore(LotRecordStore):
    """LotRecordStore backed by the generated_lot_numbers table."""

    def __init__(self, db: Session):
        self.db = db

    def add(
        self,
        *,
        lot_code: str,
        generated_at: datetime,
        job_id: str,
        task_id: str,
        task_name: str,
        material_type: Optional[str],
        sequence: int,
    ) -> None:
        record = GeneratedLotNumber(
            lot_code=lot_code,
            generated_at=generated_at,
            job_id=job_id,
            task_id=task_id,
            task_name=task_name,
            material_type=material_type,
            sequence=sequence,
            is_used=False,
        )
        try:
            self.db.add(record)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreUnavailable("generated_lot_numbers", "insert failed") from e

    def mark_used(self, lot_code: str) -> bool:
        try:
            record = (
                self.db.query(GeneratedLotNumber)
                .filter(GeneratedLotNumber.lot_code == lot_code)
                .order_by(GeneratedLotNumber.id)
                .first()
            )
            if not record:
                return False
            if not record.is_used:
                record.is_used = True
                self.db.commit()
            return True
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreUnavailable("generated_lot_numbers", "update failed") from e


# ============================================================================
# Generator
# ============================================================================

class LotSequenceGenerator:
    """Mints template-formatted lot codes from task/day scoped sequences."""

    def __init__(self, sequence_store: SequenceStore, record_store: LotRecordStore):
        self.sequence_store = sequence_store
        self.record_store = record_store

    def mint(
        self,
        job_id: str,
        task_id: str,
        material_type: Optional[str],
        task_name: str,
        config: Optional[LotNumberConfig] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Mint and record a new lot code.

        Args:
            job_id: Job the code is minted for
            task_id: Task requesting the code
            material_type: Material being lotted
            task_name: Sequence scope (with the date)
            config: Partial template overrides
            now: Local time to stamp (defaults to the current local time)

        Returns:
            The formatted lot code

        Raises:
            InvalidLotConfig: The template is malformed
            StoreUnavailable: The minted code could not be recorded
        """
        template = resolve_lot_config(config)
        now = now or datetime.now()

        date_str = now.strftime(_STRFTIME[template.date_format])
        shift = shift_code(now.hour) if template.include_shift else ""

        scope_key = task_scope_key(task_name, date_str)
        sequence = attempt(self.sequence_store.increment, scope_key).or_else(
            lambda err: self._fallback(scope_key, job_id, err)
        )
        sequence_str = str(sequence).zfill(template.sequence_length)

        parts = [template.prefix, date_str, shift, sequence_str, template.custom_suffix]
        lot_code = template.separator.join(p for p in parts if p)

        self.record_store.add(
            lot_code=lot_code,
            generated_at=datetime.now(timezone.utc),
            job_id=job_id,
            task_id=task_id,
            task_name=task_name,
            material_type=material_type,
            sequence=sequence,
        )

        logger.info(
            f"Minted lot code {lot_code} for task '{task_name}'",
            extra={"job_id": job_id, "task_id": task_id, "sequence": sequence},
        )
        return lot_code

    def _fallback(self, scope_key: str, job_id: str, error: StoreUnavailable) -> int:
        sequence = fallback_sequence()
        logger.warning(
            f"Sequence store unavailable, using timestamp sequence {sequence}",
            extra={
                "event": "lot_sequence_fallback",
                "degraded": True,
                "scope_key": scope_key,
                "job_id": job_id,
                "error": error.message,
            },
        )
        return sequence

    def mint_for_tasks(
        self,
        tasks: Iterable,
        config: Optional[LotNumberConfig] = None,
    ) -> Dict[str, str]:
        """
        Mint one code per task, grouped by task name.

        Each task needs ``id``, ``name``, ``job_id`` and optionally
        ``material_type``. A task whose code cannot be recorded gets an
        ``ERROR-<last 6 of task id>`` placeholder instead of failing the batch.
        """
        resolve_lot_config(config)

        by_name: Dict[str, list] = {}
        for task in tasks:
            by_name.setdefault(task.name, []).append(task)

        result: Dict[str, str] = {}
        for task_name, group in by_name.items():
            for task in group:
                try:
                    result[task.id] = self.mint(
                        task.job_id,
                        task.id,
                        getattr(task, "material_type", None) or "Unknown",
                        task_name,
                        config,
                    )
                except StoreUnavailable as e:
                    logger.error(
                        f"Could not mint lot code for task {task.id}: {e.message}",
                        extra={"task_id": task.id, "job_id": task.job_id},
                    )
                    result[task.id] = f"ERROR-{task.id[-6:]}"
        return result

    def mark_used(self, lot_code: str) -> bool:
        """Flag a minted code as consumed. Returns False for unknown codes."""
        marked = self.record_store.mark_used(lot_code)
        if marked:
            logger.info(f"Lot code {lot_code} marked as used")
        return marked


# ============================================================================
# Raw part/order counters and job ids
# ============================================================================

def next_lot_sequence(
    store: SequenceStore,
    part_number: str,
    order_id: Optional[str] = None,
) -> int:
    """
    Next raw lot number for a part, optionally counted within one order.

    Falls back to a timestamp-derived value when the counter is unreachable.
    """
    scope_key = lot_scope_key(part_number, order_id)
    outcome = attempt(store.increment, scope_key)
    if outcome.ok:
        logger.info(
            f"Generated lot {outcome.value} for part {part_number}"
            + (f" in order {order_id}" if order_id else "")
        )
        return outcome.value

    sequence = fallback_sequence()
    logger.warning(
        f"Counter store unavailable, using fallback lot {sequence} for {scope_key}",
        extra={"event": "lot_sequence_fallback", "degraded": True, "scope_key": scope_key},
    )
    return sequence


def new_job_id(
    store: SequenceStore,
    order_id: str,
    item_id: str,
    part_number: str,
    order_scoped: bool = True,
) -> Tuple[str, Optional[int]]:
    """
    Create a lot-bearing job id for a new job.

    When the counter store is unreachable the job gets the simple
    "<order>-item-<item>" id rather than an embedded sequence that might
    collide, and its lot number is minted later on first resolve.

    Returns:
        (job_id, lot_sequence or None)
    """
    scope_key = lot_scope_key(part_number, order_id if order_scoped else None)
    outcome = attempt(store.increment, scope_key)
    if not outcome.ok:
        job_id = encode_job_id(order_id, item_id)
        logger.warning(
            f"Counter store unavailable, created job {job_id} without lot sequence",
            extra={"degraded": True, "scope_key": scope_key},
        )
        return job_id, None

    job_id = encode_job_id(order_id, item_id, outcome.value)
    logger.info(f"Generated job ID {job_id} (lot {outcome.value} for {part_number})")
    return job_id, outcome.value
