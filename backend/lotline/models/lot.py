"""
Lot Identity Models

Persistence for lot sequence counters, minted lot codes, and the canonical
job -> lot number mapping with its usage audit trail.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from lotline.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LotSequenceCounter(Base):
    """Durable counter per scope key (part, part#order, or task/day)"""
    __tablename__ = "lot_sequence_counters"

    scope_key = Column(String(255), primary_key=True)

    # Value the next increment will return
    next_value = Column(Integer, nullable=False, default=1)

    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return f"<LotSequenceCounter {self.scope_key}: next={self.next_value}>"


class GeneratedLotNumber(Base):
    """Immutable record of one minted lot code"""
    __tablename__ = "generated_lot_numbers"

    id = Column(Integer, primary_key=True, index=True)

    lot_code = Column(String(100), nullable=False, index=True)
    generated_at = Column(DateTime, default=_utcnow, nullable=False)

    # Minting context
    job_id = Column(String(255), nullable=False, index=True)
    task_id = Column(String(255), nullable=False)
    task_name = Column(String(255), nullable=False)
    material_type = Column(String(255), nullable=True)
    sequence = Column(Integer, nullable=False)

    # Flipped once by the consumer that uses the code
    is_used = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<GeneratedLotNumber {self.lot_code} (used={self.is_used})>"


class JobLotMapping(Base):
    """Canonical lot number for a job; lot_number is write-once"""
    __tablename__ = "job_lot_mappings"

    job_id = Column(String(255), primary_key=True)
    lot_number = Column(String(100), nullable=False)

    # Metadata as resolved at creation time
    part_number = Column(String(255), nullable=True)
    part_name = Column(String(255), nullable=True)
    order_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    last_updated = Column(DateTime, default=_utcnow, nullable=False)

    usage_history = relationship(
        "JobLotUsage",
        back_populates="mapping",
        order_by="JobLotUsage.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<JobLotMapping {self.job_id} -> {self.lot_number}>"


class JobLotUsage(Base):
    """One audit entry: which component observed the mapping, and when"""
    __tablename__ = "job_lot_usage"

    id = Column(Integer, primary_key=True, index=True)

    job_id = Column(
        String(255),
        ForeignKey("job_lot_mappings.job_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # job_creation, traceability_task, routing_sheet, material_approval
    component = Column(String(50), nullable=False)
    timestamp = Column(DateTime, default=_utcnow, nullable=False)
    notes = Column(Text, nullable=True)

    mapping = relationship("JobLotMapping", back_populates="usage_history")

    def __repr__(self):
        return f"<JobLotUsage {self.component} on {self.job_id}>"
