"""Database models"""
from lotline.models.lot import (
    LotSequenceCounter, GeneratedLotNumber, JobLotMapping, JobLotUsage
)

__all__ = [
    # Sequencing
    "LotSequenceCounter",
    "GeneratedLotNumber",
    # Canonical mapping
    "JobLotMapping",
    "JobLotUsage",
]
