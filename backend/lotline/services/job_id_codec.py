"""
Job Identifier Codec

Pure encode/decode of composite job identifiers.

Two shapes are in circulation:
    "<orderId>-item-<itemId>-lot-<N>"   lot-bearing
    "<orderId>-item-<itemId>"           no embedded lot

Older jobs carry a duplicated token ("...-item-item-1751...") from a past
generator bug. The order id group is lazy (it stops at the first "-item-"),
so the extra "item-" lands inside item_id instead of breaking the parse;
stored ids are never rewritten.

Usage:
    from lotline.services.job_id_codec import decode_job_id, encode_job_id

    info = decode_job_id("AERO-2025-001-item-0-lot-3")
    info.lot_sequence  # 3
"""
import re
from dataclasses import dataclass
from typing import Optional

# Lot-bearing pattern is strictly more specific and must be tried first
_LOT_JOB_ID = re.compile(r"^(.+?)-item-(.+)-lot-(\d+)$")
_SIMPLE_JOB_ID = re.compile(r"^(.+?)-item-(.+)$")


@dataclass(frozen=True)
class JobIdentifier:
    """Components of a decoded job id"""
    order_id: str
    item_id: str
    lot_sequence: Optional[int] = None

    @property
    def has_lot(self) -> bool:
        return self.lot_sequence is not None


def decode_job_id(job_id: str) -> Optional[JobIdentifier]:
    """
    Decode a job id into (order_id, item_id, lot_sequence).

    Returns None for ids in neither shape; callers fall back to the metadata
    they were given.
    """
    if not job_id:
        return None

    match = _LOT_JOB_ID.match(job_id)
    if match:
        return JobIdentifier(
            order_id=match.group(1),
            item_id=match.group(2),
            lot_sequence=int(match.group(3)),
        )

    match = _SIMPLE_JOB_ID.match(job_id)
    if match:
        return JobIdentifier(order_id=match.group(1), item_id=match.group(2))

    return None


def encode_job_id(order_id: str, item_id: str, lot_sequence: Optional[int] = None) -> str:
    """Build a clean job id. Used for new jobs only."""
    job_id = f"{order_id}-item-{item_id}"
    if lot_sequence is not None:
        job_id += f"-lot-{lot_sequence}"
    return job_id


def display_label(job_id: str, part_name: str) -> str:
    """'<part> (Lot N)' when the job id carries a lot sequence, else the part name."""
    info = decode_job_id(job_id)
    if info and info.has_lot:
        return f"{part_name} (Lot {info.lot_sequence})"
    return part_name
