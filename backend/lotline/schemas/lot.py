"""
Lot Identity Schemas

Pydantic models for the lot number API endpoints and the lot template
configuration accepted by the sequence generator.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class LotConsumer(str, Enum):
    """Components that read the canonical lot number of a job"""
    JOB_CREATION = "job_creation"
    TRACEABILITY_TASK = "traceability_task"
    ROUTING_SHEET = "routing_sheet"
    MATERIAL_APPROVAL = "material_approval"


class LotSource(str, Enum):
    """Where a resolved lot number came from"""
    EXISTING = "existing"            # stored mapping, read path
    DERIVED = "derived"              # formula from the job id's lot sequence
    MINTED = "minted"                # fresh code from the sequence generator
    DEGRADED_DERIVED = "degraded_derived"  # formula, store unreachable
    DEGRADED_RANDOM = "degraded_random"    # last-resort synthetic code


class LotNumberConfig(BaseModel):
    """
    Partial lot template. Omitted fields fall back to the configured defaults.

    date_format is validated by the generator so that a bad value fails at
    mint time with INVALID_LOT_CONFIG.
    """
    prefix: Optional[str] = Field(None, max_length=20)
    date_format: Optional[str] = Field(None, description="YYYYMMDD, YYMMDD or MMDDYY")
    sequence_length: Optional[int] = Field(None, ge=1, le=12)
    separator: Optional[str] = None
    include_shift: Optional[bool] = None
    custom_suffix: Optional[str] = Field(None, max_length=20)


# ============================================================================
# Canonical mapping
# ============================================================================

class ResolveLotRequest(BaseModel):
    """Schema for resolving the canonical lot number of a job"""
    job_id: str = Field(..., min_length=1, max_length=255)
    part_number: Optional[str] = Field(None, max_length=255)
    part_name: Optional[str] = Field(None, max_length=255)
    order_id: Optional[str] = Field(None, max_length=255)
    component: LotConsumer


class LotResolutionResponse(BaseModel):
    """Resolved lot number with provenance"""
    job_id: str
    lot_number: str
    source: LotSource
    persisted: bool
    degraded: bool


class UsageEntryResponse(BaseModel):
    component: str
    timestamp: datetime
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class JobLotMappingResponse(BaseModel):
    """Schema for a stored job lot mapping"""
    job_id: str
    lot_number: str
    part_number: Optional[str] = None
    part_name: Optional[str] = None
    order_id: Optional[str] = None
    created_at: datetime
    last_updated: datetime
    usage_history: List[UsageEntryResponse] = []

    class Config:
        from_attributes = True


class JobLotMappingListResponse(BaseModel):
    items: List[JobLotMappingResponse]
    total: int


class RecordUsageRequest(BaseModel):
    component: LotConsumer
    notes: Optional[str] = Field(None, max_length=1000)


class RecordUsageResponse(BaseModel):
    job_id: str
    recorded: bool


# ============================================================================
# Job identifiers
# ============================================================================

class JobIdDecodeResponse(BaseModel):
    """Decoded job identifier; recognized=False for opaque ids"""
    job_id: str
    recognized: bool
    order_id: Optional[str] = None
    item_id: Optional[str] = None
    lot_sequence: Optional[int] = None


class JobIdCreateRequest(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=120)
    item_id: str = Field(..., min_length=1, max_length=120)
    part_number: str = Field(..., min_length=1, max_length=120)
    order_scoped: bool = Field(True, description="Count lots per part within the order")


class JobIdCreateResponse(BaseModel):
    job_id: str
    lot_sequence: Optional[int] = None


class DisplayLabelResponse(BaseModel):
    job_id: str
    label: str


# ============================================================================
# Sequences and lot codes
# ============================================================================

class SequenceRequest(BaseModel):
    part_number: str = Field(..., min_length=1, max_length=120)
    order_id: Optional[str] = Field(None, max_length=120)


class SequenceResponse(BaseModel):
    scope_key: str
    sequence: int


class GenerateLotRequest(BaseModel):
    job_id: str = Field(..., min_length=1, max_length=255)
    task_id: str = Field(..., min_length=1, max_length=255)
    material_type: str = Field("Unknown", max_length=255)
    task_name: str = Field(..., min_length=1, max_length=255)
    config: Optional[LotNumberConfig] = None


class GenerateLotResponse(BaseModel):
    lot_code: str


class BatchLotTask(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    job_id: str = Field(..., min_length=1)
    material_type: Optional[str] = None


class BatchGenerateRequest(BaseModel):
    tasks: List[BatchLotTask]
    config: Optional[LotNumberConfig] = None


class BatchGenerateResponse(BaseModel):
    """Lot code per task id; failed tasks carry an ERROR-... placeholder"""
    lot_codes: Dict[str, str]


class ValidateLotRequest(BaseModel):
    lot_code: str = Field(..., min_length=1)
    config: Optional[LotNumberConfig] = None


class LotCodeComponents(BaseModel):
    prefix: Optional[str] = None
    date: str
    shift: Optional[str] = None
    sequence: int
    suffix: Optional[str] = None


class ValidateLotResponse(BaseModel):
    lot_code: str
    valid: bool
    components: Optional[LotCodeComponents] = None


class MarkUsedResponse(BaseModel):
    lot_code: str
    marked: bool
