"""
Lot Identity API Endpoints

Canonical lot numbers for jobs, job id encoding/decoding, raw lot counters,
and template-based lot code generation.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from lotline.db.session import get_db
from lotline.exceptions import NotFoundError
from lotline.schemas.lot import (
    BatchGenerateRequest,
    BatchGenerateResponse,
    DisplayLabelResponse,
    GenerateLotRequest,
    GenerateLotResponse,
    JobIdCreateRequest,
    JobIdCreateResponse,
    JobIdDecodeResponse,
    JobLotMappingListResponse,
    JobLotMappingResponse,
    LotCodeComponents,
    LotResolutionResponse,
    MarkUsedResponse,
    RecordUsageRequest,
    RecordUsageResponse,
    ResolveLotRequest,
    SequenceRequest,
    SequenceResponse,
    ValidateLotRequest,
    ValidateLotResponse,
)
from lotline.services.job_id_codec import decode_job_id, display_label
from lotline.services.lot_generator import (
    LotSequenceGenerator,
    new_job_id,
    next_lot_sequence,
    parse_lot_code,
)
from lotline.services.lot_mapping import (
    LotMappingService,
    build_lot_generator,
    build_lot_mapping_service,
)
from lotline.services.sequence_store import SqlSequenceStore, lot_scope_key
from lotline.logging_config import get_logger

router = APIRouter()
logger = get_logger(__name__)


def get_lot_mapping_service(db: Session = Depends(get_db)) -> LotMappingService:
    return build_lot_mapping_service(db)


def get_lot_generator(db: Session = Depends(get_db)) -> LotSequenceGenerator:
    return build_lot_generator(db)


# ============================================================================
# Canonical lot numbers
# ============================================================================

@router.post("/resolve", response_model=LotResolutionResponse)
def resolve_job_lot(
    request: ResolveLotRequest,
    service: LotMappingService = Depends(get_lot_mapping_service),
):
    """
    Get or create the canonical lot number of a job.

    Always answers with a lot number; degraded=true means the mapping store
    was unreachable and the value was not persisted.
    """
    resolution = service.resolve(
        request.job_id,
        request.part_number,
        request.part_name,
        request.order_id,
        request.component,
    )
    return LotResolutionResponse(
        job_id=resolution.job_id,
        lot_number=resolution.lot_number,
        source=resolution.source,
        persisted=resolution.persisted,
        degraded=resolution.degraded,
    )


@router.get("/mappings", response_model=JobLotMappingListResponse)
def list_job_lot_mappings(service: LotMappingService = Depends(get_lot_mapping_service)):
    """All job lot mappings with usage history (audit view)."""
    mappings = service.list_mappings()
    return JobLotMappingListResponse(
        items=[JobLotMappingResponse.model_validate(m) for m in mappings],
        total=len(mappings),
    )


@router.get("/mappings/{job_id}", response_model=JobLotMappingResponse)
def get_job_lot_mapping(
    job_id: str,
    service: LotMappingService = Depends(get_lot_mapping_service),
):
    mapping = service.get_mapping(job_id)
    if not mapping:
        raise NotFoundError("Job lot mapping", job_id)
    return JobLotMappingResponse.model_validate(mapping)


@router.post("/mappings/{job_id}/usage", response_model=RecordUsageResponse)
def record_job_lot_usage(
    job_id: str,
    request: RecordUsageRequest,
    service: LotMappingService = Depends(get_lot_mapping_service),
):
    """Record that a component used the job's lot number. recorded=false if unmapped."""
    recorded = service.record_usage(job_id, request.component, request.notes)
    return RecordUsageResponse(job_id=job_id, recorded=recorded)


# ============================================================================
# Job identifiers
# ============================================================================

@router.get("/job-ids/{job_id}", response_model=JobIdDecodeResponse)
def decode_job_identifier(job_id: str):
    """Decode a job id. Unrecognized ids are reported, not rejected."""
    info = decode_job_id(job_id)
    if not info:
        return JobIdDecodeResponse(job_id=job_id, recognized=False)
    return JobIdDecodeResponse(
        job_id=job_id,
        recognized=True,
        order_id=info.order_id,
        item_id=info.item_id,
        lot_sequence=info.lot_sequence,
    )


@router.post("/job-ids", response_model=JobIdCreateResponse, status_code=201)
def create_job_identifier(request: JobIdCreateRequest, db: Session = Depends(get_db)):
    """Draw the next lot sequence for the part and encode a new job id."""
    job_id, lot_sequence = new_job_id(
        SqlSequenceStore(db),
        request.order_id,
        request.item_id,
        request.part_number,
        order_scoped=request.order_scoped,
    )
    return JobIdCreateResponse(job_id=job_id, lot_sequence=lot_sequence)


@router.get("/display-label", response_model=DisplayLabelResponse)
def get_display_label(
    job_id: str = Query(..., min_length=1),
    part_name: str = Query(..., min_length=1),
):
    return DisplayLabelResponse(job_id=job_id, label=display_label(job_id, part_name))


# ============================================================================
# Raw counters and lot codes
# ============================================================================

@router.post("/sequences/next", response_model=SequenceResponse)
def next_sequence(request: SequenceRequest, db: Session = Depends(get_db)):
    """Next raw lot counter for a part (or part within an order)."""
    sequence = next_lot_sequence(SqlSequenceStore(db), request.part_number, request.order_id)
    return SequenceResponse(
        scope_key=lot_scope_key(request.part_number, request.order_id),
        sequence=sequence,
    )


@router.post("/generate", response_model=GenerateLotResponse, status_code=201)
def generate_lot_code(
    request: GenerateLotRequest,
    generator: LotSequenceGenerator = Depends(get_lot_generator),
):
    lot_code = generator.mint(
        request.job_id,
        request.task_id,
        request.material_type,
        request.task_name,
        request.config,
    )
    return GenerateLotResponse(lot_code=lot_code)


@router.post("/generate/batch", response_model=BatchGenerateResponse, status_code=201)
def generate_lot_codes_for_tasks(
    request: BatchGenerateRequest,
    generator: LotSequenceGenerator = Depends(get_lot_generator),
):
    return BatchGenerateResponse(lot_codes=generator.mint_for_tasks(request.tasks, request.config))


@router.post("/validate", response_model=ValidateLotResponse)
def validate_lot(request: ValidateLotRequest):
    """Check a lot code against a template and return its components."""
    parts = parse_lot_code(request.lot_code, request.config)
    if parts is None:
        return ValidateLotResponse(lot_code=request.lot_code, valid=False)
    return ValidateLotResponse(
        lot_code=request.lot_code,
        valid=True,
        components=LotCodeComponents(
            prefix=parts.prefix,
            date=parts.date,
            shift=parts.shift,
            sequence=parts.sequence,
            suffix=parts.suffix,
        ),
    )


@router.post("/codes/{lot_code}/mark-used", response_model=MarkUsedResponse)
def mark_lot_code_used(
    lot_code: str,
    generator: LotSequenceGenerator = Depends(get_lot_generator),
):
    if not generator.mark_used(lot_code):
        raise NotFoundError("Lot code", lot_code)
    return MarkUsedResponse(lot_code=lot_code, marked=True)
