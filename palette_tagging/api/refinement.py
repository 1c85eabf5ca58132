"""Refinement API routes (single seed and bulk batch)."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Request, status

from palette_tagging.api.deps import get_refinement_engine, raise_http_error
from palette_tagging.middleware.rate_limit import rate_limit_expensive
from palette_tagging.schemas.schemas import (
    BatchProcessRequest,
    BatchProcessResponse,
    BatchRefinementRequest,
    BatchStartResponse,
    BatchStatusResponse,
    RefineSingleRequest,
    RefinementResponse,
    RefinementStatusResponse,
)
from palette_tagging.services.errors import TaggingError
from palette_tagging.services.refinement import RefinementEngine

router = APIRouter(prefix="/v1/refinement", tags=["Refinement"])


@router.get(
    "/status",
    response_model=RefinementStatusResponse,
    summary="Refinement progress",
    description="Tagged, refined, pending and failed seed counts for the active tagging prompt version.",
)
async def get_refinement_status(engine: RefinementEngine = Depends(get_refinement_engine)):
    return await engine.get_refinement_status()


@router.post(
    "/single/{seed}",
    response_model=RefinementResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Refine one seed",
    description=(
        "Curate the consensus tags of one seed synchronously. A model failure is "
        "stored and returned with its error set."
    ),
)
@rate_limit_expensive()
async def refine_single(
    request: Request,
    seed: str,
    body: Optional[RefineSingleRequest] = Body(None),
    engine: RefinementEngine = Depends(get_refinement_engine),
):
    """
    Refine a single seed.

    - **source_version**: tagging prompt version to refine; defaults to the
      version of the seed's most recent valid result
    """
    try:
        return await engine.refine_single(seed, body.source_version if body else None)
    except TaggingError as e:
        raise_http_error(e)


@router.post(
    "/batch",
    response_model=BatchStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a refinement batch",
    description="Submit pending seeds as one bulk batch. Returns the batch id and its correlation map.",
)
@rate_limit_expensive()
async def start_batch_refinement(
    request: Request,
    body: Optional[BatchRefinementRequest] = Body(None),
    engine: RefinementEngine = Depends(get_refinement_engine),
):
    try:
        return await engine.start_batch_refinement(body.limit if body else None)
    except TaggingError as e:
        raise_http_error(e)


@router.get(
    "/batch/{batch_id}",
    response_model=BatchStatusResponse,
    summary="Batch status",
)
async def get_batch_status(batch_id: str, engine: RefinementEngine = Depends(get_refinement_engine)):
    try:
        return await engine.get_batch_status(batch_id)
    except TaggingError as e:
        raise_http_error(e)


@router.post(
    "/batch/{batch_id}/process",
    response_model=BatchProcessResponse,
    summary="Reconcile batch results",
    description=(
        "Store the outcome of every request in an ended batch. The correlation map "
        "stored at submission is used unless one is supplied."
    ),
)
async def process_batch_results(
    batch_id: str,
    body: Optional[BatchProcessRequest] = Body(None),
    engine: RefinementEngine = Depends(get_refinement_engine),
):
    try:
        return await engine.process_batch_results(batch_id, body.correlation_map if body else None)
    except TaggingError as e:
        raise_http_error(e)


@router.get(
    "/results/{seed}",
    response_model=RefinementResponse,
    summary="Latest refinement for a seed",
)
async def get_refinement_result(seed: str, engine: RefinementEngine = Depends(get_refinement_engine)):
    try:
        return await engine.get_refinement_result(seed)
    except TaggingError as e:
        raise_http_error(e)
