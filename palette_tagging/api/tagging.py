"""Seed registration and tagging API routes."""

from typing import Union

from fastapi import APIRouter, Depends, Query, Request, Response, status

from palette_tagging.api.deps import get_tagging_service, raise_http_error
from palette_tagging.middleware.rate_limit import rate_limit_expensive
from palette_tagging.schemas.schemas import (
    SeedRegisterRequest,
    SeedRegisterResponse,
    SeedResultsResponse,
    SweepQueuedResponse,
    SweepResponse,
    TaggingStatusResponse,
)
from palette_tagging.services.errors import TaggingError
from palette_tagging.services.tagging_service import TaggingService
from palette_tagging.worker import enqueue_tagging_sweep

router = APIRouter(prefix="/v1", tags=["Tagging"])


@router.post(
    "/seeds",
    response_model=SeedRegisterResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register seeds",
    description="Add palette seeds to the set visited by tagging sweeps. Known seeds are ignored.",
)
async def register_seeds(
    request: SeedRegisterRequest,
    service: TaggingService = Depends(get_tagging_service),
):
    registered, total = await service.register_seeds(request.seeds)
    return SeedRegisterResponse(registered=registered, total_seeds=total)


@router.get(
    "/tagging/status",
    response_model=TaggingStatusResponse,
    summary="Tagging progress",
    description="Progress of the current run for the active tagging prompt version.",
)
async def get_tagging_status(service: TaggingService = Depends(get_tagging_service)):
    return await service.get_tagging_status()


@router.get(
    "/tagging/seeds/{seed}",
    response_model=SeedResultsResponse,
    summary="Raw results for a seed",
    description="Every stored provider result for the seed across runs and prompt versions.",
)
async def get_results_for_seed(seed: str, service: TaggingService = Depends(get_tagging_service)):
    return await service.get_results_for_seed(seed)


@router.post(
    "/tagging/generate",
    response_model=Union[SweepResponse, SweepQueuedResponse],
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run a tagging sweep",
    description=(
        "Queue one tagging sweep on the worker. With `wait=true` the sweep runs "
        "inside the request and its summary is returned."
    ),
)
@rate_limit_expensive()
async def generate_tags(
    request: Request,
    response: Response,
    wait: bool = Query(False, description="Run the sweep inline instead of queueing it"),
    service: TaggingService = Depends(get_tagging_service),
):
    """
    Start a tagging sweep.

    - **wait=false** (default): returns 202 with the worker task id
    - **wait=true**: runs the sweep now and returns 200 with per-seed outcomes
    """
    if not wait:
        return SweepQueuedResponse(task_id=enqueue_tagging_sweep())

    try:
        result = await service.generate_tags()
    except TaggingError as e:
        raise_http_error(e)
    response.status_code = status.HTTP_200_OK
    return result
