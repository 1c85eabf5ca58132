"""Shared route dependencies and service-error translation."""

from typing import NoReturn

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from palette_tagging.config import get_settings
from palette_tagging.db.session import get_db
from palette_tagging.services.errors import (
    BatchNotFoundError,
    BatchNotReadyError,
    CorrelationMapMissingError,
    DuplicateRefinementError,
    NoSeedsError,
    NoTagsFoundError,
    RefinementNotFoundError,
    TaggingError,
)
from palette_tagging.services.providers import TagClassifier, build_classifiers
from palette_tagging.services.refinement import (
    BatchClient,
    RefinementEngine,
    RefinementModel,
    build_batch_client,
    build_refinement_engine,
    build_refinement_model,
)
from palette_tagging.services.tagging_service import TaggingService, build_tagging_service


def get_classifiers() -> list[TagClassifier]:
    return build_classifiers(get_settings())


def get_refinement_model() -> RefinementModel:
    return build_refinement_model(get_settings())


def get_batch_client() -> BatchClient:
    return build_batch_client(get_settings())


async def get_tagging_service(
    db: AsyncSession = Depends(get_db),
    classifiers: list[TagClassifier] = Depends(get_classifiers),
) -> TaggingService:
    return build_tagging_service(db, get_settings(), classifiers=classifiers)


async def get_refinement_engine(
    db: AsyncSession = Depends(get_db),
    model: RefinementModel = Depends(get_refinement_model),
    batch_client: BatchClient = Depends(get_batch_client),
) -> RefinementEngine:
    return build_refinement_engine(db, get_settings(), model=model, batch_client=batch_client)


def raise_http_error(exc: TaggingError) -> NoReturn:
    """Translate a service exception into the matching HTTP error."""
    if isinstance(exc, (NoSeedsError, NoTagsFoundError, BatchNotFoundError, RefinementNotFoundError)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, DuplicateRefinementError):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "Seed already refined", "existing_id": exc.existing_id},
        ) from exc
    if isinstance(exc, BatchNotReadyError):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "Batch not complete", "status": exc.status},
        ) from exc
    if isinstance(exc, CorrelationMapMissingError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
