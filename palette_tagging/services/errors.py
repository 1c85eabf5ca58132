"""Exceptions raised by the tagging and refinement services."""

from typing import Optional

PERMANENT_ERROR_MARKERS = ("401", "403", "unauthorized", "forbidden", "invalid api key")


class TaggingError(Exception):
    """Base class for pipeline errors."""


class ProviderError(TaggingError):
    """A classification or refinement call failed or returned unusable output."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RefinementError(ProviderError):
    """The refinement model failed or returned unusable output."""


class NoSeedsError(TaggingError):
    """No known seeds are registered."""


class NoTagsFoundError(TaggingError):
    """No valid provider tags exist for the requested seed."""


class DuplicateRefinementError(TaggingError):
    """A refinement already exists for the seed at this source prompt version."""

    def __init__(self, seed: str, source_prompt_version: str, existing_id: Optional[str] = None):
        super().__init__(f"Seed already refined at source version {source_prompt_version}")
        self.seed = seed
        self.source_prompt_version = source_prompt_version
        self.existing_id = existing_id


class BatchNotFoundError(TaggingError):
    """The batch id is unknown to the batch API or the local store."""


class CorrelationMapMissingError(TaggingError):
    """Batch results cannot be matched to seeds without a correlation map."""


class RefinementNotFoundError(TaggingError):
    """No refinement exists for the requested seed."""


class BatchNotReadyError(TaggingError):
    """Batch results were requested before processing ended."""

    def __init__(self, batch_id: str, status: str):
        super().__init__(f"Batch {batch_id} not complete (status: {status})")
        self.batch_id = batch_id
        self.status = status


def is_permanent_error(exc: BaseException) -> bool:
    """Credential and authorization failures are not worth retrying."""
    status_code = getattr(exc, "status_code", None)
    if status_code in (401, 403):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in PERMANENT_ERROR_MARKERS)
