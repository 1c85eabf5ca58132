"""Concurrent fan-out of one palette description to every classification provider."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from palette_tagging.schemas.schemas import ColorDescription, TagResponse
from palette_tagging.services.errors import is_permanent_error
from palette_tagging.services.prompts import TAGGING_INSTRUCTIONS

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ProviderCallResult:
    """Outcome of one provider call: tags or an error message, never both."""

    provider: str
    model: str
    tags: Optional[TagResponse] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.tags is not None


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    label: str,
    max_attempts: int = 5,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await ``func`` until it succeeds or the attempt budget runs out.

    The delay starts at ``base_delay`` and doubles after each failure.
    Authorization failures are raised immediately.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except Exception as e:
            if is_permanent_error(e):
                logger.error(f"[{label}] Permanent error, not retrying: {e}")
                raise
            if attempt == max_attempts:
                logger.error(f"[{label}] Failed after {max_attempts} attempts: {e}")
                raise
            delay = base_delay * 2 ** (attempt - 1)
            logger.warning(
                f"[{label}] Attempt {attempt}/{max_attempts} failed: {e}. Retrying in {delay:.1f}s"
            )
            await sleep(delay)
    raise RuntimeError("max_attempts must be at least 1")


class ProviderOrchestrator:
    """Calls a set of classifiers concurrently, each behind its own retry policy."""

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        instructions: str = TAGGING_INSTRUCTIONS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.instructions = instructions
        self._sleep = sleep

    async def _classify_one(self, classifier, description: ColorDescription) -> ProviderCallResult:
        try:
            tags = await call_with_retry(
                lambda: classifier.classify(description, self.instructions),
                label=classifier.name,
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                sleep=self._sleep,
            )
        except Exception as e:
            return ProviderCallResult(
                provider=classifier.name,
                model=classifier.model,
                error=str(e) or e.__class__.__name__,
            )
        return ProviderCallResult(provider=classifier.name, model=classifier.model, tags=tags)

    async def classify_all(self, description: ColorDescription, classifiers: list) -> list[ProviderCallResult]:
        """Return one result per classifier, in the same order. Never raises for a provider failure."""
        if not classifiers:
            return []
        return list(
            await asyncio.gather(*(self._classify_one(c, description) for c in classifiers))
        )
