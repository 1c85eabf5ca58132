"""Tagging sweeps and tagging progress queries."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from palette_tagging.config import Settings, get_settings
from palette_tagging.schemas.schemas import (
    ColorDescription,
    ProviderTagResultResponse,
    SeedResultsResponse,
    SeedSweepResult,
    SweepResponse,
    TaggingStatusResponse,
)
from palette_tagging.services.color_description import describe_seed
from palette_tagging.services.errors import NoSeedsError
from palette_tagging.services.orchestrator import ProviderOrchestrator
from palette_tagging.services.prompts import TAGGING_PROMPT_VERSION
from palette_tagging.services.providers import TagClassifier, build_classifiers
from palette_tagging.services.run_coordinator import missing_providers, plan_run
from palette_tagging.services.store import TagStore

logger = logging.getLogger(__name__)


class TaggingService:
    """Runs tagging sweeps over all known seeds and reports their progress."""

    def __init__(
        self,
        store: TagStore,
        orchestrator: ProviderOrchestrator,
        classifiers: list[TagClassifier],
        describe: Callable[[str], ColorDescription] = describe_seed,
        prompt_version: str = TAGGING_PROMPT_VERSION,
        inter_seed_delay: float = 0.2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.classifiers = classifiers
        self.describe = describe
        self.prompt_version = prompt_version
        self.inter_seed_delay = inter_seed_delay
        self._sleep = sleep

    @property
    def provider_names(self) -> list[str]:
        return [classifier.name for classifier in self.classifiers]

    async def register_seeds(self, seeds: list[str]) -> tuple[int, int]:
        """Add seeds to the known set. Returns (newly registered, total known)."""
        registered = await self.store.register_seeds(seeds)
        await self.store.db.commit()
        logger.info(f"Registered {registered} new seeds")
        return registered, await self.store.count_seeds()

    async def get_tagging_status(self) -> TaggingStatusResponse:
        total_seeds = await self.store.count_seeds()
        current_run = await self.store.max_run_overall()
        completed = len(
            await self.store.fully_tagged_seeds(current_run, self.prompt_version, self.provider_names)
        )
        return TaggingStatusResponse(
            run_number=current_run,
            prompt_version=self.prompt_version,
            total_seeds=total_seeds,
            completed=completed,
            pending=total_seeds - completed,
            total_results=await self.store.count_results(),
            providers_per_seed=len(self.classifiers),
        )

    async def get_results_for_seed(self, seed: str) -> SeedResultsResponse:
        rows = await self.store.query_results_for_seed(seed)
        return SeedResultsResponse(
            seed=seed,
            total_results=len(rows),
            results=[ProviderTagResultResponse.model_validate(row) for row in rows],
        )

    async def _tag_seed(self, seed: str, plan) -> Optional[SeedSweepResult]:
        pending = await missing_providers(self.store, seed, plan, self.provider_names)
        if not pending:
            logger.info(f"Seed {seed[:20]} already complete, skipping")
            return None

        logger.info(f"Seed {seed[:20]}: {len(pending)} of {len(self.classifiers)} providers remaining")
        classifiers = [c for c in self.classifiers if c.name in pending]
        outcomes = await self.orchestrator.classify_all(self.describe(seed), classifiers)

        errors = []
        for outcome in outcomes:
            await self.store.insert_provider_tag_result(
                seed=seed,
                provider=outcome.provider,
                model=outcome.model,
                run_number=plan.run_number,
                prompt_version=plan.prompt_version,
                tags=outcome.tags.model_dump() if outcome.tags else None,
                error=outcome.error,
            )
            if not outcome.success:
                errors.append(f"{outcome.provider}: {outcome.error}")
        await self.store.db.commit()

        return SeedSweepResult(
            seed=seed,
            success=not errors,
            providers_completed=len(outcomes),
            errors=errors,
        )

    async def generate_tags(self) -> SweepResponse:
        """
        Run one tagging sweep.

        Only providers without a stored result for the planned run are called,
        so an interrupted sweep resumes where it stopped. A failure while
        handling one seed is recorded and the sweep moves on.
        """
        if await self.store.count_seeds() == 0:
            raise NoSeedsError("No seeds registered")

        plan = await plan_run(self.store, self.prompt_version, self.provider_names)
        logger.info(f"Run {plan.run_number}: processing {len(plan.pending_seeds)} seeds")

        results: list[SeedSweepResult] = []
        for i, seed in enumerate(plan.pending_seeds):
            logger.info(f"Processing seed {i + 1}/{len(plan.pending_seeds)}: {seed[:20]}")
            try:
                result = await self._tag_seed(seed, plan)
            except Exception as e:
                logger.exception(f"Failed to process seed {seed}: {e}")
                await self.store.db.rollback()
                result = SeedSweepResult(seed=seed, success=False, providers_completed=0, errors=[str(e)])

            if result is None:
                continue
            results.append(result)

            if self.inter_seed_delay and i < len(plan.pending_seeds) - 1:
                await self._sleep(self.inter_seed_delay)

        successful = sum(1 for r in results if r.success)
        return SweepResponse(
            run_number=plan.run_number,
            processed=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )


def build_tagging_service(
    db: AsyncSession,
    settings: Optional[Settings] = None,
    classifiers: Optional[list[TagClassifier]] = None,
) -> TaggingService:
    """Wire a TaggingService from settings."""
    settings = settings or get_settings()
    return TaggingService(
        store=TagStore(db),
        orchestrator=ProviderOrchestrator(
            max_attempts=settings.provider_max_attempts,
            base_delay=settings.provider_base_delay_seconds,
        ),
        classifiers=classifiers if classifiers is not None else build_classifiers(settings),
        inter_seed_delay=settings.inter_seed_delay_seconds,
    )
