"""Read/write access to seeds, provider results, refinements and batch records."""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from palette_tagging.db.models import (
    BatchStatus,
    PaletteSeed,
    ProviderTagResult,
    Refinement,
    RefinementBatch,
)
from palette_tagging.services.errors import DuplicateRefinementError

logger = logging.getLogger(__name__)


class TagStore:
    """Queries used by the tagging and refinement services, bound to one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ============== Seeds ==============

    async def register_seeds(self, seeds: list[str]) -> int:
        """Add seeds that are not yet known. Returns how many were new."""
        unique = list(dict.fromkeys(seeds))
        result = await self.db.execute(select(PaletteSeed.seed).where(PaletteSeed.seed.in_(unique)))
        existing = set(result.scalars().all())
        new_seeds = [seed for seed in unique if seed not in existing]
        self.db.add_all([PaletteSeed(seed=seed) for seed in new_seeds])
        await self.db.flush()
        return len(new_seeds)

    async def all_seeds(self) -> list[str]:
        result = await self.db.execute(select(PaletteSeed.seed).order_by(PaletteSeed.created_at, PaletteSeed.seed))
        return list(result.scalars().all())

    async def count_seeds(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(PaletteSeed))
        return result.scalar_one()

    # ============== Provider Results ==============

    async def insert_provider_tag_result(
        self,
        seed: str,
        provider: str,
        model: str,
        run_number: int,
        prompt_version: str,
        tags: Optional[dict] = None,
        error: Optional[str] = None,
    ) -> ProviderTagResult:
        if (tags is None) == (error is None):
            raise ValueError("Exactly one of tags or error must be given")
        row = ProviderTagResult(
            id=str(uuid4()),
            seed=seed,
            provider=provider,
            model=model,
            run_number=run_number,
            prompt_version=prompt_version,
            tags=tags,
            error=error,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def query_results_for_seed(
        self,
        seed: str,
        prompt_version: Optional[str] = None,
        valid_only: bool = False,
    ) -> list[ProviderTagResult]:
        query = select(ProviderTagResult).where(ProviderTagResult.seed == seed)
        if prompt_version is not None:
            query = query.where(ProviderTagResult.prompt_version == prompt_version)
        if valid_only:
            query = query.where(ProviderTagResult.tags.is_not(None))
        query = query.order_by(ProviderTagResult.run_number, ProviderTagResult.provider)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def completed_providers(self, seed: str, run_number: int, prompt_version: str) -> set[str]:
        """Providers with any stored result (success or error) for this seed, run and version."""
        result = await self.db.execute(
            select(ProviderTagResult.provider).distinct().where(
                ProviderTagResult.seed == seed,
                ProviderTagResult.run_number == run_number,
                ProviderTagResult.prompt_version == prompt_version,
            )
        )
        return set(result.scalars().all())

    async def max_run_for_version(self, prompt_version: str) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.max(ProviderTagResult.run_number), 0)).where(
                ProviderTagResult.prompt_version == prompt_version
            )
        )
        return result.scalar_one()

    async def max_run_overall(self) -> int:
        result = await self.db.execute(select(func.coalesce(func.max(ProviderTagResult.run_number), 0)))
        return result.scalar_one()

    async def fully_tagged_seeds(self, run_number: int, prompt_version: str, providers: list[str]) -> set[str]:
        """Seeds with a result from every one of ``providers`` for this run and version."""
        if not providers:
            return set()
        result = await self.db.execute(
            select(ProviderTagResult.seed)
            .where(
                ProviderTagResult.run_number == run_number,
                ProviderTagResult.prompt_version == prompt_version,
                ProviderTagResult.provider.in_(providers),
            )
            .group_by(ProviderTagResult.seed)
            .having(func.count(distinct(ProviderTagResult.provider)) == len(set(providers)))
        )
        return set(result.scalars().all())

    async def count_results(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(ProviderTagResult))
        return result.scalar_one()

    async def latest_tagged_version(self, seed: str) -> Optional[str]:
        """Prompt version of the most recent valid result for a seed."""
        result = await self.db.execute(
            select(ProviderTagResult.prompt_version)
            .where(ProviderTagResult.seed == seed, ProviderTagResult.tags.is_not(None))
            .order_by(ProviderTagResult.created_at.desc(), ProviderTagResult.run_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_tagged_seeds(self, prompt_version: str) -> int:
        result = await self.db.execute(
            select(func.count(distinct(ProviderTagResult.seed))).where(
                ProviderTagResult.prompt_version == prompt_version,
                ProviderTagResult.tags.is_not(None),
            )
        )
        return result.scalar_one()

    # ============== Refinements ==============

    async def insert_refinement(
        self,
        seed: str,
        model: str,
        prompt_version: str,
        source_prompt_version: str,
        input_summary: dict,
        refined_tags: Optional[dict] = None,
        error: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> Refinement:
        """
        Store a refinement outcome.

        Raises DuplicateRefinementError when the seed already has a refinement
        at this source version. The unique constraint is the arbiter when two
        writers race past the existence check; the session is rolled back then,
        so callers commit after each successful insert.
        """
        if (refined_tags is None) == (error is None):
            raise ValueError("Exactly one of refined_tags or error must be given")

        existing = await self.query_refinement(seed, source_prompt_version)
        if existing is not None:
            logger.warning(f"Rejected duplicate refinement for seed {seed} at {source_prompt_version}")
            raise DuplicateRefinementError(seed, source_prompt_version, existing.id)

        row = Refinement(
            id=str(uuid4()),
            seed=seed,
            model=model,
            prompt_version=prompt_version,
            source_prompt_version=source_prompt_version,
            input_summary=input_summary,
            refined_tags=refined_tags,
            error=error,
            batch_id=batch_id,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(row)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            existing = await self.query_refinement(seed, source_prompt_version)
            logger.warning(f"Lost refinement insert race for seed {seed} at {source_prompt_version}")
            raise DuplicateRefinementError(
                seed, source_prompt_version, existing.id if existing else None
            ) from e
        return row

    async def query_refinement(self, seed: str, source_prompt_version: Optional[str] = None) -> Optional[Refinement]:
        """Refinement for a seed; the most recent one when no source version is given."""
        query = select(Refinement).where(Refinement.seed == seed)
        if source_prompt_version is not None:
            query = query.where(Refinement.source_prompt_version == source_prompt_version)
        query = query.order_by(Refinement.created_at.desc()).limit(1)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def exists_refinement(self, seed: str, source_prompt_version: str) -> bool:
        return await self.query_refinement(seed, source_prompt_version) is not None

    async def pending_refinement_seeds(self, prompt_version: str, limit: int) -> list[str]:
        """Seeds with valid tags at ``prompt_version`` and no refinement for it yet."""
        refined = select(Refinement.seed).where(Refinement.source_prompt_version == prompt_version)
        result = await self.db.execute(
            select(ProviderTagResult.seed)
            .distinct()
            .where(
                ProviderTagResult.prompt_version == prompt_version,
                ProviderTagResult.tags.is_not(None),
                ProviderTagResult.seed.not_in(refined),
            )
            .order_by(ProviderTagResult.seed)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_refined_seeds(self, source_prompt_version: str) -> int:
        result = await self.db.execute(
            select(func.count(distinct(Refinement.seed))).where(
                Refinement.source_prompt_version == source_prompt_version
            )
        )
        return result.scalar_one()

    async def count_refinement_errors(self, source_prompt_version: str) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(Refinement).where(
                Refinement.source_prompt_version == source_prompt_version,
                Refinement.error.is_not(None),
            )
        )
        return result.scalar_one()

    # ============== Batches ==============

    async def create_batch(
        self,
        batch_id: str,
        model: str,
        source_prompt_version: str,
        correlation_map: dict[str, str],
    ) -> RefinementBatch:
        batch = RefinementBatch(
            batch_id=batch_id,
            model=model,
            source_prompt_version=source_prompt_version,
            request_count=len(correlation_map),
            correlation_map=correlation_map,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(batch)
        await self.db.flush()
        return batch

    async def get_batch(self, batch_id: str) -> Optional[RefinementBatch]:
        result = await self.db.execute(select(RefinementBatch).where(RefinementBatch.batch_id == batch_id))
        return result.scalar_one_or_none()

    async def unprocessed_batches(self) -> list[RefinementBatch]:
        result = await self.db.execute(
            select(RefinementBatch)
            .where(RefinementBatch.processed_at.is_(None))
            .order_by(RefinementBatch.created_at)
        )
        return list(result.scalars().all())

    async def mark_batch_processed(
        self,
        batch: RefinementBatch,
        stored: int,
        errors: int,
        skipped: int,
        ended_at: Optional[datetime] = None,
    ) -> RefinementBatch:
        batch.status = BatchStatus.ENDED.value
        batch.stored_count = stored
        batch.error_count = errors
        batch.skipped_count = skipped
        batch.ended_at = ended_at or batch.ended_at
        batch.processed_at = datetime.now(timezone.utc)
        await self.db.flush()
        return batch
