"""Decides which run a tagging sweep writes to and which seeds it still has to visit."""

import logging
from dataclasses import dataclass, field

from palette_tagging.services.store import TagStore

logger = logging.getLogger(__name__)


@dataclass
class RunPlan:
    run_number: int
    prompt_version: str
    pending_seeds: list[str] = field(default_factory=list)
    new_run: bool = False


async def plan_run(store: TagStore, prompt_version: str, providers: list[str]) -> RunPlan:
    """
    Work out the run number and pending seeds from what is already stored.

    A version that was never tagged starts one past the highest run of any
    version. Otherwise the latest run of this version continues until every
    seed has a result from every provider, after which a new run covering
    all seeds begins.
    """
    seeds = await store.all_seeds()
    max_run_for_version = await store.max_run_for_version(prompt_version)

    if max_run_for_version == 0:
        run_number = await store.max_run_overall() + 1
        logger.info(f"Prompt version {prompt_version} not tagged yet, starting run {run_number}")
    else:
        run_number = max_run_for_version

    fully_tagged = await store.fully_tagged_seeds(run_number, prompt_version, providers)
    pending = [seed for seed in seeds if seed not in fully_tagged]

    if not pending and seeds:
        run_number += 1
        logger.info(f"All {len(seeds)} seeds tagged for version {prompt_version}, starting run {run_number}")
        return RunPlan(run_number, prompt_version, list(seeds), new_run=True)

    return RunPlan(run_number, prompt_version, pending, new_run=max_run_for_version == 0)


async def missing_providers(
    store: TagStore,
    seed: str,
    plan: RunPlan,
    providers: list[str],
) -> list[str]:
    """Configured providers with no stored result for this seed in the planned run."""
    done = await store.completed_providers(seed, plan.run_number, plan.prompt_version)
    return [name for name in providers if name not in done]
