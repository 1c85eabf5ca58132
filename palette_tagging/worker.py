"""Celery worker configuration and tasks."""

import asyncio
import logging
from typing import Optional

from celery import Celery, Task

from palette_tagging.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

celery_app = Celery(
    "palette_tagging_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=6 * 3600,  # A full sweep over many seeds is long
    task_soft_time_limit=6 * 3600 - 60,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="default",
    task_queues={
        "default": {"exchange": "default", "routing_key": "default"},
        "tagging": {"exchange": "tagging", "routing_key": "tagging"},
        "refinement": {"exchange": "refinement", "routing_key": "refinement"},
    },
    task_routes={
        "palette_tagging.worker.run_tagging_sweep": {"queue": "tagging"},
        "palette_tagging.worker.refine_seed": {"queue": "refinement"},
        "palette_tagging.worker.reconcile_refinement_batches": {"queue": "refinement"},
    },
    beat_schedule={
        "reconcile-refinement-batches": {
            "task": "palette_tagging.worker.reconcile_refinement_batches",
            "schedule": settings.batch_poll_interval_seconds,
        },
    },
)


class BaseTask(Task):
    """Base task retrying on connection failures to the database or broker."""

    autoretry_for = (OSError,)
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True
    max_retries = 3


async def _run_sweep() -> dict:
    from palette_tagging.db.session import create_worker_session_maker
    from palette_tagging.services.tagging_service import build_tagging_service

    engine, session_maker = create_worker_session_maker()
    try:
        async with session_maker() as db:
            result = await build_tagging_service(db, settings).generate_tags()
            return result.model_dump()
    finally:
        await engine.dispose()


async def _refine_seed(seed: str, source_version: Optional[str]) -> dict:
    from palette_tagging.db.session import create_worker_session_maker
    from palette_tagging.schemas.schemas import RefinementResponse
    from palette_tagging.services.refinement import build_refinement_engine

    engine, session_maker = create_worker_session_maker()
    try:
        async with session_maker() as db:
            refinement = await build_refinement_engine(db, settings).refine_single(seed, source_version)
            return RefinementResponse.model_validate(refinement).model_dump(mode="json")
    finally:
        await engine.dispose()


async def _reconcile_batches() -> list[dict]:
    from palette_tagging.db.session import create_worker_session_maker
    from palette_tagging.services.refinement import build_refinement_engine

    engine, session_maker = create_worker_session_maker()
    try:
        async with session_maker() as db:
            results = await build_refinement_engine(db, settings).reconcile_pending_batches()
            return [r.model_dump() for r in results]
    finally:
        await engine.dispose()


@celery_app.task(bind=True, base=BaseTask, name="palette_tagging.worker.run_tagging_sweep")
def run_tagging_sweep(self) -> dict:
    """Run one tagging sweep over all known seeds."""
    from palette_tagging.services.errors import NoSeedsError

    try:
        result = asyncio.run(_run_sweep())
    except NoSeedsError:
        logger.warning("Tagging sweep skipped: no seeds registered")
        return {"run_number": 0, "processed": 0, "successful": 0, "failed": 0, "results": []}

    logger.info(
        f"Sweep for run {result['run_number']} finished: {result['successful']} succeeded, "
        f"{result['failed']} failed"
    )
    return result


@celery_app.task(bind=True, base=BaseTask, name="palette_tagging.worker.refine_seed")
def refine_seed(self, seed: str, source_version: Optional[str] = None) -> dict:
    """Refine one seed synchronously on the worker."""
    return asyncio.run(_refine_seed(seed, source_version))


@celery_app.task(name="palette_tagging.worker.reconcile_refinement_batches")
def reconcile_refinement_batches() -> list[dict]:
    """Periodic task: store results of every submitted batch that has ended."""
    results = asyncio.run(_reconcile_batches())
    if results:
        logger.info(f"Reconciled {len(results)} refinement batches")
    return results


def enqueue_tagging_sweep() -> str:
    """Queue a tagging sweep and return its Celery task id."""
    return run_tagging_sweep.apply_async().id
