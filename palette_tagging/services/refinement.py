"""Second-stage refinement of consensus tags, one seed at a time or as a bulk batch."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

import httpx
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from palette_tagging.config import Settings, get_settings
from palette_tagging.db.models import BatchStatus, Refinement
from palette_tagging.schemas.schemas import (
    BatchProcessResponse,
    BatchStartResponse,
    BatchStatusResponse,
    ColorDescription,
    RefinedTags,
    RefinementStatusResponse,
    TagSummary,
)
from palette_tagging.services.color_description import describe_seed
from palette_tagging.services.consensus import aggregate_tags, format_frequencies
from palette_tagging.services.errors import (
    BatchNotFoundError,
    BatchNotReadyError,
    CorrelationMapMissingError,
    DuplicateRefinementError,
    NoTagsFoundError,
    RefinementError,
    RefinementNotFoundError,
    TaggingError,
)
from palette_tagging.services.prompts import (
    REFINEMENT_INSTRUCTIONS,
    REFINEMENT_PROMPT_VERSION,
    TAGGING_PROMPT_VERSION,
)
from palette_tagging.services.store import TagStore

logger = logging.getLogger(__name__)

CORRELATION_ID_PREFIX = "idx_"


# ============== Prompt & Parsing ==============


def build_refinement_prompt(summary: TagSummary) -> str:
    """User message for the refinement model: color data plus consensus tables."""
    total = summary.total_valid_responses
    color_data = json.dumps(summary.color_description.model_dump(mode="json"), indent=2)

    def line(label: str, counts: dict[str, int]) -> str:
        return f"- {label}: {format_frequencies(counts, total) or 'none'}"

    return "\n".join(
        [
            "## Palette Color Data",
            "```json",
            color_data,
            "```",
            "",
            f"## Model Consensus ({total} models)",
            "",
            "### Categorical Attributes",
            line("Temperature", summary.categorical["temperature"]),
            line("Contrast", summary.categorical["contrast"]),
            line("Brightness", summary.categorical["brightness"]),
            line("Saturation", summary.categorical["saturation"]),
            "",
            "### Tag Frequencies",
            line("Mood", summary.tags["mood"]),
            line("Style", summary.tags["style"]),
            line("Dominant Colors", summary.tags["dominant_colors"]),
            line("Seasonal", summary.tags["seasonal"]),
            line("Associations", summary.tags["associations"]),
            "",
            "Refine the tags for this palette. Return only JSON.",
        ]
    )


def strip_markdown_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_refined_tags(text: str) -> RefinedTags:
    try:
        data = json.loads(strip_markdown_fence(text))
    except json.JSONDecodeError as e:
        raise RefinementError(f"Invalid JSON in refinement output: {e}") from e
    try:
        return RefinedTags.model_validate(data)
    except ValidationError as e:
        raise RefinementError(f"Refined tag validation failed: {e}") from e


def message_text(message: dict) -> str:
    """Concatenate the text blocks of a Messages API response, skipping thinking blocks."""
    return "".join(
        block.get("text", "") for block in message.get("content") or [] if block.get("type") == "text"
    )


# ============== Anthropic Clients ==============


class _AnthropicHTTP:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.anthropic.com",
        anthropic_version: str = "2023-06-01",
        timeout: float = 300.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.anthropic_version = anthropic_version
        self.timeout = timeout
        self._client = client

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": self.anthropic_version,
        }

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, headers=self._headers(), **kwargs)

    @staticmethod
    def _raise_for_status(response: httpx.Response, context: str) -> None:
        if response.status_code >= 400:
            raise RefinementError(
                f"{context} failed with HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )


class RefinementModel(_AnthropicHTTP):
    """Synchronous curation call against the Messages API with extended thinking."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-opus-4-5-20251101",
        max_tokens: int = 4096,
        thinking_budget: int = 2048,
        **kwargs,
    ):
        super().__init__(api_key, **kwargs)
        self.model = model
        self.max_tokens = max_tokens
        self.thinking_budget = thinking_budget

    def request_params(self, prompt: str, instructions: str) -> dict[str, Any]:
        """Messages API parameters, shared by single calls and batch requests."""
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "thinking": {"type": "enabled", "budget_tokens": self.thinking_budget},
            "system": instructions,
            "messages": [{"role": "user", "content": prompt}],
        }

    async def curate(self, prompt: str, instructions: str) -> RefinedTags:
        response = await self._request(
            "POST", f"{self.base_url}/v1/messages", json=self.request_params(prompt, instructions)
        )
        self._raise_for_status(response, "Refinement request")
        text = message_text(response.json())
        if not text:
            raise RefinementError("No text response from refinement model")
        return parse_refined_tags(text)


@dataclass
class BatchInfo:
    batch_id: str
    processing_status: str
    request_counts: dict[str, int] = field(default_factory=dict)
    created_at: Optional[str] = None
    ended_at: Optional[str] = None
    results_url: Optional[str] = None


BatchResult = tuple[str, Union[RefinedTags, str]]


class BatchClient(_AnthropicHTTP):
    """Message Batches API: submit, poll, and read results."""

    async def submit(self, requests: list[dict]) -> str:
        response = await self._request(
            "POST", f"{self.base_url}/v1/messages/batches", json={"requests": requests}
        )
        self._raise_for_status(response, "Batch submission")
        return response.json()["id"]

    async def status(self, batch_id: str) -> BatchInfo:
        response = await self._request("GET", f"{self.base_url}/v1/messages/batches/{batch_id}")
        if response.status_code == 404:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        self._raise_for_status(response, "Batch status")
        data = response.json()
        return BatchInfo(
            batch_id=data.get("id", batch_id),
            processing_status=data.get("processing_status", "unknown"),
            request_counts=data.get("request_counts") or {},
            created_at=data.get("created_at"),
            ended_at=data.get("ended_at"),
            results_url=data.get("results_url"),
        )

    async def fetch_results(self, batch_id: str) -> list[BatchResult]:
        """Download the JSONL results file and turn each line into tags or an error message."""
        info = await self.status(batch_id)
        if not info.results_url:
            raise BatchNotReadyError(batch_id, info.processing_status)

        response = await self._request("GET", info.results_url)
        self._raise_for_status(response, "Batch results download")
        return parse_batch_results(response.text)


def _result_error(result: dict) -> str:
    kind = result.get("type")
    if kind == "errored":
        error = result.get("error") or {}
        # The API nests the error object one level deep
        nested = error.get("error") if isinstance(error.get("error"), dict) else {}
        return error.get("message") or nested.get("message") or "Unknown error"
    if kind == "succeeded":
        return "No message in response"
    return f"Request {kind or 'failed'}"


def parse_batch_results(payload: str) -> list[BatchResult]:
    results: list[BatchResult] = []
    for raw in payload.splitlines():
        if not raw.strip():
            continue
        try:
            line = json.loads(raw)
        except json.JSONDecodeError as e:
            # Without a custom_id the line cannot be mapped and ends up skipped
            logger.error(f"Unreadable batch result line: {e}")
            results.append(("", f"Invalid result line: {e}"))
            continue
        if not isinstance(line, dict):
            results.append(("", "Invalid result line: not an object"))
            continue

        custom_id = line.get("custom_id", "")
        result = line.get("result") or {}

        if result.get("type") != "succeeded" or not result.get("message"):
            results.append((custom_id, _result_error(result)))
            continue

        text = message_text(result["message"])
        if not text:
            results.append((custom_id, "No text in response"))
            continue
        try:
            results.append((custom_id, parse_refined_tags(text)))
        except RefinementError as e:
            results.append((custom_id, str(e)))
    return results


# ============== Engine ==============


class RefinementEngine:
    """Single and batch refinement over the stored tagging results."""

    def __init__(
        self,
        store: TagStore,
        model: RefinementModel,
        batch_client: BatchClient,
        describe: Callable[[str], ColorDescription] = describe_seed,
        source_prompt_version: str = TAGGING_PROMPT_VERSION,
        refinement_prompt_version: str = REFINEMENT_PROMPT_VERSION,
        instructions: str = REFINEMENT_INSTRUCTIONS,
        batch_default_limit: int = 100,
    ):
        self.store = store
        self.model = model
        self.batch_client = batch_client
        self.describe = describe
        self.source_prompt_version = source_prompt_version
        self.refinement_prompt_version = refinement_prompt_version
        self.instructions = instructions
        self.batch_default_limit = batch_default_limit

    async def get_refinement_status(self) -> RefinementStatusResponse:
        version = self.source_prompt_version
        total_tagged = await self.store.count_tagged_seeds(version)
        refined = await self.store.count_refined_seeds(version)
        return RefinementStatusResponse(
            source_prompt_version=version,
            refinement_prompt_version=self.refinement_prompt_version,
            total_tagged=total_tagged,
            refined=refined,
            pending=total_tagged - refined,
            errors=await self.store.count_refinement_errors(version),
        )

    async def build_summary(self, seed: str, source_prompt_version: str) -> TagSummary:
        """Consensus over the seed's current valid results, always read fresh from the store."""
        rows = await self.store.query_results_for_seed(seed, source_prompt_version, valid_only=True)
        return aggregate_tags(
            (row.tags for row in rows), seed, self.describe(seed), source_prompt_version
        )

    async def _store_outcome(
        self,
        summary: TagSummary,
        outcome: Union[RefinedTags, str],
        batch_id: Optional[str] = None,
    ) -> Refinement:
        refined_tags = outcome.model_dump() if isinstance(outcome, RefinedTags) else None
        row = await self.store.insert_refinement(
            seed=summary.seed,
            model=self.model.model,
            prompt_version=self.refinement_prompt_version,
            source_prompt_version=summary.source_prompt_version,
            input_summary=summary.stored_copy(),
            refined_tags=refined_tags,
            error=None if refined_tags is not None else str(outcome),
            batch_id=batch_id,
        )
        await self.store.db.commit()
        return row

    async def refine_single(self, seed: str, source_version: Optional[str] = None) -> Refinement:
        """
        Refine one seed synchronously and store the outcome.

        Without a source version the version of the seed's most recent valid
        result is used. Model failures are stored as error rows and returned.
        """
        version = source_version or await self.store.latest_tagged_version(seed)
        if not version:
            raise NoTagsFoundError(f"No tags found for seed {seed}")

        summary = await self.build_summary(seed, version)
        if summary.total_valid_responses == 0:
            raise NoTagsFoundError(f"No tags found for seed {seed} with version {version}")

        existing = await self.store.query_refinement(seed, version)
        if existing is not None:
            raise DuplicateRefinementError(seed, version, existing.id)

        try:
            outcome: Union[RefinedTags, str] = await self.model.curate(
                build_refinement_prompt(summary), self.instructions
            )
        except Exception as e:
            logger.error(f"Refinement failed for seed {seed}: {e}")
            outcome = str(e) or e.__class__.__name__

        return await self._store_outcome(summary, outcome)

    async def start_batch_refinement(self, limit: Optional[int] = None) -> BatchStartResponse:
        """Submit every pending seed (up to ``limit``) as one external batch."""
        limit = limit or self.batch_default_limit
        version = self.source_prompt_version
        seeds = await self.store.pending_refinement_seeds(version, limit)
        if not seeds:
            return BatchStartResponse(seed_count=0, message="No pending seeds to refine")

        requests = []
        correlation_map: dict[str, str] = {}
        for index, seed in enumerate(seeds):
            summary = await self.build_summary(seed, version)
            # Seeds can exceed the API's custom_id length limit
            custom_id = f"{CORRELATION_ID_PREFIX}{index}"
            correlation_map[custom_id] = seed
            requests.append(
                {
                    "custom_id": custom_id,
                    "params": self.model.request_params(build_refinement_prompt(summary), self.instructions),
                }
            )

        batch_id = await self.batch_client.submit(requests)
        await self.store.create_batch(batch_id, self.model.model, version, correlation_map)
        await self.store.db.commit()
        logger.info(f"Submitted refinement batch {batch_id} with {len(requests)} requests")

        return BatchStartResponse(
            batch_id=batch_id,
            seed_count=len(requests),
            correlation_map=correlation_map,
            message=(
                f"Batch submitted. Poll /v1/refinement/batch/{batch_id} for status, "
                f"then POST /v1/refinement/batch/{batch_id}/process."
            ),
        )

    async def get_batch_status(self, batch_id: str) -> BatchStatusResponse:
        info = await self.batch_client.status(batch_id)
        batch = await self.store.get_batch(batch_id)
        if batch is not None and batch.processed_at is None and batch.status != info.processing_status:
            batch.status = info.processing_status
            await self.store.db.commit()
        logger.info(f"Batch {batch_id} status: {info.processing_status}")
        return BatchStatusResponse(
            batch_id=batch_id,
            processing_status=info.processing_status,
            request_counts=info.request_counts,
            created_at=info.created_at,
            ended_at=info.ended_at,
        )

    async def process_batch_results(
        self,
        batch_id: str,
        correlation_map: Optional[dict[str, str]] = None,
    ) -> BatchProcessResponse:
        """
        Store the outcome of every line of an ended batch.

        A supplied correlation map takes precedence over the one stored at
        submission. Lines whose id is not in the map, and seeds that already
        have a refinement, are counted as skipped.
        """
        info = await self.batch_client.status(batch_id)
        if info.processing_status != BatchStatus.ENDED.value:
            raise BatchNotReadyError(batch_id, info.processing_status)

        batch = await self.store.get_batch(batch_id)
        mapping = correlation_map or (batch.correlation_map if batch is not None else None)
        if not mapping:
            raise CorrelationMapMissingError(
                f"No correlation map for batch {batch_id}; pass the map returned at submission"
            )
        source_version = batch.source_prompt_version if batch is not None else self.source_prompt_version

        results = await self.batch_client.fetch_results(batch_id)
        stored = errors = skipped = 0

        for custom_id, outcome in results:
            seed = mapping.get(custom_id)
            if seed is None:
                logger.error(f"Batch {batch_id}: no seed mapping for custom_id {custom_id}")
                skipped += 1
                continue

            summary = await self.build_summary(seed, source_version)
            try:
                await self._store_outcome(summary, outcome, batch_id=batch_id)
            except DuplicateRefinementError:
                skipped += 1
                continue

            if isinstance(outcome, RefinedTags):
                stored += 1
            else:
                errors += 1

        if batch is not None:
            await self.store.mark_batch_processed(
                batch, stored, errors, skipped, ended_at=_parse_timestamp(info.ended_at)
            )
            await self.store.db.commit()

        logger.info(
            f"Batch {batch_id} reconciled: {len(results)} lines, "
            f"{stored} stored, {errors} errors, {skipped} skipped"
        )
        return BatchProcessResponse(
            batch_id=batch_id,
            processed=len(results),
            stored=stored,
            errors=errors,
            skipped=skipped,
        )

    async def reconcile_pending_batches(self) -> list[BatchProcessResponse]:
        """Reconcile every stored batch that has ended but not been processed yet."""
        processed = []
        for batch in await self.store.unprocessed_batches():
            batch_id = batch.batch_id
            try:
                status = await self.get_batch_status(batch_id)
                if status.processing_status == BatchStatus.ENDED.value:
                    processed.append(await self.process_batch_results(batch_id))
            except (TaggingError, httpx.HTTPError) as e:
                logger.error(f"Could not reconcile batch {batch_id}: {e}")
        return processed

    async def get_refinement_result(self, seed: str) -> Refinement:
        refinement = await self.store.query_refinement(seed)
        if refinement is None:
            raise RefinementNotFoundError(f"No refinement found for seed {seed}")
        return refinement


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def build_refinement_model(settings: Optional[Settings] = None) -> RefinementModel:
    settings = settings or get_settings()
    return RefinementModel(
        settings.anthropic_api_key,
        model=settings.refinement_model,
        max_tokens=settings.refinement_max_tokens,
        thinking_budget=settings.refinement_thinking_budget,
        base_url=settings.anthropic_base_url,
        anthropic_version=settings.anthropic_version,
        timeout=settings.refinement_timeout_seconds,
    )


def build_batch_client(settings: Optional[Settings] = None) -> BatchClient:
    settings = settings or get_settings()
    return BatchClient(
        settings.anthropic_api_key,
        base_url=settings.anthropic_base_url,
        anthropic_version=settings.anthropic_version,
        timeout=settings.refinement_timeout_seconds,
    )


def build_refinement_engine(
    db: AsyncSession,
    settings: Optional[Settings] = None,
    model: Optional[RefinementModel] = None,
    batch_client: Optional[BatchClient] = None,
) -> RefinementEngine:
    settings = settings or get_settings()
    return RefinementEngine(
        store=TagStore(db),
        model=model or build_refinement_model(settings),
        batch_client=batch_client or build_batch_client(settings),
        batch_default_limit=settings.batch_default_limit,
    )
