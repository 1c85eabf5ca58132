"""Tests for single and batch refinement."""

import json

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conftest import EMBED_TEXT, FakeBatchClient, FakeRefinementModel, make_refined, make_tags
from palette_tagging.schemas.schemas import RefinedTags
from palette_tagging.services.color_description import describe_seed
from palette_tagging.services.consensus import aggregate_tags
from palette_tagging.services.errors import (
    BatchNotReadyError,
    CorrelationMapMissingError,
    DuplicateRefinementError,
    NoTagsFoundError,
    RefinementError,
    RefinementNotFoundError,
)
from palette_tagging.services.refinement import (
    RefinementEngine,
    RefinementModel,
    build_refinement_prompt,
    parse_batch_results,
    parse_refined_tags,
)
from palette_tagging.services.store import TagStore


def _engine(store, model=None, batch_client=None) -> RefinementEngine:
    return RefinementEngine(
        store=store,
        model=model or FakeRefinementModel(),
        batch_client=batch_client or FakeBatchClient(),
        source_prompt_version="v1",
        refinement_prompt_version="r1",
    )


async def _tag(store, seed, providers=("alpha", "beta"), version="v1", error=None):
    for provider in providers:
        await store.insert_provider_tag_result(
            seed=seed,
            provider=provider,
            model="fake-model",
            run_number=1,
            prompt_version=version,
            tags=None if error else make_tags(),
            error=error,
        )
    await store.db.commit()


# ============== Prompt & Parsing ==============


def test_prompt_lists_frequencies_and_none_for_empty_fields():
    summary = aggregate_tags(
        [make_tags(seasonal=[]), make_tags(seasonal=[], temperature="cool")],
        "abc",
        describe_seed("abc"),
        "v1",
    )
    prompt = build_refinement_prompt(summary)

    assert "## Model Consensus (2 models)" in prompt
    assert "- Temperature: warm: 1/2, cool: 1/2" in prompt
    assert "- Mood: cheerful: 2/2, energetic: 2/2" in prompt
    assert "- Seasonal: none" in prompt
    assert summary.color_description.hex[0] in prompt


def test_parse_refined_tags_accepts_fenced_json():
    text = "```json\n" + json.dumps({**make_tags(), "embed_text": EMBED_TEXT}) + "\n```"
    refined = parse_refined_tags(text)
    assert refined.embed_text == EMBED_TEXT


def test_parse_refined_tags_rejects_short_embed_text():
    with pytest.raises(RefinementError):
        parse_refined_tags(json.dumps({**make_tags(), "embed_text": "too short"}))


def test_parse_batch_results_reads_each_result_type():
    succeeded = {
        "custom_id": "idx_0",
        "result": {
            "type": "succeeded",
            "message": {
                "content": [
                    {"type": "thinking", "thinking": "hmm"},
                    {"type": "text", "text": json.dumps({**make_tags(), "embed_text": EMBED_TEXT})},
                ]
            },
        },
    }
    errored = {
        "custom_id": "idx_1",
        "result": {"type": "errored", "error": {"type": "error", "error": {"message": "overloaded"}}},
    }
    expired = {"custom_id": "idx_2", "result": {"type": "expired"}}
    garbage = {
        "custom_id": "idx_3",
        "result": {"type": "succeeded", "message": {"content": [{"type": "text", "text": "not json"}]}},
    }
    payload = "\n".join(json.dumps(line) for line in (succeeded, errored, expired, garbage)) + "\n"

    results = dict(parse_batch_results(payload))

    assert isinstance(results["idx_0"], RefinedTags)
    assert results["idx_1"] == "overloaded"
    assert results["idx_2"] == "Request expired"
    assert results["idx_3"].startswith("Invalid JSON")


def test_parse_batch_results_survives_unreadable_lines():
    errored = {"custom_id": "idx_1", "result": {"type": "errored", "error": {"message": "boom"}}}
    payload = '{"custom_id": "idx_0", "resu\n[1, 2]\n' + json.dumps(errored)

    results = parse_batch_results(payload)

    assert len(results) == 3
    assert results[0][0] == "" and results[0][1].startswith("Invalid result line")
    assert results[1][0] == ""
    assert results[2] == ("idx_1", "boom")


@pytest.mark.asyncio
async def test_refinement_model_reads_text_after_thinking():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "content": [
                    {"type": "thinking", "thinking": "weighing the votes"},
                    {"type": "text", "text": json.dumps({**make_tags(), "embed_text": EMBED_TEXT})},
                ]
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        model = RefinementModel("key", model="refiner", thinking_budget=1024, client=client)
        refined = await model.curate("prompt", "instructions")

    assert refined.temperature == "warm"
    assert seen["body"]["thinking"] == {"type": "enabled", "budget_tokens": 1024}
    assert seen["body"]["system"] == "instructions"


# ============== Single Refinement ==============


@pytest.mark.asyncio
async def test_refine_single_stores_refinement(store):
    await _tag(store, "abc")
    model = FakeRefinementModel()

    row = await _engine(store, model=model).refine_single("abc")

    assert row.seed == "abc"
    assert row.source_prompt_version == "v1"
    assert row.prompt_version == "r1"
    assert row.model == "fake-refiner"
    assert row.error is None
    assert row.refined_tags["embed_text"] == EMBED_TEXT
    assert row.input_summary["categorical"]["temperature"] == {"warm": 2}
    assert "- Temperature: warm: 2/2" in model.prompts[0]


@pytest.mark.asyncio
async def test_refine_single_rejects_second_refinement(store):
    await _tag(store, "abc")
    engine = _engine(store)
    first = await engine.refine_single("abc")

    with pytest.raises(DuplicateRefinementError) as exc_info:
        await engine.refine_single("abc")

    assert exc_info.value.existing_id == first.id
    assert len(engine.model.prompts) == 1


@pytest.mark.asyncio
async def test_refine_single_requires_valid_tags(store):
    await _tag(store, "abc", error="HTTP 500")
    engine = _engine(store)

    with pytest.raises(NoTagsFoundError):
        await engine.refine_single("abc")
    with pytest.raises(NoTagsFoundError):
        await engine.refine_single("unknown")
    with pytest.raises(NoTagsFoundError):
        await engine.refine_single("abc", source_version="v1")


@pytest.mark.asyncio
async def test_refine_single_stores_model_failure(store):
    await _tag(store, "abc")
    model = FakeRefinementModel(RefinementError("Refinement request failed with HTTP 529"))

    row = await _engine(store, model=model).refine_single("abc")

    assert row.refined_tags is None
    assert "529" in row.error
    status = await _engine(store).get_refinement_status()
    assert status.refined == 1
    assert status.errors == 1


@pytest.mark.asyncio
async def test_refine_single_uses_requested_source_version(store):
    await _tag(store, "abc", version="v1")
    await _tag(store, "abc", version="v2")

    row = await _engine(store).refine_single("abc", source_version="v1")

    assert row.source_prompt_version == "v1"
    assert await store.exists_refinement("abc", "v1")
    assert not await store.exists_refinement("abc", "v2")


@pytest.mark.asyncio
async def test_refinement_status_counts(store):
    await _tag(store, "abc")
    await _tag(store, "def")
    engine = _engine(store)
    await engine.refine_single("abc")

    status = await engine.get_refinement_status()

    assert (status.total_tagged, status.refined, status.pending, status.errors) == (2, 1, 1, 0)


@pytest.mark.asyncio
async def test_get_refinement_result(store):
    await _tag(store, "abc")
    engine = _engine(store)
    with pytest.raises(RefinementNotFoundError):
        await engine.get_refinement_result("abc")

    row = await engine.refine_single("abc")
    assert (await engine.get_refinement_result("abc")).id == row.id


# ============== Batch Refinement ==============


@pytest.mark.asyncio
async def test_batch_round_trip_stores_every_seed(store):
    for seed in ("abc", "def", "ghi"):
        await _tag(store, seed)
    batch_client = FakeBatchClient()
    engine = _engine(store, batch_client=batch_client)

    started = await engine.start_batch_refinement()
    assert started.batch_id == "msgbatch_test"
    assert started.seed_count == 3
    assert started.correlation_map == {"idx_0": "abc", "idx_1": "def", "idx_2": "ghi"}
    assert batch_client.submitted[0]["params"]["model"] == "fake-refiner"

    batch_client.finish_all()
    result = await engine.process_batch_results("msgbatch_test")

    assert (result.processed, result.stored, result.errors, result.skipped) == (3, 3, 0, 0)
    for seed in ("abc", "def", "ghi"):
        row = await store.query_refinement(seed, "v1")
        assert row.batch_id == "msgbatch_test"
    batch = await store.get_batch("msgbatch_test")
    assert batch.processed_at is not None
    assert batch.stored_count == 3


@pytest.mark.asyncio
async def test_batch_skips_already_refined_seeds(store):
    await _tag(store, "abc")
    await _tag(store, "def")
    engine = _engine(store)
    await engine.refine_single("abc")

    started = await engine.start_batch_refinement(limit=10)

    assert started.correlation_map == {"idx_0": "def"}


@pytest.mark.asyncio
async def test_batch_with_nothing_pending(store):
    started = await _engine(store).start_batch_refinement()
    assert started.batch_id is None
    assert started.seed_count == 0


@pytest.mark.asyncio
async def test_batch_results_with_errors_and_unknown_ids(store):
    await _tag(store, "abc")
    await _tag(store, "def")
    batch_client = FakeBatchClient()
    engine = _engine(store, batch_client=batch_client)
    await engine.start_batch_refinement()

    batch_client.processing_status = "ended"
    batch_client.results = [
        ("idx_0", make_refined()),
        ("idx_1", "overloaded"),
        ("idx_99", make_refined()),
    ]
    result = await engine.process_batch_results("msgbatch_test")

    assert (result.processed, result.stored, result.errors, result.skipped) == (3, 1, 1, 1)
    assert (await store.query_refinement("def", "v1")).error == "overloaded"


@pytest.mark.asyncio
async def test_batch_processing_requires_ended_batch(store):
    await _tag(store, "abc")
    engine = _engine(store)
    await engine.start_batch_refinement()

    with pytest.raises(BatchNotReadyError) as exc_info:
        await engine.process_batch_results("msgbatch_test")
    assert exc_info.value.status == "in_progress"


@pytest.mark.asyncio
async def test_reprocessing_a_batch_skips_everything(store):
    await _tag(store, "abc")
    await _tag(store, "def")
    batch_client = FakeBatchClient()
    engine = _engine(store, batch_client=batch_client)
    await engine.start_batch_refinement()
    batch_client.finish_all()

    await engine.process_batch_results("msgbatch_test")
    again = await engine.process_batch_results("msgbatch_test")

    assert (again.stored, again.errors, again.skipped) == (0, 0, 2)


@pytest.mark.asyncio
async def test_unknown_batch_needs_a_correlation_map(store):
    await _tag(store, "abc")
    batch_client = FakeBatchClient()
    batch_client.processing_status = "ended"
    batch_client.results = [("idx_0", make_refined())]
    engine = _engine(store, batch_client=batch_client)

    with pytest.raises(CorrelationMapMissingError):
        await engine.process_batch_results("msgbatch_test")

    result = await engine.process_batch_results("msgbatch_test", correlation_map={"idx_0": "abc"})
    assert result.stored == 1


@pytest.mark.asyncio
async def test_supplied_map_overrides_stored_map(store):
    await _tag(store, "abc")
    await _tag(store, "def")
    batch_client = FakeBatchClient()
    engine = _engine(store, batch_client=batch_client)
    await engine.start_batch_refinement(limit=1)
    batch_client.finish_all()

    await engine.process_batch_results("msgbatch_test", correlation_map={"idx_0": "def"})

    assert await store.exists_refinement("def", "v1")
    assert not await store.exists_refinement("abc", "v1")


@pytest.mark.asyncio
async def test_get_batch_status_tracks_remote_state(store):
    await _tag(store, "abc")
    batch_client = FakeBatchClient()
    engine = _engine(store, batch_client=batch_client)
    await engine.start_batch_refinement()

    batch_client.processing_status = "canceling"
    status = await engine.get_batch_status("msgbatch_test")

    assert status.processing_status == "canceling"
    assert (await store.get_batch("msgbatch_test")).status == "canceling"


@pytest.mark.asyncio
async def test_reconcile_pending_batches(store):
    await _tag(store, "abc")
    await _tag(store, "def")
    batch_client = FakeBatchClient()
    engine = _engine(store, batch_client=batch_client)
    await engine.start_batch_refinement()

    assert await engine.reconcile_pending_batches() == []

    batch_client.finish_all()
    reconciled = await engine.reconcile_pending_batches()

    assert [r.stored for r in reconciled] == [2]
    assert await store.unprocessed_batches() == []


class JsonlBatchClient(FakeBatchClient):
    """Batch client whose results come from a raw JSONL payload."""

    def __init__(self, payload: str):
        super().__init__()
        self.payload = payload

    async def fetch_results(self, batch_id: str):
        return parse_batch_results(self.payload)


class UnreachableBatchClient(FakeBatchClient):
    """Batch client that cannot reach one of the batches."""

    async def status(self, batch_id: str):
        if batch_id == "msgbatch_down":
            raise httpx.ConnectError("connection refused")
        return await super().status(batch_id)


def _succeeded_line(custom_id: str) -> str:
    text = json.dumps({**make_tags(), "embed_text": EMBED_TEXT})
    return json.dumps(
        {
            "custom_id": custom_id,
            "result": {"type": "succeeded", "message": {"content": [{"type": "text", "text": text}]}},
        }
    )


@pytest.mark.asyncio
async def test_unreadable_result_line_does_not_block_the_batch(store):
    await _tag(store, "abc")
    await _tag(store, "def")
    batch_client = JsonlBatchClient('{"custom_id": "idx_0", "result": {"ty\n' + _succeeded_line("idx_1"))
    engine = _engine(store, batch_client=batch_client)
    await engine.start_batch_refinement()
    batch_client.processing_status = "ended"

    result = await engine.process_batch_results("msgbatch_test")

    assert (result.processed, result.stored, result.errors, result.skipped) == (2, 1, 0, 1)
    assert await store.exists_refinement("def", "v1")
    assert (await store.get_batch("msgbatch_test")).processed_at is not None


@pytest.mark.asyncio
async def test_reconcile_continues_past_unreachable_batch(store):
    await _tag(store, "abc")
    await _tag(store, "def")
    await store.create_batch("msgbatch_down", "fake-refiner", "v1", {"idx_0": "abc"})
    await store.db.commit()
    batch_client = UnreachableBatchClient()
    engine = _engine(store, batch_client=batch_client)
    await engine.start_batch_refinement()
    batch_client.finish_all()

    reconciled = await engine.reconcile_pending_batches()

    assert [r.batch_id for r in reconciled] == ["msgbatch_test"]
    assert [b.batch_id for b in await store.unprocessed_batches()] == ["msgbatch_down"]


# ============== Concurrent Writers ==============


class RacingStore(TagStore):
    """
    Store where another worker commits the same refinement right after
    the n-th existence check for one seed, so that check sees nothing.
    """

    def __init__(self, db: AsyncSession, other_sessions: async_sessionmaker, seed: str, race_on_check: int):
        super().__init__(db)
        self.other_sessions = other_sessions
        self.race_seed = seed
        self.race_on_check = race_on_check
        self.checks = 0
        self.competing_id = None

    async def query_refinement(self, seed, source_prompt_version=None):
        found = await super().query_refinement(seed, source_prompt_version)
        if seed == self.race_seed and source_prompt_version is not None:
            self.checks += 1
            if self.checks == self.race_on_check:
                async with self.other_sessions() as other:
                    row = await TagStore(other).insert_refinement(
                        seed=seed,
                        model="other-worker",
                        prompt_version="r1",
                        source_prompt_version=source_prompt_version,
                        input_summary={},
                        error="written by another worker",
                    )
                    await other.commit()
                    self.competing_id = row.id
        return found


def _other_sessions(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.mark.asyncio
async def test_refine_single_loses_race_to_another_writer(db_session, test_engine):
    # First check is the engine's, second is the one inside insert_refinement
    store = RacingStore(db_session, _other_sessions(test_engine), "abc", race_on_check=2)
    await _tag(store, "abc")
    model = FakeRefinementModel()

    with pytest.raises(DuplicateRefinementError) as exc_info:
        await _engine(store, model=model).refine_single("abc")

    assert len(model.prompts) == 1
    assert exc_info.value.existing_id == store.competing_id
    row = await store.query_refinement("abc", "v1")
    assert row.id == store.competing_id
    assert row.model == "other-worker"


@pytest.mark.asyncio
async def test_batch_counts_lost_race_as_skipped(db_session, test_engine):
    store = RacingStore(db_session, _other_sessions(test_engine), "abc", race_on_check=1)
    await _tag(store, "abc")
    await _tag(store, "def")
    batch_client = FakeBatchClient()
    engine = _engine(store, batch_client=batch_client)
    await engine.start_batch_refinement()
    batch_client.finish_all()

    result = await engine.process_batch_results("msgbatch_test")

    assert (result.processed, result.stored, result.errors, result.skipped) == (2, 1, 0, 1)
    assert (await store.query_refinement("abc", "v1")).id == store.competing_id
    assert (await store.query_refinement("def", "v1")).batch_id == "msgbatch_test"
