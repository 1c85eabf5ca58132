"""Pytest configuration and fixtures."""

import os
import tempfile
from typing import AsyncGenerator, Optional, Union

# Settings are cached on first import, so the test environment goes in first
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'palette_tagging_app.db')}",
)
os.environ.setdefault("INTER_SEED_DELAY_SECONDS", "0")
os.environ.setdefault("PROVIDER_BASE_DELAY_SECONDS", "0")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-key")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from palette_tagging.api.deps import get_batch_client, get_classifiers, get_refinement_model
from palette_tagging.config import ProviderSpec
from palette_tagging.db import models  # noqa: F401
from palette_tagging.db.session import Base, get_db
from palette_tagging.main import app
from palette_tagging.schemas.schemas import ColorDescription, RefinedTags, TagResponse
from palette_tagging.services.errors import BatchNotFoundError
from palette_tagging.services.refinement import BatchClient, BatchInfo, RefinementModel
from palette_tagging.services.store import TagStore

EMBED_TEXT = (
    "warm sunset coral peach amber golden hour tropical beach summer evening glow "
    "citrus mango papaya apricot terracotta desert canyon autumn harvest cozy inviting "
    "energetic playful retro seventies boho vintage poster warmth radiant soft vibrant"
)


def make_tags(**overrides) -> dict:
    """A valid provider tag payload."""
    tags = {
        "temperature": "warm",
        "contrast": "medium",
        "brightness": "light",
        "saturation": "vibrant",
        "mood": ["cheerful", "energetic"],
        "style": ["retro"],
        "dominant_colors": ["orange", "pink"],
        "seasonal": ["summer"],
        "associations": ["sunset", "beach"],
    }
    tags.update(overrides)
    return tags


def make_refined(**overrides) -> RefinedTags:
    return RefinedTags.model_validate({**make_tags(), "embed_text": EMBED_TEXT, **overrides})


class FakeClassifier:
    """Classifier returning fixed tags, or raising a fixed error."""

    def __init__(
        self,
        name: str,
        tags: Optional[dict] = None,
        error: Optional[Exception] = None,
        model: str = "fake-model",
    ):
        self.spec = ProviderSpec(name=name, family="openai", model_id=model)
        self.tags = tags if tags is not None else make_tags()
        self.error = error
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def model(self) -> str:
        return self.spec.model_id

    async def classify(self, description: ColorDescription, instructions: str) -> TagResponse:
        self.calls.append(description.hex[0])
        if self.error is not None:
            raise self.error
        return TagResponse.model_validate(self.tags)


class FakeRefinementModel(RefinementModel):
    """Refinement model that never leaves the process."""

    def __init__(self, outcome: Union[RefinedTags, Exception, None] = None):
        super().__init__("test-key", model="fake-refiner")
        self.outcome = outcome if outcome is not None else make_refined()
        self.prompts: list[str] = []

    async def curate(self, prompt: str, instructions: str) -> RefinedTags:
        self.prompts.append(prompt)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeBatchClient(BatchClient):
    """In-memory stand-in for the Message Batches API."""

    def __init__(self, batch_id: str = "msgbatch_test"):
        super().__init__("test-key")
        self.batch_id = batch_id
        self.submitted: list[dict] = []
        self.processing_status = "in_progress"
        self.results: list[tuple[str, Union[RefinedTags, str]]] = []

    async def submit(self, requests: list[dict]) -> str:
        self.submitted = requests
        return self.batch_id

    async def status(self, batch_id: str) -> BatchInfo:
        if batch_id != self.batch_id:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        return BatchInfo(
            batch_id=batch_id,
            processing_status=self.processing_status,
            request_counts={"processing": 0, "succeeded": len(self.results)},
            created_at="2026-01-01T00:00:00Z",
            ended_at="2026-01-01T01:00:00Z" if self.processing_status == "ended" else None,
        )

    async def fetch_results(self, batch_id: str):
        return list(self.results)

    def finish_all(self, outcome: Union[RefinedTags, str, None] = None) -> None:
        """End the batch with one result per submitted request."""
        self.processing_status = "ended"
        self.results = [
            (request["custom_id"], outcome if outcome is not None else make_refined())
            for request in self.submitted
        ]


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create a per-test SQLite database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(db_session: AsyncSession) -> TagStore:
    return TagStore(db_session)


@pytest.fixture
def classifiers() -> list[FakeClassifier]:
    return [FakeClassifier("alpha"), FakeClassifier("beta", tags=make_tags(temperature="cool"))]


@pytest.fixture
def refinement_model() -> FakeRefinementModel:
    return FakeRefinementModel()


@pytest.fixture
def batch_client() -> FakeBatchClient:
    return FakeBatchClient()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    classifiers: list[FakeClassifier],
    refinement_model: FakeRefinementModel,
    batch_client: FakeBatchClient,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_classifiers] = lambda: classifiers
    app.dependency_overrides[get_refinement_model] = lambda: refinement_model
    app.dependency_overrides[get_batch_client] = lambda: batch_client

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
