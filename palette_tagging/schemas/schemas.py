"""Pydantic schemas for model output validation and request/response bodies."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ============== Tag Vocabulary ==============

Temperature = Literal["warm", "cool", "neutral", "cool-warm"]
Contrast = Literal["high", "medium", "low"]
Brightness = Literal["dark", "medium", "light", "varied"]
Saturation = Literal["vibrant", "muted", "mixed"]

CATEGORICAL_FIELDS = ("temperature", "contrast", "brightness", "saturation")
TAG_ARRAY_FIELDS = ("mood", "style", "dominant_colors", "seasonal", "associations")

# Older tag payloads used this key for dominant_colors
LEGACY_DOMINANT_COLORS_KEY = "color_family"

# Frequent model mistakes mapped onto the allowed values
CATEGORICAL_SYNONYMS: dict[str, dict[str, str]] = {
    "temperature": {
        "mixed": "cool-warm",
        "both": "cool-warm",
        "warm-cool": "cool-warm",
        "balanced": "neutral",
        "gray": "neutral",
        "grey": "neutral",
    },
    "contrast": {
        "strong": "high",
        "intense": "high",
        "moderate": "medium",
        "mid": "medium",
        "subtle": "low",
        "soft": "low",
        "minimal": "low",
    },
    "brightness": {
        "bright": "light",
        "pale": "light",
        "very light": "light",
        "dim": "dark",
        "deep": "dark",
        "very dark": "dark",
        "moderate": "medium",
        "mid": "medium",
        "average": "medium",
        "mixed": "varied",
        "variable": "varied",
    },
    "saturation": {
        "high": "vibrant",
        "bright": "vibrant",
        "vivid": "vibrant",
        "saturated": "vibrant",
        "intense": "vibrant",
        "low": "muted",
        "dull": "muted",
        "desaturated": "muted",
        "pastel": "muted",
        "moderate": "mixed",
        "medium": "mixed",
        "varied": "mixed",
    },
}


def normalize_tag(value: Any) -> Optional[str]:
    """Lowercase and collapse whitespace; non-strings and blanks become None."""
    if not isinstance(value, str):
        return None
    cleaned = " ".join(value.lower().split())
    return cleaned or None


class TagResponse(BaseModel):
    """Structured tags returned by one classification provider."""

    temperature: Temperature
    contrast: Contrast
    brightness: Brightness
    saturation: Saturation
    mood: list[str] = Field(default_factory=list)
    style: list[str] = Field(default_factory=list)
    dominant_colors: list[str] = Field(default_factory=list)
    seasonal: list[str] = Field(default_factory=list)
    associations: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("dominant_colors") is None:
            legacy = data.get(LEGACY_DOMINANT_COLORS_KEY)
            if legacy is not None:
                data = {**data, "dominant_colors": legacy}
        return data

    @field_validator(*CATEGORICAL_FIELDS, mode="before")
    @classmethod
    def normalize_categorical(cls, v: Any, info) -> Any:
        value = normalize_tag(v)
        if value is None:
            return v
        return CATEGORICAL_SYNONYMS[info.field_name].get(value, value)

    @field_validator(*TAG_ARRAY_FIELDS, mode="before")
    @classmethod
    def normalize_array(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, list):
            raise ValueError("expected a list of strings")
        return [tag for tag in (normalize_tag(item) for item in v) if tag]


class RefinedTags(TagResponse):
    """Curated tag set produced by the refinement model."""

    embed_text: str

    @field_validator("embed_text")
    @classmethod
    def check_embed_text_length(cls, v: str) -> str:
        """Too short is rejected; overlong text is cut to the first 50 words."""
        words = v.split()
        if len(words) < 30:
            raise ValueError(f"embed_text must be 30-50 words, got {len(words)}")
        return " ".join(words[:50]).lower()


# ============== Consensus ==============


class ColorDescription(BaseModel):
    """Color samples taken along a palette's gradient."""

    hex: list[str]
    rgb: list[tuple[int, int, int]]
    hsl: list[tuple[int, int, int]]
    lch: list[tuple[int, int, int]]


class TagSummary(BaseModel):
    """Frequency counts over every valid provider response for one seed."""

    seed: str
    source_prompt_version: str
    color_description: ColorDescription
    total_valid_responses: int = 0
    categorical: dict[str, dict[str, int]]
    tags: dict[str, dict[str, int]]

    def stored_copy(self) -> dict:
        """Trimmed copy kept next to a refinement for auditing."""
        return {
            "color_description": self.color_description.model_dump(mode="json"),
            "categorical": self.categorical,
            "tags": self.tags,
        }


# ============== Seed & Tagging Schemas ==============


class SeedRegisterRequest(BaseModel):
    """Register palette seeds for tagging."""

    seeds: list[str] = Field(..., min_length=1, max_length=10000)

    @field_validator("seeds")
    @classmethod
    def strip_seeds(cls, v: list[str]) -> list[str]:
        seeds = [s.strip() for s in v if s and s.strip()]
        if not seeds:
            raise ValueError("at least one non-empty seed is required")
        return seeds


class SeedRegisterResponse(BaseModel):
    registered: int
    total_seeds: int


class TaggingStatusResponse(BaseModel):
    """Progress of the current tagging run."""

    run_number: int
    prompt_version: str
    total_seeds: int
    completed: int
    pending: int
    total_results: int
    providers_per_seed: int


class ProviderTagResultResponse(BaseModel):
    """One stored provider result."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    seed: str
    provider: str
    model: str
    run_number: int
    prompt_version: str
    tags: Optional[dict] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None


class SeedResultsResponse(BaseModel):
    seed: str
    total_results: int
    results: list[ProviderTagResultResponse]


class SeedSweepResult(BaseModel):
    seed: str
    success: bool
    providers_completed: int
    errors: list[str] = []


class SweepResponse(BaseModel):
    """Outcome of one tagging sweep."""

    run_number: int
    processed: int
    successful: int
    failed: int
    results: list[SeedSweepResult] = []


class SweepQueuedResponse(BaseModel):
    task_id: str
    status: str = "queued"


# ============== Refinement Schemas ==============


class RefinementStatusResponse(BaseModel):
    source_prompt_version: str
    refinement_prompt_version: str
    total_tagged: int
    refined: int
    pending: int
    errors: int


class RefineSingleRequest(BaseModel):
    source_version: Optional[str] = Field(
        None, description="Tagging prompt version to refine (latest with tags if omitted)"
    )


class RefinementResponse(BaseModel):
    """A stored refinement, successful or not."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    seed: str
    model: str
    prompt_version: str
    source_prompt_version: str
    refined_tags: Optional[dict] = None
    error: Optional[str] = None
    batch_id: Optional[str] = None
    created_at: Optional[datetime] = None


class BatchRefinementRequest(BaseModel):
    limit: int = Field(100, ge=1, le=10000, description="Maximum seeds to include in the batch")


class BatchStartResponse(BaseModel):
    batch_id: Optional[str] = None
    seed_count: int
    correlation_map: dict[str, str] = {}
    message: str


class BatchStatusResponse(BaseModel):
    batch_id: str
    processing_status: str
    request_counts: dict[str, int] = {}
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class BatchProcessRequest(BaseModel):
    correlation_map: Optional[dict[str, str]] = Field(
        None,
        description="Correlation map returned at submission; the stored copy is used if omitted",
    )


class BatchProcessResponse(BaseModel):
    batch_id: str
    processed: int
    stored: int
    errors: int
    skipped: int


# ============== Health & Misc Schemas ==============


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    redis: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
