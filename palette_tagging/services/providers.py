"""Classification provider adapters.

Each provider family is reached over plain HTTP with httpx. An adapter turns
a color description into a validated TagResponse, or raises ProviderError.
"""

import json
import logging
import re
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from palette_tagging.config import ProviderSpec, Settings
from palette_tagging.schemas.schemas import ColorDescription, TagResponse
from palette_tagging.services.errors import ProviderError

logger = logging.getLogger(__name__)

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json(text: str) -> str:
    """
    Pull the JSON object out of free-form model output.

    Reasoning blocks are dropped first. A fenced code block wins if present,
    otherwise the text between the first "{" and the last "}" is used.
    """
    cleaned = _THINK_BLOCK.sub("", text)
    # Unterminated reasoning block: keep what follows the last closing tag
    if "</think>" in cleaned.lower():
        cleaned = re.split(r"</think>", cleaned, flags=re.IGNORECASE)[-1]
    cleaned = cleaned.strip()

    fenced = _FENCED_BLOCK.search(cleaned)
    if fenced:
        cleaned = fenced.group(1).strip()

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        return cleaned[start : end + 1]
    return cleaned


def parse_tag_response(text: str) -> TagResponse:
    """Parse and validate raw model text as a TagResponse."""
    try:
        data = json.loads(extract_json(text))
    except json.JSONDecodeError as e:
        raise ProviderError(f"Invalid JSON in model output: {e}") from e
    try:
        return TagResponse.model_validate(data)
    except ValidationError as e:
        raise ProviderError(f"Tag validation failed: {e.error_count()} errors: {e}") from e


def describe_for_prompt(description: ColorDescription) -> str:
    return json.dumps(description.model_dump(mode="json"), indent=2)


def tag_response_schema() -> dict:
    """JSON schema handed to providers that support structured output."""
    schema = TagResponse.model_json_schema()
    schema["additionalProperties"] = False
    schema["required"] = list(schema["properties"].keys())
    return schema


class TagClassifier:
    """Base adapter: one instance per configured provider."""

    family = ""

    def __init__(
        self,
        spec: ProviderSpec,
        api_key: str,
        base_url: str,
        temperature: float = 0.8,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.spec = spec
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.timeout = timeout
        self._client = client

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def model(self) -> str:
        return self.spec.model_id

    async def classify(self, description: ColorDescription, instructions: str) -> TagResponse:
        """Classify one palette description into tags."""
        if not self.api_key:
            raise ProviderError(f"Invalid API key: no credentials configured for {self.family}")
        text = await self._complete(describe_for_prompt(description), instructions)
        if not text or not text.strip():
            raise ProviderError(f"Empty response from {self.name}")
        return parse_tag_response(text)

    async def _complete(self, prompt: str, instructions: str) -> str:
        raise NotImplementedError

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post(self, url: str, payload: dict[str, Any], params: Optional[dict] = None) -> dict:
        if self._client is not None:
            response = await self._client.post(
                url, json=payload, headers=self._headers(), params=params, timeout=self.timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=self._headers(), params=params)

        if response.status_code >= 400:
            raise ProviderError(
                f"{self.name} returned HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        return response.json()


class AnthropicClassifier(TagClassifier):
    """Anthropic Messages API."""

    family = "anthropic"

    def __init__(self, *args, anthropic_version: str = "2023-06-01", **kwargs):
        super().__init__(*args, **kwargs)
        self.anthropic_version = anthropic_version

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": self.anthropic_version,
        }

    async def _complete(self, prompt: str, instructions: str) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": 1024,
            "system": instructions,
            "messages": [{"role": "user", "content": prompt}],
        }
        if self.spec.supports_temperature:
            payload["temperature"] = self.temperature

        data = await self._post(f"{self.base_url}/v1/messages", payload)
        return "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )


class OpenAIClassifier(TagClassifier):
    """Chat Completions API. Also serves OpenAI-compatible endpoints such as Groq."""

    family = "openai"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def _complete(self, prompt: str, instructions: str) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": instructions},
                {"role": "user", "content": prompt},
            ],
        }
        if self.spec.supports_temperature:
            payload["temperature"] = self.temperature
        if self.spec.reasoning_effort:
            payload["reasoning_effort"] = self.spec.reasoning_effort
        if self.spec.structured_output:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "palette_tags", "schema": tag_response_schema()},
            }

        data = await self._post(f"{self.base_url}/chat/completions", payload)
        choices = data.get("choices") or []
        if not choices:
            return ""
        return choices[0].get("message", {}).get("content") or ""


class GroqClassifier(OpenAIClassifier):
    family = "groq"


class GoogleClassifier(TagClassifier):
    """Gemini generateContent API."""

    family = "google"

    async def _complete(self, prompt: str, instructions: str) -> str:
        generation_config: dict[str, Any] = {}
        if self.spec.structured_output:
            generation_config["responseMimeType"] = "application/json"
        if self.spec.supports_temperature:
            generation_config["temperature"] = self.temperature

        payload: dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": instructions}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        }
        if generation_config:
            payload["generationConfig"] = generation_config

        model_path = self.model if self.model.startswith("models/") else f"models/{self.model}"
        data = await self._post(
            f"{self.base_url}/{model_path}:generateContent",
            payload,
            params={"key": self.api_key},
        )
        texts = []
        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if part.get("text"):
                    texts.append(part["text"])
        return "\n".join(texts)


CLASSIFIERS: dict[str, type[TagClassifier]] = {
    "anthropic": AnthropicClassifier,
    "openai": OpenAIClassifier,
    "groq": GroqClassifier,
    "google": GoogleClassifier,
}


def build_classifier(
    spec: ProviderSpec,
    settings: Settings,
    client: Optional[httpx.AsyncClient] = None,
) -> TagClassifier:
    """Create the adapter for a configured provider."""
    credentials = {
        "anthropic": (settings.anthropic_api_key, settings.anthropic_base_url),
        "openai": (settings.openai_api_key, settings.openai_base_url),
        "groq": (settings.groq_api_key, settings.groq_base_url),
        "google": (settings.google_api_key, settings.google_base_url),
    }
    api_key, base_url = credentials[spec.family]
    kwargs: dict[str, Any] = {
        "temperature": settings.tagging_temperature,
        "timeout": settings.provider_timeout_seconds,
        "client": client,
    }
    if spec.family == "anthropic":
        kwargs["anthropic_version"] = settings.anthropic_version
    return CLASSIFIERS[spec.family](spec, api_key, base_url, **kwargs)


def build_classifiers(settings: Settings, client: Optional[httpx.AsyncClient] = None) -> list[TagClassifier]:
    return [build_classifier(spec, settings, client) for spec in settings.tagging_providers]
