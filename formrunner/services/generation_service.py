import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Annotated, Any, Literal, Union

from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, StringConstraints, create_model
from pydantic import ValidationError as PydanticValidationError

from formrunner.config import settings
from formrunner.errors import GenerationError
from formrunner.models.target import FieldSpec

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

SYSTEM_PROMPT = (
    "You produce realistic synthetic form responses as JSON. "
    "Follow the key list and constraints exactly."
)


class ContentProvider(ABC):
    """Structured-generation capability: prompt plus per-record JSON schema in, records out."""

    @property
    def configured(self) -> bool:
        return True

    @abstractmethod
    async def generate(self, prompt: str, schema: dict, count: int) -> list[Any]:
        """Return the raw records produced for one request."""


class OpenAIContentProvider(ContentProvider):
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self._base_url = base_url if base_url is not None else settings.OPENAI_BASE_URL
        self.model = model or settings.OPENAI_MODEL
        self._client: AsyncOpenAI | None = None

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def generate(self, prompt: str, schema: dict, count: int) -> list[Any]:
        response = await self._get_client().chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={
                "type": "json_schema",
                "json_schema": {
                    "name": "samples",
                    "strict": False,
                    "schema": {
                        "type": "object",
                        "properties": {
                            "samples": {
                                "type": "array",
                                "items": schema,
                                "minItems": count,
                                "maxItems": count,
                            }
                        },
                        "required": ["samples"],
                    },
                },
            },
        )
        text = (response.choices[0].message.content or "").strip()
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise GenerationError(f"Generator returned malformed JSON: {exc}") from exc
        samples = data.get("samples") if isinstance(data, dict) else data
        if not isinstance(samples, list):
            raise GenerationError("Generator response has no samples array.")
        return samples


def active_fields(fields: list[FieldSpec]) -> list[FieldSpec]:
    return [spec for spec in fields if spec.enabled]


def describe_field(spec: FieldSpec) -> str:
    parts = [f"{spec.label} [{spec.type}]"]
    if spec.options:
        parts.append(f"options: {' | '.join(spec.options)}")
    if spec.required:
        parts.append("required")
    if spec.strategy == "fixed" and spec.fixed_value:
        parts.append(f"fixed value: {spec.fixed_value}")
    if spec.strategy == "pattern" and spec.pattern:
        parts.append(f"pattern: {spec.pattern}")
    if spec.validation_message:
        parts.append(f"validation: {spec.validation_message}")
    if spec.validation and spec.validation.get("raw"):
        parts.append(f"validation data: {json.dumps(spec.validation['raw'])}")
    if spec.help_text:
        parts.append(f"help: {spec.help_text}")
    if spec.prompt:
        parts.append(f"instruction: {spec.prompt}")
    return ". ".join(parts)


def build_prompt(fields: list[FieldSpec], count: int) -> str:
    keys = "\n".join(f"- {spec.entry_key}: {describe_field(spec)}" for spec in active_fields(fields))
    return (
        "You are generating form submissions.\n"
        'Return JSON with a "samples" array. Each object must use ONLY these keys:\n'
        f"{keys}\n\n"
        "Guidelines:\n"
        "- Keep values realistic and concise.\n"
        "- If a field has options, choose one of the options exactly as written.\n"
        "- For multi_choice fields, return an array with one or more of the listed options.\n"
        "- Required fields must never be blank.\n"
        "- Do not invent new keys.\n"
        "- Every sample must include every key listed above.\n"
        f"- Return exactly {count} samples. If unsure, repeat a previous sample rather than returning fewer.\n"
    )


def build_record_keys(fields: list[FieldSpec]) -> list[str]:
    return [spec.entry_key for spec in active_fields(fields)]


def _valid_pattern(pattern: str) -> str | None:
    try:
        re.compile(pattern)
    except re.error:
        logger.debug("[generate] ignoring invalid pattern | pattern=%r", pattern)
        return None
    return pattern


def _field_annotation(spec: FieldSpec) -> Any:
    options = list(dict.fromkeys(option.strip() for option in spec.options or [] if option.strip()))
    if options:
        option_type = Literal[tuple(options)]
        if spec.type == "multi_choice":
            many = Annotated[list[option_type], Field(min_length=1 if spec.required else 0)]
            return Union[option_type, many]
        return option_type

    pattern = _valid_pattern(spec.pattern) if spec.strategy == "pattern" and spec.pattern else None
    return Annotated[
        str,
        StringConstraints(min_length=1 if spec.required else None, pattern=pattern),
    ]


def build_record_model(fields: list[FieldSpec]) -> type[BaseModel]:
    """Dynamic model mirroring the record shape; keys are aliased to ``entry.<id>``."""
    definitions = {
        f"field_{position}": (_field_annotation(spec), Field(alias=spec.entry_key))
        for position, spec in enumerate(active_fields(fields))
    }
    return create_model(
        "GeneratedRecord",
        __config__=ConfigDict(extra="ignore", regex_engine="python-re"),
        **definitions,
    )


def build_record_schema(fields: list[FieldSpec]) -> dict:
    return build_record_model(fields).model_json_schema(by_alias=True)


def normalize_record(record: Any, fields: list[FieldSpec]) -> dict[str, str | list[str]]:
    """Keep only expected keys and coerce values to str or list[str] (None -> "")."""
    if not isinstance(record, dict):
        raise GenerationError(f"Generator returned a non-object record: {type(record).__name__}")
    normalized: dict[str, str | list[str]] = {}
    for key in build_record_keys(fields):
        if key not in record:
            continue
        value = record[key]
        if value is None:
            normalized[key] = ""
        elif isinstance(value, list):
            normalized[key] = ["" if entry is None else str(entry) for entry in value]
        else:
            normalized[key] = str(value)
    return normalized


def apply_overrides(record: dict, fields: list[FieldSpec]) -> dict:
    updated = dict(record)
    for spec in active_fields(fields):
        if spec.strategy == "fixed" and spec.fixed_value:
            updated[spec.entry_key] = spec.fixed_value
    return updated


class ContentGenerator:
    def __init__(self, provider: ContentProvider, timeout: float | None = None) -> None:
        self._provider = provider
        self._timeout = timeout if timeout is not None else settings.GENERATION_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return self._provider.configured

    async def _attempt(
        self,
        fields: list[FieldSpec],
        count: int,
        prompt: str,
        record_model: type[BaseModel],
    ) -> list[dict]:
        raw = await self._provider.generate(prompt, record_model.model_json_schema(by_alias=True), count)
        samples = raw[:count]
        if len(samples) < count:
            raise GenerationError(
                f"Generator returned fewer samples than requested ({len(samples)}/{count})."
            )

        keys = build_record_keys(fields)
        records = []
        for sample in samples:
            record = normalize_record(sample, fields)
            missing = [key for key in keys if key not in record]
            if missing:
                raise GenerationError(f"Generator response missing required fields: {missing}")
            try:
                record_model.model_validate(record)
            except PydanticValidationError as exc:
                raise GenerationError(f"Generator response failed validation: {exc}") from exc
            records.append(apply_overrides(record, fields))
        return records

    async def _generate_with_retries(self, fields: list[FieldSpec], count: int) -> list[dict]:
        prompt = build_prompt(fields, count)
        record_model = build_record_model(fields)
        last_error: Exception | None = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                return await self._attempt(fields, count, prompt, record_model)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "[generate] attempt failed | attempt=%d/%d | count=%d | error=%s",
                    attempt, MAX_ATTEMPTS, count, exc,
                )
        if isinstance(last_error, GenerationError):
            raise last_error
        raise GenerationError(f"Content generation failed: {last_error}") from last_error

    async def generate_batch(self, fields: list[FieldSpec], count: int) -> list[dict]:
        """
        Generate exactly ``count`` records for the enabled fields.
        Up to three independent attempts run inside one overall timeout.
        """
        enabled = active_fields(fields)
        if not enabled:
            raise GenerationError("No enabled fields to generate.")
        if not self._provider.configured:
            raise GenerationError("Generation credentials are missing.")
        try:
            return await asyncio.wait_for(
                self._generate_with_retries(enabled, count), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            raise GenerationError("Sample generation timed out") from exc

    async def generate_preview(self, fields: list[FieldSpec], count: int) -> list[dict]:
        safe_count = min(max(int(count), 1), settings.PREVIEW_MAX_COUNT)
        return await self.generate_batch(fields, safe_count)
