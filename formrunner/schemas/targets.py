import math
from typing import Literal

from pydantic import BaseModel, field_validator

from formrunner.models.target import FieldConfig, FieldSpec, Target
from formrunner.schemas.jobs import JobResponse
from formrunner.services.form_service import TargetSnapshot


class LoadTargetRequest(BaseModel):
    url: str

    @field_validator("url")
    @classmethod
    def url_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("url must not be empty")
        return v.strip()


class FieldConfigRequest(BaseModel):
    id: str
    strategy: Literal["random", "fixed", "pattern"] = "random"
    fixed_value: str = ""
    pattern: str = ""
    prompt: str = ""
    enabled: bool = True
    position: int = 0

    def to_config(self) -> FieldConfig:
        return FieldConfig(**self.model_dump())


class UpdateFieldsRequest(BaseModel):
    fields: list[FieldConfigRequest]


class FieldResponse(BaseModel):
    id: str | None
    entry_id: str
    label: str
    type: str
    options: list[str] | None = None
    required: bool
    help_text: str | None = None
    validation_message: str | None = None
    strategy: str
    fixed_value: str
    pattern: str
    prompt: str
    enabled: bool
    position: int

    @classmethod
    def from_spec(cls, spec: FieldSpec) -> "FieldResponse":
        return cls(
            id=spec.id,
            entry_id=spec.entry_id,
            label=spec.label,
            type=spec.type,
            options=spec.options,
            required=spec.required,
            help_text=spec.help_text,
            validation_message=spec.validation_message,
            strategy=spec.strategy,
            fixed_value=spec.fixed_value,
            pattern=spec.pattern,
            prompt=spec.prompt,
            enabled=spec.enabled,
            position=spec.position,
        )


class TargetResponse(BaseModel):
    id: str | None
    external_id: str
    url: str
    kind: str
    title: str
    active_job_id: str | None = None
    fields: list[FieldResponse] = []
    latest_job: JobResponse | None = None

    @classmethod
    def from_snapshot(cls, snapshot: TargetSnapshot) -> "TargetResponse":
        target: Target = snapshot.target
        return cls(
            id=target.id,
            external_id=target.external_id,
            url=target.url,
            kind=target.kind,
            title=target.title,
            active_job_id=target.active_job_id,
            fields=[FieldResponse.from_spec(spec) for spec in snapshot.fields],
            latest_job=JobResponse.from_job(snapshot.latest_job) if snapshot.latest_job else None,
        )


class StartJobRequest(BaseModel):
    fields: list[FieldConfigRequest] = []
    count: int = 1
    rate_limit: float = 1.0

    @field_validator("rate_limit")
    @classmethod
    def rate_limit_must_be_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("rate_limit must be a finite number")
        return v


class PreviewRequest(BaseModel):
    fields: list[FieldConfigRequest] = []
    count: int = 3
