from dataclasses import asdict, dataclass, field, fields as dataclass_fields
from datetime import datetime, timezone

FIELD_TYPES = {
    "short",
    "paragraph",
    "single_choice",
    "multi_choice",
    "dropdown",
    "linear_scale",
    "date",
    "time",
    "unsupported",
}

STRATEGIES = {"random", "fixed", "pattern"}

TARGET_KINDS = {"d", "e"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FieldSpec:
    entry_id: str
    label: str
    type: str = "unsupported"
    options: list[str] | None = None
    required: bool = False
    help_text: str | None = None
    validation: dict | None = None
    raw_type: int | None = None
    item_id: str | None = None
    # operator configuration
    strategy: str = "random"
    fixed_value: str = ""
    pattern: str = ""
    prompt: str = ""
    enabled: bool = True
    position: int = 0
    id: str | None = None

    @property
    def entry_key(self) -> str:
        return f"entry.{self.entry_id}"

    @property
    def validation_message(self) -> str | None:
        if not self.validation:
            return None
        return self.validation.get("message")


@dataclass
class FormMeta:
    """Transport tokens scraped from the hidden inputs of the target page."""

    token: str = ""
    tag: str = ""
    partial_response: str = ""
    fbzx: str = ""
    fvv: str = ""
    page_history: str = ""
    submission_timestamp: str = ""
    dlut: str = ""
    hud: str = ""
    action_url: str = ""
    view_url: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "FormMeta":
        if not data:
            return cls()
        known = {f.name for f in dataclass_fields(cls)}
        return cls(**{k: str(v or "") for k, v in data.items() if k in known})

    def merged(self, other: "FormMeta") -> "FormMeta":
        """Return a copy where every non-empty value of ``other`` wins."""
        current = self.to_dict()
        current.update({k: v for k, v in other.to_dict().items() if v})
        return FormMeta(**current)

    @property
    def has_submission_tokens(self) -> bool:
        return bool(self.action_url and self.fbzx and self.fvv)


@dataclass
class Target:
    external_id: str
    url: str
    kind: str
    title: str
    raw_schema: dict | None = None
    meta: FormMeta = field(default_factory=FormMeta)
    active_job_id: str | None = None
    id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class FieldConfig:
    """Operator configuration for one stored field, applied at job start."""

    id: str
    strategy: str = "random"
    fixed_value: str = ""
    pattern: str = ""
    prompt: str = ""
    enabled: bool = True
    position: int = 0
