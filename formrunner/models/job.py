import math
from dataclasses import dataclass, field
from datetime import datetime

from formrunner.models.target import utcnow

ACTIVE_STATUSES = frozenset({"preparing", "queued", "running"})
TERMINAL_STATUSES = frozenset({"completed", "failed"})

MAX_ITEMS = 500
MIN_RATE_LIMIT = 1.0
# submissions are spaced at least 150ms apart, so anything above this is never reached
MAX_RATE_LIMIT = 25.0


def clamp_count(requested: int) -> int:
    return min(max(int(requested), 1), MAX_ITEMS)


def clamp_rate_limit(requested: float) -> float:
    rate = float(requested)
    if not math.isfinite(rate):
        raise ValueError(f"Rate limit must be a finite number, got {requested!r}")
    return min(max(rate, MIN_RATE_LIMIT), MAX_RATE_LIMIT)


@dataclass
class Job:
    target_id: str
    count: int
    rate_limit: float
    status: str = "preparing"
    prepared: int = 0
    submitted: int = 0
    failed: int = 0
    error: str | None = None
    id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class JobItem:
    job_id: str
    index: int
    status: str = "preparing"
    payload: dict | None = None
    response: dict | None = None
    error: str | None = None
    id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None


@dataclass
class ItemResult:
    """Terminal outcome of one submission attempt, ready to be persisted."""

    item_id: str
    status: str
    response: dict | None = None
    error: str | None = None
    payload: dict | None = None
