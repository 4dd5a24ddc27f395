from abc import ABC, abstractmethod

from formrunner.models.job import ItemResult, Job, JobItem
from formrunner.models.target import FieldConfig, FieldSpec, FormMeta, Target


class AbstractFormRepository(ABC):
    # targets and fields

    @abstractmethod
    def upsert_target(self, target: Target) -> Target:
        """Insert a target keyed by external id, or refresh url/title/schema/meta of the existing one."""

    @abstractmethod
    def get_target(self, target_id: str) -> Target | None:
        """Return the target with the given id, or None."""

    @abstractmethod
    def get_target_by_external_id(self, external_id: str) -> Target | None:
        """Return the target with the given external id, or None."""

    @abstractmethod
    def update_target_snapshot(
        self, target_id: str, title: str, raw_schema: dict | None, meta: FormMeta
    ) -> None:
        """Store the latest title, raw payload and transport tokens of a target."""

    @abstractmethod
    def replace_fields(self, target_id: str, fields: list[FieldSpec]) -> list[FieldSpec]:
        """Drop the target's field list and store ``fields`` in order. Returns stored copies with ids."""

    @abstractmethod
    def list_fields(self, target_id: str) -> list[FieldSpec]:
        """Return the target's fields ordered by position."""

    @abstractmethod
    def update_fields(self, fields: list[FieldSpec]) -> None:
        """Refresh the target-derived attributes of stored fields. Operator configuration is untouched."""

    @abstractmethod
    def update_field_configs(self, target_id: str, configs: list[FieldConfig]) -> None:
        """Persist operator configuration and ordering for the given fields."""

    # jobs

    @abstractmethod
    def create_job(
        self, target_id: str, configs: list[FieldConfig], count: int, rate_limit: float
    ) -> tuple[Job, bool]:
        """
        Atomically start a job. Returns (job, created).
        If the target already owns an active job, returns it with created=False and writes nothing.
        """

    @abstractmethod
    def get_job(self, job_id: str) -> Job | None:
        """Return the job with the given id, or None."""

    @abstractmethod
    def get_latest_job(self, target_id: str) -> Job | None:
        """Return the most recently created job for a target, or None."""

    @abstractmethod
    def set_job_status(self, job_id: str, status: str) -> bool:
        """Move a non-terminal job to ``status``. Returns False if the job was already terminal."""

    @abstractmethod
    def fail_job(self, job_id: str, error: str) -> bool:
        """Mark a non-terminal job failed and release the target's reference to it if held."""

    @abstractmethod
    def finalize_job(self, job_id: str) -> Job:
        """Recount items; if every item is terminal set completed/failed and release the target."""

    @abstractmethod
    def mark_prepared_complete(self, job_id: str) -> Job:
        """Set prepared=count and move a preparing job to queued."""

    @abstractmethod
    def apply_prepared_batch(self, job_id: str, updates: list[tuple[str, dict]]) -> Job:
        """Write generated records onto still-preparing items (status -> queued) and bump the counter."""

    @abstractmethod
    def claim_queued_items(self, job_id: str, limit: int) -> list[JobItem]:
        """Move up to ``limit`` queued items (lowest index first) to running and return them."""

    @abstractmethod
    def record_item_results(self, job_id: str, results: list[ItemResult]) -> Job:
        """Persist terminal item outcomes and add the newly-terminal ones to the job counters."""

    @abstractmethod
    def requeue_running_items(self, job_id: str) -> int:
        """Return running items of a job to queued. Returns the number moved."""

    @abstractmethod
    def list_items_by_status(self, job_id: str, status: str, limit: int) -> list[JobItem]:
        """Return up to ``limit`` items in ``status`` ordered by index."""

    @abstractmethod
    def list_items(self, job_id: str) -> list[JobItem]:
        """Return every item of a job ordered by index."""

    @abstractmethod
    def count_items_by_status(self, job_id: str) -> dict[str, int]:
        """Return a status -> item count mapping for a job."""
