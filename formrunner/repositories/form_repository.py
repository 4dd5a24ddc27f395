import json
import logging
import sqlite3
import uuid
from datetime import datetime

from formrunner.db.connection import get_connection, transaction
from formrunner.errors import NotFoundError
from formrunner.models.job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ItemResult,
    Job,
    JobItem,
)
from formrunner.models.target import FieldConfig, FieldSpec, FormMeta, Target, utcnow
from formrunner.repositories.base import AbstractFormRepository
from formrunner.services.job_machine import aggregate_status

logger = logging.getLogger(__name__)

_ACTIVE_SQL = "('preparing', 'queued', 'running')"
_TERMINAL_SQL = "('completed', 'failed')"


def _new_id() -> str:
    return uuid.uuid4().hex


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dump(value) -> str | None:
    return None if value is None else json.dumps(value)


def _load(value: str | None):
    return None if value is None else json.loads(value)


def _row_to_target(row: sqlite3.Row) -> Target:
    return Target(
        id=row["id"],
        external_id=row["external_id"],
        url=row["url"],
        kind=row["kind"],
        title=row["title"],
        raw_schema=_load(row["raw_schema"]),
        meta=FormMeta.from_dict(_load(row["meta"])),
        active_job_id=row["active_job_id"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_field(row: sqlite3.Row) -> FieldSpec:
    return FieldSpec(
        id=row["id"],
        entry_id=row["entry_id"],
        label=row["label"],
        type=row["type"],
        options=_load(row["options"]),
        required=bool(row["required"]),
        help_text=row["help_text"],
        validation=_load(row["validation"]),
        raw_type=row["raw_type"],
        item_id=row["item_id"],
        strategy=row["strategy"],
        fixed_value=row["fixed_value"],
        pattern=row["pattern"],
        prompt=row["prompt"],
        enabled=bool(row["enabled"]),
        position=row["position"],
    )


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        target_id=row["target_id"],
        status=row["status"],
        count=row["count"],
        rate_limit=row["rate_limit"],
        prepared=row["prepared"],
        submitted=row["submitted"],
        failed=row["failed"],
        error=row["error"],
        created_at=_parse_ts(row["created_at"]),
        started_at=_parse_ts(row["started_at"]),
        finished_at=_parse_ts(row["finished_at"]),
    )


def _row_to_item(row: sqlite3.Row) -> JobItem:
    return JobItem(
        id=row["id"],
        job_id=row["job_id"],
        index=row["idx"],
        status=row["status"],
        payload=_load(row["payload"]),
        response=_load(row["response"]),
        error=row["error"],
        created_at=_parse_ts(row["created_at"]),
        completed_at=_parse_ts(row["completed_at"]),
    )


class SqliteFormRepository(AbstractFormRepository):
    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # targets and fields

    def upsert_target(self, target: Target) -> Target:
        """
        Insert a target keyed by external id. An existing row keeps its id,
        created_at and active job reference; everything else is refreshed.
        """
        now = _ts(utcnow())
        with get_connection(self._db_path) as conn:
            conn.execute(
                """
                INSERT INTO targets
                    (id, external_id, url, kind, title, raw_schema, meta, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(external_id) DO UPDATE SET
                    url        = excluded.url,
                    kind       = excluded.kind,
                    title      = excluded.title,
                    raw_schema = excluded.raw_schema,
                    meta       = excluded.meta,
                    updated_at = excluded.updated_at
                """,
                (
                    target.id or _new_id(),
                    target.external_id,
                    target.url,
                    target.kind,
                    target.title,
                    _dump(target.raw_schema),
                    json.dumps(target.meta.to_dict()),
                    _ts(target.created_at) or now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM targets WHERE external_id = ?", (target.external_id,)
            ).fetchone()
        return _row_to_target(row)

    def get_target(self, target_id: str) -> Target | None:
        with get_connection(self._db_path) as conn:
            row = conn.execute("SELECT * FROM targets WHERE id = ?", (target_id,)).fetchone()
        return _row_to_target(row) if row else None

    def get_target_by_external_id(self, external_id: str) -> Target | None:
        with get_connection(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM targets WHERE external_id = ?", (external_id,)
            ).fetchone()
        return _row_to_target(row) if row else None

    def update_target_snapshot(
        self, target_id: str, title: str, raw_schema: dict | None, meta: FormMeta
    ) -> None:
        with get_connection(self._db_path) as conn:
            conn.execute(
                """
                UPDATE targets
                SET title = ?, raw_schema = ?, meta = ?, updated_at = ?
                WHERE id = ?
                """,
                (title, _dump(raw_schema), json.dumps(meta.to_dict()), _ts(utcnow()), target_id),
            )

    def replace_fields(self, target_id: str, fields: list[FieldSpec]) -> list[FieldSpec]:
        with get_connection(self._db_path) as conn, transaction(conn):
            conn.execute("DELETE FROM field_specs WHERE target_id = ?", (target_id,))
            for position, spec in enumerate(fields):
                conn.execute(
                    """
                    INSERT INTO field_specs
                        (id, target_id, entry_id, label, type, options, required, help_text,
                         validation, raw_type, item_id, strategy, fixed_value, pattern,
                         prompt, enabled, position)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _new_id(),
                        target_id,
                        spec.entry_id,
                        spec.label,
                        spec.type,
                        _dump(spec.options),
                        int(spec.required),
                        spec.help_text,
                        _dump(spec.validation),
                        spec.raw_type,
                        spec.item_id,
                        spec.strategy,
                        spec.fixed_value,
                        spec.pattern,
                        spec.prompt,
                        int(spec.enabled),
                        position,
                    ),
                )
        return self.list_fields(target_id)

    def list_fields(self, target_id: str) -> list[FieldSpec]:
        with get_connection(self._db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM field_specs WHERE target_id = ? ORDER BY position, rowid",
                (target_id,),
            ).fetchall()
        return [_row_to_field(row) for row in rows]

    def update_fields(self, fields: list[FieldSpec]) -> None:
        with get_connection(self._db_path) as conn, transaction(conn):
            for spec in fields:
                if spec.id is None:
                    continue
                conn.execute(
                    """
                    UPDATE field_specs
                    SET entry_id = ?, label = ?, type = ?, options = ?, required = ?,
                        help_text = ?, validation = ?, raw_type = ?, item_id = ?
                    WHERE id = ?
                    """,
                    (
                        spec.entry_id,
                        spec.label,
                        spec.type,
                        _dump(spec.options),
                        int(spec.required),
                        spec.help_text,
                        _dump(spec.validation),
                        spec.raw_type,
                        spec.item_id,
                        spec.id,
                    ),
                )

    def update_field_configs(self, target_id: str, configs: list[FieldConfig]) -> None:
        with get_connection(self._db_path) as conn, transaction(conn):
            self._apply_field_configs(conn, target_id, configs)

    @staticmethod
    def _apply_field_configs(
        conn: sqlite3.Connection, target_id: str, configs: list[FieldConfig]
    ) -> None:
        for config in configs:
            conn.execute(
                """
                UPDATE field_specs
                SET strategy = ?, fixed_value = ?, pattern = ?, prompt = ?,
                    enabled = ?, position = ?
                WHERE id = ? AND target_id = ?
                """,
                (
                    config.strategy,
                    config.fixed_value,
                    config.pattern,
                    config.prompt,
                    int(config.enabled),
                    config.position,
                    config.id,
                    target_id,
                ),
            )

    # jobs

    def create_job(
        self, target_id: str, configs: list[FieldConfig], count: int, rate_limit: float
    ) -> tuple[Job, bool]:
        now = _ts(utcnow())
        with get_connection(self._db_path) as conn, transaction(conn):
            target_row = conn.execute(
                "SELECT active_job_id FROM targets WHERE id = ?", (target_id,)
            ).fetchone()
            if target_row is None:
                raise NotFoundError(f"Target not found: {target_id}")

            active_id = target_row["active_job_id"]
            if active_id:
                active = conn.execute("SELECT * FROM jobs WHERE id = ?", (active_id,)).fetchone()
                if active is not None and active["status"] in ACTIVE_STATUSES:
                    return _row_to_job(active), False
                # stale reference to a finished or missing job
                conn.execute(
                    "UPDATE targets SET active_job_id = NULL WHERE id = ? AND active_job_id = ?",
                    (target_id, active_id),
                )

            orphan = conn.execute(
                f"""
                SELECT * FROM jobs
                WHERE target_id = ? AND status IN {_ACTIVE_SQL}
                ORDER BY created_at DESC LIMIT 1
                """,
                (target_id,),
            ).fetchone()
            if orphan is not None:
                conn.execute(
                    "UPDATE targets SET active_job_id = ? WHERE id = ?", (orphan["id"], target_id)
                )
                return _row_to_job(orphan), False

            self._apply_field_configs(conn, target_id, configs)

            job_id = _new_id()
            conn.execute(
                """
                INSERT INTO jobs (id, target_id, status, count, rate_limit, created_at)
                VALUES (?, ?, 'preparing', ?, ?, ?)
                """,
                (job_id, target_id, count, rate_limit, now),
            )
            conn.executemany(
                """
                INSERT INTO job_items (id, job_id, idx, status, created_at)
                VALUES (?, ?, ?, 'preparing', ?)
                """,
                [(_new_id(), job_id, index, now) for index in range(count)],
            )
            claimed = conn.execute(
                "UPDATE targets SET active_job_id = ? WHERE id = ? AND active_job_id IS NULL",
                (job_id, target_id),
            ).rowcount
            if claimed != 1:
                raise RuntimeError(f"Active job reference changed under lock | target_id={target_id}")
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row), True

    def get_job(self, job_id: str) -> Job | None:
        with get_connection(self._db_path) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def get_latest_job(self, target_id: str) -> Job | None:
        with get_connection(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE target_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (target_id,),
            ).fetchone()
        return _row_to_job(row) if row else None

    def set_job_status(self, job_id: str, status: str) -> bool:
        """started_at is stamped the first time a job moves to running."""
        with get_connection(self._db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET status = ?,
                    started_at = CASE
                        WHEN started_at IS NULL AND ? = 'running' THEN ? ELSE started_at
                    END
                WHERE id = ? AND status NOT IN {_TERMINAL_SQL}
                """,
                (status, status, _ts(utcnow()), job_id),
            )
        return cursor.rowcount == 1

    def fail_job(self, job_id: str, error: str) -> bool:
        with get_connection(self._db_path) as conn, transaction(conn):
            changed = conn.execute(
                f"""
                UPDATE jobs SET status = 'failed', error = ?, finished_at = ?
                WHERE id = ? AND status NOT IN {_TERMINAL_SQL}
                """,
                (error, _ts(utcnow()), job_id),
            ).rowcount
            if changed:
                self._release_target(conn, job_id)
        return changed == 1

    def finalize_job(self, job_id: str) -> Job:
        with get_connection(self._db_path) as conn, transaction(conn):
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Job not found: {job_id}")
            job = _row_to_job(row)
            if job.is_terminal:
                return job

            counts = self._count_items(conn, job_id)
            completed = counts.get("completed", 0)
            failed = counts.get("failed", 0)
            prepared = job.count - counts.get("preparing", 0)
            status = aggregate_status(job.count, completed, failed)
            if status is None:
                conn.execute(
                    "UPDATE jobs SET submitted = ?, failed = ?, prepared = ? WHERE id = ?",
                    (completed, failed, prepared, job_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, submitted = ?, failed = ?, prepared = ?, finished_at = ?
                    WHERE id = ?
                    """,
                    (status, completed, failed, prepared, _ts(utcnow()), job_id),
                )
                self._release_target(conn, job_id)
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row)

    def mark_prepared_complete(self, job_id: str) -> Job:
        with get_connection(self._db_path) as conn, transaction(conn):
            conn.execute(
                """
                UPDATE jobs
                SET prepared = count,
                    status = CASE WHEN status = 'preparing' THEN 'queued' ELSE status END
                WHERE id = ?
                """,
                (job_id,),
            )
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return _row_to_job(row)

    def apply_prepared_batch(self, job_id: str, updates: list[tuple[str, dict]]) -> Job:
        with get_connection(self._db_path) as conn, transaction(conn):
            written = 0
            for item_id, payload in updates:
                written += conn.execute(
                    """
                    UPDATE job_items SET status = 'queued', payload = ?
                    WHERE id = ? AND job_id = ? AND status = 'preparing'
                    """,
                    (json.dumps(payload), item_id, job_id),
                ).rowcount
            conn.execute(
                """
                UPDATE jobs
                SET prepared = MIN(count, prepared + ?),
                    status = CASE
                        WHEN status = 'preparing' AND MIN(count, prepared + ?) >= count THEN 'queued'
                        ELSE status
                    END
                WHERE id = ?
                """,
                (written, written, job_id),
            )
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if written != len(updates):
            logger.info(
                "[repository] prepared batch partially applied | job_id=%s | written=%d | requested=%d",
                job_id, written, len(updates),
            )
        return _row_to_job(row)

    def claim_queued_items(self, job_id: str, limit: int) -> list[JobItem]:
        with get_connection(self._db_path) as conn, transaction(conn):
            rows = conn.execute(
                """
                SELECT * FROM job_items
                WHERE job_id = ? AND status = 'queued'
                ORDER BY idx LIMIT ?
                """,
                (job_id, limit),
            ).fetchall()
            conn.executemany(
                "UPDATE job_items SET status = 'running' WHERE id = ? AND status = 'queued'",
                [(row["id"],) for row in rows],
            )
        items = [_row_to_item(row) for row in rows]
        for item in items:
            item.status = "running"
        return items

    def record_item_results(self, job_id: str, results: list[ItemResult]) -> Job:
        now = _ts(utcnow())
        with get_connection(self._db_path) as conn, transaction(conn):
            accepted = 0
            rejected = 0
            for result in results:
                changed = conn.execute(
                    """
                    UPDATE job_items
                    SET status = ?, response = ?, error = ?,
                        payload = COALESCE(?, payload), completed_at = ?
                    WHERE id = ? AND job_id = ? AND status = 'running'
                    """,
                    (
                        result.status,
                        _dump(result.response),
                        result.error,
                        _dump(result.payload),
                        now,
                        result.item_id,
                        job_id,
                    ),
                ).rowcount
                if not changed:
                    # duplicate delivery: the item already holds a terminal status
                    continue
                if result.status == "completed":
                    accepted += 1
                else:
                    rejected += 1
            conn.execute(
                "UPDATE jobs SET submitted = submitted + ?, failed = failed + ? WHERE id = ?",
                (accepted, rejected, job_id),
            )
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row)

    def requeue_running_items(self, job_id: str) -> int:
        with get_connection(self._db_path) as conn:
            cursor = conn.execute(
                "UPDATE job_items SET status = 'queued' WHERE job_id = ? AND status = 'running'",
                (job_id,),
            )
        return cursor.rowcount

    def list_items_by_status(self, job_id: str, status: str, limit: int) -> list[JobItem]:
        with get_connection(self._db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM job_items WHERE job_id = ? AND status = ? ORDER BY idx LIMIT ?",
                (job_id, status, limit),
            ).fetchall()
        return [_row_to_item(row) for row in rows]

    def list_items(self, job_id: str) -> list[JobItem]:
        with get_connection(self._db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM job_items WHERE job_id = ? ORDER BY idx", (job_id,)
            ).fetchall()
        return [_row_to_item(row) for row in rows]

    def count_items_by_status(self, job_id: str) -> dict[str, int]:
        with get_connection(self._db_path) as conn:
            return self._count_items(conn, job_id)

    @staticmethod
    def _count_items(conn: sqlite3.Connection, job_id: str) -> dict[str, int]:
        rows = conn.execute(
            "SELECT status, COUNT(*) AS n FROM job_items WHERE job_id = ? GROUP BY status",
            (job_id,),
        ).fetchall()
        return {row["status"]: row["n"] for row in rows}

    @staticmethod
    def _release_target(conn: sqlite3.Connection, job_id: str) -> None:
        conn.execute(
            "UPDATE targets SET active_job_id = NULL WHERE active_job_id = ?", (job_id,)
        )
