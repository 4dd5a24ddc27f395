import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from formrunner.errors import NotFoundError
from formrunner.models.job import ItemResult
from formrunner.models.target import FieldConfig, FieldSpec, FormMeta, Target
from formrunner.repositories.form_repository import SqliteFormRepository


@pytest.fixture
def repo(db_path):
    return SqliteFormRepository(db_path)


@pytest.fixture
def target(repo):
    target = repo.upsert_target(
        Target(
            external_id="form-1",
            url="https://docs.google.com/forms/d/e/form-1/viewform",
            kind="e",
            title="Survey",
            meta=FormMeta(fbzx="-1", fvv="1"),
        )
    )
    repo.replace_fields(
        target.id,
        [
            FieldSpec(entry_id="1", label="Name", required=True, position=0),
            FieldSpec(entry_id="2", label="Color", type="dropdown", options=["Red"], position=1),
        ],
    )
    return target


def _prepare_all(repo, job):
    items = repo.list_items_by_status(job.id, "preparing", job.count)
    return repo.apply_prepared_batch(job.id, [(item.id, {"entry.1": f"n{item.index}"}) for item in items])


# targets and fields
def test_upsert_target_is_insert_if_absent(repo, target):
    again = repo.upsert_target(
        Target(external_id="form-1", url="https://new/url", kind="e", title="Renamed")
    )
    assert again.id == target.id
    assert again.title == "Renamed"
    assert repo.get_target_by_external_id("form-1").id == target.id


def test_target_meta_roundtrip(repo, target):
    stored = repo.get_target(target.id)
    assert stored.meta.fbzx == "-1"
    assert stored.active_job_id is None


def test_fields_are_ordered_and_configurable(repo, target):
    fields = repo.list_fields(target.id)
    assert [spec.entry_id for spec in fields] == ["1", "2"]
    assert fields[1].options == ["Red"]

    repo.update_field_configs(
        target.id,
        [
            FieldConfig(id=fields[0].id, strategy="fixed", fixed_value="Ada", position=1),
            FieldConfig(id=fields[1].id, enabled=False, position=0),
        ],
    )

    updated = repo.list_fields(target.id)
    assert [spec.entry_id for spec in updated] == ["2", "1"]
    assert updated[0].enabled is False
    assert updated[1].fixed_value == "Ada"


# start
def test_create_job_creates_items_and_claims_target(repo, target):
    job, created = repo.create_job(target.id, [], 5, 2.0)

    assert created
    assert job.status == "preparing"
    assert repo.count_items_by_status(job.id) == {"preparing": 5}
    assert [item.index for item in repo.list_items(job.id)] == [0, 1, 2, 3, 4]
    assert repo.get_target(target.id).active_job_id == job.id


def test_create_job_returns_active_job(repo, target):
    first, _ = repo.create_job(target.id, [], 5, 1.0)
    second, created = repo.create_job(target.id, [], 50, 3.0)

    assert not created
    assert second.id == first.id
    assert second.count == 5


def test_create_job_applies_field_configs(repo, target):
    name = repo.list_fields(target.id)[0]
    repo.create_job(target.id, [FieldConfig(id=name.id, strategy="fixed", fixed_value="Bob")], 1, 1.0)
    assert repo.list_fields(target.id)[0].fixed_value == "Bob"


def test_started_at_is_stamped_when_job_first_runs(repo, target):
    job, _ = repo.create_job(target.id, [], 2, 1.0)
    assert job.started_at is None

    assert repo.set_job_status(job.id, "running")
    started = repo.get_job(job.id).started_at
    assert started is not None
    assert started >= job.created_at

    assert repo.set_job_status(job.id, "running")
    assert repo.get_job(job.id).started_at == started


def test_create_job_unknown_target(repo):
    with pytest.raises(NotFoundError):
        repo.create_job("missing", [], 1, 1.0)


def test_concurrent_starts_create_one_job(repo, target):
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: repo.create_job(target.id, [], 3, 1.0), range(8)))

    assert sum(1 for _, created in results if created) == 1
    assert len({job.id for job, _ in results}) == 1


def test_stale_reference_is_cleared_on_start(repo, target, db_path):
    finished, _ = repo.create_job(target.id, [], 1, 1.0)
    repo.fail_job(finished.id, "boom")
    conn = sqlite3.connect(db_path)
    conn.execute("UPDATE targets SET active_job_id = ? WHERE id = ?", (finished.id, target.id))
    conn.commit()
    conn.close()

    job, created = repo.create_job(target.id, [], 2, 1.0)

    assert created
    assert job.id != finished.id
    assert repo.get_target(target.id).active_job_id == job.id


def test_orphan_active_job_is_adopted(repo, target, db_path):
    orphan, _ = repo.create_job(target.id, [], 2, 1.0)
    conn = sqlite3.connect(db_path)
    conn.execute("UPDATE targets SET active_job_id = NULL WHERE id = ?", (target.id,))
    conn.commit()
    conn.close()

    job, created = repo.create_job(target.id, [], 2, 1.0)

    assert not created
    assert job.id == orphan.id
    assert repo.get_target(target.id).active_job_id == orphan.id


# prepare
def test_apply_prepared_batch_is_idempotent(repo, target):
    job, _ = repo.create_job(target.id, [], 3, 1.0)
    items = repo.list_items_by_status(job.id, "preparing", 2)
    updates = [(item.id, {"entry.1": "x"}) for item in items]

    first = repo.apply_prepared_batch(job.id, updates)
    second = repo.apply_prepared_batch(job.id, updates)

    assert first.prepared == 2
    assert second.prepared == 2
    assert first.status == "preparing"
    assert repo.count_items_by_status(job.id) == {"preparing": 1, "queued": 2}


def test_last_prepared_batch_moves_job_to_queued(repo, target):
    job, _ = repo.create_job(target.id, [], 3, 1.0)
    job = _prepare_all(repo, job)
    assert job.prepared == 3
    assert job.status == "queued"
    assert repo.list_items(job.id)[0].payload == {"entry.1": "n0"}


def test_mark_prepared_complete(repo, target):
    job, _ = repo.create_job(target.id, [], 2, 1.0)
    job = repo.mark_prepared_complete(job.id)
    assert job.prepared == 2
    assert job.status == "queued"


# process
def test_claim_and_record_results(repo, target):
    job, _ = repo.create_job(target.id, [], 3, 1.0)
    _prepare_all(repo, job)

    claimed = repo.claim_queued_items(job.id, 2)
    assert [item.index for item in claimed] == [0, 1]
    assert repo.count_items_by_status(job.id) == {"queued": 1, "running": 2}

    results = [
        ItemResult(item_id=claimed[0].id, status="completed", response={"accepted": True}),
        ItemResult(item_id=claimed[1].id, status="failed", error="Response not accepted (HTTP 200)"),
    ]
    job = repo.record_item_results(job.id, results)
    assert (job.submitted, job.failed) == (1, 1)

    # duplicate delivery of the same results changes nothing
    job = repo.record_item_results(job.id, results)
    assert (job.submitted, job.failed) == (1, 1)

    failed = [item for item in repo.list_items(job.id) if item.status == "failed"][0]
    assert failed.error == "Response not accepted (HTTP 200)"
    assert failed.completed_at is not None


def test_finalize_completes_and_releases_target(repo, target):
    job, _ = repo.create_job(target.id, [], 2, 1.0)
    _prepare_all(repo, job)
    claimed = repo.claim_queued_items(job.id, 2)
    repo.record_item_results(job.id, [ItemResult(item_id=i.id, status="completed") for i in claimed])

    job = repo.finalize_job(job.id)

    assert job.status == "completed"
    assert job.finished_at is not None
    assert repo.get_target(target.id).active_job_id is None


def test_finalize_with_failures_is_failed(repo, target):
    job, _ = repo.create_job(target.id, [], 2, 1.0)
    _prepare_all(repo, job)
    first, second = repo.claim_queued_items(job.id, 2)
    repo.record_item_results(
        job.id,
        [ItemResult(item_id=first.id, status="completed"), ItemResult(item_id=second.id, status="failed")],
    )
    assert repo.finalize_job(job.id).status == "failed"


def test_finalize_leaves_unfinished_job_active(repo, target):
    job, _ = repo.create_job(target.id, [], 2, 1.0)
    _prepare_all(repo, job)
    job = repo.finalize_job(job.id)
    assert job.status == "queued"
    assert repo.get_target(target.id).active_job_id == job.id


def test_fail_job_is_guarded_and_releases(repo, target):
    job, _ = repo.create_job(target.id, [], 1, 1.0)

    assert repo.fail_job(job.id, "Generation credentials are missing.")
    assert not repo.fail_job(job.id, "second failure")

    stored = repo.get_job(job.id)
    assert stored.status == "failed"
    assert stored.error == "Generation credentials are missing."
    assert repo.get_target(target.id).active_job_id is None
    assert not repo.set_job_status(job.id, "running")


def test_requeue_running_items(repo, target):
    job, _ = repo.create_job(target.id, [], 3, 1.0)
    _prepare_all(repo, job)
    repo.claim_queued_items(job.id, 2)

    assert repo.requeue_running_items(job.id) == 2
    assert repo.count_items_by_status(job.id) == {"queued": 3}


def test_latest_job(repo, target):
    assert repo.get_latest_job(target.id) is None
    job, _ = repo.create_job(target.id, [], 1, 1.0)
    assert repo.get_latest_job(target.id).id == job.id
