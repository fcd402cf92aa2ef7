from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import CASE_ID, FakeExtractor, add_documents, run
from coldcase.core.errors import JobNotFoundError
from coldcase.db.models import JobStatus, UnitStatus
from coldcase.domain.records import JobRecord, UnitRecord
from coldcase.runtime.state import load_state
from coldcase.runtime.store import new_id
from coldcase.runtime.tracker import ProgressTracker


def _job(store, *, status=JobStatus.RUNNING, case_id=CASE_ID, units=()):
    job = JobRecord(id=new_id(), case_id=case_id, status=status, total_units=len(units))
    run(store.insert_job(job))
    run(
        store.insert_units(
            [UnitRecord(id=new_id(), job_id=job.id, unit_index=i, status=s) for i, s in enumerate(units)]
        )
    )
    return job.id


def _touch(store, job_id, when):
    run(store.update_job(job_id, {"updated_at": when}))


@pytest.fixture
def tracker(store, clock):
    return ProgressTracker(store, clock=clock, poll_interval_s=0.01)


def test_find_stuck_threshold_boundary(store, clock, tracker):
    threshold = timedelta(hours=2)
    stale = _job(store)
    fresh = _job(store)
    _touch(store, stale, clock() - threshold - timedelta(seconds=1))
    _touch(store, fresh, clock() - threshold + timedelta(seconds=1))

    stuck = run(tracker.find_stuck(2))

    assert [j.id for j in stuck] == [stale]


def test_find_stuck_ignores_jobs_that_are_not_running(store, clock, tracker):
    pending = _job(store, status=JobStatus.PENDING)
    _touch(store, pending, clock() - timedelta(hours=5))

    assert run(tracker.find_stuck(2)) == []


def test_cleanup_stuck_marks_job_and_open_units_failed(store, clock, tracker):
    job_id = _job(store, units=[UnitStatus.COMPLETED, UnitStatus.PENDING, UnitStatus.PROCESSING])
    _touch(store, job_id, clock() - timedelta(hours=3))

    result = run(tracker.cleanup_stuck(2))

    assert result.count == 1
    assert result.job_ids == [job_id]
    job = run(store.get_job(job_id))
    assert job.status == JobStatus.FAILED
    assert job.completed_at is not None
    assert job.error_summary["kind"] == "stuck"
    assert job.error_summary["threshold_hours"] == 2
    assert job.failed_units == 2
    statuses = [u.status for u in run(store.list_units(job_id))]
    assert statuses == [UnitStatus.COMPLETED, UnitStatus.FAILED, UnitStatus.FAILED]
    assert run(tracker.find_stuck(2)) == []


def test_delete_stuck_removes_units_then_job(store, clock, tracker):
    stale = _job(store, units=[UnitStatus.PENDING, UnitStatus.PENDING])
    keep = _job(store, units=[UnitStatus.PENDING])
    _touch(store, stale, clock() - timedelta(hours=3))

    result = run(tracker.delete_stuck(2))

    assert result.job_ids == [stale]
    assert run(store.get_job(stale)) is None
    assert run(store.list_units(stale)) == []
    assert run(store.get_job(keep)) is not None


def test_cancel(store, tracker):
    job_id = _job(store, units=[UnitStatus.COMPLETED, UnitStatus.PENDING])

    assert run(tracker.cancel(job_id)) is True

    job = run(store.get_job(job_id))
    assert job.status == JobStatus.CANCELLED
    assert job.completed_at is not None
    assert [u.status for u in run(store.list_units(job_id))] == [UnitStatus.COMPLETED, UnitStatus.SKIPPED]


def test_cancel_missing_or_terminal_job_returns_false(store, tracker):
    done = _job(store, status=JobStatus.COMPLETED)

    assert run(tracker.cancel("missing")) is False
    assert run(tracker.cancel(done)) is False
    assert run(store.get_job(done)).status == JobStatus.COMPLETED


def test_retry_failed_units(store, tracker):
    job_id = _job(store, status=JobStatus.PENDING, units=[UnitStatus.FAILED, UnitStatus.COMPLETED, UnitStatus.FAILED])
    run(store.update_job(job_id, {"failed_units": 2}))

    assert run(tracker.retry_failed_units(job_id)) == 2

    job = run(store.get_job(job_id))
    assert job.status == JobStatus.RUNNING
    assert job.failed_units == 0
    statuses = [u.status for u in run(store.list_units(job_id))]
    assert statuses == [UnitStatus.PENDING, UnitStatus.COMPLETED, UnitStatus.PENDING]


def test_retry_with_nothing_failed_returns_zero(store, tracker):
    running = _job(store, units=[UnitStatus.COMPLETED])
    failed = _job(store, status=JobStatus.FAILED, units=[UnitStatus.FAILED])

    assert run(tracker.retry_failed_units(running)) == 0
    assert run(tracker.retry_failed_units(failed)) == 0
    assert run(store.get_job(failed)).status == JobStatus.FAILED

    with pytest.raises(JobNotFoundError):
        run(tracker.retry_failed_units("missing"))


def test_retried_units_are_extracted_again(store, make_runner):
    add_documents(store, 3)
    flaky = FakeExtractor(failing={"doc_01.txt"})
    runner = make_runner(extractor=flaky, extract_batch_size=2)
    job_id = run(runner.init_analysis(CASE_ID)).job_id
    run(runner.continue_analysis(job_id))

    assert run(ProgressTracker(store).retry_failed_units(job_id)) == 1
    flaky.failing.clear()
    result = run(runner.continue_analysis(job_id))

    assert result.phase == "analyze"
    assert len(run(store.list_units(job_id, [UnitStatus.COMPLETED]))) == 3
    assert result.warnings is None
    assert load_state(run(store.get_job(job_id)).metadata["chunked_state"]).extraction_errors == []


def test_retry_after_extraction_has_moved_on_changes_nothing(store, make_runner):
    add_documents(store, 3)
    runner = make_runner(extractor=FakeExtractor(failing={"doc_01.txt"}), extract_batch_size=10)
    job_id = run(runner.init_analysis(CASE_ID)).job_id
    assert run(runner.continue_analysis(job_id)).phase == "analyze"

    assert run(ProgressTracker(store).retry_failed_units(job_id)) == 0
    assert len(run(store.list_units(job_id, [UnitStatus.FAILED]))) == 1
    assert run(store.get_job(job_id)).failed_units == 1

    result = run(runner.continue_analysis(job_id))
    while not result.done:
        result = run(runner.continue_analysis(job_id))

    job = run(store.get_job(job_id))
    assert job.status == JobStatus.COMPLETED
    assert run(store.list_units(job_id, [UnitStatus.PENDING])) == []
    assert job.failed_units == 1
    assert job.completed_units == job.total_units - 1


def test_list_jobs_and_active(store, clock, tracker):
    old = _job(store, status=JobStatus.COMPLETED)
    clock.advance(minutes=1)
    newer = _job(store)
    clock.advance(minutes=1)
    _job(store, case_id="other-case")

    assert [j.id for j in run(tracker.list_jobs(CASE_ID))] == [newer, old]
    assert [j.id for j in run(tracker.list_active(CASE_ID))] == [newer]


def test_wait_for_completion_times_out_with_none(store, tracker):
    job_id = _job(store)

    assert run(tracker.wait_for_completion(job_id, timeout_s=0.05)) is None


def test_wait_for_completion_returns_terminal_job(store, tracker):
    job_id = _job(store)

    async def scenario():
        waiter = asyncio.create_task(tracker.wait_for_completion(job_id, timeout_s=2))
        await asyncio.sleep(0.02)
        await tracker.cancel(job_id)
        return await waiter

    job = run(scenario())
    assert job.status == JobStatus.CANCELLED


def test_summary_counts_units(store, tracker):
    job_id = _job(store, units=[UnitStatus.COMPLETED, UnitStatus.COMPLETED, UnitStatus.FAILED, UnitStatus.PENDING])
    units = run(store.list_units(job_id))
    run(store.update_unit(units[0].id, {"characters": 100, "confidence": 0.9}))
    run(store.update_unit(units[1].id, {"characters": 50, "confidence": 0.7}))
    run(store.update_unit(units[2].id, {"error_log": "unreadable scan"}))

    summary = run(tracker.get_summary(job_id))

    assert summary.units.total_units == 4
    assert summary.units.completed_units == 2
    assert summary.units.failed_units == 1
    assert summary.units.pending_units == 1
    assert summary.units.total_characters == 150
    assert summary.units.avg_confidence == pytest.approx(0.8)
    assert summary.units.progress_pct == 50
    assert [u.error_log for u in summary.failed_units] == ["unreadable scan"]
    assert run(tracker.get_summary("missing")) is None
