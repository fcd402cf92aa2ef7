from __future__ import annotations

import json
import math
import random

import pytest

from conftest import CASE_ID, FakeCompletionClient, FakeExtractor, add_documents, findings_payload, run
from coldcase.core.errors import EmptyInputError, JobNotFoundError, MalformedResponseError
from coldcase.db.models import AuditEventType, JobStatus, UnitStatus
from coldcase.runtime.state import CompleteState, FailedState, load_state
from coldcase.runtime.tracker import ProgressTracker


def _state(store, job_id):
    job = run(store.get_job(job_id))
    return load_state(job.metadata["chunked_state"])


def _drive(runner, job_id, limit=100):
    results = []
    for _ in range(limit):
        result = run(runner.continue_analysis(job_id))
        results.append(result)
        if result.done:
            return results
    raise AssertionError("job did not finish")


def test_init_with_no_documents_raises_and_creates_no_job(store, make_runner):
    runner = make_runner()

    with pytest.raises(EmptyInputError):
        run(runner.init_analysis(CASE_ID))

    assert run(store.count_jobs()) == 0


def test_continue_unknown_job_raises(make_runner):
    with pytest.raises(JobNotFoundError):
        run(make_runner().continue_analysis("missing"))


def test_pre_extracted_case_skips_extraction(store, make_runner):
    add_documents(store, 10, extracted=True)
    extractor = FakeExtractor()
    runner = make_runner(extractor=extractor, batch_size=25)

    started = run(runner.init_analysis(CASE_ID))

    assert started.phase == "analyze"
    assert _state(store, started.job_id).total_batches == 1
    job = run(store.get_job(started.job_id))
    assert job.status == JobStatus.RUNNING
    assert job.total_units == 10 + 1 + 1

    step = run(runner.continue_analysis(started.job_id))
    assert step.phase == "consolidate"
    assert step.done is False
    assert extractor.calls == []


def test_partial_extraction_failure_still_reaches_analysis(store, make_runner):
    add_documents(store, 10)
    extractor = FakeExtractor(failing={"doc_02.txt", "doc_05.txt", "doc_07.txt"})
    runner = make_runner(extractor=extractor, extract_batch_size=10)
    started = run(runner.init_analysis(CASE_ID))
    assert started.phase == "extract"

    step = run(runner.continue_analysis(started.job_id))

    assert step.phase == "analyze"
    assert step.warnings == ["3 documents had extraction issues"]
    state = _state(store, started.job_id)
    assert state.extracted_count == 7
    assert len(state.extraction_errors) == 3
    assert any("doc_05.txt" in e for e in state.extraction_errors)

    job = run(store.get_job(started.job_id))
    assert job.failed_units == 3
    failed = run(store.list_units(started.job_id, [UnitStatus.FAILED]))
    assert {u.error_log for u in failed} == {"No text could be extracted"}

    results = _drive(runner, started.job_id)
    assert results[-1].phase == "complete"
    job = run(store.get_job(started.job_id))
    assert job.status == JobStatus.COMPLETED
    assert job.completed_units == job.total_units - 3


def test_extraction_runs_in_sub_batches(store, make_runner):
    add_documents(store, 25)
    extractor = FakeExtractor()
    runner = make_runner(extractor=extractor, extract_batch_size=10)
    job_id = run(runner.init_analysis(CASE_ID)).job_id

    first = run(runner.continue_analysis(job_id))
    assert first.phase == "extract"
    assert first.message == "Extracted 10/25 documents..."
    assert len(extractor.calls) == 10

    run(runner.continue_analysis(job_id))
    third = run(runner.continue_analysis(job_id))
    assert third.phase == "analyze"
    assert len(extractor.calls) == 25
    assert all(d.has_cached_text for d in run(store.list_documents(CASE_ID)))


@pytest.mark.parametrize("extract_batch_size", [3, 10, 30])
def test_analysis_makes_one_call_per_batch(store, make_runner, completion, extract_batch_size):
    add_documents(store, 30)
    runner = make_runner(batch_size=4, extract_batch_size=extract_batch_size)
    job_id = run(runner.init_analysis(CASE_ID)).job_id

    analyze_calls = 0
    for _ in range(100):
        before = _state(store, job_id).phase
        result = run(runner.continue_analysis(job_id))
        if before == "analyze":
            analyze_calls += 1
        if result.phase == "consolidate":
            break

    assert analyze_calls == math.ceil(30 / 4)
    assert len(completion.calls) == math.ceil(30 / 4)
    assert "batch 8 of 8" in completion.calls[-1]["prompt"]


def test_progress_is_monotonic_and_bounded(store, make_runner):
    add_documents(store, 12)
    runner = make_runner(batch_size=5, extract_batch_size=4)
    started = run(runner.init_analysis(CASE_ID))

    results = [started, *_drive(runner, started.job_id)]

    currents = [r.progress.current for r in results]
    assert currents == sorted(currents)
    assert all(0 <= r.progress.percentage <= 100 for r in results)
    assert results[-1].progress.current == results[-1].progress.total == 12 + 3 + 1
    assert results[-1].progress.percentage == 100


def test_later_batches_receive_prior_context(store, make_runner, completion):
    add_documents(store, 4, extracted=True)
    runner = make_runner(batch_size=2)
    job_id = run(runner.init_analysis(CASE_ID)).job_id

    run(runner.continue_analysis(job_id))
    run(runner.continue_analysis(job_id))

    assert "CONTEXT FROM PREVIOUS BATCHES" not in completion.calls[0]["prompt"]
    assert "Known persons: Ann Vale (victim)" in completion.calls[1]["prompt"]


def test_completed_job_is_idempotent_on_repoll(store, make_runner, completion):
    add_documents(store, 3, extracted=True)
    runner = make_runner()
    job_id = run(runner.init_analysis(CASE_ID)).job_id
    final = _drive(runner, job_id)[-1]

    snapshot = run(store.get_job(job_id))
    events = len(run(store.list_events(job_id)))
    calls = len(completion.calls)

    for _ in range(2):
        again = run(runner.continue_analysis(job_id))
        assert again.done is True
        assert again.phase == "complete"
        assert again.findings == final.findings

    assert run(store.get_job(job_id)) == snapshot
    assert len(run(store.list_events(job_id))) == events
    assert len(completion.calls) == calls


def test_completion_persists_analysis_and_timeline(store, make_runner):
    add_documents(store, 2, extracted=True)
    runner = make_runner()
    job_id = run(runner.init_analysis(CASE_ID)).job_id

    final = _drive(runner, job_id)[-1]

    assert final.message.startswith("Analysis complete: 1 events, 1 persons, 0 conflicts")
    analyses = run(store.list_analyses(CASE_ID))
    assert len(analyses) == 1
    assert analyses[0]["analysis_type"] == "timeline_and_conflicts"
    assert analyses[0]["confidence_score"] == 0.85
    assert "personMentions" in analyses[0]["analysis_data"]

    rows = run(store.list_timeline_events(CASE_ID))
    assert len(rows) == 1
    assert rows[0]["event_type"] == "witness_account"
    assert rows[0]["time_precision"] == "exact"
    assert rows[0]["title"] == "Victim seen near the harbour"

    state = _state(store, job_id)
    assert isinstance(state, CompleteState)
    kinds = [e.event_type for e in run(store.list_events(job_id))]
    assert kinds[0] == AuditEventType.JOB_CREATED
    assert kinds.count(AuditEventType.PHASE_CHANGED) == 2


def test_malformed_gateway_output_fails_the_job(store, make_runner):
    add_documents(store, 3, extracted=True)
    client = FakeCompletionClient(["I am unable to produce JSON today."] * 4)
    client.default = "still not json"
    runner = make_runner(client=client)
    job_id = run(runner.init_analysis(CASE_ID)).job_id

    with pytest.raises(MalformedResponseError) as excinfo:
        run(runner.continue_analysis(job_id))

    assert "analyze-batch" in str(excinfo.value)
    job = run(store.get_job(job_id))
    assert job.status == JobStatus.FAILED
    assert job.completed_at is not None
    assert "analyze-batch" in job.error_summary["message"]
    assert "Traceback" not in job.error_summary["message"]
    state = _state(store, job_id)
    assert isinstance(state, FailedState)
    assert state.failed_phase == "analyze"

    again = run(runner.continue_analysis(job_id))
    assert again.done is True
    assert again.phase == "failed"
    assert "analyze-batch" in again.error


def test_consolidation_failure_keeps_accumulated_findings(store, make_runner):
    add_documents(store, 2, extracted=True)
    client = FakeCompletionClient([json.dumps(findings_payload()), "garbage", "more garbage"])
    runner = make_runner(client=client)
    job_id = run(runner.init_analysis(CASE_ID)).job_id
    run(runner.continue_analysis(job_id))

    with pytest.raises(MalformedResponseError):
        run(runner.continue_analysis(job_id))

    state = _state(store, job_id)
    assert isinstance(state, FailedState)
    assert state.failed_phase == "consolidate"
    assert len(state.accumulated_timeline) == 1
    assert not hasattr(state, "final_analysis")
    assert run(store.list_analyses(CASE_ID)) == []


def test_consolidation_without_gateway_falls_back_to_local_dedup(store, make_runner):
    add_documents(store, 2, extracted=True)
    duplicate = findings_payload(
        personMentions=[
            {"name": "A. Vale", "aliases": ["Ann Vale"], "mentionedBy": ["doc_01.txt"], "suspicionScore": 0.4}
        ]
    )
    client = FakeCompletionClient([json.dumps(findings_payload()), json.dumps(duplicate)])
    job_id = run(make_runner(client=client, batch_size=1).init_analysis(CASE_ID)).job_id
    runner = make_runner(client=client, batch_size=1)
    run(runner.continue_analysis(job_id))
    run(runner.continue_analysis(job_id))
    assert _state(store, job_id).phase == "consolidate"

    final = run(make_runner(analysis=False).continue_analysis(job_id))

    assert final.done is True
    assert len(final.findings.timeline) == 1
    assert len(final.findings.person_mentions) == 1
    person = final.findings.person_mentions[0]
    assert person.mention_count == 2
    assert person.suspicion_score == 0.4
    assert person.role == "victim"


def test_empty_findings_skip_the_consolidation_call(store, make_runner):
    add_documents(store, 2, extracted=True)
    empty = json.dumps({"timeline": [], "personMentions": []})
    client = FakeCompletionClient([empty])
    runner = make_runner(client=client)
    job_id = run(runner.init_analysis(CASE_ID)).job_id

    final = _drive(runner, job_id)[-1]

    assert final.findings.is_empty()
    assert len(client.calls) == 1


def test_cancelled_job_stops_further_work(store, make_runner, completion):
    add_documents(store, 20)
    runner = make_runner(extract_batch_size=5)
    job_id = run(runner.init_analysis(CASE_ID)).job_id
    run(runner.continue_analysis(job_id))

    assert run(ProgressTracker(store).cancel(job_id)) is True
    result = run(runner.continue_analysis(job_id))

    assert result.done is True
    assert result.message == "Analysis cancelled."
    assert completion.calls == []
    skipped = run(store.list_units(job_id, [UnitStatus.SKIPPED]))
    assert len(skipped) == 15


def _allowed(before, after):
    return before == after or after == "failed" or (before, after) in {
        ("extract", "analyze"),
        ("analyze", "consolidate"),
        ("consolidate", "complete"),
    }


@pytest.mark.parametrize("seed", range(12))
def test_phases_only_move_forward_or_to_failed(store, make_runner, seed):
    rng = random.Random(seed)
    add_documents(store, rng.randint(1, 12))
    failing = {f"doc_{i:02d}.txt" for i in range(12) if rng.random() < 0.3}
    responses = [json.dumps(findings_payload()) if rng.random() < 0.8 else "not json" for _ in range(20)]
    runner = make_runner(
        extractor=FakeExtractor(failing=failing),
        client=FakeCompletionClient(responses),
        batch_size=rng.randint(1, 5),
        extract_batch_size=rng.randint(1, 6),
    )
    job_id = run(runner.init_analysis(CASE_ID)).job_id

    phases = [_state(store, job_id).phase]
    for _ in range(100):
        try:
            result = run(runner.continue_analysis(job_id))
        except Exception:
            phases.append(_state(store, job_id).phase)
            break
        phases.append(_state(store, job_id).phase)
        if result.done:
            break

    assert phases[-1] in {"complete", "failed"}
    for before, after in zip(phases, phases[1:]):
        assert _allowed(before, after), phases
