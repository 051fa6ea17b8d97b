from pathlib import Path
from threading import Barrier, Thread
from typing import Callable

import pytest
from sqlalchemy import create_engine

from scan_worker.store import JobStateError, SqlJobStore
from scan_worker.types import Finding, Job


def _finding(title: str, severity: str = "medium") -> Finding:
    return Finding(title=title, severity=severity, description="", resource="https://example.com")


def test_claim_next_queued_returns_none_when_empty(store: SqlJobStore) -> None:
    assert store.claim_next_queued() is None


def test_claim_takes_oldest_queued_job_and_marks_it_running(store: SqlJobStore, seed_job) -> None:
    seed_job("done", status="completed")
    seed_job("first")
    seed_job("second")

    job = store.claim_next_queued()

    assert job is not None
    assert job.id == "first"
    assert job.status == "running"
    assert job.started_at is not None
    assert store.get_job("second").status == "queued"


def test_claim_skips_jobs_already_running(store: SqlJobStore, seed_job) -> None:
    seed_job("busy", status="running")

    assert store.claim_next_queued() is None


def test_try_claim_fails_when_job_is_no_longer_queued(store: SqlJobStore, seed_job) -> None:
    seed_job("job-1")

    assert store.try_claim("job-1") is not None
    assert store.try_claim("job-1") is None


def _race(db_path: Path, workers: int, claim: Callable[[SqlJobStore], Job | None]) -> list[Job | None]:
    barrier = Barrier(workers)
    results: list[Job | None] = []
    errors: list[BaseException] = []

    def _worker() -> None:
        worker_engine = create_engine(
            f"sqlite+pysqlite:///{db_path}",
            connect_args={"timeout": 30},
        )
        try:
            worker_store = SqlJobStore(worker_engine)
            barrier.wait()
            results.append(claim(worker_store))
        except BaseException as exc:
            errors.append(exc)
        finally:
            worker_engine.dispose()

    threads = [Thread(target=_worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    return results


def test_concurrent_claims_have_exactly_one_winner(db_path: Path, engine, seed_job) -> None:
    seed_job("contended")

    results = _race(db_path, 8, lambda worker_store: worker_store.try_claim("contended"))

    assert sorted(result is not None for result in results) == [False] * 7 + [True]


def test_concurrent_polls_claim_the_queued_job_once(db_path: Path, engine, seed_job) -> None:
    seed_job("contended")

    results = _race(db_path, 8, lambda worker_store: worker_store.claim_next_queued())

    winners = [result for result in results if result is not None]
    assert len(results) == 8
    assert [job.id for job in winners] == ["contended"]


def test_concurrent_polls_never_hand_out_a_job_twice(db_path: Path, engine, seed_job) -> None:
    for index in range(3):
        seed_job(f"job-{index}")

    results = _race(db_path, 8, lambda worker_store: worker_store.claim_next_queued())

    claimed_ids = sorted(result.id for result in results if result is not None)
    assert claimed_ids == ["job-0", "job-1", "job-2"]
    assert results.count(None) == 5


def test_append_findings_are_listed_in_arrival_order(store: SqlJobStore, seed_job) -> None:
    seed_job("job-1")
    store.try_claim("job-1")

    for title in ("a", "b", "c"):
        store.append_finding("job-1", _finding(title))

    findings = store.list_findings("job-1")
    assert [finding.title for finding in findings] == ["a", "b", "c"]
    assert [finding.sequence for finding in findings] == [1, 2, 3]


def test_replace_findings_discards_previous_run(store: SqlJobStore, seed_job) -> None:
    seed_job("job-x")
    for index in range(5):
        store.append_finding("job-x", _finding(f"old-{index}"))

    store.replace_findings("job-x", [])
    store.replace_findings("job-x", [])
    assert store.list_findings("job-x") == []

    store.replace_findings("job-x", [_finding("new-1"), _finding("new-2")])
    assert [finding.title for finding in store.list_findings("job-x")] == ["new-1", "new-2"]


def test_finalize_writes_terminal_state_once(store: SqlJobStore, seed_job) -> None:
    seed_job("job-1")
    store.try_claim("job-1")

    store.finalize(
        "job-1",
        status="completed",
        findings_count=3,
        artifact_path="/artifacts/job-1/findings.jsonl",
        artifact_hash="ab" * 32,
        error_message=None,
    )

    job = store.get_job("job-1")
    assert job.status == "completed"
    assert job.findings_count == 3
    assert job.artifact_hash == "ab" * 32
    assert job.finished_at is not None

    with pytest.raises(JobStateError):
        store.finalize(
            "job-1",
            status="failed",
            findings_count=0,
            artifact_path=None,
            artifact_hash=None,
            error_message="second finalize",
        )
    assert store.get_job("job-1").status == "completed"


def test_finalize_rejects_queued_job_and_non_terminal_status(store: SqlJobStore, seed_job) -> None:
    seed_job("job-1")

    with pytest.raises(JobStateError):
        store.finalize(
            "job-1",
            status="failed",
            findings_count=0,
            artifact_path=None,
            artifact_hash=None,
            error_message="never claimed",
        )

    store.try_claim("job-1")
    with pytest.raises(JobStateError):
        store.finalize(
            "job-1",
            status="queued",
            findings_count=0,
            artifact_path=None,
            artifact_hash=None,
            error_message=None,
        )
