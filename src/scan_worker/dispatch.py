from __future__ import annotations

import enum
import logging
from threading import Event
from typing import Protocol

from scan_worker.store import JobStore
from scan_worker.types import Job, ScanOutcome

logger = logging.getLogger(__name__)


class WorkerState(str, enum.Enum):
    IDLE = "idle"
    CLAIMED = "claimed"
    RUNNING = "running"
    FINALIZED = "finalized"


class JobRunner(Protocol):
    def run(self, job: Job) -> ScanOutcome: ...


class DispatchLoop:
    """Single-worker poll loop: claim the oldest queued job, run it, repeat.

    Jobs are processed strictly one at a time. The only coordination with
    other worker replicas is the store's conditional claim.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        runner: JobRunner,
        poll_seconds: float,
        worker_id: str = "worker-1",
    ) -> None:
        self._store = store
        self._runner = runner
        self._poll_seconds = poll_seconds
        self._worker_id = worker_id
        self.state = WorkerState.IDLE
        self.current_job_id: str | None = None
        self.processed_jobs = 0

    def _transition(self, state: WorkerState, job_id: str | None = None) -> None:
        logger.debug(
            "worker state worker_id=%s %s -> %s job_id=%s",
            self._worker_id,
            self.state.value,
            state.value,
            job_id,
        )
        self.state = state
        self.current_job_id = job_id

    def run_once(self) -> bool:
        """Poll for and process at most one job.

        Returns True when a job was claimed and processed. Store errors while
        polling propagate to the caller.
        """
        job = self._store.claim_next_queued()
        if job is None:
            return False

        self._transition(WorkerState.CLAIMED, job.id)
        logger.info(
            "job claimed worker_id=%s job_id=%s kind=%s target=%s",
            self._worker_id,
            job.id,
            job.kind,
            job.target,
        )

        self._transition(WorkerState.RUNNING, job.id)
        try:
            outcome = self._runner.run(job)
        except Exception:
            # Runners are not supposed to raise; the job stays in the store for an operator.
            logger.exception("job runner raised job_id=%s", job.id)
        else:
            logger.info("job done job_id=%s status=%s", job.id, outcome.status)

        self._transition(WorkerState.FINALIZED, job.id)
        self.processed_jobs += 1
        self._transition(WorkerState.IDLE)
        return True

    def run_forever(self, stop_event: Event) -> None:
        logger.info(
            "worker started worker_id=%s poll_seconds=%s",
            self._worker_id,
            self._poll_seconds,
        )
        while not stop_event.is_set():
            try:
                processed = self.run_once()
            except Exception as exc:
                logger.warning(
                    "poll failed worker_id=%s error=%r; retrying in %.1fs",
                    self._worker_id,
                    exc,
                    self._poll_seconds,
                )
                self._transition(WorkerState.IDLE)
                stop_event.wait(self._poll_seconds)
                continue

            if not processed:
                stop_event.wait(self._poll_seconds)

        logger.info("worker stopped worker_id=%s processed=%d", self._worker_id, self.processed_jobs)
