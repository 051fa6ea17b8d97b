from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from pathlib import Path
import threading

from scan_worker.artifacts import (
    artifact_path_for,
    compute_artifact_hash,
    evidence_ref,
    prepare_artifact_dir,
)
from scan_worker.sandbox import SandboxHandle, SandboxManager
from scan_worker.store import JobStateError, JobStore
from scan_worker.stream_parser import DEFAULT_MAX_LINE_BYTES, iter_records
from scan_worker.types import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    SUPPORTED_JOB_KINDS,
    Job,
    ScanOutcome,
    severity_rank,
)

logger = logging.getLogger(__name__)

# Extra time allowed for the sandbox to report its exit status after a forced stop.
_WAIT_MARGIN_SECONDS = 30.0


@dataclass
class _RunState:
    findings_count: int = 0
    highest_severity: str | None = None

    def record(self, severity: str) -> None:
        self.findings_count += 1
        if self.highest_severity is None or severity_rank(severity) > severity_rank(self.highest_severity):
            self.highest_severity = severity


class _Deadline:
    """Timer that force-stops the sandbox once a scan runs past its allotted time.

    The timer is armed before the sandbox starts so slow provisioning counts
    against the deadline too; if it fires before a handle is attached, the
    sandbox is stopped as soon as it is.
    """

    def __init__(self, *, sandbox: SandboxManager, seconds: float, grace_seconds: int) -> None:
        self._sandbox = sandbox
        self._grace_seconds = grace_seconds
        self._handle: SandboxHandle | None = None
        self._lock = threading.Lock()
        self.seconds = seconds
        self.expired = threading.Event()
        self._timer = threading.Timer(seconds, self._fire)
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()

    def attach(self, handle: SandboxHandle) -> None:
        with self._lock:
            self._handle = handle
            already_expired = self.expired.is_set()
        if already_expired:
            self._stop(handle)

    def _fire(self) -> None:
        with self._lock:
            self.expired.set()
            handle = self._handle
        logger.warning("scan deadline reached after=%.0fs", self.seconds)
        if handle is not None:
            self._stop(handle)

    def _stop(self, handle: SandboxHandle) -> None:
        logger.warning("stopping sandbox handle=%s grace=%ds", handle.id, self._grace_seconds)
        try:
            self._sandbox.stop(handle, self._grace_seconds)
        except Exception:
            logger.exception("failed to stop timed-out sandbox handle=%s", handle.id)


def _describe_failure(exit_code: int, has_output: bool) -> str | None:
    if exit_code != 0:
        message = f"scanner exited with code {exit_code}"
        if not has_output:
            message += " (no output produced)"
        return message
    if not has_output:
        return "scan completed but no output produced"
    return None


class ScanCoordinator:
    def __init__(
        self,
        *,
        store: JobStore,
        sandbox: SandboxManager,
        artifacts_root: Path,
        scan_timeout_seconds: float,
        stop_grace_seconds: int = 10,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
    ) -> None:
        self._store = store
        self._sandbox = sandbox
        self._artifacts_root = artifacts_root
        self._scan_timeout_seconds = scan_timeout_seconds
        self._stop_grace_seconds = stop_grace_seconds
        self._max_line_bytes = max_line_bytes

    def run(self, job: Job) -> ScanOutcome:
        """Drive a claimed job to a terminal state. Never raises."""
        state = _RunState()
        try:
            outcome = self._execute(job, state)
        except Exception as exc:
            logger.exception("scan failed job_id=%s", job.id)
            outcome = ScanOutcome(
                status=STATUS_FAILED,
                findings_count=state.findings_count,
                artifact_path=None,
                artifact_hash=None,
                error_message=str(exc) or type(exc).__name__,
            )

        try:
            self._store.finalize(
                job.id,
                status=outcome.status,
                findings_count=outcome.findings_count,
                artifact_path=outcome.artifact_path,
                artifact_hash=outcome.artifact_hash,
                error_message=outcome.error_message,
            )
        except JobStateError:
            logger.exception("refused to finalize job_id=%s", job.id)
            return outcome
        except Exception:
            logger.exception("finalize failed job_id=%s; job stays running", job.id)
            return outcome

        logger.info(
            "job finalized job_id=%s status=%s findings=%d error=%s",
            job.id,
            outcome.status,
            outcome.findings_count,
            outcome.error_message,
        )
        return outcome

    def _execute(self, job: Job, state: _RunState) -> ScanOutcome:
        if job.kind not in SUPPORTED_JOB_KINDS:
            return ScanOutcome(
                status=STATUS_FAILED,
                findings_count=0,
                artifact_path=None,
                artifact_hash=None,
                error_message=f"Unknown scan type: {job.kind}",
            )

        self._store.replace_findings(job.id, [])
        job_dir = prepare_artifact_dir(self._artifacts_root, job.id)
        artifact_path = artifact_path_for(self._artifacts_root, job.id)
        logger.info("starting scan job_id=%s target=%s artifact=%s", job.id, job.target, artifact_path)

        deadline = _Deadline(
            sandbox=self._sandbox,
            seconds=self._scan_timeout_seconds,
            grace_seconds=self._stop_grace_seconds,
        )
        deadline.start()
        try:
            handle = self._sandbox.start(job.target, job_dir)
        except BaseException:
            deadline.cancel()
            raise

        try:
            deadline.attach(handle)
            with artifact_path.open("wb") as artifact:
                for record in iter_records(
                    self._sandbox.stream_output(handle),
                    target=job.target,
                    max_line_bytes=self._max_line_bytes,
                ):
                    offset = artifact.tell()
                    artifact.write(record.raw + b"\n")
                    artifact.flush()
                    finding = replace(record.finding, evidence_ref=evidence_ref(artifact_path, offset))
                    self._store.append_finding(job.id, finding)
                    state.record(finding.severity)

            exit_code = self._sandbox.wait(
                handle,
                timeout=self._scan_timeout_seconds + self._stop_grace_seconds + _WAIT_MARGIN_SECONDS,
            )
        finally:
            deadline.cancel()
            try:
                self._sandbox.cleanup(handle)
            except Exception:
                logger.exception("sandbox cleanup failed job_id=%s handle=%s", job.id, handle.id)

        logger.info(
            "scanner exited job_id=%s exit_code=%d findings=%d highest_severity=%s",
            job.id,
            exit_code,
            state.findings_count,
            state.highest_severity,
        )

        has_output = artifact_path.stat().st_size > 0
        artifact_hash = compute_artifact_hash(artifact_path) if has_output else None

        if deadline.expired.is_set():
            error_message: str | None = (
                f"scan exceeded deadline of {self._scan_timeout_seconds:g} seconds"
            )
        else:
            error_message = _describe_failure(exit_code, has_output)

        return ScanOutcome(
            status=STATUS_FAILED if error_message else STATUS_COMPLETED,
            findings_count=state.findings_count,
            artifact_path=str(artifact_path) if has_output else None,
            artifact_hash=artifact_hash,
            error_message=error_message,
        )
