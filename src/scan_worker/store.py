from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol, Sequence
import uuid

from sqlalchemy import func, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session

from scan_worker.models import FindingRecord, ScanJobRecord
from scan_worker.types import (
    STATUS_QUEUED,
    STATUS_RUNNING,
    TERMINAL_STATUSES,
    Finding,
    Job,
    StoredFinding,
)


class JobStateError(RuntimeError):
    """Raised when a write would break the job lifecycle (e.g. finalizing twice)."""


class JobStore(Protocol):
    def claim_next_queued(self) -> Job | None: ...

    def try_claim(self, job_id: str) -> Job | None: ...

    def append_finding(self, job_id: str, finding: Finding) -> str: ...

    def replace_findings(self, job_id: str, findings: Sequence[Finding]) -> None: ...

    def finalize(
        self,
        job_id: str,
        *,
        status: str,
        findings_count: int,
        artifact_path: str | None,
        artifact_hash: str | None,
        error_message: str | None,
    ) -> None: ...


def _to_job(record: ScanJobRecord) -> Job:
    return Job(
        id=record.id,
        kind=record.kind,
        target=record.target,
        status=record.status,
        created_at=record.created_at,
        started_at=record.started_at,
        finished_at=record.finished_at,
        findings_count=record.findings_count,
        artifact_path=record.artifact_path,
        artifact_hash=record.artifact_hash,
        error_message=record.error_message,
    )


def _to_stored_finding(record: FindingRecord) -> StoredFinding:
    return StoredFinding(
        id=record.id,
        job_id=record.job_id,
        sequence=record.sequence,
        title=record.title,
        severity=record.severity,
        description=record.description,
        resource=record.resource,
        evidence_ref=record.evidence_ref,
        created_at=record.created_at,
    )


def _compare_and_set_running(connection: Connection, job_id: str) -> bool:
    claimed = connection.execute(
        text(
            """
            UPDATE scan_jobs
            SET status = :running,
                started_at = CURRENT_TIMESTAMP,
                finished_at = NULL,
                error_message = NULL
            WHERE id = :job_id AND status = :queued
            """
        ),
        {"job_id": job_id, "queued": STATUS_QUEUED, "running": STATUS_RUNNING},
    )
    return claimed.rowcount == 1


def _new_finding_record(job_id: str, sequence: int, finding: Finding) -> FindingRecord:
    return FindingRecord(
        id=uuid.uuid4().hex,
        job_id=job_id,
        sequence=sequence,
        title=finding.title,
        severity=finding.severity,
        description=finding.description,
        resource=finding.resource,
        evidence_ref=finding.evidence_ref,
        created_at=datetime.now(timezone.utc),
    )


class SqlJobStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _select_oldest_queued(self, connection: Connection) -> str | None:
        if self._engine.dialect.name == "postgresql":
            query = """
                SELECT id
                FROM scan_jobs
                WHERE status = :queued
                ORDER BY created_at ASC, id ASC
                FOR UPDATE SKIP LOCKED
                LIMIT 1
            """
        else:
            query = """
                SELECT id
                FROM scan_jobs
                WHERE status = :queued
                ORDER BY created_at ASC, id ASC
                LIMIT 1
            """
        row = connection.execute(text(query), {"queued": STATUS_QUEUED}).first()
        if row is None:
            return None
        return str(row[0])

    def claim_next_queued(self) -> Job | None:
        while True:
            with self._engine.begin() as connection:
                job_id = self._select_oldest_queued(connection)
                if job_id is None:
                    return None
                claimed = _compare_and_set_running(connection, job_id)

            if claimed:
                return self.get_job(job_id)
            # Another worker claimed it between the select and the update.

    def try_claim(self, job_id: str) -> Job | None:
        with self._engine.begin() as connection:
            claimed = _compare_and_set_running(connection, job_id)
        if not claimed:
            return None
        return self.get_job(job_id)

    def append_finding(self, job_id: str, finding: Finding) -> str:
        with Session(self._engine) as session:
            last_sequence = session.scalar(
                select(func.coalesce(func.max(FindingRecord.sequence), 0)).where(
                    FindingRecord.job_id == job_id
                )
            )
            record = _new_finding_record(job_id, int(last_sequence or 0) + 1, finding)
            session.add(record)
            session.commit()
            return record.id

    def replace_findings(self, job_id: str, findings: Sequence[Finding]) -> None:
        with Session(self._engine) as session, session.begin():
            session.execute(
                text("DELETE FROM findings WHERE job_id = :job_id"),
                {"job_id": job_id},
            )
            session.add_all(
                [
                    _new_finding_record(job_id, sequence, finding)
                    for sequence, finding in enumerate(findings, start=1)
                ]
            )

    def finalize(
        self,
        job_id: str,
        *,
        status: str,
        findings_count: int,
        artifact_path: str | None,
        artifact_hash: str | None,
        error_message: str | None,
    ) -> None:
        if status not in TERMINAL_STATUSES:
            raise JobStateError(f"cannot finalize job_id={job_id} with non-terminal status={status}")

        with self._engine.begin() as connection:
            updated = connection.execute(
                text(
                    """
                    UPDATE scan_jobs
                    SET status = :status,
                        finished_at = CURRENT_TIMESTAMP,
                        findings_count = :findings_count,
                        artifact_path = :artifact_path,
                        artifact_hash = :artifact_hash,
                        error_message = :error_message
                    WHERE id = :job_id AND status = :expected_status
                    """
                ),
                {
                    "job_id": job_id,
                    "status": status,
                    "findings_count": findings_count,
                    "artifact_path": artifact_path,
                    "artifact_hash": artifact_hash,
                    "error_message": error_message,
                    "expected_status": STATUS_RUNNING,
                },
            )
            if updated.rowcount != 1:
                raise JobStateError(f"job_id={job_id} is not running; refusing to finalize")

    def get_job(self, job_id: str) -> Job | None:
        with Session(self._engine) as session:
            record = session.get(ScanJobRecord, job_id)
            if record is None:
                return None
            return _to_job(record)

    def list_findings(self, job_id: str) -> list[StoredFinding]:
        with Session(self._engine) as session:
            records = session.scalars(
                select(FindingRecord)
                .where(FindingRecord.job_id == job_id)
                .order_by(FindingRecord.sequence.asc())
            ).all()
            return [_to_stored_finding(record) for record in records]
