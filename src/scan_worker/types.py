from dataclasses import dataclass
from datetime import datetime

JOB_KIND_NUCLEI = "nuclei"
SUPPORTED_JOB_KINDS = frozenset({JOB_KIND_NUCLEI})

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

# Ascending order: info < low < medium < high < critical.
SEVERITY_ORDER: tuple[str, ...] = ("info", "low", "medium", "high", "critical")


def severity_rank(severity: str) -> int:
    return SEVERITY_ORDER.index(severity)


@dataclass(frozen=True)
class Job:
    id: str
    kind: str
    target: str
    status: str
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    findings_count: int = 0
    artifact_path: str | None = None
    artifact_hash: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class Finding:
    title: str
    severity: str
    description: str
    resource: str
    evidence_ref: str | None = None


@dataclass(frozen=True)
class StoredFinding:
    id: str
    job_id: str
    sequence: int
    title: str
    severity: str
    description: str
    resource: str
    evidence_ref: str | None
    created_at: datetime


@dataclass(frozen=True)
class ScanOutcome:
    status: str
    findings_count: int
    artifact_path: str | None
    artifact_hash: str | None
    error_message: str | None
