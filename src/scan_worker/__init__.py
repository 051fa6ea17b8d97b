from scan_worker.coordinator import ScanCoordinator
from scan_worker.dispatch import DispatchLoop, WorkerState
from scan_worker.sandbox import (
    DockerSandboxManager,
    ProcessSandboxManager,
    SandboxError,
    SandboxManager,
)
from scan_worker.store import JobStateError, JobStore, SqlJobStore
from scan_worker.stream_parser import ResultStreamParser, iter_records, normalize_severity

__all__ = [
    "DispatchLoop",
    "DockerSandboxManager",
    "JobStateError",
    "JobStore",
    "ProcessSandboxManager",
    "ResultStreamParser",
    "SandboxError",
    "SandboxManager",
    "ScanCoordinator",
    "SqlJobStore",
    "WorkerState",
    "iter_records",
    "normalize_severity",
]
