from __future__ import annotations

import hashlib
from pathlib import Path
import shutil

ARTIFACT_FILENAME = "findings.jsonl"
_HASH_CHUNK_BYTES = 64 * 1024


def artifact_dir_for(artifacts_root: Path, job_id: str) -> Path:
    return artifacts_root / job_id


def artifact_path_for(artifacts_root: Path, job_id: str) -> Path:
    return artifact_dir_for(artifacts_root, job_id) / ARTIFACT_FILENAME


def prepare_artifact_dir(artifacts_root: Path, job_id: str) -> Path:
    """Return an empty directory for the job, discarding output of a previous run."""
    job_dir = artifact_dir_for(artifacts_root, job_id)
    if job_dir.exists():
        shutil.rmtree(job_dir)
    job_dir.mkdir(parents=True, exist_ok=True)
    return job_dir


def compute_artifact_hash(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for block in iter(lambda: handle.read(_HASH_CHUNK_BYTES), b""):
            digest.update(block)
    return digest.hexdigest()


def verify_artifact(path: Path, expected_hash: str) -> bool:
    if not path.is_file():
        return False
    return compute_artifact_hash(path) == expected_hash.strip().lower()


def evidence_ref(path: Path, offset: int) -> str:
    return f"{path}#offset={offset}"
