from pathlib import Path

from scan_worker.artifacts import (
    artifact_path_for,
    compute_artifact_hash,
    prepare_artifact_dir,
    verify_artifact,
)


def test_prepare_artifact_dir_discards_previous_output(tmp_path: Path) -> None:
    stale = artifact_path_for(tmp_path, "job-1")
    stale.parent.mkdir(parents=True)
    stale.write_bytes(b"old\n")
    (stale.parent / "evidence.txt").write_text("old evidence", encoding="utf-8")

    job_dir = prepare_artifact_dir(tmp_path, "job-1")

    assert job_dir == tmp_path / "job-1"
    assert list(job_dir.iterdir()) == []


def test_hash_is_deterministic_and_sensitive_to_single_byte(tmp_path: Path) -> None:
    first = tmp_path / "a.jsonl"
    second = tmp_path / "b.jsonl"
    third = tmp_path / "c.jsonl"
    first.write_bytes(b'{"info": {"name": "x"}}\n')
    second.write_bytes(b'{"info": {"name": "x"}}\n')
    third.write_bytes(b'{"info": {"name": "y"}}\n')

    assert compute_artifact_hash(first) == compute_artifact_hash(second)
    assert compute_artifact_hash(first) != compute_artifact_hash(third)
    assert len(compute_artifact_hash(first)) == 64


def test_verify_artifact(tmp_path: Path) -> None:
    path = tmp_path / "findings.jsonl"
    path.write_bytes(b"line\n")
    digest = compute_artifact_hash(path)

    assert verify_artifact(path, digest.upper())
    assert not verify_artifact(path, "0" * 64)
    assert not verify_artifact(tmp_path / "missing.jsonl", digest)
