from scan_worker.config import get_settings


def test_defaults_match_operational_policy(monkeypatch) -> None:
    for name in (
        "WORKER_POLL_SECONDS",
        "SCAN_TIMEOUT_MINUTES",
        "SANDBOX_MEMORY_BYTES",
        "SANDBOX_CPU_SHARE",
        "SANDBOX_BACKEND",
        "ARTIFACTS_DIR",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = get_settings()

    assert settings.poll_seconds == 5.0
    assert settings.scan_timeout_seconds == 30 * 60
    assert settings.memory_limit_bytes == 2 * 1024 * 1024 * 1024
    assert settings.cpu_share == 0.5
    assert settings.sandbox_backend == "docker"
    assert settings.artifacts_dir == "./artifacts"


def test_env_overrides_are_parsed_and_clamped(monkeypatch) -> None:
    monkeypatch.setenv("WORKER_POLL_SECONDS", "0")
    monkeypatch.setenv("SCAN_TIMEOUT_MINUTES", "2")
    monkeypatch.setenv("SANDBOX_BACKEND", " Process ")
    monkeypatch.setenv("WORKER_DB_ECHO", "yes")

    settings = get_settings()

    assert settings.poll_seconds == 0.1
    assert settings.scan_timeout_seconds == 120
    assert settings.sandbox_backend == "process"
    assert settings.db_echo is True
