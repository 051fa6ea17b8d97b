from collections.abc import Callable, Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from scan_worker.config import get_settings
from scan_worker.db import Base, get_engine
from scan_worker.models import ScanJobRecord
from scan_worker.store import SqlJobStore

SeedJob = Callable[..., str]


@pytest.fixture(autouse=True)
def reset_worker_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "worker-tests.db"


@pytest.fixture
def engine(db_path: Path) -> Iterator[Engine]:
    engine = create_engine(f"sqlite+pysqlite:///{db_path}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine: Engine) -> SqlJobStore:
    return SqlJobStore(engine)


@pytest.fixture
def seed_job(engine: Engine) -> SeedJob:
    base_time = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
    counter = {"value": 0}

    def _seed(
        job_id: str,
        *,
        target: str = "https://example.com",
        kind: str = "nuclei",
        status: str = "queued",
    ) -> str:
        counter["value"] += 1
        with Session(engine) as session:
            session.add(
                ScanJobRecord(
                    id=job_id,
                    kind=kind,
                    target=target,
                    status=status,
                    created_at=base_time + timedelta(seconds=counter["value"]),
                )
            )
            session.commit()
        return job_id

    return _seed
