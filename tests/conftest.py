"""
Shared fixtures: an in-memory result store and worker configuration.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from compci.config import WorkerConfig
from compci.database import create_session_factory
from compci.models import Base
from compci.store import ResultStore


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return ResultStore(create_session_factory(db_engine))


@pytest.fixture
def config(tmp_path):
    work_root = tmp_path / "work"
    work_root.mkdir()
    return WorkerConfig(
        database_url="sqlite://",
        work_root=str(work_root),
        skip_components=["skipped-component"],
        xvfb_enabled=False,
    )
