from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from enum import Enum

Base = declarative_base()


class JobKind(str, Enum):
    FULL_BUILD = "full-build"
    SINGLE_COMPONENT = "single-component"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    FINISHED = "finished"
    ERRORED = "errored"


class TargetStatus(str, Enum):
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"


# Allowed forward moves; anything else is a reversal and gets ignored.
JOB_STATUS_ORDER = {
    JobStatus.QUEUED: 0,
    JobStatus.RUNNING: 1,
    JobStatus.FINISHED: 2,
    JobStatus.ERRORED: 2,
}


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class JobRun(Base):
    __tablename__ = "job_runs"

    id = Column(String, primary_key=True)
    kind = Column(SQLEnum(JobKind, values_callable=_enum_values), nullable=False)
    branch = Column(String, nullable=False)
    commit = Column(String)
    component = Column(String)
    status = Column(SQLEnum(JobStatus, values_callable=_enum_values), default=JobStatus.QUEUED, nullable=False)
    size = Column(Integer, default=0, nullable=False)
    passed = Column(Integer, default=0, nullable=False)
    failed = Column(Integer, default=0, nullable=False)
    error_message = Column(Text)
    start_time = Column(DateTime(timezone=True))
    end_time = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=func.now())

    targets = relationship(
        "TargetResult",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="TargetResult.id",
    )


class TargetResult(Base):
    __tablename__ = "target_results"
    __table_args__ = (UniqueConstraint("job_id", "target", name="uq_target_results_job_target"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey("job_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    target = Column(String, nullable=False)
    status = Column(SQLEnum(TargetStatus, values_callable=_enum_values), default=TargetStatus.RUNNING, nullable=False)
    retries = Column(Integer, default=0, nullable=False)
    passed = Column(Integer, default=0, nullable=False)
    failed = Column(Integer, default=0, nullable=False)
    has_logs = Column(Boolean, default=False, nullable=False)
    message = Column(Text)
    start_time = Column(DateTime(timezone=True))
    end_time = Column(DateTime(timezone=True))

    job = relationship("JobRun", back_populates="targets")
    logs = relationship(
        "BrowserLog",
        back_populates="target_result",
        cascade="all, delete-orphan",
        order_by="BrowserLog.id",
    )


class BrowserLog(Base):
    __tablename__ = "browser_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_result_id = Column(Integer, ForeignKey("target_results.id", ondelete="CASCADE"), nullable=False, index=True)
    engine = Column(String, nullable=False)
    browser = Column(String)
    version = Column(String)
    status = Column(String)
    logs = Column(JSON, default=list)
    message = Column(Text)
    start_time = Column(DateTime(timezone=True))
    end_time = Column(DateTime(timezone=True))

    target_result = relationship("TargetResult", back_populates="logs")


class Component(Base):
    __tablename__ = "components"

    name = Column(String, primary_key=True)
    clone_url = Column(String, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
