import asyncio
import functools
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from .errors import StoreWriteError
from .models import (
    BrowserLog,
    Component,
    JOB_STATUS_ORDER,
    JobRun,
    JobStatus,
    TargetResult,
    TargetStatus,
)
from .schemas import EngineResult, JobCreate, JobRequest, Report

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def threaded(method):
    """Run a blocking store method in a worker thread and wrap database errors."""

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await asyncio.to_thread(method, self, *args, **kwargs)
        except SQLAlchemyError as e:
            raise StoreWriteError(f"{method.__name__} failed: {e}") from e

    return wrapper


def advance_status(job: JobRun, status: JobStatus) -> bool:
    current = JobStatus(job.status)
    if current == status:
        return True
    if JOB_STATUS_ORDER[status] <= JOB_STATUS_ORDER[current]:
        logger.warning(f"Ignoring status change of job {job.id} from {current.value} to {status.value}")
        return False
    job.status = status
    return True


class ResultStore:
    """Persistence for job runs, per-target results and browser logs.

    Every write opens its own session and commits on its own; there is no
    transaction spanning a TargetResult write and the job counter update.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _get_job(self, session: Session, job_id: str) -> JobRun:
        job = session.get(JobRun, job_id)
        if not job:
            raise StoreWriteError(f"Job {job_id} not found")
        return job

    def _get_target(self, session: Session, job_id: str, target: str) -> TargetResult:
        result = session.execute(
            select(TargetResult).where(TargetResult.job_id == job_id, TargetResult.target == target)
        ).scalar_one_or_none()
        if not result:
            raise StoreWriteError(f"Target {target} of job {job_id} not found")
        return result

    # Catalog

    @threaded
    def add_component(self, name: str, clone_url: str, enabled: bool = True):
        with self.session_factory() as session:
            session.merge(Component(name=name, clone_url=clone_url, enabled=enabled))
            session.commit()

    @threaded
    def list_components(self) -> List[Component]:
        with self.session_factory() as session:
            stmt = select(Component).where(Component.enabled.is_(True)).order_by(Component.name)
            return list(session.execute(stmt).scalars().all())

    @threaded
    def get_component(self, name: str) -> Optional[Component]:
        with self.session_factory() as session:
            return session.get(Component, name)

    # Jobs

    @threaded
    def create_job(self, job: JobCreate) -> JobRequest:
        job_id = str(uuid.uuid4())
        with self.session_factory() as session:
            session.add(JobRun(
                id=job_id,
                kind=job.kind,
                branch=job.branch,
                commit=job.commit,
                component=job.component,
                status=JobStatus.QUEUED,
            ))
            session.commit()
        logger.info(f"Created job entry: {job_id}")
        return JobRequest(id=job_id, **job.model_dump())

    @threaded
    def get_job_request(self, job_id: str) -> Optional[JobRequest]:
        with self.session_factory() as session:
            job = session.get(JobRun, job_id)
            if not job:
                return None
            return JobRequest(
                id=job.id,
                kind=job.kind,
                branch=job.branch,
                commit=job.commit,
                component=job.component,
            )

    @threaded
    def get_job(self, job_id: str) -> Optional[JobRun]:
        with self.session_factory() as session:
            stmt = select(JobRun).options(selectinload(JobRun.targets)).where(JobRun.id == job_id)
            return session.execute(stmt).scalar_one_or_none()

    @threaded
    def get_target_results(self, job_id: str) -> List[TargetResult]:
        with self.session_factory() as session:
            stmt = (
                select(TargetResult)
                .options(selectinload(TargetResult.logs))
                .where(TargetResult.job_id == job_id)
                .order_by(TargetResult.id)
            )
            return list(session.execute(stmt).scalars().all())

    @threaded
    def set_job_running(self, job_id: str, target_count: int):
        with self.session_factory() as session:
            job = self._get_job(session, job_id)
            advance_status(job, JobStatus.RUNNING)
            job.size = target_count
            if not job.start_time:
                job.start_time = _utcnow()
            session.commit()

    @threaded
    def increment_job_counters(self, job_id: str, passed: int = 0, failed: int = 0):
        if passed < 0 or failed < 0:
            raise ValueError("Job counters can only increase")
        with self.session_factory() as session:
            job = self._get_job(session, job_id)
            if JobStatus(job.status) == JobStatus.QUEUED:
                advance_status(job, JobStatus.RUNNING)
            job.passed = (job.passed or 0) + passed
            job.failed = (job.failed or 0) + failed
            session.commit()

    @threaded
    def finish_job(self, job_id: str) -> JobRun:
        with self.session_factory() as session:
            job = self._get_job(session, job_id)
            if advance_status(job, JobStatus.FINISHED):
                job.end_time = _utcnow()
            session.commit()
            return job

    @threaded
    def set_job_error(self, job_id: str, message: str):
        with self.session_factory() as session:
            job = self._get_job(session, job_id)
            if advance_status(job, JobStatus.ERRORED):
                job.error_message = message
                job.end_time = _utcnow()
            session.commit()

    # Targets

    @threaded
    def create_target_result(self, job_id: str, target: str):
        with self.session_factory() as session:
            existing = session.execute(
                select(TargetResult).where(TargetResult.job_id == job_id, TargetResult.target == target)
            ).scalar_one_or_none()
            if existing:
                logger.debug(f"Replacing previous result of {target} in job {job_id}")
                session.delete(existing)
                session.flush()
            session.add(TargetResult(
                job_id=job_id,
                target=target,
                status=TargetStatus.RUNNING,
                start_time=_utcnow(),
            ))
            session.commit()

    @threaded
    def update_target_result(self, job_id: str, target: str, report: Report):
        with self.session_factory() as session:
            result = self._get_target(session, job_id, target)
            result.status = TargetStatus.PASSED if report.passing else TargetStatus.FAILED
            result.retries = report.retry_count
            result.passed = report.passed
            result.failed = report.failed
            result.has_logs = report.has_logs
            result.end_time = report.end_time
            session.commit()

    @threaded
    def add_browser_logs(self, job_id: str, target: str, results: List[EngineResult]):
        with self.session_factory() as session:
            result = self._get_target(session, job_id, target)
            for engine in results:
                result.logs.append(BrowserLog(
                    engine=engine.engine,
                    browser=engine.browser,
                    version=engine.version,
                    status=engine.status,
                    logs=[entry.model_dump() for entry in engine.logs],
                    message=engine.message,
                    start_time=engine.start_time,
                    end_time=engine.end_time,
                ))
            session.commit()

    @threaded
    def update_target_error(self, job_id: str, target: str, message: str):
        with self.session_factory() as session:
            result = self._get_target(session, job_id, target)
            result.status = TargetStatus.FAILED
            result.message = message
            result.end_time = _utcnow()
            session.commit()
