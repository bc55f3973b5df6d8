"""Tests for the single-concurrency dispatch queue."""

import asyncio
import logging
import os
from unittest.mock import AsyncMock, patch

import pytest

from compci.errors import SharedStageError
from compci.git_ops import GitRepository
from compci.job_queue import DispatchQueue
from compci.models import JobKind, JobStatus
from compci.pipeline import JobPipeline
from compci.schemas import BusMessage, JobCreate, JobRequest
from compci.test_executor import TestExecutor

from helpers import FakeHarness

pytestmark = pytest.mark.asyncio


class FakePipeline:
    """Pipeline whose run blocks until the test lets it finish."""

    active = 0
    max_active = 0

    def __init__(self, request, started):
        self.request = request
        self.job_id = request.id
        self.started = started
        self.running = False
        self.aborted = False
        self.release = asyncio.Event()
        self.error = None

    def abort(self):
        self.aborted = True

    async def run(self):
        self.running = True
        FakePipeline.active += 1
        FakePipeline.max_active = max(FakePipeline.max_active, FakePipeline.active)
        self.started.append(self.job_id)
        try:
            await self.release.wait()
            if self.error:
                raise self.error
            return None
        finally:
            FakePipeline.active -= 1
            self.running = False


def request_for(job_id):
    return JobRequest(id=job_id, kind=JobKind.SINGLE_COMPONENT, branch="main", component="widget-x")


@pytest.fixture
def started():
    FakePipeline.active = 0
    FakePipeline.max_active = 0
    return []


@pytest.fixture
def dispatcher(started):
    async def load(job_id):
        return None if job_id == "missing" else request_for(job_id)

    return DispatchQueue(lambda request: FakePipeline(request, started), load)


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestDispatch:
    async def test_starts_immediately_when_idle(self, dispatcher, started):
        await dispatcher.route_run("job-1")
        await settle()

        assert started == ["job-1"]
        assert dispatcher.is_running is True

        dispatcher.queue[0].release.set()
        await dispatcher.join()
        assert dispatcher.is_running is False
        assert dispatcher.processed_count == 1

    async def test_fifo_and_single_concurrency(self, dispatcher, started):
        for job_id in ("job-1", "job-2", "job-3"):
            await dispatcher.route_run(job_id)
        await settle()

        assert started == ["job-1"]
        pipelines = list(dispatcher.queue)

        pipelines[0].release.set()
        await settle()
        assert started == ["job-1", "job-2"]

        pipelines[2].release.set()
        await settle()
        assert started == ["job-1", "job-2"]

        pipelines[1].release.set()
        await dispatcher.join()
        assert started == ["job-1", "job-2", "job-3"]
        assert FakePipeline.max_active == 1
        assert dispatcher.queue == []

    async def test_error_signal_advances_queue(self, dispatcher, started):
        await dispatcher.route_run("job-1")
        await dispatcher.route_run("job-2")
        await settle()
        first, second = dispatcher.queue
        first.error = SharedStageError("Unable to create a temp dir")

        first.release.set()
        await settle()
        assert started == ["job-1", "job-2"]

        second.release.set()
        await dispatcher.join()
        assert dispatcher.processed_count == 2

    async def test_route_run_unknown_job(self, dispatcher, started):
        assert await dispatcher.route_run("missing") is False
        assert dispatcher.queue == []
        assert started == []

    async def test_route_run_loader_error(self, started):
        dispatcher = DispatchQueue(lambda r: FakePipeline(r, started), AsyncMock(side_effect=RuntimeError("db")))

        assert await dispatcher.route_run("job-1") is False


class TestRemove:
    async def test_remove_queued_job(self, dispatcher, started):
        await dispatcher.route_run("job-1")
        await dispatcher.route_run("job-2")
        await settle()
        second = dispatcher.queue[1]

        assert dispatcher.remove("job-2") is True
        assert second.aborted is True
        assert [p.job_id for p in dispatcher.queue] == ["job-1"]

        dispatcher.queue[0].release.set()
        await dispatcher.join()
        assert started == ["job-1"]

    async def test_remove_running_job_aborts_and_waits(self, dispatcher, started):
        await dispatcher.route_run("job-1")
        await dispatcher.route_run("job-2")
        await settle()
        first = dispatcher.queue[0]

        dispatcher.remove("job-1")

        assert first.aborted is True
        assert dispatcher.queue[0] is first
        await settle()
        assert started == ["job-1"]

        first.release.set()
        await settle()
        assert started == ["job-1", "job-2"]
        dispatcher.queue[0].release.set()
        await dispatcher.join()
        assert FakePipeline.max_active == 1

    async def test_remove_unknown_job(self, dispatcher):
        assert dispatcher.remove("nope") is False

    async def test_duplicate_removal_only_warns(self, dispatcher, started, caplog):
        pipeline = FakePipeline(request_for("job-1"), started)

        with caplog.at_level(logging.WARNING):
            dispatcher._remove_from_queue(pipeline)

        assert "not in the queue" in caplog.text


class TestMessages:
    async def test_run_actions(self, dispatcher, started):
        await dispatcher.handle_message(BusMessage(action="runTest", id="job-1"))
        await dispatcher.handle_message(BusMessage(action="processBuild", id="job-2"))
        await settle()

        assert [p.job_id for p in dispatcher.queue] == ["job-1", "job-2"]

    async def test_remove_actions(self, dispatcher, started):
        await dispatcher.handle_message(BusMessage(action="runTest", id="job-1"))
        await dispatcher.handle_message(BusMessage(action="runTest", id="job-2"))
        await dispatcher.handle_message(BusMessage(action="runTest", id="job-3"))
        await dispatcher.handle_message(BusMessage(action="removeTest", id="job-2"))
        await dispatcher.handle_message(BusMessage(action="remove-build", id="job-3"))

        assert [p.job_id for p in dispatcher.queue] == ["job-1"]

    async def test_unknown_action_is_ignored(self, dispatcher, caplog):
        with caplog.at_level(logging.WARNING):
            await dispatcher.handle_message(BusMessage(action="explode", id="job-1"))

        assert dispatcher.queue == []
        assert "Unknown request" in caplog.text


class TestWithPipelines:
    async def test_jobs_run_one_after_another(self, store, config):
        await store.add_component("widget-x", "https://git.example.com/widget-x.git")
        harness = FakeHarness()
        executor = TestExecutor(harness)

        dispatcher = DispatchQueue(
            lambda request: JobPipeline(request, store, executor, config),
            store.get_job_request,
        )
        first = await store.create_job(JobCreate(kind=JobKind.SINGLE_COMPONENT, branch="main", component="widget-x"))
        second = await store.create_job(JobCreate(kind=JobKind.SINGLE_COMPONENT, branch="main", component="widget-x"))

        async def clone(self, remote_url, branch):
            os.makedirs(self.path)

        with patch.object(GitRepository, "clone", clone):
            await dispatcher.route_run(first.id)
            await dispatcher.route_run(second.id)
            await dispatcher.join()

        for request in (first, second):
            job = await store.get_job(request.id)
            assert job.status == JobStatus.FINISHED
            assert job.passed == 1
        assert dispatcher.processed_count == 2
