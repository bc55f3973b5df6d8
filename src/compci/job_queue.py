import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .pipeline import JobPipeline
from .schemas import BusAction, BusMessage, JobRequest

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[JobRequest], JobPipeline]
RequestLoader = Callable[[str], Awaitable[Optional[JobRequest]]]


class DispatchQueue:
    """FIFO of job pipelines with at most one of them running.

    The head of the queue is started as an asyncio task; the task's
    completion is the job's lifecycle signal: a result (``end``) or an
    exception (``error``). Either way the pipeline leaves the queue and the
    next one starts.
    """

    def __init__(self, pipeline_factory: PipelineFactory, load_request: RequestLoader):
        self.pipeline_factory = pipeline_factory
        self.load_request = load_request
        self.queue: List[JobPipeline] = []
        self.is_running = False
        self.processed_count = 0
        self.current: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    def enqueue(self, pipeline: JobPipeline):
        self.queue.append(pipeline)
        self._idle.clear()
        logger.info(f"Job {pipeline.job_id} added to the queue.")
        self.run()

    def run(self):
        if self.is_running:
            return
        if not self.queue:
            self._idle.set()
            return
        self.is_running = True
        head = self.queue[0]
        logger.info(f"Starting job {head.job_id}")
        self.current = asyncio.create_task(head.run())
        self.current.add_done_callback(lambda task: self._on_done(head, task))

    def _on_done(self, pipeline: JobPipeline, task: asyncio.Task):
        if task.cancelled():
            logger.warning(f"Job {pipeline.job_id} was cancelled")
        elif task.exception() is not None:
            logger.error(f"Job {pipeline.job_id} ended with error: {task.exception()}")
        else:
            job = task.result()
            if job is not None:
                logger.info(f"Job {pipeline.job_id} ended with status {job.status.value}")
        self._remove_from_queue(pipeline)
        self.is_running = False
        self.current = None
        self.processed_count += 1
        self.run()

    def _remove_from_queue(self, pipeline: JobPipeline):
        try:
            self.queue.remove(pipeline)
        except ValueError:
            logger.warning(f"Job {pipeline.job_id} is not in the queue.")

    async def route_run(self, request_id: str) -> bool:
        """Queue a job by id. Returns as soon as the job is queued."""
        logger.info(f"Running job {request_id}")
        try:
            request = await self.load_request(request_id)
        except Exception as e:
            logger.warning(f"Unable to load job {request_id}: {e}")
            return False
        if not request:
            logger.warning(f"Job {request_id} not found")
            return False
        self.enqueue(self.pipeline_factory(request))
        return True

    def remove(self, job_id: str) -> bool:
        logger.info(f"Removing job {job_id}")
        for pipeline in list(self.queue):
            if pipeline.job_id != job_id:
                continue
            pipeline.abort()
            # A running job leaves the queue through _on_done once it winds down.
            if not (self.is_running and self.queue[0] is pipeline):
                self.queue.remove(pipeline)
            return True
        return False

    async def handle_message(self, message: BusMessage):
        action = message.action
        if action in (BusAction.RUN_TEST.value, BusAction.PROCESS_BUILD.value):
            await self.route_run(message.id)
        elif action in (BusAction.REMOVE_TEST.value, BusAction.REMOVE_BUILD.value):
            self.remove(message.id)
        else:
            logger.warning(f"Unknown request: {message.model_dump()}")

    async def join(self):
        """Wait until no job is running and the queue is empty."""
        await self._idle.wait()
