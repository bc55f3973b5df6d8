import logging
from dataclasses import dataclass
from typing import Optional

from .config import WorkerConfig
from .database import create_db_engine, create_redis_client, create_session_factory, create_tables
from .display import VirtualDisplay
from .job_queue import DispatchQueue
from .message_bus import MessageBus
from .pipeline import JobPipeline
from .schemas import JobRequest
from .store import ResultStore
from .test_executor import SeleniumHarness, TestExecutor

logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """Everything a worker process shares between jobs."""

    config: WorkerConfig
    store: ResultStore
    bus: MessageBus
    executor: TestExecutor
    display: Optional[VirtualDisplay] = None
    engine: object = None
    redis: object = None

    @classmethod
    async def from_config(cls, config: WorkerConfig) -> "WorkerContext":
        engine = create_db_engine(config.database_url)
        create_tables(engine)
        redis_client = await create_redis_client(config.redis_url)
        display = VirtualDisplay(config.xvfb_display, enabled=config.xvfb_enabled)
        harness = SeleniumHarness(config.browsers, hub_url=config.selenium_hub_url, timeout=config.test_timeout)
        return cls(
            config=config,
            store=ResultStore(create_session_factory(engine)),
            bus=MessageBus(redis_client, config.bus_queue_key),
            executor=TestExecutor(harness, display=display),
            display=display,
            engine=engine,
            redis=redis_client,
        )

    def create_pipeline(self, request: JobRequest) -> JobPipeline:
        return JobPipeline(request, self.store, self.executor, self.config, display=self.display)

    def create_dispatcher(self) -> DispatchQueue:
        return DispatchQueue(self.create_pipeline, self.store.get_job_request)

    async def close(self):
        if self.display:
            await self.display.release()
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            self.engine.dispose()
        logger.info("Worker context closed")
