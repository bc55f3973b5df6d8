import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request

from .config import WorkerConfig
from .context import WorkerContext
from .job_queue import DispatchQueue
from .schemas import JobCreate, JobResponse

logger = logging.getLogger(__name__)

ContextFactory = Callable[[], Awaitable[WorkerContext]]

SHUTDOWN_TIMEOUT = 60


async def stop_dispatcher(dispatcher: DispatchQueue, timeout: float = SHUTDOWN_TIMEOUT):
    """Abort every queued job and wait for the running one to wind down."""
    for pipeline in list(dispatcher.queue):
        dispatcher.remove(pipeline.job_id)
    current = dispatcher.current
    if current is None:
        return
    try:
        await asyncio.wait_for(asyncio.shield(current), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Running job did not stop within {timeout}s")
    except asyncio.CancelledError:
        logger.warning("Running job was cancelled during shutdown")
    except Exception as e:
        logger.error(f"Running job ended with error during shutdown: {e}")


async def default_context() -> WorkerContext:
    return await WorkerContext.from_config(WorkerConfig.from_env())


def create_app(context_factory: Optional[ContextFactory] = None, subscribe: bool = True) -> FastAPI:
    factory = context_factory or default_context

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting component test worker")
        context = await factory()
        dispatcher = context.create_dispatcher()
        app.state.context = context
        app.state.dispatcher = dispatcher
        subscription = None
        if subscribe:
            subscription = asyncio.create_task(context.bus.subscribe(dispatcher.handle_message))
        logger.info("Component test worker started successfully")
        try:
            yield
        finally:
            logger.info("Component test worker shutting down")
            context.bus.stop()
            if subscription:
                subscription.cancel()
                try:
                    await subscription
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.error(f"Message subscription ended with error: {e}")
            await stop_dispatcher(dispatcher)
            await context.close()

    app = FastAPI(
        title="Component Test Worker",
        description="Runs browser test jobs for versioned components",
        version="1.0.0",
        lifespan=lifespan,
    )

    def get_context(request: Request) -> WorkerContext:
        return request.app.state.context

    def get_dispatcher(request: Request) -> DispatchQueue:
        return request.app.state.dispatcher

    @app.get("/health")
    async def health_check(context: WorkerContext = Depends(get_context)):
        try:
            queue_size = await context.bus.get_queue_size()
            return {
                "status": "healthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "queue_size": queue_size,
                "service": "Component Test Worker",
            }
        except Exception as e:
            logger.error(f"Health check failed: {str(e)}")
            raise HTTPException(status_code=503, detail="Service unhealthy")

    @app.get("/")
    async def worker_status(dispatcher: DispatchQueue = Depends(get_dispatcher)):
        return {
            "processed": dispatcher.processed_count,
            "queued": len(dispatcher.queue),
            "running": dispatcher.is_running,
            "message": f"This worker has processed {dispatcher.processed_count} jobs.",
        }

    @app.post("/jobs", response_model=dict)
    async def submit_job(job: JobCreate, context: WorkerContext = Depends(get_context)):
        try:
            request = await context.store.create_job(job)
            await context.bus.queue_test(request.id)
            logger.info(f"Job {request.id} submitted for branch {job.branch}")
            return {
                "job_id": request.id,
                "status": "queued",
                "message": "Job submitted successfully",
            }
        except Exception as e:
            logger.error(f"Error submitting job: {str(e)}")
            raise HTTPException(status_code=500, detail=f"Failed to submit job: {str(e)}")

    @app.get("/jobs/{job_id}", response_model=JobResponse)
    async def get_job_status(job_id: str, context: WorkerContext = Depends(get_context)):
        try:
            job = await context.store.get_job(job_id)
        except Exception as e:
            logger.error(f"Error getting job status for {job_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=f"Failed to get job status: {str(e)}")
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return JobResponse.model_validate(job)

    @app.delete("/jobs/{job_id}")
    async def remove_job(job_id: str, context: WorkerContext = Depends(get_context)):
        try:
            job = await context.store.get_job(job_id)
            if not job:
                raise HTTPException(status_code=404, detail="Job not found")
            await context.bus.dequeue_test(job_id)
            logger.info(f"Job {job_id} removal requested")
            return {"message": "Job removal requested"}
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error removing job {job_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=f"Failed to remove job: {str(e)}")

    @app.post("/jobs/{job_id}/run", status_code=202)
    async def run_job(job_id: str, dispatcher: DispatchQueue = Depends(get_dispatcher)):
        queued = await dispatcher.route_run(job_id)
        if not queued:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"message": f"Job {job_id} added to the queue"}

    return app
