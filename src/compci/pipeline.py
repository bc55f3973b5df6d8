import logging
import os
from typing import Dict, List, Optional

from .config import WorkerConfig
from .display import VirtualDisplay
from .errors import SharedStageError, error_message
from .git_ops import BotIdentity, GitRepository, create_working_directory, remove_directory
from .models import JobKind, JobRun
from .preparation import ArtifactGenerator, DependencyInstaller, SharedBuild
from .schemas import JobRequest, Report
from .store import ResultStore
from .test_executor import TestExecutor

logger = logging.getLogger(__name__)


class JobPipeline:
    """Drives one job from queued to a terminal state.

    ``run()`` returns the finished JobRun (or None when the job was aborted)
    and raises SharedStageError when the shared preparation fails. Failures
    of a single target are recorded against that target and never end the
    run. ``abort()`` is cooperative: it is honoured at the next stage
    boundary, an in-flight clone or test run finishes first.
    """

    def __init__(
        self,
        request: JobRequest,
        store: ResultStore,
        executor: TestExecutor,
        config: WorkerConfig,
        display: Optional[VirtualDisplay] = None,
    ):
        self.request = request
        self.job_id = request.id
        self.store = store
        self.executor = executor
        self.config = config
        self.display = display
        self.identity = BotIdentity(config.ci_name, config.ci_email)

        self.targets: List[str] = []
        self.clone_urls: Dict[str, str] = {}
        self.working_dir: Optional[str] = None
        self.running = False
        self.aborted = False
        self._torn_down = False

    def abort(self):
        logger.info(f"Aborting job {self.job_id}")
        self.aborted = True

    async def run(self) -> Optional[JobRun]:
        self.running = True
        try:
            try:
                await self._prepare()
            except Exception as e:
                if self.aborted:
                    logger.info(f"Job {self.job_id} aborted during preparation: {e}")
                    return None
                await self._report_job_error(e)
                if isinstance(e, SharedStageError):
                    raise
                raise SharedStageError(error_message(e)) from e

            while await self.advance():
                pass

            if self.aborted:
                logger.info(f"Job {self.job_id} aborted")
                return None
            job = await self.store.finish_job(self.job_id)
            logger.info(f"Job {self.job_id} finished: {job.passed} passed, {job.failed} failed")
            return job
        finally:
            await self.cleanup()
            self.running = False

    async def _prepare(self):
        if self.aborted:
            return
        self.working_dir = await create_working_directory(self.config.work_root)
        if self.aborted:
            return
        self.targets = await self._resolve_targets()
        logger.info(f"Found {len(self.targets)} components to test.")
        if self.aborted:
            return
        await self.store.set_job_running(self.job_id, len(self.targets))
        if self.aborted:
            return
        if self.request.kind == JobKind.FULL_BUILD:
            await self._shared_build()

    async def _resolve_targets(self) -> List[str]:
        kind = self.request.kind
        if kind == JobKind.FULL_BUILD:
            skip = set(self.config.skip_components)
            components = [c for c in await self.store.list_components() if c.name not in skip]
            for component in components:
                self.clone_urls[component.name] = component.clone_url
            return [component.name for component in components]
        elif kind == JobKind.SINGLE_COMPONENT:
            name = self.request.component
            component = await self.store.get_component(name)
            if component:
                self.clone_urls[name] = component.clone_url
            elif self.config.component_url_template:
                self.clone_urls[name] = self.config.component_url_template.format(name=name)
            else:
                raise SharedStageError(f"Unknown component {name}")
            return [name]
        raise ValueError(f"Unsupported job kind {kind}")

    async def _shared_build(self):
        if not self.config.shared_build_url:
            logger.info("No shared build configured, skipping.")
            return
        build = SharedBuild(
            self.working_dir,
            self.config.shared_build_url,
            self.request.branch,
            commit=self.request.commit,
            identity=self.identity,
            ssh_key=self.config.git_ssh_key,
            install_command=self.config.install_command,
            build_script=self.config.shared_build_script,
            install_timeout=self.config.install_timeout,
        )
        await build.build()

    async def advance(self) -> bool:
        """Process the next target. Returns False once there is nothing left to do."""
        if self.aborted or not self.targets:
            return False
        target = self.targets.pop(0)
        logger.info(f"Executing test: {target}")
        try:
            await self.store.create_target_result(self.job_id, target)
            report = await self._process_target(target)
            if report is None:
                return False
            await self._report_target_success(target, report)
        except Exception as e:
            await self._report_target_error(target, e)
        return True

    async def _process_target(self, target: str) -> Optional[Report]:
        component_dir = os.path.join(self.working_dir, target)

        if self.aborted:
            return None
        repo = GitRepository(component_dir, identity=self.identity, ssh_key=self.config.git_ssh_key)
        await repo.clone(self.clone_urls[target], self.request.branch)
        if self.request.commit and self.request.kind == JobKind.SINGLE_COMPONENT:
            await repo.reset_hard(self.request.commit)

        if self.aborted:
            return None
        installer = DependencyInstaller(component_dir, self.config.install_command, self.config.install_timeout)
        await installer.install()

        if self.aborted:
            return None
        generator = ArtifactGenerator(component_dir, self.config.artifact_script, self.config.install_timeout)
        await generator.generate()

        if self.aborted:
            return None
        return await self.executor.execute(target, self.working_dir)

    async def _report_target_success(self, target: str, report: Report):
        if self.aborted:
            return
        logger.info(f"Component {target} finished with success.")
        await self.store.update_target_result(self.job_id, target, report)
        await self.store.add_browser_logs(self.job_id, target, report.results)
        if report.passing:
            await self.store.increment_job_counters(self.job_id, passed=1)
        else:
            await self.store.increment_job_counters(self.job_id, failed=1)

    async def _report_target_error(self, target: str, error: Exception):
        if self.aborted:
            return
        message = error_message(error)
        logger.error(f"Component {target} finished with error: {message}")
        try:
            await self.store.update_target_error(self.job_id, target, message)
            await self.store.increment_job_counters(self.job_id, failed=1)
        except Exception as e:
            logger.error(f"Unable to record the error of {target} in job {self.job_id}: {e}")

    async def _report_job_error(self, error: Exception):
        message = error_message(error)
        logger.error(f"Job {self.job_id} finished with error: {message}")
        try:
            await self.store.set_job_error(self.job_id, message)
        except Exception as e:
            logger.error(f"Unable to record the error of job {self.job_id}: {e}")

    async def cleanup(self):
        if self._torn_down:
            return
        self._torn_down = True
        if self.display:
            try:
                await self.display.release()
            except Exception as e:
                logger.error(f"Unable to release the virtual display: {e}")
        if not self.working_dir:
            return
        logger.debug("Cleaning up working directory...")
        try:
            await remove_directory(self.working_dir)
        except OSError as e:
            logger.error(f"Unable to remove working directory {self.working_dir}: {e}")
