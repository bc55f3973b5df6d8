import asyncio
import json
import logging
import os
import shlex
from typing import Optional

from .errors import ArtifactGenerationError, DependencyInstallError, SharedStageError
from .git_ops import BotIdentity, GitRepository
from .process import run_command

logger = logging.getLogger(__name__)

SHARED_BUILD_DIR = "_shared"


def read_package_scripts(component_dir: str) -> dict:
    path = os.path.join(component_dir, "package.json")
    if not os.path.exists(path):
        return {}
    with open(path, encoding="utf-8") as f:
        try:
            data = json.load(f)
        except ValueError:
            logger.warning(f"Invalid package.json in {component_dir}")
            return {}
    return data.get("scripts") or {}


class DependencyInstaller:
    """Installs a component's dependencies with npm or, for older components, bower."""

    def __init__(self, component_dir: str, install_command: str = "npm install", timeout: Optional[float] = None):
        self.component_dir = component_dir
        self.install_command = install_command
        self.timeout = timeout

    def _command(self) -> Optional[list]:
        if os.path.exists(os.path.join(self.component_dir, "package.json")):
            return shlex.split(self.install_command)
        if os.path.exists(os.path.join(self.component_dir, "bower.json")):
            return ["bower", "install", "--quiet", "--allow-root"]
        return None

    async def install(self):
        cmd = self._command()
        if not cmd:
            logger.info(f"No dependency manifest in {self.component_dir}. Skipping dependencies.")
            return
        logger.info(f"Installing dependencies with {cmd[0]}...")
        try:
            result = await run_command(cmd, cwd=self.component_dir, timeout=self.timeout, prefix="DEPS")
        except asyncio.TimeoutError as e:
            raise DependencyInstallError(f"Dependencies installation timed out after {self.timeout}s") from e
        except OSError as e:
            raise DependencyInstallError(f"Unable to run {cmd[0]}: {e}") from e
        if not result.ok:
            raise DependencyInstallError(
                f"Dependencies installation exit with code {result.returncode}: {result.stderr[-500:]}"
            )
        logger.info("Dependencies installed.")


class ArtifactGenerator:
    """Runs the component's artifact script (generated API models) when it declares one."""

    def __init__(self, component_dir: str, script: str = "prepare-models", timeout: Optional[float] = None):
        self.component_dir = component_dir
        self.script = script
        self.timeout = timeout

    async def generate(self) -> bool:
        try:
            scripts = read_package_scripts(self.component_dir)
        except OSError as e:
            raise ArtifactGenerationError(f"Unable to read package.json: {e}") from e
        if self.script not in scripts:
            logger.debug(f"No {self.script} script in {self.component_dir}")
            return False
        logger.info(f"Generating artifacts for {os.path.basename(self.component_dir)}")
        try:
            result = await run_command(
                ["npm", "run", self.script],
                cwd=self.component_dir,
                timeout=self.timeout,
                prefix="ARTIFACTS",
            )
        except asyncio.TimeoutError as e:
            raise ArtifactGenerationError(f"Artifact generation timed out after {self.timeout}s") from e
        except OSError as e:
            raise ArtifactGenerationError(f"Unable to run npm: {e}") from e
        if not result.ok:
            raise ArtifactGenerationError(
                f"Artifact generation exit with code {result.returncode}: {result.stderr[-500:]}"
            )
        return True


class SharedBuild:
    """Builds the shared artifacts every target of a full build is tested against."""

    def __init__(
        self,
        working_dir: str,
        remote_url: str,
        branch: str,
        commit: Optional[str] = None,
        identity: Optional[BotIdentity] = None,
        ssh_key: Optional[str] = None,
        install_command: str = "npm install",
        build_script: str = "build",
        install_timeout: Optional[float] = None,
    ):
        self.path = os.path.join(working_dir, SHARED_BUILD_DIR)
        self.remote_url = remote_url
        self.branch = branch
        self.commit = commit
        self.repo = GitRepository(self.path, identity=identity, ssh_key=ssh_key)
        self.install_command = install_command
        self.build_script = build_script
        self.install_timeout = install_timeout

    async def build(self):
        logger.info(f"Preparing shared build from {self.remote_url}#{self.branch}")
        try:
            await self.repo.clone(self.remote_url, self.branch)
            if self.commit:
                await self.repo.reset_hard(self.commit)
            await DependencyInstaller(self.path, self.install_command, self.install_timeout).install()
            result = await run_command(
                ["npm", "run", self.build_script], cwd=self.path, timeout=self.install_timeout, prefix="SHARED BUILD"
            )
        except asyncio.TimeoutError as e:
            raise SharedStageError(f"Shared build timed out after {self.install_timeout}s") from e
        except Exception as e:
            raise SharedStageError(f"Shared build failed: {e}") from e
        if not result.ok:
            raise SharedStageError(f"Shared build exit with code {result.returncode}: {result.stderr[-500:]}")
        logger.info("Shared build ready.")
