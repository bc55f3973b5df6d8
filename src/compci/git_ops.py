import asyncio
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from .errors import GitError, GitErrorKind, WorkingDirectoryError
from .process import CommandResult, run_command

logger = logging.getLogger(__name__)

Signer = Callable[[str], Awaitable[str]]

_AUTH_MARKERS = (
    "permission denied",
    "authentication failed",
    "could not read username",
    "host key verification failed",
    "invalid username or password",
)
_NETWORK_MARKERS = (
    "could not resolve host",
    "connection timed out",
    "connection refused",
    "network is unreachable",
    "unable to access",
)
_MISSING_REF_MARKERS = (
    "not found in upstream",
    "couldn't find remote ref",
    "did not match any",
    "unknown revision",
    "not a valid object name",
    "repository not found",
    "does not exist",
)
_REJECTED_MARKERS = (
    "[rejected]",
    "non-fast-forward",
    "failed to push some refs",
    "[remote rejected]",
)


def classify_git_error(stderr: str) -> GitErrorKind:
    text = (stderr or "").lower()
    if any(marker in text for marker in _AUTH_MARKERS):
        return GitErrorKind.AUTH
    if any(marker in text for marker in _NETWORK_MARKERS):
        return GitErrorKind.NETWORK
    if any(marker in text for marker in _REJECTED_MARKERS):
        return GitErrorKind.PUSH_REJECTED
    if any(marker in text for marker in _MISSING_REF_MARKERS):
        return GitErrorKind.MISSING_REF
    return GitErrorKind.COMMAND


@dataclass
class BotIdentity:
    name: str
    email: str

    def env(self) -> Dict[str, str]:
        return {
            "GIT_AUTHOR_NAME": self.name,
            "GIT_AUTHOR_EMAIL": self.email,
            "GIT_COMMITTER_NAME": self.name,
            "GIT_COMMITTER_EMAIL": self.email,
        }


async def create_working_directory(root: Optional[str] = None) -> str:
    """Allocate a unique ephemeral directory and return its resolved path."""
    logger.debug("Creating working directory...")
    try:
        path = await asyncio.to_thread(tempfile.mkdtemp, prefix="compci-", dir=root)
    except OSError as e:
        raise WorkingDirectoryError(f"Unable to create a temp dir: {e}") from e
    path = os.path.realpath(path)
    logger.info(f"Created working directory {path}")
    return path


async def remove_directory(path: Optional[str]) -> bool:
    """Recursively remove ``path``.

    Returns False when there was nothing to remove. Errors other than the
    directory being already gone propagate to the caller.
    """
    if not path:
        return False
    logger.debug(f"Removing {path}")
    try:
        await asyncio.to_thread(shutil.rmtree, path)
    except FileNotFoundError:
        return False
    return True


class GitRepository:
    """Version control operations on a single local clone."""

    def __init__(
        self,
        path: str,
        identity: Optional[BotIdentity] = None,
        ssh_key: Optional[str] = None,
        signer: Optional[Signer] = None,
        remote: str = "origin",
    ):
        self.path = path
        self.identity = identity or BotIdentity("compci-bot", "compci-bot@localhost")
        self.ssh_key = ssh_key
        self.signer = signer
        self.remote = remote

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.update(self.identity.env())
        if self.ssh_key:
            env["GIT_SSH_COMMAND"] = (
                f"ssh -i {self.ssh_key} -o IdentitiesOnly=yes -o StrictHostKeyChecking=accept-new"
            )
        return env

    async def _git(self, *args: str, cwd: Optional[str] = None, input: Optional[str] = None,
                   check: bool = True) -> CommandResult:
        try:
            result = await run_command(
                ["git", *args],
                cwd=cwd or self.path,
                env=self._env(),
                input=input,
                prefix="GIT",
            )
        except OSError as e:
            raise GitError(f"Unable to execute git: {e}") from e
        if check and not result.ok:
            raise GitError(
                f"git {args[0]} failed: {result.stderr or result.stdout}",
                kind=classify_git_error(result.stderr),
                stderr=result.stderr,
            )
        return result

    async def _ref_exists(self, ref: str) -> bool:
        result = await self._git("show-ref", "--verify", "--quiet", ref, check=False)
        return result.ok

    async def current_branch(self) -> str:
        result = await self._git("rev-parse", "--abbrev-ref", "HEAD")
        return result.stdout

    async def head_commit(self) -> str:
        result = await self._git("rev-parse", "HEAD")
        return result.stdout

    async def reset_hard(self, ref: str):
        await self._git("reset", "--hard", ref)

    async def clone(self, remote_url: str, branch: str):
        logger.info(f"Cloning {remote_url}...")
        parent = os.path.dirname(self.path) or "."
        await self._git("clone", "--origin", self.remote, remote_url, self.path, cwd=parent)
        logger.debug("Repository cloned.")
        current = await self.current_branch()
        if current != branch:
            await self.checkout_or_create_branch(branch, require_remote=True)
        logger.info(f"On branch {await self.current_branch()}")

    async def checkout_or_create_branch(self, name: str, require_remote: bool = False):
        """Put the working tree on branch ``name``.

        On the branch already: nothing to do. Local branch: checkout.
        Remote-only branch: create a tracking branch and reset it to the
        remote tip. Nowhere: create it from HEAD, unless ``require_remote``.
        """
        if await self.current_branch() == name:
            return
        logger.debug(f"Changing branch to {name}...")
        if await self._ref_exists(f"refs/heads/{name}"):
            await self._git("checkout", name)
            return
        remote_ref = f"refs/remotes/{self.remote}/{name}"
        if await self._ref_exists(remote_ref):
            await self._git("branch", "--track", name, f"{self.remote}/{name}")
            await self._git("checkout", name)
            await self.reset_hard(remote_ref)
            return
        if require_remote:
            raise GitError(f"Branch {name} does not exist on {self.remote}", kind=GitErrorKind.MISSING_REF)
        logger.debug(f"Creating branch {name}...")
        await self._git("checkout", "-b", name)

    async def commit(self, branch: str, message: str, tree_id: str, parents: Sequence[str]) -> str:
        """Create a commit of ``tree_id`` on ``branch`` as the bot identity.

        When a signer is configured the raw commit object is passed to it
        and the returned armored signature is stored in a gpgsig header.
        """
        if self.signer:
            commit_id = await self._write_signed_commit(message, tree_id, parents)
        else:
            args: List[str] = ["commit-tree", tree_id]
            for parent in parents:
                args.extend(["-p", parent])
            args.extend(["-m", message])
            commit_id = (await self._git(*args)).stdout
        ref = branch if branch == "HEAD" or branch.startswith("refs/") else f"refs/heads/{branch}"
        await self._git("update-ref", ref, commit_id)
        logger.info(f"Created commit {commit_id} on {branch}")
        return commit_id

    async def _write_signed_commit(self, message: str, tree_id: str, parents: Sequence[str]) -> str:
        stamp = f"{int(time.time())} +0000"
        person = f"{self.identity.name} <{self.identity.email}> {stamp}"
        headers = [f"tree {tree_id}"]
        headers.extend(f"parent {parent}" for parent in parents)
        headers.append(f"author {person}")
        headers.append(f"committer {person}")
        body = message if message.endswith("\n") else message + "\n"
        payload = "\n".join(headers) + "\n\n" + body

        signature = (await self.signer(payload)).strip()
        if not signature:
            raise GitError("Commit signer returned an empty signature")
        headers.append("gpgsig " + "\n ".join(signature.splitlines()))
        signed = "\n".join(headers) + "\n\n" + body
        result = await self._git("hash-object", "-t", "commit", "-w", "--stdin", input=signed)
        return result.stdout

    async def tag(self, version: str, commit_id: str, message: str):
        # Check-then-create: two concurrent taggers can still race here.
        if await self._ref_exists(f"refs/tags/{version}"):
            raise GitError(f"Tag {version} already exists", kind=GitErrorKind.DUPLICATE_TAG)
        await self._git("tag", "-a", version, commit_id, "-m", message)
        logger.info(f"Created tag {version} at {commit_id}")

    async def push(self, refs: Sequence[str]):
        if not refs:
            raise ValueError("push requires at least one refspec")
        logger.info(f"Pushing to the remote: {', '.join(refs)}")
        await self._git("push", self.remote, *refs)

    async def release(self, version: str, commit_id: str, message: str):
        await self.tag(version, commit_id, message)
        await self.push([f"refs/tags/{version}:refs/tags/{version}"])

    async def cleanup(self) -> bool:
        return await remove_directory(self.path)
