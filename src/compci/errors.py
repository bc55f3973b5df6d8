from enum import Enum
from typing import Optional


class CIError(Exception):
    """Base class for errors raised while running a verification job."""


class GitErrorKind(str, Enum):
    AUTH = "auth"
    MISSING_REF = "missing-ref"
    DUPLICATE_TAG = "duplicate-tag"
    PUSH_REJECTED = "push-rejected"
    NETWORK = "network"
    COMMAND = "command"


class GitError(CIError):
    def __init__(self, message: str, kind: GitErrorKind = GitErrorKind.COMMAND, stderr: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.stderr = stderr


class WorkingDirectoryError(CIError):
    pass


class DependencyInstallError(CIError):
    pass


class ArtifactGenerationError(CIError):
    pass


class TestExecutionError(CIError):
    __test__ = False


class StoreWriteError(CIError):
    pass


class SharedStageError(CIError):
    """Raised out of a pipeline run when the shared preparation stage fails."""


def error_message(error: Optional[BaseException]) -> str:
    if error is None:
        return "Unknown error occurred"
    message = str(error).strip()
    return message or "Unknown error occurred"
