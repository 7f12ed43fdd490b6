#!/usr/bin/env python3
"""
Error taxonomy for vfshell.

Every failure the core can report is a ShellError subclass. Filesystem and
preprocessing code raise these; the executor turns them into failed
CommandResults at the pipeline boundary so they never escape to the host.
"""

from typing import Optional


class ShellError(Exception):
    """Base class for all vfshell errors."""
    pass


class ParseError(ShellError):
    """Malformed command syntax. Nothing executes for the line."""
    pass


class PathError(ShellError):
    """Base class for path resolution and node lookup failures."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class PathNotFoundError(PathError):
    """The path, or one of its components, does not exist."""
    pass


class NotADirectoryPathError(PathNotFoundError):
    """A component in the middle of a path is a file."""
    pass


class PermissionDeniedError(PathError):
    """The user lacks the permission bit an operation needs."""
    pass


class PathTypeError(PathError):
    """The node exists but is the wrong kind (file vs directory)."""
    pass


class InvalidPermissionError(ShellError):
    """An unknown permission kind was requested. Always denied."""
    pass


class QuotaExceededError(ShellError):
    """The tree is larger than the configured quota; the save was aborted."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Disk quota exceeded: {size} bytes used, limit is {limit} bytes")
        self.size = size
        self.limit = limit


class StorageError(ShellError):
    """The durable store could not be read or written."""
    pass


class PipelineError(ShellError):
    """Wraps the first failing segment of a pipeline."""

    def __init__(self, command: str, detail: str):
        super().__init__(f"pipeline error for '{command}': {detail}")
        self.command = command
        self.detail = detail


class AliasLoopError(ShellError):
    """Alias expansion did not settle within the iteration bound."""
    pass


class InvalidVariableError(ShellError):
    """An environment variable name is not a valid identifier."""
    pass


class ScopeError(ShellError):
    """Attempt to pop the base environment scope."""
    pass


class FlagError(ShellError):
    """A flag value could not be converted to its declared type."""
    pass


class UsageError(ShellError):
    """Wrong number of arguments for a command."""
    pass


class JobNotFoundError(ShellError):
    """No active job has the requested id."""
    pass


class JobCancelledError(ShellError):
    """Raised inside a job once its cancellation token has fired."""
    pass


class UserNotFoundError(ShellError):
    """The named user or group does not exist."""
    pass
