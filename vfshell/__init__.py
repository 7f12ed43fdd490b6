"""
vfshell - A simulated shell over a permissioned virtual filesystem

This package provides an in-memory POSIX-like filesystem with owners, groups
and mode bits, snapshot persistence under a size quota, and a shell with
pipes, redirection, conditional sequencing and background jobs.
"""

__version__ = "0.1.0"

from .errors import (
    ShellError,
    ParseError,
    PathError,
    PathNotFoundError,
    NotADirectoryPathError,
    PermissionDeniedError,
    PathTypeError,
    InvalidPermissionError,
    QuotaExceededError,
    StorageError,
    PipelineError,
    AliasLoopError,
    InvalidVariableError,
    ScopeError,
    FlagError,
    UsageError,
    JobNotFoundError,
    JobCancelledError,
    UserNotFoundError,
)

from .vfs import (
    FileSystem,
    Node,
    Mode,
)

from .storage import (
    DurableStore,
    MemoryStore,
    JsonFileStore,
)

from .users import (
    UserRegistry,
    UserStack,
)

from .environment import (
    Environment,
    AliasTable,
    Preprocessor,
)

from .command_parser import (
    Command,
    CommandParser,
    Lexer,
    Token,
    TokenType,
    Pipeline,
    CommandGroup,
    Redirect,
    RedirectType,
)

from .flags import (
    FlagSpec,
    parse_flags,
)

from .registry import (
    CommandResult,
    CommandContext,
    CommandDefinition,
    CommandRegistry,
)

from .jobs import (
    CancellationToken,
    Job,
    JobManager,
    JobStatus,
)

from .executor import CommandExecutor

from .apps import (
    App,
    AppHost,
    LineEditor,
)

from .history import CommandHistory

from .terminal import (
    TerminalSession,
    TerminalConfig,
    Completer,
)

__all__ = [
    # Errors
    "ShellError",
    "ParseError",
    "PathError",
    "PathNotFoundError",
    "NotADirectoryPathError",
    "PermissionDeniedError",
    "PathTypeError",
    "InvalidPermissionError",
    "QuotaExceededError",
    "StorageError",
    "PipelineError",
    "AliasLoopError",
    "InvalidVariableError",
    "ScopeError",
    "FlagError",
    "UsageError",
    "JobNotFoundError",
    "JobCancelledError",
    "UserNotFoundError",

    # Filesystem and storage
    "FileSystem",
    "Node",
    "Mode",
    "DurableStore",
    "MemoryStore",
    "JsonFileStore",
    "UserRegistry",
    "UserStack",

    # Preprocessing and parsing
    "Environment",
    "AliasTable",
    "Preprocessor",
    "Command",
    "CommandParser",
    "Lexer",
    "Token",
    "TokenType",
    "Pipeline",
    "CommandGroup",
    "Redirect",
    "RedirectType",

    # Execution
    "FlagSpec",
    "parse_flags",
    "CommandResult",
    "CommandContext",
    "CommandDefinition",
    "CommandRegistry",
    "CancellationToken",
    "Job",
    "JobManager",
    "JobStatus",
    "CommandExecutor",

    # Applications and terminal
    "App",
    "AppHost",
    "LineEditor",
    "TerminalSession",
    "TerminalConfig",
    "Completer",
    "CommandHistory",

    "__version__",
]
