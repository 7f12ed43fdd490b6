#!/usr/bin/env python3
"""
The command handler contract.

A command is an async function taking a CommandContext and returning a
CommandResult. CommandDefinition bundles the handler with its flag schema
and argument bounds, and CommandRegistry maps names to definitions.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional
from dataclasses import dataclass, field

from .errors import ShellError, UsageError
from .flags import FlagSpec
from .jobs import CancellationToken


@dataclass
class CommandResult:
    """
    Represents the result of a command execution.

    A result with needs_input set is not final: the command is suspended
    waiting for a line of input, and prompt says what it is asking for.
    """
    success: bool = True
    output: str = ''
    error: str = ''
    exit_code: int = 0
    job_id: Optional[int] = None
    needs_input: bool = False
    prompt: Optional[str] = None

    @classmethod
    def ok(cls, output: str = '') -> 'CommandResult':
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str, exit_code: int = 1) -> 'CommandResult':
        return cls(success=False, error=error, exit_code=exit_code)

    def __str__(self) -> str:
        if self.success:
            return self.output
        return self.error


@dataclass
class CommandContext:
    """Everything a command handler can see while it runs."""
    name: str
    args: List[str]
    flags: Dict[str, Any]
    stdin: Optional[str]
    user: str
    fs: Any
    session: Any
    token: CancellationToken
    job_id: Optional[int] = None
    background: bool = False
    input_handler: Optional[Callable[[str], Awaitable[str]]] = None
    cwd: Optional[str] = None
    depth: int = 0
    budget: Any = None

    def resolve(self, path: str) -> str:
        """path as the filesystem should look it up from this command's directory."""
        return self.fs.path_from(path, self.cwd)

    async def request_input(self, prompt: str) -> str:
        """Suspend until the host supplies a line of input."""
        if self.background or self.input_handler is None:
            raise ShellError(f"{self.name}: cannot read input here")
        self.token.raise_if_cancelled()
        return await self.input_handler(prompt)


Handler = Callable[[CommandContext], Awaitable[CommandResult]]


@dataclass
class CommandDefinition:
    name: str
    handler: Handler
    flags: List[FlagSpec] = field(default_factory=list)
    min_args: int = 0
    max_args: Optional[int] = None
    description: str = ''
    usage: str = ''

    def check_arity(self, args: List[str]) -> None:
        if len(args) < self.min_args:
            raise UsageError("missing operand" + self._usage_hint())
        if self.max_args is not None and len(args) > self.max_args:
            raise UsageError("too many arguments" + self._usage_hint())

    def _usage_hint(self) -> str:
        return f"\nUsage: {self.usage}" if self.usage else ''


class CommandRegistry:
    """Name -> CommandDefinition lookup."""

    def __init__(self):
        self._commands: Dict[str, CommandDefinition] = {}

    def register(self, definition: CommandDefinition) -> None:
        self._commands[definition.name] = definition

    def command(self, name: str, flags: Optional[List[FlagSpec]] = None,
                min_args: int = 0, max_args: Optional[int] = None,
                description: str = '', usage: str = ''):
        """Decorator form of register()."""
        def decorator(handler: Handler) -> Handler:
            self.register(CommandDefinition(
                name=name, handler=handler, flags=list(flags or []),
                min_args=min_args, max_args=max_args,
                description=description or (handler.__doc__ or '').strip().split('\n')[0],
                usage=usage,
            ))
            return handler
        return decorator

    def get(self, name: str) -> Optional[CommandDefinition]:
        return self._commands.get(name)

    def names(self) -> List[str]:
        return sorted(self._commands)

    def __contains__(self, name: str) -> bool:
        return name in self._commands

    def __len__(self) -> int:
        return len(self._commands)
