#!/usr/bin/env python3
"""
Pipeline executor for vfshell.

Takes raw command lines through preprocessing and parsing, then runs the
resulting pipelines against the command registry and the filesystem.

Design Principles:
- Errors never escape: every failure becomes a failed CommandResult
- Segments run strictly left to right, operators strictly in order
- Background pipelines are handed to the JobManager and not awaited
- A command can suspend for input; the host resumes it explicitly
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional

from .apps import AppHost
from .command_parser import CommandParser, Command, Pipeline, CommandGroup, RedirectType, Redirect
from .environment import Environment, AliasTable, Preprocessor, DEFAULT_ALIAS_ITERATIONS
from .errors import ShellError, PipelineError, PathTypeError, UserNotFoundError
from .flags import parse_flags
from .history import CommandHistory
from .jobs import CancellationToken, JobManager
from .registry import CommandContext, CommandRegistry, CommandResult
from .users import UserStack
from .vfs import FileSystem


logger = logging.getLogger(__name__)


@dataclass
class ScriptBudget:
    """Execution steps shared by a script and every script it runs."""
    limit: int
    used: int = 0

    def take(self) -> bool:
        self.used += 1
        return self.used <= self.limit


@dataclass
class Invocation:
    """
    Who runs a pipeline, from which directory, and under which job.

    A user or cwd of None means "whatever is current when the pipeline
    starts". Background jobs pin both.
    """
    user: Optional[str] = None
    cwd: Optional[str] = None
    token: CancellationToken = field(default_factory=CancellationToken)
    background: bool = False
    job_id: Optional[int] = None
    depth: int = 0
    budget: Optional[ScriptBudget] = None


class CommandExecutor:
    """
    Runs command lines for one shell session.

    The executor owns the per-session state commands operate on: the
    environment, the alias table, the user stack and the job manager. The
    filesystem and the command registry are passed in.
    """

    def __init__(self, fs: FileSystem, registry: Optional[CommandRegistry] = None,
                 user: Optional[str] = None, hostname: str = 'vfshell',
                 alias_max_iterations: int = DEFAULT_ALIAS_ITERATIONS,
                 jobs: Optional[JobManager] = None, history_size: int = 1000):
        if registry is None:
            from .builtins import create_registry
            registry = create_registry()
        user = user or fs.default_user
        if not fs.users.user_exists(user):
            fs.users.add_user(user)

        self.fs = fs
        self.registry = registry
        self.users = fs.users
        self.hostname = hostname
        self.user_stack = UserStack(user)
        self.environment = Environment(user, hostname)
        self.aliases = AliasTable(alias_max_iterations)
        self.preprocessor = Preprocessor(self.environment, self.aliases, fs, lambda: self.user)
        self.parser = CommandParser()
        self.jobs = jobs or JobManager()
        self.apps = AppHost(self)
        self.history = CommandHistory(history_size)
        self.exit_requested = False

        self._cwd_stack: List[str] = []
        self._task: Optional[asyncio.Task] = None
        self._suspended: Optional[asyncio.Future] = None
        self._input_future: Optional[asyncio.Future] = None

    @property
    def user(self) -> str:
        return self.user_stack.current

    @property
    def cwd(self) -> str:
        return self.fs.current_path

    @property
    def input_pending(self) -> bool:
        return self._input_future is not None and not self._input_future.done()

    # Foreground control

    async def run(self, command_text: str) -> CommandResult:
        """
        Execute one command line.

        Returns the final result, or a needs_input result if a command is
        waiting for input (resume it with provide_input()).
        """
        if self.input_pending:
            return CommandResult.fail("a command is waiting for input; provide it or cancel it first")
        loop = asyncio.get_running_loop()
        self._suspended = loop.create_future()
        self._task = loop.create_task(self.execute_line(command_text))
        return await self._wait_foreground()

    async def provide_input(self, value: str) -> CommandResult:
        """Resume the suspended command with value."""
        if not self.input_pending:
            return CommandResult.fail("no command is waiting for input")
        self._suspended = asyncio.get_running_loop().create_future()
        self._input_future.set_result(value)
        return await self._wait_foreground()

    async def cancel_input(self) -> CommandResult:
        """Abandon the command that is waiting for input."""
        task = self._task
        if task is None or task.done():
            self._clear_foreground()
            return CommandResult.fail("no command is waiting for input")
        task.cancel()
        await asyncio.wait({task})
        self._clear_foreground()
        return CommandResult.fail("input cancelled", exit_code=130)

    async def _wait_foreground(self) -> CommandResult:
        task = self._task
        waiter = self._suspended
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            self._clear_foreground()
            try:
                return task.result()
            except Exception as e:
                logger.exception("Unexpected error running command line")
                return CommandResult.fail(str(e))
        prompt = waiter.result()
        return CommandResult(success=True, needs_input=True, prompt=prompt)

    def _clear_foreground(self) -> None:
        self._task = None
        self._suspended = None
        self._input_future = None

    async def _request_input(self, prompt: str) -> str:
        self._input_future = asyncio.get_running_loop().create_future()
        self._suspended.set_result(prompt)
        return await self._input_future

    # Line and group execution

    async def execute_line(self, command_text: str,
                           invocation: Optional[Invocation] = None) -> CommandResult:
        """Preprocess, parse and execute a command line."""
        if not command_text or not command_text.strip():
            return CommandResult.ok()
        try:
            processed = self.preprocessor.process(command_text)
            group = self.parser.parse(processed)
        except ShellError as e:
            return CommandResult.fail(str(e))
        return await self.execute_group(group, invocation)

    async def execute_group(self, group: CommandGroup,
                            invocation: Optional[Invocation] = None) -> CommandResult:
        """
        Execute pipelines honoring ;, &&, || and &.

        A pipeline skipped by && or || leaves the last status unchanged.
        """
        base = invocation or Invocation()
        last_success = True
        overall = CommandResult.ok()

        for index, (pipeline, _) in enumerate(group.pipelines):
            if index > 0:
                previous = group.pipelines[index - 1][1]
                if previous == '&&' and not last_success:
                    continue
                if previous == '||' and last_success:
                    continue

            if pipeline.background:
                job_id = self.spawn_background(pipeline, base)
                result = CommandResult(success=True, output=f"[{job_id}] Backgrounded.", job_id=job_id)
            else:
                result = await self.execute_pipeline(pipeline, base)

            last_success = result.success
            overall = result

        return overall

    def _pin(self, invocation: Invocation) -> Invocation:
        """Fill in the live user and directory where invocation leaves them open."""
        return replace(invocation, user=invocation.user or self.user,
                       cwd=invocation.cwd or self.cwd)

    def spawn_background(self, pipeline: Pipeline, parent: Optional[Invocation] = None) -> int:
        """Start pipeline as a job that runs as the current user, in the current directory."""
        pinned = self._pin(parent or Invocation())
        spawned = {}

        async def runner(token: CancellationToken) -> CommandResult:
            return await self.execute_pipeline(pipeline, replace(
                pinned, token=token, background=True, job_id=spawned.get('id')))

        spawned['id'] = self.jobs.spawn(str(pipeline), runner)
        logger.debug("Job %s runs as %s in %s", spawned['id'], pinned.user, pinned.cwd)
        return spawned['id']

    async def execute_pipeline(self, pipeline: Pipeline,
                               invocation: Optional[Invocation] = None) -> CommandResult:
        """
        Run each segment with the previous segment's output as its stdin.

        The first failing segment stops the pipeline. Output redirection is
        applied only when every segment succeeded.
        """
        invocation = self._pin(invocation or Invocation())
        user = invocation.user
        stdin: Optional[str] = None

        if pipeline.input_redirect:
            try:
                stdin = self._read_redirect_source(pipeline.input_redirect, invocation)
            except ShellError as e:
                return CommandResult.fail(str(e))

        result = CommandResult.ok()
        for command in pipeline.commands:
            result = await self._run_command(command, stdin, invocation)
            if not result.success:
                if not result.error:
                    # Silent failure, as from `false`.
                    return CommandResult.fail('', result.exit_code or 1)
                error = PipelineError(command.name, result.error)
                if invocation.background:
                    logger.info("Background job %s: %s", invocation.job_id, error)
                return CommandResult.fail(str(error), result.exit_code or 1)
            stdin = result.output

        if pipeline.output_redirect:
            try:
                await self._write_redirect_target(
                    pipeline.output_redirect, result.output or '', user, invocation.cwd)
            except ShellError as e:
                return CommandResult.fail(str(e))
            return CommandResult.ok()

        return result

    async def _run_command(self, command: Command, stdin: Optional[str],
                           invocation: Invocation) -> CommandResult:
        definition = self.registry.get(command.name)
        if definition is None:
            return CommandResult.fail(f"{command.name}: command not found", 127)

        logger.debug("Dispatching %s", command)
        try:
            flags, args = parse_flags(command.args, definition.flags)
            definition.check_arity(args)
            ctx = CommandContext(
                name=command.name, args=args, flags=flags, stdin=stdin,
                user=invocation.user, fs=self.fs, session=self, token=invocation.token,
                job_id=invocation.job_id, background=invocation.background,
                input_handler=None if invocation.background else self._request_input,
                cwd=invocation.cwd, depth=invocation.depth, budget=invocation.budget,
            )
            result = await definition.handler(ctx)
        except ShellError as e:
            return CommandResult.fail(f"{command.name}: {e}")
        except Exception as e:
            logger.exception("Command '%s' raised", command.name)
            return CommandResult.fail(f"Command '{command.name}' failed: {e}")

        if result is None:
            return CommandResult.fail(f"Command '{command.name}' returned no result")
        return result

    # Redirection

    def _read_redirect_source(self, redirect: Redirect, invocation: Invocation) -> str:
        target = self.fs.path_from(redirect.target, invocation.cwd)
        node = self.fs.get_node(target, invocation.user)
        if not node.is_file():
            raise PathTypeError(f"{redirect.target}: Is a directory", self.fs.resolve_path(target))
        self.fs._require(node, invocation.user, 'read', redirect.target, 'cannot open')
        return node.content

    async def _write_redirect_target(self, redirect: Redirect, output: str, user: str,
                                     cwd: Optional[str] = None) -> None:
        """Write output to the redirect target and persist the tree."""
        target = self.fs.path_from(redirect.target, cwd)
        existing = self.fs.find_node(target, user)
        if existing is not None and existing.is_dir():
            raise PathTypeError(f"'{redirect.target}' is a directory", self.fs.resolve_path(target))

        content = output
        if redirect.type == RedirectType.APPEND and existing is not None:
            previous = existing.content
            if previous and not previous.endswith('\n') and output:
                previous += '\n'
            content = previous + output

        self.fs.create_or_update_file(target, content, user)
        await self.fs.save()

    # Session user handling

    def change_directory(self, path: str) -> str:
        node = self.fs.get_node(path, self.user)
        abs_path = self.fs.resolve_path(path)
        if not node.is_dir():
            raise PathTypeError(f"{path}: Not a directory", abs_path)
        self.fs._require(node, self.user, 'execute', path)
        self.fs.current_path = abs_path
        return abs_path

    def enter_user(self, name: str) -> None:
        """Start a sub-session as name (su)."""
        if not self.users.user_exists(name):
            raise UserNotFoundError(f"user '{name}' does not exist")
        self._cwd_stack.append(self.fs.current_path)
        self.user_stack.push(name)
        self.environment.push()
        home = f"/home/{name}"
        self.environment.set('USER', name)
        self.environment.set('HOME', home)
        try:
            self.change_directory(home)
        except ShellError:
            self.fs.current_path = '/'
        logger.info("Switched to user %s", name)

    def leave_user(self) -> bool:
        """End the current sub-session. Returns False at the base user."""
        if self.user_stack.pop() is None:
            return False
        self.environment.pop()
        previous = self._cwd_stack.pop() if self._cwd_stack else '/'
        self.fs.current_path = previous if self.fs.exists(previous) else '/'
        logger.info("Returned to user %s", self.user)
        return True
