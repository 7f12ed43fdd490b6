#!/usr/bin/env python3
"""
Terminal session for vfshell.

This module wires the filesystem, the executor and the application host
into an interactive session, and provides the command line entry point.

Design Principles:
- The session owns one asyncio event loop; background jobs live on it
- Input routing: active app first, then a pending input prompt, then the shell
- Job notifications are shown between commands, never in the middle of one
"""

import sys
import json
import socket
import asyncio
import logging
from typing import Optional, List
from dataclasses import dataclass, field, fields
from datetime import datetime

from .environment import DEFAULT_ALIAS_ITERATIONS
from .errors import ShellError, StorageError
from .executor import CommandExecutor
from .history import CommandHistory
from .registry import CommandResult
from .storage import DurableStore, JsonFileStore, MemoryStore
from .vfs import FileSystem, DEFAULT_MAX_VFS_SIZE, DEFAULT_MAX_DEPTH

try:
    import readline
except ImportError:
    readline = None


logger = logging.getLogger(__name__)

COMPLETER_DELIMS = " \t\n;|&<>"


@dataclass
class TerminalConfig:
    """Configuration for terminal session."""
    user: str = 'Guest'
    hostname: str = field(default_factory=lambda: socket.gethostname().split('.')[0])
    initial_dir: Optional[str] = None  # None -> the user's home directory
    prompt_format: str = '{user}@{hostname}:{cwd}$ '
    enable_colors: bool = True
    history_size: int = 1000
    enable_tab_completion: bool = True
    state_directory: Optional[str] = None  # None -> snapshots kept in memory only
    max_vfs_size: int = DEFAULT_MAX_VFS_SIZE
    alias_max_iterations: int = DEFAULT_ALIAS_ITERATIONS
    max_tree_depth: int = DEFAULT_MAX_DEPTH
    log_level: str = 'WARNING'

    @classmethod
    def from_file(cls, path: str) -> 'TerminalConfig':
        """Load overrides from a JSON object. Unknown keys are rejected."""
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{path}: configuration must be a JSON object")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"{path}: unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)


class Completer:
    """
    Tab completion for readline.

    The first word completes to command and alias names; later words
    complete to paths in the virtual filesystem, directories with a
    trailing slash.
    """

    def __init__(self, executor: CommandExecutor):
        self.executor = executor
        self.matches: List[str] = []

    def complete(self, text: str, state: int) -> Optional[str]:
        if state == 0:
            if readline.get_begidx() == 0:
                self.matches = self.complete_command(text)
            else:
                self.matches = self.complete_path(text)
        try:
            return self.matches[state]
        except IndexError:
            return None

    def complete_command(self, text: str) -> List[str]:
        names = set(self.executor.registry.names()) | set(self.executor.aliases.all())
        return sorted(name for name in names if name.startswith(text))

    def complete_path(self, text: str) -> List[str]:
        directory, slash, prefix = text.rpartition('/')
        lookup = directory or ('/' if slash else '.')
        fs = self.executor.fs
        user = self.executor.user
        try:
            node = fs.get_node(lookup, user)
            names = fs.list_directory(lookup, user)
        except ShellError as e:
            logger.debug("No completions under %s: %s", lookup, e)
            return []

        matches = []
        for name in names:
            if not name.startswith(prefix):
                continue
            if name.startswith('.') and not prefix.startswith('.'):
                continue
            candidate = f"{directory}{slash}{name}"
            if node.children[name].is_dir():
                candidate += '/'
            matches.append(candidate)
        return matches


class TerminalSession:
    """
    One interactive shell: a filesystem, an executor and an event loop.

    All asyncio work runs on the session's own loop, so background jobs
    started by one command keep running while later commands execute.
    """

    def __init__(self, config: Optional[TerminalConfig] = None,
                 store: Optional[DurableStore] = None):
        self.config = config or TerminalConfig()
        if store is None:
            if self.config.state_directory:
                store = JsonFileStore(self.config.state_directory)
            else:
                store = MemoryStore()

        self.loop = asyncio.new_event_loop()
        self.fs = FileSystem(
            store=store,
            default_user=self.config.user,
            max_size=self.config.max_vfs_size,
            max_depth=self.config.max_tree_depth,
        )
        try:
            self.loop.run_until_complete(self.fs.load())
        except StorageError as e:
            logger.error("Starting with a fresh filesystem: %s", e)

        self.executor = CommandExecutor(
            self.fs,
            user=self.config.user,
            hostname=self.config.hostname,
            alias_max_iterations=self.config.alias_max_iterations,
            history_size=self.config.history_size,
        )
        self.history: CommandHistory = self.executor.history
        self.readline_enabled = False
        self.running = False
        self.input_prompt: Optional[str] = None

        start = self.config.initial_dir or f"/home/{self.config.user}"
        try:
            self.executor.change_directory(start)
        except ShellError as e:
            logger.warning("Cannot start in %s: %s", start, e)

    def close(self) -> None:
        if self.loop.is_closed():
            return
        pending = [job.task for job in self.executor.jobs.active() if job.task is not None]
        for task in pending:
            task.cancel()
        if pending:
            self.loop.run_until_complete(asyncio.wait(pending))
        self.loop.close()

    def __enter__(self) -> 'TerminalSession':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def get_prompt(self) -> str:
        """Generate the prompt for the next line of input."""
        if self.executor.apps.active is not None:
            return self.executor.apps.prompt
        if self.input_prompt is not None:
            return self.input_prompt

        cwd = self.executor.cwd
        home = self.executor.environment.get('HOME', '')
        if home and (cwd == home or cwd.startswith(home + '/')):
            display_cwd = '~' + cwd[len(home):]
        else:
            display_cwd = cwd

        user = self.executor.user
        hostname = self.config.hostname
        if self.config.enable_colors:
            # Green for user@host, blue for path
            user = f'\033[32m{user}'
            hostname = f'{hostname}\033[0m'
            display_cwd = f'\033[34m{display_cwd}\033[0m'

        return self.config.prompt_format.format(
            user=user,
            hostname=hostname,
            cwd=display_cwd,
            time=datetime.now().strftime('%H:%M:%S'),
        )

    def execute_command(self, command_line: str) -> CommandResult:
        """
        Route one line of input and return its result.

        The line goes to the active application if there is one, then to
        a command waiting for input, and otherwise to the shell.
        """
        apps = self.executor.apps
        if apps.active is not None:
            try:
                output = self.loop.run_until_complete(apps.handle_input(command_line))
            except ShellError as e:
                return CommandResult.fail(str(e))
            return CommandResult.ok(output or '')

        if self.executor.input_pending:
            result = self.loop.run_until_complete(self.executor.provide_input(command_line))
        else:
            try:
                command_line = self.history.expand(command_line)
            except ShellError as e:
                return CommandResult.fail(str(e))
            if self.history.add(command_line) and self.readline_enabled:
                readline.add_history(command_line)
            result = self.loop.run_until_complete(self.executor.run(command_line))

        self.input_prompt = result.prompt if result.needs_input else None
        return result

    def cancel_input(self) -> CommandResult:
        self.input_prompt = None
        return self.loop.run_until_complete(self.executor.cancel_input())

    def drain_notifications(self) -> List[str]:
        """Give background jobs a turn, then collect their status lines."""
        self.loop.run_until_complete(asyncio.sleep(0))
        return self.executor.jobs.drain_notifications()

    def wait_for_jobs(self) -> List[str]:
        self.loop.run_until_complete(self.executor.jobs.wait_all())
        return self.executor.jobs.drain_notifications()

    def run_command(self, command_line: str) -> str:
        """
        Run one line and return its output, or its error text on failure.
        """
        return str(self.execute_command(command_line))

    def run_script(self, script_lines: List[str]) -> List[str]:
        """Run command lines in order, skipping blanks and comments."""
        outputs = []
        for line in script_lines:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            outputs.append(self.run_command(line))
            if self.executor.exit_requested:
                break
        return outputs

    async def _read_line(self, prompt: str) -> str:
        # Read in a worker thread so background jobs keep running.
        return await self.loop.run_in_executor(None, input, prompt)

    def _setup_readline(self) -> None:
        """Configure line editing, tab completion and arrow-key history."""
        if readline is None:
            logger.info("readline is not available; line editing disabled")
            return
        if self.config.enable_tab_completion:
            readline.set_completer(Completer(self.executor).complete)
            readline.set_completer_delims(COMPLETER_DELIMS)
            readline.parse_and_bind('tab: complete')
        readline.parse_and_bind('set editing-mode emacs')
        readline.set_history_length(self.config.history_size)
        # Only shell lines go into the history, not answers to `read` or editor input.
        readline.set_auto_history(False)
        for entry in self.history.entries:
            readline.add_history(entry)
        self.history.on_clear = readline.clear_history
        self.readline_enabled = True

    def run_interactive(self):
        """Run the interactive REPL loop."""
        self.running = True
        self._setup_readline()

        print("Welcome to vfshell")
        print("Type 'help' for help, 'exit' to quit")
        print()

        while self.running:
            for message in self.drain_notifications():
                print(message)
            try:
                command_line = self.loop.run_until_complete(self._read_line(self.get_prompt()))
                result = self.execute_command(command_line)
                if result.success and result.output:
                    print(result.output)
                elif not result.success and result.error:
                    print(result.error, file=sys.stderr)
                if self.executor.exit_requested:
                    break
            except KeyboardInterrupt:
                print("^C")
                if self.executor.input_pending:
                    self.cancel_input()
                continue
            except EOFError:
                print()
                break

        self.running = False
        print("Goodbye!")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the terminal."""
    import argparse

    parser = argparse.ArgumentParser(description='vfshell virtual filesystem shell')
    parser.add_argument('-c', '--command', help='Execute command and exit')
    parser.add_argument('-u', '--user', help='Set username')
    parser.add_argument('-d', '--directory', help='Set initial directory')
    parser.add_argument('--state-dir', help='Host directory for filesystem snapshots')
    parser.add_argument('--config', help='JSON configuration file')
    parser.add_argument('--log-level', help='Logging level (default: WARNING)')
    args = parser.parse_args(argv)

    try:
        config = TerminalConfig.from_file(args.config) if args.config else TerminalConfig()
    except (OSError, ValueError) as e:
        print(f"vfshell: {e}", file=sys.stderr)
        return 2
    if args.user:
        config.user = args.user
    if args.directory:
        config.initial_dir = args.directory
    if args.state_dir:
        config.state_directory = args.state_dir
    if args.log_level:
        config.log_level = args.log_level

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.WARNING),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    session = TerminalSession(config=config)
    try:
        if args.command:
            result = session.execute_command(args.command)
            if result.success and result.output:
                print(result.output)
            elif not result.success and result.error:
                print(result.error, file=sys.stderr)
            for message in session.wait_for_jobs():
                print(message)
            return 0 if result.success else 1
        session.run_interactive()
        return 0
    finally:
        session.close()


if __name__ == '__main__':
    sys.exit(main())
