#!/usr/bin/env python3
"""
Application host.

An application takes over the terminal: while one is active, every line
the user types goes to its handle_input() instead of the shell. Apps see
the filesystem and can run shell commands through the host, but never
reach into the executor's internals.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from .errors import ShellError


logger = logging.getLogger(__name__)


class App(ABC):
    """Base class for full-terminal applications."""

    name = 'app'

    def __init__(self):
        self.host: Optional['AppHost'] = None

    @abstractmethod
    async def enter(self, host: 'AppHost', **options) -> Optional[str]:
        """Start the app. Returns text to show on entry."""

    async def exit(self) -> None:
        """Called by the host when the app is closed."""

    @abstractmethod
    async def handle_input(self, text: str) -> Optional[str]:
        """Handle one line of terminal input. Returns text to show."""


class AppHost:
    """Owns at most one active app and routes input to it."""

    def __init__(self, executor):
        self.executor = executor
        self.active: Optional[App] = None

    @property
    def fs(self):
        return self.executor.fs

    @property
    def user(self) -> str:
        return self.executor.user

    @property
    def prompt(self) -> str:
        return getattr(self.active, 'prompt', '> ')

    async def run(self, command_text: str):
        return await self.executor.run(command_text)

    async def launch(self, app: App, **options) -> Optional[str]:
        if self.active is not None:
            raise ShellError(f"{self.active.name} is already running")
        self.active = app
        app.host = self
        logger.info("Entered app %s", app.name)
        try:
            return await app.enter(self, **options)
        except Exception:
            self.active = None
            raise

    async def handle_input(self, text: str) -> Optional[str]:
        if self.active is None:
            raise ShellError("no application is running")
        return await self.active.handle_input(text)

    async def close(self) -> None:
        app, self.active = self.active, None
        if app is not None:
            await app.exit()
            logger.info("Left app %s", app.name)


class LineEditor(App):
    """
    A minimal line editor.

    Lines typed are appended to the buffer. Commands start with ':':
    :p prints the buffer, :d deletes the last line, :w writes the file,
    :q quits (refusing unsaved changes), :q! discards them, :wq does both.
    """

    name = 'edit'
    prompt = ': '

    def __init__(self):
        super().__init__()
        self.path = ''
        self.lines: List[str] = []
        self.dirty = False

    async def enter(self, host: AppHost, path: str = '', **options) -> Optional[str]:
        self.path = host.fs.resolve_path(path)
        node = host.fs.find_node(self.path, host.user)
        if node is not None:
            self.lines = host.fs.read_file(self.path, host.user).split('\n')
        return f"Editing {self.path} ({len(self.lines)} lines). Type :wq to save and quit."

    async def handle_input(self, text: str) -> Optional[str]:
        if not text.startswith(':'):
            self.lines.append(text)
            self.dirty = True
            return None

        command = text.strip()
        if command == ':p':
            return '\n'.join(self.lines)
        if command == ':d':
            if self.lines:
                self.lines.pop()
                self.dirty = True
            return None
        if command in (':w', ':wq'):
            message = await self._write()
            if command == ':wq':
                await self.host.close()
            return message
        if command == ':q':
            if self.dirty:
                return "Unsaved changes; use :wq to save or :q! to discard."
            await self.host.close()
            return None
        if command == ':q!':
            await self.host.close()
            return None
        return f"Unknown editor command: {command}"

    async def _write(self) -> str:
        fs = self.host.fs
        fs.create_or_update_file(self.path, '\n'.join(self.lines), self.host.user)
        await fs.save()
        self.dirty = False
        return f"Wrote {len(self.lines)} lines to {self.path}"
