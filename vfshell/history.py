#!/usr/bin/env python3
"""
Command history with bash-style event expansion.

Supports:
- !! : the last command
- !n : command number n (1-based, as `history` lists them)
- !-n : n commands ago
- !prefix : the most recent command starting with prefix

Nothing inside single quotes is expanded.
"""

import re
from collections import deque
from typing import Callable, Deque, List, Optional

from .errors import ShellError


EVENT_PATTERN = re.compile(r'!(!|-?\d+|[A-Za-z_][\w.-]*)')
SINGLE_QUOTED = re.compile(r"('[^']*')")


class CommandHistory:
    """Bounded list of entered lines, oldest first."""

    def __init__(self, max_size: int = 1000):
        self.entries: Deque[str] = deque(maxlen=max_size)
        self.on_clear: Optional[Callable[[], None]] = None

    @property
    def history(self) -> List[str]:
        return list(self.entries)

    def add(self, command: str) -> bool:
        """Record a line. Blank lines and repeats of the last line are dropped."""
        if not command.strip():
            return False
        if self.entries and self.entries[-1] == command:
            return False
        self.entries.append(command)
        return True

    def get(self, index: int) -> Optional[str]:
        if 0 < index <= len(self.entries):
            return self.entries[index - 1]
        return None

    def last(self) -> Optional[str]:
        return self.entries[-1] if self.entries else None

    def search(self, prefix: str) -> Optional[str]:
        """Most recent entry starting with prefix."""
        for entry in reversed(self.entries):
            if entry.startswith(prefix):
                return entry
        return None

    def clear(self) -> None:
        self.entries.clear()
        if self.on_clear is not None:
            self.on_clear()

    def expand(self, command: str) -> str:
        """Replace history events in command. Unknown events raise ShellError."""
        if '!' not in command:
            return command

        def lookup(match) -> str:
            event = match.group(1)
            if event == '!':
                entry = self.last()
            elif event.lstrip('-').isdigit():
                index = int(event)
                if index < 0:
                    index = len(self.entries) + index + 1
                entry = self.get(index)
            else:
                entry = self.search(event)
            if entry is None:
                raise ShellError(f"!{event}: event not found")
            return entry

        parts = SINGLE_QUOTED.split(command)
        return ''.join(part if i % 2 else EVENT_PATTERN.sub(lookup, part)
                       for i, part in enumerate(parts))

    def format(self) -> str:
        return '\n'.join(f"  {i:>3}  {entry}" for i, entry in enumerate(self.entries, 1))
