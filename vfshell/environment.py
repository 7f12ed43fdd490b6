#!/usr/bin/env python3
"""
Environment variables, aliases and the pre-lexing preprocessor.

Everything here works on the raw command line text before it reaches the
lexer:

1. $VAR and ${VAR} are replaced from the top environment scope
2. The leading command word is rewritten through the alias table
3. Glob patterns are expanded for the file commands that accept them

Single-quoted text is never touched by any of the three steps.
"""

import re
import fnmatch
import logging
import posixpath
from typing import Callable, Dict, List, Optional, Tuple

from .errors import (
    AliasLoopError, InvalidVariableError, ScopeError, PathError,
)


logger = logging.getLogger(__name__)

VARIABLE_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
NAME_CHARS = re.compile(r'[A-Za-z0-9_]')

DEFAULT_PATH = '/bin:/usr/bin'
DEFAULT_ALIAS_ITERATIONS = 10
GLOB_COMMANDS = ('ls', 'rm', 'cat', 'cp', 'mv', 'chmod', 'chown', 'chgrp')


class Environment:
    """
    A stack of variable scopes.

    push() copies the top scope so nested invocations can shadow variables
    without leaking; pop() throws the copy away. The base scope stays.
    """

    def __init__(self, user: str = 'Guest', hostname: str = 'vfshell'):
        self._scopes: List[Dict[str, str]] = [{}]
        self.reset(user, hostname)

    def reset(self, user: str, hostname: str = 'vfshell') -> None:
        """Drop every scope and reseed the base one for user."""
        self._scopes = [{
            'USER': user,
            'HOME': f"/home/{user}",
            'HOST': hostname,
            'PATH': DEFAULT_PATH,
        }]

    @property
    def depth(self) -> int:
        return len(self._scopes)

    def _top(self) -> Dict[str, str]:
        return self._scopes[-1]

    def push(self) -> None:
        self._scopes.append(dict(self._top()))

    def pop(self) -> None:
        if len(self._scopes) == 1:
            raise ScopeError("cannot pop the base environment scope")
        self._scopes.pop()

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self._top().get(name, default)

    def set(self, name: str, value: str) -> None:
        if not VARIABLE_NAME.match(name or ''):
            raise InvalidVariableError(f"invalid variable name: '{name}'")
        self._top()[name] = '' if value is None else str(value)

    def unset(self, name: str) -> None:
        self._top().pop(name, None)

    def all(self) -> Dict[str, str]:
        return dict(self._top())

    def expand(self, text: str) -> str:
        """
        Replace $NAME and ${NAME} with variable values.

        Unset variables become empty strings. Single-quoted text and
        backslash-escaped characters are copied through untouched, so the
        lexer still sees them.
        """
        result = []
        i = 0
        in_single = False
        in_double = False
        while i < len(text):
            char = text[i]
            if in_single:
                result.append(char)
                if char == "'":
                    in_single = False
                i += 1
                continue
            if char == '\\' and i + 1 < len(text):
                result.append(text[i:i + 2])
                i += 2
                continue
            if char == "'" and not in_double:
                in_single = True
                result.append(char)
                i += 1
                continue
            if char == '"':
                in_double = not in_double
                result.append(char)
                i += 1
                continue
            if char == '$':
                name, consumed = self._read_name(text, i + 1)
                if name is not None:
                    result.append(self.get(name, ''))
                    i += 1 + consumed
                    continue
            result.append(char)
            i += 1
        return ''.join(result)

    @staticmethod
    def _read_name(text: str, start: int) -> Tuple[Optional[str], int]:
        """Read a variable name after '$'. Returns (name, chars consumed)."""
        if start < len(text) and text[start] == '{':
            end = text.find('}', start + 1)
            if end == -1:
                return None, 0
            name = text[start + 1:end]
            if not VARIABLE_NAME.match(name):
                return None, 0
            return name, end - start + 1
        end = start
        while end < len(text) and NAME_CHARS.match(text[end]):
            end += 1
        name = text[start:end]
        if not VARIABLE_NAME.match(name):
            return None, 0
        return name, end - start


def split_leading_word(text: str) -> Tuple[str, str, str]:
    """Split text into (leading whitespace, first word, rest)."""
    stripped = text.lstrip()
    leading = text[:len(text) - len(stripped)]
    match = re.match(r'[^\s;|&<>]+', stripped)
    if not match:
        return leading, '', stripped
    word = match.group(0)
    return leading, word, stripped[len(word):]


class AliasTable:
    """Named command-line abbreviations."""

    def __init__(self, max_iterations: int = DEFAULT_ALIAS_ITERATIONS):
        self.aliases: Dict[str, str] = {}
        self.max_iterations = max_iterations

    def set(self, name: str, expansion: str) -> None:
        if not name or re.search(r'[\s=\'"/|;&<>]', name):
            raise InvalidVariableError(f"invalid alias name: '{name}'")
        self.aliases[name] = expansion

    def get(self, name: str) -> Optional[str]:
        return self.aliases.get(name)

    def remove(self, name: str) -> bool:
        return self.aliases.pop(name, None) is not None

    def all(self) -> Dict[str, str]:
        return dict(self.aliases)

    def resolve(self, text: str) -> str:
        """
        Rewrite the leading command word until it is no longer an alias.

        An alias whose expansion starts with its own name is expanded once.
        Any other chain that is still expanding after max_iterations steps
        raises AliasLoopError.
        """
        leading, word, rest = split_leading_word(text)
        original = word
        text = word + rest
        count = 0
        while word in self.aliases and count < self.max_iterations:
            expansion = self.aliases[word]
            _, next_word, _ = split_leading_word(expansion)
            text = expansion + rest
            count += 1
            if next_word == word:
                return leading + text
            _, word, rest = split_leading_word(text)
        if count >= self.max_iterations and word in self.aliases:
            raise AliasLoopError(f"Alias loop detected for '{original}'")
        return leading + text


def split_words(text: str) -> List[Tuple[str, bool]]:
    """
    Split text on unquoted whitespace, keeping quotes in each word.

    Returns (word, quoted) pairs; quoted is True when any part of the word
    was inside quotes or escaped.
    """
    words = []
    current: List[str] = []
    quoted = False
    quote = None
    i = 0
    while i < len(text):
        char = text[i]
        if quote:
            current.append(char)
            if char == quote:
                quote = None
        elif char == '\\' and i + 1 < len(text):
            current.append(text[i:i + 2])
            quoted = True
            i += 1
        elif char in ('"', "'"):
            quote = char
            quoted = True
            current.append(char)
        elif char.isspace():
            if current:
                words.append((''.join(current), quoted))
                current = []
                quoted = False
        else:
            current.append(char)
        i += 1
    if current:
        words.append((''.join(current), quoted))
    return words


def has_glob(word: str) -> bool:
    return '*' in word or '?' in word or ('[' in word and ']' in word)


class Preprocessor:
    """
    Composes variable expansion, alias resolution and glob expansion.

    The filesystem and the current user are read through callables so the
    preprocessor always sees the session's live state.
    """

    def __init__(self, environment: Environment, aliases: AliasTable,
                 fs=None, user_provider: Optional[Callable[[], str]] = None):
        self.environment = environment
        self.aliases = aliases
        self.fs = fs
        self.user_provider = user_provider or (lambda: environment.get('USER', 'Guest'))

    def process(self, text: str) -> str:
        expanded = self.environment.expand(text)
        aliased = self.aliases.resolve(expanded)
        result = self.expand_globs(aliased)
        if result != text:
            logger.debug("Preprocessed %r -> %r", text, result)
        return result

    def expand_globs(self, text: str) -> str:
        """Expand unquoted glob arguments of the whitelisted file commands."""
        if self.fs is None:
            return text
        words = split_words(text)
        if not words or words[0][0] not in GLOB_COMMANDS:
            return text

        expanded = [words[0][0]]
        changed = False
        for word, quoted in words[1:]:
            matches = [] if quoted or not has_glob(word) else self._match(word)
            if matches:
                expanded.extend(self._quote(m) for m in matches)
                changed = True
            else:
                expanded.append(word)
        return ' '.join(expanded) if changed else text

    def _match(self, pattern: str) -> List[str]:
        prefix, name_pattern = posixpath.split(pattern)
        directory = prefix or '.'
        user = self.user_provider()
        try:
            node = self.fs.get_node(directory, user)
        except PathError:
            return []
        if not node.is_dir() or not self.fs.has_permission(node, user, 'read'):
            return []

        names = sorted(node.children)
        if not name_pattern.startswith('.'):
            names = [n for n in names if not n.startswith('.')]
        matched = [n for n in names if fnmatch.fnmatchcase(n, name_pattern)]
        if prefix:
            return [posixpath.join(prefix, n) for n in matched]
        return matched

    @staticmethod
    def _quote(word: str) -> str:
        if re.search(r'[\s\'"\\|;&<>$]', word):
            return "'" + word.replace("'", "'\\''") + "'"
        return word
