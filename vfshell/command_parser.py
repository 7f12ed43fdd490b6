#!/usr/bin/env python3
"""
Command parser for the vfshell terminal.

Translates a preprocessed command line into structured pipelines that the
executor can run. Parsing is split in two passes:

- Lexer: characters -> tokens (words and operators), handling quoting
- CommandParser: tokens -> CommandGroup of (Pipeline, operator) pairs

Design Principles:
- Single responsibility: parse commands, don't execute them
- Strict: malformed input raises ParseError and nothing runs
- Flags stay raw; each command interprets its own arguments
"""

import shlex
import logging
from typing import List, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum

from .errors import ParseError


logger = logging.getLogger(__name__)


class TokenType(Enum):
    """Kinds of lexical tokens."""
    WORD = 'word'
    PIPE = '|'
    SEMI = ';'
    AND = '&&'
    OR = '||'
    AMP = '&'
    REDIR_IN = '<'
    REDIR_OUT = '>'
    REDIR_APPEND = '>>'


OPERATOR_TOKENS = (TokenType.SEMI, TokenType.AND, TokenType.OR, TokenType.AMP)
REDIRECT_TOKENS = (TokenType.REDIR_IN, TokenType.REDIR_OUT, TokenType.REDIR_APPEND)


class RedirectType(Enum):
    """Types of IO redirection."""
    WRITE = '>'      # Overwrite file
    APPEND = '>>'    # Append to file
    READ = '<'       # Read from file


@dataclass
class Token:
    kind: TokenType
    value: str

    def __str__(self) -> str:
        return self.value


@dataclass
class Redirect:
    """Represents an IO redirection."""
    type: RedirectType
    target: str

    def __str__(self) -> str:
        return f"{self.type.value} {shlex.quote(self.target)}"


@dataclass
class Command:
    """
    A single pipeline segment: command name plus its raw arguments.

    Flag interpretation is left to the command handler.
    """
    name: str
    args: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return ' '.join(shlex.quote(part) for part in [self.name] + self.args)


@dataclass
class Pipeline:
    """
    Represents a pipeline of commands connected by pipes.

    Commands are executed left to right, with output flowing
    through the pipeline.
    """
    commands: List[Command]
    input_redirect: Optional[Redirect] = None
    output_redirect: Optional[Redirect] = None
    background: bool = False

    def __str__(self) -> str:
        text = ' | '.join(str(cmd) for cmd in self.commands)
        if self.input_redirect:
            text += f" {self.input_redirect}"
        if self.output_redirect:
            text += f" {self.output_redirect}"
        return text


@dataclass
class CommandGroup:
    """
    Represents a group of pipelines connected by operators.

    Supports && (and), || (or), ; (sequence), & (background).
    """
    pipelines: List[Tuple[Pipeline, Optional[str]]]  # (pipeline, operator)

    def __str__(self) -> str:
        parts = []
        for pipeline, op in self.pipelines:
            parts.append(str(pipeline))
            if op:
                parts.append(op)
        return ' '.join(parts)


class Lexer:
    """
    Splits a command line into tokens.

    Single quotes are fully literal. Inside double quotes a backslash only
    escapes ", \\, $ and `. Outside quotes a backslash escapes any character.
    Operator characters inside quotes are ordinary word characters.
    """

    DOUBLE_QUOTE_ESCAPES = '"\\$`'

    def __init__(self, text: str):
        self.text = text

    def tokenize(self) -> List[Token]:
        text = self.text
        tokens: List[Token] = []
        current: List[str] = []
        in_word = False
        i = 0

        def finish_word():
            nonlocal current, in_word
            if in_word:
                tokens.append(Token(TokenType.WORD, ''.join(current)))
            current = []
            in_word = False

        while i < len(text):
            char = text[i]

            if char.isspace():
                finish_word()
                i += 1
            elif char == "'":
                end = text.find("'", i + 1)
                if end == -1:
                    raise ParseError("Unterminated single quote")
                current.append(text[i + 1:end])
                in_word = True
                i = end + 1
            elif char == '"':
                i = self._read_double_quoted(i + 1, current)
                in_word = True
            elif char == '\\':
                if i + 1 >= len(text):
                    raise ParseError("Trailing escape character")
                current.append(text[i + 1])
                in_word = True
                i += 2
            elif char in '|&;<>':
                finish_word()
                two = text[i:i + 2]
                if two == '&&':
                    tokens.append(Token(TokenType.AND, two))
                elif two == '||':
                    tokens.append(Token(TokenType.OR, two))
                elif two == '>>':
                    tokens.append(Token(TokenType.REDIR_APPEND, two))
                else:
                    tokens.append(Token(TokenType(char), char))
                    i += 1
                    continue
                i += 2
            else:
                current.append(char)
                in_word = True
                i += 1

        finish_word()
        return tokens

    def _read_double_quoted(self, start: int, current: List[str]) -> int:
        """Append a double-quoted section to current; return the index after it."""
        text = self.text
        i = start
        while i < len(text):
            char = text[i]
            if char == '"':
                return i + 1
            if char == '\\' and i + 1 < len(text) and text[i + 1] in self.DOUBLE_QUOTE_ESCAPES:
                current.append(text[i + 1])
                i += 2
                continue
            current.append(char)
            i += 1
        raise ParseError("Unterminated double quote")


class CommandParser:
    """
    Parser for shell command syntax.

    This parser handles:
    - Commands with arguments
    - Pipes (|)
    - Redirections (<, >, >>), at most one per direction per pipeline
    - Command sequences (;, &&, ||) and background execution (&)

    Operators are applied strictly left to right; there is no precedence.
    """

    def parse(self, command_line: str) -> CommandGroup:
        """
        Parse a complete command line into a CommandGroup.

        This is the main entry point for parsing shell commands.
        """
        if not command_line or command_line.strip() == '':
            return CommandGroup(pipelines=[])
        tokens = Lexer(command_line).tokenize()
        group = self.parse_tokens(tokens)
        logger.debug("Parsed %r into %d pipeline(s)", command_line, len(group.pipelines))
        return group

    def parse_tokens(self, tokens: List[Token]) -> CommandGroup:
        pipelines: List[Tuple[Pipeline, Optional[str]]] = []
        pipeline = Pipeline(commands=[])
        words: List[str] = []
        i = 0

        def finish_command(operator: str):
            if not words:
                raise ParseError(f"syntax error near unexpected token '{operator}'")
            pipeline.commands.append(Command(name=words[0], args=words[1:]))
            words.clear()

        while i < len(tokens):
            token = tokens[i]

            if token.kind == TokenType.WORD:
                words.append(token.value)

            elif token.kind in REDIRECT_TOKENS:
                if i + 1 >= len(tokens) or tokens[i + 1].kind != TokenType.WORD:
                    raise ParseError(f"syntax error: expected a file name after '{token.value}'")
                target = tokens[i + 1].value
                if token.kind == TokenType.REDIR_IN:
                    if pipeline.input_redirect is not None:
                        raise ParseError("syntax error: more than one input redirection")
                    pipeline.input_redirect = Redirect(RedirectType.READ, target)
                else:
                    if pipeline.output_redirect is not None:
                        raise ParseError("syntax error: more than one output redirection")
                    kind = RedirectType.APPEND if token.kind == TokenType.REDIR_APPEND else RedirectType.WRITE
                    pipeline.output_redirect = Redirect(kind, target)
                i += 1

            elif token.kind == TokenType.PIPE:
                finish_command(token.value)
                if i + 1 >= len(tokens) or tokens[i + 1].kind in OPERATOR_TOKENS + (TokenType.PIPE,):
                    raise ParseError("syntax error: missing command after '|'")

            else:
                finish_command(token.value)
                if token.kind == TokenType.AMP:
                    pipeline.background = True
                pipelines.append((pipeline, token.value))
                pipeline = Pipeline(commands=[])
                if token.kind in (TokenType.AND, TokenType.OR) and i + 1 >= len(tokens):
                    raise ParseError(f"syntax error: missing command after '{token.value}'")

            i += 1

        if words:
            pipeline.commands.append(Command(name=words[0], args=words[1:]))
            pipelines.append((pipeline, None))
        elif pipeline.commands or pipeline.input_redirect or pipeline.output_redirect:
            raise ParseError("syntax error: unexpected end of input")

        return CommandGroup(pipelines=pipelines)
