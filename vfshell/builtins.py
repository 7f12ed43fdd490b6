#!/usr/bin/env python3
"""
Built-in commands for the vfshell terminal.

Each command is an async handler registered on BUILTINS with its flag
schema. Handlers let filesystem errors propagate; the executor reports them
as "<command>: <message>". Commands that mutate the tree persist it with
fs.save() before returning.
"""

import re
import logging
from typing import List

from .apps import LineEditor
from .errors import ShellError, UsageError, PathNotFoundError, PathTypeError, PermissionDeniedError
from .executor import Invocation, ScriptBudget
from .flags import FlagSpec
from .registry import CommandContext, CommandRegistry, CommandResult, CommandDefinition
from .users import ROOT_USER
from .vfs import format_mode, node_size


logger = logging.getLogger(__name__)

BUILTINS = CommandRegistry()
command = BUILTINS.command


def create_registry() -> CommandRegistry:
    """A fresh registry holding every built-in command."""
    registry = CommandRegistry()
    for name in BUILTINS.names():
        registry.register(BUILTINS.get(name))
    return registry


def _read_inputs(ctx: CommandContext, paths: List[str]) -> str:
    """Concatenate the named files, or fall back to stdin."""
    if not paths:
        return ctx.stdin or ''
    parts = []
    for path in paths:
        content = ctx.fs.read_file(ctx.resolve(path), ctx.user)
        if parts and not parts[-1].endswith('\n'):
            parts.append('\n')
        parts.append(content)
    return ''.join(parts)


# Text

@command('echo', usage='echo [text...]')
async def echo(ctx: CommandContext) -> CommandResult:
    """Print the arguments separated by spaces."""
    return CommandResult.ok(' '.join(ctx.args))


@command('cat', usage='cat [file...]')
async def cat(ctx: CommandContext) -> CommandResult:
    """Concatenate files (or stdin) to the output."""
    return CommandResult.ok(_read_inputs(ctx, ctx.args))


def _expand_set(spec: str) -> str:
    """Expand a-z style ranges in a tr character set."""
    out = []
    i = 0
    while i < len(spec):
        if i + 2 < len(spec) and spec[i + 1] == '-':
            start, end = ord(spec[i]), ord(spec[i + 2])
            if start <= end:
                out.extend(chr(c) for c in range(start, end + 1))
                i += 3
                continue
        out.append(spec[i])
        i += 1
    return ''.join(out)


@command('tr', flags=[FlagSpec('delete', short='d', long='delete')],
         min_args=1, max_args=2, usage='tr [-d] SET1 [SET2]')
async def tr(ctx: CommandContext) -> CommandResult:
    """Translate or delete characters from stdin."""
    text = ctx.stdin or ''
    source = _expand_set(ctx.args[0])
    if ctx.flags['delete']:
        return CommandResult.ok(text.translate({ord(c): None for c in source}))
    if len(ctx.args) < 2:
        raise UsageError("missing operand after '%s'" % ctx.args[0])
    target = _expand_set(ctx.args[1])
    if not target:
        raise UsageError("when not deleting, SET2 must be non-empty")
    target = target + target[-1] * max(0, len(source) - len(target))
    table = {ord(s): t for s, t in zip(source, target)}
    return CommandResult.ok(text.translate(table))


@command('wc', flags=[
    FlagSpec('lines', short='l', long='lines'),
    FlagSpec('words', short='w', long='words'),
    FlagSpec('chars', short='c', long='chars'),
], usage='wc [-l] [-w] [-c] [file...]')
async def wc(ctx: CommandContext) -> CommandResult:
    """Count lines, words and characters."""
    selected = [k for k in ('lines', 'words', 'chars') if ctx.flags[k]] or ['lines', 'words', 'chars']

    def counts(text: str) -> List[int]:
        values = {'lines': len(text.splitlines()), 'words': len(text.split()), 'chars': len(text)}
        return [values[k] for k in selected]

    if not ctx.args:
        return CommandResult.ok(' '.join(str(n) for n in counts(ctx.stdin or '')))

    rows = []
    totals = [0] * len(selected)
    for path in ctx.args:
        values = counts(ctx.fs.read_file(ctx.resolve(path), ctx.user))
        totals = [a + b for a, b in zip(totals, values)]
        rows.append(' '.join(str(n) for n in values) + f" {path}")
    if len(ctx.args) > 1:
        rows.append(' '.join(str(n) for n in totals) + ' total')
    return CommandResult.ok('\n'.join(rows))


@command('true')
async def true(ctx: CommandContext) -> CommandResult:
    """Do nothing, successfully."""
    return CommandResult.ok()


@command('false')
async def false(ctx: CommandContext) -> CommandResult:
    """Do nothing, unsuccessfully."""
    return CommandResult(success=False, exit_code=1)


# Timing and jobs

def _parse_number(value: str, what: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise UsageError(f"invalid {what}: '{value}'")
    if number < 0:
        raise UsageError(f"invalid {what}: '{value}'")
    return number


@command('sleep', min_args=1, max_args=1, usage='sleep SECONDS')
async def sleep(ctx: CommandContext) -> CommandResult:
    """Wait for a number of seconds."""
    await ctx.token.sleep(_parse_number(ctx.args[0], 'time interval'))
    return CommandResult.ok()


@command('delay', min_args=1, max_args=1, usage='delay MILLISECONDS')
async def delay(ctx: CommandContext) -> CommandResult:
    """Wait for a number of milliseconds."""
    await ctx.token.sleep(_parse_number(ctx.args[0], 'delay') / 1000.0)
    return CommandResult.ok()


@command('jobs', max_args=0)
async def jobs(ctx: CommandContext) -> CommandResult:
    """List background jobs."""
    lines = [f"[{job.id}] {job.status.value}  {job.command_text}"
             for job in ctx.session.jobs.active()]
    return CommandResult.ok('\n'.join(lines))


@command('ps', max_args=0)
async def ps(ctx: CommandContext) -> CommandResult:
    """List background jobs with their ids."""
    lines = ['  PID COMMAND']
    lines.extend(f"{job.id:5d} {job.command_text}" for job in ctx.session.jobs.active())
    return CommandResult.ok('\n'.join(lines))


@command('kill', min_args=1, max_args=1, usage='kill JOB_ID')
async def kill(ctx: CommandContext) -> CommandResult:
    """Terminate a background job."""
    raw = ctx.args[0].lstrip('%')
    if not raw.isdigit():
        raise UsageError(f"invalid job id: '{ctx.args[0]}'")
    job = await ctx.session.jobs.kill(int(raw))
    return CommandResult.ok(f"Signal sent to terminate job {job.id}.")


# Environment and aliases

@command('alias', usage="alias [name[='value'] ...]")
async def alias(ctx: CommandContext) -> CommandResult:
    """Define or list aliases."""
    aliases = ctx.session.aliases
    if not ctx.args:
        return CommandResult.ok('\n'.join(
            f"alias {name}='{value}'" for name, value in sorted(aliases.all().items())))

    shown = []
    for arg in ctx.args:
        name, has_value, value = arg.partition('=')
        if has_value:
            aliases.set(name, value)
            continue
        value = aliases.get(name)
        if value is None:
            return CommandResult.fail(f"alias: {name}: not found")
        shown.append(f"alias {name}='{value}'")
    return CommandResult.ok('\n'.join(shown))


@command('unalias', flags=[FlagSpec('all', short='a')], usage='unalias [-a] name...')
async def unalias(ctx: CommandContext) -> CommandResult:
    """Remove aliases."""
    aliases = ctx.session.aliases
    if ctx.flags['all']:
        for name in list(aliases.all()):
            aliases.remove(name)
        return CommandResult.ok()
    if not ctx.args:
        raise UsageError("usage: unalias [-a] name...")
    missing = [name for name in ctx.args if not aliases.remove(name)]
    if missing:
        return CommandResult.fail('\n'.join(f"unalias: {name}: not found" for name in missing))
    return CommandResult.ok()


@command('set', usage='set [NAME=value ...]')
async def set_(ctx: CommandContext) -> CommandResult:
    """Set shell variables, or list them all."""
    env = ctx.session.environment
    if not ctx.args:
        return CommandResult.ok('\n'.join(f"{k}={v}" for k, v in sorted(env.all().items())))
    for arg in ctx.args:
        name, has_value, value = arg.partition('=')
        if not has_value:
            raise UsageError(f"expected NAME=value, got '{arg}'")
        env.set(name, value)
    return CommandResult.ok()


@command('unset', min_args=1, usage='unset NAME...')
async def unset(ctx: CommandContext) -> CommandResult:
    """Remove shell variables."""
    for name in ctx.args:
        ctx.session.environment.unset(name)
    return CommandResult.ok()


@command('env', max_args=0)
async def env(ctx: CommandContext) -> CommandResult:
    """Print the environment."""
    return CommandResult.ok('\n'.join(
        f"{k}={v}" for k, v in sorted(ctx.session.environment.all().items())))


@command('history', flags=[FlagSpec('clear', short='c', long='clear')],
         max_args=0, usage='history [-c]')
async def history(ctx: CommandContext) -> CommandResult:
    """List or clear the command history."""
    if ctx.flags['clear']:
        ctx.session.history.clear()
        return CommandResult.ok("Command history cleared.")
    return CommandResult.ok(ctx.session.history.format())


@command('read', flags=[FlagSpec('prompt', short='p', takes_value=True, default='')],
         min_args=1, max_args=1, usage='read [-p PROMPT] NAME')
async def read(ctx: CommandContext) -> CommandResult:
    """Read a line of input into a variable."""
    value = await ctx.request_input(ctx.flags['prompt'])
    ctx.session.environment.set(ctx.args[0], value)
    return CommandResult.ok()


# Navigation

@command('cd', max_args=1, usage='cd [dir]')
async def cd(ctx: CommandContext) -> CommandResult:
    """Change the current directory."""
    target = ctx.args[0] if ctx.args else ctx.session.environment.get('HOME', '/')
    ctx.session.change_directory(target)
    return CommandResult.ok()


@command('pwd', max_args=0)
async def pwd(ctx: CommandContext) -> CommandResult:
    """Print the current directory."""
    return CommandResult.ok(ctx.cwd or ctx.fs.current_path)


def _long_entry(node, name: str) -> str:
    return f"{format_mode(node)} {node.owner} {node.group} {node_size(node):>6} {node.mtime[:16]} {name}"


@command('ls', flags=[
    FlagSpec('all', short='a', long='all'),
    FlagSpec('long', short='l'),
], usage='ls [-a] [-l] [path...]')
async def ls(ctx: CommandContext) -> CommandResult:
    """List directory contents."""
    fs = ctx.fs
    targets = ctx.args or ['.']

    def render(entries) -> List[str]:
        if ctx.flags['long']:
            return [_long_entry(child, name) for name, child in entries]
        return [name for name, _ in entries]

    # Named files first, then one section per directory.
    files = []
    directories = []
    for target in targets:
        node = fs.get_node(ctx.resolve(target), ctx.user)
        if node.is_file():
            files.append((target, node))
        else:
            directories.append(target)

    sections = []
    if files:
        sections.append('\n'.join(render(files)))
    for target in directories:
        names = fs.list_directory(ctx.resolve(target), ctx.user)
        if not ctx.flags['all']:
            names = [n for n in names if not n.startswith('.')]
        node = fs.get_node(ctx.resolve(target), ctx.user)
        lines = render([(n, node.children[n]) for n in names])
        if len(targets) > 1:
            lines.insert(0, f"{target}:")
        sections.append('\n'.join(lines))
    return CommandResult.ok('\n\n'.join(s for s in sections if s))


# File operations

@command('mkdir', flags=[FlagSpec('parents', short='p', long='parents')],
         min_args=1, usage='mkdir [-p] dir...')
async def mkdir(ctx: CommandContext) -> CommandResult:
    """Create directories."""
    for path in ctx.args:
        ctx.fs.make_directory(ctx.resolve(path), ctx.user, parents=ctx.flags['parents'])
    await ctx.fs.save()
    return CommandResult.ok()


@command('touch', min_args=1, usage='touch file...')
async def touch(ctx: CommandContext) -> CommandResult:
    """Create empty files or refresh their modification time."""
    for path in ctx.args:
        ctx.fs.touch(ctx.resolve(path), ctx.user)
    await ctx.fs.save()
    return CommandResult.ok()


@command('rm', flags=[
    FlagSpec('recursive', short='r', long='recursive'),
    FlagSpec('force', short='f', long='force'),
], usage='rm [-r] [-f] path...')
async def rm(ctx: CommandContext) -> CommandResult:
    """Remove files or directory trees."""
    fs = ctx.fs
    force = ctx.flags['force']
    if not ctx.args:
        if force:
            return CommandResult.ok()
        raise UsageError("missing operand")

    for path in ctx.args:
        node = fs.find_node(ctx.resolve(path), ctx.user)
        if node is None:
            if force:
                continue
            raise PathNotFoundError(f"cannot remove '{path}': No such file or directory", path)
        if node.is_dir() and not ctx.flags['recursive']:
            raise ShellError(f"cannot remove '{path}': Is a directory")
        for message in fs.delete_recursive(ctx.resolve(path), ctx.user, force=force):
            logger.debug("rm -f skipped: %s", message)
    await fs.save()
    return CommandResult.ok()


def _split_sources(ctx: CommandContext):
    if len(ctx.args) < 2:
        raise UsageError("missing destination file operand")
    sources, dest = ctx.args[:-1], ctx.args[-1]
    if len(sources) > 1:
        node = ctx.fs.find_node(ctx.resolve(dest), ctx.user)
        if node is None or not node.is_dir():
            raise ShellError(f"target '{dest}' is not a directory")
    return sources, dest


@command('cp', flags=[
    FlagSpec('recursive', short='r', long='recursive'),
    FlagSpec('preserve', short='p', long='preserve'),
], min_args=2, usage='cp [-r] [-p] source... dest')
async def cp(ctx: CommandContext) -> CommandResult:
    """Copy files and directory trees."""
    sources, dest = _split_sources(ctx)
    for source in sources:
        node = ctx.fs.get_node(ctx.resolve(source), ctx.user)
        if node.is_dir() and not ctx.flags['recursive']:
            raise ShellError(f"-r not specified; omitting directory '{source}'")
        ctx.fs.copy(ctx.resolve(source), ctx.resolve(dest), ctx.user, preserve=ctx.flags['preserve'])
    await ctx.fs.save()
    return CommandResult.ok()


@command('mv', min_args=2, usage='mv source... dest')
async def mv(ctx: CommandContext) -> CommandResult:
    """Move or rename files and directories."""
    sources, dest = _split_sources(ctx)
    for source in sources:
        ctx.fs.move(ctx.resolve(source), ctx.resolve(dest), ctx.user)
    await ctx.fs.save()
    return CommandResult.ok()


@command('chmod', min_args=2, usage='chmod MODE path...')
async def chmod(ctx: CommandContext) -> CommandResult:
    """Change permission bits (octal modes only)."""
    mode = ctx.args[0]
    if not re.match(r'^[0-7]{3,4}$', mode):
        raise UsageError(f"invalid mode: '{mode}'")
    for path in ctx.args[1:]:
        ctx.fs.chmod(ctx.resolve(path), int(mode, 8), ctx.user)
    await ctx.fs.save()
    return CommandResult.ok()


@command('chown', min_args=2, usage='chown OWNER path...')
async def chown(ctx: CommandContext) -> CommandResult:
    """Change file owner (root only)."""
    for path in ctx.args[1:]:
        ctx.fs.chown(ctx.resolve(path), ctx.args[0], ctx.user)
    await ctx.fs.save()
    return CommandResult.ok()


@command('chgrp', min_args=2, usage='chgrp GROUP path...')
async def chgrp(ctx: CommandContext) -> CommandResult:
    """Change file group."""
    for path in ctx.args[1:]:
        ctx.fs.chgrp(ctx.resolve(path), ctx.args[0], ctx.user)
    await ctx.fs.save()
    return CommandResult.ok()


@command('sync', max_args=0)
async def sync(ctx: CommandContext) -> CommandResult:
    """Persist the filesystem now."""
    await ctx.fs.save()
    return CommandResult.ok()


# Disk usage

BYTE_UNITS = ['B', 'KB', 'MB', 'GB', 'TB', 'PB']


def format_bytes(size: int, decimals: int = 2) -> str:
    """Human-readable size: 0 B, 512 B, 1.5 KB, 640 MB."""
    if size == 0:
        return '0 B'
    exponent = 0
    while exponent < len(BYTE_UNITS) - 1 and size >= 1024 ** (exponent + 1):
        exponent += 1
    value = round(size / 1024 ** exponent, decimals)
    return f"{value:g} {BYTE_UNITS[exponent]}"


@command('df', flags=[FlagSpec('human', short='h', long='human-readable')],
         max_args=0, usage='df [-h]')
async def df(ctx: CommandContext) -> CommandResult:
    """Report filesystem usage against the quota."""
    total = ctx.fs.max_size
    used = ctx.fs.total_size()
    available = max(total - used, 0)
    percent = int(used * 100 / total + 0.5) if total > 0 else 0
    fmt = format_bytes if ctx.flags['human'] else str

    row = '  '.join([
        'vfshell'.ljust(10),
        fmt(total).rjust(8),
        fmt(used).rjust(8),
        fmt(available).rjust(8),
        f"{percent}%".rjust(4),
        '/'.ljust(10),
    ])
    return CommandResult.ok('\n'.join([
        "Filesystem      Size      Used     Avail   Use%  Mounted on",
        "----------  --------  --------  --------  ----  ----------",
        row.rstrip(),
    ]))


@command('du', flags=[
    FlagSpec('human', short='h', long='human-readable'),
    FlagSpec('summarize', short='s', long='summarize'),
], usage='du [-h] [-s] [path...]')
async def du(ctx: CommandContext) -> CommandResult:
    """Estimate space used by files and directories."""
    fmt = (lambda size: format_bytes(size, 1)) if ctx.flags['human'] else str
    lines = []
    for target in ctx.args or ['.']:
        start = ctx.fs.get_node(ctx.resolve(target), ctx.user)
        if not ctx.fs.has_permission(start, ctx.user, 'read'):
            raise PermissionDeniedError(
                f"cannot read directory '{target}': Permission denied", ctx.fs.resolve_path(ctx.resolve(target)))
        if ctx.flags['summarize']:
            lines.append(f"{fmt(node_size(start))}\t{target}")
            continue

        # Post-order: every directory after its contents.
        entries = []
        stack = [(start, target, False)]
        while stack:
            node, path, expanded = stack.pop()
            if expanded or not node.is_dir() or not ctx.fs.has_permission(node, ctx.user, 'read'):
                entries.append(f"{fmt(node_size(node))}\t{path}")
                continue
            stack.append((node, path, True))
            base = '' if path == '/' else path.rstrip('/')
            for name in sorted(node.children, reverse=True):
                stack.append((node.children[name], f"{base}/{name}", False))
        lines.extend(entries)
    return CommandResult.ok('\n'.join(lines))


# Users

@command('whoami', max_args=0)
async def whoami(ctx: CommandContext) -> CommandResult:
    """Print the current user."""
    return CommandResult.ok(ctx.user)


@command('groups', max_args=1, usage='groups [user]')
async def groups(ctx: CommandContext) -> CommandResult:
    """Print the groups a user belongs to."""
    user = ctx.args[0] if ctx.args else ctx.user
    if not ctx.fs.users.user_exists(user):
        raise ShellError(f"'{user}': no such user")
    return CommandResult.ok(' '.join(ctx.fs.users.groups_for(user)))


@command('useradd', min_args=1, max_args=1, usage='useradd NAME')
async def useradd(ctx: CommandContext) -> CommandResult:
    """Create a user account with a private home directory."""
    name = ctx.args[0]
    users = ctx.fs.users
    if users.user_exists(name):
        raise ShellError(f"User '{name}' already exists.")
    users.add_user(name)
    home = ctx.fs.create_home(name)
    await ctx.fs.save()
    logger.info("Added user %s", name)
    return CommandResult.ok(f"User '{name}' registered. Home directory created at {home}.")


@command('groupadd', min_args=1, max_args=1, usage='groupadd NAME')
async def groupadd(ctx: CommandContext) -> CommandResult:
    """Create a group (root only)."""
    name = ctx.args[0]
    if ctx.user != ROOT_USER:
        raise ShellError("only root can add groups.")
    if not ctx.fs.users.add_group(name):
        raise ShellError(f"group '{name}' already exists.")
    await ctx.fs.save()
    return CommandResult.ok(f"Group '{name}' created.")


@command('usermod', flags=[
    FlagSpec('append', short='a'),
    FlagSpec('groups', short='G', takes_value=True),
], min_args=1, max_args=1, usage='usermod -aG GROUP USER')
async def usermod(ctx: CommandContext) -> CommandResult:
    """Add a user to a supplementary group (root only)."""
    if not (ctx.flags['append'] and ctx.flags['groups']):
        raise UsageError("only '-aG GROUP USER' is supported")
    if ctx.user != ROOT_USER:
        raise ShellError("only root can modify users.")
    group, user = ctx.flags['groups'], ctx.args[0]
    users = ctx.fs.users
    if not users.group_exists(group):
        raise ShellError(f"group '{group}' does not exist.")
    if not users.user_exists(user):
        raise ShellError(f"user '{user}' does not exist.")
    if not users.add_user_to_group(user, group):
        return CommandResult.ok(f"User '{user}' is already in group '{group}'.")
    await ctx.fs.save()
    return CommandResult.ok(f"Added user '{user}' to group '{group}'.")


@command('su', max_args=1, usage='su [user]')
async def su(ctx: CommandContext) -> CommandResult:
    """Start a sub-session as another user (root by default)."""
    ctx.session.enter_user(ctx.args[0] if ctx.args else 'root')
    return CommandResult.ok()


@command('logout', max_args=0)
async def logout(ctx: CommandContext) -> CommandResult:
    """Leave the current su sub-session."""
    if not ctx.session.leave_user():
        return CommandResult.fail("logout: not in a sub-session")
    return CommandResult.ok()


@command('exit', max_args=0)
async def exit_(ctx: CommandContext) -> CommandResult:
    """Leave the sub-session, or end the shell at the base user."""
    if not ctx.session.leave_user():
        ctx.session.exit_requested = True
    return CommandResult.ok()


# Scripts

MAX_SCRIPT_DEPTH = 100
MAX_SCRIPT_STEPS = 10000
SCRIPT_ARG = re.compile(r'\$(@|#|\d+)')


def strip_comment(line: str) -> str:
    """Drop everything from the first '#' outside quotes."""
    in_single = in_double = False
    for i, char in enumerate(line):
        escaped = i > 0 and line[i - 1] == '\\'
        if char == '"' and not escaped and not in_single:
            in_double = not in_double
        elif char == "'" and not escaped and not in_double:
            in_single = not in_single
        elif char == '#' and not in_single and not in_double:
            return line[:i]
    return line


def substitute_args(line: str, name: str, args: List[str]) -> str:
    """Replace $@, $# and $0..$n. Missing positions become empty."""
    def value(match) -> str:
        key = match.group(1)
        if key == '@':
            return ' '.join(args)
        if key == '#':
            return str(len(args))
        index = int(key)
        if index == 0:
            return name
        return args[index - 1] if index <= len(args) else ''
    return SCRIPT_ARG.sub(value, line)


@command('run', min_args=1, usage='run SCRIPT.sh [arg...]')
async def run(ctx: CommandContext) -> CommandResult:
    """Run a shell script stored in the filesystem."""
    script, args = ctx.args[0], ctx.args[1:]
    path = ctx.resolve(script)
    node = ctx.fs.get_node(path, ctx.user)
    if not node.is_file():
        raise PathTypeError(f"{script}: Is a directory", ctx.fs.resolve_path(path))
    ctx.fs._require(node, ctx.user, 'read', script, 'cannot read')
    ctx.fs._require(node, ctx.user, 'execute', script, 'cannot execute')
    if not script.endswith('.sh'):
        raise ShellError(f"'{script}' is not a shell script (.sh) file.")
    if not node.content:
        return CommandResult.ok(f"run: Script '{script}' is empty.")
    if ctx.depth >= MAX_SCRIPT_DEPTH:
        raise ShellError(
            f"Script '{script}' exceeded maximum recursion depth ({MAX_SCRIPT_DEPTH}). Terminating.")

    budget = ctx.budget or ScriptBudget(MAX_SCRIPT_STEPS)
    # In the background the script stays with the job's user and directory.
    invocation = Invocation(
        user=ctx.user if ctx.background else None,
        cwd=ctx.cwd if ctx.background else None,
        token=ctx.token, background=ctx.background, job_id=ctx.job_id,
        depth=ctx.depth + 1, budget=budget,
    )
    session = ctx.session
    outputs = []
    session.environment.push()
    try:
        for number, raw in enumerate(node.content.split('\n'), 1):
            line = strip_comment(raw).strip()
            if not line:
                continue
            if not budget.take():
                raise ShellError(
                    f"Script '{script}' exceeded maximum execution steps ({MAX_SCRIPT_STEPS}). Terminating.")
            ctx.token.raise_if_cancelled()

            result = await session.execute_line(substitute_args(line, script, args), invocation)
            if not result.success:
                return CommandResult.fail(
                    f"Script '{script}' error on line {number}: {raw}\n"
                    f"Error: {result.error or 'Unknown error.'}\n"
                    f"Script '{script}' failed.", result.exit_code or 1)
            if result.output:
                outputs.append(result.output)
            if session.exit_requested:
                break
    finally:
        session.environment.pop()
    return CommandResult.ok('\n'.join(outputs))


@command('help', max_args=1, usage='help [command]')
async def help_(ctx: CommandContext) -> CommandResult:
    """Show available commands."""
    registry = ctx.session.registry
    if ctx.args:
        definition: CommandDefinition = registry.get(ctx.args[0])
        if definition is None:
            return CommandResult.fail(f"help: no help topics match '{ctx.args[0]}'")
        lines = [f"{definition.name}: {definition.description}"]
        if definition.usage:
            lines.append(f"Usage: {definition.usage}")
        return CommandResult.ok('\n'.join(lines))

    width = max(len(name) for name in registry.names())
    lines = ['Available commands:']
    lines.extend(f"  {name:<{width}}  {registry.get(name).description}" for name in registry.names())
    return CommandResult.ok('\n'.join(lines))


@command('edit', min_args=1, max_args=1, usage='edit FILE')
async def edit(ctx: CommandContext) -> CommandResult:
    """Open a file in the line editor."""
    if ctx.background:
        raise ShellError("cannot run in the background")
    message = await ctx.session.apps.launch(LineEditor(), path=ctx.args[0])
    return CommandResult.ok(message or '')
