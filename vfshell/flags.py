#!/usr/bin/env python3
"""
Declarative flag parsing for command handlers.

Each command declares its flags as a list of FlagSpec; parse_flags() turns
the raw argument list into a flag dictionary plus the remaining positional
arguments. Supported forms:

    -a  -abc  -nVALUE  -n VALUE  --long  --long=VALUE  --long VALUE  --

A lone '-' is positional, as is anything that looks like a flag but is not
declared (negative numbers, for instance).
"""

from typing import Any, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass

from .errors import FlagError


@dataclass
class FlagSpec:
    """Declaration of one command flag."""
    name: str
    short: Optional[str] = None
    long: Optional[str] = None
    takes_value: bool = False
    type: Callable[[str], Any] = str
    default: Any = None

    def initial(self) -> Any:
        if self.takes_value:
            return self.default
        return bool(self.default)


def _convert(spec: FlagSpec, value: str) -> Any:
    try:
        return spec.type(value)
    except (TypeError, ValueError):
        flag = f"--{spec.long}" if spec.long else f"-{spec.short}"
        raise FlagError(f"invalid value for {flag}: '{value}'")


def parse_flags(args: List[str], specs: List[FlagSpec]) -> Tuple[Dict[str, Any], List[str]]:
    """
    Parse args against specs.

    Returns (flags, remaining). Every declared flag appears in flags, set to
    its default when absent.
    """
    by_short = {s.short: s for s in specs if s.short}
    by_long = {s.long: s for s in specs if s.long}
    flags = {s.name: s.initial() for s in specs}
    remaining: List[str] = []

    i = 0
    while i < len(args):
        arg = args[i]

        if arg == '--':
            remaining.extend(args[i + 1:])
            break

        if arg.startswith('--'):
            key, has_value, value = arg[2:].partition('=')
            spec = by_long.get(key)
            if spec is None:
                remaining.append(arg)
            elif not spec.takes_value:
                if has_value:
                    raise FlagError(f"option '--{key}' doesn't allow an argument")
                flags[spec.name] = True
            elif has_value:
                flags[spec.name] = _convert(spec, value)
            else:
                if i + 1 >= len(args):
                    raise FlagError(f"option '--{key}' requires an argument")
                i += 1
                flags[spec.name] = _convert(spec, args[i])
            i += 1
            continue

        if arg.startswith('-') and len(arg) > 1 and _is_short_cluster(arg[1:], by_short):
            j = 1
            while j < len(arg):
                spec = by_short[arg[j]]
                if not spec.takes_value:
                    flags[spec.name] = True
                    j += 1
                    continue
                attached = arg[j + 1:]
                if attached:
                    flags[spec.name] = _convert(spec, attached)
                else:
                    if i + 1 >= len(args):
                        raise FlagError(f"option requires an argument -- '{arg[j]}'")
                    i += 1
                    flags[spec.name] = _convert(spec, args[i])
                break
            i += 1
            continue

        remaining.append(arg)
        i += 1

    return flags, remaining


def _is_short_cluster(cluster: str, by_short: Dict[str, FlagSpec]) -> bool:
    """True if cluster is a run of declared short flags (value flags end the run)."""
    for char in cluster:
        spec = by_short.get(char)
        if spec is None:
            return False
        if spec.takes_value:
            return True
    return True
