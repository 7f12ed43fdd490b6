#!/usr/bin/env python3
"""
vfshell.vfs - A permissioned, in-memory virtual filesystem.

Core philosophy:
- One tree of owned, permissioned nodes rooted at '/'
- Every lookup walks from the root and checks execute on each directory
- "Missing" and "denied" are different errors and never conflated
- The tree is persisted whole, as a snapshot, and only under quota
"""

import json
import logging
import posixpath
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Tuple, Union

from .errors import (
    PathError, PathNotFoundError, NotADirectoryPathError,
    PermissionDeniedError, PathTypeError, InvalidPermissionError,
    QuotaExceededError, StorageError, UserNotFoundError,
)
from .storage import DurableStore, MemoryStore
from .users import UserRegistry, ROOT_USER


logger = logging.getLogger(__name__)


class Mode(IntEnum):
    """Permission bits within one rwx triplet."""
    READ = 4
    WRITE = 2
    EXECUTE = 1


PERMISSION_KINDS = {
    'read': Mode.READ,
    'write': Mode.WRITE,
    'execute': Mode.EXECUTE,
}

FILE = 'file'
DIRECTORY = 'directory'

DEFAULT_FILE_MODE = 0o644
DEFAULT_DIR_MODE = 0o755
HOME_DIR_MODE = 0o700
DEFAULT_MAX_VFS_SIZE = 640 * 1024 * 1024
DEFAULT_MAX_DEPTH = 256
SNAPSHOT_KEY = 'vfshell_fs'
USERS_KEY = 'vfshell_users'

CONF_CONTENT = """TERMINAL.PROMPT_CHAR=$
OS.DEFAULT_HOST_NAME=vfshell
MESSAGES.WELCOME_PREFIX=Welcome,
MESSAGES.WELCOME_SUFFIX=!"""


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds')


@dataclass
class Node:
    """A file or directory in the tree."""
    kind: str
    owner: str
    group: str
    mode: int
    mtime: str = field(default_factory=now_iso)
    content: str = ''
    children: Dict[str, 'Node'] = field(default_factory=dict)

    @classmethod
    def file(cls, content: str, owner: str, group: str,
             mode: int = DEFAULT_FILE_MODE) -> 'Node':
        return cls(kind=FILE, owner=owner, group=group, mode=mode, content=content)

    @classmethod
    def directory(cls, owner: str, group: str, mode: int = DEFAULT_DIR_MODE) -> 'Node':
        return cls(kind=DIRECTORY, owner=owner, group=group, mode=mode)

    def is_file(self) -> bool:
        return self.kind == FILE

    def is_dir(self) -> bool:
        return self.kind == DIRECTORY

    def to_dict(self) -> dict:
        """Serialize this node and its whole subtree."""
        out = self._own_dict()
        stack = [(self, out)]
        while stack:
            node, data = stack.pop()
            if node.is_dir():
                for name, child in node.children.items():
                    child_data = child._own_dict()
                    data['children'][name] = child_data
                    stack.append((child, child_data))
        return out

    def _own_dict(self) -> dict:
        data = {
            'type': self.kind,
            'owner': self.owner,
            'group': self.group,
            'mode': self.mode,
            'mtime': self.mtime,
        }
        if self.is_file():
            data['content'] = self.content
        else:
            data['children'] = {}
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Node':
        """Rebuild a subtree from its serialized form."""
        root = cls._own_from_dict(data)
        stack = [(root, data)]
        while stack:
            node, raw = stack.pop()
            if node.is_dir():
                children = raw.get('children') or {}
                if not isinstance(children, dict):
                    raise StorageError("snapshot directory children must be an object")
                for name, child_raw in children.items():
                    child = cls._own_from_dict(child_raw)
                    node.children[name] = child
                    stack.append((child, child_raw))
        return root

    @classmethod
    def _own_from_dict(cls, raw: dict) -> 'Node':
        if not isinstance(raw, dict):
            raise StorageError(f"snapshot node must be an object, got {type(raw).__name__}")
        kind = raw.get('type')
        if kind not in (FILE, DIRECTORY):
            raise StorageError(f"snapshot contains unknown node type: {kind!r}")
        content = (raw.get('content') or '') if kind == FILE else ''
        if not isinstance(content, str):
            raise StorageError("snapshot file content must be a string")
        try:
            mode = int(raw.get('mode', DEFAULT_DIR_MODE if kind == DIRECTORY else DEFAULT_FILE_MODE))
        except (TypeError, ValueError):
            raise StorageError(f"snapshot contains invalid mode: {raw.get('mode')!r}")
        return cls(
            kind=kind,
            owner=raw.get('owner', ROOT_USER),
            group=raw.get('group', ROOT_USER),
            mode=mode,
            mtime=raw.get('mtime') or now_iso(),
            content=content,
        )


def format_mode(node: Node) -> str:
    """Format a node's type and mode bits as an ls-style string."""
    result = 'd' if node.is_dir() else '-'
    for shift in (6, 3, 0):
        triplet = (node.mode >> shift) & 7
        result += 'r' if triplet & Mode.READ else '-'
        result += 'w' if triplet & Mode.WRITE else '-'
        result += 'x' if triplet & Mode.EXECUTE else '-'
    return result


def node_size(node: Node) -> int:
    """Total content length of a node and everything under it."""
    total = 0
    stack = [node]
    while stack:
        current = stack.pop()
        if current.is_file():
            total += len(current.content)
        else:
            stack.extend(current.children.values())
    return total


class FileSystem:
    """
    Permissioned virtual filesystem with snapshot persistence.

    The tree is mutated in place. The filesystem also holds the current
    path, the one piece of navigation state every caller shares.
    """

    def __init__(self, store: Optional[DurableStore] = None,
                 users: Optional[UserRegistry] = None,
                 default_user: str = 'Guest',
                 max_size: int = DEFAULT_MAX_VFS_SIZE,
                 max_depth: int = DEFAULT_MAX_DEPTH):
        self.store = store or MemoryStore()
        self.users = users or UserRegistry(default_user)
        self.default_user = default_user
        self.max_size = max_size
        self.max_depth = max_depth
        self.current_path = '/'
        self.root: Node = self._fresh_tree()

    def _fresh_tree(self) -> Node:
        """Build the initial tree: /, /home, /etc and the default home dirs."""
        root = Node.directory(ROOT_USER, ROOT_USER)
        home = Node.directory(ROOT_USER, ROOT_USER)
        etc = Node.directory(ROOT_USER, ROOT_USER)
        root.children['home'] = home
        root.children['etc'] = etc

        for user in (ROOT_USER, self.default_user):
            if user not in home.children:
                home.children[user] = Node.directory(
                    user, self.users.primary_group(user), HOME_DIR_MODE)

        etc.children['vfshell.conf'] = Node.file(CONF_CONTENT, ROOT_USER, ROOT_USER)
        return root

    def initialize(self) -> None:
        """Replace the tree with a fresh one and return to '/'."""
        self.root = self._fresh_tree()
        self.current_path = '/'

    def _settle_current_path(self) -> None:
        """Move current_path up to its nearest ancestor that is still a directory."""
        path = self.current_path
        while path != '/':
            node = self._lookup(path)
            if node is not None and node.is_dir():
                break
            path = self.split_path(path)[0]
        if path != self.current_path:
            logger.info("Working directory %s is gone; now in %s", self.current_path, path)
            self.current_path = path

    def create_home(self, user: str) -> str:
        """Create /home/<user> for a new account, unless it already exists."""
        home = self._lookup('/home')
        if home is None or not home.is_dir():
            raise PathNotFoundError("/home: No such file or directory", '/home')
        if user not in home.children:
            node = Node.directory(user, self.users.primary_group(user), HOME_DIR_MODE)
            home.children[user] = node
            home.mtime = node.mtime
        return f"/home/{user}"

    # Path handling

    def resolve_path(self, target: Optional[str], base: Optional[str] = None) -> str:
        """
        Resolve target against base into a normalized absolute path.

        '.' segments are dropped, '..' pops the previous segment and is
        clamped at the root. Resolving an absolute result again returns it
        unchanged.
        """
        if base is None:
            base = self.current_path
        if not target:
            target = '.'

        if target.startswith('/'):
            segments: List[str] = []
        else:
            segments = [s for s in base.split('/') if s and s != '.']

        for segment in target.split('/'):
            if segment == '' or segment == '.':
                continue
            if segment == '..':
                if segments:
                    segments.pop()
            else:
                segments.append(segment)

        return '/' + '/'.join(segments)

    def path_from(self, target: Optional[str], cwd: Optional[str]) -> str:
        """
        target as seen from cwd, in a form the other methods accept.

        When cwd is the current path the target is returned as written, so
        error messages keep the user's spelling.
        """
        if cwd is None or cwd == self.current_path or (target or '').startswith('/'):
            return target
        return self.resolve_path(target, base=cwd)

    @staticmethod
    def split_path(abs_path: str) -> Tuple[str, str]:
        """Split an absolute path into (parent, name)."""
        if abs_path == '/':
            return '/', ''
        parent, name = posixpath.split(abs_path)
        return parent or '/', name

    def _segments(self, abs_path: str) -> List[str]:
        segments = [s for s in abs_path.split('/') if s]
        if len(segments) > self.max_depth:
            raise PathError(f"{abs_path}: path is too deep", abs_path)
        return segments

    # Permissions

    def has_permission(self, node: Node, user: str, kind: Union[str, int]) -> bool:
        """
        Check one permission bit for user on node.

        kind is 'read', 'write', 'execute' or the matching Mode value.
        Anything else raises InvalidPermissionError.
        """
        if isinstance(kind, str):
            required = PERMISSION_KINDS.get(kind)
        else:
            required = kind if kind in (Mode.READ, Mode.WRITE, Mode.EXECUTE) else None
        if required is None:
            raise InvalidPermissionError(f"unknown permission kind: {kind!r}")

        if user == ROOT_USER:
            return True

        if node.owner == user:
            triplet = (node.mode >> 6) & 7
        elif node.group in self.users.groups_for(user):
            triplet = (node.mode >> 3) & 7
        else:
            triplet = node.mode & 7
        return (triplet & required) == required

    def _require(self, node: Node, user: str, kind: str, path: str, action: str = '') -> None:
        if not self.has_permission(node, user, kind):
            prefix = f"{action} " if action else ''
            raise PermissionDeniedError(f"{prefix}'{path}': Permission denied", path)

    # Lookup

    def get_node(self, path: str, user: str) -> Node:
        """
        Walk from the root to path.

        Execute permission is required on every directory traversed.
        Raises PathNotFoundError or PermissionDeniedError.
        """
        abs_path = self.resolve_path(path)
        node = self.root
        walked = ''
        for segment in self._segments(abs_path):
            if not node.is_dir():
                raise NotADirectoryPathError(f"{walked}: Not a directory", abs_path)
            if not self.has_permission(node, user, 'execute'):
                raise PermissionDeniedError(f"{walked or '/'}: Permission denied", abs_path)
            child = node.children.get(segment)
            walked = f"{walked}/{segment}"
            if child is None:
                raise PathNotFoundError(f"{path}: No such file or directory", abs_path)
            node = child
        return node

    def find_node(self, path: str, user: str) -> Optional[Node]:
        """Like get_node but returns None when the path does not exist."""
        try:
            return self.get_node(path, user)
        except PathNotFoundError:
            return None

    def _lookup(self, abs_path: str) -> Optional[Node]:
        """Unchecked lookup used internally once access has been verified."""
        node = self.root
        for segment in self._segments(abs_path):
            if not node.is_dir():
                return None
            node = node.children.get(segment)
            if node is None:
                return None
        return node

    def exists(self, path: str) -> bool:
        return self._lookup(self.resolve_path(path)) is not None

    def stat(self, path: str, user: str) -> dict:
        node = self.get_node(path, user)
        return {
            'type': node.kind,
            'mode': node.mode,
            'owner': node.owner,
            'group': node.group,
            'mtime': node.mtime,
            'size': node_size(node),
        }

    def _touch(self, abs_path: str, stamp: Optional[str] = None) -> None:
        """Refresh mtime on a node and on its parent directory."""
        stamp = stamp or now_iso()
        node = self._lookup(abs_path)
        if node is not None:
            node.mtime = stamp
        if abs_path != '/':
            parent = self._lookup(self.split_path(abs_path)[0])
            if parent is not None and parent.is_dir():
                parent.mtime = stamp

    # Reading

    def read_file(self, path: str, user: str) -> str:
        node = self.get_node(path, user)
        if not node.is_file():
            raise PathTypeError(f"{path}: Is a directory", self.resolve_path(path))
        self._require(node, user, 'read', path, 'cannot read')
        return node.content

    def list_directory(self, path: str, user: str) -> List[str]:
        node = self.get_node(path, user)
        if not node.is_dir():
            raise PathTypeError(f"{path}: Not a directory", self.resolve_path(path))
        self._require(node, user, 'read', path, 'cannot open directory')
        return sorted(node.children)

    # Creation

    def ensure_parent_directories(self, abs_path: str, user: str,
                                  group: Optional[str] = None) -> Node:
        """
        Make sure every directory above abs_path exists and return the parent.

        Missing directories are created with the default mode, owned by user.
        Creating one requires write permission on the directory above it.
        """
        if abs_path == '/':
            raise PathError("cannot create directory structure for root", abs_path)
        group = group or self.users.primary_group(user)
        parent_path = self.split_path(abs_path)[0]
        stamp = now_iso()

        node = self.root
        walked = '/'
        for segment in self._segments(parent_path):
            if not self.has_permission(node, user, 'execute'):
                raise PermissionDeniedError(f"{walked}: Permission denied", walked)
            child = node.children.get(segment)
            if child is None:
                if not self.has_permission(node, user, 'write'):
                    raise PermissionDeniedError(
                        f"cannot create directory '{segment}' in '{walked}': Permission denied",
                        walked)
                child = Node.directory(user, group)
                child.mtime = stamp
                node.children[segment] = child
                node.mtime = stamp
                logger.debug("Created parent directory %s", posixpath.join(walked, segment))
            elif not child.is_dir():
                raise PathTypeError(
                    f"path component '{posixpath.join(walked, segment)}' is not a directory",
                    posixpath.join(walked, segment))
            node = child
            walked = posixpath.join(walked, segment)
        return node

    def create_or_update_file(self, path: str, content: str, user: str,
                              group: Optional[str] = None) -> Node:
        """
        Write content to a file, creating it (and its parents) if needed.

        An existing file needs write permission and keeps its owner. A new
        file needs write permission on its parent. A directory at path is
        never overwritten.
        """
        abs_path = self.resolve_path(path)
        if abs_path == '/':
            raise PathTypeError("cannot overwrite the root directory", abs_path)
        group = group or self.users.primary_group(user)
        existing = self.find_node(abs_path, user)
        stamp = now_iso()

        if existing is not None:
            if not existing.is_file():
                raise PathTypeError(f"cannot overwrite non-file '{abs_path}'", abs_path)
            self._require(existing, user, 'write', abs_path)
            existing.content = content
            self._touch(abs_path, stamp)
            return existing

        parent = self.ensure_parent_directories(abs_path, user, group)
        parent_path, name = self.split_path(abs_path)
        if not self.has_permission(parent, user, 'write'):
            raise PermissionDeniedError(
                f"cannot create file in '{parent_path}': Permission denied", parent_path)
        node = Node.file(content, user, group)
        node.mtime = stamp
        parent.children[name] = node
        parent.mtime = stamp
        return node

    def touch(self, path: str, user: str) -> Node:
        """Create an empty file, or refresh the mtime of an existing node."""
        abs_path = self.resolve_path(path)
        node = self.find_node(abs_path, user)
        if node is None:
            return self.create_or_update_file(abs_path, '', user)
        self._require(node, user, 'write', path, 'cannot touch')
        self._touch(abs_path)
        return node

    def make_directory(self, path: str, user: str, group: Optional[str] = None,
                       parents: bool = False) -> Node:
        """Create a directory. With parents, missing ancestors are created and an existing directory is fine."""
        abs_path = self.resolve_path(path)
        group = group or self.users.primary_group(user)
        existing = self.find_node(abs_path, user)
        if existing is not None:
            if parents and existing.is_dir():
                return existing
            raise PathTypeError(f"cannot create directory '{path}': File exists", abs_path)

        parent_path, name = self.split_path(abs_path)
        if parents:
            parent = self.ensure_parent_directories(abs_path, user, group)
        else:
            parent = self.get_node(parent_path, user)
            if not parent.is_dir():
                raise NotADirectoryPathError(f"{parent_path}: Not a directory", parent_path)
        if not self.has_permission(parent, user, 'write'):
            raise PermissionDeniedError(
                f"cannot create directory '{path}': Permission denied", parent_path)
        node = Node.directory(user, group)
        parent.children[name] = node
        parent.mtime = node.mtime
        return node

    # Recursive mutation

    def delete_recursive(self, path: str, user: str, force: bool = False) -> List[str]:
        """
        Delete a node and everything under it, children first.

        Without force the first error is raised. With force, missing nodes
        and permission errors are skipped and the rest of the tree is still
        processed; the skipped errors are returned as messages.
        """
        abs_path = self.resolve_path(path)
        if abs_path == '/':
            raise PathError("cannot remove '/': refusing to remove the root directory", abs_path)

        messages: List[str] = []
        try:
            node = self.get_node(abs_path, user)
            parent_path, _ = self.split_path(abs_path)
            parent = self.get_node(parent_path, user)
            self._require(parent, user, 'write', path, 'cannot remove')
        except PathNotFoundError:
            if force:
                return messages
            raise
        except PermissionDeniedError as e:
            if force:
                logger.warning("Skipped during forced delete: %s", e)
                messages.append(str(e))
                return messages
            raise

        stack: List[Tuple[str, Node, Node, bool]] = [(abs_path, node, parent, False)]
        while stack:
            current_path, current, current_parent, expanded = stack.pop()

            if current.is_dir() and not expanded:
                stack.append((current_path, current, current_parent, True))
                if not current.children:
                    continue
                if (not self.has_permission(current, user, 'execute')
                        or not self.has_permission(current, user, 'write')):
                    error = PermissionDeniedError(
                        f"cannot remove '{current_path}': Permission denied", current_path)
                    if not force:
                        raise error
                    logger.warning("Skipped during forced delete: %s", error)
                    messages.append(str(error))
                    continue
                if current_path.count('/') >= self.max_depth:
                    raise PathError(f"{current_path}: directory tree is too deep", current_path)
                for name in sorted(current.children, reverse=True):
                    stack.append((posixpath.join(current_path, name),
                                  current.children[name], current, False))
                continue

            if current.is_dir() and current.children:
                # A child survived a forced delete; the directory stays.
                messages.append(f"cannot remove '{current_path}': Directory not empty")
                continue

            name = self.split_path(current_path)[1]
            current_parent.children.pop(name, None)
            current_parent.mtime = now_iso()

        self._settle_current_path()
        return messages

    def _clone_tree(self, source: Node, source_path: str, user: str, group: str,
                    preserve: bool) -> Node:
        """Deep-copy a subtree, checking read access on everything copied."""
        def clone_one(node: Node, node_path: str) -> Node:
            self._require(node, user, 'read', node_path, 'cannot read')
            if preserve:
                copy = Node(kind=node.kind, owner=node.owner, group=node.group,
                            mode=node.mode, mtime=node.mtime)
            else:
                mode = DEFAULT_DIR_MODE if node.is_dir() else DEFAULT_FILE_MODE
                copy = Node(kind=node.kind, owner=user, group=group, mode=mode)
            copy.content = node.content if node.is_file() else ''
            return copy

        root_copy = clone_one(source, source_path)
        stack = [(source, root_copy, source_path, 0)]
        while stack:
            node, copy, node_path, depth = stack.pop()
            if not node.is_dir():
                continue
            if depth >= self.max_depth:
                raise PathError(f"{node_path}: directory tree is too deep", node_path)
            self._require(node, user, 'execute', node_path, 'cannot access')
            for name, child in node.children.items():
                child_path = posixpath.join(node_path, name)
                child_copy = clone_one(child, child_path)
                copy.children[name] = child_copy
                stack.append((child, child_copy, child_path, depth + 1))
        return root_copy

    def _destination(self, source_path: str, dest: str, user: str) -> Tuple[str, Node, str]:
        """Work out (final path, parent node, final name) for a copy or move."""
        dest_path = self.resolve_path(dest)
        dest_node = self.find_node(dest_path, user)
        if dest_node is not None and dest_node.is_dir():
            name = self.split_path(source_path)[1]
            dest_path = posixpath.join(dest_path, name)
        parent_path, name = self.split_path(dest_path)
        if not name:
            raise PathTypeError("cannot overwrite the root directory", dest_path)
        parent = self.get_node(parent_path, user)
        if not parent.is_dir():
            raise NotADirectoryPathError(f"{parent_path}: Not a directory", parent_path)
        self._require(parent, user, 'write', parent_path, 'cannot write to')
        return dest_path, parent, name

    def copy(self, source: str, dest: str, user: str, group: Optional[str] = None,
             preserve: bool = False) -> str:
        """
        Copy a file or directory tree. Returns the final destination path.

        The whole source is cloned before anything is inserted, so a read
        error leaves the destination untouched.
        """
        source_path = self.resolve_path(source)
        group = group or self.users.primary_group(user)
        source_node = self.get_node(source_path, user)
        dest_path, parent, name = self._destination(source_path, dest, user)

        if dest_path == source_path:
            raise PathError(f"'{source}' and '{dest}' are the same file", dest_path)
        if source_node.is_dir() and dest_path.startswith(source_path.rstrip('/') + '/'):
            raise PathError(
                f"cannot copy a directory, '{source}', into itself, '{dest_path}'", dest_path)

        existing = parent.children.get(name)
        if existing is not None:
            if existing.is_dir():
                raise PathTypeError(f"cannot overwrite directory '{dest_path}'", dest_path)
            if source_node.is_dir():
                raise PathTypeError(
                    f"cannot overwrite non-directory '{dest_path}' with directory '{source}'",
                    dest_path)
            self._require(source_node, user, 'read', source_path, 'cannot read')
            self._require(existing, user, 'write', dest_path)
            existing.content = source_node.content
            self._touch(dest_path)
            return dest_path

        parent.children[name] = self._clone_tree(source_node, source_path, user, group, preserve)
        self._touch(dest_path)
        return dest_path

    def move(self, source: str, dest: str, user: str) -> str:
        """Move or rename a node. Returns the final destination path."""
        source_path = self.resolve_path(source)
        if source_path == '/':
            raise PathError("cannot move the root directory", source_path)
        source_node = self.get_node(source_path, user)
        source_parent_path, source_name = self.split_path(source_path)
        source_parent = self.get_node(source_parent_path, user)
        self._require(source_parent, user, 'write', source, 'cannot move')

        dest_path, parent, name = self._destination(source_path, dest, user)
        if dest_path == source_path:
            return dest_path
        if source_node.is_dir() and dest_path.startswith(source_path + '/'):
            raise PathError(
                f"cannot move '{source}' to a subdirectory of itself, '{dest_path}'", dest_path)

        existing = parent.children.get(name)
        if existing is not None:
            if existing.is_dir():
                raise PathTypeError(f"cannot overwrite directory '{dest_path}'", dest_path)
            if source_node.is_dir():
                raise PathTypeError(
                    f"cannot overwrite non-directory '{dest_path}' with directory '{source}'",
                    dest_path)

        stamp = now_iso()
        del source_parent.children[source_name]
        source_parent.mtime = stamp
        parent.children[name] = source_node
        source_node.mtime = stamp
        parent.mtime = stamp
        self._settle_current_path()
        return dest_path

    # Ownership and mode

    def chmod(self, path: str, mode: int, user: str) -> Node:
        node = self.get_node(path, user)
        if user != ROOT_USER and node.owner != user:
            raise PermissionDeniedError(
                f"changing permissions of '{path}': Operation not permitted",
                self.resolve_path(path))
        node.mode = mode & 0o777
        self._touch(self.resolve_path(path))
        return node

    def chown(self, path: str, owner: str, user: str) -> Node:
        node = self.get_node(path, user)
        if user != ROOT_USER:
            raise PermissionDeniedError(
                f"changing ownership of '{path}': Operation not permitted",
                self.resolve_path(path))
        if not self.users.user_exists(owner):
            raise UserNotFoundError(f"invalid user: '{owner}'")
        node.owner = owner
        self._touch(self.resolve_path(path))
        return node

    def chgrp(self, path: str, group: str, user: str) -> Node:
        node = self.get_node(path, user)
        if user != ROOT_USER and node.owner != user:
            raise PermissionDeniedError(
                f"changing group of '{path}': Operation not permitted",
                self.resolve_path(path))
        if not self.users.group_exists(group):
            raise UserNotFoundError(f"invalid group: '{group}'")
        node.group = group
        self._touch(self.resolve_path(path))
        return node

    # Size and persistence

    def total_size(self) -> int:
        return node_size(self.root)

    def to_snapshot(self) -> dict:
        return {'/': self.root.to_dict()}

    def from_snapshot(self, data: dict) -> None:
        """Replace the in-memory tree with a deserialized snapshot."""
        if not isinstance(data, dict) or '/' not in data:
            raise StorageError("snapshot has no root node")
        root = Node.from_dict(data['/'])
        if not root.is_dir():
            raise StorageError("snapshot root is not a directory")
        self.root = root
        self._settle_current_path()

    def to_json(self) -> str:
        return json.dumps(self.to_snapshot())

    async def save(self) -> None:
        """
        Persist the whole tree and the user registry to the durable store.

        Over quota, nothing is written: the in-memory tree is reloaded from
        the last durable snapshot and QuotaExceededError is raised.
        """
        size = self.total_size()
        if size > self.max_size:
            logger.warning("Save rejected: %d bytes exceeds quota of %d", size, self.max_size)
            await self._restore_last_snapshot()
            raise QuotaExceededError(size, self.max_size)
        await self.store.put(SNAPSHOT_KEY, self.to_json())
        await self.store.put(USERS_KEY, json.dumps(self.users.to_dict()))
        logger.info("Saved filesystem snapshot (%d bytes of content)", size)

    async def _restore_last_snapshot(self) -> None:
        try:
            blob = await self.store.get(SNAPSHOT_KEY)
            if blob is not None:
                self.from_snapshot(json.loads(blob))
                return
        except (ValueError, StorageError) as e:
            logger.error("Last snapshot is unreadable, reinitializing: %s", e)
        self.initialize()

    async def _load_users(self) -> None:
        blob = await self.store.get(USERS_KEY)
        if blob is None:
            return
        try:
            self.users.load_dict(json.loads(blob))
        except ValueError as e:
            raise StorageError(f"user registry is not valid JSON: {e}") from e
        logger.info("Loaded %d users and %d groups", len(self.users.users), len(self.users.groups))

    async def load(self) -> None:
        """
        Load the user registry and the tree from the durable store.

        With no snapshot stored, a fresh tree is created and persisted. A
        corrupt snapshot leaves a fresh in-memory tree and raises StorageError.
        A corrupt user registry keeps the built-in users, still loads the
        tree, and then raises StorageError.
        """
        users_error: Optional[StorageError] = None
        try:
            await self._load_users()
        except StorageError as e:
            logger.error("Could not load user registry: %s", e)
            users_error = e

        blob = await self.store.get(SNAPSHOT_KEY)
        if blob is None:
            logger.info("No filesystem snapshot found. Initializing a new one.")
            self.initialize()
            await self.save()
        else:
            try:
                self.from_snapshot(json.loads(blob))
            except (ValueError, StorageError) as e:
                logger.error("Could not load filesystem snapshot: %s", e)
                self.initialize()
                raise StorageError(f"could not load filesystem snapshot: {e}") from e
            logger.info("Loaded filesystem snapshot")

        if users_error is not None:
            raise StorageError(f"could not load user registry: {users_error}") from users_error
