#!/usr/bin/env python3
"""
Users, groups and the session user stack.

Permission checks only need to know a user's groups; everything else about
accounts (passwords, login flows) lives outside the core.
"""

from typing import Dict, List, Optional

from .errors import UserNotFoundError, ShellError, StorageError


ROOT_USER = 'root'


def _check_name(kind: str, name: str) -> None:
    if not name or ' ' in name or '/' in name:
        raise ShellError(f"invalid {kind} name: '{name}'")


class UserRegistry:
    """Known users with their primary group, and groups with their members."""

    def __init__(self, default_user: Optional[str] = None):
        self.default_user = default_user
        self.users: Dict[str, str] = {}  # name -> primary group
        self.groups: Dict[str, List[str]] = {}  # name -> members
        self._add_builtin_users()

    def _add_builtin_users(self) -> None:
        for name in (ROOT_USER, self.default_user):
            if name and name not in self.users:
                self.add_user(name)

    def add_group(self, name: str) -> bool:
        """Create a group. Returns False if it already exists."""
        _check_name('group', name)
        if name in self.groups:
            return False
        self.groups[name] = []
        return True

    def add_user(self, name: str, primary_group: Optional[str] = None) -> None:
        """Register a user; the primary group defaults to one named after the user."""
        _check_name('user', name)
        group = primary_group or name
        self.add_group(group)
        self.users[name] = group
        self.add_user_to_group(name, group)

    def add_user_to_group(self, user: str, group: str) -> bool:
        if group not in self.groups:
            raise UserNotFoundError(f"group '{group}' does not exist")
        members = self.groups[group]
        if user in members:
            return False
        members.append(user)
        return True

    def user_exists(self, name: str) -> bool:
        return name in self.users

    def group_exists(self, name: str) -> bool:
        return name in self.groups

    def primary_group(self, user: str) -> str:
        """Primary group for user. Unknown users fall back to a group of their own name."""
        return self.users.get(user, user)

    def groups_for(self, user: str) -> List[str]:
        """Primary group first, then every other group listing the user."""
        result = [self.primary_group(user)]
        for name, members in self.groups.items():
            if user in members and name not in result:
                result.append(name)
        return result

    # Persistence

    def to_dict(self) -> dict:
        return {
            'users': dict(self.users),
            'groups': {name: list(members) for name, members in self.groups.items()},
        }

    def load_dict(self, data: dict) -> None:
        """
        Replace every user and group with a serialized registry.

        The input is validated before anything changes. root and the default
        user are always present afterwards.
        """
        if not isinstance(data, dict):
            raise StorageError("user registry must be an object")
        users = data.get('users')
        groups = data.get('groups')
        if not isinstance(users, dict) or not isinstance(groups, dict):
            raise StorageError("user registry needs 'users' and 'groups' objects")
        for name, primary in users.items():
            if not isinstance(primary, str):
                raise StorageError(f"user '{name}' has an invalid primary group")
        for name, members in groups.items():
            if not isinstance(members, list) or not all(isinstance(m, str) for m in members):
                raise StorageError(f"group '{name}' has an invalid member list")

        self.users = dict(users)
        self.groups = {name: list(members) for name, members in groups.items()}
        for name, primary in self.users.items():
            self.groups.setdefault(primary, [])
            if name not in self.groups[primary]:
                self.groups[primary].append(name)
        self._add_builtin_users()


class UserStack:
    """
    Stack of effective users for one session.

    `su` pushes, leaving a sub-session pops. The base user is never popped.
    """

    def __init__(self, base_user: str):
        self._stack: List[str] = [base_user]

    @property
    def current(self) -> str:
        return self._stack[-1]

    @property
    def depth(self) -> int:
        return len(self._stack)

    def push(self, user: str) -> None:
        self._stack.append(user)

    def pop(self) -> Optional[str]:
        if len(self._stack) > 1:
            return self._stack.pop()
        return None

    def reset(self, user: str) -> None:
        self._stack = [user]
