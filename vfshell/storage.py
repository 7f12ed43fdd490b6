#!/usr/bin/env python3
"""
Durable blob stores for filesystem snapshots.

The filesystem only ever needs two things from a backend: fetch the blob
stored under a key, and replace it. Both are awaitable so that store I/O is
one of the explicit suspension points of the cooperative scheduler.
"""

import os
import json
import logging
import tempfile
from abc import ABC, abstractmethod
from typing import Dict, Optional

from .errors import StorageError


logger = logging.getLogger(__name__)


class DurableStore(ABC):
    """Key/blob storage used by FileSystem.save() and FileSystem.load()."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the blob stored under key, or None if there is none."""

    @abstractmethod
    async def put(self, key: str, blob: str) -> None:
        """Store blob under key, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key. Missing keys are ignored."""


class MemoryStore(DurableStore):
    """Dictionary-backed store. Survives as long as the object does."""

    def __init__(self):
        self.blobs: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.blobs.get(key)

    async def put(self, key: str, blob: str) -> None:
        self.blobs[key] = blob

    async def delete(self, key: str) -> None:
        self.blobs.pop(key, None)


class JsonFileStore(DurableStore):
    """
    Stores each key as a JSON file inside a host directory.

    Writes go to a temporary file first and are moved into place, so a crash
    mid-write leaves the previous snapshot intact.
    """

    def __init__(self, directory: str):
        self.directory = os.path.abspath(directory)
        os.makedirs(self.directory, exist_ok=True)

    def _path_for(self, key: str) -> str:
        safe = ''.join(c if c.isalnum() or c in '-_.' else '_' for c in key)
        return os.path.join(self.directory, f"{safe}.json")

    async def get(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                wrapper = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"could not read '{path}': {e}") from e
        if not isinstance(wrapper, dict):
            raise StorageError(f"could not read '{path}': expected a JSON object")
        data = wrapper.get('data')
        if data is not None and not isinstance(data, str):
            raise StorageError(f"could not read '{path}': 'data' is not a string")
        return data

    async def put(self, key: str, blob: str) -> None:
        path = self._path_for(key)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump({'key': key, 'data': blob}, f)
            os.replace(tmp_path, path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError(f"could not write '{path}': {e}") from e
        logger.debug("Wrote %d bytes to %s", len(blob), path)

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        if os.path.exists(path):
            os.unlink(path)
