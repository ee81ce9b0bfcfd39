"""String-keyed, string-valued persistent storage.

This is the local key-value store the fallback cache writes into. Paths are
relative keys such as ``fallback/reports.json``.
"""

from __future__ import annotations

import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path


class FileStore(ABC):
    @abstractmethod
    def write(self, path: str, contents: str) -> None:
        """Write ``contents`` at ``path``, replacing anything already there."""

    @abstractmethod
    def read(self, path: str) -> str:
        """Read the contents at ``path``.

        Raises FileNotFoundError if nothing has been written there.
        """

    @abstractmethod
    def list(self, path: str) -> list[str]:
        """List the keys directly below ``path``."""

    @abstractmethod
    def delete(self, path: str) -> None:
        """Delete ``path``; missing keys are ignored."""


class LocalFileStore(FileStore):
    """FileStore backed by a directory on disk."""

    def __init__(self, root: str):
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    def get_full_path(self, path: str) -> Path:
        full_path = (self.root / path.lstrip('/')).resolve()
        if self.root.resolve() not in full_path.parents and full_path != self.root.resolve():
            raise ValueError(f'Path escapes file store root: {path}')
        return full_path

    def write(self, path: str, contents: str) -> None:
        full_path = self.get_full_path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a sibling file first so readers never see a partial file
        tmp_path = full_path.with_name(f'.{full_path.name}.tmp')
        tmp_path.write_text(contents, encoding='utf-8')
        os.replace(tmp_path, full_path)

    def read(self, path: str) -> str:
        return self.get_full_path(path).read_text(encoding='utf-8')

    def list(self, path: str) -> list[str]:
        full_path = self.get_full_path(path)
        if not full_path.is_dir():
            return []
        prefix = path.strip('/')
        return sorted(
            f'{prefix}/{entry.name}' if prefix else entry.name
            for entry in full_path.iterdir()
            if not entry.name.startswith('.')
        )

    def delete(self, path: str) -> None:
        full_path = self.get_full_path(path)
        if full_path.is_file():
            full_path.unlink()


class InMemoryFileStore(FileStore):
    def __init__(self, files: dict[str, str] | None = None):
        self.files: dict[str, str] = dict(files or {})
        self._lock = threading.Lock()

    def write(self, path: str, contents: str) -> None:
        with self._lock:
            self.files[path] = contents

    def read(self, path: str) -> str:
        with self._lock:
            if path not in self.files:
                raise FileNotFoundError(path)
            return self.files[path]

    def list(self, path: str) -> list[str]:
        prefix = path.strip('/')
        prefix = f'{prefix}/' if prefix else ''
        with self._lock:
            return sorted(
                key for key in self.files
                if key.startswith(prefix) and '/' not in key[len(prefix):]
            )

    def delete(self, path: str) -> None:
        with self._lock:
            self.files.pop(path, None)
