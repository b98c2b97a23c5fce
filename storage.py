# storage.py
import os
import pathlib
import re
from typing import Dict, Optional, Protocol


class KeyValueStorage(Protocol):
    def load(self, key: str) -> Optional[bytes]:
        ...

    def save(self, key: str, data: bytes) -> None:
        ...


class MemoryStorage:
    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self.data: Dict[str, bytes] = dict(initial or {})

    def load(self, key: str) -> Optional[bytes]:
        return self.data.get(key)

    def save(self, key: str, data: bytes) -> None:
        self.data[key] = bytes(data)


_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class FileStorage:
    """One file per key under `directory`; writes go through a temp file and os.replace."""

    def __init__(self, directory: str):
        self.directory = pathlib.Path(directory).expanduser()

    def _path(self, key: str) -> pathlib.Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Unsafe storage key: {key!r}")
        return self.directory / f"{key}.json"

    def load(self, key: str) -> Optional[bytes]:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            return None

    def save(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)
