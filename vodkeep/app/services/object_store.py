from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger("vodkeep.object_store")
_SAFE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ObjectStore(Protocol):
    def get(self, name: str) -> bytes | None:
        ...

    def put(self, name: str, payload: bytes) -> None:
        ...


class FileObjectStore:
    """Durable blob storage keyed by logical name under a single directory."""

    def __init__(self, root_dir: Path) -> None:
        self._root_dir = root_dir

    def get(self, name: str) -> bytes | None:
        path = self._path_for(name)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, name: str, payload: bytes) -> None:
        path = self._path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        LOGGER.debug("object stored name=%s size_bytes=%s", name, len(payload))

    def _path_for(self, name: str) -> Path:
        if not _SAFE_NAME_PATTERN.match(name):
            raise ValueError(f"invalid object name: {name!r}")
        return self._root_dir / name
