"""String-keyed stores backing the queue, the cache and the shared mesh medium.

Every store exposes the same four operations (put, get, list_keys, delete).
The mesh relay only needs this capability, so any broadcast channel able to
put/get/list/delete can stand in for the shared medium.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, unquote

from pylaban.exceptions import PersistenceError

_logger = logging.getLogger(__name__)

_SUFFIX = ".json"
_TMP_PREFIX = ".tmp-"


class KeyValueStore(Protocol):
    """Structural store interface.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementations concrete.
    """

    def put(self, key: str, value: str) -> None: ...

    def get(self, key: str) -> str | None: ...

    def list_keys(self, prefix: str = "") -> list[str]: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """In-process store.

    Sharing one instance between several relays emulates devices sitting on
    the same medium.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def put(self, key: str, value: str) -> None:
        self._data[key] = value

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def list_keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._data if key.startswith(prefix)]

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


class FileStore:
    """Directory-backed store, one file per key.

    Writes go to a temporary file that is atomically renamed into place, so
    concurrent readers (including other processes sharing the directory)
    never see a partially written value.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Cannot create store directory {self._root}: {exc}") from exc

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        return self._root / (quote(key, safe="") + _SUFFIX)

    def put(self, key: str, value: str) -> None:
        target = self._path(key)
        tmp_name: str | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=self._root)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
            tmp_name = None
        except OSError as exc:
            raise PersistenceError(f"Failed to persist {key!r}: {exc}", key=key) from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    _logger.debug("Could not remove temp file %s", tmp_name, exc_info=True)

    def get(self, key: str) -> str | None:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"Failed to read {key!r}: {exc}", key=key) from exc

    def list_keys(self, prefix: str = "") -> list[str]:
        try:
            names = os.listdir(self._root)
        except OSError as exc:
            raise PersistenceError(f"Failed to list {self._root}: {exc}") from exc
        keys: list[str] = []
        for name in names:
            if name.startswith(_TMP_PREFIX) or not name.endswith(_SUFFIX):
                continue
            key = unquote(name[: -len(_SUFFIX)])
            if key.startswith(prefix):
                keys.append(key)
        return keys

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            # Another device (or timer) got there first.
            return
        except OSError as exc:
            raise PersistenceError(f"Failed to delete {key!r}: {exc}", key=key) from exc
