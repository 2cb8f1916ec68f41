"""Filesystem durable store.

Each key lives in its own JSON document ``<sha1(key)>.json`` holding the key,
its creation sequence number and the value. Documents are written with
temp-file + fsync + ``os.replace`` so a crash never leaves a torn value.
Creation order is rebuilt at open by sorting documents on their sequence
number, never on file names or modification times.
"""

import hashlib
import json
import logging
import os
import tempfile
import threading
from pathlib import Path

from telemeter.core.errors import StorageError

logger = logging.getLogger("telemeter.storage")

_SUFFIX = ".json"


def _filename(key: str) -> str:
    return hashlib.sha1(key.encode("utf-8")).hexdigest() + _SUFFIX


def _atomic_write_text(path: Path, text: str) -> None:
    tmp_fd = None
    tmp_path = None
    try:
        tmp_fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        tmp_path = Path(tmp_name)
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            tmp_fd = None
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
    finally:
        if tmp_fd is not None:
            os.close(tmp_fd)
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()


class FileStore:
    """Durable store keeping one file per key in a directory.

    Args:
        base_path: Directory holding the documents; created if missing.

    Raises:
        StorageError: If the directory cannot be created or listed.
    """

    def __init__(self, base_path: str | os.PathLike[str]) -> None:
        self._dir = Path(base_path)
        self._lock = threading.Lock()
        # key -> sequence number, kept in creation order
        self._index: dict[str, int] = {}
        self._next_seq = 0
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            self._load_index()
        except OSError as e:
            raise StorageError(f"cannot open store at {self._dir}", e) from e

    @property
    def path(self) -> Path:
        return self._dir

    def _load_index(self) -> None:
        entries: list[tuple[int, str]] = []
        for doc_path in self._dir.glob(f"*{_SUFFIX}"):
            try:
                doc = json.loads(doc_path.read_text(encoding="utf-8"))
                entries.append((int(doc["seq"]), str(doc["key"])))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(
                    f"Removing unreadable store document {doc_path.name}: {e}",
                    extra={"path": str(doc_path)},
                )
                doc_path.unlink(missing_ok=True)
        entries.sort()
        self._index = {key: seq for seq, key in entries}
        self._next_seq = entries[-1][0] + 1 if entries else 0

    def put(self, key: str, value: str) -> None:
        with self._lock:
            seq = self._index.get(key)
            if seq is None:
                seq = self._next_seq
            doc = json.dumps({"key": key, "seq": seq, "value": value})
            try:
                _atomic_write_text(self._dir / _filename(key), doc)
            except OSError as e:
                raise StorageError(f"failed to write {key!r}", e) from e
            if key not in self._index:
                self._index[key] = seq
                self._next_seq = seq + 1

    def get(self, key: str) -> str | None:
        with self._lock:
            if key not in self._index:
                return None
            try:
                doc = json.loads((self._dir / _filename(key)).read_text(encoding="utf-8"))
            except FileNotFoundError:
                self._index.pop(key, None)
                return None
            except (OSError, ValueError) as e:
                raise StorageError(f"failed to read {key!r}", e) from e
            return doc.get("value")

    def delete(self, key: str) -> None:
        with self._lock:
            self._delete_locked(key)

    def _delete_locked(self, key: str) -> None:
        try:
            (self._dir / _filename(key)).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"failed to delete {key!r}", e) from e
        self._index.pop(key, None)

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [k for k in self._index if k.startswith(prefix)]

    def clear(self, prefix: str = "") -> None:
        with self._lock:
            for key in [k for k in self._index if k.startswith(prefix)]:
                self._delete_locked(key)

    def close(self) -> None:
        pass

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)
