from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from itertools import count
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol

from product_portal.core.errors import StoreLoadError, WriteError


logger = logging.getLogger(__name__)

DEFAULT_STORE_KEY = "productPortalConfig"

ChangeCallback = Callable[[], None]
Unsubscribe = Callable[[], None]


class DocumentStore(Protocol):
    """Key-value store of opaque JSON text.

    ``subscribe`` is the cross-context channel: callbacks fire when another
    context writes, never for this context's own ``put``. ``put`` with
    ``expected_revision`` is a compare-and-set: it raises
    ``WriteError(E_STALE_WRITE)`` unless the store is still at that revision.
    """

    def get(self, key: str) -> Optional[str]: ...

    def put(self, key: str, value: str, *, expected_revision: Optional[int] = None) -> None: ...

    def revision(self) -> int: ...

    def subscribe(self, callback: ChangeCallback) -> Unsubscribe: ...


def _stale(current: int, expected: int, where: str) -> WriteError:
    return WriteError(
        code="E_STALE_WRITE",
        message=f"store is at revision {current}, expected {expected}",
        file=where,
    )


_context_ids = count(1)


class MemoryBackend:
    """Shared in-process storage that several MemoryStore contexts attach to."""

    def __init__(self, entries: Optional[dict[str, str]] = None) -> None:
        self._entries: dict[str, str] = dict(entries or {})
        self._revision = 0
        self._lock = threading.Lock()
        self._listeners: list[tuple[int, ChangeCallback]] = []

    def read(self, key: str) -> Optional[str]:
        with self._lock:
            return self._entries.get(key)

    def write(self, key: str, value: str, *, origin: int, expected_revision: Optional[int] = None) -> int:
        with self._lock:
            if expected_revision is not None and self._revision != expected_revision:
                raise _stale(self._revision, expected_revision, key)
            self._entries[key] = value
            self._revision += 1
            rev = self._revision
            targets = [cb for ctx, cb in self._listeners if ctx != origin]
        for cb in targets:
            cb()
        return rev

    def revision(self) -> int:
        with self._lock:
            return self._revision

    def add_listener(self, context_id: int, callback: ChangeCallback) -> Unsubscribe:
        entry = (context_id, callback)
        with self._lock:
            self._listeners.append(entry)

        def _remove() -> None:
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return _remove


class MemoryStore:
    """One execution context's view of a MemoryBackend (think: one browser tab)."""

    def __init__(self, backend: Optional[MemoryBackend] = None) -> None:
        self.backend = backend or MemoryBackend()
        self.context_id = next(_context_ids)

    def get(self, key: str) -> Optional[str]:
        return self.backend.read(key)

    def put(self, key: str, value: str, *, expected_revision: Optional[int] = None) -> None:
        rev = self.backend.write(key, value, origin=self.context_id, expected_revision=expected_revision)
        logger.debug(f"context {self.context_id} wrote {key} (revision {rev})")

    def revision(self) -> int:
        return self.backend.revision()

    def subscribe(self, callback: ChangeCallback) -> Unsubscribe:
        return self.backend.add_listener(self.context_id, callback)

    def sibling(self) -> "MemoryStore":
        """Another context sharing the same backend."""
        return MemoryStore(self.backend)


class FileStore:
    """JSON-file store shared between processes.

    Layout: {"revision": N, "entries": {key: text}}. Writes replace the whole
    file atomically while holding an flock on a sidecar ``.lock`` file, and
    always bump ``revision``. Other processes' writes are noticed by
    ``poll()``, which compares the on-disk revision with the last one this
    instance saw: anything else that edits the file must bump ``revision`` too,
    or pollers will not see the change.

    A file that exists but cannot be read or parsed raises ``StoreLoadError``
    on read and is never overwritten.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._listeners: list[ChangeCallback] = []
        self._lock = threading.Lock()
        try:
            self._seen_revision = self._read_envelope()[0]
        except StoreLoadError as e:
            logger.warning(f"Unreadable store file {self.path}: {e}")
            self._seen_revision = -1

    def _read_envelope(self) -> tuple[int, dict[str, str]]:
        if not self.path.exists():
            return 0, {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StoreLoadError(code="E_FILE_READ", message=str(e), file=str(self.path)) from e
        except ValueError as e:
            raise StoreLoadError(code="E_JSON_PARSE", message=str(e), file=str(self.path)) from e

        entries = raw.get("entries") if isinstance(raw, dict) else None
        rev = raw.get("revision") if isinstance(raw, dict) else None
        if not isinstance(entries, dict) or isinstance(rev, bool) or not isinstance(rev, int):
            raise StoreLoadError(
                code="E_INVALID_TOP_LEVEL",
                message="store file must be an object with an integer 'revision' and an 'entries' mapping",
                file=str(self.path),
            )
        return rev, {k: v for k, v in entries.items() if isinstance(v, str)}

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, open(self.lock_path, "w") as fd:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)

    def get(self, key: str) -> Optional[str]:
        return self._read_envelope()[1].get(key)

    def put(self, key: str, value: str, *, expected_revision: Optional[int] = None) -> None:
        with self._locked():
            try:
                rev, entries = self._read_envelope()
            except StoreLoadError as e:
                raise WriteError(
                    code="E_STORE_UNREADABLE",
                    message=f"refusing to overwrite unreadable store ({e.code}: {e.message})",
                    file=str(self.path),
                ) from e
            if expected_revision is not None and rev != expected_revision:
                raise _stale(rev, expected_revision, str(self.path))
            entries[key] = value
            rev += 1
            self._write_envelope(rev, entries)
            self._seen_revision = rev
        logger.debug(f"wrote {key} to {self.path} (revision {rev})")

    def _write_envelope(self, rev: int, entries: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"revision": rev, "entries": entries}, fh, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def revision(self) -> int:
        return self._read_envelope()[0]

    def subscribe(self, callback: ChangeCallback) -> Unsubscribe:
        with self._lock:
            self._listeners.append(callback)

        def _remove() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _remove

    def poll(self) -> bool:
        """Fire subscribers if another process wrote since we last looked.

        A file that turned unreadable counts as a change (once), so readers
        re-derive and report it instead of showing stale data.
        """
        try:
            rev = self.revision()
        except StoreLoadError as e:
            logger.warning(f"Unreadable store file {self.path}: {e}")
            rev = -1
        with self._lock:
            if rev == self._seen_revision:
                return False
            self._seen_revision = rev
            targets = list(self._listeners)
        logger.debug(f"{self.path} changed externally (revision {rev})")
        for cb in targets:
            cb()
        return True
