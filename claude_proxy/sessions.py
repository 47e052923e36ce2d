"""Content-addressed session store: conversation prefix digest -> agent session id."""

import asyncio
import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable

logger = logging.getLogger("claude_proxy.sessions")

FLUSH_INTERVAL_S = 30.0


def digest(messages: list[dict]) -> str:
    """SHA-256 over the canonical JSON form of ``messages``.

    Keys are sorted inside each object, list order (turns and content parts)
    is preserved, so any differing field yields a different digest.
    """
    payload = json.dumps(messages, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class SessionEntry:
    session_id: str
    created_at: float


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


class SessionStore:
    """Maps conversation prefixes to resumable agent sessions.

    Shared by every in-flight request. A lock guards the table so it is also
    safe to touch from worker threads; the last writer for a digest wins.
    """

    def __init__(
        self,
        ttl: float = 3600.0,
        persist_path: str | Path | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self.persist_path = Path(persist_path).expanduser() if persist_path else None
        self._clock = clock
        self._entries: dict[str, SessionEntry] = {}
        self._lock = threading.Lock()
        self._dirty = False
        self._tasks: list[asyncio.Task] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def dirty(self) -> bool:
        return self._dirty

    # --- Lookup / store ---

    def lookup(self, context: list[dict]) -> str | None:
        if not context:
            return None
        key = digest(context)
        with self._lock:
            entry = self._entries.get(key)
        return entry.session_id if entry else None

    def store(self, context: list[dict], session_id: str) -> None:
        key = digest(context)
        with self._lock:
            self._entries[key] = SessionEntry(session_id=session_id, created_at=self._clock())
            self._dirty = True

    def sweep(self, ttl: float | None = None) -> int:
        """Drop entries older than ``ttl`` seconds. Returns how many were removed."""
        ttl = self.ttl if ttl is None else ttl
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now - e.created_at > ttl]
            for key in expired:
                del self._entries[key]
            if expired:
                self._dirty = True
        if expired:
            logger.debug("Cleaned up %d expired sessions", len(expired))
        return len(expired)

    # --- Persistence ---

    def load(self) -> int:
        """Restore entries from the backing file. Missing or corrupt file: start empty."""
        if self.persist_path is None or not self.persist_path.exists():
            return 0
        try:
            data = json.loads(self.persist_path.read_text(encoding="utf-8"))
            entries = {
                key: SessionEntry(session_id=str(e["session_id"]), created_at=float(e["created_at"]))
                for key, e in data.items()
            }
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as exc:
            logger.warning("Failed to restore sessions from %s: %s", self.persist_path, exc)
            return 0
        with self._lock:
            self._entries.update(entries)
        logger.info("Restored %d sessions from %s", len(entries), self.persist_path)
        return len(entries)

    def flush(self) -> bool:
        """Write the table to the backing file. Errors are logged, never raised."""
        if self.persist_path is None:
            return False
        with self._lock:
            snapshot = {key: asdict(entry) for key, entry in self._entries.items()}
            self._dirty = False
        try:
            _atomic_write_text(self.persist_path, json.dumps(snapshot))
        except (OSError, TypeError, ValueError):
            logger.exception("Failed to flush sessions to %s", self.persist_path)
            self._dirty = True
            return False
        logger.debug("Flushed %d sessions to %s", len(snapshot), self.persist_path)
        return True

    # --- Background maintenance ---

    async def _sweep_loop(self) -> None:
        interval = max(self.ttl / 2, 1.0)
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(FLUSH_INTERVAL_S)
            if self._dirty:
                await asyncio.to_thread(self.flush)

    def start(self) -> None:
        """Start the sweep (every ttl/2) and, with a backing file, the flush loop."""
        if self._tasks:
            return
        self._tasks.append(asyncio.create_task(self._sweep_loop()))
        if self.persist_path is not None:
            self._tasks.append(asyncio.create_task(self._flush_loop()))

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        if self._dirty:
            self.flush()
