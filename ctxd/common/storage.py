"""
Low-level persistence helpers: canonical serialization, checksums, scoped
exclusive locks and atomic write-then-rename.

Readers never take the lock. They only ever observe a complete file because
every write lands in a temp file in the same directory and is moved into
place with ``os.replace``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .errors import WriteConflict

logger = logging.getLogger("ctxd.common.storage")

DEFAULT_RETRIES = 5
DEFAULT_BASE_DELAY = 0.05
DEFAULT_MAX_DELAY = 1.0
STALE_LOCK_SECONDS = 30.0


def canonical_json(obj: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace, ASCII-safe."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"),
        ensure_ascii=True, default=str,
    )


def sha256_hex(data: Union[str, bytes]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def file_sha256(path: Path, chunk_size: int = 65536) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def atomic_write(path: Path, content: Union[str, bytes]) -> None:
    """Write to a temp file next to ``path`` and ``os.replace`` it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    mode = "wb" if isinstance(content, bytes) else "w"
    try:
        if isinstance(content, bytes):
            with os.fdopen(fd, mode) as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
        else:
            with os.fdopen(fd, mode, encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
        os.replace(tmp_path, str(path))
    except OSError:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class ExclusiveLock:
    """Scoped lock backed by an ``O_EXCL`` lock file next to the target.

    Acquisition retries with bounded exponential backoff. A lock file older
    than ``stale_after`` seconds is assumed to belong to a dead writer and is
    broken. When the retry budget is exhausted, ``WriteConflict`` is raised
    and nothing has been written.
    """

    def __init__(
        self,
        target: Path,
        retries: int = DEFAULT_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        stale_after: float = STALE_LOCK_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.target = Path(target)
        self.lock_path = self.target.with_name(self.target.name + ".lock")
        self.retries = retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.stale_after = stale_after
        self._sleep = sleep
        self._fd: Optional[int] = None

    def _try_acquire(self) -> bool:
        try:
            self._fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        os.write(self._fd, str(os.getpid()).encode())
        return True

    def _break_if_stale(self) -> None:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return
        if age > self.stale_after:
            logger.warning("Breaking stale lock %s (age %.1fs)", self.lock_path, age)
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                pass

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        attempts = self.retries + 1
        for attempt in range(attempts):
            if self._try_acquire():
                return
            self._break_if_stale()
            if attempt < attempts - 1:
                delay = min(self.max_delay, self.base_delay * (2 ** attempt))
                logger.debug("Lock %s busy, retrying in %.3fs", self.lock_path, delay)
                self._sleep(delay)
        logger.error("Write lock for %s not acquired after %d attempts", self.target, attempts)
        raise WriteConflict(self.target, attempts)

    def release(self) -> None:
        if self._fd is None:
            return
        os.close(self._fd)
        self._fd = None
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "ExclusiveLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def locked_write(path: Path, content: Union[str, bytes], **lock_kwargs) -> None:
    """Atomic write under an exclusive lock on ``path``."""
    with ExclusiveLock(path, **lock_kwargs):
        atomic_write(path, content)
