"""
context.lock persistence.

A snapshot is only ever served after its checksum verifies. Anything else,
whether corrupt JSON, schema drift or a tampered section, is discarded and
rebuilt from the append-only sources.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from .errors import ChecksumMismatch
from .schemas.snapshot import Snapshot
from .storage import ExclusiveLock, atomic_write

logger = logging.getLogger("ctxd.common.snapshot_store")


class SnapshotStore:
    def __init__(self, path: Path, **lock_kwargs):
        self.path = Path(path)
        self._lock_kwargs = lock_kwargs

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[Snapshot]:
        """Load and verify the snapshot.

        Returns None when there is no snapshot yet.

        Raises:
            ChecksumMismatch: the file is unparseable or fails verification
        """
        if not self.path.exists():
            return None
        text = self.path.read_text(encoding="utf-8")
        try:
            snapshot = Snapshot.from_lock_text(text)
        except (ValidationError, ValueError) as e:
            raise ChecksumMismatch("<unparseable>", f"parse error: {e}") from e
        actual = snapshot.compute_checksum()
        if snapshot.checksum != actual:
            raise ChecksumMismatch(snapshot.checksum, actual)
        return snapshot

    def save(self, snapshot: Snapshot) -> Snapshot:
        """Stamp the checksum and write under the exclusive lock"""
        if not snapshot.verify():
            snapshot = snapshot.with_checksum()
        with ExclusiveLock(self.path, **self._lock_kwargs):
            atomic_write(self.path, snapshot.to_lock_text() + "\n")
        logger.info("Wrote %s (checksum %s)", self.path.name, snapshot.checksum[:12])
        return snapshot

    def discard(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def load_or_rebuild(self, rebuild: Callable[[], Snapshot]) -> Snapshot:
        """Serve the stored snapshot, or rebuild and persist a fresh one."""
        try:
            snapshot = self.load()
        except ChecksumMismatch as e:
            logger.warning("Discarding corrupt snapshot: %s", e)
            self.discard()
            snapshot = None
        if snapshot is not None:
            return snapshot
        return self.save(rebuild())
