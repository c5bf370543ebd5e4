"""
Retention / Archival Manager

Tiers the append-only logs by age:

- hot:  per-(date, author, session) JSONL files, read directly
- warm: one gzip batch per log kind and month, still read by the builder
- cold: the batch moved to external storage, leaving a pointer with its
        sha256; unavailable to readers and excluded, never deleted

Only raw event / interaction storage is touched. Decision records and the
snapshot are never read or written here.
"""

import gzip
import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from itertools import groupby
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from ..common.intent_log import JsonlLog, interaction_number
from ..common.schemas.events import to_utc, utc_now
from ..common.storage import atomic_write, file_sha256

logger = logging.getLogger("ctxd.pipeline.retention")


@dataclass
class ArchiveResult:
    moved_count: int = 0
    bytes_reclaimed: int = 0
    warm_batches: List[str] = field(default_factory=list)
    cold_pointers: List[str] = field(default_factory=list)
    orphans_archived: int = 0

    def to_dict(self) -> dict:
        return {
            "moved_count": self.moved_count,
            "bytes_reclaimed": self.bytes_reclaimed,
            "warm_batches": self.warm_batches,
            "cold_pointers": self.cold_pointers,
            "orphans_archived": self.orphans_archived,
        }


class ColdStore(Protocol):
    def put(self, path: Path, name: str) -> str:
        """Move ``path`` out of the project; return a reference URI"""
        ...


class LocalColdStore:
    """Cold storage in a directory outside the project tree"""

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()

    def put(self, path: Path, name: str) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.root / name
        shutil.move(str(path), str(target))
        return target.resolve().as_uri()


def _month_end(month: str) -> date:
    year, mon = (int(p) for p in month.split("-"))
    first_next = date(year + (mon == 12), mon % 12 + 1, 1)
    return first_next - timedelta(days=1)


class RetentionManager:
    def __init__(
        self,
        logs: Sequence[JsonlLog],
        pointer_dir: Path,
        cold_store: ColdStore,
        hot_days: int = 90,
        warm_days: int = 365,
    ):
        self.logs = list(logs)
        self.pointer_dir = Path(pointer_dir)
        self.cold_store = cold_store
        self.hot_horizon = timedelta(days=hot_days)
        self.warm_horizon = timedelta(days=warm_days)

    def archive(
        self,
        older_than: Optional[timedelta] = None,
        now: Optional[datetime] = None,
        warm_older_than: Optional[timedelta] = None,
    ) -> ArchiveResult:
        """Merge old hot files into warm batches, then push old batches cold"""
        now = to_utc(now) if now else utc_now()
        hot_cutoff = (now - (older_than if older_than is not None else self.hot_horizon)).date()
        warm_cutoff = (now - (warm_older_than if warm_older_than is not None else self.warm_horizon)).date()

        result = ArchiveResult()
        for log in self.logs:
            self._hot_to_warm(log, hot_cutoff, result)
            self._warm_to_cold(log, warm_cutoff, now, result)

        logger.info(
            "Archived %d item(s), reclaimed %d bytes",
            result.moved_count, result.bytes_reclaimed,
        )
        return result

    def _hot_to_warm(self, log: JsonlLog, cutoff: date, result: ArchiveResult) -> None:
        expired = [p for p in log.partitions() if p.day < cutoff]
        month_of = lambda p: p.day.strftime("%Y-%m")
        for month, group in groupby(sorted(expired, key=month_of), key=month_of):
            partitions = list(group)
            batch = log.warm_batch_path(month)

            chunks = []
            previous_size = 0
            if batch.exists():
                previous_size = batch.stat().st_size
                with gzip.open(batch, "rb") as f:
                    chunks.append(f.read())
            moved_size = 0
            for partition in partitions:
                data = partition.path.read_bytes()
                moved_size += len(data)
                if data and not data.endswith(b"\n"):
                    data += b"\n"
                chunks.append(data)

            compressed = gzip.compress(b"".join(chunks), mtime=0)
            atomic_write(batch, compressed)
            for partition in partitions:
                partition.path.unlink()

            result.moved_count += len(partitions)
            result.bytes_reclaimed += max(0, moved_size + previous_size - len(compressed))
            result.warm_batches.append(batch.name)
            logger.debug("Merged %d %s file(s) into %s", len(partitions), log.kind, batch.name)

    def _warm_to_cold(self, log: JsonlLog, cutoff: date, now: datetime, result: ArchiveResult) -> None:
        for batch in log.warm_batches():
            month = batch.name[len(log.kind) + 1 : -len(".jsonl.gz")]
            try:
                month_end = _month_end(month)
            except ValueError:
                logger.warning("Ignoring unrecognized warm batch %s", batch.name)
                continue
            if month_end >= cutoff:
                continue

            size = batch.stat().st_size
            digest = file_sha256(batch)
            records = 0
            max_id = 0
            for record in log.read_warm(batch):
                records += 1
                max_id = max(max_id, interaction_number(record))
            name = f"{log.kind}-{month}-{digest[:8]}.jsonl.gz"
            uri = self.cold_store.put(batch, name)

            pointer = {
                "kind": log.kind,
                "month": month,
                "uri": uri,
                "sha256": digest,
                "bytes": size,
                "records": records,
                "archived_at": now.isoformat(),
            }
            if max_id:
                # Ids must keep counting up once these records are unreadable
                pointer["max_id"] = max_id
            pointer_path = self.pointer_dir / f"{log.kind}-{month}-{digest[:8]}.json"
            atomic_write(pointer_path, json.dumps(pointer, indent=2) + "\n")

            result.moved_count += 1
            result.bytes_reclaimed += size
            result.cold_pointers.append(pointer_path.name)
            logger.debug("Moved %s to cold storage at %s", batch.name, uri)

    def cold_pointers(self) -> List[dict]:
        """Pointers to batches no longer readable from the project"""
        if not self.pointer_dir.exists():
            return []
        pointers = []
        for path in sorted(self.pointer_dir.glob("*.json")):
            try:
                pointers.append(json.loads(path.read_text()))
            except json.JSONDecodeError:
                logger.warning("Unreadable cold pointer %s", path.name)
        return pointers

    def max_archived_interaction_number(self) -> int:
        """Highest interaction number moved to cold storage, 0 if none"""
        numbers = [
            p.get("max_id", 0) for p in self.cold_pointers()
            if p.get("kind") == "intents" and isinstance(p.get("max_id", 0), int)
        ]
        return max(numbers, default=0)
