"""
Append-only JSONL logs partitioned per (date, author, session).

Each writer appends to its own partition file, so concurrent sessions and
users never contend for a file and no cross-session lock is needed. Files
older than the hot horizon are merged into monthly gzip batches by the
retention manager; readers see hot and warm records transparently. Cold
batches live outside the project and are not read.
"""

from __future__ import annotations

import gzip
import json
import logging
import re
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, NamedTuple, Optional

from .schemas.events import RawEvent, to_utc, utc_now
from .schemas.interaction import Interaction, amendment_record

logger = logging.getLogger("ctxd.common.intent_log")

_PARTITION_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})_([^_]+)_([^_]+)\.jsonl$")
_SLUG_RE = re.compile(r"[^A-Za-z0-9.-]+")


def interaction_number(record: Dict[str, Any]) -> int:
    """Numeric part of a base or amendment record's ``int_NNNN`` id, 0 if none"""
    record_id = record.get("id") or record.get("amends") or ""
    if not isinstance(record_id, str) or not record_id.startswith("int_"):
        return 0
    try:
        return int(record_id[len("int_"):])
    except ValueError:
        return 0


def _slug(value: Optional[str]) -> str:
    cleaned = _SLUG_RE.sub("-", value or "").strip("-")
    return cleaned or "default"


class Partition(NamedTuple):
    path: Path
    day: date
    author: str
    session: str


class JsonlLog:
    """One kind of append-only record (``intents`` or ``events``)."""

    def __init__(self, directory: Path, warm_dir: Path, kind: str):
        self.directory = Path(directory)
        self.warm_dir = Path(warm_dir)
        self.kind = kind

    def path_for(self, when: datetime, author: Optional[str], session: Optional[str]) -> Path:
        day = to_utc(when).date().isoformat()
        return self.directory / f"{day}_{_slug(author)}_{_slug(session)}.jsonl"

    def append(
        self,
        record: Dict[str, Any],
        *,
        when: datetime,
        author: Optional[str],
        session: Optional[str],
    ) -> Path:
        path = self.path_for(when, author, session)
        path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record, ensure_ascii=False, default=str)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
        return path

    def partitions(self) -> List[Partition]:
        """Hot partition files, oldest first"""
        if not self.directory.exists():
            return []
        found = []
        for path in sorted(self.directory.glob("*.jsonl")):
            match = _PARTITION_RE.match(path.name)
            if not match:
                logger.warning("Ignoring unrecognized log file %s", path.name)
                continue
            found.append(Partition(path, date.fromisoformat(match.group(1)), match.group(2), match.group(3)))
        return found

    def warm_batches(self) -> List[Path]:
        if not self.warm_dir.exists():
            return []
        return sorted(self.warm_dir.glob(f"{self.kind}-*.jsonl.gz"))

    def warm_batch_path(self, month: str) -> Path:
        return self.warm_dir / f"{self.kind}-{month}.jsonl.gz"

    @staticmethod
    def _parse_lines(lines, origin: str) -> Iterator[Dict[str, Any]]:
        for lineno, line in enumerate(lines, 1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed line %s:%d", origin, lineno)
                continue
            if isinstance(record, dict):
                yield record

    def read_partition(self, path: Path) -> Iterator[Dict[str, Any]]:
        with open(path, encoding="utf-8") as f:
            yield from self._parse_lines(f, path.name)

    def read_warm(self, path: Path) -> Iterator[Dict[str, Any]]:
        with gzip.open(path, "rt", encoding="utf-8") as f:
            yield from self._parse_lines(f, path.name)

    def iter_records(self, include_warm: bool = True) -> Iterator[Dict[str, Any]]:
        """All readable records: warm batches first, then hot partitions."""
        if include_warm:
            for batch in self.warm_batches():
                yield from self.read_warm(batch)
        for partition in self.partitions():
            yield from self.read_partition(partition.path)

    def hot_bytes(self) -> int:
        return sum(p.path.stat().st_size for p in self.partitions())


class EventLog(JsonlLog):
    """Redacted raw events, as they left the buffer"""

    def __init__(self, directory: Path, warm_dir: Path):
        super().__init__(directory, warm_dir, "events")

    def append_event(self, event: RawEvent) -> Path:
        return self.append(
            event.model_dump(mode="json"),
            when=event.timestamp,
            author=event.author,
            session=event.session_id,
        )

    def load_events(self, include_warm: bool = True) -> List[RawEvent]:
        events = []
        for record in self.iter_records(include_warm):
            try:
                events.append(RawEvent.model_validate(record))
            except ValueError as e:
                logger.warning("Skipping invalid event record: %s", e)
        return events


class IntentLog(JsonlLog):
    """The interaction log. Base records plus amendment lines."""

    def __init__(self, directory: Path, warm_dir: Path):
        super().__init__(directory, warm_dir, "intents")

    def append_interaction(self, interaction: Interaction) -> Path:
        return self.append(
            interaction.to_log_record(),
            when=interaction.timestamp,
            author=interaction.author,
            session=interaction.session_id,
        )

    def append_amendment(self, interaction: Interaction, **fields: Any) -> Path:
        """Record a later fact about an interaction (commit link, ADR id)"""
        return self.append(
            amendment_record(interaction.id, **fields),
            when=utc_now(),
            author=interaction.author,
            session=interaction.session_id,
        )

    def load_interactions(self, include_warm: bool = True) -> List[Interaction]:
        """Fold base records and amendments into Interactions, oldest first"""
        base: Dict[str, Interaction] = {}
        amendments: List[Dict[str, Any]] = []

        for record in self.iter_records(include_warm):
            if "amends" in record:
                amendments.append(record)
                continue
            try:
                interaction = Interaction.from_log_record(record)
            except (KeyError, ValueError) as e:
                logger.warning("Skipping invalid interaction record: %s", e)
                continue
            base.setdefault(interaction.id, interaction)

        amendments.sort(key=lambda r: r.get("ts", ""))
        for record in amendments:
            target = base.get(record["amends"])
            if target is None:
                # Base record archived to cold storage, or never written
                continue
            base[target.id] = target.apply_amendment(record)

        return sorted(base.values(), key=lambda i: (i.timestamp, i.number))

    def max_interaction_number(self) -> int:
        return max((interaction_number(r) for r in self.iter_records()), default=0)
