"""
Decision record store.

``decisions/index.json`` holds every record and is the machine-readable
source of truth; ``decisions/ADR-NNN.md`` is the rendered human view. All
mutations are read-modify-write cycles under one exclusive lock on the
index, and every file lands via atomic rename.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import CtxdError
from .schemas.decision_record import DecisionRecord, next_record_id
from .schemas.templates import render_adr_markdown
from .storage import ExclusiveLock, atomic_write
from .text import normalize_tokens

logger = logging.getLogger("ctxd.common.decision_store")

INDEX_VERSION = 1


class DecisionStore:
    """Persisted DecisionRecords. Records are never deleted."""

    def __init__(self, directory: Path, **lock_kwargs):
        self.directory = Path(directory)
        self.index_path = self.directory / "index.json"
        self._lock_kwargs = lock_kwargs

    def _lock(self) -> ExclusiveLock:
        return ExclusiveLock(self.index_path, **self._lock_kwargs)

    def _read_index(self) -> Dict[str, DecisionRecord]:
        if not self.index_path.exists():
            return {}
        try:
            with open(self.index_path, encoding="utf-8") as f:
                data = json.load(f)
            records = [DecisionRecord.model_validate(r) for r in data.get("records", [])]
        except (json.JSONDecodeError, ValueError) as e:
            raise CtxdError(f"Decision index {self.index_path} is corrupt: {e}") from e
        return {r.id: r for r in records}

    def _write(self, records: Dict[str, DecisionRecord], changed: List[DecisionRecord]) -> None:
        ordered = sorted(records.values(), key=lambda r: r.number)
        payload = {
            "version": INDEX_VERSION,
            "records": [r.model_dump(mode="json") for r in ordered],
        }
        atomic_write(self.index_path, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
        for record in changed:
            atomic_write(self.directory / f"{record.id}.md", render_adr_markdown(record))

    def load_all(self) -> List[DecisionRecord]:
        return sorted(self._read_index().values(), key=lambda r: r.number)

    def get(self, record_id: str) -> Optional[DecisionRecord]:
        return self._read_index().get(record_id)

    def create(self, build: Callable[[str], DecisionRecord]) -> DecisionRecord:
        """Allocate the next ADR id and persist the record ``build(id)`` returns.

        The id is computed inside the lock so concurrent writers never hand
        out the same number.
        """
        with self._lock():
            records = self._read_index()
            record = build(next_record_id(records.keys()))
            if record.id in records:
                raise CtxdError(f"Decision {record.id} already exists")
            records[record.id] = record
            self._write(records, [record])
        logger.info("Created decision %s: %s", record.id, record.title)
        return record

    def update(self, record_id: str, mutate: Callable[[DecisionRecord, Dict[str, DecisionRecord]], None]) -> DecisionRecord:
        """Apply ``mutate(record, all_records)`` to a stored record and persist it"""
        with self._lock():
            records = self._read_index()
            record = records.get(record_id)
            if record is None:
                raise KeyError(record_id)
            mutate(record, records)
            self._write(records, [record])
        return record

    def extend_triggers(self, record_id: str, keywords) -> List[str]:
        added: List[str] = []

        def _extend(record: DecisionRecord, _records) -> None:
            added.extend(record.extend_triggers(keywords))

        self.update(record_id, _extend)
        if added:
            logger.info("Extended %s triggers with %s", record_id, ", ".join(added))
        return added

    def supersede(self, record_id: str, superseding_id: str) -> DecisionRecord:
        def _supersede(record: DecisionRecord, records: Dict[str, DecisionRecord]) -> None:
            if superseding_id not in records:
                raise KeyError(superseding_id)
            record.supersede(superseding_id)

        return self.update(record_id, _supersede)

    def accept(self, record_id: str) -> DecisionRecord:
        return self.update(record_id, lambda record, _records: record.accept())

    def search(self, keyword: str) -> List[DecisionRecord]:
        """Records whose triggers, title or decision text mention every keyword token.

        Active records come first, then by id.
        """
        wanted = normalize_tokens(keyword)
        if not wanted:
            return []
        matches = []
        for record in self.load_all():
            haystack = set(record.triggers) | normalize_tokens(record.title) | normalize_tokens(record.decision)
            if wanted <= haystack:
                matches.append(record)
        return sorted(matches, key=lambda r: (not r.is_active, r.number))
