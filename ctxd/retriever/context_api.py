"""
Context Retriever

Read side for downstream agents:

- get_context(max_tokens): the verified snapshot, truncated to fit
- search_decisions(keyword): DecisionRecords matching a keyword
- get_intent_for_file(path): Interactions that touched a file

A missing or corrupt context.lock is rebuilt from the append-only sources
before it is served.
"""

import logging
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..common.config import ContextPaths, CtxdConfig
from ..common.decision_store import DecisionStore
from ..common.errors import ChecksumMismatch
from ..common.intent_log import IntentLog
from ..common.schemas.decision_record import DecisionRecord
from ..common.schemas.interaction import Interaction
from ..common.schemas.snapshot import Snapshot
from ..common.snapshot_store import SnapshotStore
from .semantic_index import SemanticIndexBuilder, load_constraints, snapshot_tokens

logger = logging.getLogger("ctxd.retriever.context_api")


class ContextRetriever:
    def __init__(
        self,
        paths: ContextPaths,
        intent_log: IntentLog,
        decision_store: DecisionStore,
        snapshot_store: SnapshotStore,
        index_builder: SemanticIndexBuilder,
    ):
        self.paths = paths
        self.intent_log = intent_log
        self.decision_store = decision_store
        self.snapshot_store = snapshot_store
        self.index_builder = index_builder

    @classmethod
    def from_config(cls, config: CtxdConfig) -> "ContextRetriever":
        paths = ContextPaths.for_project(config.project_root or ".")
        return cls(
            paths=paths,
            intent_log=IntentLog(paths.intents_dir, paths.warm_dir),
            decision_store=DecisionStore(paths.decisions_dir),
            snapshot_store=SnapshotStore(paths.lock_path),
            index_builder=SemanticIndexBuilder.from_config(config.index, paths.root),
        )

    def build_snapshot(self, budget: Optional[int] = None) -> Snapshot:
        return self.index_builder.build(
            self.intent_log.load_interactions(),
            self.decision_store.load_all(),
            load_constraints(self.paths.constraints_path),
            budget=budget,
        )

    def rebuild_snapshot(self) -> Snapshot:
        return self.snapshot_store.save(self.build_snapshot())

    def load_snapshot(self) -> Snapshot:
        """Verified snapshot; rebuilt when missing or corrupt"""
        return self.snapshot_store.load_or_rebuild(self.build_snapshot)

    def get_context(self, max_tokens: Optional[int] = None) -> Snapshot:
        """The current snapshot, truncated to at most ``max_tokens``.

        Raises:
            ValueError: ``max_tokens`` cannot hold even an empty snapshot
        """
        snapshot = self.load_snapshot()
        if max_tokens is None or snapshot_tokens(snapshot) <= max_tokens:
            return snapshot
        allocation = snapshot.budget_allocation.model_copy(update={"total": max_tokens})
        trimmed = snapshot.model_copy(update={"budget_allocation": allocation})
        return self.index_builder.fit_to_budget(trimmed.with_checksum(), max_tokens)

    def search_decisions(self, keyword: str) -> List[DecisionRecord]:
        return self.decision_store.search(keyword)

    def get_decision(self, record_id: str) -> Optional[DecisionRecord]:
        """Full record body, for on-demand loading from the reserve pool"""
        return self.decision_store.get(record_id)

    def get_intent_for_file(self, path: str) -> List[Interaction]:
        """Interactions whose file set contains ``path`` (or matches it as a glob), newest first"""
        target = path.replace("\\", "/")
        while target.startswith("./"):
            target = target[2:]
        matches = [
            interaction
            for interaction in self.intent_log.load_interactions()
            if any(f == target or fnmatch(f, target) for f in interaction.files)
        ]
        return sorted(matches, key=lambda i: (i.timestamp, i.number), reverse=True)

    def status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "project_root": str(self.paths.root),
            "snapshot_exists": self.snapshot_store.exists(),
            "snapshot_valid": False,
            "decisions": len(self.decision_store.load_all()),
            "hot_log_bytes": self.intent_log.hot_bytes(),
        }
        try:
            snapshot = self.snapshot_store.load()
        except ChecksumMismatch as e:
            status["error"] = str(e)
            return status
        if snapshot is not None:
            status.update({
                "snapshot_valid": True,
                "checksum": snapshot.checksum,
                "generated_at": snapshot.generated_at.isoformat(),
                "tokens": snapshot_tokens(snapshot),
            })
        return status
