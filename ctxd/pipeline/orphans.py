"""
Orphan Queue

Interactions whose best commit candidate scored below the accept threshold.
They are not errors: they wait here, with their candidates, until a later
commit scores high enough, a person resolves them by hand, or they are
dismissed. Candidates are never silently dropped.

The queue is persisted to .context/orphans.json. Closed items, and pending
ones past the retention horizon, are moved out to monthly JSONL files under
.context/archive/orphans/ so the live queue stays small.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..common.schemas.events import CommitInfo, to_utc, utc_now
from ..common.schemas.interaction import CommitLink, Interaction
from ..common.storage import atomic_write
from .linker import CommitLinker

logger = logging.getLogger("ctxd.pipeline.orphans")

PENDING = "pending"
LINKED = "linked"        # a later commit crossed the threshold
RESOLVED = "resolved"    # linked by hand
DISMISSED = "dismissed"
EXPIRED = "expired"      # archived while still pending


@dataclass
class OrphanItem:
    """An unlinked Interaction and its best candidates so far"""
    interaction_id: str
    interaction_json: Dict[str, Any]
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    created_at: str = ""
    status: str = PENDING
    linked_sha: Optional[str] = None

    @property
    def interaction(self) -> Interaction:
        return Interaction.from_log_record(self.interaction_json)

    @property
    def best_score(self) -> float:
        return max((c.get("score", 0.0) for c in self.candidates), default=0.0)

    @property
    def timestamp(self) -> Optional[datetime]:
        """When the Interaction happened, without rebuilding the whole model"""
        try:
            return to_utc(datetime.fromisoformat(self.interaction_json["ts"]))
        except (KeyError, TypeError, ValueError):
            return None


class OrphanQueue:
    def __init__(self, queue_path: Path, max_candidates: int = 5, archive_dir: Optional[Path] = None):
        self._queue_path = Path(queue_path)
        self._archive_dir = Path(archive_dir) if archive_dir else self._queue_path.parent / "archive" / "orphans"
        self._max_candidates = max_candidates
        self._items: Dict[str, OrphanItem] = {}
        self._load_queue()

    def _load_queue(self) -> None:
        if not self._queue_path.exists():
            self._items = {}
            return
        try:
            with open(self._queue_path) as f:
                data = json.load(f)
            items = [
                OrphanItem(
                    interaction_id=item["interaction_id"],
                    interaction_json=item["interaction_json"],
                    candidates=item.get("candidates", []),
                    created_at=item.get("created_at", ""),
                    status=item.get("status", PENDING),
                    linked_sha=item.get("linked_sha"),
                )
                for item in data
            ]
            self._items = {item.interaction_id: item for item in items}
        except (json.JSONDecodeError, IOError, KeyError) as e:
            logger.warning("Failed to load orphan queue: %s", e)
            self._items = {}

    def _save_queue(self) -> None:
        data = [asdict(item) for item in self._items.values()]
        atomic_write(self._queue_path, json.dumps(data, indent=2, default=str))

    def _merge_candidates(self, item: OrphanItem, links: Sequence[CommitLink]) -> None:
        by_sha = {c["commit_sha"]: c for c in item.candidates}
        for link in links:
            by_sha[link.commit_sha] = link.model_dump(mode="json")
        ranked = sorted(by_sha.values(), key=lambda c: (-c.get("score", 0.0), c["commit_sha"]))
        item.candidates = ranked[: self._max_candidates]

    def add(self, interaction: Interaction, candidates: Sequence[CommitLink] = ()) -> OrphanItem:
        """Queue an Interaction that has no accepted link.

        A closed item (linked, resolved or dismissed) is left as it is; only
        pending items collect new candidates.
        """
        item = self._items.get(interaction.id)
        if item is not None and item.status != PENDING:
            logger.debug("Orphan %s already %s; not re-queued", interaction.id, item.status)
            return item
        if item is None:
            item = OrphanItem(
                interaction_id=interaction.id,
                interaction_json=interaction.to_log_record(),
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            self._items[interaction.id] = item
        self._merge_candidates(item, candidates)
        self._save_queue()
        logger.info("Queued orphan %s (best score %.2f)", interaction.id, item.best_score)
        return item

    def rescore(self, linker: CommitLinker, commits: Sequence[CommitInfo]) -> List[CommitLink]:
        """Score pending orphans against new commits. Returns newly accepted links.

        Orphans no commit could link (too far away in time for the remaining
        signals to reach the threshold) are skipped without being scored.
        """
        if not commits:
            return []
        accepted = []
        scored = 0
        for item in self.get_pending():
            at = item.timestamp
            if at is not None and not any(linker.can_accept(at, c.timestamp) for c in commits):
                continue
            ranked = linker.rank(item.interaction, commits)
            scored += 1
            if not ranked:
                continue
            self._merge_candidates(item, ranked)
            best = ranked[0]
            if best.accepted:
                item.status = LINKED
                item.linked_sha = best.commit_sha
                accepted.append(best)
        if scored:
            self._save_queue()
        if accepted:
            logger.info("Re-scoring linked %d orphan(s)", len(accepted))
        return accepted

    def resolve(self, interaction_id: str, commit_sha: str) -> CommitLink:
        """Link an orphan to a commit by hand"""
        item = self._items.get(interaction_id)
        if item is None:
            raise KeyError(interaction_id)
        if item.status != PENDING:
            raise ValueError(f"Orphan {interaction_id} is already {item.status}")

        candidate = next((c for c in item.candidates if c["commit_sha"] == commit_sha), None)
        if candidate is not None:
            link = CommitLink.model_validate(candidate)
            link = link.model_copy(update={"accepted": True, "manual": True})
        else:
            link = CommitLink(interaction_id=interaction_id, commit_sha=commit_sha, score=0.0, accepted=True, manual=True)

        item.status = RESOLVED
        item.linked_sha = commit_sha
        self._save_queue()
        logger.info("Resolved orphan %s -> %s", interaction_id, commit_sha)
        return link

    def mark_linked(self, interaction_id: str, commit_sha: str) -> None:
        """Close a pending orphan linked outside ``rescore`` (history import)"""
        item = self._items.get(interaction_id)
        if item is None or item.status != PENDING:
            return
        item.status = LINKED
        item.linked_sha = commit_sha
        self._save_queue()

    def dismiss(self, interaction_id: str) -> None:
        item = self._items.get(interaction_id)
        if item is None:
            raise KeyError(interaction_id)
        item.status = DISMISSED
        self._save_queue()

    def archive(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """Move closed items, and pending ones older than ``older_than``, to the archive.

        Archived lines are appended to ``orphans-YYYY-MM.jsonl`` before the live
        queue is rewritten, so an interrupted run can repeat a line but never
        lose one. Returns the number of items moved.
        """
        now = to_utc(now) if now else utc_now()
        cutoff = now - older_than
        moving = []
        for item in self._items.values():
            if item.status == PENDING:
                at = item.timestamp
                if at is None or at >= cutoff:
                    continue
            moving.append(item)
        if not moving:
            return 0

        self._archive_dir.mkdir(parents=True, exist_ok=True)
        target = self._archive_dir / f"orphans-{now.strftime('%Y-%m')}.jsonl"
        with open(target, "a", encoding="utf-8") as f:
            for item in moving:
                record = asdict(item)
                if item.status == PENDING:
                    record["status"] = EXPIRED
                record["archived_at"] = now.isoformat()
                f.write(json.dumps(record, default=str) + "\n")
        for item in moving:
            del self._items[item.interaction_id]
        self._save_queue()
        logger.info("Archived %d orphan(s) to %s", len(moving), target.name)
        return len(moving)

    def get(self, interaction_id: str) -> Optional[OrphanItem]:
        return self._items.get(interaction_id)

    def get_pending(self) -> List[OrphanItem]:
        return [item for item in self._items.values() if item.status == PENDING]

    def get_stats(self) -> Dict[str, int]:
        stats = {PENDING: 0, LINKED: 0, RESOLVED: 0, DISMISSED: 0}
        for item in self._items.values():
            stats[item.status] = stats.get(item.status, 0) + 1
        stats["total"] = len(self._items)
        return stats
