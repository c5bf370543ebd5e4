"""
Semantic Index Builder

Aggregates Interactions, DecisionRecords and constraints into a
token-budgeted Snapshot.

Budget layout (defaults, 4000 tokens total):

    project        150  fixed reservation
    stack          100  fixed reservation
    constraints    400  fixed reservation
    ---- remainder after reservations and document envelope ----
    decisions      45%  filled by descending relevance
    semantic_index 25%  filled by descending relevance
    recent         15%  filled newest first
    reserve        rest, for on-demand loading of full decision bodies

Each filled section is a prefix of its sorted candidate list and stops at the
first item that does not fit, so a smaller budget can only shorten every
section. Token counts are estimated from the canonical serialization at ~4
characters per token.
"""

import json
import logging
import math
import posixpath
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

from ..common.config import IndexConfig
from ..common.schemas.decision_record import DecisionRecord
from ..common.schemas.events import to_utc, utc_now
from ..common.schemas.interaction import Interaction
from ..common.schemas.snapshot import (
    BudgetAllocation,
    Constraint,
    DecisionIndexEntry,
    ProjectInfo,
    RecentInteraction,
    RecentWindow,
    SemanticConcept,
    Snapshot,
)
from ..common.storage import canonical_json
from ..common.text import estimate_tokens, truncate

logger = logging.getLogger("ctxd.retriever.semantic_index")

HIGH_IMPACT_CATEGORIES = {"security", "performance"}
SUMMARY_CHARS = 160
RECENT_SUMMARY_CHARS = 120
MAX_CONCEPT_FILES = 10
MAX_RECENT_FILES = 5
_PLACEHOLDER_CHECKSUM = "0" * 64

STACK_MARKERS = [
    ("package.json", "node"),
    ("tsconfig.json", "typescript"),
    ("pyproject.toml", "python"),
    ("requirements.txt", "python"),
    ("setup.py", "python"),
    ("Cargo.toml", "rust"),
    ("go.mod", "go"),
    ("pom.xml", "java"),
    ("build.gradle", "java"),
    ("Gemfile", "ruby"),
    ("Dockerfile", "docker"),
]


def detect_stack(root: Path) -> List[str]:
    """Technologies implied by marker files at the project root"""
    root = Path(root)
    found: List[str] = []
    for marker, name in STACK_MARKERS:
        if (root / marker).exists() and name not in found:
            found.append(name)
    return found


def load_constraints(path: Path) -> List[Constraint]:
    """Read constraints.json; a missing or malformed file yields no constraints"""
    path = Path(path)
    if not path.exists():
        return []
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        logger.warning("Failed to load constraints from %s: %s", path, e)
        return []
    if isinstance(data, dict):
        data = data.get("constraints", [])
    constraints = []
    for entry in data if isinstance(data, list) else []:
        try:
            constraints.append(Constraint.model_validate(entry))
        except ValueError as e:
            logger.warning("Skipping invalid constraint %r: %s", entry, e)
    return constraints


def section_tokens(item) -> int:
    """Tokens one list element adds to the serialized snapshot, separator included"""
    data = item.model_dump(mode="json") if hasattr(item, "model_dump") else item
    return math.ceil((len(canonical_json(data)) + 1) / 4)


def snapshot_tokens(snapshot: Snapshot) -> int:
    return estimate_tokens(snapshot.to_lock_text())


def decay(age: timedelta, half_life_days: float) -> float:
    days = max(0.0, age.total_seconds() / 86400.0)
    return 0.5 ** (days / half_life_days)


def impact_of(record: DecisionRecord) -> str:
    files = len(record.related.files)
    if record.related.category in HIGH_IMPACT_CATEGORIES or files >= 5:
        return "high"
    if files >= 2:
        return "medium"
    return "low"


def file_glob(path: str) -> str:
    directory = posixpath.dirname(path)
    return f"{directory}/**" if directory else path


def _fill_prefix(items: Sequence, budget: int) -> Tuple[List, int]:
    """Longest prefix of ``items`` fitting ``budget`` tokens"""
    taken, used = [], 0
    for item in items:
        cost = section_tokens(item)
        if used + cost > budget:
            break
        taken.append(item)
        used += cost
    return taken, used


@dataclass
class _Member:
    keywords: Set[str]
    weight: float
    confidence: float
    timestamp: datetime
    files: List[str]
    decision: Optional[DecisionRecord] = None
    interaction: Optional[Interaction] = None


@dataclass
class _Cluster:
    members: List[_Member] = field(default_factory=list)

    @property
    def relevance(self) -> float:
        return sum(m.weight for m in self.members)


class _UnionFind:
    def __init__(self, size: int):
        self.parent = list(range(size))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self.parent[max(ra, rb)] = min(ra, rb)


class SemanticIndexBuilder:
    def __init__(
        self,
        token_budget: int = 4000,
        project_reserve: int = 150,
        stack_reserve: int = 100,
        constraints_reserve: int = 400,
        decisions_share: float = 0.45,
        concepts_share: float = 0.25,
        recent_share: float = 0.15,
        half_life_days: float = 14.0,
        recent_window_days: float = 7.0,
        project: Optional[ProjectInfo] = None,
        stack: Optional[Sequence[str]] = None,
    ):
        if half_life_days <= 0:
            raise ValueError("half_life_days must be positive")
        if decisions_share + concepts_share + recent_share > 1.0:
            raise ValueError("section shares must not exceed 1.0")
        self.token_budget = token_budget
        self.project_reserve = project_reserve
        self.stack_reserve = stack_reserve
        self.constraints_reserve = constraints_reserve
        self.decisions_share = decisions_share
        self.concepts_share = concepts_share
        self.recent_share = recent_share
        self.half_life_days = half_life_days
        self.recent_window_days = recent_window_days
        self.project = project or ProjectInfo(name="project")
        self.stack = list(stack or [])

    @classmethod
    def from_config(cls, config: IndexConfig, project_root: Path) -> "SemanticIndexBuilder":
        root = Path(project_root)
        return cls(
            token_budget=config.token_budget,
            project_reserve=config.project_reserve,
            stack_reserve=config.stack_reserve,
            constraints_reserve=config.constraints_reserve,
            decisions_share=config.decisions_share,
            concepts_share=config.concepts_share,
            recent_share=config.recent_share,
            half_life_days=config.half_life_days,
            recent_window_days=config.recent_window_days,
            project=ProjectInfo(
                name=config.project_name or root.resolve().name,
                description=config.project_description,
            ),
            stack=detect_stack(root),
        )

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------

    def _recent(self, interactions: Sequence[Interaction], now: datetime) -> List[Interaction]:
        horizon = now - timedelta(days=self.recent_window_days)
        recent = [i for i in interactions if horizon <= i.timestamp <= now]
        return sorted(recent, key=lambda i: (i.timestamp, i.number), reverse=True)

    def _members(
        self,
        decisions: Sequence[DecisionRecord],
        recent: Sequence[Interaction],
        now: datetime,
    ) -> List[_Member]:
        members = []
        for record in decisions:
            if not record.triggers:
                continue
            members.append(_Member(
                keywords=set(record.triggers),
                weight=decay(now - record.date, self.half_life_days),
                confidence=record.confidence,
                timestamp=record.date,
                files=list(record.related.files),
                decision=record,
            ))
        for interaction in recent:
            intent = interaction.intent
            if intent is None or not intent.concepts:
                continue
            members.append(_Member(
                keywords=set(intent.concepts),
                weight=decay(now - interaction.timestamp, self.half_life_days),
                confidence=intent.confidence,
                timestamp=interaction.timestamp,
                files=list(interaction.files),
                interaction=interaction,
            ))
        return members

    def cluster(
        self,
        decisions: Sequence[DecisionRecord],
        interactions: Sequence[Interaction],
        constraints: Sequence[Constraint] = (),
        now: Optional[datetime] = None,
    ) -> List[Tuple[SemanticConcept, float]]:
        """Group members sharing at least one keyword. Returns (concept, relevance), best first."""
        now = to_utc(now) if now else utc_now()
        active = [d for d in decisions if d.is_active]
        members = self._members(active, self._recent(interactions, now), now)

        uf = _UnionFind(len(members))
        first_seen: Dict[str, int] = {}
        for index, member in enumerate(members):
            for keyword in sorted(member.keywords):
                if keyword in first_seen:
                    uf.union(first_seen[keyword], index)
                else:
                    first_seen[keyword] = index

        clusters: Dict[int, _Cluster] = {}
        for index, member in enumerate(members):
            clusters.setdefault(uf.find(index), _Cluster()).members.append(member)

        scored = []
        for cluster in clusters.values():
            concept = self._concept(cluster, constraints)
            scored.append((concept, round(cluster.relevance, 6)))
        scored.sort(key=lambda pair: (-pair[1], pair[0].concept))
        return scored

    def _concept(self, cluster: _Cluster, constraints: Sequence[Constraint]) -> SemanticConcept:
        counts = Counter(k for m in cluster.members for k in m.keywords)
        name = min(counts, key=lambda k: (-counts[k], k))
        triggers = sorted(counts)

        decision_members = [m for m in cluster.members if m.decision is not None]
        if decision_members:
            top = max(decision_members, key=lambda m: (m.weight, m.decision.number))
            summary = top.decision.title
        else:
            latest = max(cluster.members, key=lambda m: (m.timestamp, m.interaction.number))
            summary = latest.interaction.intent.solution or latest.interaction.prompt
        summary = truncate(summary, SUMMARY_CHARS)

        confidence = round(sum(m.confidence for m in cluster.members) / len(cluster.members), 3)
        files = sorted({file_glob(f) for m in cluster.members for f in m.files})[:MAX_CONCEPT_FILES]
        decision_ids = sorted({m.decision.id for m in decision_members}, key=lambda i: (len(i), i))
        keyword_set = set(triggers)
        constraint_ids = sorted(c.id for c in constraints if keyword_set & set(c.keywords))

        return SemanticConcept(
            concept=name,
            summary=summary,
            confidence=confidence,
            files=files,
            decisions=decision_ids,
            constraints=constraint_ids,
            triggers=triggers,
        )

    # ------------------------------------------------------------------
    # Candidate sections
    # ------------------------------------------------------------------

    def decision_entries(self, decisions: Sequence[DecisionRecord], now: datetime) -> List[DecisionIndexEntry]:
        active = [d for d in decisions if d.is_active]
        active.sort(key=lambda d: (-decay(now - d.date, self.half_life_days), d.number))
        return [
            DecisionIndexEntry(
                id=d.id,
                title=d.title,
                triggers=list(d.triggers),
                summary=truncate(d.decision, SUMMARY_CHARS),
                impact=impact_of(d),
            )
            for d in active
        ]

    def recent_entries(self, interactions: Sequence[Interaction], now: datetime) -> List[RecentInteraction]:
        entries = []
        for interaction in self._recent(interactions, now):
            intent = interaction.intent
            summary = (intent.solution if intent and intent.solution else interaction.prompt)
            entries.append(RecentInteraction(
                id=interaction.id,
                ts=interaction.timestamp,
                category=intent.category.value if intent else None,
                summary=truncate(summary, RECENT_SUMMARY_CHARS),
                files=list(interaction.files)[:MAX_RECENT_FILES],
                commit=interaction.commit_ref,
            ))
        return entries

    def _fixed_sections(self, constraints: Sequence[Constraint]) -> Tuple[ProjectInfo, List[str], List[Constraint]]:
        project = self.project
        limit = len(project.description)
        while limit > 0 and section_tokens(project) > self.project_reserve:
            limit = max(0, limit - 40)
            project = ProjectInfo(name=self.project.name, description=truncate(self.project.description, limit) if limit else "")
        stack, _ = _fill_prefix(sorted(self.stack), self.stack_reserve)
        kept, _ = _fill_prefix(sorted(constraints, key=lambda c: c.id), self.constraints_reserve)
        return project, stack, kept

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(
        self,
        interactions: Sequence[Interaction],
        decisions: Sequence[DecisionRecord],
        constraints: Sequence[Constraint] = (),
        now: Optional[datetime] = None,
        budget: Optional[int] = None,
    ) -> Snapshot:
        """Build a checksummed Snapshot that fits ``budget`` tokens.

        Raises:
            ValueError: the budget cannot hold even an empty snapshot
        """
        now = to_utc(now) if now else utc_now()
        total = self.token_budget if budget is None else budget
        if total <= 0:
            raise ValueError("token budget must be positive")

        project, stack, kept_constraints = self._fixed_sections(constraints)
        recent_window = RecentWindow(days=self.recent_window_days)

        skeleton = Snapshot(
            generated_at=now,
            checksum=_PLACEHOLDER_CHECKSUM,
            project=project,
            stack=stack,
            constraints=kept_constraints,
            recent_window=recent_window,
            budget_allocation=BudgetAllocation(
                total=total, project=total, stack=total, constraints=total,
                decisions=total, semantic_index=total, recent=total, reserve=total,
            ),
        )
        fixed_used = sum(section_tokens(x) for x in [project] + stack + kept_constraints)
        envelope = snapshot_tokens(skeleton) - fixed_used
        reserved = self.project_reserve + self.stack_reserve + self.constraints_reserve
        remainder = max(0, total - reserved - envelope)

        decision_candidates = self.decision_entries(decisions, now)
        concept_candidates = [c for c, _ in self.cluster(decisions, interactions, kept_constraints, now)]
        recent_candidates = self.recent_entries(interactions, now)

        index_entries, decisions_used = _fill_prefix(decision_candidates, int(remainder * self.decisions_share))
        concepts, concepts_used = _fill_prefix(concept_candidates, int(remainder * self.concepts_share))
        recent, recent_used = _fill_prefix(recent_candidates, int(remainder * self.recent_share))

        allocation = BudgetAllocation(
            total=total,
            project=self.project_reserve,
            stack=self.stack_reserve,
            constraints=self.constraints_reserve,
            decisions=decisions_used,
            semantic_index=concepts_used,
            recent=recent_used,
            reserve=max(0, remainder - decisions_used - concepts_used - recent_used),
        )
        snapshot = Snapshot(
            generated_at=now,
            project=project,
            stack=stack,
            decisions=index_entries,
            constraints=kept_constraints,
            semantic_index=concepts,
            recent_window=RecentWindow(days=self.recent_window_days, interactions=recent),
            budget_allocation=allocation,
        ).with_checksum()

        snapshot = self.fit_to_budget(snapshot, total)
        logger.info(
            "Built snapshot: %d decisions, %d concepts, %d recent, %d/%d tokens",
            len(snapshot.decisions), len(snapshot.semantic_index),
            len(snapshot.recent_window.interactions), snapshot_tokens(snapshot), total,
        )
        return snapshot

    def fit_to_budget(self, snapshot: Snapshot, total: int) -> Snapshot:
        """Drop lowest-priority items until the serialized snapshot fits"""
        while snapshot_tokens(snapshot) > total:
            update = {}
            if snapshot.recent_window.interactions:
                update["recent_window"] = RecentWindow(
                    days=snapshot.recent_window.days,
                    interactions=snapshot.recent_window.interactions[:-1],
                )
            elif snapshot.semantic_index:
                update["semantic_index"] = snapshot.semantic_index[:-1]
            elif snapshot.decisions:
                update["decisions"] = snapshot.decisions[:-1]
            elif snapshot.constraints:
                update["constraints"] = snapshot.constraints[:-1]
            elif snapshot.stack:
                update["stack"] = snapshot.stack[:-1]
            elif snapshot.project.description:
                update["project"] = ProjectInfo(name=snapshot.project.name)
            else:
                raise ValueError(f"token budget {total} is too small for an empty snapshot")
            snapshot = snapshot.model_copy(update=update).with_checksum()
        return snapshot
