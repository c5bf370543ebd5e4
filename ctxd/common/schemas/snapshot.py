"""
Snapshot (context.lock) Schema

The snapshot is derived data. It is regenerated wholesale on every build and
verified on every load. The checksum covers every content section;
``generated_at`` and ``checksum`` itself are excluded, so rebuilding from
unchanged inputs reproduces the same checksum.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..storage import canonical_json, sha256_hex
from .events import to_utc, utc_now

SNAPSHOT_VERSION = "1.0"

_NON_CONTENT_FIELDS = {"generated_at", "checksum"}


class ProjectInfo(BaseModel):
    name: str
    description: str = ""


class Constraint(BaseModel):
    """A standing project rule every agent must respect"""
    id: str
    rule: str
    keywords: List[str] = Field(default_factory=list)
    source: Optional[str] = None

    @field_validator("keywords")
    @classmethod
    def _normalize_keywords(cls, v: List[str]) -> List[str]:
        return sorted({k.strip().lower() for k in v if k and k.strip()})


class DecisionIndexEntry(BaseModel):
    """One-line view of a DecisionRecord; the body is loaded on demand"""
    id: str
    title: str
    triggers: List[str] = Field(default_factory=list)
    summary: str = ""
    impact: str = "low"  # high | medium | low


class SemanticConcept(BaseModel):
    """A cluster of decisions and recent work sharing keywords"""
    concept: str
    summary: str = ""
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    files: List[str] = Field(default_factory=list)
    decisions: List[str] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)
    triggers: List[str] = Field(default_factory=list)


class RecentInteraction(BaseModel):
    id: str
    ts: datetime
    category: Optional[str] = None
    summary: str = ""
    files: List[str] = Field(default_factory=list)
    commit: Optional[str] = None

    @field_validator("ts")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)


class RecentWindow(BaseModel):
    days: float = 7.0
    interactions: List[RecentInteraction] = Field(default_factory=list)


class BudgetAllocation(BaseModel):
    """Token accounting for a build.

    ``project``, ``stack`` and ``constraints`` are fixed reservations. The
    other sections report tokens actually used; ``reserve`` is whatever is
    left for on-demand loading of full decision bodies.
    """
    total: int
    project: int = 0
    stack: int = 0
    constraints: int = 0
    decisions: int = 0
    semantic_index: int = 0
    recent: int = 0
    reserve: int = 0


class Snapshot(BaseModel):
    version: str = SNAPSHOT_VERSION
    generated_at: datetime = Field(default_factory=utc_now)
    checksum: str = ""
    project: ProjectInfo
    stack: List[str] = Field(default_factory=list)
    decisions: List[DecisionIndexEntry] = Field(default_factory=list)
    constraints: List[Constraint] = Field(default_factory=list)
    semantic_index: List[SemanticConcept] = Field(default_factory=list)
    recent_window: RecentWindow = Field(default_factory=RecentWindow)
    budget_allocation: BudgetAllocation

    @field_validator("generated_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    def content_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude=_NON_CONTENT_FIELDS)

    def compute_checksum(self) -> str:
        return sha256_hex(canonical_json(self.content_dict()))

    def with_checksum(self) -> "Snapshot":
        return self.model_copy(update={"checksum": self.compute_checksum()})

    def verify(self) -> bool:
        return bool(self.checksum) and self.checksum == self.compute_checksum()

    def to_lock_text(self) -> str:
        """Canonical serialization written to context.lock"""
        return canonical_json(self.model_dump(mode="json"))

    @classmethod
    def from_lock_text(cls, text: str) -> "Snapshot":
        return cls.model_validate_json(text)
