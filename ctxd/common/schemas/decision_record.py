"""
Decision Record (ADR) Schema

A DecisionRecord is created once by the synthesizer and never deleted.
After creation only two things change: ``status`` (with its
``superseded_by`` pointer) and ``triggers``, which dedup may extend.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator

from .events import to_utc, utc_now

RECORD_ID_RE = re.compile(r"^ADR-(\d+)$")


class Status(str, Enum):
    """Decision status"""
    DRAFT = "draft"
    ACCEPTED = "accepted"
    SUPERSEDED = "superseded"


class Related(BaseModel):
    """What the decision touched when it was recorded"""
    files: List[str] = Field(default_factory=list)
    commits: List[str] = Field(default_factory=list)
    concepts: List[str] = Field(default_factory=list)
    category: Optional[str] = None


class DecisionRecord(BaseModel):
    """Architecture decision record synthesized from an Interaction"""
    schema_version: str = Field(default="1.0")
    id: str = Field(..., description="Monotonic id: ADR-NNN")
    title: str
    date: datetime = Field(default_factory=utc_now)
    status: Status = Field(default=Status.ACCEPTED)
    superseded_by: Optional[str] = None

    context: str = ""
    decision: str = ""
    alternatives: List[str] = Field(default_factory=list)
    consequences: List[str] = Field(default_factory=list)
    triggers: List[str] = Field(default_factory=list, description="Retrieval keywords")

    source_interaction_id: Optional[str] = None
    source_tool: str = ""
    prompt_excerpt: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    related: Related = Field(default_factory=Related)

    @field_validator("date")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    @field_validator("triggers")
    @classmethod
    def _normalize_triggers(cls, v: List[str]) -> List[str]:
        return sorted({t.strip().lower() for t in v if t and t.strip()})

    @property
    def number(self) -> int:
        return parse_record_number(self.id) or 0

    @property
    def is_active(self) -> bool:
        return self.status != Status.SUPERSEDED

    def extend_triggers(self, keywords: Iterable[str]) -> List[str]:
        """Union novel keywords into triggers. Returns the ones added."""
        current = set(self.triggers)
        added = sorted({k.strip().lower() for k in keywords if k and k.strip()} - current)
        if added:
            self.triggers = sorted(current | set(added))
        return added

    def supersede(self, superseding_id: str) -> None:
        """Retire this record in favour of another one.

        Only accepted records can be superseded, and the pointer is required.
        """
        if not superseding_id:
            raise ValueError("superseding id is required")
        if superseding_id == self.id:
            raise ValueError(f"{self.id} cannot supersede itself")
        if self.status != Status.ACCEPTED:
            raise ValueError(f"{self.id} is {self.status.value}; only accepted records can be superseded")
        self.status = Status.SUPERSEDED
        self.superseded_by = superseding_id

    def accept(self) -> None:
        if self.status != Status.DRAFT:
            raise ValueError(f"{self.id} is {self.status.value}; only drafts can be accepted")
        self.status = Status.ACCEPTED


def generate_record_id(number: int) -> str:
    """Format the n-th decision record id"""
    return f"ADR-{number:03d}"


def parse_record_number(record_id: str) -> Optional[int]:
    match = RECORD_ID_RE.match(record_id or "")
    return int(match.group(1)) if match else None


def next_record_id(existing_ids: Iterable[str]) -> str:
    """One greater than the highest existing id."""
    numbers = [n for n in (parse_record_number(i) for i in existing_ids) if n is not None]
    return generate_record_id(max(numbers, default=0) + 1)
