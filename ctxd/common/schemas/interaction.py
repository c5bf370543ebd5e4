"""
Interaction, InferredIntent and CommitLink models.

An Interaction is appended to the intent log once, after classification.
Later facts (an accepted commit link, a generated ADR id) are appended as
amendment lines and folded back in on read, so the log is never rewritten.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .events import to_utc, utc_now


class IntentCategory(str, Enum):
    """Why a change was made"""
    FEATURE = "feature"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    PERFORMANCE = "performance"
    SECURITY = "security"
    DOCS = "docs"
    TEST = "test"


class IntentSource(str, Enum):
    """Which classifier path produced an intent"""
    RULE = "rule"
    BACKEND = "backend"
    FALLBACK = "fallback"  # rule result after a backend failure


class InferredIntent(BaseModel):
    """Classifier output; owned by exactly one Interaction"""
    category: IntentCategory
    confidence: float = Field(..., ge=0.0, le=1.0)
    problem: Optional[str] = None
    solution: str = ""
    alternatives: List[str] = Field(default_factory=list)
    concepts: List[str] = Field(default_factory=list)
    source: IntentSource = IntentSource.RULE
    rules_version: Optional[str] = None

    @field_validator("concepts")
    @classmethod
    def _normalize_concepts(cls, v: List[str]) -> List[str]:
        return sorted({c.strip().lower() for c in v if c and c.strip()})


class LinkSignals(BaseModel):
    """The three commit-link heuristics, each in [0, 1]"""
    time_proximity: float = Field(0.0, ge=0.0, le=1.0)
    file_overlap: float = Field(0.0, ge=0.0, le=1.0)
    message_similarity: float = Field(0.0, ge=0.0, le=1.0)


class CommitLink(BaseModel):
    """A scored Interaction to commit candidate"""
    interaction_id: str
    commit_sha: str
    score: float = Field(..., ge=0.0, le=1.0)
    signals: LinkSignals = Field(default_factory=LinkSignals)
    accepted: bool = False
    manual: bool = False
    commit_message: str = ""
    scored_at: datetime = Field(default_factory=utc_now)


class Interaction(BaseModel):
    """One prompt plus the files it touched and, eventually, its commit"""
    id: str
    tool: str = ""
    prompt: str
    files: List[str] = Field(default_factory=list)
    diff_hash: Optional[str] = None
    session_id: Optional[str] = None
    author: Optional[str] = None
    timestamp: datetime
    intent: Optional[InferredIntent] = None
    commit_ref: Optional[str] = None
    commit_msg: Optional[str] = None
    link_score: Optional[float] = None
    adr_generated: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    @field_validator("files")
    @classmethod
    def _unique_files(cls, v: List[str]) -> List[str]:
        return sorted(set(v))

    @property
    def number(self) -> int:
        """Numeric part of an ``int_NNNN`` id, 0 if it has none."""
        try:
            return int(self.id.split("_", 1)[1])
        except (IndexError, ValueError):
            return 0

    def to_log_record(self) -> Dict[str, Any]:
        """Serialize to one intent-log JSONL record"""
        record: Dict[str, Any] = {
            "id": self.id,
            "ts": self.timestamp.isoformat(),
            "tool": self.tool,
            "prompt": self.prompt,
            "files": list(self.files),
        }
        if self.session_id:
            record["session"] = self.session_id
        if self.author:
            record["author"] = self.author
        if self.diff_hash:
            record["diff_hash"] = self.diff_hash
        if self.intent is not None:
            record["intent"] = self.intent.model_dump(mode="json", exclude_none=True)
        if self.commit_ref:
            record["commit"] = self.commit_ref
        if self.commit_msg:
            record["commit_msg"] = self.commit_msg
        if self.link_score is not None:
            record["link_score"] = self.link_score
        if self.adr_generated:
            record["adr_generated"] = self.adr_generated
        return record

    @classmethod
    def from_log_record(cls, data: Dict[str, Any]) -> "Interaction":
        intent = data.get("intent")
        return cls(
            id=data["id"],
            tool=data.get("tool", ""),
            prompt=data.get("prompt", ""),
            files=data.get("files", []),
            diff_hash=data.get("diff_hash"),
            session_id=data.get("session"),
            author=data.get("author"),
            timestamp=data["ts"],
            intent=InferredIntent.model_validate(intent) if intent else None,
            commit_ref=data.get("commit"),
            commit_msg=data.get("commit_msg"),
            link_score=data.get("link_score"),
            adr_generated=data.get("adr_generated"),
        )

    def apply_amendment(self, data: Dict[str, Any]) -> "Interaction":
        """Return a copy with the fields from an amendment line applied."""
        update: Dict[str, Any] = {}
        if data.get("commit"):
            update["commit_ref"] = data["commit"]
            update["commit_msg"] = data.get("commit_msg")
            update["link_score"] = data.get("link_score")
        if data.get("adr_generated"):
            update["adr_generated"] = data["adr_generated"]
        return self.model_copy(update=update) if update else self


def amendment_record(interaction_id: str, **fields: Any) -> Dict[str, Any]:
    """Build an append-only amendment line for an already logged Interaction"""
    record: Dict[str, Any] = {"amends": interaction_id, "ts": utc_now().isoformat()}
    record.update({k: v for k, v in fields.items() if v is not None})
    return record
