"""
Raw capture events and commits.

Everything that crosses the capture boundary is a RawEvent. Timestamps are
timezone-aware UTC throughout the pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventSource(str, Enum):
    """Where a raw event came from"""
    TOOL = "tool"  # prompt issued to an AI coding tool
    FILE = "file"  # file change notification
    VCS = "vcs"    # version-control commit


class RawEvent(BaseModel):
    """A single timestamped capture event. Frozen once built."""
    model_config = ConfigDict(frozen=True)

    source: EventSource
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    tool: str = ""
    session_id: Optional[str] = None
    author: Optional[str] = None
    redacted: bool = False

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    @property
    def prompt(self) -> str:
        return self.payload.get("prompt", "")

    @property
    def path(self) -> str:
        return self.payload.get("path", "")


class CommitInfo(BaseModel):
    """A version-control commit as seen by the linker"""
    sha: str
    message: str = ""
    files: List[str] = Field(default_factory=list)
    timestamp: datetime
    author: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    @field_validator("files")
    @classmethod
    def _unique_files(cls, v: List[str]) -> List[str]:
        return sorted(set(v))

    @classmethod
    def from_event(cls, event: RawEvent) -> "CommitInfo":
        payload = event.payload
        return cls(
            sha=payload["sha"],
            message=payload.get("message", ""),
            files=list(payload.get("files", [])),
            timestamp=event.timestamp,
            author=payload.get("author") or event.author,
        )
