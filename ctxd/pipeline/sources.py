"""
Capture sources.

Watchers (log tailers, editor extensions, git hooks) are external. They
deliver input-contract objects through the ``EventProducer`` interface:

    {tool, timestamp, prompt?, files?, commit?: {sha, message, files}}

``parse_input_event`` turns one such object into RawEvents. Anything
malformed raises ``CaptureError`` so the caller can skip that one line.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from ..common.errors import CaptureError
from ..common.schemas.events import EventSource, RawEvent, to_utc, utc_now

logger = logging.getLogger("ctxd.pipeline.sources")


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            return to_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            pass
    raise CaptureError(f"Invalid timestamp: {value!r}")


def _str_list(value: Any, field_name: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise CaptureError(f"'{field_name}' must be a list of strings")
    return [v for v in value if v]


def parse_input_event(
    data: Any,
    default_session: Optional[str] = None,
    default_author: Optional[str] = None,
) -> List[RawEvent]:
    """Split one input-contract object into tool, file and vcs RawEvents."""
    if not isinstance(data, dict):
        raise CaptureError("Input event must be a JSON object")

    tool = data.get("tool")
    if not isinstance(tool, str) or not tool:
        raise CaptureError("Input event is missing 'tool'")
    timestamp = _parse_timestamp(data.get("timestamp"))
    session = data.get("session") or default_session
    author = data.get("author") or default_author

    common = dict(tool=tool, timestamp=timestamp, session_id=session, author=author)
    events: List[RawEvent] = []

    prompt = data.get("prompt")
    if prompt is not None:
        if not isinstance(prompt, str):
            raise CaptureError("'prompt' must be a string")
        payload: Dict[str, Any] = {"prompt": prompt}
        diff = data.get("diff")
        if isinstance(diff, str) and diff:
            payload["diff"] = diff
        events.append(RawEvent(source=EventSource.TOOL, payload=payload, **common))

    for path in _str_list(data.get("files"), "files"):
        events.append(RawEvent(source=EventSource.FILE, payload={"path": path}, **common))

    commit = data.get("commit")
    if commit is not None:
        if not isinstance(commit, dict) or not commit.get("sha"):
            raise CaptureError("'commit' must be an object with a 'sha'")
        events.append(RawEvent(
            source=EventSource.VCS,
            payload={
                "sha": str(commit["sha"]),
                "message": str(commit.get("message", "")),
                "files": _str_list(commit.get("files"), "commit.files"),
                "author": commit.get("author") or author,
            },
            **common,
        ))

    if not events:
        raise CaptureError("Input event carries no prompt, files or commit")
    return events


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type", "text") == "text"
        ]
        return "\n".join(p for p in parts if p)
    return ""


def parse_claude_log_line(line: str, tool: str = "claude-code") -> Optional[Dict[str, Any]]:
    """Turn one Claude transcript JSONL line into an input event.

    Returns None for lines that are not user prompts (assistant turns, tool
    results, summaries).
    """
    try:
        entry = json.loads(line)
    except json.JSONDecodeError as e:
        raise CaptureError(f"Malformed transcript line: {e}") from e
    if not isinstance(entry, dict):
        raise CaptureError("Transcript line is not an object")

    message = entry.get("message") if isinstance(entry.get("message"), dict) else entry
    if message.get("role") != "user":
        return None
    prompt = _content_text(message.get("content")).strip()
    if not prompt:
        return None

    event: Dict[str, Any] = {
        "tool": tool,
        "timestamp": entry.get("timestamp") or utc_now().isoformat(),
        "prompt": prompt,
    }
    if entry.get("sessionId"):
        event["session"] = entry["sessionId"]
    return event


class EventProducer(ABC):
    """
    Capability interface for capture sources.

    Any watcher can feed the pipeline by yielding input-contract objects;
    tests substitute synthetic sequences.
    """

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def produce_raw_events(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield input-contract objects until the source is exhausted"""


class IterableProducer(EventProducer):
    """Replays a fixed sequence of input events"""

    def __init__(self, events: Iterable[Dict[str, Any]], name: str = "replay"):
        super().__init__(name)
        self._events = list(events)

    async def produce_raw_events(self) -> AsyncIterator[Dict[str, Any]]:
        for event in self._events:
            yield event


class ClaudeTranscriptProducer(EventProducer):
    """Reads the user prompts out of a Claude transcript file once"""

    def __init__(self, path: Path, tool: str = "claude-code"):
        super().__init__(tool)
        self.path = Path(path).expanduser()

    async def produce_raw_events(self) -> AsyncIterator[Dict[str, Any]]:
        with open(self.path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    event = parse_claude_log_line(line, tool=self.name)
                except CaptureError as e:
                    logger.warning("Skipping %s:%d: %s", self.path.name, lineno, e)
                    continue
                if event is not None:
                    yield event
