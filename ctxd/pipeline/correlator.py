"""
Correlator

Groups buffered events into Interactions. A prompt opens a correlation
window for its (tool, session). File changes from ``pre_window`` seconds
before the prompt up to ``post_delay`` seconds after it join the window's
file set. Once event time passes the deadline the window is sealed and
becomes an Interaction; nothing can be added after that.

Time is event time: only event timestamps move the correlator's clock.
The consumer loop calls ``advance`` with wall-clock time on idle ticks
(nothing queued) so quiet periods still seal; that never moves the clock,
so a backlog of older events is still judged by its own timestamps.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from ..common.schemas.events import EventSource, RawEvent, to_utc
from ..common.schemas.interaction import Interaction

logger = logging.getLogger("ctxd.pipeline.correlator")

WindowKey = Tuple[str, str]


def normalize_path(path: str, root: Optional[Path] = None) -> str:
    """Project-relative POSIX path where possible"""
    normalized = path.replace("\\", "/")
    if root is not None and normalized.startswith("/"):
        try:
            normalized = PurePosixPath(normalized).relative_to(root.as_posix()).as_posix()
        except ValueError:
            pass
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def is_ignored(path: str, patterns: Iterable[str]) -> bool:
    """Glob match against the path, the path with a leading slash, and the basename"""
    name = path.rsplit("/", 1)[-1]
    for pattern in patterns:
        if fnmatch(path, pattern) or fnmatch("/" + path, pattern) or fnmatch(name, pattern):
            return True
    return False


@dataclass
class CorrelationWindow:
    """An open prompt collecting files until its deadline"""
    prompt_event: RawEvent
    deadline: datetime
    sequence: int
    files: Set[str] = field(default_factory=set)

    @property
    def key(self) -> WindowKey:
        return (self.prompt_event.tool, self.prompt_event.session_id or "default")

    @property
    def opened_at(self) -> datetime:
        return self.prompt_event.timestamp


@dataclass
class _PendingFile:
    path: str
    timestamp: datetime


class Correlator:
    """
    Turns a stream of RawEvents into sealed Interactions.

    ``correlate`` returns the Interactions sealed as a consequence of the
    event (usually none: the event is pending).
    """

    def __init__(
        self,
        pre_window_seconds: float = 30.0,
        post_delay_seconds: float = 2.0,
        ignore: Optional[Iterable[str]] = None,
        tool_ignores: Optional[Dict[str, List[str]]] = None,
        max_pending_files: int = 1000,
        project_root: Optional[Path] = None,
        next_id: Optional[Callable[[], str]] = None,
    ):
        self.pre_window = timedelta(seconds=pre_window_seconds)
        self.post_delay = timedelta(seconds=post_delay_seconds)
        self._ignore = list(ignore or [])
        self._tool_ignores = {k: list(v) for k, v in (tool_ignores or {}).items()}
        self._root = project_root
        self._windows: Dict[WindowKey, CorrelationWindow] = {}
        self._pending: Deque[_PendingFile] = deque(maxlen=max_pending_files)
        self._sequence = 0
        self._counter = 0
        self._next_id = next_id or self._default_id
        self._clock: Optional[datetime] = None
        self.discarded_files = 0

    def _default_id(self) -> str:
        self._counter += 1
        return f"int_{self._counter:04d}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def correlate(self, event: RawEvent) -> List[Interaction]:
        """Feed one event; returns any Interactions sealed by it"""
        at = to_utc(event.timestamp)
        if self._clock is None or at > self._clock:
            self._clock = at
        sealed = self._expire(self._clock)

        if event.source == EventSource.TOOL:
            sealed.extend(self._open(event))
        elif event.source == EventSource.FILE:
            self._attach(event)
        # VCS events are routed to the commit linker, not correlated here
        return sealed

    def advance(self, now: datetime) -> List[Interaction]:
        """Seal every window whose deadline is at or before ``now``.

        Used for idle ticks; the event clock is left where it is.
        """
        now = to_utc(now)
        if self._clock is not None and self._clock > now:
            now = self._clock
        return self._expire(now)

    @property
    def clock(self) -> Optional[datetime]:
        """Timestamp of the newest event seen"""
        return self._clock

    def _expire(self, clock: datetime) -> List[Interaction]:
        expired = [w for w in self._windows.values() if w.deadline <= clock]
        expired.sort(key=lambda w: (w.deadline, w.sequence))
        sealed = [self._seal(w) for w in expired]

        horizon = clock - self.pre_window
        while self._pending and self._pending[0].timestamp < horizon:
            self._pending.popleft()
            self.discarded_files += 1
        return sealed

    def flush(self) -> List[Interaction]:
        """Seal every open window immediately (shutdown, tests)"""
        windows = sorted(self._windows.values(), key=lambda w: w.sequence)
        return [self._seal(w) for w in windows]

    @property
    def open_windows(self) -> List[CorrelationWindow]:
        return sorted(self._windows.values(), key=lambda w: w.sequence)

    @property
    def pending_file_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _excluded_for(self, window_tool: str, path: str) -> bool:
        return is_ignored(path, self._tool_ignores.get(window_tool, []))

    def _open(self, event: RawEvent) -> List[Interaction]:
        sealed = []
        key = (event.tool, event.session_id or "default")
        previous = self._windows.get(key)
        if previous is not None:
            # One open window per tool session
            sealed.append(self._seal(previous))

        self._sequence += 1
        window = CorrelationWindow(
            prompt_event=event,
            deadline=event.timestamp + self.post_delay,
            sequence=self._sequence,
        )

        earliest = event.timestamp - self.pre_window
        keep: Deque[_PendingFile] = deque(maxlen=self._pending.maxlen)
        for pending in self._pending:
            if earliest <= pending.timestamp <= event.timestamp and not self._excluded_for(event.tool, pending.path):
                window.files.add(pending.path)
            else:
                keep.append(pending)
        self._pending = keep

        self._windows[key] = window
        logger.debug("Opened window %s (%d pre-window files)", key, len(window.files))
        return sealed

    def _attach(self, event: RawEvent) -> None:
        path = normalize_path(event.path, self._root)
        if not path or is_ignored(path, self._ignore):
            self.discarded_files += 1
            return

        for window in sorted(self._windows.values(), key=lambda w: w.sequence, reverse=True):
            in_window = window.opened_at - self.pre_window <= event.timestamp <= window.deadline
            if in_window and not self._excluded_for(window.prompt_event.tool, path):
                window.files.add(path)
                return

        # No open window: hold only long enough for a prompt that follows
        if len(self._pending) == self._pending.maxlen:
            # the deque drops its oldest entry on append
            self.discarded_files += 1
        self._pending.append(_PendingFile(path=path, timestamp=event.timestamp))

    def _seal(self, window: CorrelationWindow) -> Interaction:
        self._windows.pop(window.key, None)
        prompt_event = window.prompt_event
        interaction = Interaction(
            id=self._next_id(),
            tool=prompt_event.tool,
            prompt=prompt_event.prompt,
            files=sorted(window.files),
            diff_hash=prompt_event.payload.get("diff_hash"),
            session_id=prompt_event.session_id,
            author=prompt_event.author,
            timestamp=prompt_event.timestamp,
        )
        logger.debug("Sealed %s with %d files", interaction.id, len(interaction.files))
        return interaction
