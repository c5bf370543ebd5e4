"""
Commit history reader for the linker.

Reads ``git log`` once per call; no long-lived repository handle.
"""

import logging
import subprocess
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ..common.errors import CtxdError
from ..common.schemas.events import CommitInfo, to_utc

logger = logging.getLogger("ctxd.pipeline.git")

_RECORD = "\x1e"
_FIELD = "\x1f"
_END = "\x1d"
LOG_FORMAT = f"{_RECORD}%H{_FIELD}%aI{_FIELD}%an{_FIELD}%B{_END}"


class GitCommandError(CtxdError):
    """git exited non-zero or is not installed"""


def run_git(args: List[str], repo: Path, timeout: float = 30.0) -> str:
    """Run a git command in ``repo`` and return stdout.

    Raises:
        GitCommandError: on a non-zero exit, a timeout, or a missing binary
    """
    try:
        result = subprocess.run(
            ["git"] + args,
            capture_output=True,
            text=True,
            cwd=str(repo),
            timeout=timeout,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        raise GitCommandError(f"git {args[0]} failed: {e}") from e
    if result.returncode != 0:
        raise GitCommandError(
            f"git {args[0]} failed (exit {result.returncode}): {result.stderr.strip()}"
        )
    return result.stdout


def parse_log(output: str) -> List[CommitInfo]:
    """Parse ``git log --name-only`` output produced with LOG_FORMAT"""
    commits = []
    for chunk in output.split(_RECORD):
        if not chunk.strip():
            continue
        header, _, file_block = chunk.partition(_END)
        parts = header.split(_FIELD, 3)
        if len(parts) != 4:
            logger.warning("Skipping unparseable git log record")
            continue
        sha, iso_date, author, message = parts
        files = [line.strip() for line in file_block.splitlines() if line.strip()]
        commits.append(CommitInfo(
            sha=sha.strip(),
            message=message.strip(),
            files=files,
            timestamp=to_utc(datetime.fromisoformat(iso_date.strip())),
            author=author.strip() or None,
        ))
    return commits


def read_commits(
    repo: Path,
    since: Optional[datetime] = None,
    max_count: Optional[int] = None,
) -> List[CommitInfo]:
    """Commits reachable from HEAD, oldest first"""
    args = ["log", "--name-only", f"--format={LOG_FORMAT}"]
    if since is not None:
        args.append(f"--since={to_utc(since).isoformat()}")
    if max_count is not None:
        args.append(f"--max-count={max_count}")
    commits = parse_log(run_git(args, Path(repo)))
    commits.reverse()
    logger.debug("Read %d commits from %s", len(commits), repo)
    return commits
