"""Tests for reading commit history from git."""

import subprocess
from datetime import datetime, timezone
from pathlib import Path

import pytest
from unittest.mock import Mock, patch

from ctxd.pipeline.git import GitCommandError, LOG_FORMAT, parse_log, read_commits, run_git


def record(sha, when, author, message, files):
    header = LOG_FORMAT.replace("%H", sha).replace("%aI", when).replace("%an", author).replace("%B", message)
    return header + "\n\n" + "\n".join(files) + "\n"


SAMPLE = (
    record("bbb2222", "2026-03-02T11:00:00+01:00", "Alice", "Cache sessions in Redis\n\nLogin was slow.\n",
           ["src/auth/session.ts", "src/auth/redis.ts"])
    + record("aaa1111", "2026-03-01T09:00:00+00:00", "Bob", "Initial commit\n", ["README.md"])
)


class TestParseLog:
    def test_records(self):
        newest, oldest = parse_log(SAMPLE)
        assert newest.sha == "bbb2222"
        assert newest.message == "Cache sessions in Redis\n\nLogin was slow."
        assert newest.files == ["src/auth/redis.ts", "src/auth/session.ts"]
        assert newest.timestamp == datetime(2026, 3, 2, 10, tzinfo=timezone.utc)
        assert newest.author == "Alice"
        assert oldest.files == ["README.md"]

    def test_commit_without_files(self):
        [commit] = parse_log(record("ccc3333", "2026-03-03T00:00:00+00:00", "Eve", "Empty\n", []))
        assert commit.files == []

    def test_empty_output(self):
        assert parse_log("") == []


class TestReadCommits:
    def test_oldest_first(self):
        with patch("ctxd.pipeline.git.run_git", return_value=SAMPLE) as run:
            commits = read_commits(Path("."), since=datetime(2026, 1, 1, tzinfo=timezone.utc), max_count=50)
        assert [c.sha for c in commits] == ["aaa1111", "bbb2222"]
        args = run.call_args.args[0]
        assert "--since=2026-01-01T00:00:00+00:00" in args
        assert "--max-count=50" in args


class TestRunGit:
    def test_non_zero_exit(self, tmp_path):
        failed = Mock(returncode=128, stdout="", stderr="fatal: not a git repository\n")
        with patch("ctxd.pipeline.git.subprocess.run", return_value=failed):
            with pytest.raises(GitCommandError, match="not a git repository"):
                run_git(["log"], tmp_path)

    def test_missing_binary(self, tmp_path):
        with patch("ctxd.pipeline.git.subprocess.run", side_effect=FileNotFoundError("git")):
            with pytest.raises(GitCommandError):
                run_git(["log"], tmp_path)

    def test_timeout(self, tmp_path):
        with patch("ctxd.pipeline.git.subprocess.run", side_effect=subprocess.TimeoutExpired("git", 30)):
            with pytest.raises(GitCommandError):
                run_git(["log"], tmp_path)
