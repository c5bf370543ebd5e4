"""Tests for canonical serialization, atomic writes and the exclusive lock."""

import os
import time

import pytest

from ctxd.common.errors import WriteConflict
from ctxd.common.storage import (
    ExclusiveLock,
    atomic_write,
    canonical_json,
    file_sha256,
    locked_write,
    sha256_hex,
)


def _no_sleep(_delay):
    return None


class TestCanonical:
    def test_sorted_and_compact(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_sha256_of_file_matches_bytes(self, tmp_path):
        path = tmp_path / "x.bin"
        path.write_bytes(b"ctxd")
        assert file_sha256(path) == sha256_hex(b"ctxd")


class TestAtomicWrite:
    def test_writes_and_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "nested" / "index.json"
        atomic_write(target, "{}")
        atomic_write(target, '{"v": 2}')
        assert target.read_text() == '{"v": 2}'
        assert [p.name for p in target.parent.iterdir()] == ["index.json"]

    def test_bytes(self, tmp_path):
        target = tmp_path / "batch.gz"
        atomic_write(target, b"\x1f\x8b")
        assert target.read_bytes() == b"\x1f\x8b"


class TestExclusiveLock:
    def test_second_writer_gets_write_conflict(self, tmp_path):
        target = tmp_path / "index.json"
        delays = []
        with ExclusiveLock(target):
            contender = ExclusiveLock(target, retries=2, sleep=delays.append)
            with pytest.raises(WriteConflict) as exc_info:
                contender.acquire()
        assert exc_info.value.attempts == 3
        assert delays == [0.05, 0.1]
        assert not target.exists()

    def test_lock_released_on_exit(self, tmp_path):
        target = tmp_path / "index.json"
        lock = ExclusiveLock(target)
        with lock:
            assert lock.lock_path.exists()
        assert not lock.lock_path.exists()

    def test_stale_lock_is_broken(self, tmp_path):
        target = tmp_path / "context.lock"
        stale = target.with_name(target.name + ".lock")
        stale.write_text("99999")
        old = time.time() - 120
        os.utime(stale, (old, old))

        with ExclusiveLock(target, stale_after=30, sleep=_no_sleep) as lock:
            assert lock.lock_path.exists()
        assert not stale.exists()

    def test_backoff_is_capped(self, tmp_path):
        target = tmp_path / "index.json"
        delays = []
        with ExclusiveLock(target):
            with pytest.raises(WriteConflict):
                ExclusiveLock(target, retries=6, base_delay=0.1, max_delay=0.5, sleep=delays.append).acquire()
        assert max(delays) == 0.5

    def test_locked_write(self, tmp_path):
        target = tmp_path / "orphans.json"
        locked_write(target, "[]")
        assert target.read_text() == "[]"
        assert not target.with_name("orphans.json.lock").exists()
