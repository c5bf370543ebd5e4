#!/usr/bin/env python3
"""
History Import Script

Cold start for an existing project: replays saved AI transcripts into the
interaction log, links every unlinked interaction against the git history,
and writes a fresh context.lock.

Usage:
    python scripts/import_history.py [--project-root .] [--since 2026-01-01]
                                     [--max-count 500] [--transcript session.jsonl]
                                     [--dry-run]
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path


def parse_since(value):
    since = datetime.fromisoformat(value)
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return since


async def run_import(pipeline, commits, transcripts):
    from ctxd.pipeline.sources import ClaudeTranscriptProducer

    for transcript in transcripts:
        count = await pipeline.buffer.pump(ClaudeTranscriptProducer(transcript))
        print(f"[Import] {transcript}: {count} events")
    processed = await pipeline.drain()
    print(f"[Import] Processed {len(processed)} interactions from transcripts")
    return await pipeline.import_history(commits)


def main():
    parser = argparse.ArgumentParser(description="Link past AI interactions to git history and rebuild context.lock")
    parser.add_argument("--project-root", type=str, default=".", help="Project to import (default: current directory)")
    parser.add_argument("--since", type=parse_since, default=None, help="Only read commits after this ISO date")
    parser.add_argument("--max-count", type=int, default=None, help="Read at most this many commits")
    parser.add_argument("--transcript", action="append", default=[], help="Claude transcript JSONL to replay (repeatable)")
    parser.add_argument("--dry-run", action="store_true", help="Print what would be done without executing")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    from ctxd.common.config import load_config
    from ctxd.common.errors import CtxdError
    from ctxd.pipeline.daemon import ContextPipeline
    from ctxd.pipeline.git import read_commits

    project_root = Path(args.project_root).resolve()
    config = load_config(project_root)
    config.project_root = str(project_root)

    print(f"[Import] Reading git history in {project_root}...")
    try:
        commits = read_commits(project_root, since=args.since, max_count=args.max_count)
    except CtxdError as e:
        print(f"[Import] ERROR: {e}")
        sys.exit(1)
    print(f"[Import] Found {len(commits)} commits")

    missing = [t for t in args.transcript if not Path(t).expanduser().exists()]
    if missing:
        print(f"[Import] ERROR: Transcript not found: {', '.join(missing)}")
        sys.exit(1)

    if args.dry_run:
        print("[Import] DRY RUN - no changes will be made")
        if commits:
            print(f"[Import] Oldest commit: {commits[0].sha[:10]} {commits[0].timestamp.isoformat()}")
            print(f"[Import] Newest commit: {commits[-1].sha[:10]} {commits[-1].timestamp.isoformat()}")
        print(f"[Import] Would replay {len(args.transcript)} transcript(s)")
        return

    pipeline = ContextPipeline.from_config(config)
    try:
        summary = asyncio.run(run_import(pipeline, commits, args.transcript))
    except CtxdError as e:
        print(f"[Import] ERROR: {e}")
        sys.exit(1)

    print(
        f"[Import] Complete: {summary['linked']} linked, {summary['orphaned']} orphaned, "
        f"{summary['interactions']} interactions, {summary['commits']} commits"
    )
    print(f"[Import] Snapshot written to {pipeline.paths.lock_path}")


if __name__ == "__main__":
    main()
