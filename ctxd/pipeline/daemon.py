"""
Context Pipeline

Wires the stages together:

    producers -> EventBuffer -> Correlator -> IntentClassifier
              -> {CommitLinker, DecisionSynthesizer} -> SemanticIndexBuilder
              -> context.lock

All mutable bookkeeping lives in one ``PipelineState`` value, rebuilt from
the append-only logs on startup. Capture (``submit``) never waits on the
processing side; ``run`` is the single consumer.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional

from ..common.config import COLD_STORE_DIR, ContextPaths, CtxdConfig, ensure_directories
from ..common.decision_store import DecisionStore
from ..common.errors import CtxdError, WriteConflict
from ..common.intent_log import EventLog, IntentLog
from ..common.llm_client import LLMClient
from ..common.redaction import Redactor
from ..common.schemas.events import CommitInfo, EventSource, RawEvent, utc_now
from ..common.schemas.interaction import CommitLink, Interaction
from ..common.schemas.snapshot import Snapshot
from ..common.snapshot_store import SnapshotStore
from ..retriever.semantic_index import SemanticIndexBuilder, load_constraints
from .buffer import EventBuffer
from .classifier import InferenceBackend, IntentClassifier, RuleBasedClassifier
from .correlator import Correlator
from .inference import build_backend
from .linker import CommitLinker
from .orphans import OrphanQueue
from .retention import ArchiveResult, LocalColdStore, RetentionManager
from .synthesizer import DecisionSynthesizer, SynthesisAction

logger = logging.getLogger("ctxd.pipeline.daemon")


@dataclass
class PipelineState:
    """Everything the pipeline mutates between events"""
    interaction_counter: int = 0
    recent_commits: Deque[CommitInfo] = field(default_factory=lambda: deque(maxlen=200))
    interactions_processed: int = 0
    decisions_created: int = 0
    decisions_merged: int = 0
    links_accepted: int = 0
    write_conflicts: int = 0
    last_snapshot_checksum: Optional[str] = None
    last_snapshot_at: Optional[datetime] = None
    dirty: bool = False

    def next_interaction_id(self) -> str:
        self.interaction_counter += 1
        return f"int_{self.interaction_counter:04d}"

    def remember_commit(self, commit: CommitInfo) -> None:
        if any(c.sha == commit.sha for c in self.recent_commits):
            return
        self.recent_commits.append(commit)

    @classmethod
    def reconstruct(
        cls,
        intent_log: IntentLog,
        event_log: EventLog,
        recent_commit_limit: int = 200,
        retention: Optional[RetentionManager] = None,
    ) -> "PipelineState":
        """Rebuild counters and the recent-commit window from the logs.

        Interactions already moved to cold storage still count: their highest
        id is read from the cold pointers.
        """
        state = cls(recent_commits=deque(maxlen=recent_commit_limit))
        state.interaction_counter = intent_log.max_interaction_number()
        if retention is not None:
            state.interaction_counter = max(state.interaction_counter, retention.max_archived_interaction_number())
        for event in event_log.load_events(include_warm=False):
            if event.source == EventSource.VCS:
                try:
                    state.remember_commit(CommitInfo.from_event(event))
                except (KeyError, ValueError):
                    continue
        logger.info(
            "Reconstructed state: next id int_%04d, %d recent commits",
            state.interaction_counter + 1, len(state.recent_commits),
        )
        return state


class ContextPipeline:
    def __init__(
        self,
        paths: ContextPaths,
        buffer: EventBuffer,
        correlator: Correlator,
        classifier: IntentClassifier,
        linker: CommitLinker,
        synthesizer: DecisionSynthesizer,
        orphans: OrphanQueue,
        intent_log: IntentLog,
        event_log: EventLog,
        decision_store: DecisionStore,
        snapshot_store: SnapshotStore,
        index_builder: SemanticIndexBuilder,
        retention: RetentionManager,
        state: PipelineState,
        max_candidates: int = 5,
        rebuild_interval_seconds: float = 3600.0,
        tick_seconds: float = 0.5,
        orphan_days: int = 90,
    ):
        self.paths = paths
        self.buffer = buffer
        self.correlator = correlator
        self.classifier = classifier
        self.linker = linker
        self.synthesizer = synthesizer
        self.orphans = orphans
        self.intent_log = intent_log
        self.event_log = event_log
        self.decision_store = decision_store
        self.snapshot_store = snapshot_store
        self.index_builder = index_builder
        self.retention = retention
        self.state = state
        self.max_candidates = max_candidates
        self.rebuild_interval = timedelta(seconds=rebuild_interval_seconds)
        self.tick_seconds = tick_seconds
        self.orphan_horizon = timedelta(days=orphan_days)
        self._stopping = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: CtxdConfig,
        backend: Optional[InferenceBackend] = None,
    ) -> "ContextPipeline":
        paths = ContextPaths.for_project(config.project_root or ".")
        ensure_directories(paths)

        intent_log = IntentLog(paths.intents_dir, paths.warm_dir)
        event_log = EventLog(paths.events_dir, paths.warm_dir)
        cold_root = Path(config.retention.cold_dir).expanduser() if config.retention.cold_dir else COLD_STORE_DIR / paths.root.name
        retention = RetentionManager(
            [intent_log, event_log],
            pointer_dir=paths.cold_dir,
            cold_store=LocalColdStore(cold_root),
            hot_days=config.retention.hot_days,
            warm_days=config.retention.warm_days,
        )
        state = PipelineState.reconstruct(intent_log, event_log, config.linker.recent_commit_limit, retention)

        buffer = EventBuffer(
            redactor=Redactor(config.privacy.redact_patterns, config.privacy.replacement),
            maxsize=config.capture.buffer_size,
            min_prompt_length=config.capture.min_prompt_length,
            default_author=config.author,
        )
        correlator = Correlator(
            pre_window_seconds=config.correlation.pre_window_seconds,
            post_delay_seconds=config.correlation.post_delay_seconds,
            ignore=config.capture.ignore,
            tool_ignores={name: tool.ignore for name, tool in config.capture.tools.items()},
            max_pending_files=config.correlation.max_pending_files,
            project_root=paths.root,
            next_id=state.next_interaction_id,
        )

        inference = config.inference
        if backend is None and inference.provider != "rule":
            backend = build_backend(LLMClient.from_config(inference), inference.timeout_seconds)
            if backend is None:
                logger.warning("Inference provider %s unavailable; using rules only", inference.provider)
        classifier = IntentClassifier(
            rules=RuleBasedClassifier(confidence=inference.rule_confidence),
            backend=backend,
            timeout=inference.timeout_seconds,
            fallback_discount=inference.fallback_discount,
            min_confidence=inference.min_confidence,
        )

        decision_store = DecisionStore(paths.decisions_dir)

        return cls(
            paths=paths,
            buffer=buffer,
            correlator=correlator,
            classifier=classifier,
            linker=CommitLinker.from_config(config.linker),
            synthesizer=DecisionSynthesizer.from_config(decision_store, config.adr),
            orphans=OrphanQueue(
                paths.orphans_path,
                max_candidates=config.linker.max_candidates,
                archive_dir=paths.orphan_archive_dir,
            ),
            intent_log=intent_log,
            event_log=event_log,
            decision_store=decision_store,
            snapshot_store=SnapshotStore(paths.lock_path),
            index_builder=SemanticIndexBuilder.from_config(config.index, paths.root),
            retention=retention,
            state=state,
            max_candidates=config.linker.max_candidates,
            rebuild_interval_seconds=config.index.update_interval_seconds,
            orphan_days=config.retention.orphan_days,
        )

    # ------------------------------------------------------------------
    # Capture side
    # ------------------------------------------------------------------

    def submit(self, event: RawEvent) -> bool:
        return self.buffer.submit(event)

    def submit_input(self, data: Any, default_session: Optional[str] = None) -> int:
        return self.buffer.submit_input(data, default_session=default_session)

    def pause(self) -> None:
        self.buffer.pause()

    def resume(self) -> None:
        self.buffer.resume()

    # ------------------------------------------------------------------
    # Processing side
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Consume the buffer until ``stop`` is called"""
        logger.info("Pipeline consumer started")
        self._stopping.clear()
        while not self._stopping.is_set():
            event = await self.buffer.get(timeout=self.tick_seconds)
            if event is not None:
                await self.handle_event(event)
            elif self.buffer.qsize() == 0:
                # Idle: let wall-clock time seal windows nobody will extend
                for interaction in self.correlator.advance(utc_now()):
                    await self.process_interaction(interaction)
            if self._rebuild_due():
                await self._rebuild_logged()
        await self.drain()
        logger.info("Pipeline consumer stopped")

    def stop(self) -> None:
        self._stopping.set()

    async def drain(self) -> List[Interaction]:
        """Process everything queued, then seal and process open windows"""
        processed = []
        while True:
            event = self.buffer.get_nowait()
            if event is None:
                break
            processed.extend(await self.handle_event(event))
        for interaction in self.correlator.flush():
            processed.append(await self.process_interaction(interaction))
        return processed

    def _rebuild_due(self) -> bool:
        if not self.state.dirty:
            return False
        last = self.state.last_snapshot_at
        return last is None or utc_now() - last >= self.rebuild_interval

    async def handle_event(self, event: RawEvent) -> List[Interaction]:
        """Persist one buffered event and route it. Returns Interactions it sealed."""
        self.event_log.append_event(event)
        if event.source == EventSource.VCS:
            await self.handle_commit(CommitInfo.from_event(event))
            return []
        processed = []
        for interaction in self.correlator.correlate(event):
            processed.append(await self.process_interaction(interaction))
        return processed

    async def process_interaction(self, interaction: Interaction) -> Interaction:
        """Classify, link, synthesize and log one sealed Interaction"""
        intent = await self.classifier.classify_async(interaction)
        interaction = interaction.model_copy(update={"intent": intent})

        ranked = self.linker.rank(interaction, list(self.state.recent_commits))
        best = ranked[0] if ranked else None
        if best is not None and best.accepted:
            interaction = interaction.model_copy(update={
                "commit_ref": best.commit_sha,
                "commit_msg": best.commit_message,
                "link_score": best.score,
            })
            self.state.links_accepted += 1

        try:
            result = await asyncio.to_thread(self.synthesizer.maybe_synthesize, interaction)
        except WriteConflict as e:
            self.state.write_conflicts += 1
            logger.error("Decision write for %s failed: %s", interaction.id, e)
        else:
            if result.action == SynthesisAction.CREATED:
                interaction = interaction.model_copy(update={"adr_generated": result.record.id})
                self.state.decisions_created += 1
            elif result.action == SynthesisAction.MERGED:
                self.state.decisions_merged += 1

        self.intent_log.append_interaction(interaction)
        if interaction.commit_ref is None:
            self.orphans.add(interaction, ranked[: self.max_candidates])

        self.state.interactions_processed += 1
        self.state.dirty = True
        logger.info(
            "Processed %s: %s (%.2f) commit=%s adr=%s",
            interaction.id, intent.category.value, intent.confidence,
            (interaction.commit_ref or "-")[:10], interaction.adr_generated or "-",
        )
        return interaction

    def _record_link(self, link: CommitLink) -> None:
        item = self.orphans.get(link.interaction_id)
        if item is None:
            return
        self.intent_log.append_amendment(
            item.interaction,
            commit=link.commit_sha,
            commit_msg=link.commit_message or None,
            link_score=link.score,
        )
        self.state.links_accepted += 1

    async def handle_commit(self, commit: CommitInfo) -> List[CommitLink]:
        """Re-score pending orphans against a new commit, then rebuild"""
        self.state.remember_commit(commit)
        links = self.orphans.rescore(self.linker, [commit])
        for link in links:
            self._record_link(link)
        self.state.dirty = True
        await self._rebuild_logged()
        return links

    def resolve_orphan(self, interaction_id: str, commit_sha: str) -> CommitLink:
        """Manual link. Raises KeyError for unknown ids, ValueError if already closed."""
        link = self.orphans.resolve(interaction_id, commit_sha)
        if not link.commit_message:
            known = next((c for c in self.state.recent_commits if c.sha == commit_sha), None)
            if known is not None:
                link = link.model_copy(update={"commit_message": known.message})
        self._record_link(link)
        self.state.dirty = True
        return link

    async def rebuild_snapshot(self, budget: Optional[int] = None) -> Snapshot:
        """Rebuild context.lock from the logs, decision store and constraints"""
        snapshot = await asyncio.to_thread(self._build_and_save, budget)
        self.state.last_snapshot_checksum = snapshot.checksum
        self.state.last_snapshot_at = utc_now()
        self.state.dirty = False
        return snapshot

    async def _rebuild_logged(self) -> Optional[Snapshot]:
        # Background rebuilds retry on the next commit or interval
        try:
            return await self.rebuild_snapshot()
        except WriteConflict as e:
            self.state.write_conflicts += 1
            logger.error("Snapshot rebuild failed: %s", e)
            return None

    def build_snapshot(self, budget: Optional[int] = None) -> Snapshot:
        return self.index_builder.build(
            self.intent_log.load_interactions(),
            self.decision_store.load_all(),
            load_constraints(self.paths.constraints_path),
            budget=budget,
        )

    def _build_and_save(self, budget: Optional[int]) -> Snapshot:
        return self.snapshot_store.save(self.build_snapshot(budget))

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    async def import_history(self, commits: Iterable[CommitInfo], rebuild: bool = True) -> Dict[str, int]:
        """Cold-start import: link every unlinked logged Interaction against history"""
        commits = [self.buffer.redact_commit(c) for c in commits]
        for commit in commits[-(self.state.recent_commits.maxlen or len(commits)):]:
            self.state.remember_commit(commit)

        unlinked = [i for i in self.intent_log.load_interactions() if i.commit_ref is None]
        links = self.linker.link_batch(unlinked, commits)
        by_id = {link.interaction_id: link for link in links}

        linked = orphaned = 0
        for interaction in unlinked:
            link = by_id.get(interaction.id)
            if link is not None and link.accepted:
                self.intent_log.append_amendment(
                    interaction,
                    commit=link.commit_sha,
                    commit_msg=link.commit_message or None,
                    link_score=link.score,
                )
                self.orphans.mark_linked(interaction.id, link.commit_sha)
                self.state.links_accepted += 1
                linked += 1
            else:
                self.orphans.add(interaction, [link] if link is not None else [])
                orphaned += 1

        self.state.dirty = True
        if rebuild:
            await self.rebuild_snapshot()
        logger.info("Imported %d commits: %d linked, %d orphaned", len(commits), linked, orphaned)
        return {"commits": len(commits), "interactions": len(unlinked), "linked": linked, "orphaned": orphaned}

    async def archive(self, older_than_days: Optional[int] = None) -> ArchiveResult:
        """Out-of-band tiering of the raw logs and the orphan queue.

        Decisions and the snapshot are untouched.
        """
        older_than = timedelta(days=older_than_days) if older_than_days is not None else None
        try:
            result = await asyncio.to_thread(self.retention.archive, older_than)
            result.orphans_archived = self.orphans.archive(self.orphan_horizon)
        except OSError as e:
            raise CtxdError(f"Archival failed: {e}") from e
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {
            "buffer": self.buffer.get_stats(),
            "correlator": {
                "open_windows": len(self.correlator.open_windows),
                "pending_files": self.correlator.pending_file_count,
                "discarded_files": self.correlator.discarded_files,
            },
            "interactions_processed": self.state.interactions_processed,
            "decisions_created": self.state.decisions_created,
            "decisions_merged": self.state.decisions_merged,
            "links_accepted": self.state.links_accepted,
            "inference_fallbacks": self.classifier.fallbacks,
            "write_conflicts": self.state.write_conflicts,
            "orphans": self.orphans.get_stats(),
            "last_snapshot_checksum": self.state.last_snapshot_checksum,
            "last_snapshot_at": self.state.last_snapshot_at.isoformat() if self.state.last_snapshot_at else None,
        }
