"""
Decision Synthesizer

Promotes a confidently classified Interaction to an architecture decision
record. Before creating one it compares the Interaction's concepts with the
triggers of every active record; a close enough match extends that record's
triggers instead of producing a near-duplicate.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from ..common.config import ADRConfig
from ..common.decision_store import DecisionStore
from ..common.schemas.decision_record import DecisionRecord, Related, Status
from ..common.schemas.interaction import Interaction
from ..common.text import jaccard, truncate

logger = logging.getLogger("ctxd.pipeline.synthesizer")

TITLE_CHARS = 60
PROMPT_EXCERPT_CHARS = 200


class SynthesisAction(str, Enum):
    CREATED = "created"
    MERGED = "merged"
    SKIPPED = "skipped"


@dataclass
class SynthesisResult:
    """What maybe_synthesize did"""
    action: SynthesisAction
    record: Optional[DecisionRecord] = None
    similarity: float = 0.0
    added_triggers: Tuple[str, ...] = ()
    reason: str = ""

    @property
    def created(self) -> bool:
        return self.action == SynthesisAction.CREATED


def describe_consequences(interaction: Interaction) -> List[str]:
    """Observable consequences recorded alongside the decision"""
    consequences = []
    intent = interaction.intent
    if intent is not None:
        consequences.append(f"Classified as a {intent.category.value} change")
    if interaction.files:
        shown = ", ".join(interaction.files[:5])
        more = f" and {len(interaction.files) - 5} more" if len(interaction.files) > 5 else ""
        consequences.append(f"Touches {shown}{more}")
    if intent is not None and intent.problem:
        consequences.append(f"Addresses: {intent.problem}")
    return consequences


class DecisionSynthesizer:
    def __init__(
        self,
        store: DecisionStore,
        threshold: float = 0.8,
        dedup_threshold: float = 0.6,
        auto_generate: bool = True,
        clock: Optional[Callable] = None,
    ):
        self.store = store
        self.threshold = threshold
        self.dedup_threshold = dedup_threshold
        self.auto_generate = auto_generate
        self._clock = clock

    @classmethod
    def from_config(cls, store: DecisionStore, config: ADRConfig) -> "DecisionSynthesizer":
        return cls(
            store=store,
            threshold=config.threshold,
            dedup_threshold=config.dedup_threshold,
            auto_generate=config.auto_generate,
        )

    def should_synthesize(self, interaction: Interaction) -> bool:
        return (
            self.auto_generate
            and interaction.intent is not None
            and interaction.intent.confidence >= self.threshold
        )

    def find_duplicate(self, concepts) -> Tuple[Optional[DecisionRecord], float]:
        """Active record whose triggers are most similar to ``concepts``"""
        best: Optional[DecisionRecord] = None
        best_similarity = 0.0
        for record in self.store.load_all():
            if not record.is_active:
                continue
            similarity = jaccard(concepts, record.triggers)
            if similarity > best_similarity:
                best, best_similarity = record, similarity
        return best, best_similarity

    def build_record(self, interaction: Interaction, record_id: str) -> DecisionRecord:
        intent = interaction.intent
        title = truncate(intent.solution or interaction.prompt, TITLE_CHARS)
        kwargs = {}
        if self._clock is not None:
            kwargs["date"] = self._clock()
        return DecisionRecord(
            id=record_id,
            title=title,
            status=Status.ACCEPTED,
            context=intent.problem or "Context inferred from AI interaction.",
            decision=intent.solution or truncate(interaction.prompt, 200),
            alternatives=list(intent.alternatives),
            consequences=describe_consequences(interaction),
            triggers=list(intent.concepts) + [intent.category.value],
            source_interaction_id=interaction.id,
            source_tool=interaction.tool,
            prompt_excerpt=interaction.prompt[:PROMPT_EXCERPT_CHARS],
            confidence=intent.confidence,
            related=Related(
                files=list(interaction.files),
                commits=[interaction.commit_ref] if interaction.commit_ref else [],
                concepts=list(intent.concepts),
                category=intent.category.value,
            ),
            **kwargs,
        )

    def maybe_synthesize(self, interaction: Interaction) -> SynthesisResult:
        """Create, merge into, or skip a DecisionRecord for ``interaction``"""
        if not self.should_synthesize(interaction):
            confidence = interaction.intent.confidence if interaction.intent else 0.0
            return SynthesisResult(
                SynthesisAction.SKIPPED,
                reason=f"confidence {confidence:.2f} below {self.threshold:.2f}" if self.auto_generate else "disabled",
            )

        concepts = set(interaction.intent.concepts)
        duplicate, similarity = self.find_duplicate(concepts)
        if duplicate is not None and similarity >= self.dedup_threshold:
            added = self.store.extend_triggers(duplicate.id, concepts)
            logger.info(
                "%s merged into %s (similarity %.2f, +%d triggers)",
                interaction.id, duplicate.id, similarity, len(added),
            )
            return SynthesisResult(
                SynthesisAction.MERGED,
                record=self.store.get(duplicate.id),
                similarity=similarity,
                added_triggers=tuple(added),
            )

        record = self.store.create(lambda record_id: self.build_record(interaction, record_id))
        return SynthesisResult(SynthesisAction.CREATED, record=record, similarity=similarity)

    def supersede(self, record_id: str, superseding_id: str) -> DecisionRecord:
        """Retire ``record_id`` in favour of ``superseding_id``"""
        record = self.store.supersede(record_id, superseding_id)
        logger.info("%s superseded by %s", record_id, superseding_id)
        return record
