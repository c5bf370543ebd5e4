"""
ctxd Pipeline - Intent Correlation

Turns captured prompts, file changes and commits into Interactions, links
them to commits, and promotes significant ones to decision records.

Key Components:
- EventBuffer: Redacting, bounded capture queue (never blocks producers)
- Correlator: Groups events into Interactions with a trailing window
- IntentClassifier: Versioned rule table plus optional inference backend
- CommitLinker: Weighted time / file / message scoring
- DecisionSynthesizer: ADR creation with trigger-based deduplication
- RetentionManager: Hot / warm / cold tiering of the raw logs
- ContextPipeline: Orchestrates all of the above

Pipeline:
1. Producers submit input events; redaction happens at submit
2. A prompt opens a window; nearby file changes join it
3. Sealed Interactions are classified off the capture path
4. Commits link Interactions, or leave them queued as orphans
5. Confident Interactions become (or extend) decision records
6. The snapshot is rebuilt on commit and on a fixed cadence
"""

from .buffer import EventBuffer
from .classifier import IntentClassifier, RuleBasedClassifier
from .correlator import Correlator
from .daemon import ContextPipeline, PipelineState
from .linker import CommitLinker
from .orphans import OrphanQueue
from .retention import ArchiveResult, RetentionManager
from .sources import EventProducer, parse_input_event
from .synthesizer import DecisionSynthesizer, SynthesisResult

__all__ = [
    "EventBuffer",
    "IntentClassifier",
    "RuleBasedClassifier",
    "Correlator",
    "ContextPipeline",
    "PipelineState",
    "CommitLinker",
    "OrphanQueue",
    "ArchiveResult",
    "RetentionManager",
    "EventProducer",
    "parse_input_event",
    "DecisionSynthesizer",
    "SynthesisResult",
]
