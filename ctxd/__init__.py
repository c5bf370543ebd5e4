"""
ctxd - Intent Correlation & Semantic Snapshot Pipeline

Turns the stream of AI-tool prompts, file changes and commits in a repository
into an append-only record of why code changed, and into a token-budgeted
snapshot (context.lock) that downstream agents load instead of re-reading
history.

Philosophy:
- Append-only logs are the source of truth; everything else is rebuildable
- Redact once, at the capture boundary, before anything is persisted
- Capture never waits on inference, linking or synthesis
- Every score is a configurable heuristic with an explicit confidence

Usage:
    from ctxd.common import load_config, ContextPaths
    from ctxd.common.schemas import Interaction, DecisionRecord, Snapshot
    from ctxd.pipeline import ContextPipeline, Correlator, IntentClassifier
    from ctxd.retriever import SemanticIndexBuilder, ContextRetriever
"""

__version__ = "0.1.0"
