"""
ctxd Retriever

Builds the token-budgeted snapshot and serves it, with decision search and
per-file intent lookup, to downstream agents.
"""

from .context_api import ContextRetriever
from .semantic_index import SemanticIndexBuilder, detect_stack, load_constraints

__all__ = [
    "ContextRetriever",
    "SemanticIndexBuilder",
    "detect_stack",
    "load_constraints",
]
