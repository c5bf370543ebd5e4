"""
ctxd Schemas

Persisted models for capture events, interactions, decision records and
the context.lock snapshot.
"""

from .events import CommitInfo, EventSource, RawEvent, to_utc, utc_now
from .interaction import (
    CommitLink,
    InferredIntent,
    IntentCategory,
    IntentSource,
    Interaction,
    LinkSignals,
    amendment_record,
)
from .decision_record import (
    DecisionRecord,
    Related,
    Status,
    generate_record_id,
    next_record_id,
    parse_record_number,
)
from .snapshot import (
    SNAPSHOT_VERSION,
    BudgetAllocation,
    Constraint,
    DecisionIndexEntry,
    ProjectInfo,
    RecentInteraction,
    RecentWindow,
    SemanticConcept,
    Snapshot,
)
from .templates import ADR_TEMPLATE, render_adr_markdown

__all__ = [
    "CommitInfo",
    "EventSource",
    "RawEvent",
    "to_utc",
    "utc_now",
    "CommitLink",
    "InferredIntent",
    "IntentCategory",
    "IntentSource",
    "Interaction",
    "LinkSignals",
    "amendment_record",
    "DecisionRecord",
    "Related",
    "Status",
    "generate_record_id",
    "next_record_id",
    "parse_record_number",
    "SNAPSHOT_VERSION",
    "BudgetAllocation",
    "Constraint",
    "DecisionIndexEntry",
    "ProjectInfo",
    "RecentInteraction",
    "RecentWindow",
    "SemanticConcept",
    "Snapshot",
    "ADR_TEMPLATE",
    "render_adr_markdown",
]
