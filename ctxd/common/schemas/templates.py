"""
ADR Markdown Templates

Renders a DecisionRecord to the human-readable file stored next to the
machine-readable decision index.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .decision_record import DecisionRecord


ADR_TEMPLATE = """# {id}: {title}

**ID**: {id}
**Date**: {date}
**Status**: {status}
**Source**: {source}
**Confidence**: {confidence}

## Context

{context}

> {prompt}

## Decision

{decision}

## Alternatives Considered

{alternatives}

## Consequences

{consequences}

## Files Modified

{files}

## Related

- Intent: {category}
- Concepts: {concepts}
- Commits: {commits}
- Triggers: {triggers}
"""

PROMPT_EXCERPT_CHARS = 200


def _format_alternatives(alternatives: list) -> str:
    """Markdown table of the options that were weighed"""
    if not alternatives:
        return "- (none documented)"
    lines = ["| Option | Outcome |", "| --- | --- |"]
    for alt in alternatives:
        lines.append(f"| {alt.replace('|', '/')} | Not chosen |")
    return "\n".join(lines)


def _format_bullets(items: list, empty: str = "- (none)") -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)


def _format_files(files: list) -> str:
    if not files:
        return "- (none)"
    return "\n".join(f"- `{f}`" for f in files)


def _format_status(record: "DecisionRecord") -> str:
    status = record.status.value.capitalize()
    if record.superseded_by:
        status += f" (by {record.superseded_by})"
    return status


def render_adr_markdown(record: "DecisionRecord") -> str:
    """Render a DecisionRecord as an ADR markdown document"""
    prompt = record.prompt_excerpt[:PROMPT_EXCERPT_CHARS].replace("\n", " ")
    source = record.source_tool or "unknown"
    if record.source_interaction_id:
        source += f" ({record.source_interaction_id})"

    return ADR_TEMPLATE.format(
        id=record.id,
        title=record.title,
        date=record.date.strftime("%Y-%m-%d"),
        status=_format_status(record),
        source=source,
        confidence=f"{record.confidence:.0%}",
        context=record.context or "Context inferred from AI interaction.",
        prompt=prompt or "(prompt unavailable)",
        decision=record.decision or "(not stated)",
        alternatives=_format_alternatives(record.alternatives),
        consequences=_format_bullets(record.consequences),
        files=_format_files(record.related.files),
        category=record.related.category or "unknown",
        concepts=", ".join(record.related.concepts) or "none",
        commits=", ".join(record.related.commits) or "none",
        triggers=", ".join(record.triggers) or "none",
    )
