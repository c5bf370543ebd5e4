"""Shared fixtures: a throwaway project root and model factories."""

from datetime import datetime, timezone

import pytest

from ctxd.common.config import ContextPaths, ensure_directories
from ctxd.common.schemas.decision_record import DecisionRecord, Related
from ctxd.common.schemas.interaction import InferredIntent, IntentCategory, Interaction

T0 = datetime(2026, 3, 2, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def paths(tmp_path):
    project = tmp_path / "shop"
    project.mkdir()
    context_paths = ContextPaths.for_project(project)
    ensure_directories(context_paths)
    return context_paths


@pytest.fixture
def make_interaction():
    def _make(
        number=1,
        prompt="Move session storage to Redis",
        files=("src/auth/session.ts",),
        at=T0,
        category=IntentCategory.PERFORMANCE,
        confidence=0.92,
        concepts=("session", "auth", "redis", "login"),
        solution="Cache sessions in Redis",
        with_intent=True,
        **fields,
    ):
        intent = None
        if with_intent:
            intent = InferredIntent(
                category=category,
                confidence=confidence,
                solution=solution,
                concepts=list(concepts),
            )
        return Interaction(
            id=f"int_{number:04d}",
            tool=fields.pop("tool", "claude-code"),
            prompt=prompt,
            files=list(files),
            timestamp=at,
            intent=intent,
            author=fields.pop("author", "alice"),
            session_id=fields.pop("session_id", "s1"),
            **fields,
        )
    return _make


@pytest.fixture
def make_record():
    def _make(
        number=1,
        title="Cache sessions in Redis",
        triggers=("session", "redis"),
        date=T0,
        category="performance",
        files=("src/auth/session.ts",),
        **fields,
    ):
        return DecisionRecord(
            id=f"ADR-{number:03d}",
            title=title,
            date=date,
            decision=fields.pop("decision", title),
            triggers=list(triggers),
            confidence=fields.pop("confidence", 0.9),
            related=Related(files=list(files), category=category, concepts=list(triggers)),
            **fields,
        )
    return _make
