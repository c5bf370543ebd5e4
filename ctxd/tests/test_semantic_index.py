"""Tests for clustering and the token-budgeted snapshot build."""

import json
from datetime import timedelta

import pytest

from ctxd.common.schemas import Constraint, ProjectInfo
from ctxd.retriever.semantic_index import (
    SemanticIndexBuilder,
    decay,
    detect_stack,
    file_glob,
    impact_of,
    load_constraints,
    snapshot_tokens,
)


@pytest.fixture
def builder():
    return SemanticIndexBuilder(project=ProjectInfo(name="shop", description="Online store"), stack=["node"])


@pytest.fixture
def corpus(make_record, make_interaction, t0):
    """Forty decisions and a week of interactions, enough to overflow small budgets"""
    topics = ["redis", "payment", "search", "auth", "queue"]
    decisions = [
        make_record(
            number=n,
            title=f"Decision {n} about {topics[n % 5]} handling and its tradeoffs",
            triggers=(topics[n % 5], f"topic{n}"),
            date=t0 - timedelta(days=n),
            files=tuple(f"src/{topics[n % 5]}/f{k}.ts" for k in range(n % 3)),
        )
        for n in range(1, 41)
    ]
    interactions = [
        make_interaction(
            number=n,
            prompt=f"Work item {n} on the {topics[n % 5]} module",
            at=t0 - timedelta(hours=3 * n),
            concepts=(topics[n % 5],),
            solution=f"Change {n} to {topics[n % 5]}",
        )
        for n in range(1, 31)
    ]
    return decisions, interactions


class TestHelpers:
    def test_detect_stack(self, tmp_path):
        (tmp_path / "package.json").write_text("{}")
        (tmp_path / "tsconfig.json").write_text("{}")
        (tmp_path / "Dockerfile").write_text("FROM node")
        assert detect_stack(tmp_path) == ["node", "typescript", "docker"]

    def test_load_constraints_list_and_object(self, tmp_path):
        path = tmp_path / "constraints.json"
        path.write_text(json.dumps([{"id": "C1", "rule": "No ORMs", "keywords": ["Database"]}]))
        assert load_constraints(path)[0].keywords == ["database"]

        path.write_text(json.dumps({"constraints": [{"id": "C2", "rule": "TypeScript only"}, {"rule": "missing id"}]}))
        assert [c.id for c in load_constraints(path)] == ["C2"]

    def test_load_constraints_missing_or_malformed(self, tmp_path):
        assert load_constraints(tmp_path / "nope.json") == []
        bad = tmp_path / "constraints.json"
        bad.write_text("[oops")
        assert load_constraints(bad) == []

    def test_decay_half_life(self):
        assert decay(timedelta(0), 14) == 1.0
        assert decay(timedelta(days=14), 14) == pytest.approx(0.5)

    def test_impact(self, make_record):
        assert impact_of(make_record(category="security", files=())) == "high"
        assert impact_of(make_record(category="feature", files=("a", "b"))) == "medium"
        assert impact_of(make_record(category="feature", files=("a",))) == "low"

    def test_file_glob(self):
        assert file_glob("src/auth/session.ts") == "src/auth/**"
        assert file_glob("README.md") == "README.md"

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            SemanticIndexBuilder(half_life_days=0)
        with pytest.raises(ValueError):
            SemanticIndexBuilder(decisions_share=0.6, concepts_share=0.3, recent_share=0.2)


class TestClustering:
    def test_shared_keyword_merges_clusters(self, builder, make_record, make_interaction, t0):
        decisions = [
            make_record(number=1, triggers=("redis", "session")),
            make_record(number=2, title="Rate limit with Redis", triggers=("redis", "ratelimit")),
            make_record(number=3, title="Stripe checkout", triggers=("payment",), category="feature"),
        ]
        recent = [make_interaction(number=1, concepts=("session", "login"), at=t0 - timedelta(hours=1))]
        constraints = [Constraint(id="C1", rule="Sessions expire in 24h", keywords=["session"])]

        concepts = builder.cluster(decisions, recent, constraints, now=t0)
        names = [c.concept for c, _ in concepts]
        assert names == ["redis", "payment"]

        redis, relevance = concepts[0]
        assert redis.decisions == ["ADR-001", "ADR-002"]
        assert redis.triggers == ["login", "ratelimit", "redis", "session"]
        assert redis.constraints == ["C1"]
        assert redis.files == ["src/auth/**"]
        assert relevance > concepts[1][1]

    def test_superseded_decisions_excluded(self, builder, make_record, t0):
        old = make_record(number=1)
        old.supersede("ADR-002")
        concepts = builder.cluster([old, make_record(number=2, triggers=("payment",))], [], now=t0)
        assert [c.decisions for c, _ in concepts] == [["ADR-002"]]

    def test_interaction_only_cluster_uses_latest_solution(self, builder, make_interaction, t0):
        recent = [
            make_interaction(number=1, concepts=("search",), solution="Index products", at=t0 - timedelta(hours=5)),
            make_interaction(number=2, concepts=("search",), solution="Add fuzzy matching", at=t0 - timedelta(hours=1)),
        ]
        [(concept, _)] = builder.cluster([], recent, now=t0)
        assert concept.summary == "Add fuzzy matching"
        assert concept.decisions == []

    def test_old_interactions_outside_recent_window_ignored(self, builder, make_interaction, t0):
        stale = make_interaction(concepts=("search",), at=t0 - timedelta(days=30))
        assert builder.cluster([], [stale], now=t0) == []


class TestBuild:
    def test_snapshot_fits_budget_and_verifies(self, builder, corpus, t0):
        decisions, interactions = corpus
        snapshot = builder.build(interactions, decisions, now=t0)

        assert snapshot.verify()
        assert snapshot_tokens(snapshot) <= 4000
        assert snapshot.project.name == "shop"
        assert snapshot.stack == ["node"]
        assert snapshot.decisions[0].id == "ADR-001"
        assert len(snapshot.decisions) < 40
        allocation = snapshot.budget_allocation
        assert (allocation.total, allocation.project, allocation.stack, allocation.constraints) == (4000, 150, 100, 400)
        assert allocation.decisions <= int(0.45 * 4000)

    def test_recent_window_newest_first(self, builder, corpus, t0):
        decisions, interactions = corpus
        recent = builder.build(interactions, decisions, now=t0).recent_window.interactions
        assert recent[0].id == "int_0001"
        assert all(a.ts >= b.ts for a, b in zip(recent, recent[1:]))

    def test_smaller_budget_only_shortens_sections(self, builder, corpus, t0):
        decisions, interactions = corpus
        large = builder.build(interactions, decisions, now=t0, budget=4000)
        small = builder.build(interactions, decisions, now=t0, budget=1500)

        assert snapshot_tokens(small) <= 1500
        for section in ("decisions", "semantic_index"):
            small_ids = [e.model_dump() for e in getattr(small, section)]
            large_ids = [e.model_dump() for e in getattr(large, section)]
            assert small_ids == large_ids[: len(small_ids)]
        small_recent = small.recent_window.interactions
        assert small_recent == large.recent_window.interactions[: len(small_recent)]

    def test_checksum_is_reproducible(self, builder, corpus, t0):
        decisions, interactions = corpus
        first = builder.build(interactions, decisions, now=t0)
        again = builder.build(interactions, decisions, now=t0)
        assert first.checksum == again.checksum

    def test_superseded_not_indexed(self, builder, make_record, t0):
        old = make_record(number=1)
        old.supersede("ADR-002")
        new = make_record(number=2, title="Sessions in Postgres", triggers=("session", "postgres"))
        snapshot = builder.build([], [old, new], now=t0)
        assert [d.id for d in snapshot.decisions] == ["ADR-002"]

    def test_constraints_included(self, builder, t0):
        constraints = [Constraint(id="C1", rule="No new runtime dependencies without review")]
        assert builder.build([], [], constraints, now=t0).constraints == constraints

    def test_budget_too_small(self, builder, t0):
        with pytest.raises(ValueError):
            builder.build([], [], now=t0, budget=20)
        with pytest.raises(ValueError):
            builder.build([], [], now=t0, budget=0)

    def test_fit_to_budget_drops_recent_first(self, builder, corpus, t0):
        decisions, interactions = corpus
        snapshot = builder.build(interactions, decisions, now=t0)
        trimmed = builder.fit_to_budget(snapshot, snapshot_tokens(snapshot) - 50)
        assert len(trimmed.recent_window.interactions) < len(snapshot.recent_window.interactions)
        assert trimmed.decisions == snapshot.decisions
        assert trimmed.verify()

    def test_from_config_detects_stack(self, tmp_path):
        from ctxd.common.config import IndexConfig
        (tmp_path / "pyproject.toml").write_text("")
        builder = SemanticIndexBuilder.from_config(IndexConfig(project_name="api"), tmp_path)
        assert builder.project.name == "api"
        assert builder.stack == ["python"]
