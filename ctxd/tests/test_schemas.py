"""Tests for event, interaction, decision record and snapshot models."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from ctxd.common.schemas import (
    BudgetAllocation,
    DecisionIndexEntry,
    EventSource,
    InferredIntent,
    IntentCategory,
    Interaction,
    ProjectInfo,
    RawEvent,
    Snapshot,
    Status,
    next_record_id,
    parse_record_number,
    render_adr_markdown,
)


class TestRawEvent:
    def test_naive_timestamp_is_utc(self):
        event = RawEvent(source=EventSource.TOOL, payload={"prompt": "hi"}, timestamp=datetime(2026, 1, 1, 12))
        assert event.timestamp.tzinfo == timezone.utc
        assert event.prompt == "hi"

    def test_offset_timestamp_is_converted(self):
        tz = timezone(timedelta(hours=2))
        event = RawEvent(source=EventSource.FILE, payload={"path": "a.py"}, timestamp=datetime(2026, 1, 1, 12, tzinfo=tz))
        assert event.timestamp.hour == 10

    def test_frozen(self):
        event = RawEvent(source=EventSource.FILE, payload={"path": "a.py"}, timestamp=datetime(2026, 1, 1))
        with pytest.raises(ValidationError):
            event.tool = "cursor"


class TestInteraction:
    def test_files_are_deduplicated_and_sorted(self, make_interaction):
        interaction = make_interaction(files=("b.py", "a.py", "b.py"))
        assert interaction.files == ["a.py", "b.py"]

    def test_log_record_round_trip(self, make_interaction):
        interaction = make_interaction(commit_ref="abc1234", link_score=0.74)
        record = interaction.to_log_record()
        assert record["commit"] == "abc1234"
        assert record["session"] == "s1"
        assert Interaction.from_log_record(record) == interaction

    def test_apply_amendment(self, make_interaction):
        interaction = make_interaction()
        amended = interaction.apply_amendment({"amends": interaction.id, "commit": "def5678", "link_score": 0.8})
        assert amended.commit_ref == "def5678"
        assert amended.link_score == 0.8
        assert interaction.commit_ref is None

    def test_number(self, make_interaction):
        assert make_interaction(number=42).number == 42

    def test_intent_confidence_bounds(self):
        with pytest.raises(ValidationError):
            InferredIntent(category=IntentCategory.FEATURE, confidence=1.2)

    def test_intent_concepts_normalized(self):
        intent = InferredIntent(category="bugfix", confidence=0.5, concepts=["Redis", " redis ", "Auth", ""])
        assert intent.concepts == ["auth", "redis"]


class TestDecisionRecord:
    def test_next_record_id(self):
        assert next_record_id([]) == "ADR-001"
        assert next_record_id(["ADR-001", "ADR-007", "junk"]) == "ADR-008"
        assert parse_record_number("ADR-012") == 12
        assert parse_record_number("adr-1") is None

    def test_extend_triggers_returns_added(self, make_record):
        record = make_record(triggers=("redis", "session"))
        assert record.extend_triggers(["Session", "cache"]) == ["cache"]
        assert record.triggers == ["cache", "redis", "session"]

    def test_supersede(self, make_record):
        record = make_record()
        record.supersede("ADR-002")
        assert record.status == Status.SUPERSEDED
        assert record.superseded_by == "ADR-002"
        assert not record.is_active

    def test_supersede_requires_accepted(self, make_record):
        record = make_record(status=Status.DRAFT)
        with pytest.raises(ValueError, match="only accepted"):
            record.supersede("ADR-002")

    def test_cannot_supersede_itself(self, make_record):
        with pytest.raises(ValueError, match="itself"):
            make_record().supersede("ADR-001")

    def test_accept_draft(self, make_record):
        record = make_record(status=Status.DRAFT)
        record.accept()
        assert record.status == Status.ACCEPTED
        with pytest.raises(ValueError):
            record.accept()

    def test_render_markdown(self, make_record):
        record = make_record(alternatives=["memcached"], prompt_excerpt="Login is slow")
        record.supersede("ADR-004")
        text = render_adr_markdown(record)
        assert text.startswith("# ADR-001: Cache sessions in Redis")
        assert "**Status**: Superseded (by ADR-004)" in text
        assert "| memcached | Not chosen |" in text
        assert "- `src/auth/session.ts`" in text
        assert "> Login is slow" in text


class TestSnapshot:
    @pytest.fixture
    def snapshot(self):
        return Snapshot(
            project=ProjectInfo(name="shop"),
            stack=["node"],
            decisions=[DecisionIndexEntry(id="ADR-001", title="Cache sessions", triggers=["redis"])],
            budget_allocation=BudgetAllocation(total=4000),
        ).with_checksum()

    def test_checksum_ignores_generated_at(self, snapshot):
        later = snapshot.model_copy(update={"generated_at": snapshot.generated_at + timedelta(hours=1)})
        assert later.compute_checksum() == snapshot.checksum
        assert later.verify()

    def test_tampered_section_fails_verification(self, snapshot):
        tampered = snapshot.model_copy(update={"stack": ["python"]})
        assert not tampered.verify()

    def test_lock_text_round_trip(self, snapshot):
        restored = Snapshot.from_lock_text(snapshot.to_lock_text())
        assert restored.verify()
        assert restored.checksum == snapshot.checksum
