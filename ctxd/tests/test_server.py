"""HTTP API tests against an in-process app (no consumer task)."""

import pytest
from fastapi.testclient import TestClient

from ctxd.common.config import CtxdConfig
from ctxd.pipeline.daemon import ContextPipeline
from ctxd.pipeline.server import create_app


@pytest.fixture
def pipeline(tmp_path):
    root = tmp_path / "shop"
    root.mkdir()
    config = CtxdConfig()
    config.project_root = str(root)
    config.retention.cold_dir = str(tmp_path / "cold")
    return ContextPipeline.from_config(config)


@pytest.fixture
def populated(pipeline, make_interaction, make_record):
    interaction = make_interaction()
    pipeline.intent_log.append_interaction(interaction)
    pipeline.decision_store.create(lambda record_id: make_record())
    pipeline.orphans.add(interaction, [])
    return pipeline


@pytest.fixture
def client(pipeline):
    with TestClient(create_app(pipeline, run_consumer=False)) as client:
        yield client


EVENT = {
    "tool": "claude-code",
    "timestamp": "2026-03-02T10:00:00Z",
    "session": "s1",
    "prompt": "Move session storage to Redis",
    "files": ["src/auth/session.ts"],
}


class TestCapture:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["initialized"] is True
        assert body["paused"] is False
        assert body["inference_backend"] is False

    def test_post_events_enqueues_only(self, client, pipeline):
        response = client.post("/events", json=[EVENT, {"no": "tool"}])
        assert response.status_code == 200
        assert response.json() == {"ok": True, "received": 2, "accepted": 2, "paused": False}
        assert pipeline.buffer.qsize() == 2
        assert pipeline.get_stats()["interactions_processed"] == 0

    def test_single_object_accepted(self, client):
        assert client.post("/events", json=EVENT).json()["accepted"] == 2

    def test_pause_and_resume(self, client):
        assert client.post("/pause").json()["paused"] is True
        assert client.post("/events", json=EVENT).json()["accepted"] == 0
        client.post("/resume")
        assert client.post("/events", json=EVENT).json()["accepted"] == 2

    def test_stats(self, client):
        stats = client.get("/stats").json()
        assert stats["buffer"]["queued"] == 0
        assert stats["last_snapshot_checksum"] is None


class TestOrphans:
    def test_list(self, populated, client):
        body = client.get("/orphans").json()
        assert body["pending_count"] == 1
        item = body["items"][0]
        assert item["interaction_id"] == "int_0001"
        assert item["files"] == ["src/auth/session.ts"]

    def test_resolve(self, populated, client):
        response = client.post("/orphans/int_0001/resolve", json={"commit_sha": "feed123"})
        assert response.status_code == 200
        assert response.json()["link"]["commit_sha"] == "feed123"
        assert client.get("/orphans").json()["pending_count"] == 0

        again = client.post("/orphans/int_0001/resolve", json={"commit_sha": "feed123"})
        assert again.status_code == 409

    def test_resolve_unknown_or_invalid(self, populated, client):
        assert client.post("/orphans/int_0404/resolve", json={"commit_sha": "feed123"}).status_code == 404
        assert client.post("/orphans/int_0001/resolve", json={"commit_sha": "ab"}).status_code == 422

    def test_dismiss(self, populated, client):
        assert client.post("/orphans/int_0001/dismiss").status_code == 200
        assert client.get("/orphans").json()["pending_count"] == 0
        assert client.post("/orphans/int_0404/dismiss").status_code == 404


class TestRetrieval:
    def test_context_builds_snapshot_on_first_read(self, populated, client):
        response = client.get("/context")
        assert response.status_code == 200
        body = response.json()
        assert [d["id"] for d in body["decisions"]] == ["ADR-001"]
        assert body["checksum"]
        assert populated.paths.lock_path.exists()

    def test_context_budget_validation(self, populated, client):
        assert client.get("/context", params={"max_tokens": 0}).status_code == 422
        assert client.get("/context", params={"max_tokens": 5}).status_code == 400

    def test_decisions(self, populated, client):
        assert client.get("/decisions").json()["count"] == 1
        assert client.get("/decisions", params={"q": "redis"}).json()["decisions"][0]["id"] == "ADR-001"
        assert client.get("/decisions", params={"q": "kafka"}).json()["count"] == 0

    def test_intents_for_file(self, populated, client):
        body = client.get("/intents", params={"path": "./src/auth/session.ts"}).json()
        assert body["count"] == 1
        assert body["interactions"][0]["id"] == "int_0001"
        assert client.get("/intents", params={"path": "src/auth/*.ts"}).json()["count"] == 1
        assert client.get("/intents", params={"path": "docs/x.md"}).json()["count"] == 0
        assert client.get("/intents").json()["count"] == 1

    def test_rebuild_and_archive(self, populated, client):
        body = client.post("/snapshot/rebuild").json()
        assert body["ok"] is True
        assert body["decisions"] == 1
        assert populated.snapshot_store.load().checksum == body["checksum"]

        archived = client.post("/archive").json()
        assert archived["ok"] is True
        assert archived["moved_count"] == 0
