# tests/test_mcp_server.py
import pytest

from fastmcp import Client
from fastmcp.exceptions import ToolError

from ctxd.common.decision_store import DecisionStore
from ctxd.common.intent_log import IntentLog
from ctxd.common.snapshot_store import SnapshotStore
from ctxd.mcp.server import MCPServerApp
from ctxd.retriever.context_api import ContextRetriever
from ctxd.retriever.semantic_index import SemanticIndexBuilder


def result_data(result):
    return getattr(result, "data", None) or getattr(result, "structured", None) \
        or getattr(result, "structured_content", None)


@pytest.fixture
def retriever(paths, make_interaction, make_record):
    intent_log = IntentLog(paths.intents_dir, paths.warm_dir)
    intent_log.append_interaction(make_interaction(number=1))
    intent_log.append_interaction(make_interaction(number=2, files=("src/cart/checkout.ts",), concepts=("payment",)))
    store = DecisionStore(paths.decisions_dir)
    store.create(lambda record_id: make_record())
    store.create(lambda record_id: make_record(number=2, title="Stripe checkout", triggers=("payment",)))
    return ContextRetriever(
        paths=paths,
        intent_log=intent_log,
        decision_store=store,
        snapshot_store=SnapshotStore(paths.lock_path),
        index_builder=SemanticIndexBuilder(),
    )


@pytest.fixture
def mcp_server(retriever):
    """FastMCP instance over a populated project"""
    app = MCPServerApp(retriever, mcp_server_name="test-ctxd")
    return app.mcp


@pytest.mark.asyncio
async def test_tools_registered(mcp_server):
    async with Client(mcp_server) as client:
        tools = await client.list_tools()
        names = {t.name for t in tools}
        assert names == {"get_context", "search_decisions", "get_decision", "get_intent_for_file", "context_status"}
        # Nothing here may write project state
        assert all(t.annotations.readOnlyHint for t in tools)


@pytest.mark.asyncio
async def test_get_context_rebuilds_missing_snapshot(mcp_server, paths):
    assert not paths.lock_path.exists()
    async with Client(mcp_server) as client:
        data = result_data(await client.call_tool("get_context", {}))
    assert data["ok"] is True
    assert [d["id"] for d in data["results"]["decisions"]] == ["ADR-001", "ADR-002"]
    assert data["tokens"] > 0
    assert paths.lock_path.exists()


@pytest.mark.asyncio
async def test_get_context_rejects_non_positive_budget(mcp_server):
    async with Client(mcp_server) as client:
        with pytest.raises(ToolError):
            await client.call_tool("get_context", {"max_tokens": 0})
        with pytest.raises(ToolError):
            await client.call_tool("get_context", {"max_tokens": 3})


@pytest.mark.asyncio
async def test_search_decisions(mcp_server):
    async with Client(mcp_server) as client:
        data = result_data(await client.call_tool("search_decisions", {"keyword": "payment"}))
        assert data["ok"] is True
        assert data["count"] == 1
        assert data["results"][0]["id"] == "ADR-002"

        with pytest.raises(ToolError):
            await client.call_tool("search_decisions", {"keyword": "  "})


@pytest.mark.asyncio
async def test_get_decision(mcp_server):
    async with Client(mcp_server) as client:
        found = result_data(await client.call_tool("get_decision", {"record_id": "ADR-001"}))
        missing = result_data(await client.call_tool("get_decision", {"record_id": "ADR-404"}))
    assert found["ok"] is True
    assert found["results"]["title"] == "Cache sessions in Redis"
    assert missing == {"ok": False, "error": "Decision ADR-404 not found"}


@pytest.mark.asyncio
async def test_get_intent_for_file(mcp_server):
    async with Client(mcp_server) as client:
        data = result_data(await client.call_tool("get_intent_for_file", {"path": "./src/auth/session.ts"}))
        assert data["count"] == 1
        assert data["results"][0]["id"] == "int_0001"

        globbed = result_data(await client.call_tool("get_intent_for_file", {"path": "src/*/*.ts"}))
        assert [r["id"] for r in globbed["results"]] == ["int_0002", "int_0001"]

        with pytest.raises(ToolError):
            await client.call_tool("get_intent_for_file", {"path": ""})


@pytest.mark.asyncio
async def test_context_status(mcp_server):
    async with Client(mcp_server) as client:
        before = result_data(await client.call_tool("context_status", {}))
        await client.call_tool("get_context", {})
        after = result_data(await client.call_tool("context_status", {}))
    assert before["ok"] is True
    assert before["snapshot_exists"] is False
    assert before["decisions"] == 2
    assert after["snapshot_valid"] is True
    assert after["checksum"]
