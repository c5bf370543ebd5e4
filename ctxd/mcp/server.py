"""
ctxd MCP Server

Exposes the retrieval contract to downstream agents.

Transport: stdio (stdout carries the protocol; logs go to stderr).

Expected MCP Tool Return Format:
{
    "ok": bool,
    "results": Any,          # Present if ok is True
    "error": str            # Present if ok is False
}
"""

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Annotated, Any, Dict, Optional

from dotenv import load_dotenv
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from mcp.types import ToolAnnotations
from pydantic import Field

from ..common.config import load_config
from ..common.errors import CtxdError
from ..retriever.context_api import ContextRetriever
from ..retriever.semantic_index import snapshot_tokens

logger = logging.getLogger("ctxd.mcp")


class MCPServerApp:
    """
    MCP server over a ContextRetriever.

    Every tool is read-only: a missing or corrupt context.lock is rebuilt
    from the append-only sources, but nothing in the logs or decision store
    is ever changed through this server.
    """

    def __init__(self, retriever: ContextRetriever, mcp_server_name: str = "ctxd") -> None:
        self.retriever = retriever
        self.mcp = FastMCP(name=mcp_server_name)

        # ---------- MCP Tools: Context ---------- #
        @self.mcp.tool(
            name="get_context",
            description=(
                "Load the project's semantic snapshot: project, stack, constraints, "
                "decision index, concept clusters with trigger keywords, and recent work. "
                "Call this first to recover why the code looks the way it does."
            ),
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_get_context(
            max_tokens: Annotated[Optional[int], Field(
                description="truncate the snapshot to at most this many tokens (default: full snapshot)"
            )] = None,
        ) -> Dict[str, Any]:
            if max_tokens is not None and max_tokens <= 0:
                raise ToolError("max_tokens must be positive")
            try:
                snapshot = self.retriever.get_context(max_tokens)
            except ValueError as exc:
                raise ToolError(str(exc)) from exc
            except CtxdError as exc:
                return {"ok": False, "error": str(exc)}
            return {
                "ok": True,
                "results": snapshot.model_dump(mode="json"),
                "tokens": snapshot_tokens(snapshot),
            }

        # ---------- MCP Tools: Decisions ---------- #
        @self.mcp.tool(
            name="search_decisions",
            description=(
                "Find architecture decision records whose triggers, title or decision "
                "text mention every word of the keyword. Active records come first."
            ),
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_search_decisions(
            keyword: Annotated[str, Field(description="keyword or short phrase, e.g. 'redis session'")],
            limit: Annotated[int, Field(description="maximum number of records to return")] = 10,
        ) -> Dict[str, Any]:
            if not keyword or not keyword.strip():
                raise ToolError("keyword must not be empty")
            try:
                records = self.retriever.search_decisions(keyword)
            except CtxdError as exc:
                return {"ok": False, "error": str(exc)}
            return {
                "ok": True,
                "count": len(records),
                "results": [r.model_dump(mode="json") for r in records[:max(1, limit)]],
            }

        @self.mcp.tool(
            name="get_decision",
            description="Load the full body of one decision record by id (e.g. ADR-003).",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_get_decision(
            record_id: Annotated[str, Field(description="decision record id, ADR-NNN")],
        ) -> Dict[str, Any]:
            try:
                record = self.retriever.get_decision(record_id)
            except CtxdError as exc:
                return {"ok": False, "error": str(exc)}
            if record is None:
                return {"ok": False, "error": f"Decision {record_id} not found"}
            return {"ok": True, "results": record.model_dump(mode="json")}

        # ---------- MCP Tools: Intent History ---------- #
        @self.mcp.tool(
            name="get_intent_for_file",
            description=(
                "List the AI interactions that touched a file, newest first, with their "
                "inferred intent and linked commit. Accepts a project-relative path or glob."
            ),
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_get_intent_for_file(
            path: Annotated[str, Field(description="project-relative file path or glob, e.g. 'src/auth/*.ts'")],
            limit: Annotated[int, Field(description="maximum number of interactions to return")] = 20,
        ) -> Dict[str, Any]:
            if not path or not path.strip():
                raise ToolError("path must not be empty")
            interactions = self.retriever.get_intent_for_file(path.strip())
            return {
                "ok": True,
                "count": len(interactions),
                "results": [i.to_log_record() for i in interactions[:max(1, limit)]],
            }

        # ---------- MCP Tools: Status ---------- #
        @self.mcp.tool(
            name="context_status",
            description="Report whether context.lock exists and verifies, and how large it is.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_context_status() -> Dict[str, Any]:
            return {"ok": True, **self.retriever.status()}

    def run(self) -> None:
        """Runs the MCP server using stdio transport."""
        self.mcp.run(transport="stdio")


def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="Run the ctxd MCP server (stdio).")
    parser.add_argument(
        "--server-name",
        default=os.getenv("MCP_SERVER_NAME", "ctxd"),
        help="Advertised MCP server name.",
    )
    parser.add_argument(
        "--project-root",
        default=os.getenv("CTXD_PROJECT_ROOT", os.getcwd()),
        help="Repository whose .context/ directory is served.",
    )
    parser.add_argument(
        "--token-budget",
        type=int,
        default=None,
        help="Override the snapshot token budget used for rebuilds.",
    )
    args = parser.parse_args()

    config = load_config(Path(args.project_root))
    if args.token_budget is not None:
        config.index.token_budget = args.token_budget
    logger.info("Serving context for %s", config.project_root)

    app = MCPServerApp(ContextRetriever.from_config(config), mcp_server_name=args.server_name)

    def _handle_shutdown(signum, frame):
        raise SystemExit(0)
    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
        if sig is not None:
            signal.signal(sig, _handle_shutdown)

    app.run()


if __name__ == "__main__":
    main()
