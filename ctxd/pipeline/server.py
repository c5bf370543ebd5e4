"""
ctxd Server

FastAPI server that accepts capture events and exposes pipeline control and
the retrieval contract over HTTP.

Endpoints:
- GET  /health: Health check
- POST /events: Input-contract object or list (parse, redact, enqueue only)
- POST /pause, POST /resume: Stop / restart accepting new events
- GET  /stats: Pipeline counters
- GET  /orphans: Pending orphan Interactions with their candidates
- POST /orphans/{interaction_id}/resolve: Manual commit link
- POST /orphans/{interaction_id}/dismiss: Drop an orphan from review
- POST /snapshot/rebuild: Rebuild context.lock now
- POST /archive: Tier old logs (hot -> warm -> cold)
- GET  /context: Snapshot, optionally truncated to max_tokens
- GET  /decisions: All decisions, or those matching ``q``
- GET  /intents: Interactions, optionally for one file

Processing runs in a background task started by the lifespan; request
handlers never wait on classification, linking or synthesis.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..common.config import load_config
from ..common.errors import CtxdError, WriteConflict
from ..retriever.context_api import ContextRetriever
from .daemon import ContextPipeline

logger = logging.getLogger("ctxd.pipeline.server")


class ResolveRequest(BaseModel):
    commit_sha: str = Field(..., min_length=4)


class ArchiveRequest(BaseModel):
    older_than_days: Optional[int] = Field(None, ge=0)


def build_retriever(pipeline: ContextPipeline) -> ContextRetriever:
    return ContextRetriever(
        paths=pipeline.paths,
        intent_log=pipeline.intent_log,
        decision_store=pipeline.decision_store,
        snapshot_store=pipeline.snapshot_store,
        index_builder=pipeline.index_builder,
    )


def create_app(pipeline: Optional[ContextPipeline] = None, run_consumer: bool = True) -> FastAPI:
    """Build the app. Without a pipeline one is created from config at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting up...")
        if app.state.pipeline is None:
            app.state.pipeline = ContextPipeline.from_config(load_config())
        app.state.retriever = build_retriever(app.state.pipeline)
        logger.info("Project root: %s", app.state.pipeline.paths.root)

        consumer = None
        if run_consumer:
            consumer = asyncio.create_task(app.state.pipeline.run())
        logger.info("Ready to receive events")

        yield

        logger.info("Shutting down...")
        if consumer is not None:
            app.state.pipeline.stop()
            await consumer

    app = FastAPI(
        title="ctxd",
        description="Intent correlation and semantic snapshot daemon",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.retriever = build_retriever(pipeline) if pipeline is not None else None

    @app.exception_handler(WriteConflict)
    async def write_conflict_handler(request: Request, exc: WriteConflict):
        return JSONResponse(status_code=409, content={"ok": False, "error": str(exc)})

    def _pipeline() -> ContextPipeline:
        if app.state.pipeline is None:
            raise HTTPException(status_code=503, detail="Pipeline not initialized")
        return app.state.pipeline

    def _retriever() -> ContextRetriever:
        if app.state.retriever is None:
            raise HTTPException(status_code=503, detail="Retriever not initialized")
        return app.state.retriever

    # =========================================================================
    # Capture
    # =========================================================================

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        pipeline = app.state.pipeline
        return {
            "status": "healthy",
            "service": "ctxd",
            "initialized": pipeline is not None,
            "paused": pipeline.buffer.paused if pipeline else None,
            "inference_backend": pipeline.classifier.backend is not None if pipeline else False,
        }

    @app.post("/events")
    async def post_events(body: Any = Body(...)):
        """Accept one input-contract object or a list of them"""
        pipeline = _pipeline()
        items = body if isinstance(body, list) else [body]
        accepted = sum(pipeline.submit_input(item) for item in items)
        return {"ok": True, "received": len(items), "accepted": accepted, "paused": pipeline.buffer.paused}

    @app.post("/pause")
    async def pause():
        _pipeline().pause()
        return {"ok": True, "paused": True}

    @app.post("/resume")
    async def resume():
        _pipeline().resume()
        return {"ok": True, "paused": False}

    @app.get("/stats")
    async def get_stats():
        return _pipeline().get_stats()

    # =========================================================================
    # Orphans
    # =========================================================================

    @app.get("/orphans")
    async def get_orphans():
        pending = _pipeline().orphans.get_pending()
        return {
            "pending_count": len(pending),
            "items": [
                {
                    "interaction_id": item.interaction_id,
                    "created_at": item.created_at,
                    "prompt": item.interaction_json.get("prompt", ""),
                    "files": item.interaction_json.get("files", []),
                    "best_score": item.best_score,
                    "candidates": item.candidates,
                }
                for item in pending
            ],
        }

    @app.post("/orphans/{interaction_id}/resolve")
    async def resolve_orphan(interaction_id: str, request: ResolveRequest):
        try:
            link = _pipeline().resolve_orphan(interaction_id, request.commit_sha)
        except KeyError:
            raise HTTPException(status_code=404, detail="Orphan not found")
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"ok": True, "link": link.model_dump(mode="json")}

    @app.post("/orphans/{interaction_id}/dismiss")
    async def dismiss_orphan(interaction_id: str):
        try:
            _pipeline().orphans.dismiss(interaction_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Orphan not found")
        return {"ok": True, "interaction_id": interaction_id}

    # =========================================================================
    # Snapshot and retention
    # =========================================================================

    @app.post("/snapshot/rebuild")
    async def rebuild_snapshot():
        snapshot = await _pipeline().rebuild_snapshot()
        return {
            "ok": True,
            "checksum": snapshot.checksum,
            "decisions": len(snapshot.decisions),
            "concepts": len(snapshot.semantic_index),
            "budget_allocation": snapshot.budget_allocation.model_dump(),
        }

    @app.post("/archive")
    async def archive(request: Optional[ArchiveRequest] = None):
        older_than = request.older_than_days if request else None
        try:
            result = await _pipeline().archive(older_than)
        except CtxdError as e:
            return JSONResponse(status_code=500, content={"ok": False, "error": str(e)})
        return {"ok": True, **result.to_dict()}

    # =========================================================================
    # Retrieval
    # =========================================================================

    @app.get("/context")
    async def get_context(max_tokens: Optional[int] = Query(None, gt=0)):
        try:
            snapshot = await asyncio.to_thread(_retriever().get_context, max_tokens)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return snapshot.model_dump(mode="json")

    @app.get("/decisions")
    async def get_decisions(q: Optional[str] = None):
        retriever = _retriever()
        records = retriever.search_decisions(q) if q else retriever.decision_store.load_all()
        return {"count": len(records), "decisions": [r.model_dump(mode="json") for r in records]}

    @app.get("/intents")
    async def get_intents(path: Optional[str] = None, limit: int = Query(50, gt=0, le=1000)):
        retriever = _retriever()
        if path:
            interactions = retriever.get_intent_for_file(path)
        else:
            interactions = sorted(
                retriever.intent_log.load_interactions(),
                key=lambda i: (i.timestamp, i.number),
                reverse=True,
            )
        return {
            "count": len(interactions),
            "interactions": [i.to_log_record() for i in interactions[:limit]],
        }

    return app


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the ctxd server"""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config()
    app = create_app(ContextPipeline.from_config(config))

    logger.info("Starting server on %s:%d", config.server.host, config.server.port)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
