"""FastAPI entrypoint for the Memento backend."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app_state import MementoEngine
from errors import CaptureFailure, InvalidQuery, MementoError, SearchFailure, StorageFailure
from models import (
    DocumentPayload,
    IngestRequest,
    IngestResponsePayload,
    InteractionReportRequest,
    SearchRequest,
    SearchResponsePayload,
    normalize_url,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = {
    InvalidQuery: 400,
    CaptureFailure: 400,
    SearchFailure: 500,
    StorageFailure: 503,
}


def _status_for(exc: MementoError) -> int:
    for error_type, status in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.engine is None:
        app.state.engine = MementoEngine()
    app.state.engine.start()
    try:
        yield
    finally:
        app.state.engine.stop()


def create_app(engine: Optional[MementoEngine] = None) -> FastAPI:
    app = FastAPI(
        title="Memento Backend",
        description="Local hybrid search over captured web pages",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MementoError)
    async def memento_error_handler(request: Request, exc: MementoError):
        status = _status_for(exc)
        if status >= 500:
            logger.error("%s: %s", exc.kind, exc)
        return JSONResponse(status_code=status, content={"error": exc.kind, "detail": str(exc)})

    def current(request: Request) -> MementoEngine:
        engine = request.app.state.engine
        if engine is None:
            raise HTTPException(status_code=503, detail="Engine not started")
        return engine

    @app.get("/", tags=["health"])
    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok", "message": "Memento backend is running"}

    @app.get("/stats", tags=["health"])
    async def stats(request: Request):
        return await asyncio.to_thread(current(request).stats)

    @app.get("/search", response_model=SearchResponsePayload, tags=["search"])
    async def search_get(
        request: Request,
        q: str = "",
        mode: str = "hybrid",
        limit: int = 10,
        include_related: bool = False,
    ):
        hits = await asyncio.to_thread(
            current(request).search, q, mode, limit, include_related
        )
        return SearchResponsePayload(results=hits)

    @app.post("/search", response_model=SearchResponsePayload, tags=["search"])
    async def search_post(request: Request, payload: SearchRequest):
        hits = await asyncio.to_thread(
            current(request).search,
            payload.query,
            payload.mode,
            payload.limit,
            payload.include_related,
        )
        return SearchResponsePayload(results=hits)

    @app.post("/ingest", response_model=IngestResponsePayload, tags=["ingest"])
    async def ingest(request: Request, payload: IngestRequest):
        record = await asyncio.to_thread(current(request).ingest, payload)
        return IngestResponsePayload(id=record.id, state=record.state)

    @app.post("/interaction", tags=["ingest"])
    async def interaction(request: Request, payload: InteractionReportRequest):
        record = await asyncio.to_thread(current(request).report_interaction, payload.url, payload)
        return {"success": True, "id": normalize_url(payload.url), "elements": len(record.elements)}

    @app.get("/documents/{doc_id:path}", response_model=DocumentPayload, tags=["documents"])
    async def get_document(request: Request, doc_id: str):
        try:
            record = await asyncio.to_thread(current(request).store.get, normalize_url(doc_id))
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail="Document not found")
        return DocumentPayload(
            id=record.id,
            url=record.url,
            title=record.title,
            timestamp=record.timestamp,
            state=record.state,
            content=record.content,
            error=record.error,
        )

    @app.get("/attention/{doc_id:path}", tags=["documents"])
    async def get_attention(request: Request, doc_id: str, limit: int = 5):
        engine = current(request)
        doc_id = normalize_url(doc_id)
        record = engine.attention.get(doc_id)
        if record is None:
            raise HTTPException(status_code=404, detail="No attention data")
        payload = record.to_dict()
        payload["id"] = doc_id
        payload["engagement"] = engine.attention.engagement(doc_id)
        payload["top_elements"] = [
            element.element_path for element in engine.attention.top_elements(doc_id, limit)
        ]
        return payload

    @app.get("/journey", tags=["journey"])
    async def journey(request: Request):
        return current(request).journey.snapshot()

    @app.get("/journey/recent", tags=["journey"])
    async def journey_recent(request: Request, limit: int = 10):
        return {"pages": current(request).journey.recent_visits(limit)}

    @app.get("/journey/most-visited", tags=["journey"])
    async def journey_most_visited(request: Request, limit: int = 10):
        return {"pages": current(request).journey.most_visited(limit)}

    @app.get("/journey/related", tags=["journey"])
    async def journey_related(request: Request, url: str, limit: int = 5):
        return {"url": url, "related": current(request).journey.related(url, limit)}

    @app.post("/admin/reconcile", tags=["admin"])
    async def reconcile(request: Request):
        report = await asyncio.to_thread(current(request).reconcile)
        return {
            "success": True,
            "indexed": report.indexed,
            "skipped": report.skipped,
            "failed": report.failed,
        }

    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("MEMENTO_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        app,
        host=os.environ.get("MEMENTO_HOST", "127.0.0.1"),
        port=int(os.environ.get("MEMENTO_PORT", "8080")),
    )
