"""FastAPI application exposing search, chunk and document retrieval."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncIterator, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from refdocs.config import AppConfig
from refdocs.errors import DocsError
from refdocs.models import RefreshReport
from refdocs.service import DocsService

LOGGER = logging.getLogger(__name__)

STATUS_BY_KIND: Dict[str, int] = {
    "fetch_failed": 502,
    "cache_inconsistency": 500,
    "dimension_mismatch": 500,
    "invalid_chunk": 400,
    "batch_write": 500,
    "invalid_query": 400,
    "not_found": 404,
}


class SearchPayload(BaseModel):
    query: str
    doc_type: str = "all"
    context_depth: int = 1
    include_hierarchy: bool = True
    package: str | None = None
    limit: int | None = None


class RefreshPayload(BaseModel):
    keys: List[str] | None = None


def _report_dict(report: RefreshReport) -> Dict[str, Any]:
    data = asdict(report)
    data["ok"] = report.ok
    return data


def create_app(config: AppConfig | None = None, service: DocsService | None = None) -> FastAPI:
    """Build the API around ``service``, or around one created from ``config`` at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
        if service is not None:
            app.state.service = service
            yield
            return
        app.state.service = DocsService.from_config(config or AppConfig.from_env())
        try:
            yield
        finally:
            await app.state.service.aclose()

    app = FastAPI(title="refdocs", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DocsError)
    async def docs_error_handler(request: Request, exc: DocsError) -> JSONResponse:
        status = STATUS_BY_KIND.get(exc.kind, 500)
        if status >= 500:
            LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content={"error": exc.to_dict()})

    def _service(request: Request) -> DocsService:
        return request.app.state.service

    @app.post("/search")
    async def search_documents(payload: SearchPayload, request: Request) -> Dict[str, Any]:
        results = await _service(request).search(
            payload.query,
            doc_type=payload.doc_type,
            context_depth=payload.context_depth,
            include_hierarchy=payload.include_hierarchy,
            package_filter=payload.package,
            limit=payload.limit,
        )
        return {"results": [asdict(result) for result in results]}

    @app.get("/documents")
    async def list_documents(request: Request) -> Dict[str, Any]:
        """List cached documents with store statistics."""
        service = _service(request)
        return {"documents": await service.list_documents(), "stats": await service.stats()}

    @app.get("/documents/{key:path}")
    async def get_document(key: str, request: Request, compressed: bool = False) -> Dict[str, Any]:
        view = await _service(request).get_document(key, compressed=compressed)
        return asdict(view)

    @app.delete("/documents/{key:path}")
    async def delete_document(key: str, request: Request) -> Dict[str, Any]:
        await _service(request).remove(key)
        return {"status": "ok"}

    @app.get("/chunks/{number}")
    async def get_chunk(
        number: int, key: str, request: Request, chunk_size: int | None = None
    ) -> Dict[str, Any]:
        page = await _service(request).get_chunk(key, number, chunk_size)
        return asdict(page)

    @app.post("/refresh")
    async def refresh_documents(request: Request, payload: RefreshPayload | None = None) -> Dict[str, Any]:
        report = await _service(request).refresh(payload.keys if payload else None)
        report.raise_for_failure()
        return _report_dict(report)

    return app


app = create_app()
