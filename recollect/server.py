"""
Recollect Server

FastAPI surface over the PersonalizationEngine for chat backends.

Endpoints:
- GET /health: Health check
- POST /context: Personal context for a message
- POST /invalidate/entity: Drop cached results that depend on an entity
- POST /invalidate/chunk: Drop cached results built from a chunk
- POST /invalidate/all: Clear the cache
- GET /stats: Cache statistics
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .common.config import ensure_directories, load_config
from .retriever.engine import STORAGE_UNAVAILABLE, Credentials, PersonalizationEngine, QueryResult

logger = logging.getLogger("recollect.server")


# =============================================================================
# Request/Response Models
# =============================================================================

class ContextRequest(BaseModel):
    """Context request from the chat backend"""
    message: str
    user_scope: str = Field(..., min_length=1)
    classification_api_key: Optional[str] = None
    embedding_api_key: Optional[str] = None

    def credentials(self) -> Optional[Credentials]:
        creds = Credentials(
            classification_api_key=self.classification_api_key,
            embedding_api_key=self.embedding_api_key,
        )
        return None if creds.is_empty else creds


class EntityInvalidation(BaseModel):
    name: str = Field(..., min_length=1)


class ChunkInvalidation(BaseModel):
    chunk_id: str = Field(..., min_length=1)


class InvalidationResponse(BaseModel):
    status: str = "invalidated"
    removed: int


# =============================================================================
# App
# =============================================================================

def create_app(engine: Optional[PersonalizationEngine] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        engine: Pre-built engine (tests, embedding hosts). When None, one is
            created from configuration at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize the engine on startup"""
        if app.state.engine is None:
            ensure_directories()
            config = load_config()
            logger.info(
                "Loaded config (provider: %s, data dir: %s)",
                config.llm.provider,
                config.storage.data_dir,
            )
            app.state.engine = PersonalizationEngine.from_config(config)
        await app.state.engine.initialize()
        logger.info("Recollect ready")

        yield

        logger.info("Shutting down")

    app = FastAPI(
        title="Recollect",
        description="Personal context retrieval with a semantic cache",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint"""
        current = request.app.state.engine
        return {
            "status": "healthy",
            "service": "recollect",
            "initialized": current is not None,
            "cache_ready": bool(current and current.cache and current.cache.is_ready),
        }

    @app.post("/context", response_model=QueryResult)
    async def context(payload: ContextRequest, request: Request):
        """Retrieve personal context for a message"""
        current = _require_engine(request)
        result = await current.process_query(
            payload.message,
            payload.user_scope,
            credentials=payload.credentials(),
        )
        if result.error == STORAGE_UNAVAILABLE:
            return JSONResponse(status_code=503, content=result.model_dump(mode="json"))
        return result

    @app.post("/invalidate/entity", response_model=InvalidationResponse)
    async def invalidate_entity(payload: EntityInvalidation, request: Request):
        removed = await _require_engine(request).invalidate_by_entity(payload.name)
        return InvalidationResponse(removed=removed)

    @app.post("/invalidate/chunk", response_model=InvalidationResponse)
    async def invalidate_chunk(payload: ChunkInvalidation, request: Request):
        removed = await _require_engine(request).invalidate_by_chunk(payload.chunk_id)
        return InvalidationResponse(removed=removed)

    @app.post("/invalidate/all", response_model=InvalidationResponse)
    async def invalidate_all(request: Request):
        removed = await _require_engine(request).invalidate_all()
        return InvalidationResponse(removed=removed)

    @app.get("/stats")
    async def stats(request: Request):
        """Get cache statistics"""
        current = _require_engine(request)
        stats = {
            "service": "recollect",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if current.cache is not None:
            stats["cache"] = await current.cache.stats()
        return stats

    return app


def _require_engine(request: Request) -> PersonalizationEngine:
    engine = request.app.state.engine
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


app = create_app()


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the Recollect server"""
    import uvicorn

    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config()
    logger.info("Starting server on %s:%d", config.server.host, config.server.port)
    uvicorn.run(
        "recollect.server:app",
        host=config.server.host,
        port=config.server.port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
