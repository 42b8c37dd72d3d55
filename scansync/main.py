#!/usr/bin/env python3
import time
import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from scansync.config import CORS_ORIGINS, DATABASE_URL, DEBUG_MODE, PORT, configure_logging
from scansync.pubsub_utils import subscribe, unsubscribe, _sse, _heartbeat
from scansync.schemas import validation_details
from scansync.store import InMemoryStore

# --- Import Routers from Modular Files ---
from scansync.routes_counts import router as counts_router
from scansync.routes_products import router as products_router
from scansync.routes_sessions import router as sessions_router

log = logging.getLogger(__name__)


def default_store():
    if DATABASE_URL:
        from scansync.db_utils import PostgresStore
        return PostgresStore(DATABASE_URL)
    log.warning("DATABASE_URL not set; using the in-memory store (data is lost on restart)")
    return InMemoryStore()


def create_app(store=None) -> FastAPI:
    """
    Build the API around an explicit store instance. Tests pass an
    InMemoryStore; production falls back to Postgres when DATABASE_URL is set.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Server starting (debug=%s, store=%s)", DEBUG_MODE, type(app.state.store).__name__)
        yield
        close = getattr(app.state.store, "close", None)
        if close:
            close()
        log.info("Server stopped")

    app = FastAPI(title="ScanSync API", lifespan=lifespan)
    app.state.store = store if store is not None else default_store()

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    # --- CORS Middleware Configuration ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin for origin in CORS_ORIGINS if origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Sync-Status", "X-Count-ID", "X-Batch-Size", "X-Processed", "X-Failed", "X-Conflicts"],
    )

    # --- Error bodies: {"error": ...} everywhere ---
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        body = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
        return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            {"error": "Validation error", "details": validation_details(exc.errors())},
            status_code=400,
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    # --- Include Routers into the Application ---
    app.include_router(counts_router, tags=["Inventory Counts"])
    app.include_router(products_router, tags=["Products"])
    app.include_router(sessions_router, tags=["Counting Sessions"])

    @app.get("/health", tags=["Health"])
    def health():
        """Connectivity probe used by device sync agents."""
        return {"ok": True, "ts": time.time(), "debug": DEBUG_MODE}

    @app.get("/events", tags=["Events"])
    async def events_list():
        """Server-Sent Events: count/product/session changes for live dashboards."""
        q = subscribe()

        async def gen():
            try:
                yield b": ok\n\n"  # Initial comment to keep connection alive
                while True:
                    try:
                        evt = await asyncio.wait_for(q.get(), timeout=15)
                    except asyncio.TimeoutError:
                        yield _heartbeat()
                        continue
                    yield _sse(evt["type"], evt["data"])
            except asyncio.CancelledError:
                return
            finally:
                unsubscribe(q)

        return StreamingResponse(gen(), media_type="text/event-stream")

    return app


configure_logging()
app = create_app()


# --- Application Runner ---
if __name__ == "__main__":
    uvicorn.run("scansync.main:app", host="0.0.0.0", port=PORT, reload=DEBUG_MODE)
