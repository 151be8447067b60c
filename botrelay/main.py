# botrelay/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from botrelay.core.config import CORS_ORIGINS, LOG_LEVEL
from botrelay.core.database import SessionLocal, engine, init_db
from botrelay.core.errors import RelayError
from botrelay.core.logging import get_logger, setup_logging
from botrelay.core.upstream import UpstreamClient
from botrelay.routers import chat, proxy

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(LOG_LEVEL)
    await init_db(engine)
    # One upstream client per process, shared by every request.
    app.state.session_factory = SessionLocal
    app.state.upstream = UpstreamClient()
    logger.info("botrelay_started")
    try:
        yield
    finally:
        await app.state.upstream.aclose()
        await engine.dispose()
        logger.info("botrelay_stopped")


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, status=exc.status_code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(lifespan=lifespan) -> FastAPI:
    app = FastAPI(title="botrelay", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RelayError, relay_error_handler)

    # Include routers
    app.include_router(chat.router, prefix="/chat", tags=["Chat"])
    app.include_router(proxy.router, prefix="/v1", tags=["Upstream proxy"])

    @app.get("/health", include_in_schema=False)
    async def health():
        return {"ok": True}

    return app


app = create_app()
