"""FastAPI application for issue-bridge."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from issue_bridge.config import settings
from issue_bridge.database import init_db, close_db
from issue_bridge.exceptions import BridgeError
from issue_bridge.routes.admin import router as admin_router
from issue_bridge.routes.dead_letters import router as dead_letters_router
from issue_bridge.routes.metrics import router as metrics_router
from issue_bridge.routes.triage import router as triage_router
from issue_bridge.routes.webhooks import router as webhooks_router

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("issue-bridge starting up")
    await init_db()
    yield
    logger.info("issue-bridge shutting down")
    await close_db()


app = FastAPI(
    title="Issue Bridge",
    description="Turns Sentry issue alerts into routed, rate-limited tickets",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BridgeError)
async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.__class__.__name__, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.__class__.__name__, "message": exc.message, "details": exc.details},
    )


app.include_router(webhooks_router, prefix=settings.api_prefix)
app.include_router(triage_router, prefix=settings.api_prefix)
app.include_router(dead_letters_router, prefix=settings.api_prefix)
app.include_router(metrics_router, prefix=settings.api_prefix)
app.include_router(admin_router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "issue-bridge"}
