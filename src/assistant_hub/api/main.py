from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
import os
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.assistants import router as assistants_router
from .routers.channel import router as channel_router
from .routers.chat import router as chat_router
from .routers.conversations import router as conversations_router
from ..domain.errors import AssistantHubError
from ..observability.metrics import metrics_middleware_factory

load_dotenv()  # Load environment variables from .env if present (GROQ_API_KEY, OPENAI_API_KEY, etc.)

logger = logging.getLogger("assistant_hub.api")

app = FastAPI(title="Assistant Hub API", version="0.1.0")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())


@app.exception_handler(AssistantHubError)
async def handle_hub_error(request: Request, exc: AssistantHubError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.kind.value)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.kind.value)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# Routers
_ROUTERS = (chat_router, conversations_router, assistants_router, channel_router)
for _router in _ROUTERS:
    app.include_router(_router)
# Also expose the same routers under /api for the Next.js client
for _router in _ROUTERS:
    app.include_router(_router, prefix="/api")

# CORS (for Next.js dev server on localhost:3000)
_origins = [o.strip() for o in os.getenv("ASSISTANT_HUB_CORS_ORIGINS", "").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins or ["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _health_payload() -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": os.getenv("ASSISTANT_HUB_STORE_IMPL", "memory").lower(),
        },
    }


@app.get("/")
def root():
    return {"name": "Assistant Hub API", "version": "0.1.0"}


@app.get("/health")
def health():
    return _health_payload()


@app.get("/metrics")
def metrics() -> Response:
    # Expose Prometheus metrics
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


# API-prefixed convenience routes (kept alongside non-prefixed routes)
@app.get("/api/health")
def api_health():
    return _health_payload()


@app.get("/api/metrics")
def api_metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
