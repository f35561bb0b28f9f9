from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
import os
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.chat import router as chat_router
from .routers.streams import router as streams_router
from ..observability.metrics import metrics_middleware_factory

load_dotenv()  # Load environment variables from .env if present (JWT_SECRET, MONGO_URL, REDIS_URL, ...)

app = FastAPI(title="chatrelay API", version="0.1.0")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

# Routers
app.include_router(chat_router)
app.include_router(streams_router)

# Also expose the same routers under /api; page-teardown beacons post to /api/streams/mark-interrupted
app.include_router(chat_router, prefix="/api")
app.include_router(streams_router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CHATRELAY_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Stream-Id", "X-Message-Id", "X-Regenerating-Message-Id"],
)


def _health() -> dict:
    from ..infrastructure.stream_store import get_stream_store

    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "streams": type(get_stream_store()).__name__,
        },
    }


@app.get("/")
def root():
    return {"name": "chatrelay API", "version": "0.1.0"}


@app.get("/health")
def health():
    return _health()


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/api/health")
def api_health():
    return _health()
