from __future__ import annotations

from datetime import datetime, timezone
from dotenv import load_dotenv
import logging
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.chat import router as chat_router
from .routers.media import router as media_router
from .routers.usage import router as usage_router
from .routers.preferences import router as preferences_router
from ..config import get_settings
from ..observability.metrics import metrics_middleware_factory

# Run: uvicorn src.partner.api.main:app --reload
load_dotenv()  # Load environment variables from .env if present (GEMINI_API_KEY, PARTNER_*, etc.)

app = FastAPI(title="SM AI Partner API", version="0.1.0")

logging.basicConfig(level=logging.INFO)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

# Routers
app.include_router(chat_router)
app.include_router(media_router)
app.include_router(usage_router)
app.include_router(preferences_router)

# Also expose the same routers under /api
app.include_router(chat_router, prefix="/api")
app.include_router(media_router, prefix="/api")
app.include_router(usage_router, prefix="/api")
app.include_router(preferences_router, prefix="/api")

# CORS (for a local web UI dev server)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _health() -> dict:
    settings = get_settings()
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "storage": settings.storage_impl,
            "audio_sink": settings.audio_sink,
        },
    }


@app.get("/")
def root():
    return {"name": "SM AI Partner API", "version": "0.1.0"}


@app.get("/health")
def health():
    return _health()


@app.get("/metrics")
def metrics() -> Response:
    # Expose Prometheus metrics
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/api/health")
def api_health():
    return _health()
