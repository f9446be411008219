# /agentflow/main.py

import os
import time
import uvicorn
from datetime import datetime
from fastapi import FastAPI, Request, Depends
from fastapi.responses import PlainTextResponse
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from agentflow.config.settings import settings
from agentflow.utils.dependencies import verify_api_key
from agentflow.utils.lifecycle import lifespan
from agentflow.utils.rate_limiter import limiter
from agentflow.routes import agents, conversations, webhooks

API_PREFIX = f"/api/{settings.api_version}"
_expose_docs = settings.environment != "production"

app = FastAPI(
    title="AgentFlow WhatsApp Conversation Engine",
    version="1.0.0",
    description="Agent-driven WhatsApp conversation flows for Meta and Karix channels",
    lifespan=lifespan,
    openapi_url=f"{API_PREFIX}/openapi.json" if _expose_docs else None,
    docs_url=f"{API_PREFIX}/docs" if _expose_docs else None,
    redoc_url=None,
)

# --- Rate Limiting ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Middleware ---
# Only the admin API is called from browsers; webhooks come server-to-server.
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_allowed_origins.split(",") if origin.strip()],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "X-API-Key"],
)
app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def process_time_header(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{time.perf_counter() - started:.4f}"
    return response


# --- Public endpoints ---

@app.get("/health", summary="Basic Health Check", tags=["Monitoring"])
async def health_check(request: Request):
    """Health check for load balancers. Reports the database when one is configured."""
    health_status = {"status": "healthy", "timestamp": datetime.utcnow(), "environment": settings.environment}
    container = getattr(request.app.state, "container", None)
    check = getattr(container.repository, "health_check", None) if container else None
    if check is not None:
        database_ok = await check()
        health_status["database"] = "connected" if database_ok else "error"
        if not database_ok:
            health_status["status"] = "degraded"
    circuits = getattr(container.delivery, "circuits", None) if container else None
    if circuits is not None:
        health_status["delivery"] = circuits()
    return health_status


@app.get("/metrics", tags=["Monitoring"])
async def metrics(_: bool = Depends(verify_api_key)):
    """Prometheus metrics, protected by the API key when one is configured."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# --- API Routers ---
for router, prefix in (
    (webhooks.router, f"{API_PREFIX}/webhooks"),
    (conversations.router, API_PREFIX),
    (agents.router, API_PREFIX),
):
    app.include_router(router, prefix=prefix)


def run():
    """Local development server; production runs uvicorn with settings.workers."""
    production = settings.environment == "production"
    uvicorn.run(
        "agentflow.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=settings.environment == "development",
        workers=settings.workers if production else 1,
    )


if __name__ == "__main__":
    run()
