"""
Main FastAPI application for the exam materials store backend.
Serves M-Pesa payment routes, sales reporting, purchases, health and metrics.
"""
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.logging import configure_logging
from app.api.routes import health, mpesa, sales
from app.utils.metrics import router as metrics_router


configure_logging()
logger = logging.getLogger("app.requests")

app = FastAPI(
    title="Exam Materials Store API",
    description="M-Pesa checkout, sales reporting and purchases",
    version="1.0.0",
)

# CORS
origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if not origins:
    origins = ["http://localhost:19006", "http://localhost:8081", "http://127.0.0.1:19006"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging(request: Request, call_next):
    request_id = request.headers.get(settings.request_id_header) or str(uuid4())
    started = time.time()
    response = await call_next(request)
    response.headers[settings.request_id_header] = request_id
    logger.info(
        "request",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "status_code": response.status_code,
            "latency_ms": round((time.time() - started) * 1000, 1),
        },
    )
    return response


# Routers
app.include_router(health.router, tags=["health"])
app.include_router(mpesa.router)
app.include_router(sales.router)
app.include_router(metrics_router)
