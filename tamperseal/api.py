#!/usr/bin/env python3
"""
TamperSeal — HTTP API Layer

FastAPI server wrapping the TamperSeal kernel.

Env vars:
TS_SEED_PAYLOAD       initial record payload (default "Hello World")
TS_RATE_LIMIT_MAX     requests per window per client address, 0 disables (default 100)
TS_RATE_LIMIT_WINDOW  rate limit window in seconds (default 900)
TS_CORS_ORIGINS       comma-separated allowed origins (default "*"), read once at import
TS_LOG_LEVEL          log level (default INFO)
TS_LOG_FORMAT         "console" or "json" (default console)
PORT                  listen port for ``python -m tamperseal`` (default 8080)

Known weakness: POST /init returns the client secret in clear JSON. Channel
confidentiality is expected from the deployment (TLS terminator), not from
this service.
"""

from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from tamperseal import kernel as ks
from tamperseal.logging_config import configure_logging

logger = structlog.get_logger(__name__)

TOKEN_HEADER = "X-Client-Token"

# ── Configuration ────────────────────────────────────────────────────

def _cors_origins() -> List[str]:
    raw = os.environ.get("TS_CORS_ORIGINS", "*")
    return [o.strip() for o in raw.split(",") if o.strip()]

@dataclass
class ServiceConfig:
    seed_payload: str = ks.DEFAULT_SEED_PAYLOAD
    rate_limit_max: int = ks.DEFAULT_RATE_LIMIT_MAX
    rate_limit_window: int = ks.DEFAULT_RATE_LIMIT_WINDOW_SECONDS
    cors_origins: List[str] = None
    log_level: str = "INFO"
    log_format: str = "console"

    def __post_init__(self):
        if self.cors_origins is None:
            self.cors_origins = ["*"]

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            seed_payload=os.environ.get("TS_SEED_PAYLOAD", ks.DEFAULT_SEED_PAYLOAD),
            rate_limit_max=int(os.environ.get("TS_RATE_LIMIT_MAX", str(ks.DEFAULT_RATE_LIMIT_MAX))),
            rate_limit_window=int(os.environ.get("TS_RATE_LIMIT_WINDOW",
                                                 str(ks.DEFAULT_RATE_LIMIT_WINDOW_SECONDS))),
            cors_origins=_cors_origins(),
            log_level=os.environ.get("TS_LOG_LEVEL", "INFO"),
            log_format=os.environ.get("TS_LOG_FORMAT", "console"),
        )

# ── State ────────────────────────────────────────────────────────────

PROTOCOL: Optional[ks.SessionProtocol] = None
RATE_LIMITER: Optional[ks.RateLimiter] = None

# ── Lifespan ─────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    global PROTOCOL, RATE_LIMITER
    cfg = ServiceConfig.from_env()
    configure_logging(cfg.log_level, cfg.log_format)
    PROTOCOL = ks.SessionProtocol(store=ks.VersionedStore(seed_payload=cfg.seed_payload))
    RATE_LIMITER = ks.RateLimiter(cfg.rate_limit_max, cfg.rate_limit_window)
    logger.info("api_starting", schema=ks.SCHEMA_VERSION, rate_limit_max=cfg.rate_limit_max)
    yield
    logger.info("api_stopping")
    PROTOCOL = None
    RATE_LIMITER = None

app = FastAPI(
    title="TamperSeal — Tamper-Evident Record API",
    version=ks.SCHEMA_VERSION,
    lifespan=lifespan,
)

# ── Helpers ──────────────────────────────────────────────────────────

def _require_protocol() -> ks.SessionProtocol:
    if PROTOCOL is None:
        raise HTTPException(503, "kernel_not_ready")
    return PROTOCOL

def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "detail": detail})

# ── Middleware ───────────────────────────────────────────────────────

@app.middleware("http")
async def rate_limit_and_access_log(request: Request, call_next):
    start = time.perf_counter()
    client = request.client.host if request.client else "unknown"
    try:
        if RATE_LIMITER is not None:
            RATE_LIMITER.check(client)
    except ks.RateLimitedError as exc:
        if PROTOCOL is not None:
            PROTOCOL.telemetry.inc("rate_limited_total")
        response = _error(429, "rate_limited", str(exc))
    else:
        response = await call_next(request)
    logger.info(
        "request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        client=client,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
    )
    return response

# Added last so it wraps the rate limiter and 429s still carry CORS headers.
# Origins are fixed when the module is imported.
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Exception Handlers ───────────────────────────────────────────────

@app.exception_handler(ks.UnauthorizedError)
async def unauthorized_handler(req, exc):
    return _error(403, "unauthorized", str(exc))

@app.exception_handler(ks.IntegrityFailedError)
async def integrity_handler(req, exc):
    return _error(400, "integrity_failed", str(exc))

@app.exception_handler(ks.NotFoundError)
async def not_found_handler(req, exc):
    return _error(404, "not_found", str(exc))

@app.exception_handler(ks.MalformedRequestError)
async def malformed_handler(req, exc):
    return _error(400, "malformed_request", str(exc))

@app.exception_handler(RequestValidationError)
async def validation_handler(req, exc):
    return _error(400, "malformed_request", "request body must be JSON with string payload, checksum and tag")

# ── Registration ─────────────────────────────────────────────────────

@app.post("/init")
def register():
    ident = _require_protocol().handle_register()
    return {"token": ident.token, "secret": ident.secret}

# ── Record ───────────────────────────────────────────────────────────

def client_context(request: Request) -> ks.RequestContext:
    # Runs before body validation, so bad credentials win over bad bodies.
    return _require_protocol().resolve(request.headers.get(TOKEN_HEADER))

class WriteReq(BaseModel):
    payload: str
    checksum: str
    tag: str

@app.get("/")
def read(ctx: ks.RequestContext = Depends(client_context)):
    return _require_protocol().read(ctx).to_dict()

@app.post("/")
def write(body: WriteReq, ctx: ks.RequestContext = Depends(client_context)):
    _require_protocol().write(ctx, body.payload, body.checksum, body.tag)
    return {"status": "ok"}

@app.get("/recover")
def recover(ctx: ks.RequestContext = Depends(client_context)):
    return _require_protocol().recover(ctx).to_dict()

@app.get("/history")
def history(ctx: ks.RequestContext = Depends(client_context)) -> List[Dict[str, Any]]:
    return _require_protocol().history(ctx)

# ── Observability ────────────────────────────────────────────────────

@app.get("/health")
def health():
    return _require_protocol().health()

@app.get("/telemetry")
def telemetry_json():
    return _require_protocol().telemetry.export_dict()

@app.get("/telemetry/prometheus")
def telemetry_prom():
    return PlainTextResponse(_require_protocol().telemetry.export_prometheus(), media_type="text/plain")


def main() -> None:
    import uvicorn

    port = int(os.environ.get("PORT", "8080"))
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
