"""
Control Adoption Engine - FastAPI Application

Main entry point for the control adoption backend.

Architecture:
- Evidence events → EvidenceStore (immutable, versioned, lineage-linked)
- Evidence + mappings → FreshnessEngine → per-control freshness + trend
- Freshness → InterventionRecommender → proposed interventions
- Approved interventions → InterventionWorkflow → idempotent executions
"""
import logging
import os
import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .database import engine, init_db
from .routers import adoption_router, controls_router, evidence_router, interventions_router
from .services.adoption import AdoptionError, InMemoryRateLimiter, RateLimitedError, probe_capabilities

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and probe optional tables on startup."""
    init_db()
    app.state.capabilities = probe_capabilities(engine)
    app.state.rate_limiter = InMemoryRateLimiter()
    yield


# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Control Adoption Engine",
    description="""
    Control Adoption Freshness & Intervention Engine

    Measures how current the evidence behind each compliance control is,
    benchmarks it against anonymized peer cohorts, and proposes and executes
    remediation when evidence goes stale.

    ## Pipeline
    1. **Evidence**: Learning events → immutable, versioned evidence objects
    2. **Freshness**: Evidence + policy updates → state, score, trend
    3. **Interventions**: Freshness → proposed remediation (max 3 per control)
    4. **Execution**: Approved remediation → idempotent side effects

    ## Key Principles
    - Evidence rows are append-only; new versions supersede old ones
    - Executions run at most once per idempotency key
    - Optional analytics tables degrade to compat mode when absent
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# REQUEST CORRELATION
# =============================================================================

@app.middleware("http")
async def request_context(request: Request, call_next):
    """Assign a request id, log completion with latency, echo the id back."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    request.state.request_id = request_id
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = round((time.perf_counter() - started) * 1000, 1)
        logger.exception(
            f"request_failed request_id={request_id} route={request.url.path} latency_ms={latency_ms}"
        )
        raise
    latency_ms = round((time.perf_counter() - started) * 1000, 1)
    logger.info(
        f"request_completed request_id={request_id} route={request.url.path} "
        f"status={response.status_code} latency_ms={latency_ms}"
    )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


# =============================================================================
# ERROR HANDLERS
# =============================================================================

def _error_body(request: Request, code: str, message: str) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "requestId": getattr(request.state, "request_id", None),
        }
    }


@app.exception_handler(AdoptionError)
async def adoption_error_handler(request: Request, exc: AdoptionError):
    headers = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        headers[REQUEST_ID_HEADER] = request_id
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.code, exc.message),
        headers=headers,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content=_error_body(request, "INTERNAL_ERROR", "Internal server error"),
    )


# Include routers
app.include_router(adoption_router)
app.include_router(interventions_router)
app.include_router(controls_router)
app.include_router(evidence_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Control Adoption Engine",
        "version": "1.0.0",
        "description": "Control Adoption Freshness & Intervention Engine",
        "docs": "/docs",
        "components": {
            "freshness": "Per-control evidence freshness, score and trend",
            "benchmarks": "Anonymized peer cohort comparison",
            "interventions": "Proposed and executed remediation",
            "lineage": "Evidence version and derivation graph",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
