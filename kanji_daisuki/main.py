"""
Kanji Daisuki - Japanese-only social posting

Main application entry point.

Every member holds one kanji, shared with at most nine others,
and writes in Japanese only.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kanji_daisuki import __version__
from kanji_daisuki.api.errors import register_error_handlers
from kanji_daisuki.api.routes_admin import router as admin_router
from kanji_daisuki.api.routes_posts import router as posts_router
from kanji_daisuki.api.routes_profiles import router as profiles_router
from kanji_daisuki.api.routes_select import router as select_router
from kanji_daisuki.api.routes_session import router as session_router
from kanji_daisuki.observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)
from kanji_daisuki.schemas import CAPACITY_LIMIT
from kanji_daisuki.web.shared_store import get_store, seed_reference_data

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    store = get_store()
    app.state.store = store

    # Seed kanji if the store is empty (opt-in)
    seed_reference_data()

    health = check_health(store=store)
    if health.checks.get("capacity_invariant", {}).get("status", "healthy") != "healthy":
        logger.error("Capacity invariant violated on startup", checks=health.checks)

    logger.info(
        "Application startup complete",
        store_type=type(store).__name__,
        capacity_limit=CAPACITY_LIMIT,
    )

    yield

    logger.info("Application shutdown complete")


app = FastAPI(
    title="Kanji Daisuki",
    description="""
## Japanese-only social posting

### Kanji

Each member claims one kanji. A kanji admits at most 10 holders.

```
browsing → tentative → annotated → finalized
```

Nothing is persisted before a reason is recorded, and capacity is only
consumed at finalize, by an atomic conditional increment.

### Posts

Post bodies must be written in Japanese: hiragana, katakana, kanji,
Japanese punctuation, emoji and whitespace. ASCII letters and digits are
rejected and reported.

### Storage Backends

- **InMemoryStore**: Development/testing (default)
- **PostgresStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` environment variables to use PostgreSQL.
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add request context middleware for logging
app.add_middleware(RequestContextMiddleware)

# CORS configuration for frontend development
# In production, restrict to your actual domain
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",  # Next.js dev server
        "http://127.0.0.1:3000",
        "http://localhost:5173",  # Vite dev server
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,  # Required for cookies
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(session_router)
app.include_router(select_router)
app.include_router(posts_router)
app.include_router(profiles_router)
app.include_router(admin_router)


@app.get("/health", tags=["System"])
async def health():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    For detailed health, use /health/detailed
    """
    return {"status": "healthy", "service": "kanji-daisuki"}


@app.get("/health/detailed", tags=["System"])
def health_detailed():
    """
    Detailed health check.

    Checks:
    - Service liveness
    - Store connectivity
    - No kanji above its capacity

    Returns 200 if healthy, 503 if unhealthy.
    """
    health_status = check_health(store=get_store())

    return JSONResponse(
        status_code=200 if health_status.healthy else 503,
        content={
            "status": "healthy" if health_status.healthy else "unhealthy",
            "checks": health_status.checks,
            "duration_ms": health_status.duration_ms,
        },
    )


@app.get("/metrics", tags=["System"])
async def metrics():
    """
    Get application metrics.

    Returns counters and latency percentiles.
    """
    return get_metrics().get_summary()


@app.get("/api", tags=["System"])
def api_info():
    """API info for the frontend."""
    return {
        "name": "Kanji Daisuki API",
        "version": __version__,
        "storage_backend": type(get_store()).__name__,
        "capacity_limit": CAPACITY_LIMIT,
        "endpoints": {
            "kanjis": "/api/kanjis",
            "select": {
                "state": "/api/select/state",
                "start": "/api/select/start",
                "tentative": "/api/select/tentative",
                "confirm": "/api/select/confirm",
                "reason": "/api/select/reason",
                "finalize": "/api/select/finalize",
            },
            "posts": {
                "check": "/api/posts/check",
                "timeline": "/api/posts",
                "detail": "/api/posts/{id}",
                "comments": "/api/posts/{id}/comments",
                "like": "/api/posts/{id}/like",
            },
            "profiles": {
                "page": "/api/profiles/{username}",
                "settings": "/api/me/settings",
            },
            "admin": {
                "capacity": "/api/admin/capacity",
                "revoke": "/api/admin/claimants/{user_id}/revoke",
            },
        },
    }
