from contextlib import asynccontextmanager

from genbroker.app.core.errors import register_exception_handlers
from genbroker.app.core.logging import setup_logging

# Configure logging (JSON structured)
logger = setup_logging()

from fastapi import Depends, FastAPI
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from secure import ContentSecurityPolicy, Secure, XContentTypeOptions, XFrameOptions
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp

from genbroker.app.api.deps import require_internal_token
from genbroker.app.api.endpoints import admin, credits, jobs
from genbroker.app.core.config import settings
from genbroker.app.services.runtime import Runtime, build_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: a runtime placed on app.state beforehand (tests) is used as-is.
    runtime: Runtime | None = getattr(app.state, "runtime", None)
    owned = runtime is None
    if runtime is None:
        runtime = build_runtime()
        app.state.runtime = runtime
    if settings.api_run_workers:
        runtime.start(with_scheduler=settings.api_run_scheduler)
    yield
    # Shutdown
    if settings.api_run_workers:
        runtime.stop()
    if owned:
        runtime.db.dispose()
        app.state.runtime = None


app = FastAPI(
    title="GenBroker API",
    description="Credit-metered AI generation broker for the Discord bot",
    version="1.0.0",
    docs_url="/docs" if settings.is_dev else None,
    redoc_url="/redoc" if settings.is_dev else None,
    openapi_url="/openapi.json" if settings.is_dev else None,
    lifespan=lifespan,
)

# Register Global Exception Handlers
register_exception_handlers(app)

# Enable GZip compression for responses > 1000 bytes
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["*"] if settings.is_dev else ["localhost", "127.0.0.1", "[::1]", "testserver", "genbroker"],
)

# JSON-only API: deny framing and all content sources
SECURE_HEADERS = Secure(
    xfo=XFrameOptions().deny(),
    csp=ContentSecurityPolicy().default_src("'none'"),
    xcto=XContentTypeOptions().nosniff(),
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, secure_headers: Secure) -> None:
        super().__init__(app)
        self.secure_headers = secure_headers

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        await self.secure_headers.set_headers_async(response)
        # Balances and job results are per-user; never cache them.
        response.headers["Cache-Control"] = "no-store"
        return response


app.add_middleware(SecurityHeadersMiddleware, secure_headers=SECURE_HEADERS)

# Include Routers
internal = [Depends(require_internal_token)]
app.include_router(jobs.router, prefix="/jobs", tags=["jobs"], dependencies=internal)
app.include_router(credits.router, tags=["credits"], dependencies=internal)
app.include_router(admin.router, prefix="/admin", tags=["admin"], dependencies=internal)


@app.get("/health")
async def health_check(request: Request):
    runtime: Runtime | None = getattr(request.app.state, "runtime", None)
    queues = {}
    if runtime is not None:
        queues = {name: stats.running for name, stats in runtime.orchestrator.queue_stats().items()}
    return {"status": "ok", "service": "genbroker", "app_env": settings.app_env.value, "queues": queues}
