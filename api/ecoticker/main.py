from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from ecoticker.config import get_settings
from ecoticker.dependencies import client_identifier
from ecoticker.errors import RateLimitExceeded, register_exception_handlers
from ecoticker.logging_config import configure_logging
from ecoticker.routers import admin, articles, health, topics
from ecoticker.services.audit import truncate_ip
from ecoticker.services.rate_limit import RateLimiters

settings = get_settings()
configure_logging()
logger = structlog.get_logger()

SECURITY_HEADERS = {
    "X-Frame-Options": "SAMEORIGIN",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("EcoTicker API starting", environment=settings.ENVIRONMENT)
    yield
    logger.info("EcoTicker API shutting down")


app = FastAPI(
    title=settings.APP_NAME,
    description="Environmental news severity ticker",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# One set of in-memory counters per process
app.state.rate_limiters = RateLimiters.from_settings(settings)

register_exception_handlers(app)


@app.middleware("http")
async def rate_limit_and_security_headers(request: Request, call_next):
    path = request.url.path
    if path.startswith(settings.API_PREFIX):
        tier, limiter = request.app.state.rate_limiters.for_request(path, request.method)
        identifier = client_identifier(request)
        if not limiter.check(identifier):
            exc = RateLimitExceeded(limiter.get_reset_time(identifier), now=limiter.clock())
            logger.warning("rate_limit: request denied", tier=tier,
                           client=truncate_ip(identifier), path=path)
            response = JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=exc.headers())
        else:
            response = await call_next(request)
    else:
        response = await call_next(request)

    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix=settings.API_PREFIX)
app.include_router(topics.router, prefix=settings.API_PREFIX)
app.include_router(articles.router, prefix=settings.API_PREFIX)
app.include_router(admin.router, prefix=settings.API_PREFIX)


@app.get("/")
async def root():
    return {
        "message": "EcoTicker API",
        "docs": "/docs",
        "health": f"{settings.API_PREFIX}/health",
    }
