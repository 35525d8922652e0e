import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flagops.api.deps import build_services
from flagops.api.v1.api import api_router
from flagops.config import settings
from flagops.core.exceptions import FlagError
from flagops.db.session import get_pool_status
from flagops.logging_config import setup_logging
from flagops.middleware.metrics import PrometheusMiddleware, metrics_endpoint, set_app_info
from flagops.middleware.request_logging import RequestLoggingMiddleware

# ── Initialize structured logging ──
setup_logging()

logger = logging.getLogger("flagops.request")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "flag_services", None) is None:
        app.state.flag_services = build_services()
    app.state.flag_services.start()
    try:
        yield
    finally:
        app.state.flag_services.stop()


app = FastAPI(
    title=settings.APP_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)


@app.exception_handler(FlagError)
async def flag_error_handler(request: Request, exc: FlagError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_errors(exc), "code": "VALIDATION_ERROR"},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


# Set all CORS enabled origins
cors_origins = ["http://localhost:3000", "http://localhost:8000"]
if settings.BACKEND_CORS_ORIGINS:
    cors_origins.extend([o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request logging middleware – request ID, actor, timing
app.add_middleware(RequestLoggingMiddleware)
# Prometheus metrics middleware – request count, latency, in-progress
app.add_middleware(PrometheusMiddleware)

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
def root():
    return {"message": f"Welcome to {settings.APP_NAME}", "docs": "/docs"}


@app.get("/health")
def health_check():
    return {"status": "ok", "env": settings.APP_ENV, "database": get_pool_status()}


# Prometheus metrics endpoint
app.add_route("/metrics", metrics_endpoint)
set_app_info(version="1.0.0", env=settings.APP_ENV)
