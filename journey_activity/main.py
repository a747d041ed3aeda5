import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from journey_activity.config import settings
from journey_activity.models.activity import HealthEnvironment, HealthResponse
from journey_activity.observability import configure_logging, incr_metric, log_event, mask_secret
from journey_activity.routers import activity, diagnostics

configure_logging()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    log_event(
        "activity_service_started",
        client_id=mask_secret(settings.sfmc_client_id),
        auth_base_url=settings.auth_base_url() or None,
        rest_base_url=settings.rest_base_url() or None,
        data_extension=settings.de_name,
        data_extension_key=settings.de_external_key,
        activity_log_enabled=settings.activity_log_enabled,
        jwt_secret_configured=bool(settings.jwt_secret),
    )
    yield


app = FastAPI(title="Journey Activity X", version="0.1.0", lifespan=lifespan)

# Journey Builder loads the activity from its own origin.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    log_event("http_request", request_id=request_id, method=request.method, path=request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(activity.router)
app.include_router(diagnostics.router)


@app.get("/")
async def root():
    return {
        "status": "ok",
        "service": "journey-activity-x",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        environment=HealthEnvironment(
            jwt_secret_configured=bool(settings.jwt_secret),
            marketing_cloud_configured=bool(settings.sfmc_client_id and settings.sfmc_client_secret),
            activity_log_enabled=settings.activity_log_enabled,
        ),
    )


@app.exception_handler(StarletteHTTPException)
async def unknown_route_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code != 404:
        return await http_exception_handler(request, exc)
    incr_metric("http.route_not_found", method=request.method)
    log_event(
        "route_not_found",
        level=logging.WARNING,
        request_id=getattr(request.state, "request_id", None),
        method=request.method,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=404,
        content={
            "status": "error",
            "message": "Route not found",
            "method": request.method,
            "url": str(request.url.path),
            "available_endpoints": available_endpoints(),
        },
    )


def available_endpoints() -> list[str]:
    """``METHOD /path - summary`` for every registered route, for callers that guessed a path wrong."""
    listed = []
    for route in app.routes:
        methods = sorted((getattr(route, "methods", None) or set()) - {"HEAD", "OPTIONS"})
        if not methods or route.path.startswith(("/docs", "/redoc", "/openapi")):
            continue
        summary = (route.endpoint.__doc__ or route.name.replace("_", " ")).strip().splitlines()[0]
        listed.extend(f"{method} {route.path} - {summary}" for method in methods)
    return listed
