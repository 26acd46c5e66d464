from fastapi import (
    FastAPI,
    HTTPException,
    Depends,
    Header,
    Request,
    Response,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from docker.errors import DockerException
from dotenv import load_dotenv
from functools import lru_cache
from typing import Optional
import time

from prometheus_client import CONTENT_TYPE_LATEST

from config import AgentSettings, get_settings
from container_engine import DockerEngine
from deployment import Deployer, get_service_status
from models import ContainerStatus, DeployRequest, DeployResponse
from utils import (
    logger,
    REQUEST_COUNT,
    REQUEST_LATENCY,
    log_request,
    get_metrics,
    health_check,
    DockhandException,
)

load_dotenv()

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="Dockhand Agent",
    description="Per-host deployment agent",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    TrustedHostMiddleware, allowed_hosts=["*"]  # Configure properly for production
)


@lru_cache
def _docker_engine() -> DockerEngine:
    return DockerEngine()


def get_engine():
    """Container engine for this host"""
    try:
        return _docker_engine()
    except DockerException as e:
        logger.warning("Docker is not available", error=str(e))
        raise DockhandException(
            f"Container engine unavailable: {e}", "ENGINE_UNAVAILABLE", 503
        )


def get_engine_if_available():
    """Container engine for this host, or None when it cannot be reached"""
    try:
        return get_engine()
    except DockhandException:
        return None


# Authentication dependency
async def verify_deploy_token(
    authorization: Optional[str] = Header(None),
    settings: AgentSettings = Depends(get_settings),
):
    """Verify the caller holds the agent token"""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    if authorization != f"Bearer {settings.token}":
        raise HTTPException(status_code=403, detail="Invalid deploy token")

    return True


# Request/Response middleware for logging and metrics
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    response_time = time.time() - start_time
    log_request(request, response_time, response.status_code)

    REQUEST_COUNT.labels(
        method=request.method, endpoint=request.url.path, status=response.status_code
    ).inc()
    REQUEST_LATENCY.observe(response_time)

    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error("Validation error", errors=exc.errors())
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Validation error",
            "errors": [
                {"loc": list(error.get("loc", ())), "msg": error.get("msg")}
                for error in exc.errors()
            ],
        },
    )


@app.exception_handler(DockhandException)
async def dockhand_exception_handler(request: Request, exc: DockhandException):
    logger.error(
        "Dockhand exception",
        error_code=exc.error_code,
        message=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.error_code},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error("Unexpected error", error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error_code": "INTERNAL_ERROR"},
    )


@app.post("/deploy", response_model=DeployResponse)
@limiter.limit("10/minute")
async def deploy(
    deploy_request: DeployRequest,
    request: Request,
    _: bool = Depends(verify_deploy_token),
    engine=Depends(get_engine),
    settings: AgentSettings = Depends(get_settings),
):
    """Deploy a new version of the service on this host"""
    logger.info(
        "Received deploy request",
        image_name=deploy_request.image_name,
        tag=deploy_request.tag,
        proxy_enabled=deploy_request.proxy_enabled,
    )

    # HTTP callers cancel by dropping the request (CancelledError); cancel_event
    # is only reachable through Deployer.deploy
    container_id = await Deployer(engine, settings).deploy(deploy_request)
    logger.info("Deployment completed", container_id=container_id)
    return DeployResponse(
        container_id=container_id,
        image_name=deploy_request.image_name,
        tag=deploy_request.tag,
    )


@app.get("/api/v1/status", response_model=ContainerStatus)
def status(
    request: Request,
    _: bool = Depends(verify_deploy_token),
    engine=Depends(get_engine),
):
    """Status of the service container on this host"""
    logger.info("Getting service status")
    return get_service_status(engine)


@app.get("/health", status_code=200)
def health_endpoint(engine=Depends(get_engine_if_available)):
    """Agent health, including container engine reachability"""
    return health_check(engine)


@app.get("/metrics")
async def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": "Dockhand Agent",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


@app.on_event("startup")
async def startup_tasks():
    settings = get_settings()
    logger.info(
        "Starting Dockhand agent",
        network_name=settings.network_name,
        default_proxy_image=settings.default_proxy_image,
    )


@app.on_event("shutdown")
async def shutdown_tasks():
    logger.info("Dockhand agent shutdown complete")
