import os
import structlog
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, Dict, Any
from prometheus_client import (
    Counter,
    Histogram,
    generate_latest,
)
from fastapi import Request

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Prometheus metrics
REQUEST_COUNT = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"]
)
REQUEST_LATENCY = Histogram("http_request_duration_seconds", "HTTP request latency")
CONTAINER_OPERATIONS = Counter(
    "container_operations_total", "Container operations", ["operation", "status"]
)
DEPLOYMENTS = Counter("deployments_total", "Deployments attempted", ["status"])
DEPLOYMENT_DURATION = Histogram(
    "deployment_duration_seconds", "Wall time of a single host deployment"
)


def log_request(request: Request, response_time: float, status_code: int):
    """Log request details with structured logging"""
    logger.info(
        "HTTP request",
        method=request.method,
        url=str(request.url),
        status_code=status_code,
        response_time=response_time,
        user_agent=request.headers.get("user-agent"),
        client_ip=request.client.host if request.client else None,
    )


def log_container_operation(
    operation: str, subject: str, status: str, details: Dict[str, Any] = None
):
    """Log container engine operations with structured logging"""
    logger.info(
        "Container operation",
        operation=operation,
        subject=subject,
        status=status,
        details=details or {},
    )
    CONTAINER_OPERATIONS.labels(operation=operation, status=status).inc()


def get_metrics():
    """Get Prometheus metrics"""
    return generate_latest()


def _engine_status(engine) -> str:
    if engine is None:
        return "unreachable"
    try:
        return "healthy" if engine.ping() else "unreachable"
    except Exception as e:
        logger.warning("Container engine ping failed", error=str(e))
        return "unreachable"


def health_check(engine=None) -> Dict[str, Any]:
    """Agent health: engine reachability plus a few host facts.

    `engine` is None when no client could be built for this host.
    """
    engine_status = _engine_status(engine)
    try:
        # Check disk space
        disk_usage = os.statvfs("/")
        free_space_gb = (disk_usage.f_frsize * disk_usage.f_bavail) / (1024**3)

        # Check memory usage
        with open("/proc/meminfo", "r") as f:
            meminfo = dict(
                line.split(":") for line in f.read().split("\n") if ":" in line
            )
            total_mem = int(meminfo["MemTotal"].split()[0])
            free_mem = int(meminfo["MemAvailable"].split()[0])
            memory_usage_percent = ((total_mem - free_mem) / total_mem) * 100

        return {
            "status": "healthy" if engine_status == "healthy" else "unhealthy",
            "timestamp": datetime.utcnow().isoformat(),
            "services": {"container_engine": engine_status},
            "system": {
                "free_disk_gb": round(free_space_gb, 2),
                "memory_usage_percent": round(memory_usage_percent, 2),
            },
        }
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        return {
            "status": "unhealthy",
            "timestamp": datetime.utcnow().isoformat(),
            "services": {"container_engine": engine_status},
            "error": str(e),
        }


# Error handling utilities
class DockhandException(Exception):
    """Base exception for the deployment agent"""

    def __init__(self, message: str, error_code: str = None, status_code: int = 500):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(self.message)


class DeploymentError(DockhandException):
    """A deployment step failed.

    The message is prefixed with the failing step and the identifier it was
    operating on (image, container id or network name) so a single error
    tells the caller where the run stopped.
    """

    error_code = "DEPLOYMENT_ERROR"
    status_code = 500

    def __init__(self, step: str, subject: Optional[str], message: str):
        self.step = step
        self.subject = subject
        super().__init__(
            f"{step} [{subject or '-'}]: {message}",
            self.error_code,
            self.status_code,
        )


class DiscoveryError(DeploymentError):
    """Listing or inspecting containers failed"""

    error_code = "DISCOVERY_ERROR"


class PreconditionError(DeploymentError):
    """The request cannot be executed as given"""

    error_code = "PRECONDITION_ERROR"
    status_code = 400


class PullError(DeploymentError):
    """Pulling an image failed; running containers were not touched"""

    error_code = "PULL_ERROR"
    status_code = 502


class LifecycleError(DeploymentError):
    """Creating, starting, stopping or removing a container or network failed"""

    error_code = "LIFECYCLE_ERROR"


class ReadinessTimeout(DeploymentError):
    error_code = "READINESS_TIMEOUT"
    status_code = 504

    def __init__(self, container_id: str, attempts: int, last_state: str):
        self.attempts = attempts
        self.last_state = last_state
        super().__init__(
            "wait_until_running",
            container_id,
            f"container not running after {attempts} attempts, last state: {last_state}",
        )


class ReadinessCancelled(DeploymentError):
    error_code = "READINESS_CANCELLED"
    status_code = 499

    def __init__(self, container_id: str, attempts: int, last_state: str):
        self.attempts = attempts
        self.last_state = last_state
        super().__init__(
            "wait_until_running",
            container_id,
            f"wait cancelled after {attempts} attempts, last state: {last_state}",
        )


class ImageReferenceError(DockhandException):
    """An image reference could not be split into name and tag"""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(
            f"invalid image format: {reference}", "IMAGE_REFERENCE_ERROR", 500
        )


class ServiceNotFound(DockhandException):
    def __init__(self, message: str = "Container not found"):
        super().__init__(message, "SERVICE_NOT_FOUND", 404)


@contextmanager
def deployment_step(step: str, subject: Optional[str], error_class=None):
    """Wrap engine failures inside the block as `error_class(step, subject)`.

    Errors that are already part of the agent's taxonomy pass through
    untouched so the innermost step keeps its name.
    """
    error_class = error_class or LifecycleError
    try:
        yield
    except DockhandException:
        raise
    except Exception as e:
        log_container_operation(step, subject or "-", "failed", {"error": str(e)})
        raise error_class(step, subject, str(e)) from e
