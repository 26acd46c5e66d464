"""
Deployment Module

Brings one host from "previous version running (or nothing)" to "new version
running, old version removed, reverse proxy healthy". Every step is safe to
repeat, so a run that fails part way is converged by the next one.
"""

import asyncio
import time
from typing import Dict, List, Optional

from config import AgentSettings
from container_engine import (
    IMAGE_LABEL,
    ROLE_LABEL,
    SERVICE_ROLE,
    ContainerEngine,
    ContainerSpec,
    ManagedContainer,
    parse_image_reference,
)
from models import ContainerStatus, DeployRequest, proxy_parameter_count
from readiness import wait_until_running
from reverse_proxy import check_proxy_parameters, ensure_proxy
from utils import (
    logger,
    deployment_step,
    DEPLOYMENTS,
    DEPLOYMENT_DURATION,
    DiscoveryError,
    LifecycleError,
    PreconditionError,
    PullError,
    ServiceNotFound,
)

ROUTER_NAME = "dockhand"


def routing_labels(domain_name: str, port: int, resolver: str) -> Dict[str, str]:
    """Traefik labels routing the domain and its www. subdomain over TLS"""
    router = f"traefik.http.routers.{ROUTER_NAME}"
    return {
        "traefik.enable": "true",
        f"{router}.rule": f"Host(`{domain_name}`) || Host(`www.{domain_name}`)",
        f"{router}.entrypoints": "websecure",
        f"{router}.tls": "true",
        f"{router}.tls.certresolver": resolver,
        f"traefik.http.services.{ROUTER_NAME}.loadbalancer.server.port": str(port),
    }


def service_labels(image_name: str) -> Dict[str, str]:
    return {ROLE_LABEL: SERVICE_ROLE, IMAGE_LABEL: image_name}


def service_spec(request: DeployRequest, settings: AgentSettings) -> ContainerSpec:
    labels = service_labels(request.image_name)
    network = None
    if request.proxy_enabled:
        labels.update(
            routing_labels(request.traefik_domain_name, request.port, settings.cert_resolver)
        )
        network = settings.network_name

    return ContainerSpec(
        name=settings.service_name,
        image=f"{request.image_name}:{request.tag}",
        environment=[f"{key}={value}" for key, value in request.env_vars.items()],
        ports={f"{request.port}/tcp": request.port},
        labels=labels,
        network=network,
        restart_policy={"Name": "unless-stopped"},
    )


def find_service_containers(engine: ContainerEngine, image_name: str) -> List[ManagedContainer]:
    """Service containers this agent created for `image_name`, in any state"""
    return engine.list_containers(labels=service_labels(image_name))


def get_service_status(engine: ContainerEngine) -> ContainerStatus:
    """Name, tag, creation time, restart count and state of the service container.

    Raises ServiceNotFound when no service container exists, and
    ImageReferenceError when its image reference has more than one colon.
    """
    with deployment_step("find_service", SERVICE_ROLE, DiscoveryError):
        containers = engine.list_containers(labels={ROLE_LABEL: SERVICE_ROLE})
    if not containers:
        raise ServiceNotFound()

    container = containers[0]
    image_name, tag = parse_image_reference(container.image)
    return ContainerStatus(
        image_name=image_name,
        tag=tag,
        created_at=container.created_at,
        restart_count=container.restart_count,
        status=container.state,
    )


class Deployer:
    """Runs deployments against one host's container engine"""

    def __init__(self, engine: ContainerEngine, settings: AgentSettings):
        self.engine = engine
        self.settings = settings

    async def _call(self, func, *args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)

    async def deploy(
        self, request: DeployRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> str:
        """Deploy `request` and return the new service container id.

        Raises a DeploymentError subclass naming the failed step; nothing is
        rolled back, a repeat run converges the host. Setting `cancel_event`
        aborts the proxy readiness wait with ReadinessCancelled.
        """
        start_time = time.time()
        try:
            container_id = await self._deploy(request, cancel_event)
        except Exception:
            DEPLOYMENTS.labels(status="failed").inc()
            raise
        DEPLOYMENTS.labels(status="success").inc()
        DEPLOYMENT_DURATION.observe(time.time() - start_time)
        return container_id

    async def _deploy(self, request: DeployRequest, cancel_event) -> str:
        self._check_request(request)
        image_ref = f"{request.image_name}:{request.tag}"

        if request.proxy_enabled:
            await self._prepare_proxy(request, cancel_event)
        else:
            logger.info("Reverse proxy not requested, skipping network and proxy setup")

        with deployment_step("find_service", request.image_name, DiscoveryError):
            current = await self._call(
                find_service_containers, self.engine, request.image_name
            )
        if current:
            logger.info(
                "Found current service container",
                container_ids=[c.id for c in current],
            )
        else:
            logger.info(
                "No service container found, assuming a fresh deployment",
                image_name=request.image_name,
            )

        # Pull before touching the running container: a failed pull leaves it serving
        logger.info("Pulling image", image_name=request.image_name, tag=request.tag)
        with deployment_step("pull_image", image_ref, PullError):
            image_id = await self._call(
                self.engine.pull_image, request.image_name, request.tag, request.credentials
            )

        for container in current:
            await self._retire(container, keep_image_id=image_id)

        spec = service_spec(request, self.settings)
        with deployment_step("run_container", image_ref, LifecycleError):
            container_id = await self._call(self.engine.run_container, spec)
        logger.info("Started new container", container_id=container_id, image=image_ref)
        return container_id

    def _check_request(self, request: DeployRequest) -> None:
        if proxy_parameter_count(request) not in (0, 3):
            raise PreconditionError(
                "validate_request",
                request.image_name,
                "reverse proxy needs domain name, image and ACME email together",
            )
        if request.proxy_enabled:
            check_proxy_parameters(request.proxy, self.settings)

    async def _prepare_proxy(self, request: DeployRequest, cancel_event) -> None:
        network = self.settings.network_name
        logger.info("Ensuring network", network_name=network)
        with deployment_step("create_network", network, LifecycleError):
            await self._call(self.engine.ensure_network, network)

        proxy_id = await self._call(ensure_proxy, self.engine, request.proxy, self.settings)

        # A proxy that never comes up is left in place for inspection
        with deployment_step("wait_for_proxy", proxy_id, DiscoveryError):
            await wait_until_running(
                self.engine,
                proxy_id,
                max_attempts=self.settings.readiness_attempts,
                poll_interval=self.settings.readiness_interval,
                cancel_event=cancel_event,
            )

    async def _retire(self, container: ManagedContainer, keep_image_id: str) -> None:
        logger.info("Stopping current container", container_id=container.id)
        with deployment_step("stop_container", container.id, LifecycleError):
            await self._call(
                self.engine.stop_container, container.id, self.settings.stop_timeout
            )

        # Redeploying the same tag resolves to the image just pulled; keep it
        image_id = None if container.image_id == keep_image_id else container.image_id
        logger.info("Removing old container", container_id=container.id, image_id=image_id)
        with deployment_step("remove_container", container.id, LifecycleError):
            await self._call(
                self.engine.remove_container_and_image, container.id, image_id, True
            )
