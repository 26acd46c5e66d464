"""
Reverse Proxy Module

Builds the Traefik container for a host and makes sure exactly one instance
of the requested version is running: an instance at a different version is
torn down and recreated, never mutated in place.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from config import AgentSettings
from container_engine import (
    PROXY_ROLE,
    ROLE_LABEL,
    RUNNING,
    ContainerEngine,
    ContainerSpec,
    ManagedContainer,
    parse_image_reference,
)
from models import ProxyParameters
from utils import (
    logger,
    deployment_step,
    DiscoveryError,
    ImageReferenceError,
    LifecycleError,
    PreconditionError,
    PullError,
)

HTTP_PORT = 80
HTTPS_PORT = 443


@dataclass
class ReverseProxySpec:
    name: str
    image: str
    network: str
    command: List[str]
    ports: Dict[str, int] = field(
        default_factory=lambda: {f"{HTTP_PORT}/tcp": HTTP_PORT, f"{HTTPS_PORT}/tcp": HTTPS_PORT}
    )
    binds: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=lambda: {ROLE_LABEL: PROXY_ROLE})

    def container_spec(self) -> ContainerSpec:
        return ContainerSpec(
            name=self.name,
            image=self.image,
            command=list(self.command),
            ports=dict(self.ports),
            binds=list(self.binds),
            labels=dict(self.labels),
            network=self.network,
            restart_policy={"Name": "unless-stopped"},
        )


def proxy_command(network: str, resolver: str, acme_email: str, acme_storage: str) -> List[str]:
    """Traefik flags: opt-in docker discovery, HTTP->HTTPS redirect, ACME TLS"""
    return [
        "--providers.docker=true",
        "--providers.docker.exposedbydefault=false",
        f"--providers.docker.network={network}",
        f"--entrypoints.web.address=:{HTTP_PORT}",
        "--entrypoints.web.http.redirections.entrypoint.to=websecure",
        "--entrypoints.web.http.redirections.entrypoint.scheme=https",
        f"--entrypoints.websecure.address=:{HTTPS_PORT}",
        f"--certificatesresolvers.{resolver}.acme.email={acme_email}",
        f"--certificatesresolvers.{resolver}.acme.storage={acme_storage}",
        f"--certificatesresolvers.{resolver}.acme.tlschallenge=true",
    ]


def build_proxy_spec(params: ProxyParameters, settings: AgentSettings) -> ReverseProxySpec:
    """Derive the proxy container from the request's proxy parameters.

    The configured default image is used when the request names none.
    The ACME host file must already exist with mode 600; host setup
    prepares it before the first deployment.
    """
    return ReverseProxySpec(
        name=settings.proxy_name,
        image=params.image or settings.default_proxy_image,
        network=settings.network_name,
        command=proxy_command(
            settings.network_name,
            settings.cert_resolver,
            params.acme_email,
            settings.acme_storage_path,
        ),
        binds=[
            f"{settings.docker_socket}:{settings.docker_socket}",
            f"{settings.acme_host_path}:{settings.acme_storage_path}",
        ],
    )


def check_proxy_parameters(params: Optional[ProxyParameters], settings: AgentSettings):
    """Validate the proxy triple and return the (name, tag) of the proxy image.

    Raises PreconditionError for a missing parameter or an image that is
    not exactly name:tag. Touches no engine state.
    """
    if params is None or not params.domain_name or not params.acme_email or params.image is None:
        raise PreconditionError(
            "ensure_proxy", None, "missing required reverse proxy configuration"
        )

    image = params.image or settings.default_proxy_image
    try:
        name, tag = parse_image_reference(image)
    except ImageReferenceError as e:
        raise PreconditionError("ensure_proxy", image, e.message) from e
    if not tag:
        raise PreconditionError("ensure_proxy", image, "proxy image must be name:tag")
    return name, tag


def _running_tag(container: ManagedContainer) -> Optional[str]:
    try:
        return parse_image_reference(container.image)[1]
    except ImageReferenceError:
        return None


def _teardown(
    engine: ContainerEngine,
    container: ManagedContainer,
    settings: AgentSettings,
    keep_image_id: Optional[str] = None,
):
    # The kept proxy may run from the same image; the engine refuses to remove it
    image_id = None if container.image_id == keep_image_id else container.image_id
    logger.info(
        "Removing reverse proxy",
        container_id=container.id,
        image=container.image,
        image_id=image_id,
        state=container.state,
    )
    with deployment_step("stop_proxy", container.id, LifecycleError):
        engine.stop_container(container.id, timeout=settings.stop_timeout)
    with deployment_step("remove_proxy", container.id, LifecycleError):
        engine.remove_container_and_image(container.id, image_id, force=True)


def ensure_proxy(
    engine: ContainerEngine, params: Optional[ProxyParameters], settings: AgentSettings
) -> str:
    """Return the id of a running proxy at the requested version.

    A running instance whose tag matches is reused as is. Any other
    instance (different tag, or not running) is stopped and removed along
    with its image, and a fresh one is pulled anonymously and started.
    """
    image_name, tag = check_proxy_parameters(params, settings)
    spec = build_proxy_spec(params, settings)

    with deployment_step("find_proxy", PROXY_ROLE, DiscoveryError):
        existing = engine.list_containers(labels=spec.labels)

    current = next(
        (c for c in existing if c.state == RUNNING and _running_tag(c) == tag), None
    )
    keep_image_id = current.image_id if current is not None else None
    for container in existing:
        if container is current:
            continue
        logger.info(
            "Reverse proxy version mismatch",
            current_image=container.image,
            requested_tag=tag,
        )
        _teardown(engine, container, settings, keep_image_id)

    if current is not None:
        logger.info("Reverse proxy already running at requested version", tag=tag)
        return current.id

    logger.info("Pulling reverse proxy image", image_name=image_name, tag=tag)
    with deployment_step("pull_proxy_image", spec.image, PullError):
        engine.pull_image(image_name, tag, None)

    with deployment_step("run_proxy", spec.name, LifecycleError):
        container_id = engine.run_container(spec.container_spec())
    logger.info("Started reverse proxy", container_id=container_id, image=spec.image)
    return container_id
