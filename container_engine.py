"""
Container Engine Module

The container engine facade used by the deployment agent: value types for
containers, networks and container specs, the `ContainerEngine` protocol the
orchestrator is written against, and `DockerEngine`, its docker SDK
implementation for the local daemon.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

import docker
from docker.errors import APIError, NotFound

from models import RegistryCredentials
from utils import logger, log_container_operation, ImageReferenceError

# Lifecycle state reported for a container the engine does not know about
ABSENT = "absent"
RUNNING = "running"

# Written onto every container the agent creates; discovery queries these
ROLE_LABEL = "dockhand.role"
IMAGE_LABEL = "dockhand.image"
SERVICE_ROLE = "service"
PROXY_ROLE = "proxy"


@dataclass
class ManagedContainer:
    id: str
    name: str
    image: str  # reference as created, name:tag
    image_id: str
    state: str
    labels: Dict[str, str] = field(default_factory=dict)
    created_at: str = ""
    restart_count: int = 0


@dataclass
class NetworkHandle:
    name: str
    exists: bool


@dataclass
class ContainerSpec:
    """Everything needed to create and start one container"""

    name: str
    image: str
    command: List[str] = field(default_factory=list)
    environment: List[str] = field(default_factory=list)
    ports: Dict[str, int] = field(default_factory=dict)  # {"8080/tcp": 8080}
    binds: List[str] = field(default_factory=list)  # ["/host:/container"]
    labels: Dict[str, str] = field(default_factory=dict)
    network: Optional[str] = None
    restart_policy: Optional[Dict[str, str]] = None


class ContainerEngine(Protocol):
    """Container primitives against a single host's runtime.

    Implementations raise their own exceptions on failure; the orchestrator
    wraps them with the failing step and subject.
    """

    def list_containers(
        self,
        labels: Optional[Dict[str, str]] = None,
        image_contains: Optional[str] = None,
        container_id: Optional[str] = None,
    ) -> List[ManagedContainer]: ...

    def get_container(self, container_id: str) -> Optional[ManagedContainer]: ...

    def ensure_network(self, name: str) -> NetworkHandle: ...

    def pull_image(
        self, name: str, tag: str, credentials: Optional[RegistryCredentials] = None
    ) -> str: ...

    def run_container(self, spec: ContainerSpec) -> str: ...

    def stop_container(self, container_id: str, timeout: int = 10) -> None: ...

    def remove_container_and_image(
        self, container_id: str, image_id: Optional[str] = None, force: bool = True
    ) -> None: ...

    def ping(self) -> bool: ...


def parse_image_reference(reference: str):
    """Split "name:tag" into (name, tag).

    A reference without a colon has an empty tag. More than one colon (for
    example a registry with an explicit port) is rejected rather than guessed.
    """
    parts = reference.split(":")
    if len(parts) == 1:
        return parts[0], ""
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ImageReferenceError(reference)


def container_state(engine: ContainerEngine, container_id: str) -> str:
    """Lifecycle state of a container, `absent` when the engine has no record"""
    container = engine.get_container(container_id)
    if container is None:
        return ABSENT
    return container.state


class DockerEngine:
    """`ContainerEngine` backed by the docker SDK"""

    def __init__(self, client=None):
        self.client = client or docker.from_env()

    def _to_managed(self, container) -> ManagedContainer:
        attrs = container.attrs
        config = attrs.get("Config") or {}
        state = attrs.get("State") or {}
        return ManagedContainer(
            id=container.id,
            name=container.name,
            image=config.get("Image", ""),
            image_id=attrs.get("Image", ""),
            state=state.get("Status", container.status),
            labels=config.get("Labels") or {},
            created_at=attrs.get("Created", ""),
            restart_count=attrs.get("RestartCount", 0),
        )

    def list_containers(self, labels=None, image_contains=None, container_id=None):
        """List containers in any state, filtered by labels, image or id"""
        filters = {}
        if labels:
            filters["label"] = [f"{key}={value}" for key, value in labels.items()]
        if container_id:
            filters["id"] = container_id

        containers = [
            self._to_managed(c) for c in self.client.containers.list(all=True, filters=filters)
        ]
        if image_contains:
            containers = [c for c in containers if image_contains in c.image]
        return containers

    def get_container(self, container_id: str) -> Optional[ManagedContainer]:
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return None
        return self._to_managed(container)

    def ensure_network(self, name: str) -> NetworkHandle:
        """Create a bridge network unless one with this exact name exists"""
        if any(n.name == name for n in self.client.networks.list(names=[name])):
            return NetworkHandle(name=name, exists=True)

        try:
            self.client.networks.create(name, driver="bridge")
        except APIError as e:
            # Lost a race with another creator
            if e.status_code != 409:
                raise
        log_container_operation("create_network", name, "success")
        return NetworkHandle(name=name, exists=True)

    def pull_image(self, name, tag, credentials=None) -> str:
        """Pull name:tag and return the local image id"""
        auth_config = None
        if credentials is not None:
            logger.info("Using registry auth", image_name=name)
            auth_config = {
                "username": credentials.username,
                "password": credentials.password,
            }
        image = self.client.images.pull(name, tag=tag, auth_config=auth_config)
        log_container_operation("pull", f"{name}:{tag}", "success", {"image_id": image.id})
        return image.id

    def run_container(self, spec: ContainerSpec) -> str:
        run_kwargs = {
            "image": spec.image,
            "name": spec.name,
            "detach": True,
            "environment": spec.environment,
            "ports": spec.ports,
            "labels": spec.labels,
        }
        if spec.command:
            run_kwargs["command"] = spec.command
        if spec.binds:
            run_kwargs["volumes"] = spec.binds
        if spec.network:
            run_kwargs["network"] = spec.network
        if spec.restart_policy:
            run_kwargs["restart_policy"] = spec.restart_policy

        container = self.client.containers.run(**run_kwargs)
        log_container_operation("run", container.id, "success", {"name": spec.name})
        return container.id

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        container = self.client.containers.get(container_id)
        container.stop(timeout=timeout)
        log_container_operation("stop", container_id, "success")

    def remove_container_and_image(self, container_id, image_id=None, force=True) -> None:
        """Remove a container with its anonymous volumes, then its image"""
        container = self.client.containers.get(container_id)
        container.remove(v=True, force=force)
        log_container_operation("remove_container", container_id, "success")

        if image_id:
            self.client.images.remove(image_id, force=force)
            log_container_operation("remove_image", image_id, "success")

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception as e:
            logger.warning("Container engine ping failed", error=str(e))
            return False
