import itertools

import pytest

from config import AgentSettings
from container_engine import ABSENT, ContainerSpec, ManagedContainer, NetworkHandle


class FakeEngine:
    """In-memory container engine recording every call"""

    def __init__(self):
        self.containers = {}
        self.networks = set()
        self.images = {}  # "name:tag" -> image id
        self.calls = []
        self.failures = {}  # method name -> exception to raise
        self.forced_states = {}  # container id -> state reported by get_container
        self._ids = itertools.count(1)

    def _record(self, method, *args):
        self.calls.append((method,) + args)
        if method in self.failures:
            raise self.failures[method]

    def called(self, method):
        return [call for call in self.calls if call[0] == method]

    def add_container(self, name, image, labels, state="running", image_id=None):
        container_id = f"existing-{next(self._ids)}"
        image_id = image_id or f"sha256:{image}"
        self.images.setdefault(image, image_id)
        self.containers[container_id] = ManagedContainer(
            id=container_id,
            name=name,
            image=image,
            image_id=image_id,
            state=state,
            labels=dict(labels),
            created_at="2024-05-01T10:00:00Z",
        )
        return container_id

    def list_containers(self, labels=None, image_contains=None, container_id=None):
        self._record("list_containers", labels)
        found = []
        for container in self.containers.values():
            if any(container.labels.get(k) != v for k, v in (labels or {}).items()):
                continue
            if image_contains and image_contains not in container.image:
                continue
            if container_id and container.id != container_id:
                continue
            found.append(container)
        return found

    def get_container(self, container_id):
        self._record("get_container", container_id)
        if container_id in self.forced_states:
            state = self.forced_states[container_id]
            if state == ABSENT:
                return None
            container = self.containers[container_id]
            return ManagedContainer(
                id=container.id,
                name=container.name,
                image=container.image,
                image_id=container.image_id,
                state=state,
                labels=container.labels,
            )
        return self.containers.get(container_id)

    def ensure_network(self, name):
        self._record("ensure_network", name)
        self.networks.add(name)
        return NetworkHandle(name=name, exists=True)

    def pull_image(self, name, tag, credentials=None):
        self._record("pull_image", name, tag, credentials)
        return self.images.setdefault(f"{name}:{tag}", f"sha256:{name}:{tag}")

    def run_container(self, spec: ContainerSpec):
        self._record("run_container", spec)
        if any(c.name == spec.name for c in self.containers.values()):
            raise RuntimeError(f"Conflict. The container name {spec.name} is already in use")
        container_id = f"new-{next(self._ids)}"
        self.containers[container_id] = ManagedContainer(
            id=container_id,
            name=spec.name,
            image=spec.image,
            image_id=self.images.get(spec.image, f"sha256:{spec.image}"),
            state="running",
            labels=dict(spec.labels),
            created_at="2024-05-02T10:00:00Z",
        )
        self.last_spec = spec
        return container_id

    def stop_container(self, container_id, timeout=10):
        self._record("stop_container", container_id, timeout)
        self.containers[container_id].state = "exited"

    def remove_container_and_image(self, container_id, image_id=None, force=True):
        self._record("remove_container_and_image", container_id, image_id, force)
        del self.containers[container_id]
        if image_id:
            in_use = [
                c.id
                for c in self.containers.values()
                if c.image_id == image_id and c.state == "running"
            ]
            if in_use:
                raise RuntimeError(
                    f"conflict: unable to delete {image_id} (image is being used by "
                    f"running container {in_use[0]})"
                )
            self.images = {ref: i for ref, i in self.images.items() if i != image_id}

    def ping(self):
        return True


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def settings():
    return AgentSettings(readiness_attempts=3, readiness_interval=0.0)
