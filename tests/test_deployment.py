import asyncio

import pytest
from pydantic import ValidationError

from container_engine import IMAGE_LABEL, PROXY_ROLE, ROLE_LABEL, SERVICE_ROLE
from deployment import Deployer, get_service_status, routing_labels, service_spec
from models import DeployRequest
from utils import (
    DiscoveryError,
    ImageReferenceError,
    LifecycleError,
    PreconditionError,
    PullError,
    ReadinessCancelled,
    ReadinessTimeout,
    ServiceNotFound,
)

PROXY_FIELDS = {
    "traefik_domain_name": "example.com",
    "traefik_image": "traefik:v3.3.0",
    "traefik_acme_email": "ops@example.com",
}


def make_request(**overrides):
    fields = {
        "image_name": "acme/web",
        "tag": "v2",
        "port": 8080,
        "env_vars": {"ENV": "prod", "DEBUG": "0"},
    }
    fields.update(overrides)
    return DeployRequest(**fields)


def run_deploy(engine, settings, request):
    return asyncio.run(Deployer(engine, settings).deploy(request))


def service_containers(engine):
    return [c for c in engine.containers.values() if c.labels.get(ROLE_LABEL) == SERVICE_ROLE]


def proxy_containers(engine):
    return [c for c in engine.containers.values() if c.labels.get(ROLE_LABEL) == PROXY_ROLE]


class TestServiceSpec:
    """Container spec built for the service"""

    def test_spec_without_proxy(self, settings):
        spec = service_spec(make_request(), settings)
        assert spec.image == "acme/web:v2"
        assert spec.name == settings.service_name
        assert sorted(spec.environment) == ["DEBUG=0", "ENV=prod"]
        assert spec.ports == {"8080/tcp": 8080}
        assert spec.network is None
        assert spec.labels == {ROLE_LABEL: SERVICE_ROLE, IMAGE_LABEL: "acme/web"}

    def test_spec_with_proxy_has_routing_labels(self, settings):
        spec = service_spec(make_request(**PROXY_FIELDS), settings)
        assert spec.network == settings.network_name
        assert spec.labels["traefik.enable"] == "true"
        assert (
            spec.labels["traefik.http.routers.dockhand.rule"]
            == "Host(`example.com`) || Host(`www.example.com`)"
        )
        assert spec.labels["traefik.http.routers.dockhand.entrypoints"] == "websecure"
        assert spec.labels["traefik.http.routers.dockhand.tls"] == "true"
        assert (
            spec.labels["traefik.http.routers.dockhand.tls.certresolver"]
            == settings.cert_resolver
        )

    def test_routing_labels_carry_service_port(self):
        labels = routing_labels("example.com", 9000, "resolver")
        assert labels["traefik.http.services.dockhand.loadbalancer.server.port"] == "9000"


class TestDeploy:
    """Orchestration against the in-memory engine"""

    def test_fresh_deploy_without_proxy(self, fake_engine, settings):
        container_id = run_deploy(fake_engine, settings, make_request())

        assert [c.id for c in service_containers(fake_engine)] == [container_id]
        assert fake_engine.called("ensure_network") == []
        assert fake_engine.called("get_container") == []
        assert fake_engine.called("pull_image") == [("pull_image", "acme/web", "v2", None)]

    def test_deploy_with_proxy_creates_network_and_proxy(self, fake_engine, settings):
        container_id = run_deploy(fake_engine, settings, make_request(**PROXY_FIELDS))

        assert settings.network_name in fake_engine.networks
        proxies = proxy_containers(fake_engine)
        assert len(proxies) == 1
        assert proxies[0].image == "traefik:v3.3.0"
        assert fake_engine.containers[container_id].labels["traefik.enable"] == "true"
        assert fake_engine.last_spec.network == settings.network_name

    def test_network_is_ensured_before_proxy(self, fake_engine, settings):
        run_deploy(fake_engine, settings, make_request(**PROXY_FIELDS))
        methods = [call[0] for call in fake_engine.calls]
        assert methods.index("ensure_network") < methods.index("list_containers")

    def test_repeat_deploy_replaces_service_and_keeps_proxy(self, fake_engine, settings):
        request = make_request(**PROXY_FIELDS)
        first = run_deploy(fake_engine, settings, request)
        proxy_id = proxy_containers(fake_engine)[0].id

        second = run_deploy(fake_engine, settings, request)

        assert second != first
        assert [c.id for c in service_containers(fake_engine)] == [second]
        assert [c.id for c in proxy_containers(fake_engine)] == [proxy_id]
        assert len([c for c in fake_engine.called("pull_image") if c[1] == "traefik"]) == 1

    def test_same_tag_redeploy_keeps_pulled_image(self, fake_engine, settings):
        request = make_request()
        run_deploy(fake_engine, settings, request)
        run_deploy(fake_engine, settings, request)

        removal = fake_engine.called("remove_container_and_image")[0]
        assert removal[2] is None
        assert "acme/web:v2" in fake_engine.images

    def test_old_image_removed_on_new_tag(self, fake_engine, settings):
        old_id = fake_engine.add_container(
            "dockhand-service",
            "acme/web:v1",
            {ROLE_LABEL: SERVICE_ROLE, IMAGE_LABEL: "acme/web"},
            image_id="sha256:old",
        )

        new_id = run_deploy(fake_engine, settings, make_request())

        assert old_id not in fake_engine.containers
        assert fake_engine.called("stop_container") == [("stop_container", old_id, 10)]
        assert fake_engine.called("remove_container_and_image") == [
            ("remove_container_and_image", old_id, "sha256:old", True)
        ]
        assert fake_engine.containers[new_id].image == "acme/web:v2"

    def test_pull_failure_leaves_current_container_running(self, fake_engine, settings):
        old_id = fake_engine.add_container(
            "dockhand-service",
            "acme/web:v1",
            {ROLE_LABEL: SERVICE_ROLE, IMAGE_LABEL: "acme/web"},
        )
        fake_engine.failures["pull_image"] = RuntimeError("manifest unknown")

        with pytest.raises(PullError) as exc_info:
            run_deploy(fake_engine, settings, make_request())

        assert exc_info.value.step == "pull_image"
        assert exc_info.value.subject == "acme/web:v2"
        assert "manifest unknown" in exc_info.value.message
        assert fake_engine.containers[old_id].state == "running"
        assert fake_engine.called("stop_container") == []

    def test_other_images_are_not_touched(self, fake_engine, settings):
        other_id = fake_engine.add_container(
            "db", "acme/web-db:v1", {ROLE_LABEL: SERVICE_ROLE, IMAGE_LABEL: "acme/web-db"}
        )
        run_deploy(fake_engine, settings, make_request())
        assert fake_engine.containers[other_id].state == "running"

    def test_proxy_version_converges(self, fake_engine, settings):
        old_proxy = fake_engine.add_container(
            "dockhand-traefik", "traefik:v3.2.0", {ROLE_LABEL: PROXY_ROLE}
        )

        run_deploy(fake_engine, settings, make_request(**PROXY_FIELDS))

        proxies = proxy_containers(fake_engine)
        assert len(proxies) == 1
        assert proxies[0].id != old_proxy
        assert proxies[0].image.split(":")[1] == "v3.3.0"

    def test_registry_credentials_used_for_service_pull(self, fake_engine, settings):
        request = make_request(registry_user="bot", registry_pass="secret", **PROXY_FIELDS)
        run_deploy(fake_engine, settings, request)

        pulls = {call[1]: call[3] for call in fake_engine.called("pull_image")}
        assert pulls["traefik"] is None
        assert pulls["acme/web"].username == "bot"
        assert pulls["acme/web"].password == "secret"

    @pytest.mark.parametrize(
        "partial",
        [
            {"traefik_domain_name": "example.com"},
            {"traefik_domain_name": "example.com", "traefik_image": "traefik:v3.3.0"},
            {"traefik_acme_email": "ops@example.com"},
        ],
    )
    def test_partial_proxy_parameters_rejected_before_engine(self, fake_engine, settings, partial):
        with pytest.raises(ValidationError):
            make_request(**partial)

        request = DeployRequest.model_construct(
            image_name="acme/web", tag="v2", port=8080, env_vars={}, **partial
        )
        with pytest.raises(PreconditionError):
            run_deploy(fake_engine, settings, request)
        assert fake_engine.calls == []

    def test_malformed_proxy_image_rejected_before_engine(self, fake_engine, settings):
        request = make_request(**dict(PROXY_FIELDS, traefik_image="registry:5000/traefik:v3"))
        with pytest.raises(PreconditionError):
            run_deploy(fake_engine, settings, request)
        assert fake_engine.calls == []

    def test_stop_failure_is_lifecycle_error(self, fake_engine, settings):
        old_id = fake_engine.add_container(
            "dockhand-service",
            "acme/web:v1",
            {ROLE_LABEL: SERVICE_ROLE, IMAGE_LABEL: "acme/web"},
        )
        fake_engine.failures["stop_container"] = RuntimeError("timeout")

        with pytest.raises(LifecycleError) as exc_info:
            run_deploy(fake_engine, settings, make_request())

        assert exc_info.value.step == "stop_container"
        assert exc_info.value.subject == old_id
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_remove_failure_is_fatal(self, fake_engine, settings):
        fake_engine.add_container(
            "dockhand-service",
            "acme/web:v1",
            {ROLE_LABEL: SERVICE_ROLE, IMAGE_LABEL: "acme/web"},
        )
        fake_engine.failures["remove_container_and_image"] = RuntimeError("image in use")

        with pytest.raises(LifecycleError) as exc_info:
            run_deploy(fake_engine, settings, make_request())

        assert exc_info.value.step == "remove_container"
        assert fake_engine.called("run_container") == []

    def test_discovery_failure(self, fake_engine, settings):
        fake_engine.failures["list_containers"] = RuntimeError("daemon unreachable")
        with pytest.raises(DiscoveryError) as exc_info:
            run_deploy(fake_engine, settings, make_request())
        assert exc_info.value.step == "find_service"

    def test_network_failure(self, fake_engine, settings):
        fake_engine.failures["ensure_network"] = RuntimeError("no space")
        with pytest.raises(LifecycleError) as exc_info:
            run_deploy(fake_engine, settings, make_request(**PROXY_FIELDS))
        assert exc_info.value.subject == settings.network_name

    def test_proxy_readiness_timeout_leaves_proxy_in_place(self, fake_engine, settings):
        original_run = fake_engine.run_container

        def run_and_stall(spec):
            container_id = original_run(spec)
            fake_engine.forced_states[container_id] = "created"
            return container_id

        fake_engine.run_container = run_and_stall

        with pytest.raises(ReadinessTimeout) as exc_info:
            run_deploy(fake_engine, settings, make_request(**PROXY_FIELDS))

        assert exc_info.value.last_state == "created"
        assert exc_info.value.attempts == settings.readiness_attempts
        assert len(proxy_containers(fake_engine)) == 1
        assert service_containers(fake_engine) == []

    def test_cancelled_proxy_wait_stops_the_run(self, fake_engine, settings):
        old_id = fake_engine.add_container(
            "dockhand-service",
            "acme/web:v1",
            {ROLE_LABEL: SERVICE_ROLE, IMAGE_LABEL: "acme/web"},
        )

        async def deploy_cancelled():
            event = asyncio.Event()
            event.set()
            await Deployer(fake_engine, settings).deploy(
                make_request(**PROXY_FIELDS), cancel_event=event
            )

        with pytest.raises(ReadinessCancelled) as exc_info:
            asyncio.run(deploy_cancelled())

        assert exc_info.value.step == "wait_until_running"
        assert exc_info.value.status_code == 499
        assert len(proxy_containers(fake_engine)) == 1
        assert fake_engine.containers[old_id].state == "running"
        assert fake_engine.called("pull_image") == [
            ("pull_image", "traefik", "v3.3.0", None)
        ]


class TestServiceStatus:
    """Status query for the service container"""

    def test_status_reports_name_and_tag(self, fake_engine):
        fake_engine.add_container(
            "dockhand-service",
            "repo/image:v1",
            {ROLE_LABEL: SERVICE_ROLE, IMAGE_LABEL: "repo/image"},
        )
        status = get_service_status(fake_engine)
        assert status.image_name == "repo/image"
        assert status.tag == "v1"
        assert status.status == "running"
        assert status.created_at == "2024-05-01T10:00:00Z"
        assert status.restart_count == 0

    def test_status_without_service(self, fake_engine):
        with pytest.raises(ServiceNotFound):
            get_service_status(fake_engine)

    def test_status_with_registry_port_is_parse_error(self, fake_engine):
        fake_engine.add_container(
            "dockhand-service",
            "registry:5000/repo/image:v1",
            {ROLE_LABEL: SERVICE_ROLE, IMAGE_LABEL: "registry:5000/repo/image"},
        )
        with pytest.raises(ImageReferenceError):
            get_service_status(fake_engine)
