"""
Agent Configuration

Environment-driven settings for the deployment agent. A `.env` file is
loaded by the entry points before these are read.
"""

import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class AgentSettings:
    token: str = "default-secret-token"
    network_name: str = "dockhand-network"
    service_name: str = "dockhand-service"
    proxy_name: str = "dockhand-traefik"
    default_proxy_image: str = "traefik:v3.3.0"
    cert_resolver: str = "dockhand_resolver"
    acme_storage_path: str = "/acme/acme.json"
    acme_host_path: str = "/etc/traefik/acme/acme.json"
    docker_socket: str = "/var/run/docker.sock"
    # Proxy readiness deadline is (attempts - 1) * interval seconds
    readiness_attempts: int = 30
    readiness_interval: float = 1.0
    stop_timeout: int = 10

    @classmethod
    def from_env(cls) -> "AgentSettings":
        defaults = cls()
        return cls(
            token=os.getenv("DOCKHAND_TOKEN", defaults.token),
            network_name=os.getenv("DOCKHAND_NETWORK", defaults.network_name),
            service_name=os.getenv("DOCKHAND_SERVICE_NAME", defaults.service_name),
            proxy_name=os.getenv("DOCKHAND_PROXY_NAME", defaults.proxy_name),
            default_proxy_image=os.getenv(
                "DOCKHAND_DEFAULT_PROXY_IMAGE", defaults.default_proxy_image
            ),
            cert_resolver=os.getenv("DOCKHAND_CERT_RESOLVER", defaults.cert_resolver),
            acme_storage_path=os.getenv(
                "DOCKHAND_ACME_STORAGE", defaults.acme_storage_path
            ),
            acme_host_path=os.getenv("DOCKHAND_ACME_HOST_PATH", defaults.acme_host_path),
            docker_socket=os.getenv("DOCKHAND_DOCKER_SOCKET", defaults.docker_socket),
            readiness_attempts=int(
                os.getenv("DOCKHAND_READINESS_ATTEMPTS", defaults.readiness_attempts)
            ),
            readiness_interval=float(
                os.getenv("DOCKHAND_READINESS_INTERVAL", defaults.readiness_interval)
            ),
            stop_timeout=int(os.getenv("DOCKHAND_STOP_TIMEOUT", defaults.stop_timeout)),
        )


@lru_cache
def get_settings() -> AgentSettings:
    """Settings for this process, read from the environment once"""
    return AgentSettings.from_env()
