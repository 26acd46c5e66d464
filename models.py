from pydantic import BaseModel, Field, model_validator
from typing import Optional, Dict


class RegistryCredentials(BaseModel):
    username: str
    password: str


class ProxyParameters(BaseModel):
    domain_name: str
    image: str
    acme_email: str


class DeployRequest(BaseModel):
    image_name: str = Field(min_length=1)
    tag: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    env_vars: Dict[str, str] = {}
    registry_user: Optional[str] = None
    registry_pass: Optional[str] = None
    # Reverse proxy: all three or none
    traefik_domain_name: Optional[str] = None
    traefik_image: Optional[str] = None
    traefik_acme_email: Optional[str] = None

    @model_validator(mode="after")
    def check_parameter_groups(self):
        if proxy_parameter_count(self) not in (0, 3):
            raise ValueError(
                "traefik_domain_name, traefik_image and traefik_acme_email "
                "must be supplied together"
            )
        if (self.registry_user is None) != (self.registry_pass is None):
            raise ValueError("registry_user and registry_pass must be supplied together")
        return self

    @property
    def proxy_enabled(self) -> bool:
        return proxy_parameter_count(self) == 3

    @property
    def proxy(self) -> Optional[ProxyParameters]:
        if not self.proxy_enabled:
            return None
        return ProxyParameters(
            domain_name=self.traefik_domain_name,
            image=self.traefik_image,
            acme_email=self.traefik_acme_email,
        )

    @property
    def credentials(self) -> Optional[RegistryCredentials]:
        if self.registry_user is None or self.registry_pass is None:
            return None
        return RegistryCredentials(
            username=self.registry_user, password=self.registry_pass
        )


def proxy_parameter_count(request) -> int:
    """How many of the three reverse-proxy parameters are set"""
    values = (
        request.traefik_domain_name,
        request.traefik_image,
        request.traefik_acme_email,
    )
    return sum(1 for value in values if value is not None)


class DeployResponse(BaseModel):
    container_id: str
    image_name: str
    tag: str
    status: str = "deployed"


class ContainerStatus(BaseModel):
    image_name: str
    tag: str
    created_at: str
    restart_count: int
    status: str
