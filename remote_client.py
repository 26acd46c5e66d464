"""
Remote Client Module

Caller-side helpers for driving the agent on many hosts. Hosts are handled
one after another; each host's deployment is independent of the others.
"""

from typing import Dict, Iterable, Optional

import httpx

from models import ContainerStatus, DeployRequest, DeployResponse
from utils import logger, DockhandException

AGENT_PORT = 3030


class AgentRequestError(DockhandException):
    """The agent on a host rejected a request or could not be reached"""

    def __init__(self, host: str, message: str, status_code: int = 502, error_code: str = None):
        self.host = host
        super().__init__(f"{host}: {message}", error_code or "AGENT_ERROR", status_code)


class AgentClient:
    """HTTP client for the agent running on one host"""

    def __init__(
        self,
        host: str,
        token: str,
        port: int = AGENT_PORT,
        timeout: float = 300.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.host = host
        self._client = httpx.Client(
            base_url=f"http://{host}:{port}",
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise AgentRequestError(self.host, f"request failed: {e}") from e

    def _raise_for_error(self, response: httpx.Response):
        try:
            body = response.json()
        except ValueError:
            body = {"detail": response.text}
        raise AgentRequestError(
            self.host,
            str(body.get("detail", "")),
            status_code=response.status_code,
            error_code=body.get("error_code"),
        )

    def deploy(self, request: DeployRequest) -> DeployResponse:
        response = self._request(
            "POST", "/deploy", json=request.model_dump(exclude_none=True)
        )
        if response.status_code != 200:
            self._raise_for_error(response)
        return DeployResponse.model_validate(response.json())

    def status(self) -> Optional[ContainerStatus]:
        """Service container status, or None when the host runs no service"""
        response = self._request("GET", "/api/v1/status")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            self._raise_for_error(response)
        return ContainerStatus.model_validate(response.json())


def deploy_to_hosts(
    hosts: Iterable[str],
    request: DeployRequest,
    token: str,
    port: int = AGENT_PORT,
    transport: Optional[httpx.BaseTransport] = None,
) -> Dict[str, DeployResponse]:
    """Deploy to each host in order, stopping at the first host that fails"""
    results = {}
    for host in hosts:
        logger.info("Deploying to host", host=host, image_name=request.image_name, tag=request.tag)
        with AgentClient(host, token, port=port, transport=transport) as client:
            try:
                results[host] = client.deploy(request)
            except AgentRequestError as e:
                logger.error("Deployment failed", host=host, error=e.message)
                raise
        logger.info("Deployed to host", host=host, container_id=results[host].container_id)
    return results


def collect_status(
    hosts: Iterable[str],
    token: str,
    port: int = AGENT_PORT,
    transport: Optional[httpx.BaseTransport] = None,
) -> Dict[str, ContainerStatus]:
    """Status per host; hosts that fail or run no service are left out"""
    statuses = {}
    for host in hosts:
        with AgentClient(host, token, port=port, transport=transport) as client:
            try:
                status = client.status()
            except AgentRequestError as e:
                logger.warning("Could not get status", host=host, error=e.message)
                continue
        if status is None:
            logger.info("Service container not found", host=host)
            continue
        statuses[host] = status
    return statuses
