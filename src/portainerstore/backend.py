"""
Portainer API wrapper and backend operations.

This module provides a blocking interface to a Portainer server via the
docker-py library. Portainer exposes its own REST API for endpoints and
stacks, and proxies the Docker Engine API of every endpoint under
/api/endpoints/{id}/docker, so docker-py can talk to it directly:
  - Fetching endpoints and stacks (REST, through a docker-py APIClient session)
  - Fetching and inspecting containers (docker-py DockerClient per endpoint)
  - Executing container actions (start, stop, restart, pause, unpause, kill)
  - Removing containers, starting/stopping and removing stacks

All methods follow a fail-loud pattern: exceptions are logged and re-raised
as RemoteFailure so the store can keep its previous state and tell the user.

Key Classes:
  - PortainerBackend: Credentials holder and API wrapper

Error Handling:
  - No server configured → NotSetUp
  - HTTP errors → RemoteFailure carrying the status code
  - Connection errors, timeouts, malformed payloads → RemoteFailure

Dependencies:
  - docker>=7.0.0 (docker-py client, requests under the hood)
"""

import functools
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import docker
import requests
from docker.errors import create_api_error_from_http_exception
from docker.tls import TLSConfig

from .errors import NotSetUp, PortainerStoreError, RemoteFailure
from .model import (
    Container, ContainerAction, ContainerDetails, Endpoint, Stack, sorted_resources,
)

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "1.41"
DEFAULT_TIMEOUT = 30


def remote_call(func: Callable) -> Callable:
    """
    Decorator for Portainer API methods that normalizes failures.

    Store errors (NotSetUp, ...) pass through untouched; anything else is
    logged and wrapped in RemoteFailure with the original chained.

    Usage:
        @remote_call
        def fetch_endpoints(self) -> List[Endpoint]:
            ...
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except PortainerStoreError:
            raise
        except Exception as e:
            logger.error(f"Portainer operation failed in {func.__name__}: {e}", exc_info=True)
            status_code = getattr(e, 'status_code', None)
            if status_code is None:
                response = getattr(e, 'response', None)
                status_code = getattr(response, 'status_code', None)
            raise RemoteFailure(str(e), status_code=status_code) from e
    return wrapper


class PortainerBackend:
    def __init__(self, api_version: str = DEFAULT_API_VERSION, timeout: int = DEFAULT_TIMEOUT,
                 verify_tls: bool = True):
        self.api_version = api_version
        self.timeout = timeout
        self.verify_tls = verify_tls
        self._lock = threading.RLock()
        self._url: Optional[str] = None
        self._token: Optional[str] = None
        self._session: Optional[docker.APIClient] = None
        self._clients: Dict[int, docker.DockerClient] = {}

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def is_setup(self) -> bool:
        with self._lock:
            return self._url is not None and self._token is not None

    def setup(self, url: str, token: str) -> None:
        with self._lock:
            self.reset()
            self._url = url.rstrip('/')
            self._token = token

    def reset(self) -> None:
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()
            if self._session is not None:
                self._session.close()
                self._session = None
            self._url = None
            self._token = None

    # Connections

    def _credentials(self) -> Tuple[str, str]:
        with self._lock:
            if self._url is None or self._token is None:
                raise NotSetUp()
            return self._url, self._token

    def _tls(self, url: str):
        if urlparse(url).scheme == 'https':
            return TLSConfig(verify=self.verify_tls)
        return False

    def _base_url(self, url: str) -> str:
        # docker-py assumes the Docker daemon ports when none is given
        parsed = urlparse(url)
        port = parsed.port or (443 if parsed.scheme == 'https' else 80)
        return f"{parsed.scheme}://{parsed.hostname}:{port}{parsed.path}"

    def _rest(self) -> Tuple[docker.APIClient, str]:
        url, token = self._credentials()
        with self._lock:
            if self._session is None:
                self._session = docker.APIClient(
                    base_url=self._base_url(url),
                    version=self.api_version,
                    timeout=self.timeout,
                    tls=self._tls(url),
                )
                self._session.headers['X-API-Key'] = token
            return self._session, url

    def _docker(self, endpoint_id: int) -> docker.DockerClient:
        url, token = self._credentials()
        with self._lock:
            client = self._clients.get(endpoint_id)
            if client is None:
                client = docker.DockerClient(
                    base_url=f"{self._base_url(url)}/api/endpoints/{endpoint_id}/docker",
                    version=self.api_version,
                    timeout=self.timeout,
                    tls=self._tls(url),
                )
                client.api.headers['X-API-Key'] = token
                self._clients[endpoint_id] = client
            return client

    def _request(self, method: str, path: str, **params) -> Any:
        session, url = self._rest()
        response = session.request(method, f"{url}/api{path}", params=params or None, timeout=self.timeout)
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            create_api_error_from_http_exception(e)
        if not response.content:
            return None
        return response.json()

    # Listings

    @remote_call
    def fetch_endpoints(self) -> List[Endpoint]:
        raw = self._request('GET', '/endpoints')
        endpoints = [Endpoint.from_api(e) for e in raw or []]
        logger.debug(f"Got {len(endpoints)} endpoints")
        return sorted_resources(endpoints)

    @remote_call
    def fetch_containers(self, endpoint_id: int) -> List[Container]:
        raw = self._docker(endpoint_id).containers.list(all=True, sparse=True)
        containers = [Container.from_api(c.attrs) for c in raw]
        logger.debug(f"Got {len(containers)} containers for endpoint {endpoint_id}")
        return sorted_resources(containers)

    @remote_call
    def fetch_stacks(self) -> List[Stack]:
        raw = self._request('GET', '/stacks')
        stacks = [Stack.from_api(s) for s in raw or []]
        logger.debug(f"Got {len(stacks)} stacks")
        return sorted_resources(stacks)

    @remote_call
    def inspect_container(self, container_id: str, endpoint_id: int) -> ContainerDetails:
        container = self._docker(endpoint_id).containers.get(container_id)
        return ContainerDetails.from_api(container.attrs)

    # Actions

    @remote_call
    def execute_container_action(self, container_id: str, endpoint_id: int, action: ContainerAction) -> None:
        container = self._docker(endpoint_id).containers.get(container_id)
        getattr(container, ContainerAction(action).value)()
        logger.info(f"Executed {ContainerAction(action).value} on container {container_id}")

    @remote_call
    def remove_container(self, container_id: str, endpoint_id: int, force: bool = True) -> None:
        self._docker(endpoint_id).containers.get(container_id).remove(force=force)
        logger.info(f"Removed container {container_id}")

    @remote_call
    def set_stack_state(self, stack_id: int, endpoint_id: Optional[int], started: bool) -> None:
        verb = 'start' if started else 'stop'
        self._request('POST', f'/stacks/{stack_id}/{verb}', endpointId=endpoint_id)
        logger.info(f"Stack {stack_id}: {verb}")

    @remote_call
    def remove_stack(self, stack_id: int, endpoint_id: Optional[int]) -> None:
        self._request('DELETE', f'/stacks/{stack_id}', endpointId=endpoint_id)
        logger.info(f"Removed stack {stack_id}")
