from unittest.mock import MagicMock

import pytest
import requests

from portainerstore.backend import PortainerBackend
from portainerstore.errors import NotSetUp, RemoteFailure
from portainerstore.model import (
    Container, ContainerAction, ContainerState, Endpoint, EndpointStatus, Stack, StackStatus,
)


def _response(payload=None, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.content = b"{}" if payload is not None else b""
    response.json.return_value = payload
    return response


@pytest.fixture
def docker_mocks(mocker):
    api_client = mocker.patch("portainerstore.backend.docker.APIClient")
    docker_client = mocker.patch("portainerstore.backend.docker.DockerClient")
    return api_client, docker_client


@pytest.fixture
def backend():
    backend = PortainerBackend(timeout=10)
    backend.setup("https://portainer.local/", "secret-token")
    return backend


def test_not_setup_raises():
    backend = PortainerBackend()
    assert backend.is_setup is False
    with pytest.raises(NotSetUp):
        backend.fetch_endpoints()
    with pytest.raises(NotSetUp):
        backend.fetch_containers(1)


def test_fetch_endpoints(docker_mocks, backend):
    api_client, _ = docker_mocks
    session = api_client.return_value
    session.request.return_value = _response([
        {"Id": 2, "Name": "remote", "Status": 2},
        {"Id": 1, "Name": "local", "Status": 1},
    ])

    endpoints = backend.fetch_endpoints()

    assert endpoints == [Endpoint(1, "local", EndpointStatus.UP), Endpoint(2, "remote", EndpointStatus.DOWN)]
    session.request.assert_called_once_with(
        'GET', "https://portainer.local/api/endpoints", params=None, timeout=10
    )
    assert api_client.call_args.kwargs['base_url'] == "https://portainer.local:443"
    session.headers.__setitem__.assert_called_with('X-API-Key', 'secret-token')


def test_fetch_containers_uses_endpoint_proxy(docker_mocks, backend):
    _, docker_client = docker_mocks
    client = docker_client.return_value
    client.containers.list.return_value = [
        MagicMock(attrs={"Id": "b", "Names": ["/web"], "State": "running"}),
        MagicMock(attrs={"Id": "a", "Names": ["/db"], "State": "exited"}),
    ]

    containers = backend.fetch_containers(3)

    assert containers == [
        Container("a", "db", ContainerState.EXITED),
        Container("b", "web", ContainerState.RUNNING),
    ]
    assert docker_client.call_args.kwargs['base_url'] == "https://portainer.local:443/api/endpoints/3/docker"
    client.containers.list.assert_called_once_with(all=True, sparse=True)

    # Clients are reused per endpoint
    backend.fetch_containers(3)
    assert docker_client.call_count == 1


def test_plain_http_keeps_port(docker_mocks):
    _, docker_client = docker_mocks
    docker_client.return_value.containers.list.return_value = []
    backend = PortainerBackend()
    backend.setup("http://10.0.0.5:9000", "t")
    backend.fetch_containers(1)
    kwargs = docker_client.call_args.kwargs
    assert kwargs['base_url'] == "http://10.0.0.5:9000/api/endpoints/1/docker"
    assert kwargs['tls'] is False


def test_fetch_stacks(docker_mocks, backend):
    api_client, _ = docker_mocks
    api_client.return_value.request.return_value = _response([
        {"Id": 4, "Name": "web", "Status": 1, "EndpointId": 1},
    ])
    assert backend.fetch_stacks() == [Stack(4, "web", StackStatus.ACTIVE, endpoint_id=1)]


def test_http_error_becomes_remote_failure(docker_mocks, backend):
    api_client, _ = docker_mocks
    response = _response({"message": "Invalid API key"}, status_code=401)
    response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=response)
    api_client.return_value.request.return_value = response

    with pytest.raises(RemoteFailure) as excinfo:
        backend.fetch_endpoints()
    assert excinfo.value.status_code == 401


def test_connection_error_becomes_remote_failure(docker_mocks, backend):
    api_client, _ = docker_mocks
    api_client.return_value.request.side_effect = requests.exceptions.ConnectionError("refused")

    with pytest.raises(RemoteFailure) as excinfo:
        backend.fetch_stacks()
    assert excinfo.value.status_code is None
    assert isinstance(excinfo.value.__cause__, requests.exceptions.ConnectionError)


def test_inspect_container(docker_mocks, backend):
    _, docker_client = docker_mocks
    docker_client.return_value.containers.get.return_value = MagicMock(attrs={
        "Id": "abc", "Name": "/web", "State": {"Status": "paused"}, "Config": {"Image": "nginx"},
    })
    details = backend.inspect_container("abc", 1)
    assert details.name == "web"
    assert details.state == ContainerState.PAUSED
    docker_client.return_value.containers.get.assert_called_once_with("abc")


def test_container_action(docker_mocks, backend):
    _, docker_client = docker_mocks
    container = docker_client.return_value.containers.get.return_value
    backend.execute_container_action("abc", 1, ContainerAction.RESTART)
    container.restart.assert_called_once()


def test_remove_container_force(docker_mocks, backend):
    _, docker_client = docker_mocks
    container = docker_client.return_value.containers.get.return_value
    backend.remove_container("abc", 1)
    container.remove.assert_called_once_with(force=True)


def test_stack_state_and_removal(docker_mocks, backend):
    api_client, _ = docker_mocks
    session = api_client.return_value
    session.request.return_value = _response()

    backend.set_stack_state(4, 1, started=False)
    session.request.assert_called_with(
        'POST', "https://portainer.local/api/stacks/4/stop", params={'endpointId': 1}, timeout=10
    )

    backend.remove_stack(4, 1)
    session.request.assert_called_with(
        'DELETE', "https://portainer.local/api/stacks/4", params={'endpointId': 1}, timeout=10
    )


def test_reset_closes_clients(docker_mocks, backend):
    _, docker_client = docker_mocks
    docker_client.return_value.containers.list.return_value = []
    backend.fetch_containers(1)
    backend.reset()
    docker_client.return_value.close.assert_called_once()
    assert backend.is_setup is False
    assert backend.url is None
