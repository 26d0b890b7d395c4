import asyncio
import threading
from collections import defaultdict

import pytest

from portainerstore.cache import LocalCache
from portainerstore.config import ConfigManager, Preferences
from portainerstore.model import ContainerDetails, ContainerState
from portainerstore.secrets import SecretStore
from portainerstore.store import PortainerStore

SERVER = "https://portainer.local"
OTHER_SERVER = "https://other.local"


class FakeBackend:
    """Remote client whose calls can be held until the test releases them."""

    def __init__(self):
        self.url = None
        self._token = None
        self.endpoints = []
        self.containers = {}
        self.stacks = []
        self.responses = defaultdict(list)
        self.calls = defaultdict(list)
        self._gates = {}
        self._lock = threading.Lock()

    @property
    def is_setup(self):
        return self.url is not None and self._token is not None

    def setup(self, url, token):
        self.url = url.rstrip('/')
        self._token = token

    def reset(self):
        self.url = None
        self._token = None

    def hold(self, name, index=0):
        gate = threading.Event()
        self._gates[(name, index)] = gate
        return gate

    def release_all(self):
        for gate in self._gates.values():
            gate.set()

    def _respond(self, name, default, *args):
        with self._lock:
            index = len(self.calls[name])
            self.calls[name].append(args)
            queued = self.responses[name]
            response = queued[index] if index < len(queued) else default
            gate = self._gates.get((name, index))
        if gate is not None:
            gate.wait(timeout=5)
        if isinstance(response, Exception):
            raise response
        return response

    def fetch_endpoints(self):
        return self._respond("endpoints", self.endpoints)

    def fetch_containers(self, endpoint_id):
        return self._respond("containers", self.containers.get(endpoint_id, []), endpoint_id)

    def fetch_stacks(self):
        return self._respond("stacks", self.stacks)

    def inspect_container(self, container_id, endpoint_id):
        details = ContainerDetails(id=container_id, name="web", image="nginx:latest",
                                   state=ContainerState.RUNNING)
        return self._respond("inspect", details, container_id, endpoint_id)

    def execute_container_action(self, container_id, endpoint_id, action):
        return self._respond("action", None, container_id, endpoint_id, action)

    def remove_container(self, container_id, endpoint_id, force=True):
        return self._respond("remove_container", None, container_id, endpoint_id, force)

    def set_stack_state(self, stack_id, endpoint_id, started):
        return self._respond("stack_state", None, stack_id, endpoint_id, started)

    def remove_stack(self, stack_id, endpoint_id):
        return self._respond("remove_stack", None, stack_id, endpoint_id)


async def wait_for_calls(backend, name, count, timeout=5.0):
    """Wait until the fake backend has seen `count` calls of `name`."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(backend.calls[name]) < count:
        if loop.time() > deadline:
            raise AssertionError(f"expected {count} {name} calls, got {len(backend.calls[name])}")
        await asyncio.sleep(0.01)


@pytest.fixture
def backend():
    fake = FakeBackend()
    yield fake
    fake.release_all()


@pytest.fixture
def config_manager(tmp_path):
    return ConfigManager(tmp_path / "config")


@pytest.fixture
def preferences(config_manager):
    return Preferences(config_manager)


@pytest.fixture
def cache(tmp_path):
    return LocalCache(tmp_path / "cache")


@pytest.fixture
def secrets(tmp_path):
    return SecretStore(tmp_path / "config")


@pytest.fixture
def make_store(backend, secrets, cache, preferences):
    stores = []

    def factory(**kwargs):
        store = PortainerStore(backend, secrets, cache, preferences, **kwargs)
        stores.append(store)
        return store

    yield factory
    backend.release_all()
    for store in stores:
        store.close()
