"""
PortainerStore: session, selection and refresh orchestration.

This module ties the collaborators together:
  - PortainerBackend (remote calls, run off the event loop via asyncio.to_thread)
  - LocalCache (last known listings, written on a single background worker)
  - SecretStore (tokens keyed by server URL)
  - Preferences (selected server and endpoint across restarts)
  - RefreshCoordinator (one refresh per resource class, newest wins)
  - StateManager (snapshots and subscribers)

Session lifecycle:
  torn down --setup()/login()--> active --reset()/switch_server()--> torn down

Cascading rules, applied after every state change:
  1. No endpoints: no selection, no containers (and no stacks when the
     endpoint list has just become empty)
  2. One endpoint: it is selected
  3. Several endpoints, list changed: the preferred endpoint is selected
     if present, otherwise nothing is
  4. A selection that is not in the list is cleared
  5. Containers fetched under another endpoint than the selection are
     dropped, together with the attached container
  6. Optimistically removed IDs are forgotten once the listing no longer
     contains them

Automatic selections (rules 2 and 3) never overwrite the preferred endpoint;
only select_endpoint() does.

Everything that mutates the store must run on the event loop that owns it.
"""

import asyncio
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Tuple, Union

from .backend import PortainerBackend
from .cache import LocalCache
from .config import ConfigManager, Preferences
from .errors import (
    ErrorHandler, NoSelectedEndpoint, NotAuthenticated, NotSetUp, PortainerStoreError,
    SecretStoreFailure,
)
from .model import (
    Container, ContainerAction, ContainerDetails, Endpoint, ResourceClass, Stack,
    StoreSnapshot, StoreState,
)
from .refresh import RefreshCoordinator, RefreshHandle
from .secrets import SecretStore
from .state import Observer, StateManager

logger = logging.getLogger(__name__)


class PortainerStore:
    """Main store for Portainer-related data."""

    def __init__(self,
                 backend: PortainerBackend,
                 secrets: SecretStore,
                 cache: LocalCache,
                 preferences: Preferences,
                 error_handler: Optional[ErrorHandler] = None):
        self.backend = backend
        self.secrets = secrets
        self.cache = cache
        self.preferences = preferences
        self.error_handler = error_handler

        self._state = StateManager()
        self._state.add_hook(self._enforce_selection)
        self._state.add_hook(self._prune_removed)
        self._refresh = RefreshCoordinator()
        self._persistence = ThreadPoolExecutor(max_workers=1, thread_name_prefix="portainerstore-cache")
        self._closed = False
        self._session = 0  # Bumped by reset()

        self.setup_task: Optional[asyncio.Task] = None
        self.setup_if_stored()

    @classmethod
    def from_config(cls, config_manager: Optional[ConfigManager] = None,
                    error_handler: Optional[ErrorHandler] = None) -> "PortainerStore":
        """Build a store with the default collaborators described by the configuration."""
        config_manager = config_manager or ConfigManager()
        config = config_manager.get_config()
        backend = PortainerBackend(
            api_version=config.portainer.api_version,
            timeout=config.portainer.timeout,
            verify_tls=config.portainer.verify_tls,
        )
        return cls(
            backend=backend,
            secrets=SecretStore(config_manager.config_dir),
            cache=LocalCache(config_manager.get_cache_dir()),
            preferences=Preferences(config_manager),
            error_handler=error_handler,
        )

    # Observable state

    @property
    def snapshot(self) -> StoreSnapshot:
        return self._state.get_snapshot()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        return self._state.subscribe(observer)

    @property
    def is_setup(self) -> bool:
        return self.snapshot.is_setup

    @property
    def server_url(self) -> Optional[str]:
        return self.snapshot.server_url

    @property
    def saved_urls(self) -> List[str]:
        try:
            return self.secrets.list()
        except SecretStoreFailure as e:
            logger.warning(f"Unable to list saved servers: {e}")
            return []

    @property
    def endpoints(self) -> Tuple[Endpoint, ...]:
        return self.snapshot.endpoints

    @property
    def containers(self) -> Tuple[Container, ...]:
        return self.snapshot.containers

    @property
    def stacks(self) -> Tuple[Stack, ...]:
        return self.snapshot.stacks

    @property
    def selected_endpoint_id(self) -> Optional[int]:
        return self.snapshot.selected_endpoint_id

    @property
    def is_refreshing(self) -> bool:
        return self._refresh.is_refreshing

    def refresh_handle(self, resource: ResourceClass) -> Optional[RefreshHandle]:
        return self._refresh.handle(resource)

    # Lifecycle

    def start(self) -> asyncio.Task:
        """Schedule loading of the cached listings. Must be called on the owning loop."""
        if self.setup_task is None:
            self.setup_task = asyncio.get_running_loop().create_task(self._load_stored())
        return self.setup_task

    async def flush(self) -> None:
        """Wait until every queued cache write has been applied."""
        await asyncio.wrap_future(self._persistence.submit(lambda: None))

    def close(self) -> None:
        self._refresh.cancel_all()
        self._closed = True
        self._persistence.shutdown(wait=True)

    # Session

    def setup_if_stored(self) -> bool:
        """Set up with the preferred server and its stored token, if both exist."""
        logger.debug("Looking for token...")
        url = self.preferences.selected_server
        if not url:
            logger.debug("No selected server")
            return False
        try:
            self._activate(url, token=None, persist_token=False)
        except PortainerStoreError as e:
            logger.warning(f"Failed to load token: {e}")
            return False
        logger.info(f"Got token for {url}")
        return True

    def setup(self, url: str, token: Optional[str] = None, persist_token: bool = True,
              error_handler: Optional[ErrorHandler] = None) -> None:
        """
        Activate a server session without touching the network.

        Args:
            url: Portainer server URL
            token: API token; looked up in the secret store when omitted
            persist_token: Write the token to the secret store (failures are logged)

        Raises:
            NotAuthenticated: No token given and none stored
            SecretStoreFailure: The stored token could not be read
        """
        with self._reporting(error_handler):
            self._activate(url, token, persist_token)

    def _activate(self, url: str, token: Optional[str], persist_token: bool) -> None:
        logger.info(f"Setting up, URL: {url}...")
        if token is None:
            token = self.secrets.get(url)
            if token is None:
                raise NotAuthenticated(url)

        self.backend.setup(url, token)
        with self._mutate() as state:
            state.is_setup = True
            state.server_url = url
        if self.preferences.selected_server != url:
            self.preferences.selected_server = url

        if persist_token:
            self._save_token(url, token)
        logger.debug(f"Setup with URL: {url} successfully")

    def _save_token(self, url: str, token: str) -> None:
        try:
            self.secrets.set(url, token)
        except SecretStoreFailure as e:
            logger.error(f"Unable to save token: {e}")

    async def login(self, url: str, token: str, error_handler: Optional[ErrorHandler] = None) -> List[Endpoint]:
        """
        Set up a session and confirm it with one endpoints refresh.

        The preferred server and the token are only stored once the server
        answered. On failure the session is torn down again.
        """
        with self._reporting(error_handler):
            if self.server_url not in (None, url):
                self.reset()
            logger.info(f"Logging in, URL: {url}...")
            self.backend.setup(url, token)
            with self._mutate() as state:
                state.is_setup = False
                state.server_url = url
            try:
                handle = self._start_endpoints(None)
                endpoints = await handle
                if handle.cancelled:
                    raise NotSetUp("Login was interrupted")
            except BaseException:
                if self.backend.url == url.rstrip('/'):
                    self._teardown_session()
                raise

            with self._mutate() as state:
                state.is_setup = True
            self.preferences.selected_server = url
            self._save_token(url, token)
            logger.info(f"Logged in to {url} with {len(endpoints)} endpoints")
            return endpoints

    def _teardown_session(self) -> None:
        self.backend.reset()
        with self._mutate() as state:
            state.is_setup = False
            state.server_url = None

    def switch_server(self, url: str, error_handler: Optional[ErrorHandler] = None) -> None:
        """Reset everything, then set up the new server with its stored token."""
        logger.info(f"Switching to {url}")
        self.reset()
        self.setup(url, persist_token=False, error_handler=error_handler)

    def reset(self) -> None:
        """Tear down the session and forget all listings. Safe to call repeatedly."""
        logger.info("Resetting")
        self._session += 1
        if self.setup_task is not None:
            self.setup_task.cancel()
            self.setup_task = None
        self._refresh.cancel_all()
        self.backend.reset()
        if self.preferences.selected_endpoint_id is not None:
            self.preferences.selected_endpoint_id = None
        with self._mutate() as state:
            fresh = StoreState()
            for name, value in vars(fresh).items():
                setattr(state, name, value)
        self._persist(self.cache.clear)

    def remove_server(self, url: str, error_handler: Optional[ErrorHandler] = None) -> None:
        """Delete the stored token of a server; resets the store if it was the active one."""
        logger.info(f"Removing server {url}")
        with self._reporting(error_handler):
            self.secrets.remove(url)
        if self.preferences.selected_server == url:
            self.preferences.selected_server = None
        if self.server_url == url:
            self.reset()

    # Selection

    def select_endpoint(self, endpoint: Union[Endpoint, int, None]) -> Optional[RefreshHandle]:
        """
        Select an endpoint (by object or ID) or clear the selection.

        A concrete endpoint becomes the preferred endpoint and its containers
        are refreshed. Clearing cancels any container refresh and drops the
        container listing.
        """
        endpoint_id = endpoint.id if isinstance(endpoint, Endpoint) else endpoint
        logger.info(f"Selected endpoint: {endpoint_id if endpoint_id is not None else '<none>'}")
        if endpoint_id is None:
            self._refresh.cancel(ResourceClass.CONTAINERS)

        with self._mutate() as state:
            state.selected_endpoint_id = endpoint_id

        if self.selected_endpoint_id == endpoint_id:
            self.preferences.selected_endpoint_id = endpoint_id
        else:
            logger.warning(f"Endpoint {endpoint_id} is not available, selection cleared")

        if self.selected_endpoint_id is None:
            return None
        return self.refresh_containers()

    def attach_container(self, container_id: Optional[str]) -> None:
        with self._mutate() as state:
            state.attached_container_id = container_id

    # Refresh

    def refresh(self, error_handler: Optional[ErrorHandler] = None) -> RefreshHandle:
        """
        Refresh endpoints, then containers of the selected endpoint, with
        stacks in parallel. A failed endpoints refresh skips containers.
        """
        async def endpoints_then_containers():
            await self._start_endpoints(None)
            if self.selected_endpoint_id is not None:
                await self._start_containers(None)

        async def fetch():
            if self.setup_task is not None:
                await self.setup_task
            self._require_setup()
            stacks = self._start_stacks(None)
            await asyncio.gather(endpoints_then_containers(), stacks)

        return self._refresh.run(
            ResourceClass.ALL,
            fetch=fetch,
            commit=lambda _: None,
            fallback=lambda: None,
            error_handler=self._reporter(error_handler),
        )

    def refresh_endpoints(self, error_handler: Optional[ErrorHandler] = None) -> RefreshHandle:
        return self._start_endpoints(self._reporter(error_handler))

    def refresh_containers(self, error_handler: Optional[ErrorHandler] = None) -> RefreshHandle:
        return self._start_containers(self._reporter(error_handler))

    def refresh_stacks(self, error_handler: Optional[ErrorHandler] = None) -> RefreshHandle:
        return self._start_stacks(self._reporter(error_handler))

    def _start_endpoints(self, reporter: Optional[ErrorHandler]) -> RefreshHandle:
        return self._refresh.run(
            ResourceClass.ENDPOINTS,
            fetch=lambda: self._fetch(self.backend.fetch_endpoints),
            commit=self._commit_endpoints,
            fallback=lambda: list(self.endpoints),
            error_handler=reporter,
        )

    def _start_containers(self, reporter: Optional[ErrorHandler]) -> RefreshHandle:
        endpoint_id = self.selected_endpoint_id

        async def fetch():
            self._require_setup()
            if endpoint_id is None:
                raise NoSelectedEndpoint()
            return await self._call(self.backend.fetch_containers, endpoint_id)

        return self._refresh.run(
            ResourceClass.CONTAINERS,
            fetch=fetch,
            commit=lambda containers: self._commit_containers(containers, endpoint_id),
            fallback=lambda: list(self.containers),
            error_handler=reporter,
        )

    def _start_stacks(self, reporter: Optional[ErrorHandler]) -> RefreshHandle:
        return self._refresh.run(
            ResourceClass.STACKS,
            fetch=lambda: self._fetch(self.backend.fetch_stacks),
            commit=self._commit_stacks,
            fallback=lambda: list(self.stacks),
            error_handler=reporter,
        )

    def _commit_endpoints(self, endpoints: List[Endpoint]) -> None:
        with self._mutate() as state:
            state.endpoints = tuple(endpoints)
        self._persist(self.cache.save_endpoints, list(endpoints))

    def _commit_containers(self, containers: List[Container], endpoint_id: int) -> None:
        if self.selected_endpoint_id != endpoint_id:
            logger.debug(f"Dropping containers of endpoint {endpoint_id}, selection moved on")
            return
        with self._mutate() as state:
            state.containers = tuple(containers)
            state.containers_endpoint_id = endpoint_id
        self._persist(self.cache.save_containers, list(containers), endpoint_id)

    def _commit_stacks(self, stacks: List[Stack]) -> None:
        with self._mutate() as state:
            state.stacks = tuple(stacks)
        self._persist(self.cache.save_stacks, list(stacks))

    # Container and stack operations

    async def inspect_container(self, container_id: str,
                                error_handler: Optional[ErrorHandler] = None) -> ContainerDetails:
        logger.debug(f"Getting details for container {container_id}...")
        with self._reporting(error_handler):
            endpoint_id = self._require_endpoint()
            return await self._call(self.backend.inspect_container, container_id, endpoint_id)

    async def execute_container_action(self, container_id: str, action: ContainerAction,
                                       error_handler: Optional[ErrorHandler] = None) -> RefreshHandle:
        with self._reporting(error_handler):
            endpoint_id = self._require_endpoint()
            await self._call(self.backend.execute_container_action, container_id, endpoint_id,
                             ContainerAction(action))
        return self.refresh_containers(error_handler)

    async def remove_container(self, container_id: str, force: bool = True,
                               error_handler: Optional[ErrorHandler] = None) -> None:
        with self._reporting(error_handler):
            endpoint_id = self._require_endpoint()
            with self._mutate() as state:
                state.removed_container_ids = state.removed_container_ids | {container_id}
            try:
                await self._call(self.backend.remove_container, container_id, endpoint_id, force)
            except BaseException:
                with self._mutate() as state:
                    state.removed_container_ids = state.removed_container_ids - {container_id}
                raise

        with self._mutate() as state:
            state.containers = tuple(c for c in state.containers if c.id != container_id)
            if state.attached_container_id == container_id:
                state.attached_container_id = None
        snapshot = self.snapshot
        self._persist(self.cache.save_containers, list(snapshot.containers), snapshot.containers_endpoint_id)

    async def set_stack_state(self, stack_id: int, started: bool,
                              error_handler: Optional[ErrorHandler] = None) -> RefreshHandle:
        with self._reporting(error_handler):
            self._require_setup()
            endpoint_id = self._stack_endpoint_id(stack_id)
            with self._mutate() as state:
                state.loading_stack_ids = state.loading_stack_ids | {stack_id}
            try:
                await self._call(self.backend.set_stack_state, stack_id, endpoint_id, started)
            finally:
                with self._mutate() as state:
                    state.loading_stack_ids = state.loading_stack_ids - {stack_id}
        return self.refresh_stacks(error_handler)

    async def remove_stack(self, stack_id: int, error_handler: Optional[ErrorHandler] = None) -> None:
        with self._reporting(error_handler):
            self._require_setup()
            endpoint_id = self._stack_endpoint_id(stack_id)
            with self._mutate() as state:
                state.removed_stack_ids = state.removed_stack_ids | {stack_id}
            try:
                await self._call(self.backend.remove_stack, stack_id, endpoint_id)
            except BaseException:
                with self._mutate() as state:
                    state.removed_stack_ids = state.removed_stack_ids - {stack_id}
                raise

        with self._mutate() as state:
            state.stacks = tuple(s for s in state.stacks if s.id != stack_id)
        self._persist(self.cache.save_stacks, list(self.stacks))

    def _stack_endpoint_id(self, stack_id: int) -> Optional[int]:
        for stack in self.stacks:
            if stack.id == stack_id and stack.endpoint_id is not None:
                return stack.endpoint_id
        return self.selected_endpoint_id

    # Cascading rules

    def _enforce_selection(self, state: StoreState, previous: StoreSnapshot) -> None:
        ids = [endpoint.id for endpoint in state.endpoints]
        if not ids:
            state.selected_endpoint_id = None
            state.containers = ()
            if previous.endpoints:
                state.stacks = ()
        elif len(ids) == 1:
            state.selected_endpoint_id = ids[0]
        elif state.endpoints != previous.endpoints:
            preferred = self.preferences.selected_endpoint_id
            state.selected_endpoint_id = preferred if preferred in ids else None
        elif state.selected_endpoint_id not in ids:
            state.selected_endpoint_id = None

        if state.containers_endpoint_id != state.selected_endpoint_id:
            if state.containers:
                logger.debug(f"Dropping containers of endpoint {state.containers_endpoint_id}")
            state.containers = ()
            state.containers_endpoint_id = state.selected_endpoint_id
            state.attached_container_id = None

    def _prune_removed(self, state: StoreState, previous: StoreSnapshot) -> None:
        if state.removed_container_ids:
            state.removed_container_ids = state.removed_container_ids & {c.id for c in state.containers}
        if state.removed_stack_ids:
            state.removed_stack_ids = state.removed_stack_ids & {s.id for s in state.stacks}

    # Helpers

    @contextmanager
    def _mutate(self) -> Iterator[StoreState]:
        before = self.selected_endpoint_id
        with self._state.mutate() as state:
            yield state
        after = self.selected_endpoint_id
        if after != before:
            logger.debug(f"Selection changed: {before} -> {after}")
            self._refresh.cancel(ResourceClass.CONTAINERS)

    @contextmanager
    def _reporting(self, error_handler: Optional[ErrorHandler]) -> Iterator[None]:
        try:
            yield
        except Exception as e:
            reporter = self._reporter(error_handler)
            if reporter is not None:
                reporter(e)
            raise

    def _reporter(self, error_handler: Optional[ErrorHandler]) -> Optional[ErrorHandler]:
        return error_handler if error_handler is not None else self.error_handler

    def _require_setup(self) -> None:
        if not self.backend.is_setup:
            raise NotSetUp()

    def _require_endpoint(self) -> int:
        self._require_setup()
        endpoint_id = self.selected_endpoint_id
        if endpoint_id is None:
            raise NoSelectedEndpoint()
        return endpoint_id

    async def _call(self, func, *args):
        return await asyncio.to_thread(func, *args)

    async def _fetch(self, func, *args):
        self._require_setup()
        return await self._call(func, *args)

    def _persist(self, func, *args) -> None:
        if self._closed:
            logger.debug(f"Store closed, skipping {getattr(func, '__name__', func)}")
            return
        future = self._persistence.submit(func, *args)
        future.add_done_callback(self._on_persisted)

    @staticmethod
    def _on_persisted(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"Failed to persist cache: {error}")

    async def _load_stored(self) -> None:
        logger.debug("Loading stored listings...")
        session = self._session
        endpoints, containers, containers_endpoint_id, stacks = await asyncio.to_thread(self._read_cache)
        if session != self._session:
            logger.debug("Store was reset while loading, dropping stored listings")
            return
        with self._mutate() as state:
            if not state.endpoints:
                state.endpoints = tuple(endpoints)
            if not state.containers:
                state.containers = tuple(containers)
                state.containers_endpoint_id = containers_endpoint_id
            if not state.stacks:
                state.stacks = tuple(stacks)
        logger.info(f"Loaded {len(endpoints)} endpoints, {len(containers)} containers, "
                    f"{len(stacks)} stacks from cache")

    def _read_cache(self):
        return (
            self.cache.load_endpoints(),
            self.cache.load_containers(),
            self.cache.load_containers_endpoint_id(),
            self.cache.load_stacks(),
        )
