"""
Refresh handles and the per-resource-class refresh coordinator.

Every resource class (endpoints, containers, stacks, and the aggregate
"all") has at most one refresh in flight. Starting a new refresh supersedes
the previous one: its generation counter moves on and the old handle is
cancelled, so whatever the old network call eventually returns is dropped.

Cancellation is cooperative. The fetch itself runs to completion in the
background (blocking I/O cannot be interrupted), but a cancelled or
superseded operation resolves right away with the value the store currently
shows, never commits, and never reports an error.

All methods must be called from the event loop that owns the store.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import ErrorHandler
from .model import ResourceClass

logger = logging.getLogger(__name__)


def _consume_result(future: asyncio.Future) -> None:
    # Marks the exception as retrieved; failures are reported elsewhere.
    if not future.cancelled():
        future.exception()


class RefreshHandle:
    """Awaitable, cancellable view of one refresh operation."""

    def __init__(self, resource: ResourceClass, generation: int):
        self.resource = resource
        self.generation = generation
        self._cancel_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else ("done" if self.done() else "running")
        return f"<RefreshHandle {self.resource.value}#{self.generation} {state}>"

    def __await__(self):
        # Awaiters being cancelled must not cancel the operation itself
        return asyncio.shield(self._task).__await__()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def active(self) -> bool:
        return not self.cancelled and not self.done()

    def cancel(self) -> None:
        if not self.cancelled:
            logger.debug(f"Cancelling {self!r}")
        self._cancel_event.set()

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def result(self) -> Any:
        return self._task.result()


class RefreshCoordinator:
    """Owns one generation counter and one current handle per resource class."""

    def __init__(self):
        self._generations: Dict[ResourceClass, int] = {resource: 0 for resource in ResourceClass}
        self._handles: Dict[ResourceClass, RefreshHandle] = {}

    def handle(self, resource: ResourceClass) -> Optional[RefreshHandle]:
        return self._handles.get(resource)

    def is_current(self, handle: RefreshHandle) -> bool:
        return not handle.cancelled and self._generations[handle.resource] == handle.generation

    @property
    def is_refreshing(self) -> bool:
        return any(handle.active for handle in self._handles.values())

    def cancel(self, resource: ResourceClass) -> None:
        handle = self._handles.pop(resource, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for resource in list(self._handles):
            self.cancel(resource)

    def _release(self, handle: RefreshHandle) -> None:
        if self._handles.get(handle.resource) is handle:
            del self._handles[handle.resource]

    def run(self,
            resource: ResourceClass,
            fetch: Callable[[], Awaitable[Any]],
            commit: Callable[[Any], None],
            fallback: Callable[[], Any],
            error_handler: Optional[ErrorHandler] = None) -> RefreshHandle:
        """
        Start a refresh for a resource class, superseding any previous one.

        Args:
            resource: Resource class being refreshed
            fetch: Coroutine factory producing the fresh value
            commit: Applies a fresh value to the store (current generation only)
            fallback: Returns the value to resolve with when cancelled
            error_handler: Optional reporter for non-cancellation failures

        Returns:
            RefreshHandle resolving to the committed value or the fallback
        """
        loop = asyncio.get_running_loop()
        self.cancel(resource)
        self._generations[resource] += 1
        handle = RefreshHandle(resource, self._generations[resource])
        self._handles[resource] = handle
        handle._task = loop.create_task(self._operate(handle, fetch, commit, fallback, error_handler))
        handle._task.add_done_callback(_consume_result)
        logger.debug(f"Started {handle!r}")
        return handle

    async def _operate(self, handle, fetch, commit, fallback, error_handler):
        fetch_task = asyncio.ensure_future(fetch())
        fetch_task.add_done_callback(_consume_result)
        cancel_wait = asyncio.ensure_future(handle._cancel_event.wait())
        try:
            await asyncio.wait({fetch_task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            fetch_task.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if not self.is_current(handle):
            fetch_task.cancel()
            self._release(handle)
            logger.debug(f"Discarding result of {handle!r}")
            return fallback()

        try:
            result = fetch_task.result()
        except asyncio.CancelledError:
            # The fetch was cancelled from inside (e.g. it awaited a cancelled task)
            self._release(handle)
            logger.debug(f"Fetch of {handle!r} was cancelled")
            return fallback()
        except Exception as e:
            self._release(handle)
            logger.error(f"Refreshing {handle.resource.value} failed: {e}")
            if error_handler is not None:
                error_handler(e)
            raise

        commit(result)
        self._release(handle)
        return result
