"""
Error kinds raised by portainerstore.

Every error the store hands to callers or to an error reporter derives from
PortainerStoreError. Cancellation of a refresh is never represented here:
it is absorbed by the refresh coordinator and resolves to the current state.
"""

from typing import Callable, Optional


class PortainerStoreError(Exception):
    """Base class for all portainerstore errors."""


class NotSetUp(PortainerStoreError):
    """An operation needs an active server session but there is none."""

    def __init__(self, message: str = "Portainer is not set up"):
        super().__init__(message)


class NoSelectedEndpoint(PortainerStoreError):
    """A container-scoped operation was attempted without a selected endpoint."""

    def __init__(self, message: str = "No endpoint is selected"):
        super().__init__(message)


class NotAuthenticated(PortainerStoreError):
    """No token was given and none is stored for the server."""

    def __init__(self, url: str):
        super().__init__(f"No token available for {url}")
        self.url = url


class SecretStoreFailure(PortainerStoreError):
    """Reading, writing or deleting a stored token failed."""


class RemoteFailure(PortainerStoreError):
    """A call to the Portainer server failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


ErrorHandler = Callable[[Exception], None]
