"""
Data models and structures for portainerstore.

This module defines the value objects that describe a Portainer server's
resources and the store state built from them.

Data Classes:
  - Endpoint: Portainer environment (id, name, status)
  - Container: Docker container of the selected endpoint (id, name, state)
  - Stack: Portainer stack (id, name, status, owning endpoint)
  - ContainerDetails: Result of inspecting a single container
  - StoreState: Mutable working state, only touched inside StateManager.mutate()
  - StoreSnapshot: Frozen projection of StoreState handed to observers

Key Fields:
  - Listed resources are replaced wholesale on every refresh, never merged
  - is_stored marks instances that were read from the local cache; it is
    ignored by equality so cached and live values compare by content
  - Records (to_record/from_record) are the plain dicts written to the cache
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple


class ResourceClass(str, Enum):
    ENDPOINTS = "endpoints"
    CONTAINERS = "containers"
    STACKS = "stacks"
    ALL = "all"


class EndpointStatus(IntEnum):
    UP = 1
    DOWN = 2


class StackStatus(IntEnum):
    ACTIVE = 1
    INACTIVE = 2


class ContainerState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    REMOVING = "removing"
    EXITED = "exited"
    DEAD = "dead"


class ContainerAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    PAUSE = "pause"
    UNPAUSE = "unpause"
    KILL = "kill"


def _enum_or_none(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class Endpoint:
    id: int
    name: str
    status: Optional[EndpointStatus] = None
    is_stored: bool = field(default=False, compare=False, repr=False)

    @property
    def sort_key(self) -> Tuple[str, int]:
        return (self.name.lower(), self.id)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Endpoint":
        return cls(
            id=int(data["Id"]),
            name=data.get("Name") or "",
            status=_enum_or_none(EndpointStatus, data.get("Status")),
        )

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name,
                "status": int(self.status) if self.status is not None else None}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Endpoint":
        return cls(
            id=int(record["id"]),
            name=record.get("name") or "",
            status=_enum_or_none(EndpointStatus, record.get("status")),
            is_stored=True,
        )


@dataclass(frozen=True)
class Container:
    id: str
    display_name: Optional[str] = None
    state: Optional[ContainerState] = None
    is_stored: bool = field(default=False, compare=False, repr=False)

    @property
    def sort_key(self) -> Tuple[str, str]:
        return ((self.display_name or "").lower(), self.id)

    @classmethod
    def from_api(cls, attrs: Dict[str, Any]) -> "Container":
        # Listing payloads carry "Names" and a plain "State" string,
        # inspect payloads carry "Name" and a "State" dict.
        names = attrs.get("Names") or []
        name = names[0] if names else attrs.get("Name")
        state = attrs.get("State")
        if isinstance(state, dict):
            state = state.get("Status")
        return cls(
            id=attrs["Id"],
            display_name=name.lstrip("/") if name else None,
            state=_enum_or_none(ContainerState, state),
        )

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.display_name,
                "state": self.state.value if self.state is not None else None}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Container":
        return cls(
            id=str(record["id"]),
            display_name=record.get("name"),
            state=_enum_or_none(ContainerState, record.get("state")),
            is_stored=True,
        )


@dataclass(frozen=True)
class Stack:
    id: int
    name: str
    status: Optional[StackStatus] = None
    endpoint_id: Optional[int] = None
    is_stored: bool = field(default=False, compare=False, repr=False)

    @property
    def sort_key(self) -> Tuple[str, int]:
        return (self.name.lower(), self.id)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Stack":
        return cls(
            id=int(data["Id"]),
            name=data.get("Name") or "",
            status=_enum_or_none(StackStatus, data.get("Status")),
            endpoint_id=data.get("EndpointId"),
        )

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name,
                "status": int(self.status) if self.status is not None else None,
                "endpoint_id": self.endpoint_id}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Stack":
        return cls(
            id=int(record["id"]),
            name=record.get("name") or "",
            status=_enum_or_none(StackStatus, record.get("status")),
            endpoint_id=record.get("endpoint_id"),
            is_stored=True,
        )


@dataclass(frozen=True)
class ContainerDetails:
    id: str
    name: Optional[str]
    image: Optional[str]
    state: Optional[ContainerState]
    health: str = ""
    created: str = ""
    labels: Dict[str, str] = field(default_factory=dict, hash=False)
    attrs: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @classmethod
    def from_api(cls, attrs: Dict[str, Any]) -> "ContainerDetails":
        state = attrs.get("State") or {}
        config = attrs.get("Config") or {}
        name = attrs.get("Name")
        return cls(
            id=attrs["Id"],
            name=name.lstrip("/") if name else None,
            image=config.get("Image") or attrs.get("Image"),
            state=_enum_or_none(ContainerState, state.get("Status")),
            health=(state.get("Health") or {}).get("Status", ""),
            created=attrs.get("Created", ""),
            labels=dict(config.get("Labels") or {}),
            attrs=attrs,
        )


def sorted_resources(items: Iterable) -> List:
    """Sort endpoints, containers or stacks by name, ties broken by id."""
    return sorted(items, key=lambda item: item.sort_key)


@dataclass
class StoreState:
    is_setup: bool = False
    server_url: Optional[str] = None
    endpoints: Tuple[Endpoint, ...] = ()
    containers: Tuple[Container, ...] = ()
    stacks: Tuple[Stack, ...] = ()
    selected_endpoint_id: Optional[int] = None
    containers_endpoint_id: Optional[int] = None  # Endpoint the containers were fetched under
    attached_container_id: Optional[str] = None
    loading_stack_ids: FrozenSet[int] = frozenset()
    removed_container_ids: FrozenSet[str] = frozenset()
    removed_stack_ids: FrozenSet[int] = frozenset()

    def freeze(self, version: int) -> "StoreSnapshot":
        return StoreSnapshot(
            version=version,
            is_setup=self.is_setup,
            server_url=self.server_url,
            endpoints=tuple(self.endpoints),
            containers=tuple(self.containers),
            stacks=tuple(self.stacks),
            selected_endpoint_id=self.selected_endpoint_id,
            containers_endpoint_id=self.containers_endpoint_id,
            attached_container_id=self.attached_container_id,
            loading_stack_ids=frozenset(self.loading_stack_ids),
            removed_container_ids=frozenset(self.removed_container_ids),
            removed_stack_ids=frozenset(self.removed_stack_ids),
        )


@dataclass(frozen=True)
class StoreSnapshot:
    version: int = 0
    is_setup: bool = False
    server_url: Optional[str] = None
    endpoints: Tuple[Endpoint, ...] = ()
    containers: Tuple[Container, ...] = ()
    stacks: Tuple[Stack, ...] = ()
    selected_endpoint_id: Optional[int] = None
    containers_endpoint_id: Optional[int] = None
    attached_container_id: Optional[str] = None
    loading_stack_ids: FrozenSet[int] = frozenset()
    removed_container_ids: FrozenSet[str] = frozenset()
    removed_stack_ids: FrozenSet[int] = frozenset()

    @property
    def selected_endpoint(self) -> Optional[Endpoint]:
        for endpoint in self.endpoints:
            if endpoint.id == self.selected_endpoint_id:
                return endpoint
        return None

    @property
    def visible_containers(self) -> Tuple[Container, ...]:
        return tuple(c for c in self.containers if c.id not in self.removed_container_ids)

    @property
    def visible_stacks(self) -> Tuple[Stack, ...]:
        return tuple(s for s in self.stacks if s.id not in self.removed_stack_ids)
