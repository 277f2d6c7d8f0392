"""
Resource Client - capability set the preemption activities consume.

The concrete vSphere wire client (session handling, keep-alive, auth) lives
outside this package; anything implementing ResourceClient can be injected.
InMemoryResourceClient (preemption.testing.resource_simulator) is the
in-process implementation used by tests and the simulator backend.

All methods are coroutines and must be safe for concurrent use: the
executor fans out up to `max_concurrent_calls` of them at once.
"""
from __future__ import annotations

from typing import List, Protocol, runtime_checkable

from ..models import PowerState, ResourceRef


class ResourceClientError(Exception):
    """Remote resource API call failed."""


class ResourceNotFoundError(ResourceClientError):
    """Referenced object does not exist."""


class FieldNotFoundError(ResourceClientError):
    """Custom field definition does not exist."""


class FieldExistsError(ResourceClientError):
    """Custom field definition already exists."""


@runtime_checkable
class ResourceClient(Protocol):

    async def enumerate_tagged(self, tag: str) -> List[ResourceRef]:
        """Objects attached to `tag`, in the API's enumeration order."""
        ...

    async def power_state(self, ref: ResourceRef) -> PowerState:
        ...

    async def graceful_shutdown(self, ref: ResourceRef) -> None:
        """Request guest OS shutdown. Returns once the request is accepted."""
        ...

    async def force_power_off(self, ref: ResourceRef) -> None:
        """Hard power off. Returns once the power-off task completed."""
        ...

    async def ensure_annotation_field(self, name: str) -> int:
        """Key of custom field `name`, creating the definition if missing."""
        ...

    async def set_annotation(self, ref: ResourceRef, field_key: int, value: str) -> None:
        ...


def get_resource_client(backend: str = "simulator", **kwargs) -> ResourceClient:
    """Resource client factory."""
    if backend == "simulator":
        from ..testing.resource_simulator import InMemoryResourceClient

        return InMemoryResourceClient.from_inventory(kwargs.get("inventory") or {})
    raise ValueError(f"unknown resource backend {backend!r}")
