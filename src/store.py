"""
Store interface - Records under reconciliation and the contract for reading them.

The store owns ManagedResource and ResourceGroup records. Implementations
must enforce the deletion invariant themselves: a resource is removed only
once it is marked for deletion and carries no finalizers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class RecordNotFoundError(Exception):
    """Raised when a record does not exist in the store."""

    def __init__(self, kind: str, identity: "NamespacedName"):
        self.kind = kind
        self.identity = identity
        super().__init__(f"{kind} {identity} not found")


@dataclass(frozen=True)
class NamespacedName:
    """Identity of a record: namespace plus name."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, key: str) -> "NamespacedName":
        """
        Parse a ``namespace/name`` key.

        Raises:
            ValueError: If the key does not have exactly two non-empty parts
        """
        parts = key.split("/")
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"Invalid key '{key}', expected 'namespace/name'")
        return cls(namespace=parts[0], name=parts[1])


@dataclass
class ManagedResource:
    """Desired-state record reconciled by the controller."""

    namespace: str
    name: str
    spec: Dict[str, Any] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)
    group: Optional[NamespacedName] = None
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    generation: int = 1
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def identity(self) -> NamespacedName:
        return NamespacedName(self.namespace, self.name)

    @property
    def is_being_deleted(self) -> bool:
        return self.deletion_timestamp is not None


class GroupPhase:
    """Lifecycle phases of a resource group."""

    PENDING = "pending"
    ACTIVE = "active"


@dataclass
class ResourceGroup:
    """Upstream record referenced by zero or more resources."""

    namespace: str
    name: str
    spec: Dict[str, Any] = field(default_factory=dict)
    phase: str = GroupPhase.ACTIVE
    generation: int = 1
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def identity(self) -> NamespacedName:
        return NamespacedName(self.namespace, self.name)

    @property
    def is_active(self) -> bool:
        return self.phase == GroupPhase.ACTIVE


def has_finalizer(resource: ManagedResource, finalizer: str) -> bool:
    """Check whether a resource carries the given finalizer."""
    return finalizer in resource.finalizers


class Store(ABC):
    """
    Abstract record store.

    Every read goes to the backing store; implementations must not cache
    records between calls.
    """

    @abstractmethod
    async def get_resource(self, identity: NamespacedName) -> ManagedResource:
        """
        Fetch a resource, including one that is pending deletion.

        Raises:
            RecordNotFoundError: If the resource does not exist
        """
        pass

    @abstractmethod
    async def add_finalizers(self, identity: NamespacedName, *finalizers: str) -> None:
        """
        Add finalizers to a resource. Already-present finalizers are kept once.

        Raises:
            RecordNotFoundError: If the resource does not exist
        """
        pass

    @abstractmethod
    async def remove_finalizers(
        self, identity: NamespacedName, *finalizers: str
    ) -> None:
        """
        Remove finalizers from a resource.

        If the resource is marked for deletion and no finalizers remain,
        the store removes the resource as part of the same operation.

        Raises:
            RecordNotFoundError: If the resource does not exist
        """
        pass

    @abstractmethod
    async def list_resources(
        self,
        namespace: Optional[str] = None,
        group: Optional[NamespacedName] = None,
        limit: Optional[int] = None,
    ) -> List[ManagedResource]:
        """List resources, optionally filtered by namespace and group."""
        pass

    async def list_resources_for_group(
        self, group: NamespacedName
    ) -> List[ManagedResource]:
        """List every resource referencing the given group."""
        return await self.list_resources(group=group)
