"""Driver bindings for collections and datasets.

Collections and datasets live in an arena (``DvObjectTree``) where each node
points at its parent by index. A node may carry an explicit driver binding;
a node without one inherits from the nearest bound ancestor, and from the
registry's default driver when no ancestor is bound. Parents are always added
before their children, so the parent chain is acyclic and ends at a root.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum

from dvstore.core.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    StoragePermissionError,
    ValidationError,
)
from dvstore.core.storage.identifiers import dataset_storage_prefix
from dvstore.core.storage.registry import StorageDriverConfig, StorageDriverRegistry

logger = logging.getLogger(__name__)

UNDEFINED = "undefined"

NodeRef = int | str


class NodeKind(Enum):
    COLLECTION = "collection"
    DATASET = "dataset"


@dataclass(frozen=True)
class DvObjectNode:
    """A collection (named by alias) or dataset (named by persistent id)."""

    index: int
    kind: NodeKind
    name: str
    parent: int | None
    driver_id: str | None = None


class DvObjectTree:
    """Arena of collections and datasets linked by parent index."""

    def __init__(self):
        self._nodes: list[DvObjectNode] = []
        self._by_name: dict[str, int] = {}
        self._lock = threading.Lock()

    def _add(self, kind: NodeKind, name: str, parent: int | None) -> int:
        with self._lock:
            if name in self._by_name:
                raise ConflictError(f"A {kind.value} named '{name}' already exists")
            index = len(self._nodes)
            self._nodes.append(DvObjectNode(index=index, kind=kind, name=name, parent=parent))
            self._by_name[name] = index
        logger.info(f"Added {kind.value} '{name}' (index {index}, parent {parent})")
        return index

    def add_collection(self, alias: str, parent: NodeRef | None = None) -> int:
        """Add a collection, optionally below another collection."""
        if not alias:
            raise ValidationError("Collection alias must not be empty")
        parent_index = None
        if parent is not None:
            parent_node = self.node(parent)
            if parent_node.kind is not NodeKind.COLLECTION:
                raise ValidationError(f"Parent '{parent_node.name}' is not a collection")
            parent_index = parent_node.index
        return self._add(NodeKind.COLLECTION, alias, parent_index)

    def add_dataset(self, persistent_id: str, collection: NodeRef) -> int:
        """Add a dataset to a collection."""
        dataset_storage_prefix(persistent_id)
        parent_node = self.node(collection)
        if parent_node.kind is not NodeKind.COLLECTION:
            raise ValidationError(f"Datasets must belong to a collection, not '{parent_node.name}'")
        return self._add(NodeKind.DATASET, persistent_id, parent_node.index)

    def node(self, ref: NodeRef) -> DvObjectNode:
        """Look up a node by index, alias or persistent id.

        Raises:
            NotFoundError: If there is no such node
        """
        nodes = self._nodes
        if isinstance(ref, int) and not isinstance(ref, bool):
            if 0 <= ref < len(nodes):
                return nodes[ref]
        elif isinstance(ref, str) and ref in self._by_name:
            return nodes[self._by_name[ref]]
        raise NotFoundError(f"No collection or dataset: {ref!r}")

    def dataset(self, ref: NodeRef) -> DvObjectNode:
        node = self.node(ref)
        if node.kind is not NodeKind.DATASET:
            raise ValidationError(f"'{node.name}' is not a dataset")
        return node

    def lineage(self, ref: NodeRef) -> Iterator[DvObjectNode]:
        """Yield the node, then each ancestor up to the root."""
        node: DvObjectNode | None = self.node(ref)
        while node is not None:
            yield node
            node = self._nodes[node.parent] if node.parent is not None else None

    def set_driver(self, ref: NodeRef, driver_id: str | None) -> DvObjectNode:
        """Replace a node's explicit binding (None removes it)."""
        with self._lock:
            node = self.node(ref)
            updated = dataclasses.replace(node, driver_id=driver_id)
            self._nodes[node.index] = updated
        return updated

    def dataset_prefix(self, ref: NodeRef) -> str:
        """Storage prefix for a dataset's files."""
        return dataset_storage_prefix(self.dataset(ref).name)


class DriverBindings:
    """Reads and changes driver bindings, and resolves the effective driver.

    Precedence: dataset binding > collection binding > ancestor collection
    binding > registry default.
    """

    def __init__(self, registry: StorageDriverRegistry, tree: DvObjectTree):
        self._registry = registry
        self._tree = tree

    @property
    def tree(self) -> DvObjectTree:
        return self._tree

    def get_binding(self, ref: NodeRef) -> str:
        """Explicit driver id at this node, or ``UNDEFINED`` when none is set."""
        return self._tree.node(ref).driver_id or UNDEFINED

    def set_binding(self, ref: NodeRef, label: str, *, privileged: bool) -> StorageDriverConfig:
        """Bind a node to the driver with ``label``.

        Raises:
            StoragePermissionError: If the caller is not privileged
            ConfigurationError: If the label is unknown
        """
        if not privileged:
            raise StoragePermissionError("Changing storage drivers requires a superuser")
        driver = self._registry.get_driver_by_label(label)
        node = self._tree.set_driver(ref, driver.driver_id)
        logger.info(f"Bound {node.kind.value} '{node.name}' to driver '{driver.driver_id}'")
        return driver

    def clear_binding(self, ref: NodeRef, *, privileged: bool) -> None:
        """Remove an explicit binding so the node inherits again."""
        if not privileged:
            raise StoragePermissionError("Changing storage drivers requires a superuser")
        node = self._tree.set_driver(ref, None)
        logger.info(f"Cleared driver binding of {node.kind.value} '{node.name}'")

    def resolve_driver(self, ref: NodeRef) -> StorageDriverConfig:
        """Effective driver for a collection or dataset.

        Raises:
            ConfigurationError: If a binding names a driver that no longer exists
                or no default driver is configured
        """
        for node in self._tree.lineage(ref):
            if node.driver_id is not None:
                return self._registry.get_driver(node.driver_id)

        default_id = self._registry.default_driver_id
        if not self._registry.has_driver(default_id):
            raise ConfigurationError(f"No storage driver resolves for {ref!r}")
        return self._registry.get_driver(default_id)
