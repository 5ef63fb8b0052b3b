"""Storage drivers, bindings and storage identifiers."""

from dvstore.core.storage.bindings import (
    UNDEFINED,
    DriverBindings,
    DvObjectNode,
    DvObjectTree,
    NodeKind,
)
from dvstore.core.storage.identifiers import (
    StorageIdentifier,
    dataset_storage_prefix,
    decode,
    derive_key,
    encode,
)
from dvstore.core.storage.object_store import (
    Capability,
    CompletedPart,
    ObjectHead,
    ObjectStoreClient,
)
from dvstore.core.storage.registry import (
    DriverKind,
    StorageDriverConfig,
    StorageDriverRegistry,
    UploadLimits,
    get_default_registry,
)

__all__ = [
    # Object store clients
    "Capability",
    "CompletedPart",
    "ObjectHead",
    "ObjectStoreClient",
    # Registry
    "DriverKind",
    "StorageDriverConfig",
    "StorageDriverRegistry",
    "UploadLimits",
    "get_default_registry",
    # Bindings
    "UNDEFINED",
    "DriverBindings",
    "DvObjectNode",
    "DvObjectTree",
    "NodeKind",
    # Identifiers
    "StorageIdentifier",
    "dataset_storage_prefix",
    "decode",
    "derive_key",
    "encode",
]
