"""Client modules for the camera and durable storage."""

from faceauth.clients.camera_client import (
    OpenCVCamera,
    OpenCVStream,
)

from faceauth.clients.storage_client import (
    AttemptRepository,
    DescriptorStore,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    KeyValueStore,
    ProfileRepository,
    create_descriptor_store,
)

__all__ = [
    "OpenCVCamera",
    "OpenCVStream",
    "AttemptRepository",
    "DescriptorStore",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "ProfileRepository",
    "create_descriptor_store",
]
