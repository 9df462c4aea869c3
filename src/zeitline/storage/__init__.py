"""Native event persistence backends."""

from zeitline.storage.native import InMemoryNativeStore, NativeEventStore, PostgresNativeStore

__all__ = ["InMemoryNativeStore", "NativeEventStore", "PostgresNativeStore"]
