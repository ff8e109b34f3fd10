from .kv_store import (
    KeyValueEntry,
    KeyValueStore,
    SqlAlchemyKeyValueStore,
    VersionedValue,
    ensure_kv_schema,
)

__all__ = [
    "KeyValueEntry",
    "KeyValueStore",
    "SqlAlchemyKeyValueStore",
    "VersionedValue",
    "ensure_kv_schema",
]
