"""Build a checkpoint store from configuration."""

import logging
from typing import Any, Dict, Optional, Union

from ..db.database import Database
from .file_storage import FileCheckpointStore
from .models import StorageConfig
from .postgres_storage import PostgreSQLCheckpointStore
from .storage import CheckpointStore, MemoryCheckpointStore

logger = logging.getLogger(__name__)

BACKENDS = ("memory", "file", "postgres")


def create_store(
    config: Union[StorageConfig, Dict[str, Any], None] = None,
    database: Optional[Database] = None,
) -> CheckpointStore:
    """
    Create the store named by config.backend.

    Args:
        config: StorageConfig or its dict form. Defaults to in-memory.
        database: Shared pool for the postgres backend; a DSN is used otherwise.

    The postgres store still needs `await store.initialize()`.
    """
    if config is None:
        config = StorageConfig()
    elif isinstance(config, dict):
        config = StorageConfig.from_dict(config)

    backend = config.backend.lower()
    if backend == "memory":
        store: CheckpointStore = MemoryCheckpointStore()
    elif backend == "file":
        store = FileCheckpointStore(config.path)
    elif backend == "postgres":
        if database is None and not config.dsn:
            raise ValueError("postgres backend requires a dsn or a shared Database")
        store = PostgreSQLCheckpointStore(db=database, dsn=config.dsn)
    else:
        raise ValueError(f"Unknown storage backend: {config.backend!r} (expected one of {BACKENDS})")

    logger.info(f"Created {backend} checkpoint store")
    return store
