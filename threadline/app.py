"""
Threadline Application - Single entry point wiring store, durable execution and branching.

Usage:
    from threadline import Threadline

    app = Threadline("threadline.yaml")

    durable = await app.get_durable()
    durable.save_checkpoint(thread)

    branching = await app.get_branching()
    forked, event = await branching.fork_from_checkpoint(thread.id, checkpoint_id)

    await app.shutdown()

Example config:
    storage:
      backend: postgres
      dsn: ${THREADLINE_DSN}
    durable:
      frequency: per_turn
      retention: {policy: last_n, count: 20}
    branching:
      enabled: true
"""

import logging
import os
import re
from typing import Any, Dict, Optional, Union

import yaml

from .branching import Branching, BranchingConfig
from .checkpoint import CheckpointStore, StorageConfig, ThreadLocks, ThreadWriteQueue, create_store
from .checkpoint.postgres_storage import PostgreSQLCheckpointStore
from .db import Database
from .durable import DurableExecution, DurableExecutionConfig

logger = logging.getLogger(__name__)

CONFIG_SECTIONS = ("storage", "durable", "branching")


def load_config(path: str) -> Dict[str, Any]:
    """Read YAML config file with ${VAR} environment variable substitution."""
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()

    def _replace_env(match):
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ValueError(
                f"Environment variable '{var_name}' not set "
                f"(referenced in config file '{path}')"
            )
        return value

    resolved = re.sub(r"\$\{(\w+)\}", _replace_env, raw)
    return yaml.safe_load(resolved) or {}


class Threadline:
    """
    Threadline application entry point.

    The constructor reads and validates config synchronously; stores and
    pools are created on first use (or an explicit initialize()).

    Args:
        config: Path to a YAML file, or the already-parsed dict. None uses
            defaults (in-memory store).

    Example:
        app = Threadline({"storage": {"backend": "file", "path": "/var/lib/threadline"}})
        await app.initialize()
        thread = await app.durable.resume_from_latest(thread_id)
    """

    def __init__(self, config: Union[str, Dict[str, Any], None] = None):
        if isinstance(config, str):
            self._config = load_config(config)
        else:
            self._config = dict(config or {})

        unknown = set(self._config) - set(CONFIG_SECTIONS)
        if unknown:
            raise ValueError(f"Unknown config sections: {sorted(unknown)}")

        self.storage_config = StorageConfig.from_dict(self._config.get("storage") or {})
        self.durable_config = DurableExecutionConfig.from_dict(self._config.get("durable") or {})
        self.branching_config = BranchingConfig.from_dict(self._config.get("branching") or {})

        if self.storage_config.backend == "postgres" and not self.storage_config.dsn:
            raise ValueError("Missing required config field: 'storage.dsn'")

        self._initialized = False
        self._database: Optional[Database] = None
        self._store: Optional[CheckpointStore] = None
        self._durable: Optional[DurableExecution] = None
        self._branching: Optional[Branching] = None

    async def initialize(self) -> None:
        """Create the store and engines. Runs once."""
        if self._initialized:
            return

        if self.storage_config.backend == "postgres":
            self._database = Database(dsn=self.storage_config.dsn)
            await self._database.initialize()

        self._store = create_store(self.storage_config, database=self._database)
        if isinstance(self._store, PostgreSQLCheckpointStore):
            await self._store.initialize()

        self._durable = DurableExecution(self._store, self.durable_config, ThreadWriteQueue())
        self._branching = Branching(self._store, self.branching_config, ThreadLocks())

        self._initialized = True
        logger.info(
            f"Threadline initialized: backend={self.storage_config.backend}, "
            f"frequency={self.durable_config.frequency.value}, "
            f"branching={'on' if self.branching_config.enabled else 'off'}"
        )

    def _require(self, component):
        if not self._initialized:
            raise RuntimeError("Threadline not initialized. Call await app.initialize() first.")
        return component

    @property
    def config(self) -> Dict[str, Any]:
        """Return a copy of the raw configuration dict."""
        return dict(self._config)

    @property
    def store(self) -> CheckpointStore:
        return self._require(self._store)

    @property
    def durable(self) -> DurableExecution:
        return self._require(self._durable)

    @property
    def branching(self) -> Branching:
        return self._require(self._branching)

    async def get_store(self) -> CheckpointStore:
        await self.initialize()
        return self._store

    async def get_durable(self) -> DurableExecution:
        await self.initialize()
        return self._durable

    async def get_branching(self) -> Branching:
        await self.initialize()
        return self._branching

    async def shutdown(self) -> None:
        """Drain queued writes and close connections."""
        if not self._initialized:
            return
        try:
            if self._durable:
                await self._durable.close()
            if self._store:
                await self._store.close()
            if self._database:
                await self._database.close()
        except Exception as e:
            logger.warning(f"Error during shutdown: {e}")
        finally:
            self._initialized = False
            self._database = None
            self._store = None
            self._durable = None
            self._branching = None
            logger.info("Threadline shut down")
