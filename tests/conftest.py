"""Shared fixtures: store contract tests run against every local backend."""

import pytest

from threadline.checkpoint.file_storage import FileCheckpointStore
from threadline.checkpoint.storage import MemoryCheckpointStore


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryCheckpointStore()
    return FileCheckpointStore(str(tmp_path / "store"))


@pytest.fixture
def memory_store():
    return MemoryCheckpointStore()
