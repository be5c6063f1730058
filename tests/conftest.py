"""Shared fixtures for the ciflow test suite."""

import io

import pytest

from ciflow.cache import CacheProvider, MemoryCacheBackend
from ciflow.ui.console import Console


@pytest.fixture
def console():
    """Console writing to an in-memory stream; read it via console.stream.getvalue()."""
    return Console(stream=io.StringIO())


@pytest.fixture
def memory_cache():
    return CacheProvider(MemoryCacheBackend())


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws
