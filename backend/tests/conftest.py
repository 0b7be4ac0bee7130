"""
Shared fixtures: engines with small limits and private temp directories.
"""

import sys
from pathlib import Path

import pytest
import pytest_asyncio

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from qflow.config import load_config
from qflow.engine import create_engine
from qflow.models.blueprint import NodeDefinition, PortSchema
from qflow.services.type_registry import TypeRegistry
from qflow.storage.blob_store import LocalBlobStore


def make_config(tmp_path, **overrides):
    limits = {
        "cpu_share": 1.0,
        "memory_mb": 512,
        "wall_timeout_seconds": 20.0,
        "network": False,
    }
    limits.update(overrides.pop("limits", {}))
    settings = {
        "sandbox_root": tmp_path / "sandboxes",
        "blob_root": tmp_path / "blobs",
        "pool_size": 4,
        "max_sandboxes": 8,
        "max_concurrency_per_run": 5,
        "max_retries": 1,
        "cancel_grace_seconds": 0.5,
        "persist_runs": False,
    }
    settings.update(overrides)
    return load_config(limits=limits, **settings)


def node_def(node_id, code, inputs=(), outputs=(), entry_function="main"):
    """Build a NodeDefinition from (key, type_id) pairs."""
    return NodeDefinition(
        id=node_id,
        code=code,
        entry_function=entry_function,
        inputs=[PortSchema(key=k, type_id=t) for k, t in inputs],
        outputs=[PortSchema(key=k, type_id=t) for k, t in outputs],
    )


@pytest.fixture
def type_registry():
    return TypeRegistry.with_builtins()


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest_asyncio.fixture
async def engine_factory(tmp_path):
    """Create engines with config overrides; all are shut down after the test."""
    engines = []

    def _make(**overrides):
        engine = create_engine(make_config(tmp_path, **overrides))
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        await engine.shutdown()


@pytest_asyncio.fixture
async def engine(engine_factory):
    return engine_factory()
