"""
Engine configuration.

Resource limits and pool/scheduler tuning are plain pydantic models so they can
be passed explicitly to every component. `load_config()` builds one from
QFLOW_* environment variables (a local .env is honoured); any field that is
not set falls back to the documented default below.
"""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field


SUPPORTED_PYTHON_VERSIONS = ["3.8", "3.9", "3.10", "3.11", "3.12", "3.13"]


def _running_python_version() -> str:
    return f"{sys.version_info.major}.{sys.version_info.minor}"


class ResourceLimits(BaseModel):
    """Per-execution limits applied to every sandbox process."""

    model_config = ConfigDict(extra="forbid")

    # Fraction of one core; bounds CPU seconds to cpu_share * wall_timeout_seconds
    cpu_share: float = Field(0.5, gt=0, le=1.0)
    memory_mb: int = Field(1024, gt=0)
    wall_timeout_seconds: float = Field(300.0, gt=0)
    network: bool = False

    def merged(self, overrides: dict[str, Any] | None) -> "ResourceLimits":
        """
        Return these limits with `overrides` applied, validated like any other
        ResourceLimits. Raises pydantic.ValidationError on unknown fields or
        out-of-range values.
        """
        if not overrides:
            return self
        updates = {k: v for k, v in overrides.items() if v is not None}
        return ResourceLimits.model_validate({**self.model_dump(), **updates})


class EngineConfig(BaseModel):
    limits: ResourceLimits = Field(default_factory=ResourceLimits)

    # Sandbox pool
    dependency_install_timeout_seconds: float = 600.0
    pool_size: int = Field(4, ge=1)
    max_sandboxes: int = Field(16, ge=1)
    idle_destroy_after_seconds: float = 300.0
    max_executions_per_sandbox: int = Field(100, ge=1)
    reap_interval_seconds: float = 60.0
    sandbox_root: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "qflow-sandboxes"
    )
    default_python_version: str = Field(default_factory=_running_python_version)
    supported_python_versions: list[str] = Field(
        default_factory=lambda: list(SUPPORTED_PYTHON_VERSIONS)
    )
    blocked_imports: list[str] = Field(default_factory=lambda: ["ctypes"])

    # Scheduler
    max_concurrency_per_run: int = Field(4, ge=1)
    max_concurrency_per_host: int = Field(16, ge=1)
    max_retries: int = Field(1, ge=0)
    cancel_grace_seconds: float = 5.0
    # Finished runs whose event history stays in memory; older ones are served
    # from the run store
    retained_run_contexts: int = Field(256, ge=1)

    # Codec / blob storage
    spill_threshold_bytes: int = Field(1024 * 1024, gt=0)
    blob_backend: Literal["local", "r2"] = "local"
    blob_root: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "qflow-blobs"
    )

    # Run persistence (Supabase)
    persist_runs: bool = False


def _env_bool(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# env var -> (field path, parser)
_ENV_FIELDS: dict[str, tuple[str, Any]] = {
    "QFLOW_CPU_SHARE": ("limits.cpu_share", float),
    "QFLOW_MEMORY_MB": ("limits.memory_mb", int),
    "QFLOW_WALL_TIMEOUT": ("limits.wall_timeout_seconds", float),
    "QFLOW_INSTALL_TIMEOUT": ("dependency_install_timeout_seconds", float),
    "QFLOW_POOL_SIZE": ("pool_size", int),
    "QFLOW_MAX_SANDBOXES": ("max_sandboxes", int),
    "QFLOW_IDLE_DESTROY_AFTER": ("idle_destroy_after_seconds", float),
    "QFLOW_MAX_EXECUTIONS_PER_SANDBOX": ("max_executions_per_sandbox", int),
    "QFLOW_MAX_CONCURRENCY_PER_RUN": ("max_concurrency_per_run", int),
    "QFLOW_MAX_CONCURRENCY_PER_HOST": ("max_concurrency_per_host", int),
    "QFLOW_MAX_RETRIES": ("max_retries", int),
    "QFLOW_CANCEL_GRACE": ("cancel_grace_seconds", float),
    "QFLOW_RETAINED_RUNS": ("retained_run_contexts", int),
    "QFLOW_REAP_INTERVAL": ("reap_interval_seconds", float),
    "QFLOW_SPILL_THRESHOLD": ("spill_threshold_bytes", int),
    "QFLOW_SANDBOX_ROOT": ("sandbox_root", Path),
    "QFLOW_BLOB_BACKEND": ("blob_backend", str),
    "QFLOW_BLOB_ROOT": ("blob_root", Path),
    "QFLOW_DEFAULT_PYTHON": ("default_python_version", str),
}


def load_config(**overrides: Any) -> EngineConfig:
    """
    Build an EngineConfig from the environment plus explicit overrides.

    Overrides win over environment values; `limits` may be given as a dict
    with a subset of ResourceLimits fields.
    """
    load_dotenv()

    data: dict[str, Any] = {}
    limits: dict[str, Any] = {}

    for env_name, (path, parser) in _ENV_FIELDS.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        value = parser(raw)
        if path.startswith("limits."):
            limits[path.split(".", 1)[1]] = value
        else:
            data[path] = value

    network = _env_bool("QFLOW_ALLOW_NETWORK")
    if network is not None:
        limits["network"] = network

    persist = _env_bool("QFLOW_PERSIST_RUNS")
    if persist is not None:
        data["persist_runs"] = persist

    blocked = os.getenv("QFLOW_BLOCKED_IMPORTS")
    if blocked is not None:
        data["blocked_imports"] = [m.strip() for m in blocked.split(",") if m.strip()]

    limit_overrides = overrides.pop("limits", None)
    if isinstance(limit_overrides, ResourceLimits):
        limit_overrides = limit_overrides.model_dump()
    if limit_overrides:
        limits.update(limit_overrides)

    data.update(overrides)
    if limits:
        data["limits"] = limits

    return EngineConfig.model_validate(data)
