"""
Sandbox pool and engine settings endpoints.
"""

import time
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from qflow.api.dependencies import get_engine
from qflow.config import ResourceLimits
from qflow.engine import Engine
from qflow.errors import DependencyInstallError, ProvisionTimeout, SandboxFault
from qflow.models.blueprint import Dependency
from qflow.services.sandbox_manager import SandboxInfo

router = APIRouter(tags=["sandboxes"])


class ProvisionRequest(BaseModel):
    python_version: Optional[str] = None
    dependencies: List[Dependency] = Field(default_factory=list)


class ProvisionReport(BaseModel):
    success: bool
    installed_packages: List[str] = Field(default_factory=list)
    failed_packages: List[dict] = Field(default_factory=list)
    installation_time: int = 0


class DestroyIdleResponse(BaseModel):
    destroyed: List[str]


class EngineSettings(BaseModel):
    supported_python_versions: List[str]
    available_python_versions: List[str]
    default_python_version: str
    default_limits: ResourceLimits
    blocked_imports: List[str]
    pool_size: int
    max_sandboxes: int
    max_concurrency_per_run: int
    max_retries: int


@router.get("/sandboxes", response_model=List[SandboxInfo])
async def list_sandboxes(engine: Engine = Depends(get_engine)):
    return engine.sandbox_manager.list_sandboxes()


@router.post("/sandboxes/destroy-idle", response_model=DestroyIdleResponse)
async def destroy_idle(engine: Engine = Depends(get_engine)):
    destroyed = await engine.sandbox_manager.destroy_idle()
    return DestroyIdleResponse(destroyed=destroyed)


@router.post("/sandboxes/provision", response_model=ProvisionReport)
async def provision_sandbox(
    request: ProvisionRequest,
    engine: Engine = Depends(get_engine),
):
    """
    Install a dependency set into a throwaway sandbox and report the result.
    Useful for checking a node's dependencies before registering it.
    """
    manager = engine.sandbox_manager
    scope = f"preflight-{uuid.uuid4()}"
    start = time.monotonic()
    try:
        handle = await manager.acquire(
            version=request.python_version,
            dependencies=request.dependencies,
            scope=scope,
        )
    except DependencyInstallError as e:
        return ProvisionReport(**e.report())
    except ProvisionTimeout as e:
        raise HTTPException(status_code=504, detail=str(e))
    except SandboxFault as e:
        raise HTTPException(status_code=400, detail=str(e))

    installed = list(handle.sandbox.installed_packages)
    await manager.release(handle, discard=True)
    return ProvisionReport(
        success=True,
        installed_packages=installed,
        installation_time=int((time.monotonic() - start) * 1000),
    )


@router.get("/settings", response_model=EngineSettings)
async def engine_settings(engine: Engine = Depends(get_engine)):
    config = engine.config
    return EngineSettings(
        supported_python_versions=config.supported_python_versions,
        available_python_versions=engine.sandbox_manager.available_runtimes(),
        default_python_version=config.default_python_version,
        default_limits=config.limits,
        blocked_imports=config.blocked_imports,
        pool_size=config.pool_size,
        max_sandboxes=config.max_sandboxes,
        max_concurrency_per_run=config.max_concurrency_per_run,
        max_retries=config.max_retries,
    )


@router.get("/health")
async def health(engine: Engine = Depends(get_engine)):
    return {
        "status": "ok",
        "sandboxes": len(engine.sandbox_manager.list_sandboxes()),
        "active_runs": sum(
            1 for record in engine.run_store.list() if not record.status.terminal
        ),
    }
