"""
Sandbox Lifecycle Manager.

A sandbox is a private work dir plus a site-packages directory for one
(runtime, version, dependency set) key, owned by one scope (usually a run id).
Each execution starts a fresh `python -I` process in that work dir with
resource limits applied before exec:

- RLIMIT_AS:  memory ceiling (limits.memory_mb)
- RLIMIT_CPU: ceil(cpu_share * wall_timeout) CPU seconds; SIGXCPU past the
  soft limit, SIGKILL past the hard limit
- niceness derived from cpu_share
- wall-clock timeout enforced here; the whole process group is killed

The import/syscall policy is installed inside the process by
sandbox_bootstrap.py.

Pool rules:
- at most `pool_size` sandboxes per (scope, key), `max_sandboxes` in total
- a leased sandbox runs one execution at a time
- free sandboxes are reused until idle for `idle_destroy_after_seconds` or
  after `max_executions_per_sandbox` executions
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import math
import os
import resource
import shutil
import signal
import subprocess
import sys
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Sequence

from pydantic import BaseModel, Field

from qflow.config import EngineConfig, ResourceLimits
from qflow.errors import DependencyInstallError, ProvisionTimeout, SandboxFault
from qflow.models.blueprint import Dependency
from qflow.services.sandbox_bootstrap import ENVELOPE_MARKER

logger = logging.getLogger(__name__)

BOOTSTRAP_PATH = Path(__file__).with_name("sandbox_bootstrap.py")
_STDERR_TAIL = 4000


def sandbox_key(runtime: str, version: str, dependencies: Sequence[Dependency]) -> str:
    deps = ",".join(sorted(dep.requirement for dep in dependencies))
    return f"{runtime}@{version}|{deps}"


class SandboxState(str, Enum):
    FREE = "free"
    LEASED = "leased"
    DRAINING = "draining"
    DESTROYED = "destroyed"


class SandboxUsage(BaseModel):
    cpu_seconds: float = 0.0
    peak_memory_kb: int = 0
    wall_seconds: float = 0.0


class SandboxInfo(BaseModel):
    sandbox_id: str
    key: str
    scope: str | None
    state: SandboxState
    runtime: str
    runtime_version: str
    installed_packages: list[str]
    created_at: datetime
    last_used_at: datetime
    executions: int
    usage: SandboxUsage


class ExecutionRequest(BaseModel):
    definition_id: str
    code: str
    entry_function: str
    # pickled dict of port -> decoded value
    inputs: bytes
    params: dict[str, Any] = Field(default_factory=dict)
    blocked_imports: list[str] = Field(default_factory=list)


class SandboxOutcome(BaseModel):
    status: Literal["ok", "error", "timeout", "killed", "cancelled", "crashed"]
    result: bytes | None = None
    stage: str | None = None
    error_type: str | None = None
    message: str | None = None
    traceback: str | None = None
    signal: int | None = None
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    usage: SandboxUsage = Field(default_factory=SandboxUsage)


def _limit_setter(limits: ResourceLimits):
    memory_bytes = limits.memory_mb * 1024 * 1024
    cpu_seconds = max(1, math.ceil(limits.cpu_share * limits.wall_timeout_seconds))
    niceness = round((1.0 - limits.cpu_share) * 19)

    def _apply():
        resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
        if niceness:
            os.nice(niceness)

    return _apply


def _parse_envelope(stdout: bytes) -> tuple[dict[str, Any] | None, str]:
    text = stdout.decode("utf-8", errors="replace")
    index = text.rfind(ENVELOPE_MARKER)
    if index < 0:
        return None, text
    raw = text[index + len(ENVELOPE_MARKER):].strip()
    try:
        return json.loads(raw), text[:index]
    except json.JSONDecodeError:
        return None, text


class Sandbox:
    def __init__(
        self,
        key: str,
        scope: str | None,
        runtime: str,
        runtime_version: str,
        interpreter: str,
        root: Path,
    ):
        self.sandbox_id = str(uuid.uuid4())
        self.key = key
        self.scope = scope
        self.runtime = runtime
        self.runtime_version = runtime_version
        self.interpreter = interpreter
        self.workdir = root / self.sandbox_id
        self.site_dir = self.workdir / "site-packages"
        self.state = SandboxState.LEASED
        self.installed_packages: list[str] = []
        self.created_at = datetime.now(timezone.utc)
        self.last_used_at = self.created_at
        self.last_used = time.monotonic()
        self.executions = 0
        self.usage = SandboxUsage()
        self.destroy_on_release = False
        self._process: asyncio.subprocess.Process | None = None
        self._cancel_requested = False

    def info(self) -> SandboxInfo:
        return SandboxInfo(
            sandbox_id=self.sandbox_id,
            key=self.key,
            scope=self.scope,
            state=self.state,
            runtime=self.runtime,
            runtime_version=self.runtime_version,
            installed_packages=list(self.installed_packages),
            created_at=self.created_at,
            last_used_at=self.last_used_at,
            executions=self.executions,
            usage=self.usage.model_copy(),
        )

    @property
    def busy(self) -> bool:
        return self._process is not None

    def _env(self) -> dict[str, str]:
        tmp = self.workdir / "tmp"
        return {
            "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
            "HOME": str(self.workdir),
            "TMPDIR": str(tmp),
            "LANG": os.environ.get("LANG", "C.UTF-8"),
        }

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def provision(self, dependencies: Sequence[Dependency], install_timeout: float) -> None:
        try:
            self.workdir.mkdir(parents=True, exist_ok=True)
            self.site_dir.mkdir(exist_ok=True)
            (self.workdir / "tmp").mkdir(exist_ok=True)
            shutil.copyfile(BOOTSTRAP_PATH, self.workdir / "_bootstrap.py")
        except OSError as e:
            raise SandboxFault(f"Failed to prepare sandbox directory {self.workdir}: {e}") from e

        if not dependencies:
            return

        start = time.monotonic()
        deadline = start + install_timeout
        installed: list[str] = []
        failed: dict[str, str] = {}

        for dependency in dependencies:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProvisionTimeout(
                    f"Dependency installation exceeded {install_timeout}s for sandbox {self.key}"
                )
            try:
                proc = await asyncio.create_subprocess_exec(
                    self.interpreter, "-m", "pip", "install",
                    "--disable-pip-version-check", "--no-input", "--quiet",
                    "--target", str(self.site_dir),
                    dependency.requirement,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(self.workdir),
                )
            except OSError as e:
                raise SandboxFault(f"Failed to start pip for {dependency.requirement}: {e}") from e
            try:
                _, stderr = await asyncio.wait_for(proc.communicate(), timeout=remaining)
            except asyncio.CancelledError:
                # pip must be gone before the caller removes the work dir
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await asyncio.shield(proc.wait())
                raise
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                raise ProvisionTimeout(
                    f"Dependency installation exceeded {install_timeout}s while installing {dependency.requirement}"
                )

            if proc.returncode == 0:
                installed.append(dependency.requirement)
                logger.info("Installed %s into sandbox %s", dependency.requirement, self.sandbox_id)
            else:
                reason = stderr.decode("utf-8", errors="replace").strip().splitlines()
                failed[dependency.requirement] = reason[-1] if reason else f"pip exited with {proc.returncode}"
                logger.warning("Failed to install %s: %s", dependency.requirement, failed[dependency.requirement])

        self.installed_packages = installed
        if failed:
            raise DependencyInstallError(
                installed,
                failed,
                installation_time_ms=int((time.monotonic() - start) * 1000),
            )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, request: ExecutionRequest, limits: ResourceLimits) -> SandboxOutcome:
        if self.busy:
            raise SandboxFault(f"Sandbox {self.sandbox_id} is already executing")

        payload = json.dumps({
            "definition_id": request.definition_id,
            "code": request.code,
            "entry_function": request.entry_function,
            "inputs": base64.b64encode(request.inputs).decode("ascii"),
            "params": request.params,
            "network": limits.network,
            "blocked_imports": request.blocked_imports,
        }).encode("utf-8")

        self._cancel_requested = False
        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                self.interpreter, "-I", str(self.workdir / "_bootstrap.py"), str(self.site_dir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.workdir),
                env=self._env(),
                start_new_session=True,
                preexec_fn=_limit_setter(limits),
            )
        except (OSError, subprocess.SubprocessError) as e:
            # SubprocessError covers a failing preexec_fn (limits could not be applied)
            raise SandboxFault(f"Failed to start sandbox process: {e}") from e

        self._process = proc
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(payload), timeout=limits.wall_timeout_seconds
            )
        except asyncio.TimeoutError:
            self._signal_group(signal.SIGKILL)
            await proc.wait()
            self._record(None, time.monotonic() - started)
            return SandboxOutcome(
                status="timeout",
                signal=signal.SIGKILL,
                usage=SandboxUsage(wall_seconds=time.monotonic() - started),
            )
        except asyncio.CancelledError:
            self._signal_group(signal.SIGKILL)
            await proc.wait()
            raise
        finally:
            self._process = None

        wall = time.monotonic() - started
        envelope, user_stdout = _parse_envelope(stdout)
        stderr_text = stderr.decode("utf-8", errors="replace")[-_STDERR_TAIL:]
        usage = SandboxUsage(wall_seconds=wall)
        if envelope is not None:
            reported = envelope.get("usage") or {}
            usage = SandboxUsage(
                cpu_seconds=reported.get("cpu_seconds", 0.0),
                peak_memory_kb=reported.get("peak_memory_kb", 0),
                wall_seconds=wall,
            )
        self._record(usage, wall)

        returncode = proc.returncode
        if self._cancel_requested:
            return SandboxOutcome(status="cancelled", exit_code=returncode, stderr=stderr_text, usage=usage)
        if returncode is not None and returncode < 0:
            return SandboxOutcome(
                status="killed",
                signal=-returncode,
                exit_code=returncode,
                stdout=user_stdout,
                stderr=stderr_text,
                usage=usage,
            )
        if envelope is None:
            return SandboxOutcome(
                status="crashed",
                exit_code=returncode,
                message="Sandbox process exited without a result envelope",
                stdout=user_stdout,
                stderr=stderr_text,
                usage=usage,
            )

        captured = envelope.get("stdout", "")
        if envelope.get("ok"):
            return SandboxOutcome(
                status="ok",
                result=base64.b64decode(envelope["result"]),
                exit_code=returncode,
                stdout=captured,
                stderr=stderr_text,
                usage=usage,
            )
        return SandboxOutcome(
            status="error",
            stage=envelope.get("stage"),
            error_type=envelope.get("error_type"),
            message=envelope.get("message"),
            traceback=envelope.get("traceback"),
            exit_code=returncode,
            stdout=captured,
            stderr=stderr_text,
            usage=usage,
        )

    def _record(self, usage: SandboxUsage | None, wall: float) -> None:
        self.executions += 1
        self.last_used = time.monotonic()
        self.last_used_at = datetime.now(timezone.utc)
        self.usage.wall_seconds += wall
        if usage is not None:
            self.usage.cpu_seconds += usage.cpu_seconds
            self.usage.peak_memory_kb = max(self.usage.peak_memory_kb, usage.peak_memory_kb)

    def _signal_group(self, sig: int) -> None:
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass

    async def terminate(self, grace: float) -> None:
        """SIGTERM the running process group, SIGKILL it after `grace` seconds."""
        proc = self._process
        if proc is None:
            return
        self._cancel_requested = True
        self._signal_group(signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            self._signal_group(signal.SIGKILL)
            await proc.wait()

    def remove_files(self) -> None:
        shutil.rmtree(self.workdir, ignore_errors=True)


class SandboxHandle:
    """A lease on one sandbox. Executions go through the handle."""

    def __init__(self, sandbox: Sandbox):
        self.sandbox = sandbox
        self.released = False

    @property
    def sandbox_id(self) -> str:
        return self.sandbox.sandbox_id

    async def execute(self, request: ExecutionRequest, limits: ResourceLimits) -> SandboxOutcome:
        if self.released:
            raise SandboxFault(f"Lease on sandbox {self.sandbox_id} was already released")
        return await self.sandbox.execute(request, limits)


class SandboxManager:
    def __init__(self, config: EngineConfig):
        self.config = config
        self.root = Path(config.sandbox_root)
        self._sandboxes: dict[str, Sandbox] = {}
        self._interpreters: dict[str, str] = {}
        self._condition = asyncio.Condition()
        self._closed = False

    # ------------------------------------------------------------------
    # Runtime images
    # ------------------------------------------------------------------

    def resolve_runtime(self, runtime: str, version: str) -> str:
        """Return the interpreter path for a runtime version (cached)."""
        if runtime != "python":
            raise SandboxFault(f"Unsupported runtime '{runtime}'")
        if version not in self.config.supported_python_versions:
            raise SandboxFault(f"Python {version} is not a supported runtime version")

        cached = self._interpreters.get(version)
        if cached:
            return cached

        running = f"{sys.version_info.major}.{sys.version_info.minor}"
        if version == running:
            interpreter = sys.executable
        else:
            interpreter = shutil.which(f"python{version}")
        if not interpreter:
            raise SandboxFault(f"Python {version} runtime is not available on this host")

        self._interpreters[version] = interpreter
        return interpreter

    def available_runtimes(self) -> list[str]:
        available = []
        for version in self.config.supported_python_versions:
            try:
                self.resolve_runtime("python", version)
            except SandboxFault:
                continue
            available.append(version)
        return available

    # ------------------------------------------------------------------
    # Leasing
    # ------------------------------------------------------------------

    def _live(self) -> list[Sandbox]:
        return [s for s in self._sandboxes.values() if s.state != SandboxState.DESTROYED]

    def _expired(self, sandbox: Sandbox, now: float) -> bool:
        return now - sandbox.last_used >= self.config.idle_destroy_after_seconds

    def _exhausted(self, sandbox: Sandbox) -> bool:
        return sandbox.executions >= self.config.max_executions_per_sandbox

    def _detach(self, sandbox: Sandbox) -> None:
        sandbox.state = SandboxState.DRAINING
        self._sandboxes.pop(sandbox.sandbox_id, None)

    async def _finish_destroy(self, sandboxes: list[Sandbox]) -> None:
        for sandbox in sandboxes:
            await asyncio.to_thread(sandbox.remove_files)
            sandbox.state = SandboxState.DESTROYED
            logger.info("Destroyed sandbox %s (%s)", sandbox.sandbox_id, sandbox.key)

    async def acquire(
        self,
        runtime: str = "python",
        version: str | None = None,
        dependencies: Sequence[Dependency] = (),
        limits: ResourceLimits | None = None,
        scope: str | None = None,
    ) -> SandboxHandle:
        version = version or self.config.default_python_version
        interpreter = self.resolve_runtime(runtime, version)
        key = sandbox_key(runtime, version, dependencies)

        stale: list[Sandbox] = []
        async with self._condition:
            while True:
                if self._closed:
                    raise SandboxFault("Sandbox manager is shut down")

                now = time.monotonic()
                reusable = None
                same_key = 0
                for sandbox in self._live():
                    if sandbox.scope != scope or sandbox.key != key:
                        continue
                    if sandbox.state == SandboxState.FREE and (
                        self._expired(sandbox, now) or self._exhausted(sandbox)
                    ):
                        self._detach(sandbox)
                        stale.append(sandbox)
                        continue
                    same_key += 1
                    if reusable is None and sandbox.state == SandboxState.FREE:
                        reusable = sandbox

                if reusable is not None:
                    reusable.state = SandboxState.LEASED
                    logger.debug("Reusing sandbox %s for %s", reusable.sandbox_id, key)
                    break

                if same_key < self.config.pool_size:
                    if len(self._live()) >= self.config.max_sandboxes:
                        idle = [s for s in self._live() if s.state == SandboxState.FREE]
                        if idle:
                            victim = min(idle, key=lambda s: s.last_used)
                            self._detach(victim)
                            stale.append(victim)
                    if len(self._live()) < self.config.max_sandboxes:
                        created = Sandbox(key, scope, runtime, version, interpreter, self.root)
                        self._sandboxes[created.sandbox_id] = created
                        break

                await self._condition.wait()

        if stale:
            await self._finish_destroy(stale)

        if reusable is not None:
            return SandboxHandle(reusable)

        logger.info("Provisioning sandbox %s for %s (scope=%s)", created.sandbox_id, key, scope)
        try:
            await created.provision(dependencies, self.config.dependency_install_timeout_seconds)
        except BaseException:
            async with self._condition:
                self._detach(created)
                self._condition.notify_all()
            await self._finish_destroy([created])
            raise
        return SandboxHandle(created)

    async def release(self, handle: SandboxHandle, discard: bool = False) -> None:
        if handle.released:
            return
        handle.released = True
        sandbox = handle.sandbox

        async with self._condition:
            destroy = (
                discard
                or sandbox.destroy_on_release
                or self._exhausted(sandbox)
                or self._closed
            )
            if destroy:
                self._detach(sandbox)
            else:
                sandbox.state = SandboxState.FREE
            self._condition.notify_all()

        if destroy:
            await self._finish_destroy([sandbox])

    # ------------------------------------------------------------------
    # Reaping
    # ------------------------------------------------------------------

    async def destroy_idle(self, now: float | None = None) -> list[str]:
        """Destroy free sandboxes idle past the threshold. Safe to call repeatedly."""
        now = time.monotonic() if now is None else now
        async with self._condition:
            idle = [
                s for s in self._live()
                if s.state == SandboxState.FREE and self._expired(s, now)
            ]
            for sandbox in idle:
                self._detach(sandbox)
            if idle:
                self._condition.notify_all()

        await self._finish_destroy(idle)
        return [s.sandbox_id for s in idle]

    async def release_scope(self, scope: str) -> list[str]:
        async with self._condition:
            owned = [s for s in self._live() if s.scope == scope]
            free = [s for s in owned if s.state == SandboxState.FREE]
            for sandbox in owned:
                if sandbox.state == SandboxState.FREE:
                    self._detach(sandbox)
                else:
                    sandbox.destroy_on_release = True
            if free:
                self._condition.notify_all()

        await self._finish_destroy(free)
        return [s.sandbox_id for s in free]

    async def abort_scope(self, scope: str, grace: float) -> None:
        running = [s for s in self._live() if s.scope == scope and s.busy]
        for sandbox in running:
            sandbox.destroy_on_release = True
        if running:
            logger.info("Aborting %d running sandbox processes for scope %s", len(running), scope)
            await asyncio.gather(*(s.terminate(grace) for s in running))

    def list_sandboxes(self) -> list[SandboxInfo]:
        return [s.info() for s in self._live()]

    async def shutdown(self) -> None:
        async with self._condition:
            self._closed = True
            sandboxes = self._live()
            self._condition.notify_all()
        await asyncio.gather(*(s.terminate(0) for s in sandboxes if s.busy))
        for sandbox in sandboxes:
            self._detach(sandbox)
        await self._finish_destroy(sandboxes)
