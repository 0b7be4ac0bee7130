"""
Tests for the sandbox pool and the sandbox process policy.

These start real sandbox processes with the running interpreter and no
third-party dependencies.
"""

import asyncio
import os
import pickle
import time

import pytest

from qflow.config import ResourceLimits
from qflow.errors import DependencyInstallError, ProvisionTimeout, SandboxFault
from qflow.models.blueprint import Dependency
from qflow.services.sandbox_manager import (
    ExecutionRequest,
    SandboxState,
    _parse_envelope,
    sandbox_key,
)
from qflow.services.sandbox_bootstrap import ENVELOPE_MARKER

LIMITS = ResourceLimits(cpu_share=1.0, memory_mb=512, wall_timeout_seconds=20.0)


def request(code, inputs=None, entry_function="main", params=None, blocked_imports=("ctypes",)):
    return ExecutionRequest(
        definition_id="test-node",
        code=code,
        entry_function=entry_function,
        inputs=pickle.dumps(inputs or {}, protocol=4),
        params=params or {},
        blocked_imports=list(blocked_imports),
    )


class TestSandboxKey:

    def test_key_ignores_dependency_order(self):
        deps_a = [Dependency(name="numpy", constraint=">=1.26"), Dependency(name="attrs")]
        deps_b = [Dependency(name="attrs"), Dependency(name="numpy", constraint=">=1.26")]
        assert sandbox_key("python", "3.12", deps_a) == sandbox_key("python", "3.12", deps_b)
        assert sandbox_key("python", "3.12", deps_a) == "python@3.12|attrs,numpy>=1.26"

    def test_invalid_dependency_rejected(self):
        with pytest.raises(ValueError):
            Dependency(name="numpy; rm -rf /")
        with pytest.raises(ValueError):
            Dependency(name="numpy", constraint="latest")


class TestEnvelope:

    def test_envelope_is_last_marker(self):
        stdout = f"user output\n{ENVELOPE_MARKER}{{\"ok\": true}}\n".encode()
        envelope, rest = _parse_envelope(stdout)
        assert envelope == {"ok": True}
        assert rest == "user output\n"

    def test_missing_envelope(self):
        envelope, rest = _parse_envelope(b"Segmentation fault\n")
        assert envelope is None
        assert rest == "Segmentation fault\n"


class TestDependencyReport:

    def test_report(self):
        error = DependencyInstallError(["attrs"], {"nope": "No matching distribution"}, 1200)
        assert error.report() == {
            "success": False,
            "installed_packages": ["attrs"],
            "failed_packages": [{"name": "nope", "error": "No matching distribution"}],
            "installation_time": 1200,
        }
        assert "nope" in str(error)


class TestLeasing:

    @pytest.mark.asyncio
    async def test_acquire_and_reuse(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        sandbox_id = handle.sandbox_id
        assert manager.list_sandboxes()[0].state == SandboxState.LEASED
        await manager.release(handle)
        assert manager.list_sandboxes()[0].state == SandboxState.FREE

        again = await manager.acquire(scope="run-1")
        assert again.sandbox_id == sandbox_id
        await manager.release(again)

    @pytest.mark.asyncio
    async def test_scopes_do_not_share_sandboxes(self, engine):
        manager = engine.sandbox_manager
        first = await manager.acquire(scope="run-1")
        await manager.release(first)
        second = await manager.acquire(scope="run-2")
        assert second.sandbox_id != first.sandbox_id
        await manager.release(second)

    @pytest.mark.asyncio
    async def test_concurrent_leases_get_distinct_sandboxes(self, engine):
        manager = engine.sandbox_manager
        first = await manager.acquire(scope="run-1")
        second = await manager.acquire(scope="run-1")
        assert first.sandbox_id != second.sandbox_id
        await manager.release(first)
        await manager.release(second)

    @pytest.mark.asyncio
    async def test_pool_size_makes_callers_wait(self, engine_factory):
        manager = engine_factory(pool_size=1).sandbox_manager
        first = await manager.acquire(scope="run-1")
        waiter = asyncio.create_task(manager.acquire(scope="run-1"))
        await asyncio.sleep(0.1)
        assert not waiter.done()

        await manager.release(first)
        second = await asyncio.wait_for(waiter, timeout=5)
        assert second.sandbox_id == first.sandbox_id
        await manager.release(second)

    @pytest.mark.asyncio
    async def test_host_cap_evicts_idle_sandbox(self, engine_factory):
        manager = engine_factory(max_sandboxes=1).sandbox_manager
        first = await manager.acquire(scope="run-1")
        await manager.release(first)
        second = await manager.acquire(scope="run-2")
        sandboxes = manager.list_sandboxes()
        assert [s.sandbox_id for s in sandboxes] == [second.sandbox_id]
        await manager.release(second)

    @pytest.mark.asyncio
    async def test_discard_destroys(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        workdir = handle.sandbox.workdir
        assert workdir.exists()
        await manager.release(handle, discard=True)
        assert manager.list_sandboxes() == []
        assert not workdir.exists()
        assert handle.sandbox.state == SandboxState.DESTROYED

    @pytest.mark.asyncio
    async def test_released_handle_cannot_execute(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        await manager.release(handle)
        with pytest.raises(SandboxFault):
            await handle.execute(request("def main():\n    return 1\n"), LIMITS)

    @pytest.mark.asyncio
    async def test_exhausted_sandbox_is_replaced(self, engine_factory):
        manager = engine_factory(max_executions_per_sandbox=1).sandbox_manager
        handle = await manager.acquire(scope="run-1")
        await handle.execute(request("def main():\n    return 1\n"), LIMITS)
        await manager.release(handle)
        assert manager.list_sandboxes() == []

    @pytest.mark.asyncio
    async def test_unsupported_runtime(self, engine):
        with pytest.raises(SandboxFault, match="Unsupported runtime"):
            await engine.sandbox_manager.acquire(runtime="ruby")
        with pytest.raises(SandboxFault, match="not a supported"):
            await engine.sandbox_manager.acquire(version="2.7")

    @pytest.mark.asyncio
    async def test_running_interpreter_is_available(self, engine):
        config = engine.config
        assert config.default_python_version in engine.sandbox_manager.available_runtimes()


class TestReaping:

    @pytest.mark.asyncio
    async def test_destroy_idle_leaves_fresh_sandboxes(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        await manager.release(handle)
        before = manager.list_sandboxes()

        assert await manager.destroy_idle() == []
        assert await manager.destroy_idle() == []
        assert manager.list_sandboxes() == before

    @pytest.mark.asyncio
    async def test_destroy_idle_after_threshold(self, engine):
        manager = engine.sandbox_manager
        leased = await manager.acquire(scope="run-1")
        idle = await manager.acquire(scope="run-1")
        await manager.release(idle)

        later = time.monotonic() + engine.config.idle_destroy_after_seconds + 1
        assert await manager.destroy_idle(now=later) == [idle.sandbox_id]
        assert [s.sandbox_id for s in manager.list_sandboxes()] == [leased.sandbox_id]
        await manager.release(leased)

    @pytest.mark.asyncio
    async def test_release_scope(self, engine):
        manager = engine.sandbox_manager
        mine = await manager.acquire(scope="run-1")
        other = await manager.acquire(scope="run-2")
        await manager.release(mine)
        await manager.release(other)

        assert await manager.release_scope("run-1") == [mine.sandbox_id]
        assert [s.scope for s in manager.list_sandboxes()] == ["run-2"]


class TestProvisioning:

    @pytest.mark.asyncio
    async def test_failed_install_reports_and_cleans_up(self, engine, monkeypatch):
        monkeypatch.setenv("PIP_NO_INDEX", "1")
        manager = engine.sandbox_manager
        with pytest.raises(DependencyInstallError) as exc_info:
            await manager.acquire(dependencies=[Dependency(name="qflow-missing-package")], scope="run-1")

        assert list(exc_info.value.failed) == ["qflow-missing-package"]
        report = exc_info.value.report()
        assert report["success"] is False
        assert report["installed_packages"] == []
        assert manager.list_sandboxes() == []
        assert list(engine.config.sandbox_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_install_timeout(self, engine_factory, monkeypatch):
        monkeypatch.setenv("PIP_NO_INDEX", "1")
        manager = engine_factory(dependency_install_timeout_seconds=0.01).sandbox_manager
        with pytest.raises(ProvisionTimeout):
            await manager.acquire(dependencies=[Dependency(name="qflow-missing-package")], scope="run-1")
        assert manager.list_sandboxes() == []

    @pytest.mark.asyncio
    async def test_cancelled_install_kills_pip(self, engine, tmp_path, monkeypatch):
        pidfile = tmp_path / "pip.pid"
        installer = tmp_path / "slow-installer"
        installer.write_text(f"#!/bin/sh\necho $$ > {pidfile}\nexec sleep 30\n")
        installer.chmod(0o755)

        manager = engine.sandbox_manager
        monkeypatch.setattr(manager, "resolve_runtime", lambda runtime, version: str(installer))
        acquiring = asyncio.create_task(
            manager.acquire(dependencies=[Dependency(name="attrs")], scope="run-1")
        )

        deadline = time.monotonic() + 10
        while not (pidfile.exists() and pidfile.read_text().strip()):
            assert time.monotonic() < deadline, "installer never started"
            await asyncio.sleep(0.05)
        pid = int(pidfile.read_text())

        acquiring.cancel()
        with pytest.raises(asyncio.CancelledError):
            await acquiring

        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
        assert manager.list_sandboxes() == []


class TestExecution:

    @pytest.mark.asyncio
    async def test_ok_with_inputs_params_and_stdout(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        code = (
            "def main(x, params):\n"
            "    print('scaling', x)\n"
            "    return x * params['factor']\n"
        )
        outcome = await handle.execute(request(code, {"x": 4}, params={"factor": 3}), LIMITS)
        await manager.release(handle)

        assert outcome.status == "ok"
        assert pickle.loads(outcome.result) == 12
        assert outcome.stdout == "scaling 4\n"
        assert outcome.usage.wall_seconds > 0
        assert manager.list_sandboxes()[0].executions == 1

    @pytest.mark.asyncio
    async def test_async_entry_function(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        code = (
            "import asyncio\n"
            "async def main():\n"
            "    await asyncio.sleep(0)\n"
            "    return 'done'\n"
        )
        outcome = await handle.execute(request(code), LIMITS)
        await manager.release(handle)
        assert outcome.status == "ok"
        assert pickle.loads(outcome.result) == "done"

    @pytest.mark.asyncio
    async def test_user_exception(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        outcome = await handle.execute(request("def main():\n    raise ValueError('bad value')\n"), LIMITS)
        await manager.release(handle)
        assert outcome.status == "error"
        assert outcome.stage == "call"
        assert outcome.error_type == "ValueError"
        assert outcome.message == "bad value"
        assert "<node:test-node>" in outcome.traceback

    @pytest.mark.asyncio
    async def test_load_error(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        outcome = await handle.execute(request("x = 1 / 0\ndef main():\n    return x\n"), LIMITS)
        await manager.release(handle)
        assert outcome.status == "error"
        assert outcome.stage == "load"
        assert outcome.error_type == "ZeroDivisionError"

    @pytest.mark.asyncio
    async def test_network_is_blocked(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        code = (
            "import socket\n"
            "def main():\n"
            "    socket.create_connection(('127.0.0.1', 9), timeout=1)\n"
        )
        outcome = await handle.execute(request(code), LIMITS)
        await manager.release(handle)
        assert outcome.status == "error"
        assert outcome.error_type == "PermissionError"
        assert "Network access is disabled" in outcome.message

    @pytest.mark.asyncio
    async def test_subprocesses_are_blocked(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        code = (
            "import subprocess\n"
            "def main():\n"
            "    return subprocess.run(['true']).returncode\n"
        )
        outcome = await handle.execute(request(code), LIMITS)
        await manager.release(handle)
        assert outcome.status == "error"
        assert outcome.error_type == "PermissionError"

    @pytest.mark.asyncio
    async def test_blocked_import(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        code = "def main():\n    import ctypes\n    return 1\n"
        outcome = await handle.execute(request(code), LIMITS)
        await manager.release(handle)
        assert outcome.status == "error"
        assert outcome.error_type == "ImportError"
        assert "ctypes" in outcome.message

    @pytest.mark.asyncio
    async def test_limits_that_cannot_be_applied(self, engine, monkeypatch):
        def refuse():
            raise OSError("setrlimit refused")

        monkeypatch.setattr("qflow.services.sandbox_manager._limit_setter", lambda limits: refuse)
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        with pytest.raises(SandboxFault, match="Failed to start sandbox process"):
            await handle.execute(request("def main():\n    return 1\n"), LIMITS)
        assert not handle.sandbox.busy
        await manager.release(handle, discard=True)
        assert manager.list_sandboxes() == []

    @pytest.mark.asyncio
    async def test_wall_clock_timeout(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        code = "import time\ndef main():\n    time.sleep(30)\n"
        started = time.monotonic()
        outcome = await handle.execute(request(code), LIMITS.merged({"wall_timeout_seconds": 1}))
        await manager.release(handle, discard=True)
        assert outcome.status == "timeout"
        assert time.monotonic() - started < 10

    @pytest.mark.asyncio
    async def test_memory_limit(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        code = "def main():\n    return len(bytearray(2 * 1024 * 1024 * 1024))\n"
        outcome = await handle.execute(request(code), LIMITS.merged({"memory_mb": 256}))
        await manager.release(handle, discard=True)
        assert outcome.status == "error"
        assert outcome.error_type == "MemoryError"

    @pytest.mark.asyncio
    async def test_abort_scope_stops_running_process(self, engine):
        manager = engine.sandbox_manager
        handle = await manager.acquire(scope="run-1")
        code = "import time\ndef main():\n    time.sleep(30)\n"
        execution = asyncio.create_task(handle.execute(request(code), LIMITS))
        await asyncio.sleep(1.0)

        await manager.abort_scope("run-1", grace=0.5)
        outcome = await asyncio.wait_for(execution, timeout=10)
        assert outcome.status == "cancelled"
        await manager.release(handle)
        assert manager.list_sandboxes() == []
