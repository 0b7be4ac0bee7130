"""
Runner executed inside a sandbox process:

    python -I _bootstrap.py <site_dir>

Reads one JSON request from stdin, runs the node's entry function and writes
one JSON envelope (prefixed by ENVELOPE_MARKER) as the last line of stdout.
Anything the user code prints is captured and returned in the envelope.

This file is copied into each sandbox work dir and must only import the
standard library.
"""

import base64
import inspect
import io
import json
import pickle
import resource
import socket
import sys
import time
import traceback

ENVELOPE_MARKER = "\x1eQFLOW-ENVELOPE\x1e"

_NETWORK_FAMILIES = {socket.AF_INET, socket.AF_INET6}
_SOCKET_EVENTS = {"socket.connect", "socket.bind", "socket.getaddrinfo", "socket.gethostbyname"}
_PROCESS_EVENTS = {
    "subprocess.Popen",
    "os.system",
    "os.exec",
    "os.spawn",
    "os.posix_spawn",
    "os.fork",
    "os.forkpty",
    "os.startfile",
    "pty.spawn",
}


def _is_unix_socket(obj):
    return isinstance(obj, socket.socket) and obj.family == socket.AF_UNIX


def install_policy(network, blocked_imports):
    blocked = frozenset(blocked_imports)

    def hook(event, args):
        if event in _PROCESS_EVENTS:
            raise PermissionError(f"{event} is not allowed inside a sandbox")
        if not network:
            # AF_UNIX pairs stay available for the asyncio self-pipe
            if event == "socket.__new__" and args[1] in _NETWORK_FAMILIES:
                raise PermissionError("Network access is disabled for this node")
            if event in _SOCKET_EVENTS and not _is_unix_socket(args[0]):
                raise PermissionError("Network access is disabled for this node")
        if event == "import" and blocked:
            name = args[0] or ""
            if name.split(".")[0] in blocked:
                raise ImportError(f"Import of '{name}' is blocked inside sandboxes")
        if event == "ctypes.dlopen" and "ctypes" in blocked:
            raise PermissionError("ctypes is blocked inside sandboxes")

    sys.addaudithook(hook)


def _usage(started):
    usage = resource.getrusage(resource.RUSAGE_SELF)
    return {
        "cpu_seconds": usage.ru_utime + usage.ru_stime,
        "peak_memory_kb": usage.ru_maxrss,
        "wall_seconds": time.monotonic() - started,
    }


def _accepts_params(fn, input_names):
    if "params" in input_names:
        return False
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return False
    return "params" in signature.parameters


def _call(fn, kwargs):
    if inspect.iscoroutinefunction(fn):
        import asyncio

        return asyncio.run(fn(**kwargs))
    return fn(**kwargs)


def _error(exc, stage, filename):
    frames = traceback.extract_tb(exc.__traceback__)
    user_frames = [f for f in frames if f.filename == filename]
    stack = traceback.format_list(user_frames or frames)
    stack.extend(traceback.format_exception_only(type(exc), exc))
    return {
        "ok": False,
        "stage": stage,
        "error_type": type(exc).__name__,
        "message": str(exc),
        "traceback": "".join(stack),
    }


def run(request, started):
    filename = f"<node:{request.get('definition_id', 'unknown')}>"
    namespace = {"__name__": "__qflow_node__"}

    try:
        inputs = pickle.loads(base64.b64decode(request["inputs"]))
    except Exception as exc:
        return _error(exc, "inputs", filename)

    install_policy(request.get("network", False), request.get("blocked_imports", []))

    try:
        code = compile(request["code"], filename, "exec")
        exec(code, namespace)
    except BaseException as exc:
        return _error(exc, "load", filename)

    fn = namespace.get(request["entry_function"])
    if not callable(fn):
        return {
            "ok": False,
            "stage": "load",
            "error_type": "NameError",
            "message": f"Entry function '{request['entry_function']}' is not defined",
            "traceback": "",
        }

    kwargs = dict(inputs)
    if _accepts_params(fn, kwargs):
        kwargs["params"] = request.get("params") or {}

    try:
        result = _call(fn, kwargs)
    except BaseException as exc:
        return _error(exc, "call", filename)

    try:
        payload = base64.b64encode(pickle.dumps(result, protocol=4)).decode("ascii")
    except Exception as exc:
        return _error(exc, "serialize", filename)

    return {"ok": True, "result": payload}


def main():
    started = time.monotonic()
    real_stdout = sys.stdout
    captured = io.StringIO()

    request = json.loads(sys.stdin.buffer.read().decode("utf-8"))
    if len(sys.argv) > 1:
        sys.path.insert(0, sys.argv[1])

    sys.stdout = captured
    try:
        envelope = run(request, started)
    except MemoryError:
        captured = io.StringIO()
        envelope = {
            "ok": False,
            "stage": "call",
            "error_type": "MemoryError",
            "message": "",
            "traceback": "",
        }
    finally:
        sys.stdout = real_stdout

    envelope["stdout"] = captured.getvalue()
    envelope["usage"] = _usage(started)
    real_stdout.write("\n" + ENVELOPE_MARKER + json.dumps(envelope) + "\n")
    real_stdout.flush()


if __name__ == "__main__":
    main()
