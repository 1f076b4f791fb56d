"""Stand-in for the stdio Kiwi TCMS MCP worker used by the tests.

Reads one JSON-RPC request per line from stdin and answers on stdout.
Requests are handled on threads so slow calls can be answered out of
order. The method name selects the behaviour:

    ping      -> {}
    echo      -> params
    env       -> the Kiwi TCMS variables the worker was started with
    slow      -> params, after params["delay"] seconds
    noise     -> log lines and broken JSON on stdout, then params
    split     -> response split across two writes, followed by a stray
                 response for an id nobody registered
    notify    -> a worker notification and a worker request, then params
    twice     -> the same response written twice
    stderr    -> params["text"] written to stderr, then {}
    silent    -> no response
    crash     -> exit immediately with params["code"] (default 3)
    reply_then_exit -> params, then exit with params["code"] (default 4)
    orphan_then_exit -> start a child that keeps stdout and stderr open for
                 params["linger"] seconds (default 10), then exit with
                 params["code"] (default 5)

FAKE_WORKER_IGNORE_PING=1 makes the worker ignore ping requests.
FAKE_WORKER_BANNER=<text> prints a banner line on startup.
"""

import json
import os
import subprocess
import sys
import threading
import time

_write_lock = threading.Lock()


def _write(text: str, flush: bool = True) -> None:
    with _write_lock:
        sys.stdout.write(text)
        if flush:
            sys.stdout.flush()


def _reply(request_id, result) -> None:
    _write(json.dumps({"jsonrpc": "2.0", "id": request_id, "result": result}) + "\n")


def _error(request_id, code: int, message: str) -> None:
    error = {"code": code, "message": message}
    _write(json.dumps({"jsonrpc": "2.0", "id": request_id, "error": error}) + "\n")


def _handle(request: dict) -> None:
    request_id = request.get("id")
    method = request.get("method")
    params = request.get("params") or {}

    if method == "ping":
        if os.getenv("FAKE_WORKER_IGNORE_PING") != "1":
            _reply(request_id, {})
    elif method == "echo":
        _reply(request_id, params)
    elif method == "env":
        _reply(
            request_id,
            {name: os.getenv(name) for name in ("KIWI_BASE_URL", "KIWI_TOKEN", "LOG_LEVEL")},
        )
    elif method == "slow":
        time.sleep(float(params.get("delay", 0.1)))
        _reply(request_id, params)
    elif method == "noise":
        _write("Kiwi TCMS client initialised\n")
        _write('{"id": broken\n')
        _write("[1, 2, 3]\n")
        _reply(request_id, params)
    elif method == "split":
        head = json.dumps({"id": request_id, "result": "ok"}) + '\n{"i'
        _write(head)
        time.sleep(0.05)
        _write('d":"never-registered","result":"x"}\n')
    elif method == "notify":
        _write(json.dumps({"jsonrpc": "2.0", "method": "notifications/message"}) + "\n")
        _write(json.dumps({"jsonrpc": "2.0", "id": request_id, "method": "roots/list"}) + "\n")
        _reply(request_id, params)
    elif method == "twice":
        _reply(request_id, params)
        _reply(request_id, params)
    elif method == "stderr":
        sys.stderr.write(str(params.get("text", "")) + "\n")
        sys.stderr.flush()
        _reply(request_id, {})
    elif method == "silent":
        pass
    elif request_id is not None:
        _error(request_id, -32601, f"Method not found: {method}")


def main() -> None:
    banner = os.getenv("FAKE_WORKER_BANNER")
    if banner:
        _write(banner + "\n")

    while True:
        line = sys.stdin.readline()
        if not line:
            break
        try:
            request = json.loads(line)
        except ValueError:
            continue
        if request.get("method") == "crash":
            sys.stderr.write("ERROR worker crashing on request\n")
            sys.stderr.flush()
            os._exit(int((request.get("params") or {}).get("code", 3)))
        if request.get("method") == "reply_then_exit":
            params = request.get("params") or {}
            _reply(request.get("id"), params)
            os._exit(int(params.get("code", 4)))
        if request.get("method") == "orphan_then_exit":
            params = request.get("params") or {}
            linger = float(params.get("linger", 10))
            subprocess.Popen([sys.executable, "-c", f"import time; time.sleep({linger})"])
            os._exit(int(params.get("code", 5)))
        threading.Thread(target=_handle, args=(request,), daemon=True).start()


if __name__ == "__main__":
    main()
