from __future__ import annotations

import asyncio
import json
import os
import signal
import socket
import sys
import time
from pathlib import Path

import pytest


def _configure_module(
    tsm_mod, monkeypatch: pytest.MonkeyPatch, paths: dict[str, Path]
) -> None:
    root = paths["root"]
    monkeypatch.setattr(tsm_mod, "SANDBOX_ROOT", str(root))
    monkeypatch.setattr(tsm_mod, "SCRIPTS_DIR", str(root / "scripts"))
    monkeypatch.setattr(tsm_mod, "THEMES_ROOT", str(root / "themes"))
    monkeypatch.setattr(tsm_mod, "STATE_FILE", str(paths["state_file"]))
    monkeypatch.setattr(tsm_mod, "TEMP_LOG_DIR", str(paths["log_dir"]))


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def pid_running(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    try:
        with open(f"/proc/{pid}/stat") as f:
            state = f.read().rsplit(")", 1)[1].split()[0]
    except (FileNotFoundError, ProcessLookupError, IndexError):
        return False
    return state != "Z"


def wait_for_exit(pid: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not pid_running(pid):
            return True
        time.sleep(0.05)
    return False


def registered_pids(paths: dict[str, Path], port: int) -> list[int]:
    try:
        state = json.loads(paths["lsof_state"].read_text())
    except FileNotFoundError:
        return []
    return state.get("ports", {}).get(str(port), [])


class FakeTunnelHandle:
    def __init__(self, provider: "FakeTunnelProvider", port: int):
        self._provider = provider
        self.port = port

    def url(self) -> str:
        return f"https://sandbox-{self.port}.tunnel.test"

    async def close(self) -> None:
        if self._provider.close_error:
            raise RuntimeError(self._provider.close_error)
        self._provider.closed.append(self.port)


class FakeTunnelProvider:
    """Stands in for the ngrok SDK: records forward/close calls."""

    def __init__(
        self,
        fail: str | None = None,
        hang: bool = False,
        close_error: str | None = None,
    ):
        self.fail = fail
        self.hang = hang
        self.close_error = close_error
        self.calls: list[int] = []
        self.closed: list[int] = []

    async def forward(self, port: int) -> FakeTunnelHandle:
        self.calls.append(port)
        if self.hang:
            await asyncio.Event().wait()
        if self.fail:
            raise RuntimeError(self.fail)
        await asyncio.sleep(0)
        return FakeTunnelHandle(self, port)


_PY = f"#!{sys.executable}\n"

_REGISTRY_HELPERS = """
import fcntl
import json
import os


STATE_PATH = os.environ["FAKE_LSOF_STATE"]


def update_state(fn):
    lock_path = STATE_PATH + ".lock"
    with open(lock_path, "w") as lock:
        fcntl.flock(lock, fcntl.LOCK_EX)
        try:
            with open(STATE_PATH) as f:
                state = json.load(f)
        except (FileNotFoundError, ValueError):
            state = {"ports": {}, "launchers": []}
        fn(state)
        with open(STATE_PATH, "w") as f:
            json.dump(state, f)


def alive(pid):
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except (OSError, IndexError):
        return False
"""

_FAKE_LSOF_SCRIPT = _PY + _REGISTRY_HELPERS + """
import sys


def main():
    # Only `lsof -ti :PORT` is supported
    port = sys.argv[-1].lstrip(":")
    try:
        with open(STATE_PATH) as f:
            state = json.load(f)
    except (FileNotFoundError, ValueError):
        return 1
    pids = [p for p in state.get("ports", {}).get(port, []) if alive(p)]
    if not pids:
        return 1
    print("\\n".join(str(p) for p in pids))
    return 0


if __name__ == "__main__":
    sys.exit(main())
"""

_LISTENER_SCRIPT = _PY + _REGISTRY_HELPERS + """
import socket
import sys
import time


def bind(port):
    deadline = time.monotonic() + 5
    while True:
        s = socket.socket()
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind(("127.0.0.1", port))
        except OSError:
            s.close()
            if time.monotonic() > deadline:
                raise
            time.sleep(0.05)
            continue
        s.listen(16)
        return s


def main():
    ports = [int(p) for p in sys.argv[1:]]
    socks = [bind(p) for p in ports]

    def register(state):
        for p in ports:
            state["ports"][str(p)] = [os.getpid()]

    update_state(register)
    time.sleep(600)
    return socks


if __name__ == "__main__":
    main()
"""

_FAKE_DEV_SCRIPT = _PY + _REGISTRY_HELPERS + """
import socket
import subprocess
import sys
import time


def wait_port(port):
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        try:
            socket.create_connection(("127.0.0.1", port), timeout=0.2).close()
            return True
        except OSError:
            time.sleep(0.05)
    return False


def main():
    user_id, sandbox_id, store_url, api_key, theme_id, app_port, proxy_port = sys.argv[1:8]
    mode = os.environ.get("FAKE_DEV_MODE", "ok")
    update_state(lambda s: s["launchers"].append(os.getpid()))

    if mode == "silent-exit":
        return 1
    if mode == "fail":
        print("Starting...", flush=True)
        print("Failed to start dev server", file=sys.stderr, flush=True)
        return 3
    if mode == "no-marker":
        print("Starting...", flush=True)
        time.sleep(600)
        return 0
    if mode == "status-file":
        with open(os.environ["SANDBOX_STATUS_FILE"], "w") as f:
            json.dump({"status": "running", "app_port": int(app_port),
                       "proxy_port": int(proxy_port)}, f)
        time.sleep(600)
        return 0

    subprocess.Popen(
        ["listener", app_port, proxy_port],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    wait_port(int(proxy_port))
    print(f"ASSIGNED_PORT={proxy_port}", flush=True)
    print(f"SHOPIFY_PORT={app_port}", flush=True)
    print(f"PROXY_PORT={proxy_port}", flush=True)
    print("Proxy Port: " + proxy_port, flush=True)
    print("\\U0001F389 Both servers are running!", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
"""

_FAKE_BUILD_SCRIPT = _PY + """
import os
import sys

user_id, sandbox_id = sys.argv[1:3]
theme_dir = os.path.join(os.environ["THEMES_ROOT"], f"user_{user_id}", f"theme_{sandbox_id}")
os.makedirs(theme_dir, exist_ok=True)
print(f"Created {theme_dir}")
"""

_FAKE_PULL_SCRIPT = _PY + """
import os
import sys

user_id, sandbox_id, store_url, api_key = sys.argv[1:5]
theme_dir = os.path.join(os.environ["THEMES_ROOT"], f"user_{user_id}", f"theme_{sandbox_id}")
os.makedirs(os.path.join(theme_dir, "layout"), exist_ok=True)
with open(os.path.join(theme_dir, "layout", "theme.liquid"), "w") as f:
    f.write(f"<!-- pulled from {store_url} -->")
"""

_FAKE_PUSH_SCRIPT = _PY + """
import os
import sys

if os.environ.get("FAKE_PUSH_FAIL"):
    print("push rejected: invalid token", file=sys.stderr)
    sys.exit(1)
print("THEME_NAME=Sandbox preview")
print("THEME_ID=4242")
print("THEME_ROLE=unpublished")
"""


def _write_exec(path: Path, content: str) -> None:
    path.write_text(content)
    path.chmod(0o755)


@pytest.fixture
def sandbox_env(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> dict[str, Path]:
    """Writable sandbox root with fake lsof, launcher and theme scripts."""
    import theme_sandbox_server as tsm

    root = tmp_path / "root"
    bin_dir = root / "bin"
    scripts_dir = root / "scripts"
    for d in (bin_dir, scripts_dir, root / "themes"):
        d.mkdir(parents=True)
    log_dir = tmp_path / "logs"
    log_dir.mkdir()

    _write_exec(bin_dir / "lsof", _FAKE_LSOF_SCRIPT)
    _write_exec(bin_dir / "listener", _LISTENER_SCRIPT)
    _write_exec(scripts_dir / "dev-theme.sh", _FAKE_DEV_SCRIPT)
    _write_exec(scripts_dir / "build.sh", _FAKE_BUILD_SCRIPT)
    _write_exec(scripts_dir / "pull-theme.sh", _FAKE_PULL_SCRIPT)
    _write_exec(scripts_dir / "push-theme.sh", _FAKE_PUSH_SCRIPT)

    lsof_state = tmp_path / "fake-lsof-state.json"
    old_path = os.environ.get("PATH", "")
    monkeypatch.setenv("PATH", f"{bin_dir}:{old_path}")
    monkeypatch.setenv("FAKE_LSOF_STATE", str(lsof_state))
    monkeypatch.delenv("FAKE_DEV_MODE", raising=False)
    monkeypatch.delenv("FAKE_PUSH_FAIL", raising=False)

    paths = {
        "tmp_path": tmp_path,
        "root": root,
        "bin_dir": bin_dir,
        "scripts_dir": scripts_dir,
        "log_dir": log_dir,
        "state_file": tmp_path / "state" / "sandboxes.json",
        "lsof_state": lsof_state,
    }
    _configure_module(tsm, monkeypatch, paths)
    yield paths

    # Reap anything the fake launcher or listeners left behind
    try:
        state = json.loads(lsof_state.read_text())
    except (FileNotFoundError, ValueError):
        return
    pids = set(state.get("launchers", []))
    for port_pids in state.get("ports", {}).values():
        pids.update(port_pids)
    for pid in pids:
        try:
            os.kill(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
