#!/usr/bin/env python3
"""MCP server that provisions per-user theme preview sandboxes.

A sandbox is a theme dev server plus a header-stripping forwarder, bound to
a paired (app, proxy) port slot and optionally exposed through a public
tunnel.
"""

import asyncio
import collections
import contextlib
import inspect
import json
import logging
import os
import re
import shutil
import signal
import sys
import tempfile
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from typing import Any, NamedTuple, Optional

from mcp.server.fastmcp import FastMCP

# ── Logging (stderr only, stdout is MCP protocol) ──────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("theme-sandbox")

# ── Config ───────────────────────────────────────────────────────────────

# Root holding scripts/ and themes/
SANDBOX_ROOT = os.environ.get(
    "THEME_SANDBOX_ROOT", os.path.dirname(os.path.abspath(__file__))
)
SCRIPTS_DIR = os.path.join(SANDBOX_ROOT, "scripts")
THEMES_ROOT = os.path.join(SANDBOX_ROOT, "themes")

BUILD_SCRIPT = "build.sh"
PULL_SCRIPT = "pull-theme.sh"
PUSH_SCRIPT = "push-theme.sh"
DEV_SCRIPT = "dev-theme.sh"

BUILD_TIMEOUT = 5.0
PULL_TIMEOUT = 120.0
PUSH_TIMEOUT = 180.0

# Sandbox records (XDG-friendly)
_STATE_DIR = os.path.expanduser("~/.local/state/theme-sandbox")
STATE_FILE = os.environ.get(
    "THEME_SANDBOX_STATE", os.path.join(_STATE_DIR, "sandboxes.json")
)

# Paired port pool: app port APP_PORT_BASE+i goes with proxy port PROXY_PORT_BASE+i
APP_PORT_BASE = 5100
PROXY_PORT_BASE = 6100
PORT_POOL_SIZE = 300
_ALLOCATE_RETRIES = 3

STARTUP_TIMEOUT = 30.0
STARTUP_MARKERS = (
    "both servers are running",
    "development servers will be available at",
    "starting shopify theme development server",
)
STATUS_FILE_ENV = "SANDBOX_STATUS_FILE"
STATUS_POLL_INTERVAL = 0.5
OUTPUT_TAIL_LINES = 200

PROBE_HOST = "127.0.0.1"
READY_MAX_ATTEMPTS = 60
READY_INTERVAL = 0.5
READY_CONNECT_TIMEOUT = 1.0

TUNNEL_TIMEOUT = 15.0

LSOF_TIMEOUT = 5.0
PORT_RELEASE_TIMEOUT = 3.0
DRAIN_GRACE = 2.0

# Dev server and forwarder write here; removed on delete
TEMP_LOG_DIR = "/tmp"

STATUS_CREATED = "created"
STATUS_THEME_PULLED = "theme-pulled"
STATUS_THEME_PUSHED = "theme-pushed"
STATUS_STARTING = "dev-server-starting"
STATUS_READY = "ready"
STATUS_ERROR = "error"
STATUS_DELETED = "deleted"


# ── Helpers ──────────────────────────────────────────────────────────────


async def _run(
    cmd: list[str],
    timeout: float = 30.0,
    input_data: Optional[bytes] = None,
    env: Optional[dict[str, str]] = None,
) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input=input_data), timeout=timeout
        )
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


def _truncate(text: str, limit: int = 2000) -> str:
    if len(text) <= limit:
        return text
    return text[-limit:] + f"\n... ({len(text) - limit} earlier chars truncated)"


def _parse_pids(stdout: str) -> list[int]:
    pids = []
    for token in stdout.split():
        if token.isdigit() and int(token) > 0:
            pids.append(int(token))
    return pids


_PORT_ASSIGN_RE = re.compile(r"\b(ASSIGNED_PORT|SHOPIFY_PORT|APP_PORT|PROXY_PORT)=(\d+)")
_PORT_HUMAN_RE = re.compile(r"\b(Shopify|App|Proxy) Port:\s*(\d+)", re.IGNORECASE)
_THEME_ID_RE = re.compile(r"^THEME_ID=(\d+)\s*$", re.MULTILINE)


def _parse_ports(line: str) -> dict[str, int]:
    """Extract announced ports from one line of launcher output."""
    found = {}
    for key, value in _PORT_ASSIGN_RE.findall(line):
        found["app" if key in ("SHOPIFY_PORT", "APP_PORT") else "proxy"] = int(value)
    for key, value in _PORT_HUMAN_RE.findall(line):
        found["proxy" if key.lower() == "proxy" else "app"] = int(value)
    return found


def _has_startup_marker(line: str) -> bool:
    lowered = line.lower()
    return any(marker in lowered for marker in STARTUP_MARKERS)


def _parse_theme_id(stdout: str) -> Optional[int]:
    m = _THEME_ID_RE.search(stdout)
    return int(m.group(1)) if m else None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _opt_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


async def _port_open(
    port: int, host: str = PROBE_HOST, timeout: float = READY_CONNECT_TIMEOUT
) -> bool:
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


async def _close_handle(handle: Any) -> None:
    result = handle.close()
    if inspect.isawaitable(result):
        await result


# ── Errors ───────────────────────────────────────────────────────────────


class CapacityError(RuntimeError):
    """Every slot of the port pool has at least one port taken."""


class SpawnError(RuntimeError):
    """The launcher could not be executed or died during startup."""


class WorkspaceError(RuntimeError):
    """A theme helper script failed."""


class TunnelError(RuntimeError):
    pass


class TunnelTimeoutError(TunnelError):
    pass


class SandboxNotFoundError(LookupError):
    pass


# ── Records ──────────────────────────────────────────────────────────────


class PortPair(NamedTuple):
    app_port: int
    proxy_port: int


class StepResult(NamedTuple):
    step: str
    ok: bool
    detail: str = ""


@dataclass
class SandboxRecord:
    id: str
    user_id: str
    store_url: str
    api_key: str = field(default="", repr=False)
    store_password: Optional[str] = field(default=None, repr=False)
    theme_id: Optional[int] = None
    app_port: Optional[int] = None
    proxy_port: Optional[int] = None
    status: str = STATUS_CREATED
    preview_url: Optional[str] = None
    pids: dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)

    @property
    def ports(self) -> Optional[PortPair]:
        if self.app_port and self.proxy_port:
            return PortPair(self.app_port, self.proxy_port)
        return None

    def public_view(self) -> dict:
        """Record fields safe to show to a caller (no credentials)."""
        info = asdict(self)
        info.pop("api_key")
        info.pop("store_password")
        return info

    @classmethod
    def from_dict(cls, sandbox_id: str, info: dict) -> "SandboxRecord":
        pids = info.get("pids") or {}
        return cls(
            id=sandbox_id,
            user_id=str(info.get("user_id", "")),
            store_url=str(info.get("store_url", "")),
            api_key=info.get("api_key") or "",
            store_password=info.get("store_password"),
            theme_id=_opt_int(info.get("theme_id")),
            app_port=_opt_int(info.get("app_port")),
            proxy_port=_opt_int(info.get("proxy_port")),
            status=info.get("status", STATUS_CREATED),
            preview_url=info.get("preview_url"),
            pids={
                str(role): pid
                for role, pid in pids.items()
                if isinstance(pid, int)
            }
            if isinstance(pids, dict)
            else {},
            error=info.get("error"),
            created_at=info.get("created_at", time.time()),
            last_used=info.get("last_used", time.time()),
        )


_RECORD_FIELDS = {f.name for f in fields(SandboxRecord)} - {"id"}


# ── Sandbox store ────────────────────────────────────────────────────────


class SandboxStore:
    """Sandbox records, persisted to a JSON state file.

    The store is the single source of truth for port assignments. Records
    are loaded lazily on first access and every mutation is written through.
    """

    def __init__(self, path: Optional[str] = None):
        self._path = path
        self._records: Optional[dict[str, SandboxRecord]] = None

    @property
    def path(self) -> str:
        return self._path or STATE_FILE

    @property
    def _data(self) -> dict[str, SandboxRecord]:
        if self._records is None:
            self._records = self._load()
        return self._records

    def _load(self) -> dict[str, SandboxRecord]:
        try:
            with open(self.path) as f:
                raw = json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            return {}
        if not isinstance(raw, dict):
            return {}
        sandboxes = raw.get("sandboxes", {})
        if not isinstance(sandboxes, dict):
            return {}

        records = {}
        for sandbox_id, info in sandboxes.items():
            if not isinstance(info, dict) or not info.get("user_id"):
                continue
            records[sandbox_id] = SandboxRecord.from_dict(sandbox_id, info)
        log.info(f"Loaded {len(records)} sandbox record(s) from {self.path}")
        return records

    def _save(self):
        """Persist records atomically (tempfile + fsync + os.replace)."""
        state = {
            "schema_version": 1,
            "written_at": time.time(),
            "sandboxes": {
                sandbox_id: {k: v for k, v in asdict(rec).items() if k != "id"}
                for sandbox_id, rec in self._data.items()
            },
        }
        try:
            state_dir = os.path.dirname(self.path)
            os.makedirs(state_dir, exist_ok=True)
            fd = tempfile.NamedTemporaryFile(
                "w",
                dir=state_dir,
                delete=False,
                suffix=".tmp",
            )
            try:
                json.dump(state, fd)
                fd.flush()
                os.fsync(fd.fileno())
                fd.close()
                os.replace(fd.name, self.path)
            except BaseException:
                fd.close()
                try:
                    os.unlink(fd.name)
                except OSError:
                    pass
                raise
        except Exception as e:
            log.warning(f"Could not save sandbox state: {e}")

    def all(self) -> list[SandboxRecord]:
        return list(self._data.values())

    def get(self, sandbox_id: str) -> Optional[SandboxRecord]:
        return self._data.get(sandbox_id)

    def find(self, user_id: str, store_url: str) -> Optional[SandboxRecord]:
        for rec in self._data.values():
            if rec.user_id == user_id and rec.store_url == store_url:
                return rec
        return None

    def create(
        self,
        user_id: str,
        store_url: str,
        api_key: str,
        store_password: Optional[str] = None,
    ) -> SandboxRecord:
        sandbox_id = uuid.uuid4().hex[:12]
        rec = SandboxRecord(
            id=sandbox_id,
            user_id=user_id,
            store_url=store_url,
            api_key=api_key,
            store_password=store_password or None,
        )
        self._data[sandbox_id] = rec
        self._save()
        return rec

    def update(self, sandbox_id: str, **changes: Any) -> SandboxRecord:
        rec = self._data.get(sandbox_id)
        if rec is None:
            raise SandboxNotFoundError(f"sandbox '{sandbox_id}' not found")
        unknown = set(changes) - _RECORD_FIELDS
        if unknown:
            raise AttributeError(f"unknown sandbox field(s): {', '.join(sorted(unknown))}")
        for key, value in changes.items():
            setattr(rec, key, value)
        rec.last_used = time.time()
        self._save()
        return rec

    def delete(self, sandbox_id: str) -> bool:
        if self._data.pop(sandbox_id, None) is None:
            return False
        self._save()
        return True

    def list_assigned_pairs(self) -> list[PortPair]:
        return [rec.ports for rec in self._data.values() if rec.ports]

    def assign_ports(self, sandbox_id: str, pair: PortPair) -> bool:
        """Conditionally assign a port pair.

        Writes only if the sandbox has no pair yet and neither port is held
        by another record. Returns False on conflict.
        """
        rec = self._data.get(sandbox_id)
        if rec is None:
            raise SandboxNotFoundError(f"sandbox '{sandbox_id}' not found")
        if rec.ports is not None:
            return rec.ports == pair
        for other in self._data.values():
            if other.id == sandbox_id:
                continue
            if other.app_port == pair.app_port or other.proxy_port == pair.proxy_port:
                return False
        rec.app_port, rec.proxy_port = pair
        rec.last_used = time.time()
        self._save()
        return True


# ── Port allocation ──────────────────────────────────────────────────────


class PortAllocator:
    """Hands out paired (app, proxy) ports from two equal, disjoint ranges."""

    def __init__(
        self,
        store: SandboxStore,
        app_base: Optional[int] = None,
        proxy_base: Optional[int] = None,
        size: Optional[int] = None,
    ):
        self.store = store
        self.app_base = APP_PORT_BASE if app_base is None else app_base
        self.proxy_base = PROXY_PORT_BASE if proxy_base is None else proxy_base
        self.size = PORT_POOL_SIZE if size is None else size
        self._lock = asyncio.Lock()

    def find_available_pair(self) -> Optional[PortPair]:
        assigned = self.store.list_assigned_pairs()
        used_app = {p.app_port for p in assigned}
        used_proxy = {p.proxy_port for p in assigned}
        for offset in range(self.size):
            app, proxy = self.app_base + offset, self.proxy_base + offset
            if app not in used_app and proxy not in used_proxy:
                return PortPair(app, proxy)
        return None

    async def get_or_allocate(self, sandbox_id: str) -> Optional[PortPair]:
        rec = self.store.get(sandbox_id)
        if rec is None:
            raise SandboxNotFoundError(f"sandbox '{sandbox_id}' not found")
        if rec.ports is not None:
            return rec.ports

        async with self._lock:
            for _ in range(_ALLOCATE_RETRIES):
                rec = self.store.get(sandbox_id)
                if rec is None:
                    raise SandboxNotFoundError(f"sandbox '{sandbox_id}' not found")
                if rec.ports is not None:
                    return rec.ports
                pair = self.find_available_pair()
                if pair is None:
                    log.warning(
                        f"Port pool exhausted ({self.size} slots) for sandbox {sandbox_id}"
                    )
                    return None
                if self.store.assign_ports(sandbox_id, pair):
                    log.info(
                        f"Allocated ports app={pair.app_port} proxy={pair.proxy_port} "
                        f"to sandbox {sandbox_id}"
                    )
                    return pair
                log.warning(f"Port pair {pair} was taken concurrently, rescanning")
        return None

    def utilization(self) -> dict:
        in_pool = [
            p
            for p in self.store.list_assigned_pairs()
            if 0 <= p.app_port - self.app_base < self.size
        ]
        used = len(in_pool)
        return {
            "used": used,
            "total": self.size,
            "available": self.size - used,
            "percent_used": round(used / self.size * 100, 1) if self.size else 0.0,
        }


# ── Readiness probe ──────────────────────────────────────────────────────


class ReadinessProber:
    def __init__(
        self,
        host: str = PROBE_HOST,
        max_attempts: int = READY_MAX_ATTEMPTS,
        interval: float = READY_INTERVAL,
        connect_timeout: float = READY_CONNECT_TIMEOUT,
    ):
        self.host = host
        self.max_attempts = max_attempts
        self.interval = interval
        self.connect_timeout = connect_timeout

    async def wait_until_ready(
        self,
        port: int,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> bool:
        """Poll until something accepts TCP connections on ``port``.

        Makes at most ``max_attempts`` connection attempts, sleeping
        ``interval`` seconds between them. Returns False once they are
        exhausted; never raises on connection errors.
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        pause = self.interval if interval is None else interval
        for attempt in range(1, attempts + 1):
            if await _port_open(port, self.host, self.connect_timeout):
                log.info(f"Port {port} accepting connections (attempt {attempt})")
                return True
            if attempt < attempts:
                await asyncio.sleep(pause)
        log.warning(f"Port {port} not ready after {attempts} attempts")
        return False


# ── Tunnels ──────────────────────────────────────────────────────────────


@dataclass
class TunnelEntry:
    user_id: str
    sandbox_id: str
    local_port: int
    public_url: str
    tunnel_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    created_at: float = field(default_factory=time.time)
    _handle: Any = field(default=None, repr=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_id, self.sandbox_id)


class TunnelResult(NamedTuple):
    success: bool
    public_url: Optional[str] = None
    error: Optional[str] = None
    tunnel_id: Optional[str] = None


class TunnelRegistry:
    """Live tunnels keyed by (user_id, sandbox_id). Owns their handles."""

    def __init__(self):
        self._entries: dict[tuple[str, str], TunnelEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: tuple[str, str]) -> Optional[TunnelEntry]:
        return self._entries.get(key)

    def entries(self) -> list[TunnelEntry]:
        return list(self._entries.values())

    def add(self, entry: TunnelEntry):
        if entry.key in self._entries:
            raise TunnelError(f"tunnel already registered for {entry.key}")
        self._entries[entry.key] = entry

    async def close(self, key: tuple[str, str]) -> Optional[TunnelEntry]:
        """Remove the entry and close its handle in one step."""
        entry = self._entries.pop(key, None)
        if entry is not None and entry._handle is not None:
            await _close_handle(entry._handle)
        return entry

    def drain(self) -> list[TunnelEntry]:
        entries = list(self._entries.values())
        self._entries.clear()
        return entries


class NgrokTunnelProvider:
    """Opens tunnels with the ngrok agent SDK.

    Uses NGROK_AUTHTOKEN from the environment when it is set.
    """

    async def forward(self, port: int) -> Any:
        import ngrok

        listener = ngrok.forward(f"{PROBE_HOST}:{port}", authtoken_from_env=True)
        if inspect.isawaitable(listener):
            listener = await listener
        return listener


def _tunnel_failure_hint(error: str) -> str:
    lowered = error.lower()
    if "authtoken" in lowered or "authentication" in lowered:
        return " (check NGROK_AUTHTOKEN)"
    if "port" in lowered:
        return " (is the forwarder listening?)"
    if "network" in lowered or "connect" in lowered:
        return " (check network connectivity)"
    return ""


class TunnelManager:
    """Creates, deduplicates and tears down public tunnels."""

    def __init__(
        self,
        provider: Any = None,
        registry: Optional[TunnelRegistry] = None,
        timeout: Optional[float] = None,
    ):
        self.provider = NgrokTunnelProvider() if provider is None else provider
        self.registry = TunnelRegistry() if registry is None else registry
        self.timeout = TUNNEL_TIMEOUT if timeout is None else timeout
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    async def _forward(self, port: int) -> tuple[Any, str]:
        try:
            handle = await asyncio.wait_for(
                self.provider.forward(port), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise TunnelTimeoutError(
                f"tunnel connection timeout after {self.timeout:g}s - "
                "falling back to local URL"
            ) from None
        except Exception as e:
            raise TunnelError(str(e) or type(e).__name__) from e

        url = handle.url() if callable(getattr(handle, "url", None)) else None
        if not url:
            with contextlib.suppress(Exception):
                await _close_handle(handle)
            raise TunnelError("tunnel provider returned no public URL")
        return handle, url

    async def create_tunnel(
        self, port: int, user_id: str, sandbox_id: str
    ) -> TunnelResult:
        key = (user_id, sandbox_id)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        async with self._locks[key]:
            existing = self.registry.get(key)
            if existing is not None:
                log.info(f"Reusing tunnel {existing.public_url} for sandbox {sandbox_id}")
                return TunnelResult(
                    True, existing.public_url, tunnel_id=existing.tunnel_id
                )

            log.info(f"Opening tunnel to port {port} for sandbox {sandbox_id}")
            try:
                handle, url = await self._forward(port)
            except TunnelError as e:
                log.warning(
                    f"Tunnel for sandbox {sandbox_id} failed: {e}"
                    f"{_tunnel_failure_hint(str(e))}"
                )
                return TunnelResult(False, error=str(e))

            entry = TunnelEntry(
                user_id=user_id,
                sandbox_id=sandbox_id,
                local_port=port,
                public_url=url,
                _handle=handle,
            )
            self.registry.add(entry)
            log.info(f"Tunnel {url} -> localhost:{port} (sandbox {sandbox_id})")
            return TunnelResult(True, url, tunnel_id=entry.tunnel_id)

    def _release_lock(self, key: tuple[str, str]):
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    async def close_tunnel(self, user_id: str, sandbox_id: str) -> bool:
        key = (user_id, sandbox_id)
        self._release_lock(key)
        if self.registry.get(key) is None:
            return False
        try:
            entry = await self.registry.close(key)
        except Exception as e:
            log.warning(f"Error closing tunnel for sandbox {sandbox_id}: {e}")
            return True
        if entry is not None:
            log.info(f"Closed tunnel {entry.public_url} (sandbox {sandbox_id})")
        return True

    async def close_all(self):
        entries = self.registry.drain()
        for key in list(self._locks):
            self._release_lock(key)
        if not entries:
            return
        closing = [e for e in entries if e._handle is not None]
        results = await asyncio.gather(
            *(_close_handle(e._handle) for e in closing),
            return_exceptions=True,
        )
        for entry, result in zip(closing, results):
            if isinstance(result, BaseException):
                log.warning(f"Failed to close tunnel {entry.public_url}: {result}")
            else:
                log.info(f"Closed tunnel {entry.public_url} (sandbox {entry.sandbox_id})")
        log.info(f"Closed {len(entries)} tunnel(s)")

    def get_url(self, user_id: str, sandbox_id: str) -> Optional[str]:
        entry = self.registry.get((user_id, sandbox_id))
        return entry.public_url if entry else None

    def has_tunnel(self, user_id: str, sandbox_id: str) -> bool:
        return self.registry.get((user_id, sandbox_id)) is not None

    def get_info(self, user_id: str, sandbox_id: str) -> Optional[dict]:
        entry = self.registry.get((user_id, sandbox_id))
        if entry is None:
            return None
        return {
            "tunnel_id": entry.tunnel_id,
            "url": entry.public_url,
            "port": entry.local_port,
            "user_id": entry.user_id,
            "sandbox_id": entry.sandbox_id,
            "created_at": entry.created_at,
        }

    def stats(self) -> dict:
        now = time.time()
        return {
            "active": len(self.registry),
            "tunnels": [
                {
                    "sandbox_id": e.sandbox_id,
                    "user_id": e.user_id,
                    "port": e.local_port,
                    "url": e.public_url,
                    "uptime": f"{now - e.created_at:.0f}s",
                }
                for e in self.registry.entries()
            ],
        }


def install_signal_handlers(tunnels: TunnelManager) -> list[int]:
    """Close every tunnel on SIGINT/SIGTERM, then re-deliver the signal.

    Must be called from inside the running event loop.
    """
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(_close_tunnels_on_signal(tunnels, s)),
            )
        except (NotImplementedError, RuntimeError) as e:
            log.warning(f"Cannot install handler for {sig.name}: {e}")
            continue
        installed.append(sig)
    return installed


async def _close_tunnels_on_signal(tunnels: TunnelManager, sig: int):
    log.info(f"Received {signal.Signals(sig).name}, closing tunnels")
    try:
        await tunnels.close_all()
    finally:
        loop = asyncio.get_running_loop()
        loop.remove_signal_handler(sig)
        signal.raise_signal(sig)


# ── Process orchestration ────────────────────────────────────────────────


@dataclass
class DevServerConfig:
    user_id: str
    sandbox_id: str
    store_url: str
    api_key: str = field(repr=False)
    theme_id: int
    app_port: int
    proxy_port: int
    store_password: Optional[str] = field(default=None, repr=False)

    def argv(self) -> list[str]:
        args = [
            self.user_id,
            self.sandbox_id,
            self.store_url,
            self.api_key,
            str(self.theme_id),
            str(self.app_port),
            str(self.proxy_port),
        ]
        if self.store_password:
            args.append(self.store_password)
        return args


@dataclass
class StartResult:
    started: bool
    app_port: int
    proxy_port: int
    pid: Optional[int] = None
    confirmed: bool = False
    observed_ports: dict[str, int] = field(default_factory=dict)
    output: str = ""
    error: Optional[str] = None


def _read_status_file(path: str) -> Optional[dict]:
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


class ProcessOrchestrator:
    """Spawns the detached launcher for a sandbox and confirms its startup."""

    def __init__(
        self,
        script: Optional[str] = None,
        startup_timeout: Optional[float] = None,
    ):
        self._script = script
        self._startup_timeout = startup_timeout
        self._drains: dict[str, asyncio.Task] = {}
        self._launchers: dict[str, asyncio.subprocess.Process] = {}
        self._signalled: set[int] = set()
        self._tails: dict[str, collections.deque] = {}

    @property
    def script(self) -> str:
        return self._script or os.path.join(SCRIPTS_DIR, DEV_SCRIPT)

    @property
    def startup_timeout(self) -> float:
        return STARTUP_TIMEOUT if self._startup_timeout is None else self._startup_timeout

    # ── Stale process cleanup ────────────────────────────────────────

    async def kill_port(self, port: int) -> list[int]:
        """SIGTERM every process bound to ``port``. Returns the PIDs signalled."""
        try:
            _, stdout, _ = await _run(["lsof", "-ti", f":{port}"], timeout=LSOF_TIMEOUT)
        except FileNotFoundError:
            log.warning(f"lsof not available, skipping stale process check on port {port}")
            return []
        except asyncio.TimeoutError:
            log.warning(f"lsof timed out checking port {port}")
            return []

        killed = []
        for pid in _parse_pids(stdout):
            if pid == os.getpid():
                continue
            try:
                os.kill(pid, signal.SIGTERM)
            except ProcessLookupError:
                continue
            except PermissionError as e:
                log.warning(f"Cannot kill PID {pid} on port {port}: {e}")
                continue
            log.info(f"Killed stale process {pid} on port {port}")
            killed.append(pid)
        return killed

    async def kill_pids(self, pids: list[int]) -> list[int]:
        """SIGTERM the process groups led by recorded launcher PIDs."""
        killed = []
        for pid in pids:
            if not _pid_alive(pid):
                continue
            try:
                if os.getpgid(pid) != pid:
                    # Recycled PID; not one of our session leaders
                    continue
                os.killpg(pid, signal.SIGTERM)
            except ProcessLookupError:
                continue
            except PermissionError as e:
                log.warning(f"Cannot kill process group {pid}: {e}")
                continue
            log.info(f"Killed launcher process group {pid}")
            self._signalled.add(pid)
            killed.append(pid)
        return killed

    async def _wait_port_released(self, port: int):
        deadline = time.monotonic() + PORT_RELEASE_TIMEOUT
        while time.monotonic() < deadline:
            if not await _port_open(port, timeout=0.25):
                return
            await asyncio.sleep(0.1)
        log.warning(f"Port {port} still accepting connections after kill")

    # ── Startup ──────────────────────────────────────────────────────

    def _status_file(self, cfg: DevServerConfig) -> str:
        return os.path.join(
            TEMP_LOG_DIR, f"sandbox-status-{cfg.user_id}-{cfg.sandbox_id}.json"
        )

    async def start(self, cfg: DevServerConfig) -> StartResult:
        for port in (cfg.app_port, cfg.proxy_port):
            if await self.kill_port(port):
                await self._wait_port_released(port)
        await self.forget(cfg.sandbox_id)

        script = self.script
        if not os.path.isfile(script) or not os.access(script, os.X_OK):
            raise SpawnError(f"launcher not found or not executable: {script}")

        status_file = self._status_file(cfg)
        with contextlib.suppress(FileNotFoundError):
            os.unlink(status_file)
        env = {
            **os.environ,
            STATUS_FILE_ENV: status_file,
            "THEME_SANDBOX_ROOT": SANDBOX_ROOT,
            "THEMES_ROOT": THEMES_ROOT,
        }

        try:
            proc = await asyncio.create_subprocess_exec(
                script,
                *cfg.argv(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"cannot execute {script}: {e}") from e

        log.info(
            f"Spawned launcher pid={proc.pid} for sandbox {cfg.sandbox_id} "
            f"(app={cfg.app_port}, proxy={cfg.proxy_port})"
        )
        tail: collections.deque = collections.deque(maxlen=OUTPUT_TAIL_LINES)
        stderr_task = asyncio.create_task(self._collect(proc.stderr, tail, "[stderr] "))

        confirmed, observed, lines, eof = await self._watch_startup(
            proc, tail, status_file
        )
        result = StartResult(
            started=True,
            app_port=cfg.app_port,
            proxy_port=cfg.proxy_port,
            pid=proc.pid,
            confirmed=confirmed,
            observed_ports=observed,
        )

        if eof and not confirmed:
            try:
                rc = await asyncio.wait_for(proc.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                rc = None
            if rc is not None and (lines == 0 or rc != 0):
                # Grandchildren may still hold stderr open
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stderr_task, timeout=1.0)
                result.started = False
                result.error = (
                    "launcher exited before producing any output"
                    if lines == 0
                    else f"launcher exited with code {rc} during startup"
                )
                result.output = "\n".join(tail)
                log.error(f"Sandbox {cfg.sandbox_id} failed to start: {result.error}")
                return result

        if not confirmed:
            log.warning(
                f"No startup confirmation from sandbox {cfg.sandbox_id} "
                f"within {self.startup_timeout:g}s, proceeding"
            )
        for role, expected in (("app", cfg.app_port), ("proxy", cfg.proxy_port)):
            seen = observed.get(role)
            if seen is not None and seen != expected:
                log.warning(
                    f"Sandbox {cfg.sandbox_id} announced {role} port {seen}, "
                    f"expected {expected}"
                )

        result.output = "\n".join(tail)
        self._tails[cfg.sandbox_id] = tail
        self._launchers[cfg.sandbox_id] = proc
        self._drains[cfg.sandbox_id] = asyncio.create_task(
            self._drain(cfg.sandbox_id, proc, tail, stderr_task)
        )
        return result

    async def _watch_startup(
        self, proc: asyncio.subprocess.Process, tail: collections.deque, status_file: str
    ) -> tuple[bool, dict[str, int], int, bool]:
        """Read launcher stdout until a startup marker, EOF, or the timeout.

        Returns (confirmed, observed_ports, stdout_lines, eof).
        """
        observed: dict[str, int] = {}
        lines = 0
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False, observed, lines, False
            try:
                raw = await asyncio.wait_for(
                    proc.stdout.readline(),
                    timeout=min(remaining, STATUS_POLL_INTERVAL),
                )
            except asyncio.TimeoutError:
                raw = None
            except ValueError:
                # Line longer than the stream limit; the reader skips it
                continue

            status = _read_status_file(status_file)
            if status and status.get("status") in ("running", "ready"):
                for role in ("app", "proxy"):
                    port = _opt_int(status.get(f"{role}_port"))
                    if port:
                        observed[role] = port
                return True, observed, lines, False

            if raw is None:
                continue
            if raw == b"":
                return False, observed, lines, True

            line = raw.decode(errors="replace").rstrip()
            lines += 1
            tail.append(line)
            observed.update(_parse_ports(line))
            if _has_startup_marker(line):
                return True, observed, lines, False

    async def _collect(
        self, stream: asyncio.StreamReader, tail: collections.deque, prefix: str = ""
    ):
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                continue
            if not raw:
                return
            tail.append(prefix + raw.decode(errors="replace").rstrip())

    async def _drain(
        self,
        sandbox_id: str,
        proc: asyncio.subprocess.Process,
        tail: collections.deque,
        stderr_task: asyncio.Task,
    ):
        """Keep the launcher's pipes flowing and reap it when it exits."""
        try:
            await self._collect(proc.stdout, tail)
            await stderr_task
            rc = await proc.wait()
            log.info(f"Launcher for sandbox {sandbox_id} exited with code {rc}")
        except asyncio.CancelledError:
            stderr_task.cancel()
            raise

    def output_tail(self, sandbox_id: str) -> list[str]:
        return list(self._tails.get(sandbox_id, ()))

    async def forget(self, sandbox_id: str):
        """Stop monitoring a sandbox's launcher.

        A launcher that was signalled through :meth:`kill_pids` gets up to
        ``DRAIN_GRACE`` seconds for its drain task to see EOF and reap it.
        Any other launcher keeps running unmonitored.
        """
        task = self._drains.pop(sandbox_id, None)
        proc = self._launchers.pop(sandbox_id, None)
        self._tails.pop(sandbox_id, None)
        signalled = proc is not None and proc.pid in self._signalled
        if proc is not None:
            self._signalled.discard(proc.pid)
        if task is None or task.done():
            return
        if signalled:
            done, _ = await asyncio.wait({task}, timeout=DRAIN_GRACE)
            if done:
                return
            log.warning(f"Launcher for sandbox {sandbox_id} not reaped after kill")
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def shutdown(self):
        await asyncio.gather(*(self.forget(sid) for sid in list(self._drains)))


# ── Theme workspace ──────────────────────────────────────────────────────


class ThemeWorkspace:
    """Runs the theme helper scripts and owns each sandbox's files."""

    def theme_dir(self, user_id: str, sandbox_id: str) -> str:
        return os.path.join(THEMES_ROOT, f"user_{user_id}", f"theme_{sandbox_id}")

    def log_paths(self, user_id: str, sandbox_id: str) -> list[str]:
        return [
            os.path.join(TEMP_LOG_DIR, f"shopify-{user_id}-{sandbox_id}.log"),
            os.path.join(TEMP_LOG_DIR, f"proxy-{user_id}-{sandbox_id}.log"),
        ]

    async def _script(self, name: str, args: list[str], timeout: float) -> str:
        path = os.path.join(SCRIPTS_DIR, name)
        if not os.path.isfile(path):
            raise WorkspaceError(f"{name} not found in {SCRIPTS_DIR}")
        env = {**os.environ, "THEME_SANDBOX_ROOT": SANDBOX_ROOT, "THEMES_ROOT": THEMES_ROOT}
        try:
            rc, stdout, stderr = await _run([path, *args], timeout=timeout, env=env)
        except asyncio.TimeoutError:
            raise WorkspaceError(f"{name} timed out after {timeout:g}s") from None
        except OSError as e:
            raise WorkspaceError(f"cannot execute {name}: {e}") from e
        if rc != 0:
            raise WorkspaceError(
                f"{name} failed (exit {rc}): {_truncate(stderr.strip() or stdout.strip())}"
            )
        return stdout

    async def create(self, user_id: str, sandbox_id: str):
        await self._script(BUILD_SCRIPT, [user_id, sandbox_id], BUILD_TIMEOUT)
        log.info(f"Created theme workspace {self.theme_dir(user_id, sandbox_id)}")

    async def pull(self, user_id: str, sandbox_id: str, store_url: str, api_key: str):
        await self._script(
            PULL_SCRIPT, [user_id, sandbox_id, store_url, api_key], PULL_TIMEOUT
        )
        log.info(f"Pulled theme from {store_url} for sandbox {sandbox_id}")

    async def push(
        self, user_id: str, sandbox_id: str, store_url: str, api_key: str
    ) -> int:
        stdout = await self._script(
            PUSH_SCRIPT, [user_id, sandbox_id, store_url, api_key], PUSH_TIMEOUT
        )
        theme_id = _parse_theme_id(stdout)
        if theme_id is None:
            raise WorkspaceError(f"{PUSH_SCRIPT} did not report a THEME_ID")
        log.info(f"Pushed theme {theme_id} for sandbox {sandbox_id}")
        return theme_id

    def remove(self, user_id: str, sandbox_id: str) -> list[StepResult]:
        steps = []
        theme_dir = self.theme_dir(user_id, sandbox_id)
        try:
            shutil.rmtree(theme_dir)
            steps.append(StepResult("remove-theme-dir", True, theme_dir))
        except FileNotFoundError:
            steps.append(StepResult("remove-theme-dir", True, "already absent"))
        except OSError as e:
            log.warning(f"Could not remove {theme_dir}: {e}")
            steps.append(StepResult("remove-theme-dir", False, str(e)))

        removed, failed = 0, []
        for path in self.log_paths(user_id, sandbox_id):
            try:
                os.unlink(path)
                removed += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                log.warning(f"Could not remove {path}: {e}")
                failed.append(path)
        if failed:
            steps.append(StepResult("remove-logs", False, ", ".join(failed)))
        else:
            steps.append(StepResult("remove-logs", True, f"{removed} file(s)"))
        return steps


# ── Lifecycle controller ─────────────────────────────────────────────────


class LifecycleController:
    """Sequences allocation, spawn, probe and tunnel for each sandbox."""

    def __init__(
        self,
        store: Optional[SandboxStore] = None,
        ports: Optional[PortAllocator] = None,
        processes: Optional[ProcessOrchestrator] = None,
        prober: Optional[ReadinessProber] = None,
        tunnels: Optional[TunnelManager] = None,
        workspace: Optional[ThemeWorkspace] = None,
    ):
        self.store = SandboxStore() if store is None else store
        self.ports = PortAllocator(self.store) if ports is None else ports
        self.processes = ProcessOrchestrator() if processes is None else processes
        self.prober = ReadinessProber() if prober is None else prober
        self.tunnels = TunnelManager() if tunnels is None else tunnels
        self.workspace = ThemeWorkspace() if workspace is None else workspace
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, sandbox_id: str) -> asyncio.Lock:
        if sandbox_id not in self._locks:
            self._locks[sandbox_id] = asyncio.Lock()
        return self._locks[sandbox_id]

    def _require(self, sandbox_id: str) -> SandboxRecord:
        rec = self.store.get(sandbox_id)
        if rec is None:
            raise SandboxNotFoundError(f"sandbox '{sandbox_id}' not found")
        return rec

    async def _launch(self, sandbox_id: str) -> dict:
        """allocating -> starting -> probing -> tunneling -> ready."""
        rec = self._require(sandbox_id)

        log.info(f"[{sandbox_id}] allocating")
        pair = await self.ports.get_or_allocate(sandbox_id)
        if pair is None:
            raise CapacityError(
                f"no free port pair ({self.ports.size} slots in use), try again later"
            )

        log.info(f"[{sandbox_id}] starting")
        self.store.update(sandbox_id, status=STATUS_STARTING, error=None)
        started = await self.processes.start(
            DevServerConfig(
                user_id=rec.user_id,
                sandbox_id=sandbox_id,
                store_url=rec.store_url,
                api_key=rec.api_key,
                theme_id=rec.theme_id,
                app_port=pair.app_port,
                proxy_port=pair.proxy_port,
                store_password=rec.store_password,
            )
        )
        if not started.started:
            detail = f": {_truncate(started.output, 500)}" if started.output else ""
            raise SpawnError(f"{started.error}{detail}")
        self.store.update(sandbox_id, pids={"launcher": started.pid})

        log.info(f"[{sandbox_id}] probing")
        if not await self.prober.wait_until_ready(pair.proxy_port):
            log.warning(f"[{sandbox_id}] proxy port {pair.proxy_port} never became ready")

        log.info(f"[{sandbox_id}] tunneling")
        tunnel = await self.tunnels.create_tunnel(pair.proxy_port, rec.user_id, sandbox_id)
        local_url = f"http://{PROBE_HOST}:{pair.proxy_port}"
        preview_url = tunnel.public_url if tunnel.success else local_url

        self.store.update(sandbox_id, status=STATUS_READY, preview_url=preview_url)
        log.info(f"[{sandbox_id}] ready at {preview_url}")
        return {
            "preview_url": preview_url,
            "public_url": tunnel.public_url if tunnel.success else None,
            "local_url": local_url,
            "app_port": pair.app_port,
            "proxy_port": pair.proxy_port,
            "tunnel_error": tunnel.error,
        }

    def _existing(self, rec: SandboxRecord) -> dict:
        return {
            "sandbox_id": rec.id,
            "preview_url": rec.preview_url,
            "public_url": self.tunnels.get_url(rec.user_id, rec.id),
            "local_url": (
                f"http://{PROBE_HOST}:{rec.proxy_port}" if rec.proxy_port else None
            ),
            "app_port": rec.app_port,
            "proxy_port": rec.proxy_port,
            "theme_id": rec.theme_id,
            "status": rec.status,
            "is_new": False,
        }

    async def create_sandbox(
        self,
        user_id: str,
        store_url: str,
        api_key: str,
        store_password: Optional[str] = None,
    ) -> dict:
        """Provision a sandbox, or return the one this user has for the store.

        A sandbox left in ``error`` by an earlier attempt is resumed in
        place: the theme steps re-run only if no theme was pushed yet.
        """
        existing = self.store.find(user_id, store_url)
        if existing is not None and existing.status != STATUS_ERROR:
            log.info(f"Sandbox {existing.id} already exists for {user_id} / {store_url}")
            return self._existing(existing)

        if existing is None:
            rec = self.store.create(user_id, store_url, api_key, store_password)
            log.info(f"Creating sandbox {rec.id} for user {user_id} ({store_url})")
        sandbox_id = existing.id if existing else rec.id

        async with self._lock(sandbox_id):
            if existing is not None:
                rec = self._require(sandbox_id)
                if rec.status != STATUS_ERROR:
                    # Another caller resumed it while we waited
                    return self._existing(rec)
                log.info(f"Resuming failed sandbox {sandbox_id} ({rec.error})")
                self.store.update(
                    sandbox_id, api_key=api_key, store_password=store_password, error=None
                )
            theme_id = rec.theme_id
            try:
                if not theme_id:
                    await self.workspace.create(user_id, sandbox_id)
                    await self.workspace.pull(user_id, sandbox_id, store_url, api_key)
                    self.store.update(sandbox_id, status=STATUS_THEME_PULLED)
                    theme_id = await self.workspace.push(
                        user_id, sandbox_id, store_url, api_key
                    )
                    self.store.update(
                        sandbox_id, status=STATUS_THEME_PUSHED, theme_id=theme_id
                    )
                result = await self._launch(sandbox_id)
            except (WorkspaceError, CapacityError, SpawnError) as e:
                log.error(f"Sandbox {sandbox_id} failed: {e}")
                self.store.update(sandbox_id, status=STATUS_ERROR, error=str(e))
                raise

        return {
            "sandbox_id": sandbox_id,
            **result,
            "theme_id": theme_id,
            "status": STATUS_READY,
            "is_new": True,
        }

    async def refresh_sandbox(self, sandbox_id: str) -> dict:
        rec = self._require(sandbox_id)
        if not rec.theme_id:
            raise ValueError(f"sandbox '{sandbox_id}' has no theme yet")
        if not rec.store_url or not rec.api_key:
            raise ValueError(f"sandbox '{sandbox_id}' is missing store credentials")
        if rec.ports is None:
            raise ValueError(f"sandbox '{sandbox_id}' is missing port information")

        async with self._lock(sandbox_id):
            log.info(f"Refreshing sandbox {sandbox_id} on ports {rec.ports}")
            await self.tunnels.close_tunnel(rec.user_id, sandbox_id)
            await self.processes.kill_pids(list(rec.pids.values()))
            await self.processes.forget(sandbox_id)
            try:
                return await self._launch(sandbox_id)
            except (CapacityError, SpawnError) as e:
                log.error(f"Refresh of sandbox {sandbox_id} failed: {e}")
                self.store.update(sandbox_id, status=STATUS_ERROR, error=str(e))
                raise

    async def delete_sandbox(self, sandbox_id: str) -> dict:
        rec = self._require(sandbox_id)
        steps: list[StepResult] = []
        killed: set[int] = set()

        async with self._lock(sandbox_id):
            log.info(f"Deleting sandbox {sandbox_id}")
            for role, port in (("app", rec.app_port), ("proxy", rec.proxy_port)):
                step = f"kill-{role}-port"
                if not port:
                    steps.append(StepResult(step, True, "no port assigned"))
                    continue
                try:
                    pids = await self.processes.kill_port(port)
                except Exception as e:
                    log.warning(f"Could not clear port {port}: {e}")
                    steps.append(StepResult(step, False, str(e)))
                    continue
                killed.update(pids)
                steps.append(StepResult(step, True, f"port {port}: {len(pids)} killed"))

            try:
                pids = await self.processes.kill_pids(list(rec.pids.values()))
                killed.update(pids)
                steps.append(StepResult("kill-launcher", True, f"{len(pids)} killed"))
            except Exception as e:
                log.warning(f"Could not kill launcher for sandbox {sandbox_id}: {e}")
                steps.append(StepResult("kill-launcher", False, str(e)))
            await self.processes.forget(sandbox_id)

            try:
                closed = await self.tunnels.close_tunnel(rec.user_id, sandbox_id)
                steps.append(
                    StepResult("close-tunnel", True, "closed" if closed else "no tunnel")
                )
            except Exception as e:
                steps.append(StepResult("close-tunnel", False, str(e)))

            steps.extend(self.workspace.remove(rec.user_id, sandbox_id))

            if not self.store.delete(sandbox_id):
                raise SandboxNotFoundError(f"sandbox '{sandbox_id}' vanished during delete")
            steps.append(StepResult("delete-record", True))

        self._locks.pop(sandbox_id, None)
        log.info(f"Deleted sandbox {sandbox_id} ({len(killed)} process(es) killed)")
        return {
            "sandbox_id": sandbox_id,
            "killed_count": len(killed),
            "steps": steps,
            "status": STATUS_DELETED,
        }

    def list_sandboxes(self, user_id: Optional[str] = None) -> list[dict]:
        return [
            rec.public_view()
            for rec in self.store.all()
            if user_id is None or rec.user_id == user_id
        ]

    async def sandbox_health(self, sandbox_id: Optional[str] = None) -> list[dict]:
        """Compare each record against what is actually running."""
        records = [self._require(sandbox_id)] if sandbox_id else self.store.all()
        report = []
        for rec in records:
            launcher = any(_pid_alive(pid) for pid in rec.pids.values())
            serving = bool(rec.proxy_port) and await _port_open(rec.proxy_port)
            if serving:
                state = "running"
            elif launcher:
                state = "orphaned"
            else:
                state = "stopped"
            report.append(
                {
                    "sandbox_id": rec.id,
                    "status": rec.status,
                    "state": state,
                    "launcher_alive": launcher,
                    "proxy_serving": serving,
                    "tunnel": self.tunnels.get_url(rec.user_id, rec.id),
                }
            )
        return report

    async def shutdown(self):
        await self.tunnels.close_all()
        await self.processes.shutdown()
        log.info("Lifecycle controller stopped (dev servers left running)")


# ── MCP Server ───────────────────────────────────────────────────────────

controller = LifecycleController()


@contextlib.asynccontextmanager
async def _lifespan(server: FastMCP):
    install_signal_handlers(controller.tunnels)
    try:
        yield {}
    finally:
        await controller.shutdown()


mcp_server = FastMCP(
    "theme-sandbox",
    instructions=(
        "You manage per-user theme preview sandboxes. "
        "Use create_sandbox to pull a store's theme, start its dev server and forwarder, "
        "and get a preview URL (public tunnel when available, local otherwise). "
        "Use refresh_sandbox to restart a sandbox on its existing ports, "
        "delete_sandbox to tear it down and free its ports. "
        "Use list_sandboxes and sandbox_health to inspect state, "
        "port_utilization and tunnels for capacity."
    ),
    lifespan=_lifespan,
)

_DOMAIN_ERRORS = (
    CapacityError,
    SpawnError,
    WorkspaceError,
    SandboxNotFoundError,
    ValueError,
)


def _format_urls(result: dict) -> list[str]:
    lines = [f"  Preview: {result['preview_url']}"]
    if result.get("public_url"):
        lines.append(f"  Public:  {result['public_url']}")
    if result.get("local_url"):
        lines.append(f"  Local:   {result['local_url']}")
    if result.get("app_port"):
        lines.append(f"  Ports:   app={result['app_port']} proxy={result['proxy_port']}")
    if result.get("tunnel_error"):
        lines.append(f"  Tunnel unavailable: {result['tunnel_error']}")
    return lines


@mcp_server.tool()
async def create_sandbox(
    user_id: str,
    store_url: str,
    api_key: str,
    store_password: str = "",
) -> str:
    """
    Create a theme preview sandbox for a store.
    Pulls the live theme, pushes a development copy, starts the dev server and
    forwarder on a fresh port pair, and opens a public tunnel when possible.
    Returns the existing sandbox if this user already has one for the store,
    or resumes it if an earlier attempt failed.

    Args:
        user_id: Owner of the sandbox.
        store_url: Store domain, e.g. "my-shop.myshopify.com".
        api_key: Theme access token for the store.
        store_password: Storefront password, if the store is password protected.

    Returns:
        Sandbox id and preview URLs, or error message.
    """
    try:
        result = await controller.create_sandbox(
            user_id, store_url, api_key, store_password or None
        )
    except _DOMAIN_ERRORS as e:
        return f"Error: {e}"
    if not result["is_new"]:
        header = f"Sandbox '{result['sandbox_id']}' already exists ({result['status']})"
        if not result["preview_url"]:
            return header
    else:
        header = f"Sandbox '{result['sandbox_id']}' ready (theme {result['theme_id']})"
    return "\n".join([header, *_format_urls(result)])


@mcp_server.tool()
async def refresh_sandbox(sandbox_id: str) -> str:
    """
    Restart a sandbox's dev server and forwarder on its existing ports.
    Any process still holding those ports is killed first, and the tunnel
    is recreated.

    Args:
        sandbox_id: Sandbox to refresh.

    Returns:
        New preview URLs, or error message.
    """
    try:
        result = await controller.refresh_sandbox(sandbox_id)
    except _DOMAIN_ERRORS as e:
        return f"Error: {e}"
    return "\n".join([f"Sandbox '{sandbox_id}' refreshed", *_format_urls(result)])


@mcp_server.tool()
async def delete_sandbox(sandbox_id: str) -> str:
    """
    Tear down a sandbox: kill its processes, close its tunnel, delete its
    theme files and free its port pair.

    Args:
        sandbox_id: Sandbox to delete.

    Returns:
        Per-step cleanup report, or error message.
    """
    try:
        result = await controller.delete_sandbox(sandbox_id)
    except _DOMAIN_ERRORS as e:
        return f"Error: {e}"
    lines = [f"Sandbox '{sandbox_id}' deleted ({result['killed_count']} process(es) killed)"]
    for step in result["steps"]:
        mark = "ok" if step.ok else "FAILED"
        lines.append(f"  {step.step:18s} {mark:6s} {step.detail}".rstrip())
    return "\n".join(lines)


@mcp_server.tool()
async def list_sandboxes(user_id: str = "") -> str:
    """
    List sandboxes with their status, ports and preview URL.

    Args:
        user_id: Only show this user's sandboxes (default: all).

    Returns:
        Table of sandboxes.
    """
    sandboxes = controller.list_sandboxes(user_id or None)
    if not sandboxes:
        return "No sandboxes."
    lines = [f"{'Id':12s}  {'User':10s}  {'Status':19s}  {'Ports':11s}  Preview"]
    lines.append("─" * 75)
    for sb in sandboxes:
        ports = f"{sb['app_port']}/{sb['proxy_port']}" if sb["app_port"] else "-"
        lines.append(
            f"{sb['id']:12s}  {sb['user_id']:10s}  {sb['status']:19s}  "
            f"{ports:11s}  {sb['preview_url'] or '-'}"
        )
    return "\n".join(lines)


@mcp_server.tool()
async def sandbox_health(sandbox_id: str = "") -> str:
    """
    Check whether sandboxes are actually serving.
    Reports launchers that are alive but not serving ("orphaned") and
    records whose processes are gone ("stopped").

    Args:
        sandbox_id: Sandbox to check (default: all).

    Returns:
        One line per sandbox.
    """
    try:
        report = await controller.sandbox_health(sandbox_id or None)
    except SandboxNotFoundError as e:
        return f"Error: {e}"
    if not report:
        return "No sandboxes."
    lines = []
    for item in report:
        line = f"{item['sandbox_id']}: {item['state']} (status {item['status']})"
        if item["tunnel"]:
            line += f" tunnel={item['tunnel']}"
        lines.append(line)
    return "\n".join(lines)


@mcp_server.tool()
async def port_utilization() -> str:
    """
    Show how much of the sandbox port pool is in use.

    Returns:
        Used, available and total port pairs.
    """
    u = controller.ports.utilization()
    return (
        f"Port pairs: {u['used']}/{u['total']} used "
        f"({u['percent_used']}%), {u['available']} available"
    )


@mcp_server.tool()
async def tunnels() -> str:
    """
    List active public tunnels.

    Returns:
        One line per tunnel with its URL, local port and uptime.
    """
    stats = controller.tunnels.stats()
    if not stats["active"]:
        return "No active tunnels."
    lines = [f"{stats['active']} active tunnel(s):"]
    for t in stats["tunnels"]:
        lines.append(
            f"  {t['sandbox_id']} ({t['user_id']}): {t['url']} -> :{t['port']} up {t['uptime']}"
        )
    return "\n".join(lines)


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    mcp_server.run(transport="stdio")


if __name__ == "__main__":
    main()
