"""
Reverse SSH tunnel supervisor.

Each configured remote host gets an ``ssh -N -R <remote>:localhost:<local>``
subprocess so that a process on that host can reach the local MCP server.
Tunnels are keyed by ``"<user@host[:port]>:<remote port>"`` and carry their own
reconnect/backoff state; one tunnel failing never delays another.

Every subprocess event (spawned, confirmed, output, exit, spawn failure,
retry timer) goes through ``TunnelSupervisor._transition`` so all status
changes happen in one place.
"""
from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .config import DEFAULT_PORT

log = logging.getLogger("sshbridge-tunnels")

DEFAULT_SSH_PORT = "22"
_HOST_PORT_RE = re.compile(r"^(.+):(\d+)$")


class TunnelStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class TunnelEvent(str, Enum):
    SPAWNED = "spawned"
    CONFIRMED = "confirmed"
    OUTPUT = "output"
    DIAGNOSTIC = "diagnostic"
    EXITED = "exited"
    SPAWN_FAILED = "spawn_failed"
    RETRY = "retry"


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------

class TunnelError(RuntimeError):
    pass


class TunnelSpawnError(TunnelError):
    pass


class TunnelAuthError(TunnelError):
    pass


class TunnelPortInUse(TunnelError):
    pass


class TunnelConnectionRefused(TunnelError):
    pass


class ReconnectExhausted(TunnelError):
    pass


_DIAGNOSTICS: tuple[tuple[str, type[TunnelError], str], ...] = (
    ("remote port forwarding failed", TunnelPortInUse, "Remote port already in use"),
    ("Permission denied", TunnelAuthError, "SSH authentication failed"),
    ("Connection refused", TunnelConnectionRefused, "Connection refused"),
)


def classify_diagnostic(line: str) -> TunnelError | None:
    """Map a line of ssh stderr to a known failure, or None."""
    for phrase, error_cls, message in _DIAGNOSTICS:
        if phrase in line:
            return error_cls(message)
    return None


def reconnect_delay(
    attempt: int,
    base_delay: float = 3.0,
    growth_factor: float = 1.5,
    max_delay: float = 60.0,
) -> float:
    """Backoff for the 1-indexed ``attempt``, capped at ``max_delay``."""
    return min(base_delay * growth_factor ** (max(attempt, 1) - 1), max_delay)


# ---------------------------------------------------------------------------
# Config / state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TunnelConfig:
    host: str
    remote_port: int = DEFAULT_PORT
    local_port: int | None = None
    identity_file: str | None = None
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | str) -> "TunnelConfig":
        if isinstance(data, str):
            return cls(host=data)
        remote = data.get("remotePort", data.get("remote_port"))
        local = data.get("localPort", data.get("local_port"))
        return cls(
            host=str(data["host"]),
            remote_port=int(remote) if remote else DEFAULT_PORT,
            local_port=int(local) if local else None,
            identity_file=data.get("identityFile", data.get("identity_file")) or None,
            enabled=data.get("enabled") is not False,
        )

    @property
    def key(self) -> str:
        return f"{self.host}:{self.remote_port}"

    def ssh_target(self) -> tuple[str, str]:
        """Split ``user@host[:port]`` into the ssh destination and port."""
        match = _HOST_PORT_RE.match(self.host)
        if match:
            return match.group(1), match.group(2)
        return self.host, DEFAULT_SSH_PORT

    def ssh_args(self, default_local_port: int = DEFAULT_PORT) -> list[str]:
        destination, ssh_port = self.ssh_target()
        local_port = self.local_port or default_local_port
        args = [
            "-o", "TCPKeepAlive=yes",
            "-o", "ServerAliveInterval=10",
            "-o", "ServerAliveCountMax=3",
            # a failed -R bind must kill ssh instead of leaving a useless session up
            "-o", "ExitOnForwardFailure=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", "BatchMode=yes",
            "-N",
            "-R", f"{self.remote_port}:localhost:{local_port}",
            "-p", ssh_port,
        ]
        if self.identity_file:
            args += ["-i", self.identity_file]
        args.append(destination)
        return args


@dataclass
class TunnelState:
    config: TunnelConfig
    process: Any = None
    status: TunnelStatus = TunnelStatus.CONNECTING
    last_error: str | None = None
    reconnect_attempts: int = 0
    reconnect_timer: asyncio.TimerHandle | None = None
    confirm_timer: asyncio.TimerHandle | None = None
    connect_task: asyncio.Task | None = None
    watch_task: asyncio.Task | None = None

    @property
    def key(self) -> str:
        return self.config.key


Spawner = Callable[..., Awaitable[Any]]
Notifier = Callable[[str, str], None]


def _log_notice(level: str, message: str) -> None:
    log.log(logging.getLevelName(level.upper()), "%s", message)


async def _shutdown_process(process: Any, timeout: float) -> None:
    """SIGTERM ``process``, escalating to SIGKILL if it outlives ``timeout``."""
    if process is None or process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout)
        return
    except asyncio.TimeoutError:
        log.warning("ssh (pid %s) ignored SIGTERM; killing it", getattr(process, "pid", "?"))
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------

class TunnelSupervisor:
    def __init__(
        self,
        local_port: int = DEFAULT_PORT,
        *,
        max_reconnect_attempts: int = 10,
        base_delay: float = 3.0,
        growth_factor: float = 1.5,
        max_delay: float = 60.0,
        confirm_delay: float = 2.0,
        spawner: Spawner | None = None,
        notify: Notifier | None = None,
        ssh_command: str = "ssh",
        stop_timeout: float = 5.0,
    ) -> None:
        self.local_port = local_port
        self.max_reconnect_attempts = max_reconnect_attempts
        self.base_delay = base_delay
        self.growth_factor = growth_factor
        self.max_delay = max_delay
        self.confirm_delay = confirm_delay
        self.ssh_command = ssh_command
        self.stop_timeout = stop_timeout
        self._spawner = spawner or asyncio.create_subprocess_exec
        self._notify = notify or _log_notice
        self._tunnels: dict[str, TunnelState] = {}
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_tunnels(self, configs: Iterable[TunnelConfig | dict[str, Any] | str]) -> None:
        for raw in configs:
            config = raw if isinstance(raw, TunnelConfig) else TunnelConfig.from_dict(raw)
            if config.enabled:
                await self.start_tunnel(config)

    async def start_tunnel(self, config: TunnelConfig | dict[str, Any] | str) -> str:
        """Start (or restart) the tunnel for ``config``; returns its key.

        Returns once the first connection attempt has been made. Failures
        end up in the tunnel's status, never as exceptions.
        """
        if not isinstance(config, TunnelConfig):
            config = TunnelConfig.from_dict(config)
        key = config.key
        # the old ssh must be gone before a new one asks for the same -R bind
        while key in self._tunnels:
            await self.stop_tunnel(key)

        state = TunnelState(config=config)
        self._tunnels[key] = state
        log.info("Starting tunnel to %s...", config.host)
        await self._connect(state)
        return key

    async def stop_tunnel(self, key: str) -> None:
        """Forget ``key`` and wait for its ssh process to exit."""
        state = self._tunnels.pop(key, None)
        if state is None:
            return
        for handle in (state.reconnect_timer, state.confirm_timer):
            if handle is not None:
                handle.cancel()
        state.reconnect_timer = None
        state.confirm_timer = None
        for task in (state.connect_task, state.watch_task):
            if task is not None and not task.done():
                task.cancel()
        process, state.process = state.process, None
        await _shutdown_process(process, self.stop_timeout)
        log.info("Stopped tunnel: %s", key)

    async def stop_all(self) -> None:
        await asyncio.gather(*(self.stop_tunnel(key) for key in list(self._tunnels)))

    def get_status(self) -> list[dict[str, Any]]:
        return [
            {
                "host": key,
                "status": state.status.value,
                "error": state.last_error,
                "attempts": state.reconnect_attempts,
            }
            for key, state in self._tunnels.items()
        ]

    def get(self, key: str) -> TunnelState | None:
        return self._tunnels.get(key)

    def keys(self) -> list[str]:
        return list(self._tunnels)

    # ------------------------------------------------------------------
    # Subprocess lifecycle
    # ------------------------------------------------------------------

    async def _connect(self, state: TunnelState) -> None:
        args = state.config.ssh_args(self.local_port)
        log.info("[%s] SSH command: %s %s", state.config.host, self.ssh_command, " ".join(args))
        try:
            process = await self._spawner(
                self.ssh_command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._transition(state, TunnelEvent.SPAWN_FAILED, str(exc) or type(exc).__name__)
            return
        if self._tunnels.get(state.key) is not state:
            # stopped or replaced while ssh was starting
            await _shutdown_process(process, self.stop_timeout)
            return
        state.process = process
        self._transition(state, TunnelEvent.SPAWNED)

    async def _watch(self, state: TunnelState, process: Any) -> None:
        async def pump(stream: asyncio.StreamReader | None, event: TunnelEvent) -> None:
            if stream is None:
                return
            try:
                async for raw in stream:
                    line = raw.decode(errors="replace").strip()
                    if line:
                        self._transition(state, event, line)
            except ValueError as exc:
                log.warning("[%s] unreadable ssh output: %s", state.config.host, exc)

        await asyncio.gather(
            pump(process.stdout, TunnelEvent.OUTPUT),
            pump(process.stderr, TunnelEvent.DIAGNOSTIC),
        )
        code = await process.wait()
        self._transition(state, TunnelEvent.EXITED, code)

    def _transition(self, state: TunnelState, event: TunnelEvent, detail: Any = None) -> None:
        """Apply one lifecycle event to ``state``.

        Events for a state that is no longer tracked under its key (stopped,
        or replaced by a newer start_tunnel) are dropped.
        """
        if self._tunnels.get(state.key) is not state:
            log.debug("[%s] ignoring %s for stale tunnel", state.config.host, event.value)
            return
        host = state.config.host
        loop = asyncio.get_running_loop()

        if event is TunnelEvent.SPAWNED:
            log.info("[%s] SSH process started", host)
            state.confirm_timer = loop.call_later(
                self.confirm_delay, self._transition, state, TunnelEvent.CONFIRMED
            )
            state.watch_task = self._spawn(self._watch(state, state.process))

        elif event is TunnelEvent.CONFIRMED:
            state.confirm_timer = None
            if state.process is not None and state.process.returncode is None:
                state.status = TunnelStatus.CONNECTED
                state.reconnect_attempts = 0
                state.last_error = None
                log.info("[%s] Tunnel connected", host)
                self._notify("info", f"SSH tunnel to {host} connected")

        elif event is TunnelEvent.OUTPUT:
            log.info("[%s] %s", host, detail)

        elif event is TunnelEvent.DIAGNOSTIC:
            log.info("[%s] stderr: %s", host, detail)
            error = classify_diagnostic(str(detail))
            if error is not None:
                state.last_error = str(error)

        elif event is TunnelEvent.EXITED:
            log.info("[%s] SSH exited: code=%s", host, detail)
            state.process = None
            if state.confirm_timer is not None:
                state.confirm_timer.cancel()
                state.confirm_timer = None
            if state.status is TunnelStatus.CONNECTED:
                state.status = TunnelStatus.DISCONNECTED
                self._notify("warning", f"SSH tunnel to {host} disconnected, reconnecting...")
            else:
                state.status = TunnelStatus.ERROR
                if state.last_error is None:
                    state.last_error = f"ssh exited with code {detail}"
            self._schedule_reconnect(state)

        elif event is TunnelEvent.SPAWN_FAILED:
            log.error("[%s] Failed to start SSH: %s", host, detail)
            state.process = None
            state.status = TunnelStatus.ERROR
            state.last_error = str(TunnelSpawnError(detail))
            self._schedule_reconnect(state)

        elif event is TunnelEvent.RETRY:
            state.reconnect_timer = None
            state.status = TunnelStatus.CONNECTING
            state.connect_task = self._spawn(self._connect(state))

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_reconnect(self, state: TunnelState) -> None:
        host = state.config.host
        if state.reconnect_attempts >= self.max_reconnect_attempts:
            state.status = TunnelStatus.ERROR
            state.last_error = str(ReconnectExhausted("Max reconnect attempts reached"))
            log.error("[%s] Max reconnect attempts reached", host)
            self._notify("error", f"SSH tunnel to {host} gave up after {self.max_reconnect_attempts} attempts")
            return

        state.reconnect_attempts += 1
        delay = reconnect_delay(state.reconnect_attempts, self.base_delay, self.growth_factor, self.max_delay)
        log.info(
            "[%s] Reconnecting in %.1fs (attempt %d/%d)...",
            host, delay, state.reconnect_attempts, self.max_reconnect_attempts,
        )
        state.reconnect_timer = asyncio.get_running_loop().call_later(
            delay, self._transition, state, TunnelEvent.RETRY
        )
