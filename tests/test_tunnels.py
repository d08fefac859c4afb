import asyncio
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from sshbridge.tunnels import (
    TunnelAuthError,
    TunnelConfig,
    TunnelConnectionRefused,
    TunnelPortInUse,
    TunnelStatus,
    TunnelSupervisor,
    classify_diagnostic,
    reconnect_delay,
)


class FakeProcess:
    """Stands in for an asyncio subprocess running ``ssh -N -R ...``."""

    def __init__(self, *, ignore_term: bool = False) -> None:
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode = None
        self.ignore_term = ignore_term
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    def write_stderr(self, text: str) -> None:
        self.stderr.feed_data((text + "\n").encode())

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_term:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    def __init__(self, *, exit_code: int | None = None, fail: bool = False, ignore_term: bool = False) -> None:
        self.exit_code = exit_code
        self.fail = fail
        self.ignore_term = ignore_term
        self.calls: list[tuple] = []
        self.processes: list[FakeProcess] = []
        # processes still running at the moment of each spawn
        self.live_at_spawn: list[int] = []

    async def __call__(self, *args, **kwargs) -> FakeProcess:
        self.calls.append(args)
        self.live_at_spawn.append(sum(1 for p in self.processes if p.returncode is None))
        if self.fail:
            raise FileNotFoundError(2, "No such file or directory", "ssh")
        process = FakeProcess(ignore_term=self.ignore_term)
        self.processes.append(process)
        if self.exit_code is not None:
            process.exit(self.exit_code)
        return process


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestTunnelHelpers(unittest.TestCase):
    def test_key_includes_ssh_port_and_remote_port(self) -> None:
        self.assertEqual(TunnelConfig("a@h:2200", remote_port=9000).key, "a@h:2200:9000")
        self.assertEqual(TunnelConfig.from_dict("a@h").key, "a@h:9847")

    def test_from_dict_accepts_both_key_styles(self) -> None:
        camel = TunnelConfig.from_dict({"host": "a@h", "remotePort": 9100, "identityFile": "~/.ssh/id"})
        snake = TunnelConfig.from_dict({"host": "a@h", "remote_port": 9100, "identity_file": "~/.ssh/id"})
        self.assertEqual(camel, snake)
        self.assertFalse(TunnelConfig.from_dict({"host": "a@h", "enabled": False}).enabled)

    def test_ssh_args(self) -> None:
        config = TunnelConfig("a@h:2200", remote_port=9000, identity_file="~/.ssh/id")
        args = config.ssh_args(9850)
        self.assertEqual(args[-1], "a@h")
        self.assertIn("-N", args)
        self.assertEqual(args[args.index("-R") + 1], "9000:localhost:9850")
        self.assertEqual(args[args.index("-p") + 1], "2200")
        self.assertEqual(args[args.index("-i") + 1], "~/.ssh/id")
        self.assertIn("ExitOnForwardFailure=yes", args)
        self.assertIn("BatchMode=yes", args)

    def test_ssh_args_defaults(self) -> None:
        args = TunnelConfig("dev@box", local_port=9900).ssh_args(9850)
        self.assertEqual(args[args.index("-R") + 1], "9847:localhost:9900")
        self.assertEqual(args[args.index("-p") + 1], "22")
        self.assertNotIn("-i", args)

    def test_reconnect_delay(self) -> None:
        self.assertEqual(reconnect_delay(1), 3.0)
        self.assertAlmostEqual(reconnect_delay(4), 10.125)
        self.assertEqual(reconnect_delay(50), 60.0)
        self.assertEqual(reconnect_delay(3, base_delay=1.0, growth_factor=2.0, max_delay=3.0), 3.0)

    def test_classify_diagnostic(self) -> None:
        port = classify_diagnostic("Error: remote port forwarding failed for listen port 9847")
        self.assertIsInstance(port, TunnelPortInUse)
        self.assertEqual(str(port), "Remote port already in use")
        auth = classify_diagnostic("user@host: Permission denied (publickey).")
        self.assertIsInstance(auth, TunnelAuthError)
        refused = classify_diagnostic("ssh: connect to host h port 22: Connection refused")
        self.assertIsInstance(refused, TunnelConnectionRefused)
        self.assertIsNone(classify_diagnostic("debug1: Authenticated to host"))


class TestTunnelSupervisor(unittest.IsolatedAsyncioTestCase):
    def _supervisor(self, spawner: FakeSpawner, **kwargs) -> TunnelSupervisor:
        self.notices: list[tuple[str, str]] = []
        options = {
            "confirm_delay": 0.01,
            "base_delay": 0.01,
            "growth_factor": 1.0,
            "max_delay": 0.05,
        }
        options.update(kwargs)
        supervisor = TunnelSupervisor(
            9850,
            spawner=spawner,
            notify=lambda level, message: self.notices.append((level, message)),
            **options,
        )
        self.addAsyncCleanup(supervisor.stop_all)
        return supervisor

    async def test_confirmed_tunnel_is_connected(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner)
        key = await supervisor.start_tunnel("a@h")
        self.assertEqual(key, "a@h:9847")
        self.assertEqual(spawner.calls[0][0], "ssh")
        self.assertEqual(spawner.calls[0][-1], "a@h")

        state = supervisor.get(key)
        await _wait_until(lambda: state.status is TunnelStatus.CONNECTED)
        self.assertEqual(state.reconnect_attempts, 0)
        self.assertIsNone(state.last_error)
        self.assertEqual(self.notices[0][0], "info")
        self.assertEqual(
            supervisor.get_status(),
            [{"host": "a@h:9847", "status": "connected", "error": None, "attempts": 0}],
        )

    async def test_auth_failure_is_classified_and_retried(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner, confirm_delay=5, base_delay=10)
        key = await supervisor.start_tunnel({"host": "a@h"})
        process = spawner.processes[0]
        process.write_stderr("a@h: Permission denied (publickey).")
        process.exit(255)

        state = supervisor.get(key)
        await _wait_until(lambda: state.status is TunnelStatus.ERROR)
        self.assertEqual(state.last_error, "SSH authentication failed")
        self.assertEqual(state.reconnect_attempts, 1)
        self.assertIsNotNone(state.reconnect_timer)
        self.assertIsNone(state.confirm_timer)

    async def test_exit_without_diagnostic_reports_exit_code(self) -> None:
        spawner = FakeSpawner(exit_code=255)
        supervisor = self._supervisor(spawner, confirm_delay=5, base_delay=10)
        key = await supervisor.start_tunnel("a@h")
        state = supervisor.get(key)
        await _wait_until(lambda: state.status is TunnelStatus.ERROR)
        self.assertEqual(state.last_error, "ssh exited with code 255")

    async def test_unmatched_stderr_leaves_status_alone(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner, confirm_delay=5)
        key = await supervisor.start_tunnel("a@h")
        spawner.processes[0].write_stderr("Warning: Permanently added 'h' to the list of known hosts.")
        await asyncio.sleep(0.02)
        state = supervisor.get(key)
        self.assertIs(state.status, TunnelStatus.CONNECTING)
        self.assertIsNone(state.last_error)

    async def test_disconnect_reconnects_and_resets_attempts(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner)
        key = await supervisor.start_tunnel("a@h")
        state = supervisor.get(key)
        await _wait_until(lambda: state.status is TunnelStatus.CONNECTED)

        spawner.processes[0].exit(255)
        await _wait_until(lambda: state.status is TunnelStatus.DISCONNECTED or len(spawner.processes) == 2)
        await _wait_until(lambda: len(spawner.processes) == 2 and state.status is TunnelStatus.CONNECTED)
        self.assertEqual(state.reconnect_attempts, 0)
        self.assertEqual([level for level, _ in self.notices], ["info", "warning", "info"])

    async def test_gives_up_after_max_attempts(self) -> None:
        spawner = FakeSpawner(exit_code=255)
        supervisor = self._supervisor(spawner, confirm_delay=5, base_delay=0.001, max_reconnect_attempts=3)
        key = await supervisor.start_tunnel("a@h")
        state = supervisor.get(key)
        await _wait_until(lambda: state.last_error == "Max reconnect attempts reached")
        await asyncio.sleep(0.02)
        self.assertEqual(len(spawner.calls), 4)
        self.assertIs(state.status, TunnelStatus.ERROR)
        self.assertIsNone(state.reconnect_timer)
        self.assertEqual(self.notices[-1][0], "error")

    async def test_spawn_failure_is_retried_then_abandoned(self) -> None:
        spawner = FakeSpawner(fail=True)
        supervisor = self._supervisor(spawner, base_delay=0.001, max_reconnect_attempts=2)
        key = await supervisor.start_tunnel("a@h")
        state = supervisor.get(key)
        self.assertIs(state.status, TunnelStatus.ERROR)
        self.assertIn("No such file or directory", state.last_error)
        await _wait_until(lambda: state.last_error == "Max reconnect attempts reached")
        self.assertEqual(len(spawner.calls), 3)

    async def test_stop_cancels_pending_reconnect(self) -> None:
        spawner = FakeSpawner(exit_code=1)
        supervisor = self._supervisor(spawner, confirm_delay=5, base_delay=0.05)
        key = await supervisor.start_tunnel("a@h")
        state = supervisor.get(key)
        await _wait_until(lambda: state.reconnect_timer is not None)
        timer = state.reconnect_timer

        await supervisor.stop_tunnel(key)
        self.assertTrue(timer.cancelled())
        self.assertEqual(supervisor.keys(), [])
        self.assertEqual(supervisor.get_status(), [])
        # well past the reconnect delay: still only the first spawn
        await asyncio.sleep(0.15)
        self.assertEqual(len(spawner.calls), 1)

    async def test_stop_terminates_process_without_reconnect(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner, confirm_delay=5)
        key = await supervisor.start_tunnel("a@h")
        await supervisor.stop_tunnel(key)
        self.assertTrue(spawner.processes[0].terminated)
        self.assertEqual(spawner.processes[0].returncode, -15)
        self.assertFalse(spawner.processes[0].killed)
        await asyncio.sleep(0.05)
        self.assertEqual(len(spawner.calls), 1)
        self.assertIsNone(supervisor.get(key))

    async def test_stop_kills_process_that_ignores_sigterm(self) -> None:
        spawner = FakeSpawner(ignore_term=True)
        supervisor = self._supervisor(spawner, confirm_delay=5, stop_timeout=0.05)
        key = await supervisor.start_tunnel("a@h")
        await supervisor.stop_tunnel(key)
        process = spawner.processes[0]
        self.assertTrue(process.terminated)
        self.assertTrue(process.killed)
        self.assertEqual(process.returncode, -9)

    async def test_restart_waits_for_old_process_to_exit(self) -> None:
        spawner = FakeSpawner(ignore_term=True)
        supervisor = self._supervisor(spawner, confirm_delay=0.01, stop_timeout=0.05)
        key = await supervisor.start_tunnel("a@h")
        await _wait_until(lambda: supervisor.get(key).status is TunnelStatus.CONNECTED)
        await supervisor.start_tunnel("a@h")

        self.assertEqual(spawner.live_at_spawn, [0, 0])
        self.assertTrue(spawner.processes[0].killed)
        self.assertEqual(sum(1 for p in spawner.processes if p.returncode is None), 1)

        await supervisor.stop_all()
        self.assertTrue(all(p.returncode is not None for p in spawner.processes))
        self.assertEqual(supervisor.keys(), [])

    async def test_restart_replaces_existing_tunnel(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner, confirm_delay=5)
        key = await supervisor.start_tunnel("a@h")
        first = supervisor.get(key)
        await supervisor.start_tunnel("a@h")
        second = supervisor.get(key)

        self.assertIsNot(first, second)
        self.assertTrue(spawner.processes[0].terminated)
        self.assertEqual(supervisor.keys(), [key])
        await asyncio.sleep(0.05)
        self.assertEqual(len(spawner.calls), 2)
        self.assertIs(second.status, TunnelStatus.CONNECTING)

    async def test_start_tunnels_skips_disabled(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner, confirm_delay=5)
        await supervisor.start_tunnels([{"host": "a@h", "enabled": False}, "b@h:2200"])
        self.assertEqual(supervisor.keys(), ["b@h:2200:9847"])
        args = spawner.calls[0]
        self.assertEqual(args[-1], "b@h")
        self.assertEqual(args[list(args).index("-p") + 1], "2200")

    async def test_tunnels_fail_independently(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner, confirm_delay=0.01, base_delay=10)
        await supervisor.start_tunnels(["a@h", "b@h"])
        spawner.processes[0].exit(255)
        a, b = supervisor.get("a@h:9847"), supervisor.get("b@h:9847")
        await _wait_until(lambda: a.status is TunnelStatus.ERROR and b.status is TunnelStatus.CONNECTED)
        self.assertIsNone(b.reconnect_timer)


if __name__ == "__main__":
    unittest.main()
