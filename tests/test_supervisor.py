"""
tests/test_supervisor.py

Tests for the deployment supervisor. Version control and the build tool are
faked; backends are real processes (tests/backend_app.py) and the forwarder
binds a real loopback port.
"""

import socket
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest import mock

from cd_system.backend_manager import BackendManager
from cd_system.errors import ForwarderBindFailure
from cd_system.port_allocator import PortAllocator
from cd_system.supervisor import DeploymentState, Supervisor
from support import (BACKEND_APP, FakeBuildSystem, FakeRepository, exchange,
                     free_port, read_all)


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class SupervisorTestCase(unittest.TestCase):
    def setUp(self):
        self.workdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.workdir.cleanup)
        self.repo = FakeRepository("a1")
        self.builder = FakeBuildSystem()
        self.backends = BackendManager(
            [sys.executable, str(BACKEND_APP)], Path(self.workdir.name),
            output="discard", host="127.0.0.1", terminate_timeout=5)
        self.public_port = free_port()
        self.supervisor = self.make_supervisor()
        self.addCleanup(self.supervisor.shutdown)

    def make_supervisor(self, **kwargs):
        options = dict(
            vcs=self.repo,
            builder=self.builder,
            backends=self.backends,
            source_dir=Path(self.workdir.name),
            allocator=PortAllocator(host="127.0.0.1"),
            public_port=self.public_port,
            forward_host="127.0.0.1",
            poll_interval=0.05,
            drain_timeout=5,
            ready_timeout=10,
            startup_grace=0.5,
            bind_attempts=3,
            bind_retry_delay=0.05,
        )
        options.update(kwargs)
        return Supervisor(**options)

    @property
    def state(self) -> DeploymentState:
        return self.supervisor.state

    def live_port(self):
        return self.state.active_instance.port

    def request(self, payload=b"GET /"):
        return exchange(self.public_port, payload)


class TestBootstrap(SupervisorTestCase):
    def test_bootstrap_deploys_current_commit(self):
        self.assertTrue(self.supervisor.bootstrap())
        self.assertEqual(self.state.current_commit, "a1")
        self.assertEqual(self.state.active_forwarder.public_port, self.public_port)
        self.assertEqual(self.request(), f"{self.live_port()}:GET /".encode())
        self.assertEqual(self.builder.migrations, 1)

    def test_failed_bootstrap_is_degraded_and_retried_from_scratch(self):
        self.builder.fail = True
        self.assertFalse(self.supervisor.bootstrap())
        self.assertIsNone(self.state.current_commit)
        self.assertIsNone(self.state.active_instance)
        self.assertIsNone(self.state.active_forwarder)

        self.builder.fail = False
        self.assertTrue(self.supervisor.poll_once())
        self.assertEqual(self.state.current_commit, "a1")
        self.assertEqual(len(self.builder.builds), 2)

    def test_spawn_failure_leaves_no_backend(self):
        self.backends.command = ["./target/release/missing-binary"]
        self.assertFalse(self.supervisor.bootstrap())
        self.assertIsNone(self.state.active_instance)
        self.assertEqual(self.state.history[-1].status, "failed")

    def test_public_port_bind_failure_is_fatal_at_bootstrap(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as held:
            held.bind(("127.0.0.1", self.public_port))
            held.listen(1)
            with self.assertRaises(ForwarderBindFailure):
                self.supervisor.bootstrap()
        self.assertIsNone(self.state.active_instance)
        self.assertIsNone(self.state.current_commit)

    def test_backend_exiting_at_bootstrap_leaves_no_backend(self):
        self.supervisor.ready_timeout = 0
        self.supervisor.startup_grace = 5
        self.backends.command = [sys.executable, "-c", "import sys, time; time.sleep(0.3); sys.exit(98)"]
        self.assertFalse(self.supervisor.bootstrap())
        self.assertIsNone(self.state.current_commit)
        self.assertIsNone(self.state.active_instance)
        self.assertIsNone(self.state.active_forwarder)
        self.assertEqual(self.state.history[-1].status, "failed")
        with self.assertRaises(ConnectionRefusedError):
            socket.create_connection(("127.0.0.1", self.public_port), timeout=5)

    def test_vcs_failure_skips_cycle(self):
        self.repo.fail = True
        self.assertFalse(self.supervisor.bootstrap())
        self.assertEqual(self.builder.builds, [])


class TestSwap(SupervisorTestCase):
    def setUp(self):
        super().setUp()
        self.assertTrue(self.supervisor.bootstrap())
        self.old_instance = self.state.active_instance
        self.old_forwarder = self.state.active_forwarder

    def test_unchanged_commit_does_nothing(self):
        for _ in range(5):
            self.assertFalse(self.supervisor.poll_once())
        self.assertEqual(len(self.builder.builds), 1)
        self.assertIs(self.state.active_instance, self.old_instance)
        self.assertIs(self.state.active_forwarder, self.old_forwarder)
        self.assertEqual(self.repo.fetches, 6)

    def test_new_commit_swaps_backend(self):
        self.repo.push("b2")
        self.assertTrue(self.supervisor.poll_once())

        new_port = self.live_port()
        self.assertNotEqual(new_port, self.old_instance.port)
        self.assertEqual(self.state.current_commit, "b2")
        self.assertEqual(self.state.active_forwarder.public_port, self.public_port)
        self.assertEqual(self.state.active_forwarder.target_port, new_port)
        self.assertEqual(self.request(), f"{new_port}:GET /".encode())

        self.assertFalse(self.old_instance.is_running())
        self.assertFalse(self.old_forwarder.accepting)
        self.assertEqual([r.status for r in self.state.history], ["retired", "live"])

    def test_build_failure_keeps_live_backend_and_commit(self):
        self.repo.push("b2")
        self.builder.fail = True
        self.assertFalse(self.supervisor.poll_once())

        self.assertEqual(self.state.current_commit, "a1")
        self.assertIs(self.state.active_instance, self.old_instance)
        self.assertIs(self.state.active_forwarder, self.old_forwarder)
        self.assertTrue(self.old_instance.is_running())
        self.assertEqual(self.request(), f"{self.old_instance.port}:GET /".encode())

        # The next tick retries the same target commit
        self.builder.fail = False
        self.assertTrue(self.supervisor.poll_once())
        self.assertEqual(self.state.current_commit, "b2")

    def test_port_exhaustion_aborts_swap(self):
        live = self.old_instance.port
        self.supervisor.allocator = PortAllocator(port_range=(live, live), attempts=10, host="127.0.0.1")
        self.repo.push("b2")
        self.assertFalse(self.supervisor.poll_once())

        self.assertIs(self.state.active_instance, self.old_instance)
        self.assertEqual(self.live_port(), live)
        self.assertEqual(self.request(), f"{live}:GET /".encode())
        self.assertEqual(self.state.history[-1].status, "failed")
        self.assertIn("No available port", self.state.history[-1].error)

    def test_backend_that_never_listens_is_torn_down(self):
        self.backends.command = [sys.executable, "-c", "import time; time.sleep(60)"]
        self.supervisor.ready_timeout = 0.3
        spawned = []
        real_spawn = self.backends.spawn

        def recording_spawn(port, commit_id=None):
            spawned.append(real_spawn(port, commit_id))
            return spawned[-1]

        self.repo.push("b2")
        with mock.patch.object(self.backends, "spawn", side_effect=recording_spawn):
            self.assertFalse(self.supervisor.poll_once())
        self.assertFalse(spawned[0].is_running())
        self.assertIs(self.state.active_instance, self.old_instance)
        self.assertTrue(self.old_forwarder.accepting)

    def test_forwarder_bind_failure_restores_old_target(self):
        real_start = self.supervisor._start_forwarder
        targets = []

        def flaky_start(target_port):
            targets.append(target_port)
            if len(targets) == 1:
                raise ForwarderBindFailure("port taken")
            return real_start(target_port)

        self.repo.push("b2")
        with mock.patch.object(self.supervisor, "_start_forwarder", side_effect=flaky_start):
            self.assertFalse(self.supervisor.poll_once())

        self.assertEqual(targets[1], self.old_instance.port)
        self.assertEqual(self.state.current_commit, "a1")
        self.assertIs(self.state.active_instance, self.old_instance)
        self.assertEqual(self.state.active_forwarder.target_port, self.old_instance.port)
        self.assertEqual(self.request(), f"{self.old_instance.port}:GET /".encode())
        # Not fatal after bootstrap; the next tick retries the same commit
        self.assertTrue(self.supervisor.poll_once())
        self.assertEqual(self.state.current_commit, "b2")

    def test_backend_exiting_after_swap_rolls_back(self):
        self.supervisor.ready_timeout = 0
        self.supervisor.startup_grace = 5
        good_command = self.backends.command
        self.backends.command = [sys.executable, "-c", "import sys, time; time.sleep(0.3); sys.exit(98)"]
        self.repo.push("b2")
        self.assertFalse(self.supervisor.poll_once())

        self.assertEqual(self.state.current_commit, "a1")
        self.assertIs(self.state.active_instance, self.old_instance)
        self.assertTrue(self.old_instance.is_running())
        self.assertEqual(self.state.active_forwarder.target_port, self.old_instance.port)
        self.assertEqual(self.request(), f"{self.old_instance.port}:GET /".encode())
        self.assertEqual([r.status for r in self.state.history], ["live", "failed"])
        self.assertIn("status 98", self.state.history[-1].error)

        # The same commit is retried on the next tick
        self.backends.command = good_command
        self.assertTrue(self.supervisor.poll_once())
        self.assertEqual(self.state.current_commit, "b2")
        self.assertEqual(len(self.builder.builds), 3)
        self.assertFalse(self.old_instance.is_running())

    def test_unexpected_error_after_spawn_tears_down_new_backend(self):
        spawned = []
        real_spawn = self.backends.spawn

        def recording_spawn(port, commit_id=None):
            spawned.append(real_spawn(port, commit_id))
            return spawned[-1]

        self.repo.push("b2")
        with mock.patch.object(self.backends, "spawn", side_effect=recording_spawn), \
                mock.patch.object(self.supervisor, "_replace_forwarder", side_effect=RuntimeError("boom")):
            with self.assertRaises(RuntimeError):
                self.supervisor.poll_once()

        self.assertFalse(spawned[0].is_running())
        self.assertEqual(self.state.history[-1].status, "failed")
        self.assertEqual(self.state.history[-1].error, "boom")
        self.assertEqual(self.state.current_commit, "a1")
        self.assertIs(self.state.active_instance, self.old_instance)
        self.assertIs(self.state.active_forwarder, self.old_forwarder)
        self.assertEqual(self.request(), f"{self.old_instance.port}:GET /".encode())

    def test_migration_failure_is_not_fatal(self):
        self.builder.fail_migrations = True
        self.repo.push("b2")
        self.assertTrue(self.supervisor.poll_once())
        self.assertEqual(self.state.current_commit, "b2")

    def test_strict_migrations_abort_swap(self):
        self.supervisor.strict_migrations = True
        self.builder.fail_migrations = True
        self.repo.push("b2")
        self.assertFalse(self.supervisor.poll_once())
        self.assertEqual(self.state.current_commit, "a1")
        self.assertIs(self.state.active_instance, self.old_instance)

    def test_in_flight_connection_completes_across_swap(self):
        old_port = self.old_instance.port
        with socket.create_connection(("127.0.0.1", self.public_port), timeout=10) as sock:
            sock.sendall(b"started before the swap, ")
            self.assertTrue(wait_for(lambda: self.old_forwarder.active_connections == 1))

            self.repo.push("b2")
            swap = threading.Thread(target=self.supervisor.poll_once)
            swap.start()
            self.assertTrue(wait_for(lambda: self.state.current_commit == "b2"))

            # New work goes to the new backend while the old one drains
            new_port = self.live_port()
            self.assertEqual(self.request(b"new"), f"{new_port}:new".encode())
            self.assertTrue(self.old_instance.is_running())

            sock.sendall(b"finished after it")
            sock.shutdown(socket.SHUT_WR)
            response = read_all(sock)
            swap.join(15)

        self.assertEqual(response, f"{old_port}:started before the swap, finished after it".encode())
        self.assertFalse(self.old_instance.is_running())

    def test_snapshot_reflects_live_deployment(self):
        snapshot = self.state.snapshot()
        self.assertEqual(snapshot["commit_id"], "a1")
        self.assertEqual(snapshot["backend_port"], self.old_instance.port)
        self.assertEqual(snapshot["public_port"], self.public_port)
        self.assertEqual(snapshot["history"][0].status, "live")


class TestMonitor(SupervisorTestCase):
    def test_monitor_thread_deploys_new_commits(self):
        thread = self.supervisor.start()
        self.addCleanup(thread.join, 10)
        self.assertEqual(self.state.current_commit, "a1")

        self.repo.push("b2")
        self.assertTrue(wait_for(lambda: self.state.current_commit == "b2"))
        self.supervisor.stop()
        thread.join(10)
        self.assertFalse(thread.is_alive())

    def test_shutdown_releases_everything(self):
        self.supervisor.bootstrap()
        instance = self.state.active_instance
        self.supervisor.shutdown()
        self.assertFalse(instance.is_running())
        self.assertIsNone(self.state.active_forwarder)
        with self.assertRaises(ConnectionRefusedError):
            socket.create_connection(("127.0.0.1", self.public_port), timeout=5)

    def test_shutdown_waits_for_running_swap(self):
        self.assertTrue(self.supervisor.bootstrap())
        old_instance = self.state.active_instance
        self.builder.gate = threading.Event()
        self.repo.push("b2")
        results = []
        swap = threading.Thread(target=lambda: results.append(self.supervisor.poll_once()))
        swap.start()
        self.assertTrue(wait_for(lambda: len(self.builder.builds) == 2))

        stopper = threading.Thread(target=self.supervisor.shutdown)
        stopper.start()
        stopper.join(0.3)
        self.assertTrue(stopper.is_alive())

        self.builder.gate.set()
        swap.join(15)
        stopper.join(15)
        self.assertEqual(results, [False])
        self.assertFalse(old_instance.is_running())
        self.assertIsNone(self.state.active_instance)
        self.assertIsNone(self.state.active_forwarder)
        self.assertEqual(self.state.history[-1].status, "failed")
        with self.assertRaises(ConnectionRefusedError):
            socket.create_connection(("127.0.0.1", self.public_port), timeout=5)


if __name__ == "__main__":
    unittest.main()
