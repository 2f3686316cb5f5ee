"""
Deployment supervisor

The supervisor is the central coordinator. It periodically:
  - updates the local checkout of the watched repository
  - compares the checked out commit with the one currently live
  - on change, builds the commit, starts it on a new port and swaps the
    public forwarder over to it

The previous backend is terminated only after the new forwarder accepts
connections, and only once the old forwarder's in-flight connections have
drained (or the drain deadline passed) and the new backend is still
alive after its startup grace. A new backend that dies in that window is
rolled back. A failed cycle leaves the live backend alone and does not
advance the live commit, so the next poll retries the same commit.

Usage:
    python -m cd_system.supervisor --repo-url URL --clone-dir DIR --public-port 8000
"""

import argparse
import dataclasses
import logging
import shlex
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from cd_system import config, reporter
from cd_system.backend_manager import BackendInstance, BackendManager
from cd_system.build_runner import BuildSystem, CommandBuildSystem
from cd_system.errors import (DeploymentError, ForwarderBindFailure,
                              MigrationFailure, SpawnFailure, VcsFailure)
from cd_system.forwarder import Forwarder
from cd_system.port_allocator import PortAllocator
from cd_system.repo_observer import GitRepository, VersionControl

logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
logger = logging.getLogger(__name__)


@dataclass
class DeploymentRecord:
    commit_id: str
    status: str  # building, live, retired or failed
    port: Optional[int] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    error: Optional[str] = None


class DeploymentState:
    """Live commit, backend and forwarder; every access goes through lock"""

    def __init__(self, history_size: int = config.HISTORY_SIZE):
        self.lock = threading.Lock()
        self.current_commit: Optional[str] = None
        self.active_instance: Optional[BackendInstance] = None
        self.active_forwarder: Optional[Forwarder] = None
        self.history = deque(maxlen=history_size)

    def snapshot(self) -> dict:
        """Consistent copy of the state for readers outside the supervisor"""
        with self.lock:
            instance = self.active_instance
            forwarder = self.active_forwarder
            return {
                "commit_id": self.current_commit,
                "backend_port": instance.port if instance else None,
                "backend_pid": instance.pid if instance else None,
                "started_at": instance.started_at if instance else None,
                "public_port": forwarder.public_port if forwarder else None,
                "target_port": forwarder.target_port if forwarder else None,
                "active_connections": forwarder.active_connections if forwarder else 0,
                # Newest first
                "history": [dataclasses.replace(r) for r in reversed(self.history)],
            }


class Supervisor:
    """Runs the poll, build and swap cycle for one public port"""

    def __init__(
        self,
        vcs: VersionControl,
        builder: BuildSystem,
        backends: BackendManager,
        source_dir: Path = config.CLONE_DIR,
        allocator: Optional[PortAllocator] = None,
        public_port: int = config.FORWARD_PORT,
        forward_host: str = config.FORWARD_HOST,
        poll_interval: float = config.REPO_POLL_INTERVAL,
        drain_timeout: Optional[float] = config.DRAIN_TIMEOUT,
        ready_timeout: float = config.READY_TIMEOUT,
        startup_grace: float = config.STARTUP_GRACE,
        bind_attempts: int = config.FORWARDER_BIND_ATTEMPTS,
        bind_retry_delay: float = config.FORWARDER_BIND_RETRY_DELAY,
        strict_migrations: bool = config.STRICT_MIGRATIONS,
        state: Optional[DeploymentState] = None,
    ):
        self.vcs = vcs
        self.builder = builder
        self.backends = backends
        self.source_dir = Path(source_dir)
        self.allocator = allocator or PortAllocator()
        self.public_port = public_port
        self.forward_host = forward_host
        self.poll_interval = poll_interval
        self.drain_timeout = drain_timeout
        self.ready_timeout = ready_timeout
        self.startup_grace = startup_grace
        self.bind_attempts = bind_attempts
        self.bind_retry_delay = bind_retry_delay
        self.strict_migrations = strict_migrations
        self.state = state or DeploymentState()
        self._bootstrapping = False
        self._stopped = threading.Event()
        # Held for a whole build and swap cycle
        self._cycle_lock = threading.Lock()

    def bootstrap(self) -> bool:
        """
        Deploy whatever the repository currently holds.

        Any failure leaves the supervisor running without a backend; the next
        poll starts over. Only a failure to bind the public port is raised.
        """
        logger.info(f"Bootstrapping, public port {self.public_port}")
        self._bootstrapping = True
        try:
            return self.poll_once()
        finally:
            self._bootstrapping = False

    def poll_once(self) -> bool:
        """Check the repository once; returns True if a new commit went live"""
        try:
            self.vcs.fetch_or_update()
            revision = self.vcs.current_revision()
        except VcsFailure as e:
            logger.error(str(e))
            return False

        with self.state.lock:
            current = self.state.current_commit
        if revision == current:
            logger.debug(f"No new commit, {revision} is live")
            return False

        if current is None:
            logger.info(f"Deploying commit {revision}")
        else:
            logger.info(f"New commit {revision} found. Rebuilding...")
        return self.deploy(revision)

    def deploy(self, commit_id: str) -> bool:
        """Build commit_id and swap it in; returns False if the cycle was aborted"""
        with self._cycle_lock:
            if self._stopped.is_set():
                return False
            record = DeploymentRecord(commit_id=commit_id, status="building")
            with self.state.lock:
                self.state.history.append(record)

            try:
                self._swap_to(commit_id, record)
            except DeploymentError as e:
                logger.error(f"Deployment of {commit_id} aborted: {e}")
                self._mark_failed(record, e)
                if self._bootstrapping and isinstance(e, ForwarderBindFailure):
                    raise
                return False
            except Exception as e:
                self._mark_failed(record, e)
                raise
            return True

    def _mark_failed(self, record: DeploymentRecord, error: Exception) -> None:
        with self.state.lock:
            record.status = "failed"
            record.error = str(error)
            record.finished_at = time.time()

    def _swap_to(self, commit_id: str, record: DeploymentRecord) -> None:
        self.builder.build(self.source_dir)
        try:
            self.builder.run_migrations(self.source_dir)
        except MigrationFailure as e:
            if self.strict_migrations:
                raise
            logger.warning(f"{e} Starting the backend anyway.")
        if self._stopped.is_set():
            raise DeploymentError("Supervisor is shutting down")

        with self.state.lock:
            old_commit = self.state.current_commit
            old_instance = self.state.active_instance
            old_forwarder = self.state.active_forwarder
        exclude = [old_instance.port] if old_instance else []

        port = self.allocator.allocate(exclude=exclude)
        instance = self.backends.spawn(port, commit_id)
        try:
            if self.ready_timeout > 0 and not self.backends.wait_until_ready(instance, self.ready_timeout):
                raise SpawnFailure(f"Backend for {commit_id} never listened on port {port}")
            if not instance.is_running():
                raise SpawnFailure(
                    f"Backend for {commit_id} exited with status {instance.process.returncode}")
            forwarder = self._replace_forwarder(old_forwarder, old_instance, port)
        except Exception:
            self.backends.terminate(instance)
            raise

        with self.state.lock:
            self.state.current_commit = commit_id
            self.state.active_instance = instance
            self.state.active_forwarder = forwarder
            retired = [r for r in self.state.history if r.status == "live"]
            for previous in retired:
                previous.status = "retired"
            record.status = "live"
            record.port = port
            record.finished_at = time.time()
        logger.info(f"Server for {commit_id} running on port {port}, forwarded from {forwarder.public_port}")

        if old_forwarder is not None:
            old_forwarder.drain(self.drain_timeout)
            logger.info(f"Old forwarder to port {old_forwarder.target_port} retired")

        # The old backend is only killed once the new one has survived its startup
        status = self.backends.exit_status(instance, self.startup_grace)
        if status is not None:
            self._roll_back(old_commit, old_instance, retired, instance, forwarder)
            raise SpawnFailure(f"Backend for {commit_id} exited with status {status} after the swap")

        if old_instance is not None:
            self.backends.terminate(old_instance)
            logger.info(f"Old server on port {old_instance.port} killed")

    def _roll_back(
        self,
        commit_id: Optional[str],
        instance: Optional[BackendInstance],
        retired: List[DeploymentRecord],
        failed_instance: BackendInstance,
        failed_forwarder: Forwarder,
    ) -> None:
        """Put the previous backend back behind the public port"""
        failed_forwarder.stop(0)
        self.backends.terminate(failed_instance)
        with self.state.lock:
            self.state.current_commit = commit_id
            self.state.active_instance = instance
            self.state.active_forwarder = None
            for previous in retired:
                previous.status = "live"
        if instance is not None:
            self._restore_forwarder(instance.port)
            logger.warning(f"Rolled back to commit {commit_id} on port {instance.port}")

    def _start_forwarder(self, target_port: int) -> Forwarder:
        forwarder = Forwarder(
            self.public_port, target_port,
            host=self.forward_host, target_host=self.backends.host)
        return forwarder.start(attempts=self.bind_attempts, retry_delay=self.bind_retry_delay)

    def _replace_forwarder(
        self,
        old_forwarder: Optional[Forwarder],
        old_instance: Optional[BackendInstance],
        target_port: int,
    ) -> Forwarder:
        # The public port is unbound between these two steps
        if old_forwarder is not None:
            old_forwarder.stop_accepting()
        try:
            return self._start_forwarder(target_port)
        except ForwarderBindFailure:
            if old_forwarder is not None and old_instance is not None:
                self._restore_forwarder(old_instance.port)
            raise

    def _restore_forwarder(self, target_port: int) -> None:
        """Point the public port back at the backend that is still live"""
        try:
            restored = self._start_forwarder(target_port)
        except ForwarderBindFailure as e:
            logger.critical(f"Could not restore forwarding to port {target_port}: {e}")
            restored = None
        with self.state.lock:
            self.state.active_forwarder = restored

    def monitor(self) -> None:
        """Poll loop; runs until stop() is called"""
        while not self._stopped.wait(self.poll_interval):
            try:
                self.poll_once()
            except Exception:
                logger.exception("Unexpected error in monitor loop")

    def start(self) -> threading.Thread:
        """Bootstrap, then run the monitor loop in a background thread"""
        self.bootstrap()
        thread = threading.Thread(target=self.monitor, name="repo-monitor")
        thread.start()
        return thread

    def stop(self) -> None:
        self._stopped.set()

    def shutdown(self) -> None:
        """Stop polling, wait for a running cycle, then take down the live forwarder and backend"""
        self.stop()
        with self._cycle_lock:
            with self.state.lock:
                instance, self.state.active_instance = self.state.active_instance, None
                forwarder, self.state.active_forwarder = self.state.active_forwarder, None
            if forwarder is not None:
                forwarder.stop(self.drain_timeout)
            if instance is not None:
                self.backends.terminate(instance)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Self-updating deployment supervisor")
    parser.add_argument("--repo-url", default=config.REPO_URL,
                        help="Remote repository to watch")
    parser.add_argument("--clone-dir", type=Path, default=config.CLONE_DIR,
                        help="Local checkout of the repository")
    parser.add_argument("--public-port", type=int, default=config.FORWARD_PORT,
                        help=f"Port clients connect to (default: {config.FORWARD_PORT})")
    parser.add_argument("--poll-interval", type=float, default=config.REPO_POLL_INTERVAL,
                        help="Seconds between repository checks")
    parser.add_argument("--build-command", type=shlex.split, default=config.BUILD_COMMAND,
                        help="Build command, run in the checkout")
    parser.add_argument("--migration-command", type=shlex.split, default=config.MIGRATION_COMMAND,
                        help="Migration command, empty to skip")
    parser.add_argument("--backend-command", type=shlex.split, default=config.BACKEND_COMMAND,
                        help="Backend binary; the port is appended as last argument")
    parser.add_argument("--ready-timeout", type=float, default=config.READY_TIMEOUT,
                        help="Wait up to this many seconds for the backend to listen (0 disables)")
    parser.add_argument("--startup-grace", type=float, default=config.STARTUP_GRACE,
                        help="Seconds a new backend must survive before the old one is killed")
    parser.add_argument("--reporter-port", type=int, default=config.REPORTER_PORT,
                        help=f"Status page port (default: {config.REPORTER_PORT})")
    parser.add_argument("--no-reporter", action="store_true",
                        help="Do not serve the status page")
    args = parser.parse_args(argv)

    supervisor = Supervisor(
        vcs=GitRepository(args.repo_url, args.clone_dir),
        builder=CommandBuildSystem(args.build_command, args.migration_command),
        backends=BackendManager(args.backend_command, args.clone_dir),
        source_dir=args.clone_dir,
        public_port=args.public_port,
        poll_interval=args.poll_interval,
        ready_timeout=args.ready_timeout,
        startup_grace=args.startup_grace,
    )

    if not args.no_reporter and args.reporter_port:
        reporter.serve_in_background(supervisor.state, config.REPORTER_HOST, args.reporter_port)

    try:
        monitor_thread = supervisor.start()
    except ForwarderBindFailure as e:
        logger.critical(f"Startup failed: {e}")
        return 1

    try:
        monitor_thread.join()
    except KeyboardInterrupt:
        logger.info("Shutting down supervisor")
        supervisor.shutdown()
        monitor_thread.join()
    return 0


if __name__ == "__main__":
    sys.exit(main())
