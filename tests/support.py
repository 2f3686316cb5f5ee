"""
tests/support.py

Shared helpers for the test suite: socket utilities, an in-thread backend,
and fake version control / build collaborators.
"""

import socket
import threading
from pathlib import Path

from backend_app import BackendServer, TaggingHandler
from cd_system.build_runner import BuildSystem
from cd_system.errors import BuildFailure, MigrationFailure, VcsFailure
from cd_system.repo_observer import VersionControl

BACKEND_APP = Path(__file__).with_name("backend_app.py")


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def read_all(sock: socket.socket) -> bytes:
    chunks = []
    while True:
        data = sock.recv(65536)
        if not data:
            break
        chunks.append(data)
    return b"".join(chunks)


def exchange(port: int, payload: bytes, timeout: float = 5.0) -> bytes:
    """Send payload, close our write side and return everything sent back"""
    with socket.create_connection(("127.0.0.1", port), timeout=timeout) as sock:
        sock.sendall(payload)
        sock.shutdown(socket.SHUT_WR)
        return read_all(sock)


def start_backend(port: int = 0) -> BackendServer:
    """Tagging backend served from a thread of the test process"""
    server = BackendServer(("127.0.0.1", port), TaggingHandler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


def stop_backend(server: BackendServer) -> None:
    server.shutdown()
    server.server_close()


class FakeRepository(VersionControl):
    def __init__(self, *revisions):
        self.revisions = list(revisions)
        self.fetches = 0
        self.fail = False

    def push(self, revision: str) -> None:
        self.revisions.append(revision)

    def fetch_or_update(self) -> None:
        self.fetches += 1
        if self.fail:
            raise VcsFailure("remote unreachable")

    def current_revision(self) -> str:
        return self.revisions[-1]


class FakeBuildSystem(BuildSystem):
    def __init__(self):
        self.builds = []
        self.migrations = 0
        self.fail = False
        self.fail_migrations = False
        # When set, build() blocks until the event fires
        self.gate = None

    def build(self, source_dir):
        self.builds.append(source_dir)
        if self.gate is not None:
            self.gate.wait(10)
        if self.fail:
            raise BuildFailure("error[E0425]: cannot find value")

    def run_migrations(self, source_dir):
        self.migrations += 1
        if self.fail_migrations:
            raise MigrationFailure("migration 2024-01-01-000000_create_users failed")
