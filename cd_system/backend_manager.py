"""
A backend manager that owns the lifecycle of the supervised server process:
it starts the freshly built binary on a given port and retires old instances.

It uses subprocess to launch the backend as `<binary> <port>`.
"""

import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, List, Optional

from cd_system import config, helpers
from cd_system.errors import SpawnFailure

logger = logging.getLogger(__name__)


@dataclass
class BackendInstance:
    """One running backend process and the port it was told to listen on"""
    process: subprocess.Popen
    port: int
    commit_id: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    log_file: Optional[IO] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_running(self) -> bool:
        return self.process.poll() is None


class BackendManager:
    """Spawns and terminates backend processes"""

    def __init__(
        self,
        command: List[str],
        cwd: Path,
        output: str = config.BACKEND_OUTPUT,
        host: str = config.BACKEND_HOST,
        terminate_timeout: float = config.TERMINATE_TIMEOUT,
    ):
        self.command = list(command)
        self.cwd = Path(cwd)
        self.output = output
        self.host = host
        self.terminate_timeout = terminate_timeout

    def _open_output(self) -> Optional[IO]:
        if self.output == "inherit":
            return None
        if self.output == "discard":
            return subprocess.DEVNULL
        return open(self.output, "ab")

    def spawn(self, port: int, commit_id: Optional[str] = None) -> BackendInstance:
        """Launch the backend on port"""
        command = self.command + [str(port)]
        try:
            stream = self._open_output()
        except OSError as e:
            raise SpawnFailure(f"Cannot open backend log {self.output}: {e}") from e
        try:
            proc = subprocess.Popen(
                command,
                cwd=self.cwd,
                stdout=stream,
                stderr=subprocess.STDOUT if stream is not None else None,
            )
        except OSError as e:
            if stream not in (None, subprocess.DEVNULL):
                stream.close()
            raise SpawnFailure(f"Failed to spawn {' '.join(command)}: {e}") from e
        logger.info(f"Spawned backend PID {proc.pid} on port {port}")
        log_file = stream if stream not in (None, subprocess.DEVNULL) else None
        return BackendInstance(process=proc, port=port, commit_id=commit_id, log_file=log_file)

    def wait_until_ready(self, instance: BackendInstance, timeout: float, interval: float = 0.1) -> bool:
        """Poll the backend port until it accepts connections, exits, or timeout expires"""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not instance.is_running():
                logger.error(
                    f"Backend PID {instance.pid} exited with status {instance.process.returncode} before listening")
                return False
            if helpers.port_is_open(self.host, instance.port, timeout=interval):
                return True
            time.sleep(interval)
        logger.error(f"Backend PID {instance.pid} not listening on port {instance.port} after {timeout}s")
        return False

    def exit_status(self, instance: BackendInstance, grace: float) -> Optional[int]:
        """
        Return the backend's exit status if it dies within grace seconds of
        being spawned, or None if it is still running after that.
        """
        remaining = grace - (time.time() - instance.started_at)
        if remaining <= 0:
            return instance.process.poll()
        try:
            status = instance.process.wait(timeout=remaining)
        except subprocess.TimeoutExpired:
            return None
        logger.error(f"Backend PID {instance.pid} on port {instance.port} exited with status {status}")
        return status

    def terminate(self, instance: BackendInstance) -> None:
        """Stop the backend, escalating to SIGKILL after terminate_timeout. Never raises."""
        proc = instance.process
        try:
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=self.terminate_timeout)
                except subprocess.TimeoutExpired:
                    logger.warning(f"Backend PID {proc.pid} ignored SIGTERM, killing it")
                    proc.kill()
                    proc.wait()
            logger.info(f"Backend PID {proc.pid} on port {instance.port} exited with status {proc.returncode}")
        except OSError as e:
            logger.error(f"Failed to terminate backend PID {proc.pid}: {e}")
        finally:
            if instance.log_file is not None:
                instance.log_file.close()
