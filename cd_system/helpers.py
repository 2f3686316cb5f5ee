"""
Provides the utilities(functions) needed by the deployment supervisor:
    - run_command
    - port_is_open
"""

import logging
import socket
import subprocess
from pathlib import Path
from typing import List, Optional, Union

from cd_system.errors import CommandFailed

logger = logging.getLogger(__name__)


def run_command(command: List[str], cwd: Optional[Union[str, Path]] = None) -> str:
    """
    Execute a command and return its output
    :param command: argument list of the command to execute
    :param cwd: working directory for the command
    :return: decoded combined stdout/stderr of the command
    :raises CommandFailed: if the command cannot be started or exits with a non-zero status
    """

    logger.debug(f"Running {' '.join(command)} in {cwd or '.'}")
    try:
        result = subprocess.run(
            command,
            cwd=cwd,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except subprocess.CalledProcessError as e:
        raise CommandFailed(command, e.returncode, e.output.decode(errors="replace"))
    except OSError as e:
        raise CommandFailed(command, None, str(e))
    return result.stdout.decode(errors="replace")


def port_is_open(host: str, port: int, timeout: float = 0.5) -> bool:
    """
    Connect via TCP to the specified host and port.

    :param host: The target hostname or IP
    :param port: The target port
    :param timeout: Seconds to wait for the connection
    :return: True if something accepted the connection
    """

    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False
