"""
Picks a free local TCP port for the next backend instance.

A candidate is probed by binding a listening socket to it and releasing it
straight away. The probe does not reserve anything: another process may take
the port before the backend binds it, which then shows up as a failed spawn.
"""

import logging
import random
import socket
from typing import Iterable, Optional, Tuple

from cd_system import config
from cd_system.errors import PortExhausted

logger = logging.getLogger(__name__)


class PortAllocator:
    """Random probing over an inclusive port range with a bounded attempt budget"""

    def __init__(
        self,
        port_range: Tuple[int, int] = config.BACKEND_PORT_RANGE,
        attempts: int = config.PORT_PROBE_ATTEMPTS,
        host: str = config.PORT_PROBE_HOST,
        rng: Optional[random.Random] = None,
    ):
        low, high = port_range
        if low > high:
            raise ValueError(f"Invalid port range {low}-{high}")
        self.port_range = (low, high)
        self.attempts = attempts
        self.host = host
        self.rng = rng or random.Random()

    def probe(self, port: int) -> bool:
        """Return True if a listener could be bound to the port"""
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        try:
            with socket.socket(family, socket.SOCK_STREAM) as sock:
                sock.bind((self.host, port))
                sock.listen(1)
        except OSError:
            return False
        return True

    def allocate(self, exclude: Iterable[int] = ()) -> int:
        """
        Find an available port.

        :param exclude: ports that must not be returned, e.g. the live backend's
        :return: a port that was free at probe time
        :raises PortExhausted: if no candidate was free within the attempt budget
        """
        excluded = set(exclude)
        low, high = self.port_range
        for _ in range(self.attempts):
            port = self.rng.randint(low, high)
            if port in excluded:
                continue
            if self.probe(port):
                logger.debug(f"Allocated port {port}")
                return port
        raise PortExhausted(
            f"No available port in {low}-{high} after {self.attempts} attempts")
