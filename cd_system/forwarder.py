"""
Traffic forwarder for the deployment supervisor

The forwarder owns the public port. For every accepted connection it opens a
connection to the backend port and copies raw bytes both ways until both
directions are finished, so any protocol on top (HTTP, WebSocket, ...) passes
through untouched.

Stopping a forwarder first closes the listener, which frees the public port
for the next forwarder. Connections that are already established keep being
relayed until they end or until the drain deadline force-closes them.
"""

import logging
import socket
import socketserver
import threading
import time
from typing import Dict, List, Optional

from cd_system import config
from cd_system.errors import ForwarderBindFailure

logger = logging.getLogger(__name__)

BUF_SIZE = 64 * 1024
# Accept loop wakeup period; bounds how long stop_accepting() blocks
ACCEPT_POLL_INTERVAL = 0.1


def _shutdown(sock: socket.socket, how: int) -> None:
    try:
        sock.shutdown(how)
    except OSError:
        pass


def pipe(source: socket.socket, destination: socket.socket) -> None:
    """Copy bytes from source to destination until end of stream"""
    try:
        while True:
            data = source.recv(BUF_SIZE)
            if not data:
                break
            destination.sendall(data)
    except OSError:
        # An error on either side tears down both halves
        _shutdown(source, socket.SHUT_RDWR)
        _shutdown(destination, socket.SHUT_RDWR)
        return
    # Propagate end of stream, the other direction keeps flowing
    _shutdown(destination, socket.SHUT_WR)


class ForwardingHandler(socketserver.BaseRequestHandler):
    """Relays one inbound connection to the backend"""

    def handle(self):
        target = (self.server.target_host, self.server.target_port)
        try:
            upstream = socket.create_connection(target, timeout=self.server.connect_timeout)
        except OSError as e:
            logger.warning(f"Failed to connect to backend {target[0]}:{target[1]}: {e}")
            return

        upstream.settimeout(None)
        self.server.attach(self.request, upstream)
        try:
            backward = threading.Thread(
                target=pipe, args=(upstream, self.request), daemon=True)
            backward.start()
            pipe(self.request, upstream)
            backward.join()
        finally:
            upstream.close()


class ForwardingServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True
    # server_close() must release the port without joining relay threads
    block_on_close = False

    def __init__(self, server_address, target_host: str, target_port: int, connect_timeout: float):
        if ":" in server_address[0]:
            self.address_family = socket.AF_INET6
        self.target_host = target_host
        self.target_port = target_port
        self.connect_timeout = connect_timeout
        # inbound socket -> every socket belonging to that connection
        self._connections: Dict[socket.socket, List[socket.socket]] = {}
        self._idle = threading.Condition()
        super().__init__(server_address, ForwardingHandler)

    def server_bind(self):
        if self.address_family == socket.AF_INET6:
            # "::" also takes IPv4 clients, as IPv4-mapped addresses
            try:
                self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            except (AttributeError, OSError) as e:
                logger.warning(f"Could not enable dual-stack listening: {e}")
        super().server_bind()

    def process_request(self, request, client_address):
        with self._idle:
            self._connections[request] = [request]
        super().process_request(request, client_address)

    def shutdown_request(self, request):
        with self._idle:
            self._connections.pop(request, None)
            if not self._connections:
                self._idle.notify_all()
        super().shutdown_request(request)

    def attach(self, request, sock: socket.socket) -> None:
        with self._idle:
            if request in self._connections:
                self._connections[request].append(sock)

    @property
    def connection_count(self) -> int:
        with self._idle:
            return len(self._connections)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: not self._connections, timeout)

    def close_connections(self) -> int:
        """Force-close every connection still being relayed"""
        with self._idle:
            sockets = [s for group in self._connections.values() for s in group]
            count = len(self._connections)
        for sock in sockets:
            _shutdown(sock, socket.SHUT_RDWR)
        return count


class Forwarder:
    """Handle on one forwarder: public port -> backend target port"""

    def __init__(
        self,
        public_port: int,
        target_port: int,
        host: str = config.FORWARD_HOST,
        target_host: str = config.BACKEND_HOST,
        connect_timeout: float = config.CONNECT_TIMEOUT,
    ):
        self.host = host
        self.requested_port = public_port
        self.target_host = target_host
        self.target_port = target_port
        self.connect_timeout = connect_timeout
        self.server: Optional[ForwardingServer] = None
        self._thread: Optional[threading.Thread] = None
        self.accepting = False

    @property
    def public_port(self) -> int:
        if self.server is not None:
            return self.server.server_address[1]
        return self.requested_port

    @property
    def active_connections(self) -> int:
        return self.server.connection_count if self.server is not None else 0

    def start(self, attempts: int = 1, retry_delay: float = config.FORWARDER_BIND_RETRY_DELAY) -> "Forwarder":
        """Bind the public port and start accepting; raises ForwarderBindFailure"""
        if self.server is not None:
            raise RuntimeError("Forwarder already started")

        last_error = None
        for attempt in range(1, max(attempts, 1) + 1):
            try:
                self.server = ForwardingServer(
                    (self.host, self.requested_port),
                    self.target_host, self.target_port, self.connect_timeout)
                break
            except OSError as e:
                last_error = e
                logger.warning(
                    f"Bind to {self.host}:{self.requested_port} failed (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    time.sleep(retry_delay)
        else:
            raise ForwarderBindFailure(
                f"Failed to bind forward port {self.requested_port}: {last_error}")

        self._thread = threading.Thread(
            target=self.server.serve_forever,
            kwargs={"poll_interval": ACCEPT_POLL_INTERVAL},
            name=f"forwarder-{self.public_port}",
            daemon=True,
        )
        self._thread.start()
        self.accepting = True
        logger.info(f"Forwarding port {self.public_port} to {self.target_host}:{self.target_port}")
        return self

    def stop_accepting(self) -> None:
        """Stop the accept loop and release the public port; in-flight connections continue"""
        if not self.accepting:
            return
        self.accepting = False
        self.server.shutdown()
        self.server.server_close()
        self._thread.join()
        logger.info(f"Forwarder {self.public_port} -> {self.target_port} stopped accepting")

    def drain(self, grace: Optional[float] = None) -> bool:
        """
        Wait for in-flight connections to finish.

        :param grace: seconds to wait, None waits forever
        :return: True if every connection finished on its own
        """
        if self.server is None:
            return True
        if self.server.wait_idle(grace):
            return True
        closed = self.server.close_connections()
        logger.warning(f"Force-closed {closed} connection(s) to port {self.target_port} after {grace}s drain")
        return False

    def stop(self, grace: Optional[float] = None) -> bool:
        self.stop_accepting()
        return self.drain(grace)
