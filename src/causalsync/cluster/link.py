"""TCP transport between peers: one message per connection.

Outbound: connect, write the full payload, close.
Inbound: a dedicated thread blocks in accept() until stopped; each accepted
connection is read to EOF on its own thread and handed to the handler.
"""

from __future__ import annotations

import socket
import threading
import time
from typing import Callable, Optional, Set, Tuple

import structlog

from causalsync.errors import (
    BindFailure,
    CausalSyncError,
    DeliveryFailed,
    MalformedMessage,
    PeerUnreachable,
)

logger = structlog.get_logger(__name__)

Address = Tuple[str, int]
PayloadHandler = Callable[[Address, bytes], object]

DEFAULT_MAX_PAYLOAD = 64 * 1024
_RECV_CHUNK = 4096
# pause after a failed accept so a persistent error (e.g. EMFILE) cannot spin
_ACCEPT_BACKOFF = 0.05


def send_payload(address: Address, payload: bytes, timeout: Optional[float] = 5.0) -> None:
    """Deliver ``payload`` to ``address`` over a fresh connection.

    Raises PeerUnreachable if the connection cannot be opened and
    DeliveryFailed if the write does not complete. Nothing is retried.
    """
    host, port = address
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as e:
        raise PeerUnreachable(address, str(e)) from e

    with sock:
        try:
            sock.sendall(payload)
            sock.shutdown(socket.SHUT_WR)
        except OSError as e:
            raise DeliveryFailed(address, str(e)) from e

    logger.debug("payload_sent", peer=f"{host}:{port}", size=len(payload))


class PeerListener:
    """Accepts inbound peer connections until stopped."""

    def __init__(
        self,
        host: str,
        port: int,
        handler: PayloadHandler,
        max_payload: int = DEFAULT_MAX_PAYLOAD,
        read_timeout: Optional[float] = None,
    ):
        self.host = host
        self.port = port
        self.handler = handler
        self.max_payload = max_payload
        self.read_timeout = read_timeout
        self.running = False
        self.server_socket: Optional[socket.socket] = None
        self.server_thread: Optional[threading.Thread] = None
        self._workers: Set[threading.Thread] = set()
        self._workers_lock = threading.Lock()

    @property
    def bound_port(self) -> Optional[int]:
        if self.server_socket is None:
            return None
        return self.server_socket.getsockname()[1]

    def bind(self) -> None:
        """Bind and listen. Raises BindFailure if the endpoint is unavailable."""
        if self.server_socket is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(16)
        except OSError as e:
            sock.close()
            raise BindFailure(f"cannot listen on {self.host}:{self.port}: {e}") from e
        self.server_socket = sock
        logger.info("listener_bound", host=self.host, port=self.bound_port)

    def start(self) -> None:
        """Bind if needed and start the accept thread."""
        if self.running:
            return
        self.bind()
        self.running = True
        self.server_thread = threading.Thread(
            target=self._accept_loop, name=f"accept-{self.bound_port}", daemon=True
        )
        self.server_thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop accepting, then wait for in-flight connections to finish."""
        was_running = self.running
        self.running = False
        if was_running:
            self._wake_acceptor()
        if self.server_thread:
            self.server_thread.join(timeout)
            self.server_thread = None
        if self.server_socket:
            self.server_socket.close()
            self.server_socket = None

        with self._workers_lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join(timeout)
        logger.info("listener_stopped", host=self.host, port=self.port)

    def in_flight(self) -> int:
        with self._workers_lock:
            return len(self._workers)

    def _wake_acceptor(self) -> None:
        # accept() is not interrupted by close() from another thread on every
        # platform, so poke it with a throwaway connection.
        port = self.bound_port
        if port is None:
            return
        host = "127.0.0.1" if self.host in ("", "0.0.0.0") else self.host
        try:
            with socket.create_connection((host, port), timeout=1.0):
                pass
        except OSError:
            pass
        try:
            self.server_socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            # not supported on listening sockets everywhere
            pass

    def _accept_loop(self) -> None:
        while self.running:
            try:
                conn, addr = self.server_socket.accept()
            except OSError as e:
                if not self.running:
                    break
                logger.warning("accept_failed", error=str(e))
                time.sleep(_ACCEPT_BACKOFF)
                continue

            # hand off even when stop() raced us: an accepted connection is
            # always read and merged, the wake-up connection is just empty
            worker = threading.Thread(
                target=self._handle_connection, args=(conn, addr), daemon=True
            )
            with self._workers_lock:
                self._workers.add(worker)
            worker.start()

    def _handle_connection(self, conn: socket.socket, addr: Address) -> None:
        try:
            with conn:
                payload = self._read_payload(conn)
            if not payload:
                logger.debug("empty_connection", remote=f"{addr[0]}:{addr[1]}")
                return
            self.handler(addr, payload)
        except CausalSyncError as e:
            logger.warning(
                "inbound_rejected",
                remote=f"{addr[0]}:{addr[1]}",
                error=type(e).__name__,
                detail=str(e),
            )
        except OSError as e:
            logger.warning("inbound_read_failed", remote=f"{addr[0]}:{addr[1]}", error=str(e))
        except Exception:
            logger.exception("inbound_handler_error", remote=f"{addr[0]}:{addr[1]}")
        finally:
            with self._workers_lock:
                self._workers.discard(threading.current_thread())

    def _read_payload(self, conn: socket.socket) -> bytes:
        conn.settimeout(self.read_timeout)
        chunks = []
        total = 0
        while True:
            chunk = conn.recv(_RECV_CHUNK)
            if not chunk:
                break
            total += len(chunk)
            if total > self.max_payload:
                raise MalformedMessage(f"payload exceeds {self.max_payload} bytes")
            chunks.append(chunk)
        return b"".join(chunks)
