"""Synchronization core: the single owner of a process's live vector clock.

Responsibilities:
- Serialize local events, sends and inbound merges on one lock
- Run the inbound listener and hand decoded clocks to the merge rule
- Cooperative shutdown: stop accepting, drain in-flight connections
"""

from __future__ import annotations

import threading
from collections import Counter
from enum import Enum
from typing import Callable, Dict, Optional, Sequence, Tuple

import structlog

from causalsync.cluster.codec import JsonCodec, PeerMessage
from causalsync.cluster.link import DEFAULT_MAX_PAYLOAD, Address, PeerListener, send_payload
from causalsync.config.cluster import ClusterConfig
from causalsync.errors import MalformedMessage, NodeNotRunning, PeerError, UnknownPeer
from causalsync.time.vector_clock import VectorClock

logger = structlog.get_logger(__name__)
audit = structlog.get_logger("causalsync.audit")

# (kind, clock after the event, peer id or address or None)
EventHook = Callable[[str, Tuple[int, ...], Optional[str]], None]


class NodeState(Enum):
    CREATED = "created"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


def audit_event(kind: str, clock: Tuple[int, ...], peer: Optional[str]) -> None:
    """Default event hook: one audit record per causal event."""
    audit.info(kind, clock=list(clock), peer=peer)


class SyncNode:
    """One participant in a fixed-size vector-clock group.

    The clock is only ever touched under ``self._lock``; callers get tuple
    snapshots. Network I/O never happens while the lock is held.
    """

    def __init__(
        self,
        node_id: str,
        clock_index: int,
        listen_port: int,
        size: int,
        host: str = "127.0.0.1",
        resolve_address: Optional[Callable[[str], Address]] = None,
        event_hook: Optional[EventHook] = audit_event,
        connect_timeout: Optional[float] = 5.0,
        max_payload: int = DEFAULT_MAX_PAYLOAD,
        initial_clock: Optional[Sequence[int]] = None,
    ):
        self.node_id = node_id
        self.host = host
        self.port = listen_port
        self.size = size
        self.connect_timeout = connect_timeout
        self._resolve_address = resolve_address
        self._event_hook = event_hook
        self._clock = VectorClock(size, clock_index, initial_clock)
        self._lock = threading.Lock()
        self._metrics: Counter = Counter()

        self._state = NodeState.CREATED
        self._state_lock = threading.Lock()
        self._stopped = threading.Event()
        self._listener = PeerListener(host, listen_port, self._handle_inbound, max_payload=max_payload)
        self._logger = logger.bind(node_id=node_id, clock_index=clock_index)

    @classmethod
    def from_cluster(cls, cluster: ClusterConfig, node_id: str, host: Optional[str] = None, **kwargs) -> "SyncNode":
        """Build the node for ``node_id`` with index, port and size from ``cluster``."""
        me = cluster.get(node_id)
        return cls(
            node_id=node_id,
            clock_index=cluster.index_of(node_id),
            listen_port=me.port,
            size=cluster.size,
            host=host if host is not None else me.host,
            resolve_address=cluster.resolve_address,
            **kwargs,
        )

    # -- lifecycle --------------------------------------------------------

    @property
    def state(self) -> NodeState:
        return self._state

    @property
    def clock_index(self) -> int:
        return self._clock.index

    @property
    def bound_port(self) -> Optional[int]:
        return self._listener.bound_port

    def start(self) -> None:
        """Bind the listener and begin accepting. BindFailure propagates."""
        with self._state_lock:
            if self._state is not NodeState.CREATED:
                raise NodeNotRunning(f"node {self.node_id} cannot start from state {self._state.value}")
            self._listener.start()
            self._state = NodeState.RUNNING
        self._logger.info(
            "node_started",
            listen=f"{self.host}:{self.bound_port}",
            size=self.size,
            clock=list(self.snapshot()),
        )

    def request_shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting, let in-flight merges finish, then mark STOPPED.

        Blocks until STOPPED (or ``timeout``). Safe to call more than once
        and from more than one thread.
        """
        with self._state_lock:
            if self._state is NodeState.STOPPED:
                return
            if self._state is NodeState.CREATED:
                self._state = NodeState.STOPPED
                self._stopped.set()
                return
            initiator = self._state is NodeState.RUNNING
            self._state = NodeState.SHUTTING_DOWN

        if not initiator:
            self._stopped.wait(timeout)
            return

        self._logger.info("node_shutting_down", in_flight=self._listener.in_flight())
        self._listener.stop(timeout)
        with self._state_lock:
            self._state = NodeState.STOPPED
            self._stopped.set()
        self._logger.info("node_stopped", clock=list(self.snapshot()))

    def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)

    def __enter__(self) -> "SyncNode":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.request_shutdown()

    def __copy__(self):
        raise TypeError("SyncNode owns a bound listener and cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("SyncNode owns a bound listener and cannot be copied")

    # -- operations -------------------------------------------------------

    def snapshot(self) -> Tuple[int, ...]:
        with self._lock:
            return self._clock.snapshot()

    def on_local_event(self) -> Tuple[int, ...]:
        self._require_running()
        with self._lock:
            clock = self._clock.local_event()
            self._metrics["local_events"] += 1
            self._notify("local", clock, None)
        return clock

    def on_send_request(self, address: Address, peer: Optional[str] = None) -> Tuple[int, ...]:
        """Count the send as a local event, then deliver the snapshot.

        The increment stays even if delivery fails: the attempt is the
        causal event. PeerUnreachable / DeliveryFailed propagate.
        """
        self._require_running()
        label = peer or f"{address[0]}:{address[1]}"
        with self._lock:
            clock = self._clock.local_event()
            self._metrics["sends"] += 1
            self._notify("send", clock, label)

        payload = JsonCodec.encode(PeerMessage(sender=self.node_id, clock=clock))
        try:
            send_payload(address, payload, timeout=self.connect_timeout)
        except PeerError as e:
            with self._lock:
                self._metrics["send_failures"] += 1
            self._logger.warning("send_failed", peer=label, error=type(e).__name__, detail=e.reason)
            raise
        return clock

    def send_to(self, peer_id: str) -> Tuple[int, ...]:
        """Resolve ``peer_id`` to an address and send to it."""
        if self._resolve_address is None:
            raise UnknownPeer(f"no address resolver configured; cannot reach {peer_id!r}")
        address = self._resolve_address(peer_id)
        return self.on_send_request(address, peer=peer_id)

    def on_inbound_payload(self, payload: bytes, remote: Optional[Address] = None) -> Tuple[int, ...]:
        """Decode and merge one inbound message.

        Malformed payloads are counted and re-raised without touching the
        clock. Sender membership is not checked; any correctly shaped clock
        is merged.
        """
        if self._state not in (NodeState.RUNNING, NodeState.SHUTTING_DOWN):
            raise NodeNotRunning(f"node {self.node_id} is {self._state.value}")
        try:
            msg = JsonCodec.decode(payload, self.size)
        except MalformedMessage:
            with self._lock:
                self._metrics["malformed"] += 1
            raise

        with self._lock:
            clock = self._clock.merge_received(msg.clock)
            self._metrics["receives"] += 1
            self._notify("receive", clock, msg.sender)
        self._logger.debug(
            "message_merged",
            sender=msg.sender,
            remote=f"{remote[0]}:{remote[1]}" if remote else None,
            received=list(msg.clock),
            clock=list(clock),
        )
        return clock

    def stats(self) -> Dict[str, object]:
        with self._lock:
            data: Dict[str, object] = dict(self._metrics)
            data["clock"] = list(self._clock.snapshot())
        data["state"] = self._state.value
        return data

    # -- internals --------------------------------------------------------

    def _handle_inbound(self, remote: Address, payload: bytes) -> None:
        self.on_inbound_payload(payload, remote=remote)

    def _require_running(self) -> None:
        if self._state is not NodeState.RUNNING:
            raise NodeNotRunning(f"node {self.node_id} is {self._state.value}")

    def _notify(self, kind: str, clock: Tuple[int, ...], peer: Optional[str]) -> None:
        # called with self._lock held so audit records follow clock order
        if self._event_hook is None:
            return
        try:
            self._event_hook(kind, clock, peer)
        except Exception:
            self._logger.exception("event_hook_failed", kind=kind)
