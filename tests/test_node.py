"""Tests for the synchronization core"""

import copy
import random
import socket
import threading
import time

import pytest

from causalsync.cluster.codec import JsonCodec, PeerMessage
from causalsync.cluster.link import PeerListener, send_payload
from causalsync.cluster.node import NodeState, SyncNode
from causalsync.config.cluster import ClusterConfig, NodeConfig
from causalsync.errors import (
    BindFailure,
    MalformedClock,
    MalformedMessage,
    NodeNotRunning,
    PeerUnreachable,
    UnknownPeer,
)


def _get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _payload(sender, clock) -> bytes:
    return JsonCodec.encode(PeerMessage(sender=sender, clock=tuple(clock)))


@pytest.fixture
def node():
    n = SyncNode("P", 0, 0, size=3, event_hook=None)
    n.start()
    yield n
    n.request_shutdown(timeout=2.0)


@pytest.fixture
def receiver():
    """Bare listener standing in for a remote peer; records decoded messages."""
    received = []

    def handler(addr, payload):
        received.append(JsonCodec.decode(payload, 3))

    srv = PeerListener("127.0.0.1", 0, handler)
    srv.start()
    srv.received = received
    yield srv
    srv.stop(timeout=2.0)


class TestLifecycle:
    """Test node state transitions"""

    def test_start_and_stop(self):
        n = SyncNode("P", 0, 0, size=3)
        assert n.state is NodeState.CREATED
        n.start()
        assert n.state is NodeState.RUNNING
        assert n.bound_port
        n.request_shutdown()
        assert n.state is NodeState.STOPPED
        assert n.wait_stopped(0)

    def test_shutdown_is_idempotent(self, node):
        node.request_shutdown()
        node.request_shutdown()
        assert node.state is NodeState.STOPPED

    def test_shutdown_without_start(self):
        n = SyncNode("P", 0, 0, size=3)
        n.request_shutdown()
        assert n.state is NodeState.STOPPED

    def test_shutdown_is_prompt_when_idle(self, node):
        started = time.time()
        node.request_shutdown()
        assert time.time() - started < 2.0
        assert node.state is NodeState.STOPPED

    def test_bind_failure_keeps_node_out_of_running(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
            holder.bind(("127.0.0.1", 0))
            holder.listen(1)
            n = SyncNode("P", 0, holder.getsockname()[1], size=3)
            with pytest.raises(BindFailure):
                n.start()
            assert n.state is NodeState.CREATED
            with pytest.raises(NodeNotRunning):
                n.on_local_event()

    def test_cannot_start_twice(self, node):
        with pytest.raises(NodeNotRunning):
            node.start()

    def test_local_commands_rejected_after_shutdown(self, node):
        node.on_local_event()
        node.request_shutdown()
        with pytest.raises(NodeNotRunning):
            node.on_local_event()
        with pytest.raises(NodeNotRunning):
            node.on_send_request(("127.0.0.1", 1))
        assert node.snapshot() == (1, 0, 0)

    def test_not_copyable(self, node):
        with pytest.raises(TypeError):
            copy.copy(node)
        with pytest.raises(TypeError):
            copy.deepcopy(node)

    def test_context_manager(self):
        with SyncNode("P", 0, 0, size=3, event_hook=None) as n:
            assert n.state is NodeState.RUNNING
        assert n.state is NodeState.STOPPED

    def test_independent_nodes(self):
        a = SyncNode("A", 0, 0, size=2, event_hook=None)
        b = SyncNode("B", 1, 0, size=2, event_hook=None)
        with a, b:
            a.on_local_event()
            assert a.snapshot() == (1, 0)
            assert b.snapshot() == (0, 0)
            assert a.bound_port != b.bound_port


class TestClockOperations:
    """Test local events, sends and inbound merges"""

    def test_scenario(self, receiver):
        """P at [1,0,0]: event, receive [0,5,0] from Q, send to R"""
        p = SyncNode("P", 0, 0, size=3, initial_clock=[1, 0, 0], event_hook=None)
        with p:
            assert p.on_local_event() == (2, 0, 0)
            assert p.on_inbound_payload(_payload("Q", [0, 5, 0])) == (3, 5, 0)
            sent = p.on_send_request(("127.0.0.1", receiver.bound_port))
            assert sent == (4, 5, 0)
            assert p.snapshot() == (4, 5, 0)
            assert _wait_until(lambda: len(receiver.received) == 1)
            assert receiver.received[0] == PeerMessage(sender="P", clock=(4, 5, 0))

    def test_inbound_from_unknown_sender_is_merged(self, node):
        assert node.on_inbound_payload(_payload("server9", [0, 3, 7])) == (1, 3, 7)

    def test_malformed_inbound_is_discarded(self, node):
        node.on_local_event()
        with pytest.raises(MalformedClock):
            node.on_inbound_payload(b'{"sender_id": "Q", "clock": [9, 9]}')
        with pytest.raises(MalformedMessage):
            node.on_inbound_payload(b"garbage")
        assert node.snapshot() == (1, 0, 0)
        assert node.stats()["malformed"] == 2

    def test_send_failure_keeps_increment(self, node):
        dead = ("127.0.0.1", _get_free_port())
        with pytest.raises(PeerUnreachable):
            node.on_send_request(dead)
        assert node.snapshot() == (1, 0, 0)
        stats = node.stats()
        assert stats["sends"] == 1
        assert stats["send_failures"] == 1

    def test_send_to_resolves_peer(self, receiver):
        cluster = ClusterConfig(nodes=[
            NodeConfig(id="1", host="127.0.0.1", port=_get_free_port()),
            NodeConfig(id="2", host="127.0.0.1", port=receiver.bound_port),
            NodeConfig(id="3", host="127.0.0.1", port=_get_free_port()),
        ])
        n = SyncNode.from_cluster(cluster, "1", event_hook=None)
        assert n.clock_index == 0
        with n:
            assert n.send_to("2") == (1, 0, 0)
            assert _wait_until(lambda: len(receiver.received) == 1)
            with pytest.raises(UnknownPeer):
                n.send_to("9")
            assert n.snapshot() == (1, 0, 0)

    def test_send_to_without_resolver(self, node):
        with pytest.raises(UnknownPeer):
            node.send_to("Q")

    def test_messages_over_the_network(self):
        """Two real nodes exchange messages through their listeners"""
        a = SyncNode("A", 0, 0, size=2, event_hook=None)
        b = SyncNode("B", 1, 0, size=2, event_hook=None)
        with a, b:
            b.on_local_event()  # (0, 1)
            a.on_local_event()  # (1, 0)
            a.on_send_request(("127.0.0.1", b.bound_port))  # (2, 0)
            assert _wait_until(lambda: b.snapshot() == (2, 2))
            b.on_send_request(("127.0.0.1", a.bound_port))  # (2, 3)
            assert _wait_until(lambda: a.snapshot() == (3, 3))

    def test_accepts_many_messages(self, node):
        for i in range(20):
            send_payload(("127.0.0.1", node.bound_port), _payload("Q", [0, i, 0]))
        assert _wait_until(lambda: node.stats().get("receives", 0) == 20)
        assert node.snapshot() == (20, 19, 0)

    def test_malformed_network_message_does_not_stop_node(self, node):
        send_payload(("127.0.0.1", node.bound_port), b'{"sender_id": "Q", "clock": [1, 2]}')
        send_payload(("127.0.0.1", node.bound_port), _payload("Q", [0, 2, 0]))
        assert _wait_until(lambda: node.snapshot() == (1, 2, 0))
        assert node.stats()["malformed"] == 1


class TestEventHook:
    """Test the notification hook"""

    def test_hook_sees_every_event(self, receiver):
        events = []
        n = SyncNode("P", 0, 0, size=3, event_hook=lambda kind, clock, peer: events.append((kind, clock, peer)))
        with n:
            n.on_local_event()
            n.on_inbound_payload(_payload("Q", [0, 1, 0]))
            n.on_send_request(("127.0.0.1", receiver.bound_port), peer="R")
        assert events == [
            ("local", (1, 0, 0), None),
            ("receive", (2, 1, 0), "Q"),
            ("send", (3, 1, 0), "R"),
        ]

    def test_failing_hook_does_not_affect_clock(self):
        def broken(kind, clock, peer):
            raise RuntimeError("hook down")

        with SyncNode("P", 0, 0, size=3, event_hook=broken) as n:
            assert n.on_local_event() == (1, 0, 0)
            assert n.snapshot() == (1, 0, 0)

    def test_default_hook(self):
        with SyncNode("P", 0, 0, size=3) as n:
            assert n.on_local_event() == (1, 0, 0)


class TestConcurrency:
    """Test concurrent local events and inbound merges"""

    def test_concurrent_events_and_merges(self, node):
        rng = random.Random(7)
        remotes = [[0, rng.randint(0, 100), rng.randint(0, 100)] for _ in range(60)]
        local_per_worker = 50
        errors = []

        def local_worker():
            try:
                for _ in range(local_per_worker):
                    node.on_local_event()
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        def merge_worker(chunk):
            try:
                for remote in chunk:
                    node.on_inbound_payload(_payload("Q", remote))
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        threads = [threading.Thread(target=local_worker) for _ in range(3)]
        threads += [threading.Thread(target=merge_worker, args=(remotes[i::3],)) for i in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        final = node.snapshot()
        assert final[0] == 3 * local_per_worker + len(remotes)
        assert final[1] == max(r[1] for r in remotes)
        assert final[2] == max(r[2] for r in remotes)

    def test_snapshots_never_go_backwards(self, node):
        stop = threading.Event()
        seen = []

        def reader():
            while not stop.is_set():
                seen.append(node.snapshot())

        t = threading.Thread(target=reader)
        t.start()
        for i in range(200):
            if i % 2:
                node.on_local_event()
            else:
                node.on_inbound_payload(_payload("Q", [0, i, i // 2]))
        stop.set()
        t.join()

        for earlier, later in zip(seen, seen[1:]):
            assert all(b >= a for a, b in zip(earlier, later))

    def test_shutdown_drains_in_flight_message(self, node):
        conn = socket.create_connection(("127.0.0.1", node.bound_port))
        assert _wait_until(lambda: node._listener.in_flight() == 1)

        stopper = threading.Thread(target=node.request_shutdown)
        stopper.start()
        assert _wait_until(lambda: node.state is NodeState.SHUTTING_DOWN)
        assert not node.wait_stopped(0.2)

        conn.sendall(_payload("Q", [0, 4, 0]))
        conn.close()
        stopper.join(2.0)
        assert not stopper.is_alive()
        assert node.state is NodeState.STOPPED
        assert node.snapshot() == (1, 4, 0)

    def test_concurrent_shutdown_callers(self, node):
        threads = [threading.Thread(target=node.request_shutdown) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(2.0)
        assert node.state is NodeState.STOPPED
