#!/usr/bin/env python3
"""
Causal ordering demonstration

Starts three nodes in this process on free loopback ports and walks through:
1. Local events on one node
2. A message exchange that creates a happened-before edge
3. Two concurrent events that no message relates
"""

import argparse
import socket
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from causalsync.cluster.commands import format_clock  # noqa: E402
from causalsync.cluster.node import SyncNode  # noqa: E402
from causalsync.config.cluster import ClusterConfig, NodeConfig  # noqa: E402
from causalsync.time.vector_clock import compare_clocks  # noqa: E402
from causalsync.utils.logging_config import setup_logging  # noqa: E402


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _wait_for(node: SyncNode, receives: int, timeout: float = 2.0) -> None:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if node.stats().get("receives", 0) >= receives:
            return
        time.sleep(0.01)


def run_demo() -> None:
    cluster = ClusterConfig(nodes=[NodeConfig(id=f"p{i}", host="127.0.0.1", port=_free_port()) for i in range(3)])
    nodes = {n.id: SyncNode.from_cluster(cluster, n.id) for n in cluster.nodes}
    for node in nodes.values():
        node.start()

    try:
        p0, p1, p2 = nodes["p0"], nodes["p1"], nodes["p2"]

        print("=== LOCAL EVENTS ===")
        print(f"p0 event -> {format_clock(p0.on_local_event())}")
        print(f"p0 event -> {format_clock(p0.on_local_event())}")

        print("\n=== MESSAGE p0 -> p1 ===")
        sent = p0.send_to("p1")
        print(f"p0 sends {format_clock(sent)}")
        _wait_for(p1, 1)
        received = p1.snapshot()
        print(f"p1 after receive {format_clock(received)}")
        print(f"send {compare_clocks(sent, received)} receive")

        print("\n=== CONCURRENT EVENTS ===")
        a = p0.on_local_event()
        b = p2.on_local_event()
        print(f"p0 {format_clock(a)} vs p2 {format_clock(b)}: {compare_clocks(a, b)}")

        print("\n=== FINAL CLOCKS ===")
        for node_id, node in nodes.items():
            print(f"{node_id}: {format_clock(node.snapshot())}")
    finally:
        for node in nodes.values():
            node.request_shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description="Vector clock causal ordering demo")
    parser.add_argument("--log-level", default="WARNING", help="Log level for node internals")
    args = parser.parse_args()
    setup_logging(level=args.log_level, component="demo")
    run_demo()


if __name__ == "__main__":
    main()
