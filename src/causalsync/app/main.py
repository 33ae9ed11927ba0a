"""Process entry point: one causalsync node driven by commands on stdin.

Usage examples:
  - causalsync-node --id 1
  - causalsync-node --id 2 --config config/cluster.yaml --log-path .data/2.log
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from pydantic import ValidationError

from causalsync.cluster.commands import CommandLoop, HELP_TEXT, format_clock
from causalsync.cluster.node import SyncNode
from causalsync.config.cluster import load_cluster_config
from causalsync.config.settings import get_settings
from causalsync.errors import BindFailure, UnknownPeer
from causalsync.utils.logging_config import setup_logging

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a single causalsync node")
    parser.add_argument("--id", required=True, help="Process id (must exist in the cluster config)")
    parser.add_argument("--config", default=None, help="Path to cluster config YAML (default: config/cluster.yaml)")
    parser.add_argument("--host", default=None, help="Listen host (default: the node's host from the config)")
    parser.add_argument(
        "--log-level",
        default=None,
        type=str.upper,
        choices=LOG_LEVELS,
        help="Log level (default: INFO)",
    )
    parser.add_argument("--log-path", default=None, help="Write logs and the clock audit trail to this file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = get_settings(CLUSTER_CONFIG=args.config, LOG_LEVEL=args.log_level, LOG_PATH=args.log_path)
    except ValidationError as e:
        print(f"invalid settings: {e}", file=sys.stderr)
        return 2
    logger = setup_logging(level=cfg.LOG_LEVEL, node_id=args.id, component="node", log_path=cfg.LOG_PATH)

    try:
        cluster = load_cluster_config(cfg.CLUSTER_CONFIG)
    except (OSError, ValueError) as e:
        print(f"cannot load cluster config {cfg.CLUSTER_CONFIG}: {e}", file=sys.stderr)
        return 2

    try:
        node = SyncNode.from_cluster(
            cluster,
            args.id,
            host=args.host or cfg.HOST,
            connect_timeout=cfg.CONNECT_TIMEOUT,
            max_payload=cfg.MAX_PAYLOAD_BYTES,
        )
    except UnknownPeer:
        print(f"process id '{args.id}' not found in {cfg.CLUSTER_CONFIG}", file=sys.stderr)
        return 2

    try:
        node.start()
    except BindFailure as e:
        logger.error("bind_failed", error=str(e))
        print(f"startup aborted: {e}", file=sys.stderr)
        return 1

    print(f"process {node.node_id} (index {node.clock_index}) listening on {node.host}:{node.bound_port}")
    print(f"peers: {', '.join(p.id for p in cluster.peers_of(node.node_id)) or '-'}")
    print(f"clock {format_clock(node.snapshot())}")
    print(HELP_TEXT)

    loop = CommandLoop(node)
    try:
        loop.run(sys.stdin)
    except KeyboardInterrupt:
        print(f"\nprocess {node.node_id} shutting down...")
        node.request_shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
