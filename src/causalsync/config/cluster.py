"""Static cluster configuration loader.

Parses a minimal YAML-like file with the following structure:

nodes:
  - id: "1"
    host: 127.0.0.1
    port: 8001
  - id: "2"
    host: 127.0.0.1
    port: 8002

The position of a node in the list is its clock index, so every process in
the group must load the same file.

Note: Implements a tiny, line-oriented parser to avoid external deps.
It supports only the exact subset used above.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from causalsync.errors import UnknownPeer

REQUIRED_FIELDS = ("id", "host", "port")


@dataclass(frozen=True)
class NodeConfig:
    id: str
    host: str
    port: int

    @property
    def address(self) -> Tuple[str, int]:
        return (self.host, self.port)


@dataclass
class ClusterConfig:
    nodes: List[NodeConfig]

    @property
    def size(self) -> int:
        return len(self.nodes)

    @property
    def ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def get(self, node_id: str) -> NodeConfig:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise UnknownPeer(f"unknown process id: {node_id!r}")

    def index_of(self, node_id: str) -> int:
        """Clock index of ``node_id``."""
        return self.nodes.index(self.get(node_id))

    def resolve_address(self, node_id: str) -> Tuple[str, int]:
        return self.get(node_id).address

    def peers_of(self, node_id: str) -> List[NodeConfig]:
        self.get(node_id)
        return [n for n in self.nodes if n.id != node_id]


def _parse_minimal_yaml(text: str) -> Dict[str, Any]:
    lines = [ln.rstrip() for ln in text.splitlines() if ln.strip() and not ln.strip().startswith("#")]
    result: Dict[str, Any] = {}
    i = 0
    while i < len(lines):
        line = lines[i]
        if line.startswith("nodes:"):
            i += 1
            nodes: List[Dict[str, Any]] = []
            # Expect a sequence of "- id: ..." blocks with indented key: value lines
            while i < len(lines) and lines[i].lstrip().startswith("-"):
                entry: Dict[str, Any] = {}
                first = lines[i].lstrip()[1:].strip()  # drop leading '-'
                if first and ":" in first:
                    k, v = [p.strip() for p in first.split(":", 1)]
                    entry[k] = _coerce(v)
                i += 1
                while i < len(lines) and not lines[i].lstrip().startswith("-") and lines[i].startswith((" ", "\t")):
                    kv = lines[i].strip()
                    if ":" in kv:
                        k, v = [p.strip() for p in kv.split(":", 1)]
                        entry[k] = _coerce(v)
                    i += 1
                nodes.append(entry)
            result["nodes"] = nodes
            continue
        if ":" in line and not line.startswith((" ", "\t")):
            k, v = [p.strip() for p in line.split(":", 1)]
            result[k] = _coerce(v)
        i += 1
    return result


def _coerce(val: str):
    # quoted values stay strings so ids like "1" are not turned into ints
    if len(val) >= 2 and val[0] == val[-1] and val[0] in ("'", '"'):
        return val[1:-1]
    try:
        return int(val)
    except ValueError:
        return val


def parse_cluster_config(text: str) -> ClusterConfig:
    data = _parse_minimal_yaml(text)
    raw_nodes = data.get("nodes") or []
    if not raw_nodes:
        raise ValueError("No nodes defined in cluster config")

    nodes: List[NodeConfig] = []
    seen = set()
    for pos, raw in enumerate(raw_nodes):
        for field in REQUIRED_FIELDS:
            if field not in raw or raw[field] in ("", None):
                raise ValueError(f"Node #{pos} is missing required field '{field}'")
        node_id = str(raw["id"])
        if node_id in seen:
            raise ValueError(f"Duplicate node id '{node_id}' in cluster config")
        seen.add(node_id)
        try:
            port = int(raw["port"])
        except (TypeError, ValueError):
            raise ValueError(f"Node '{node_id}' has a non-integer port: {raw['port']!r}") from None
        if not 0 < port <= 65535:
            raise ValueError(f"Node '{node_id}' port out of range: {port}")
        nodes.append(NodeConfig(id=node_id, host=str(raw["host"]), port=port))
    return ClusterConfig(nodes=nodes)


def load_cluster_config(path: str) -> ClusterConfig:
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    return parse_cluster_config(text)
