"""Text command loop driving a SyncNode.

Supported commands (one per line, keyword is case-insensitive):
- EVENT | TICK            -> local event
- SHOW | CLOCK            -> print the current clock
- SEND <peer>             -> send this process's clock to <peer>
- <from> <to>             -> same as SEND <to>, accepted only when <from> is this process
- STATS                   -> counters
- HELP
- END | QUIT | EXIT       -> shut the node down and leave the loop
"""

from __future__ import annotations

import json
import sys
from typing import Iterable, Optional, Sequence, TextIO

import structlog

from causalsync.cluster.node import SyncNode
from causalsync.errors import CausalSyncError, PeerError

logger = structlog.get_logger(__name__)

HELP_TEXT = (
    "commands: event | show | send <peer> | <from> <to> | stats | help | end"
)

_TERMINATE = {"end", "quit", "exit"}


def format_clock(clock: Sequence[int]) -> str:
    return "[" + ", ".join(str(c) for c in clock) + "]"


class CommandLoop:
    """Reads commands, applies them to the node and writes one reply per command."""

    def __init__(self, node: SyncNode, out: Optional[TextIO] = None):
        self.node = node
        self.out = out or sys.stdout
        self.done = False

    def handle(self, line: str) -> Optional[str]:
        """Apply one command and return its reply line (None for blank input)."""
        parts = line.split()
        if not parts:
            return None
        cmd = parts[0].lower()

        try:
            if cmd in _TERMINATE:
                self.node.request_shutdown()
                self.done = True
                return f"BYE {format_clock(self.node.snapshot())}"
            if cmd in ("event", "tick"):
                return f"OK event {format_clock(self.node.on_local_event())}"
            if cmd in ("show", "clock"):
                return f"CLOCK {format_clock(self.node.snapshot())}"
            if cmd == "stats":
                return "STATS " + json.dumps(self.node.stats(), sort_keys=True)
            if cmd == "help":
                return HELP_TEXT
            if cmd == "send":
                if len(parts) != 2:
                    return "ERR usage: send <peer>"
                return self._send(parts[1])
            if len(parts) == 2:
                sender, target = parts
                if sender != self.node.node_id:
                    return f"ERR ignored: {sender} is not this process ({self.node.node_id})"
                return self._send(target)
        except CausalSyncError as e:
            return f"ERR {type(e).__name__}: {e}"

        return f"ERR unknown command: {parts[0]}"

    def _send(self, peer: str) -> str:
        try:
            clock = self.node.send_to(peer)
        except PeerError as e:
            # a failed delivery still counted as an event; show where the clock is
            return f"ERR {type(e).__name__}: {e} (clock {format_clock(self.node.snapshot())})"
        except CausalSyncError as e:
            return f"ERR {type(e).__name__}: {e}"
        return f"OK sent {peer} {format_clock(clock)}"

    def run(self, lines: Iterable[str]) -> None:
        """Process ``lines`` until a terminate command or end of input."""
        for line in lines:
            reply = self.handle(line)
            if reply is not None:
                self.out.write(reply + "\n")
                self.out.flush()
            if self.done:
                return
        logger.info("command_input_closed", node_id=self.node.node_id)
        self.node.request_shutdown()
        self.done = True
