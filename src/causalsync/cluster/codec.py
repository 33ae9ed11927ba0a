"""JSON wire codec for clock-stamped peer messages.

A message occupies one connection and is a single JSON object followed by a
newline:

    {"sender_id": "1", "clock": [4, 5, 0]}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Tuple

from causalsync.errors import MalformedMessage
from causalsync.time.vector_clock import validate_clock


@dataclass(frozen=True)
class PeerMessage:
    """Sender identity plus the clock snapshot taken at send time."""
    sender: str
    clock: Tuple[int, ...]

    def to_dict(self) -> dict:
        return {"sender_id": self.sender, "clock": list(self.clock)}


class JsonCodec:
    """Encode/decode PeerMessage to newline-terminated UTF-8 JSON."""

    @staticmethod
    def encode(msg: PeerMessage) -> bytes:
        return (json.dumps(msg.to_dict(), separators=(",", ":")) + "\n").encode("utf-8")

    @staticmethod
    def decode(data: bytes, size: int) -> PeerMessage:
        """Parse ``data`` into a PeerMessage whose clock has ``size`` entries.

        Raises MalformedMessage when the payload is not a JSON object with a
        string sender, and MalformedClock when the clock has the wrong shape.
        Sender membership is not checked here.
        """
        try:
            obj = json.loads(data.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise MalformedMessage(f"payload is not UTF-8: {e}") from e
        except json.JSONDecodeError as e:
            raise MalformedMessage(f"payload is not JSON: {e.msg}") from e
        except (ValueError, RecursionError) as e:
            # oversized integer literals and pathological nesting
            raise MalformedMessage(f"payload is not parseable: {e}") from e

        if not isinstance(obj, dict):
            raise MalformedMessage(f"payload must be an object, got {type(obj).__name__}")

        sender = obj.get("sender_id")
        if not isinstance(sender, str) or not sender:
            raise MalformedMessage("sender_id must be a non-empty string")
        if "clock" not in obj:
            raise MalformedMessage("payload has no clock")

        return PeerMessage(sender=sender, clock=validate_clock(obj["clock"], size))
