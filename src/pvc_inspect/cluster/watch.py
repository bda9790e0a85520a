"""Decoding of ``kubectl get --watch --output-watch-events -o json`` streams."""

from __future__ import annotations

import json
import queue
from dataclasses import dataclass, field
from typing import IO, Any

# Sentinel pushed when the kubectl stdout reaches EOF.
END_OF_STREAM = object()


@dataclass
class WatchEvent:
    """A single watch event.

    Attributes:
        type: Event type ("ADDED", "MODIFIED", "DELETED", "ERROR").
        object: The object the event refers to (empty for synthetic events).
    """

    type: str
    object: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> WatchEvent:
        """Build an event from a decoded kubectl document.

        Documents without an event envelope are treated as modifications.
        """
        if "type" in data and "object" in data:
            return cls(type=str(data["type"]), object=data["object"] or {})
        return cls(type="MODIFIED", object=data)


def pump_events(stream: IO[str], events: queue.Queue[Any]) -> None:
    """Decode concatenated JSON documents from stream into a queue.

    kubectl prints one indented document per event, so a document can only
    be complete on a line that ends with a closing brace.

    Args:
        stream: kubectl stdout in text mode.
        events: Queue that receives decoded dicts, then END_OF_STREAM.
    """
    decoder = json.JSONDecoder()
    buffer = ""
    try:
        for line in stream:
            buffer += line
            if not line.rstrip().endswith("}"):
                continue
            try:
                document, _ = decoder.raw_decode(buffer.strip())
            except json.JSONDecodeError:
                continue
            buffer = ""
            if isinstance(document, dict):
                events.put(document)
    except (OSError, ValueError):
        # The pipe is closed underneath us when the watch is stopped.
        pass
    finally:
        events.put(END_OF_STREAM)
