"""Server-Sent Events line handling shared by the HTTP providers."""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from agent_relay.domain.errors import StreamProtocolError

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class SseLineBuffer:
    """Accumulates raw bytes and hands back complete lines.

    Bytes are kept undecoded until a newline arrives, so a multi-byte UTF-8
    character split across network chunks still decodes correctly.
    """

    def __init__(self) -> None:
        self._pending = bytearray()

    def append(self, data: bytes) -> List[str]:
        self._pending.extend(data)
        lines: List[str] = []
        while True:
            idx = self._pending.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._pending[:idx])
            del self._pending[: idx + 1]
            lines.append(_decode(raw))
        return lines

    def finish(self) -> Optional[str]:
        """Return the unterminated remainder, if any, and reset."""
        if not self._pending:
            return None
        raw = bytes(self._pending)
        self._pending.clear()
        return _decode(raw)

    @property
    def remainder(self) -> bytes:
        return bytes(self._pending)


def parse_data_line(line: str) -> Optional[str]:
    """Payload of a ``data:`` line, or None for comments/other fields."""
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


def is_done_sentinel(payload: str) -> bool:
    return payload.strip() == DONE_SENTINEL


def decode_json_payload(payload: str) -> Dict[str, Any]:
    try:
        data = json.loads(payload)
    except ValueError as exc:
        raise StreamProtocolError(f"Malformed event payload from provider: {payload[:200]}") from exc
    if not isinstance(data, dict):
        raise StreamProtocolError(f"Unexpected event payload from provider: {payload[:200]}")
    return data


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r")
