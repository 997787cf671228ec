"""Per-line text extraction from CLI output."""
from __future__ import annotations

import json
from typing import Any

from agent_relay.providers.registry import ProviderKind, behavior_for


def extract_text_from_line(kind: ProviderKind, line: str) -> str:
    """Return the text to surface for one output line ("" means skip it)."""
    if behavior_for(kind).structured_output:
        return _extract_stream_json(line)
    if not line.strip():
        return ""
    return f"{line}\n"


def _extract_stream_json(line: str) -> str:
    try:
        event = json.loads(line)
    except ValueError:
        # Claude occasionally prints plain diagnostics on the JSON channel.
        return f"{line}\n" if line.strip() else ""
    if not isinstance(event, dict):
        return ""

    # {"type":"content_block_delta","delta":{"type":"text_delta","text":"..."}}
    delta = event.get("delta")
    if isinstance(delta, dict):
        text = delta.get("text")
        if isinstance(text, str):
            return text

    # {"content":[...]} or {"message":{"content":[...]}}
    content: Any = event.get("content")
    if content is None:
        message = event.get("message")
        if isinstance(message, dict):
            content = message.get("content")
    if isinstance(content, list):
        return "".join(_text_items(content))
    return ""


def _text_items(items: list) -> list[str]:
    out: list[str] = []
    for item in items:
        if not isinstance(item, dict) or item.get("type") != "text":
            continue
        text = item.get("text")
        if isinstance(text, str):
            out.append(text)
    return out
