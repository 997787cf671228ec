"""Direct Anthropic Messages API streaming.

Sends one user turn (attachment blocks followed by the full prompt text) to
``/v1/messages`` with ``stream: true`` and yields text deltas from the SSE
response. Uses ``httpx`` directly so the byte stream goes through the same
``SseLineBuffer`` as every other HTTP provider.

Configuration via environment variables (or explicit constructor args):
  ANTHROPIC_MODEL        – default: claude-sonnet-4-20250514
  ANTHROPIC_MAX_TOKENS   – default: 16384
  ANTHROPIC_TIMEOUT_SEC  – default: 300
"""
from __future__ import annotations

import logging
import os
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from agent_relay.domain.errors import AgentError, ProviderHttpError, StreamProtocolError
from agent_relay.domain.invocations import Attachment, InvocationRequest
from agent_relay.observability.structured_log import log_json
from agent_relay.providers.sse import decode_json_payload
from agent_relay.providers.transport import (
    build_httpx_client,
    describe_transport_error,
    get_text_with_retries,
    iter_sse_payloads,
)

logger = logging.getLogger(__name__)

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
_DEFAULT_MODEL = "claude-sonnet-4-20250514"
_DEFAULT_MAX_TOKENS = 16384
_DEFAULT_TIMEOUT_SEC = 300

# Inlined text attachments are cut at this many characters.
MAX_INLINE_TEXT_CHARS = 100_000

_IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
_TEXT_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/javascript",
    "application/typescript",
    "application/x-yaml",
    "application/toml",
}
_TEXT_EXTENSIONS = {
    "txt", "ts", "tsx", "js", "jsx", "py", "json", "md", "log", "csv",
    "yaml", "yml", "toml", "rs", "go", "java", "html", "css", "xml",
    "sql", "sh", "bash", "zsh", "env", "cfg", "ini", "conf", "diff",
    "patch", "c", "cpp", "h", "hpp", "rb", "php", "swift", "kt",
}


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    try:
        return max(1, int(raw)) if raw else default
    except ValueError:
        return default


def resolve_model(model: Optional[str] = None) -> str:
    return model or os.environ.get("ANTHROPIC_MODEL") or _DEFAULT_MODEL


class AnthropicApiStreamer:
    """Streams a response from the Anthropic Messages API.

    ``stream()`` raises an ``AgentError`` for request failures before
    yielding anything, and ``StreamProtocolError`` for a provider-reported
    ``error`` event or an unreadable payload mid-stream. Returning normally
    means the response is complete (``message_stop``, ``[DONE]`` or EOF).
    """

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout_sec: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._model = resolve_model(model)
        self._max_tokens = max_tokens or _env_int("ANTHROPIC_MAX_TOKENS", _DEFAULT_MAX_TOKENS)
        self._timeout_sec = timeout_sec or _env_int("ANTHROPIC_TIMEOUT_SEC", _DEFAULT_TIMEOUT_SEC)
        self._client = client

    @property
    def model(self) -> str:
        return self._model

    async def stream(self, request: InvocationRequest) -> AsyncIterator[str]:
        if not self._api_key:
            raise ProviderHttpError("No Anthropic API key configured. Add one in Settings.")
        client = self._client or build_httpx_client(read_timeout_sec=float(self._timeout_sec))
        owns_client = self._client is None
        try:
            content = await build_attachment_blocks(client, request.attachments)
            content.append({"type": "text", "text": request.full_prompt()})
            body = self.build_body(content, request.system_prompt)
            log_json(
                logger,
                "anthropic_api.request",
                model=self._model,
                content_blocks=len(content),
                prompt_len=len(request.prompt),
                context_len=len(request.conversation_context),
                system_len=len(request.system_prompt),
            )
            payloads = iter_sse_payloads(
                client,
                ANTHROPIC_API_URL,
                json_body=body,
                headers=self._headers(),
                on_status_error=_status_error,
                on_transport_error=lambda exc: describe_transport_error(
                    "Anthropic API", exc, "Check your internet connection."
                ),
            )
            async with aclosing(payloads):
                async for payload in payloads:
                    event = decode_json_payload(payload)
                    event_type = event.get("type")
                    if event_type == "content_block_delta":
                        text = _delta_text(event)
                        if text:
                            yield text
                    elif event_type == "message_stop":
                        break
                    elif event_type == "error":
                        raise StreamProtocolError(_error_message(event) or "Unknown API error")
        finally:
            if owns_client:
                await client.aclose()

    def build_body(self, content: List[Dict[str, Any]], system_prompt: str = "") -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "stream": True,
            "messages": [{"role": "user", "content": content}],
        }
        if system_prompt:
            body["system"] = system_prompt
        return body

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }


def stream_anthropic_api(
    request: InvocationRequest,
    api_key: str,
    model: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> AsyncIterator[str]:
    return AnthropicApiStreamer(api_key=api_key, model=model, client=client).stream(request)


async def build_attachment_blocks(
    client: httpx.AsyncClient,
    attachments: Sequence[Attachment],
) -> List[Dict[str, Any]]:
    """Images and PDFs are passed by URL; text files are fetched and inlined."""
    blocks: List[Dict[str, Any]] = []
    for att in attachments:
        if att.mime_type in _IMAGE_MIME_TYPES:
            blocks.append({"type": "image", "source": {"type": "url", "url": att.url}})
        elif att.mime_type == "application/pdf":
            blocks.append({"type": "document", "source": {"type": "url", "url": att.url}})
        elif is_text_attachment(att):
            blocks.append(await _inline_text_block(client, att))
        else:
            blocks.append({
                "type": "text",
                "text": (
                    f"[File: {att.filename} ({att.file_size} bytes, {att.mime_type}) "
                    "- binary file, cannot display contents]"
                ),
            })
    return blocks


def is_text_attachment(att: Attachment) -> bool:
    if att.mime_type.startswith("text/") or att.mime_type in _TEXT_MIME_TYPES:
        return True
    ext = att.filename.rsplit(".", 1)[-1].lower() if "." in att.filename else ""
    return ext in _TEXT_EXTENSIONS


async def _inline_text_block(client: httpx.AsyncClient, att: Attachment) -> Dict[str, Any]:
    try:
        text = await get_text_with_retries(client, att.url)
    except httpx.HTTPError as exc:
        log_json(logger, "anthropic_api.attachment_fetch_failed", filename=att.filename, kind=type(exc).__name__)
        return {
            "type": "text",
            "text": f"[File: {att.filename} ({att.file_size} bytes) - could not fetch content]",
        }
    if len(text) > MAX_INLINE_TEXT_CHARS:
        text = text[:MAX_INLINE_TEXT_CHARS] + "... (truncated)"
    return {"type": "text", "text": f"[File: {att.filename}]\n```\n{text}\n```"}


def _status_error(status: int, body: str) -> AgentError:
    if status == 401:
        return ProviderHttpError("Invalid Anthropic API key. Check your API key in Settings.", status)
    if status == 429:
        return ProviderHttpError("Anthropic API rate limit exceeded. Please wait and try again.", status)
    if status == 400:
        try:
            message = _error_message(decode_json_payload(body))
        except StreamProtocolError:
            message = ""
        if message:
            return ProviderHttpError(f"Anthropic API error: {message}", status)
    return ProviderHttpError(f"Anthropic API returned {status}: {body[:500]}", status)


def _delta_text(event: Dict[str, Any]) -> str:
    delta = event.get("delta")
    if not isinstance(delta, dict):
        return ""
    text = delta.get("text")
    return text if isinstance(text, str) else ""


def _error_message(event: Dict[str, Any]) -> str:
    error = event.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str):
            return message
    return ""
