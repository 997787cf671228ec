from __future__ import annotations

import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from agent_relay.domain.errors import AgentError, ProviderHttpError, StreamProtocolError
from agent_relay.observability.structured_log import log_json
from agent_relay.providers.sse import decode_json_payload
from agent_relay.providers.transport import build_httpx_client, describe_transport_error, iter_sse_payloads

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_PORT = 18789
_REQUEST_TIMEOUT_SEC = 120.0
_START_HINT = "Make sure it's running: `openclaw gateway start`"


@dataclass(frozen=True)
class OpenClawConfig:
    url: str
    auth_token: str = ""


class OpenClawDiscoveryError(AgentError):
    code = "ERR_CLI_NOT_FOUND"


def discover_openclaw(home: Optional[Path] = None) -> OpenClawConfig:
    """Read ``~/.openclaw/openclaw.json`` and derive the local gateway address."""
    config_path = (home or Path.home()) / ".openclaw" / "openclaw.json"
    if not config_path.exists():
        raise OpenClawDiscoveryError(
            f"OpenClaw config not found at {config_path}. "
            "Install OpenClaw and run `openclaw gateway start`."
        )
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise OpenClawDiscoveryError(f"Failed to read {config_path}: {exc}") from exc
    except ValueError as exc:
        raise OpenClawDiscoveryError(f"Invalid JSON in {config_path}: {exc}") from exc

    gateway = data.get("gateway") if isinstance(data, dict) else None
    gateway = gateway if isinstance(gateway, dict) else {}
    auth = gateway.get("auth") if isinstance(gateway.get("auth"), dict) else {}
    token = auth.get("token")
    port = gateway.get("port")
    if isinstance(port, bool) or not isinstance(port, int) or port <= 0:
        port = DEFAULT_GATEWAY_PORT
    return OpenClawConfig(
        url=f"http://localhost:{port}",
        auth_token=token if isinstance(token, str) else "",
    )


def resolve_openclaw_config(url: str = "", token: str = "", home: Optional[Path] = None) -> OpenClawConfig:
    """Explicit settings win; anything missing comes from local discovery."""
    url = (url or "").strip().rstrip("/")
    token = (token or "").strip()
    if url and token:
        return OpenClawConfig(url=url, auth_token=token)
    try:
        discovered = discover_openclaw(home)
    except OpenClawDiscoveryError:
        if url:
            return OpenClawConfig(url=url, auth_token=token)
        raise
    return OpenClawConfig(url=url or discovered.url, auth_token=token or discovered.auth_token)


class OpenClawProvider:
    """Streams chat completions from an OpenClaw gateway (OpenAI-compatible SSE)."""

    def __init__(self, config: OpenClawConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self._config = config
        self._client = client

    @property
    def endpoint(self) -> str:
        return f"{self._config.url.rstrip('/')}/v1/chat/completions"

    async def stream(self, system_prompt: str, prompt: str) -> AsyncIterator[str]:
        client = self._client or build_httpx_client(read_timeout_sec=_REQUEST_TIMEOUT_SEC)
        owns_client = self._client is None
        body = {"model": "default", "stream": True, "messages": build_messages(system_prompt, prompt)}
        log_json(logger, "openclaw.request", url=self._config.url, prompt_len=len(prompt), system_len=len(system_prompt))
        try:
            payloads = iter_sse_payloads(
                client,
                self.endpoint,
                json_body=body,
                headers=self._headers(),
                on_status_error=_status_error,
                on_transport_error=self._transport_error,
            )
            async with aclosing(payloads):
                async for payload in payloads:
                    content = _delta_content(decode_json_payload(payload))
                    if content:
                        yield content
        finally:
            if owns_client:
                await client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.auth_token:
            headers["Authorization"] = f"Bearer {self._config.auth_token}"
        return headers

    def _transport_error(self, exc: httpx.TransportError) -> AgentError:
        if isinstance(exc, httpx.ConnectError):
            return ProviderHttpError(f"Cannot connect to OpenClaw gateway at {self._config.url}. {_START_HINT}")
        return describe_transport_error("OpenClaw", exc)


def stream_openclaw(
    config: OpenClawConfig,
    system_prompt: str,
    prompt: str,
    client: Optional[httpx.AsyncClient] = None,
) -> AsyncIterator[str]:
    return OpenClawProvider(config, client=client).stream(system_prompt, prompt)


def build_messages(system_prompt: str, prompt: str) -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return messages


def _status_error(status: int, body: str) -> AgentError:
    if status == 401:
        return ProviderHttpError(
            "OpenClaw gateway rejected the auth token. Check gateway.auth.token in ~/.openclaw/openclaw.json.",
            status,
        )
    if status == 429:
        return ProviderHttpError("OpenClaw gateway rate limit exceeded. Please wait and try again.", status)
    if status == 400:
        try:
            error = decode_json_payload(body).get("error")
        except StreamProtocolError:
            error = None
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return ProviderHttpError(f"OpenClaw error: {error['message']}", status)
    return ProviderHttpError(f"OpenClaw returned {status}: {body[:500]}", status)


def _delta_content(event: Dict[str, Any]) -> str:
    if event.get("error") is not None:
        error = event["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise StreamProtocolError(message or "Unknown OpenClaw error")
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""
